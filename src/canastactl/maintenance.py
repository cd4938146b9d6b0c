"""Post-upgrade MediaWiki maintenance for the wikis of a farm.

For each wiki ``update.php`` runs first, then the job queue is drained and,
where Semantic MediaWiki is installed, its data is rebuilt. Script output
streams straight to the terminal.
"""
from __future__ import annotations

from dataclasses import dataclass

from .errors import CommandFailed, FarmError, NotFound, PartialFailure
from .farm.wikis import WikiRegistry
from .logging import StepReporter
from .orchestrators.base import Orchestrator
from .state import Installation

UPDATE_SCRIPT = "php maintenance/update.php --quick"
JOBS_SCRIPT = "php maintenance/runJobs.php"
SMW_REBUILD_SCRIPT = "extensions/SemanticMediaWiki/maintenance/rebuildData.php"


@dataclass(frozen=True)
class MaintenanceOptions:
    skip_jobs: bool = False
    skip_smw: bool = False


class MaintenanceRunner:
    """Run the update scripts in ``web`` for one installation."""

    def __init__(
        self,
        installation: Installation,
        orchestrator: Orchestrator,
        reporter: StepReporter | None = None,
    ) -> None:
        self.installation = installation
        self.orchestrator = orchestrator
        self.reporter = reporter

    def update(
        self, wiki: str | None = None, options: MaintenanceOptions | None = None
    ) -> list[str]:
        """Update *wiki*, or every wiki in file order; returns warnings.

        A failing ``rebuildData.php`` is only a warning. Any other failure
        raises :class:`PartialFailure` listing the wikis already updated.
        """
        options = options or MaintenanceOptions()
        registry = WikiRegistry(self.installation.path)
        if wiki and not registry.exists(wiki):
            raise NotFound(f"Wiki '{wiki}' does not exist")
        wiki_ids = [wiki] if wiki else registry.ids()
        self.orchestrator.check_running_status(self.installation)

        warnings: list[str] = []
        completed: list[str] = []
        for wiki_id in wiki_ids:
            try:
                warnings.extend(self._update_wiki(wiki_id, options))
            except FarmError as exc:
                self._report(wiki_id, status="error", detail=str(exc))
                raise PartialFailure(
                    wiki_id,
                    exc,
                    completed=completed,
                    guidance="Re-run with --wiki for each wiki that was not completed.",
                ) from exc
            completed.append(wiki_id)
        return warnings

    def _update_wiki(self, wiki_id: str, options: MaintenanceOptions) -> list[str]:
        path = self.installation.path
        flag = f" --wiki={wiki_id}"
        self.orchestrator.exec_streaming(path, "web", UPDATE_SCRIPT + flag)
        self._report(f"{wiki_id}.update")
        if options.skip_jobs:
            self._report(f"{wiki_id}.jobs", status="skipped")
        else:
            self.orchestrator.exec_streaming(path, "web", JOBS_SCRIPT + flag)
            self._report(f"{wiki_id}.jobs")

        if options.skip_smw:
            self._report(f"{wiki_id}.smw", status="skipped")
            return []
        found = self.orchestrator.exec(
            path, "web", f"test -f {SMW_REBUILD_SCRIPT} && echo exists || true"
        )
        if "exists" not in found:
            self._report(f"{wiki_id}.smw", status="skipped", detail="not installed")
            return []
        try:
            self.orchestrator.exec_streaming(path, "web", f"php {SMW_REBUILD_SCRIPT}{flag}")
        except CommandFailed as exc:
            self._report(f"{wiki_id}.smw", status="warning", detail=str(exc))
            return [f"rebuildData.php failed for wiki '{wiki_id}': {exc}"]
        self._report(f"{wiki_id}.smw")
        return []

    def _report(self, name: str, status: str = "success", detail: object | None = None) -> None:
        if self.reporter is not None:
            self.reporter(name, status=status, detail=detail)


__all__ = ["MaintenanceOptions", "MaintenanceRunner"]
