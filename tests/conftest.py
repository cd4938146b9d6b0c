"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest
import yaml

from canastactl.errors import NotRunning
from canastactl.farm.caddy import rewrite_caddy
from canastactl.orchestrators.base import Orchestrator
from canastactl.state import BackendKind, Installation
from canastactl.templates import TemplateEngine


# ----------------------------------------------------------------------
# subprocess double
# ----------------------------------------------------------------------
@dataclass
class RecordedCall:
    """One captured ``subprocess.run`` invocation."""

    args: list[str]
    cwd: str | None
    input: str | None

    @property
    def line(self) -> str:
        return " ".join(self.args)


@dataclass
class FakeRun:
    """Stand-in for ``subprocess.run`` that records argv and scripted replies."""

    calls: list[RecordedCall] = field(default_factory=list)
    replies: list[tuple[str, int, str]] = field(default_factory=list)
    missing: set[str] = field(default_factory=set)

    def reply(self, fragment: str, *, stdout: str = "", returncode: int = 0) -> None:
        """Answer commands containing *fragment*; later replies win."""
        self.replies.insert(0, (fragment, returncode, stdout))

    def __call__(self, args: Sequence[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        argv = [str(item) for item in args]
        if argv[0] in self.missing:
            raise FileNotFoundError(argv[0])
        cwd = kwargs.get("cwd")
        stdin = kwargs.get("input")
        call = RecordedCall(
            args=argv,
            cwd=str(cwd) if cwd is not None else None,
            input=stdin if isinstance(stdin, str) else None,
        )
        self.calls.append(call)
        for fragment, returncode, stdout in self.replies:
            if fragment in call.line:
                return subprocess.CompletedProcess(argv, returncode, stdout=stdout)
        return subprocess.CompletedProcess(argv, 0, stdout="")

    def lines(self) -> list[str]:
        return [call.line for call in self.calls]


@pytest.fixture
def fake_run(monkeypatch: pytest.MonkeyPatch) -> FakeRun:
    """Patch ``subprocess.run`` for every module under test."""
    runner = FakeRun()
    monkeypatch.setattr(subprocess, "run", runner)
    return runner


# ----------------------------------------------------------------------
# Farm tree and orchestrator double
# ----------------------------------------------------------------------
@pytest.fixture
def templates() -> TemplateEngine:
    return TemplateEngine.with_overrides(None)


def write_farm(
    path: Path,
    wikis: Sequence[tuple[str, str]] = (("main", "localhost"),),
    env: Mapping[str, str] | None = None,
) -> Path:
    """Lay out a minimal installation tree with ``wikis.yaml`` and ``.env``."""
    (path / "config").mkdir(parents=True, exist_ok=True)
    entries = [{"id": wiki_id, "url": url, "name": wiki_id} for wiki_id, url in wikis]
    (path / "config" / "wikis.yaml").write_text(
        yaml.safe_dump({"wikis": entries}, sort_keys=False), encoding="utf-8"
    )
    values = {"MYSQL_PASSWORD": "secret", "MW_SITE_SERVER": "https://localhost"}
    values.update(env or {})
    (path / ".env").write_text(
        "".join(f"{key}={value}\n" for key, value in values.items()), encoding="utf-8"
    )
    return path


@pytest.fixture
def farm(tmp_path: Path) -> Installation:
    """Return a compose installation rooted in a fresh farm tree."""
    path = write_farm(tmp_path / "farm")
    return Installation(id="farm", path=path, orchestrator=BackendKind.COMPOSE)


class FakeOrchestrator(Orchestrator):
    """In-memory backend recording every call in order."""

    kind = BackendKind.COMPOSE
    display_name = "Fake"

    def __init__(self, templates: TemplateEngine, *, running: bool = True) -> None:
        super().__init__(templates)
        self.running = running
        self.calls: list[tuple[object, ...]] = []
        self.failures: dict[str, Exception] = {}
        self.exec_hook: Callable[[str, str], str] | None = None
        self.restore_hook: Callable[[Mapping[str, Path]], None] | None = None

    def fail(self, method: str, exc: Exception) -> None:
        self.failures[method] = exc

    def _record(self, method: str, *details: object) -> None:
        self.calls.append((method, *details))
        if method in self.failures:
            raise self.failures[method]

    def names(self) -> list[str]:
        return [str(call[0]) for call in self.calls]

    def commands(self) -> list[str]:
        return [str(call[2]) for call in self.calls if call[0] == "exec"]

    def check_dependencies(self) -> None:
        self._record("check_dependencies")

    def start(self, installation: Installation) -> None:
        self._record("start")
        self.running = True

    def stop(self, installation: Installation) -> None:
        self._record("stop")
        self.running = False

    def update_config(self, installation: Installation) -> bool:
        self._record("update_config")
        return rewrite_caddy(installation.path, self.templates)

    def check_running_status(self, installation: Installation) -> None:
        self._record("check_running_status")
        if not self.running:
            raise NotRunning("Container web is not running")

    def destroy(self, install_path: Path) -> str:
        self._record("destroy")
        return ""

    def update(self, install_path: Path) -> str:
        self._record("update")
        return ""

    def exec(self, install_path: Path, service: str, command: str) -> str:
        self._record("exec", service, command)
        return self.exec_hook(service, command) if self.exec_hook else ""

    def exec_streaming(self, install_path: Path, service: str, command: str) -> None:
        self._record("exec_streaming", service, command)

    def copy_to(
        self, install_path: Path, service: str, host_path: Path, container_path: str
    ) -> None:
        self._record("copy_to", service, str(host_path), container_path)

    def copy_from(
        self, install_path: Path, service: str, container_path: str, host_path: Path
    ) -> None:
        self._record("copy_from", service, container_path, str(host_path))

    def run_backup(
        self,
        install_path: Path,
        env_path: Path,
        staged: Mapping[Path, str],
        args: Sequence[str],
    ) -> str:
        self._record("run_backup", dict(staged), list(args))
        return "restic output\n"

    def restore_from_backup_volume(self, install_path: Path, paths: Mapping[str, Path]) -> None:
        self._record("restore_from_backup_volume", dict(paths))
        if self.restore_hook is not None:
            self.restore_hook(paths)


@pytest.fixture
def orchestrator(templates: TemplateEngine) -> FakeOrchestrator:
    return FakeOrchestrator(templates)
