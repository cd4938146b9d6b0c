"""Restic snapshots of a farm.

A snapshot holds every wiki's database dump together with the installation's
config, extensions, images, skins and public assets. Files are assembled in a
staging area (a Docker volume or a Kubernetes PVC) mounted at
``/currentsnapshot`` and restic runs next to it, so the host only needs the
backend CLI.
"""
from __future__ import annotations

import shutil
from collections.abc import Callable, Mapping
from contextlib import suppress
from pathlib import Path

from .errors import CommandFailed, FarmError, NotFound, PartialFailure, ValidationFailed
from .farm.envfile import EnvFile
from .farm.wikis import WikiRegistry
from .logging import StepReporter
from .orchestrators.base import SNAPSHOT_ROOT, Orchestrator, shell_quote
from .state import Installation

STAGED_DIRS = ("config", "extensions", "images", "skins", "public_assets")
STAGED_FILES = (".env", "docker-compose.override.yml", "my.cnf")
PRESERVED_KEYS = ("MYSQL_PASSWORD", "WIKI_DB_PASSWORD")
HOST_DUMP_DIR = Path("config") / "backup"
CONTAINER_DUMP_DIR = "/mediawiki/config/backup"
SAFETY_PREFIX = "BeforeRestoring-"


def resolve_repository(env: Mapping[str, str]) -> str:
    """Return the restic repository configured in *env*.

    ``RESTIC_REPOSITORY`` wins over the legacy ``RESTIC_REPO``; otherwise the
    S3 endpoint and bucket are combined into an ``s3:`` url.
    """
    for key in ("RESTIC_REPOSITORY", "RESTIC_REPO"):
        if env.get(key):
            return env[key]
    return f"s3:{env.get('AWS_S3_API', '')}/{env.get('AWS_S3_BUCKET', '')}"


def snapshot_tag(label: str, hostname: str) -> str:
    """Return the restic tag recorded for a snapshot."""
    return f"{label}__on__{hostname}"


def dump_path(wiki_id: str) -> str:
    """Return the in-container path of a wiki's database dump."""
    return f"{CONTAINER_DUMP_DIR}/db_{wiki_id}.sql"


class BackupPipeline:
    """Run restic against one installation's repository."""

    def __init__(
        self,
        installation: Installation,
        orchestrator: Orchestrator,
        hostname: str,
        reporter: StepReporter | None = None,
    ) -> None:
        """Bind the pipeline to an installation and the local hostname."""
        self.installation = installation
        self.orchestrator = orchestrator
        self.hostname = hostname
        self.reporter = reporter
        self.env_file = EnvFile(installation.env_path)

    @property
    def repository(self) -> str:
        return resolve_repository(self.env_file.read())

    # Repository commands --------------------------------------------------
    def init(self) -> str:
        return self._restic("init")

    def list(self) -> str:
        return self._restic("snapshots")

    def delete(self, snapshot_id: str) -> str:
        """Forget *snapshot_id*; repository data is not pruned."""
        return self._restic("forget", _require(snapshot_id, "snapshot id"))

    def unlock(self) -> str:
        return self._restic("unlock")

    def check(self) -> str:
        return self._restic("check")

    def files(self, snapshot_id: str) -> str:
        return self._restic("ls", _require(snapshot_id, "snapshot id"))

    def diff(self, first: str, second: str) -> str:
        return self._restic("diff", _require(first, "snapshot id"), _require(second, "snapshot id"))

    # Snapshots ------------------------------------------------------------
    def create(self, tag: str) -> str:
        """Dump every wiki database and upload a tagged snapshot."""
        label = _require(tag, "tag")
        env = self.env_file.read()
        wiki_ids = WikiRegistry(self.installation.path).ids()
        path = self.installation.path
        try:
            self.orchestrator.exec(path, "web", f"mkdir -p {CONTAINER_DUMP_DIR}")
            password = shell_quote(env.get("MYSQL_PASSWORD", ""))
            for wiki_id in wiki_ids:
                self.orchestrator.exec(
                    path,
                    "web",
                    f"mysqldump -h db -u root -p{password} --databases {wiki_id} "
                    f"> {dump_path(wiki_id)}",
                )
                if not self.orchestrator.shares_install_dir:
                    host_dump = path / HOST_DUMP_DIR / f"db_{wiki_id}.sql"
                    host_dump.parent.mkdir(parents=True, exist_ok=True)
                    self.orchestrator.copy_from(path, "web", dump_path(wiki_id), host_dump)
                self._report(f"dump {wiki_id}")
            output = self.orchestrator.run_backup(
                path,
                self.installation.env_path,
                self._staged_paths(),
                [
                    "-r",
                    resolve_repository(env),
                    "--tag",
                    snapshot_tag(label, self.hostname),
                    "backup",
                    SNAPSHOT_ROOT,
                ],
            )
            self._report("upload", detail=snapshot_tag(label, self.hostname))
            return output
        finally:
            _remove_tree(path / HOST_DUMP_DIR)
            if not self.orchestrator.shares_install_dir:
                self._remove_container_dumps()

    def restore(
        self,
        snapshot_id: str,
        *,
        skip_safety: bool = False,
        wiki: str | None = None,
    ) -> None:
        """Replace files and databases with the contents of *snapshot_id*.

        Unless *skip_safety* is set, a ``BeforeRestoring-<id>`` snapshot is
        taken first so the current state can be recovered.
        """
        snapshot_id = _require(snapshot_id, "snapshot id")
        path = self.installation.path
        if wiki and not WikiRegistry(path).exists(wiki):
            raise NotFound(f"wiki '{wiki}' not found in current installation's wikis.yaml")
        env = self.env_file.read()
        if not skip_safety:
            self.create(f"{SAFETY_PREFIX}{snapshot_id}")
            self._report("safety snapshot", detail=f"{SAFETY_PREFIX}{snapshot_id}")

        guidance = (
            "Nothing was rolled back; the pre-restore state is snapshot tag "
            f"'{SAFETY_PREFIX}{snapshot_id}'."
            if not skip_safety
            else "Nothing was rolled back and no safety snapshot was taken."
        )
        restore_paths = self._restore_paths(wiki)
        steps: list[tuple[str, Callable[[], object]]] = [
            ("fetch", lambda: self._restic("restore", snapshot_id, "--target", "/")),
            (
                "copy files",
                lambda: self.orchestrator.restore_from_backup_volume(path, restore_paths),
            ),
        ]
        if not wiki:
            steps.append(("preserve passwords", lambda: self._preserve_passwords(env)))
        steps.append(("import databases", lambda: self._import_dumps(env, wiki)))

        completed: list[str] = []
        try:
            for name, action in steps:
                try:
                    action()
                except (FarmError, OSError) as exc:
                    self._report(name, status="error", detail=str(exc))
                    raise PartialFailure(
                        name, exc, completed=completed, guidance=guidance
                    ) from exc
                completed.append(name)
                self._report(name)
        finally:
            _remove_tree(path / HOST_DUMP_DIR)

    # ------------------------------------------------------------------
    def _restic(self, *args: str) -> str:
        return self.orchestrator.run_backup(
            self.installation.path,
            self.installation.env_path,
            {},
            ["-r", self.repository, *args],
        )

    def _staged_paths(self) -> dict[Path, str]:
        path = self.installation.path
        staged: dict[Path, str] = {}
        for name in STAGED_DIRS:
            if (path / name).is_dir():
                staged[path / name] = f"{SNAPSHOT_ROOT}/{name}"
        for name in STAGED_FILES:
            if (path / name).is_file():
                staged[path / name] = f"{SNAPSHOT_ROOT}/{name}"
        return staged

    def _restore_paths(self, wiki: str | None) -> dict[str, Path]:
        path = self.installation.path
        if wiki:
            return {
                f"{SNAPSHOT_ROOT}/config/backup": path / HOST_DUMP_DIR,
                f"{SNAPSHOT_ROOT}/config/settings/wikis/{wiki}": (
                    path / "config" / "settings" / "wikis" / wiki
                ),
                f"{SNAPSHOT_ROOT}/images/{wiki}": path / "images" / wiki,
                f"{SNAPSHOT_ROOT}/public_assets/{wiki}": path / "public_assets" / wiki,
            }
        paths = {f"{SNAPSHOT_ROOT}/{name}": path / name for name in STAGED_DIRS}
        paths.update({f"{SNAPSHOT_ROOT}/{name}": path / name for name in STAGED_FILES})
        return paths

    def _preserve_passwords(self, env: Mapping[str, str]) -> None:
        preserved = {key: env[key] for key in PRESERVED_KEYS if key in env}
        if preserved:
            self.env_file.set_many(preserved)

    def _import_dumps(self, env: Mapping[str, str], wiki: str | None) -> None:
        path = self.installation.path
        candidates = [wiki] if wiki else WikiRegistry(path).ids()
        wiki_ids = [
            wiki_id
            for wiki_id in candidates
            if (path / HOST_DUMP_DIR / f"db_{wiki_id}.sql").is_file()
        ]
        if not wiki_ids:
            raise NotFound("no database dump files found in backup")
        password = shell_quote(env.get("MYSQL_PASSWORD", ""))
        pushed = not self.orchestrator.shares_install_dir
        if pushed:
            self.orchestrator.exec(path, "web", f"mkdir -p {CONTAINER_DUMP_DIR}")
        try:
            for wiki_id in wiki_ids:
                if pushed:
                    self.orchestrator.copy_to(
                        path, "web", path / HOST_DUMP_DIR / f"db_{wiki_id}.sql", dump_path(wiki_id)
                    )
                self.orchestrator.exec(
                    path, "web", f"mysql -h db -u root -p{password} < {dump_path(wiki_id)}"
                )
                self._report(f"import {wiki_id}")
        finally:
            if pushed:
                self._remove_container_dumps()

    def _remove_container_dumps(self) -> None:
        # Leftover dumps in the pod must not mask the original error.
        with suppress(CommandFailed):
            self.orchestrator.exec(
                self.installation.path, "web", f"rm -rf {CONTAINER_DUMP_DIR}"
            )

    def _report(self, name: str, status: str = "success", detail: object | None = None) -> None:
        if self.reporter is not None:
            self.reporter(name, status=status, detail=detail)


def _require(value: str, label: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationFailed(f"{label} must not be empty")
    return value


def _remove_tree(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path, ignore_errors=True)


__all__ = [
    "BackupPipeline",
    "STAGED_DIRS",
    "STAGED_FILES",
    "dump_path",
    "resolve_repository",
    "snapshot_tag",
]
