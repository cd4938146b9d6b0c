"""Backend contract shared by the Compose and Kubernetes orchestrators."""
from __future__ import annotations

import subprocess
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from contextlib import suppress
from pathlib import Path

from ..errors import CommandFailed, DependencyMissing, ValidationFailed
from ..farm.caddy import ensure_caddy_includes
from ..state import BackendKind, Installation
from ..templates import TemplateEngine

SNAPSHOT_ROOT = "/currentsnapshot"
DEFAULT_DB_PASSWORD = "mediawiki"


def shell_quote(value: str) -> str:
    """Single-quote *value* for a ``bash -c`` command string."""
    return "'" + value.replace("'", "'\\''") + "'"


def backup_volume_name(install_path: Path) -> str:
    """Return the staging volume name for the installation at *install_path*."""
    return f"canasta-backup-{Path(install_path).name}"


def is_local_repository(repository: str) -> bool:
    """Return whether a restic repository is a host filesystem path."""
    return repository.startswith("/")


def repository_from_args(args: Sequence[str]) -> str:
    """Return the value following ``-r`` in restic *args*, or ``""``."""
    for index, arg in enumerate(args[:-1]):
        if arg == "-r":
            return args[index + 1]
    return ""


class Orchestrator(ABC):
    """Uniform operations over a container backend.

    Every method raises the shared error taxonomy: :class:`DependencyMissing`
    for absent tools, :class:`NotFound` subclasses for missing services and
    :class:`CommandFailed` (with captured output) for failing commands.
    """

    kind: BackendKind
    display_name: str = ""
    #: Whether the installation directory is bind-mounted into ``web``.
    shares_install_dir: bool = True

    def __init__(self, templates: TemplateEngine) -> None:
        """Keep the template engine used for generated config."""
        self.templates = templates

    # Lifecycle ---------------------------------------------------------
    @abstractmethod
    def check_dependencies(self) -> None:
        """Verify the backend tooling is installed and reachable."""

    @abstractmethod
    def start(self, installation: Installation) -> None:
        """Bring the installation's services up."""

    @abstractmethod
    def stop(self, installation: Installation) -> None:
        """Take the installation's services down."""

    @abstractmethod
    def update_config(self, installation: Installation) -> bool:
        """Regenerate routing config from the tenant registry."""

    def init_config(self, installation: Installation) -> bool:
        """Create include stubs and generate config for a new installation."""
        ensure_caddy_includes(installation.path)
        return self.update_config(installation)

    @abstractmethod
    def check_running_status(self, installation: Installation) -> None:
        """Raise :class:`NotRunning` unless the web service is up."""

    @abstractmethod
    def destroy(self, install_path: Path) -> str:
        """Remove containers and volumes for the installation."""

    @abstractmethod
    def update(self, install_path: Path) -> str:
        """Refresh images or restart deployments."""

    # Service access ----------------------------------------------------
    @abstractmethod
    def exec(self, install_path: Path, service: str, command: str) -> str:
        """Run *command* through ``bash -c`` in *service*; return combined output."""

    @abstractmethod
    def exec_streaming(self, install_path: Path, service: str, command: str) -> None:
        """Run *command* in *service* with output going straight to the terminal."""

    @abstractmethod
    def copy_to(
        self, install_path: Path, service: str, host_path: Path, container_path: str
    ) -> None:
        """Copy a host file into *service*."""

    @abstractmethod
    def copy_from(
        self, install_path: Path, service: str, container_path: str, host_path: Path
    ) -> None:
        """Copy a file out of *service* onto the host."""

    # Backups -----------------------------------------------------------
    @abstractmethod
    def run_backup(
        self,
        install_path: Path,
        env_path: Path,
        staged: Mapping[Path, str],
        args: Sequence[str],
    ) -> str:
        """Stage *staged* host paths and run restic with *args*."""

    @abstractmethod
    def restore_from_backup_volume(self, install_path: Path, paths: Mapping[str, Path]) -> None:
        """Copy staged snapshot paths back onto the host."""

    # ------------------------------------------------------------------
    def _run_command(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        input_text: str | None = None,
        check: bool = True,
        capture_output: bool = True,
        error_prefix: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = [str(item) for item in args]
        try:
            if capture_output:
                result = subprocess.run(  # noqa: S603, S607
                    command,
                    cwd=str(cwd) if cwd is not None else None,
                    input=input_text,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    check=False,
                )
            else:
                result = subprocess.run(  # noqa: S603, S607
                    command,
                    cwd=str(cwd) if cwd is not None else None,
                    input=input_text,
                    text=True,
                    check=False,
                )
        except FileNotFoundError as exc:
            raise DependencyMissing(f"{command[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            output = getattr(result, "stdout", "") or ""
            message = output.strip() or "no output"
            prefix = error_prefix or " ".join(command[:3])
            raise CommandFailed(
                f"{prefix} failed (exit {result.returncode}): {message}",
                command=command,
                returncode=result.returncode,
                output=output,
            )
        return result


def import_database(
    orchestrator: Orchestrator,
    installation: Installation,
    database: str,
    dump_path: Path,
    password: str = "",
) -> None:
    """Load a ``.sql`` or ``.sql.gz`` dump into *database* through ``db``."""
    dump_path = Path(dump_path)
    name = dump_path.name
    if name.endswith(".sql.gz"):
        compressed = True
    elif name.endswith(".sql"):
        compressed = False
    else:
        raise ValidationFailed(f"Database dump {dump_path} must end in .sql or .sql.gz")
    quoted = shell_quote(password or DEFAULT_DB_PASSWORD)
    container_file = f"/tmp/{database}.sql.gz" if compressed else f"/tmp/{database}.sql"
    orchestrator.copy_to(installation.path, "db", dump_path, container_file)
    try:
        if compressed:
            orchestrator.exec(installation.path, "db", f"gunzip -f {container_file}")
        orchestrator.exec(
            installation.path,
            "db",
            f"mysql --no-defaults -uroot -p{quoted} -e 'CREATE DATABASE IF NOT EXISTS {database}'",
        )
        orchestrator.exec(
            installation.path,
            "db",
            f"mysql --no-defaults -uroot -p{quoted} {database} < /tmp/{database}.sql",
        )
    finally:
        # Cleanup must not mask the import error.
        with suppress(CommandFailed):
            orchestrator.exec(
                installation.path, "db", f"rm -f /tmp/{database}.sql /tmp/{database}.sql.gz"
            )


def export_database(
    orchestrator: Orchestrator,
    installation: Installation,
    database: str,
    output: Path,
    password: str = "",
) -> Path:
    """Dump *database* from ``db`` into the host file *output*."""
    output = Path(output)
    quoted = shell_quote(password or DEFAULT_DB_PASSWORD)
    container_file = f"/tmp/{database}.sql"
    orchestrator.exec(
        installation.path,
        "db",
        f"mysqldump --no-defaults -uroot -p{quoted} {database} > {container_file}",
    )
    try:
        output.parent.mkdir(parents=True, exist_ok=True)
        orchestrator.copy_from(installation.path, "db", container_file, output)
    finally:
        with suppress(CommandFailed):
            orchestrator.exec(installation.path, "db", f"rm -f {container_file}")
    return output


__all__ = [
    "DEFAULT_DB_PASSWORD",
    "Orchestrator",
    "SNAPSHOT_ROOT",
    "backup_volume_name",
    "export_database",
    "import_database",
    "is_local_repository",
    "repository_from_args",
    "shell_quote",
]
