"""Docker Compose orchestrator."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

from ..config import BackupConfig, ComposeConfig
from ..errors import (
    BackupRepositoryMissing,
    CommandFailed,
    NotRunning,
    ServiceNotFound,
)
from ..farm.caddy import rewrite_caddy
from ..farm.envfile import EnvFile, is_enabled, split_profiles
from ..state import BackendKind, Installation
from ..templates import TemplateEngine
from .base import (
    SNAPSHOT_ROOT,
    Orchestrator,
    backup_volume_name,
    is_local_repository,
    repository_from_args,
    shell_quote,
)

MAIN_COMPOSE_FILE = "docker-compose.yml"
OVERRIDE_COMPOSE_FILE = "docker-compose.override.yml"
DEV_COMPOSE_FILE = "docker-compose.dev.yml"

# Profiles canastactl owns, in the order they are appended, keyed to the flag
# that enables each of them.
MANAGED_PROFILES = (
    ("observable", "CANASTA_ENABLE_OBSERVABILITY"),
    ("elasticsearch", "CANASTA_ENABLE_ELASTICSEARCH"),
)
REPOSITORY_MISSING_MARKER = "repository does not exist"
_SERVICE_MISSING_MARKERS = ("no such service", "is not running", "service not found")


def dev_compose_files(install_path: Path) -> list[str]:
    """Return the compose files used in dev mode; later files win."""
    files = [MAIN_COMPOSE_FILE]
    if (Path(install_path) / OVERRIDE_COMPOSE_FILE).exists():
        files.append(OVERRIDE_COMPOSE_FILE)
    files.append(DEV_COMPOSE_FILE)
    return files


def sync_compose_profiles(install_path: Path) -> bool:
    """Align ``COMPOSE_PROFILES`` with the feature flags in ``.env``.

    Unmanaged profiles keep their position; managed ones are re-appended in a
    fixed order when enabled. Returns whether ``.env`` was rewritten.
    """
    env_file = EnvFile(Path(install_path) / ".env")
    env = env_file.read()
    current = env.get("COMPOSE_PROFILES", "")
    managed = {name for name, _ in MANAGED_PROFILES}
    kept = [item for item in split_profiles(current) if item not in managed]
    kept.extend(name for name, flag in MANAGED_PROFILES if is_enabled(env, flag))
    updated = ",".join(kept)
    if updated == current:
        return False
    env_file.set("COMPOSE_PROFILES", updated)
    return True


class ComposeOrchestrator(Orchestrator):
    """Run installations as Docker Compose projects."""

    kind = BackendKind.COMPOSE
    display_name = "Docker Compose"

    def __init__(
        self,
        templates: TemplateEngine,
        settings: ComposeConfig | None = None,
        backups: BackupConfig | None = None,
    ) -> None:
        """Configure the docker binaries and backup images."""
        super().__init__(templates)
        self.settings = settings or ComposeConfig()
        self.backups = backups or BackupConfig()

    @property
    def docker_bin(self) -> str:
        return self.settings.docker_bin

    def compose_command(self) -> list[str]:
        """Return the argv prefix that invokes compose."""
        if self.settings.compose_path:
            return [self.settings.compose_path]
        return [self.docker_bin, "compose"]

    # Lifecycle ---------------------------------------------------------
    def check_dependencies(self) -> None:
        """Verify ``docker compose version`` (or the configured binary) succeeds."""
        self._compose(["version"], error_prefix="docker compose version")

    def start(self, installation: Installation) -> None:
        """Sync profiles and run ``up -d``."""
        sync_compose_profiles(installation.path)
        self._compose(
            [*self._file_args(installation), "up", "-d"],
            cwd=installation.path,
            error_prefix=f"Starting containers at {installation.path}",
        )

    def stop(self, installation: Installation) -> None:
        """Run ``down`` for the project."""
        self._compose(
            [*self._file_args(installation), "down"],
            cwd=installation.path,
            error_prefix=f"Stopping containers at {installation.path}",
        )

    def update_config(self, installation: Installation) -> bool:
        """Regenerate the Caddyfile."""
        return rewrite_caddy(installation.path, self.templates)

    def init_config(self, installation: Installation) -> bool:
        """Create includes, sync profiles and render the Caddyfile."""
        sync_compose_profiles(installation.path)
        return super().init_config(installation)

    def check_running_status(self, installation: Installation) -> None:
        """Raise :class:`NotRunning` when ``ps -q web`` lists no container."""
        result = self._compose(
            ["ps", "-q", "web"], cwd=installation.path, check=False
        )
        if result.returncode != 0 or not (result.stdout or "").strip():
            raise NotRunning("Container web is not running")

    def destroy(self, install_path: Path) -> str:
        """Remove containers and volumes, then the backup staging volume."""
        result = self._compose(
            ["down", "-v"], cwd=install_path, error_prefix="docker compose down -v"
        )
        output = result.stdout or ""
        volume = self._run_command(
            [self.docker_bin, "volume", "rm", backup_volume_name(install_path)], check=False
        )
        if volume.returncode != 0:
            output += f"\nBackup volume not removed: {(volume.stdout or '').strip()}"
        return output

    def update(self, install_path: Path) -> str:
        """Pull newer images for every service."""
        result = self._compose(
            ["pull", "--ignore-buildable", "--ignore-pull-failures"],
            cwd=install_path,
            error_prefix=f"Pulling images at {install_path}",
        )
        return result.stdout or ""

    # Service access ----------------------------------------------------
    def exec(self, install_path: Path, service: str, command: str) -> str:
        """Run *command* in *service* and return its combined output."""
        result = self._compose(
            ["exec", "-T", service, "/bin/bash", "-c", command],
            cwd=install_path,
            check=False,
        )
        output = result.stdout or ""
        if result.returncode != 0:
            self._raise_exec_failure(service, command, result.returncode, output)
        return output

    def exec_streaming(self, install_path: Path, service: str, command: str) -> None:
        """Run *command* in *service* without capturing output."""
        self._compose(
            ["exec", "-T", service, "/bin/bash", "-c", command],
            cwd=install_path,
            capture_output=False,
            error_prefix=f"Command in {service}",
        )

    def copy_to(
        self, install_path: Path, service: str, host_path: Path, container_path: str
    ) -> None:
        """``docker compose cp host service:path``."""
        self._compose(
            ["cp", str(host_path), f"{service}:{container_path}"],
            cwd=install_path,
            error_prefix=f"Copying {host_path} to {service}",
        )

    def copy_from(
        self, install_path: Path, service: str, container_path: str, host_path: Path
    ) -> None:
        """``docker compose cp service:path host``."""
        self._compose(
            ["cp", f"{service}:{container_path}", str(host_path)],
            cwd=install_path,
            error_prefix=f"Copying {container_path} from {service}",
        )

    # Backups -----------------------------------------------------------
    def run_backup(
        self,
        install_path: Path,
        env_path: Path,
        staged: Mapping[Path, str],
        args: Sequence[str],
    ) -> str:
        """Stage files into the backup volume and run restic in a container."""
        volume = backup_volume_name(install_path)
        self._run_command(
            [self.docker_bin, "volume", "create", volume],
            error_prefix="Creating backup volume",
        )
        if staged:
            self._stage_to_volume(volume, staged)

        command = [
            self.docker_bin,
            "run",
            "--rm",
            "-i",
            "--env-file",
            str(env_path),
            "-v",
            f"{volume}:{SNAPSHOT_ROOT}",
        ]
        repository = repository_from_args(args)
        if repository and is_local_repository(repository):
            command.extend(["-v", f"{repository}:{repository}"])
        command.append(self.backups.restic_image)
        command.extend(args)

        result = self._run_command(command, cwd=install_path, check=False)
        output = result.stdout or ""
        if result.returncode != 0:
            if REPOSITORY_MISSING_MARKER in output:
                raise BackupRepositoryMissing(
                    "backup repository not found. Run 'canastactl backup init' to create it",
                    command=command,
                    returncode=result.returncode,
                    output=output,
                )
            raise CommandFailed(
                f"restic command failed (exit {result.returncode}): "
                f"{output.strip() or 'no output'}",
                command=command,
                returncode=result.returncode,
                output=output,
            )
        return output

    def restore_from_backup_volume(self, install_path: Path, paths: Mapping[str, Path]) -> None:
        """Copy staged snapshot paths back into the installation tree."""
        install_path = Path(install_path)
        steps: list[str] = []
        for source, host_path in sorted(paths.items()):
            relative = Path(host_path).relative_to(install_path).as_posix()
            src = shell_quote(source)
            dst = shell_quote(f"/install/{relative}")
            steps.append(
                f"if [ -d {src} ]; then mkdir -p {dst} && "
                f"rm -rf {dst}/* {dst}/.[!.]* 2>/dev/null; cp -a {src}/. {dst}/; "
                f"elif [ -f {src} ]; then cp -a {src} {dst}; fi"
            )
        if not steps:
            return
        self._run_command(
            [
                self.docker_bin,
                "run",
                "--rm",
                "-v",
                f"{backup_volume_name(install_path)}:{SNAPSHOT_ROOT}:ro",
                "-v",
                f"{install_path}:/install",
                self.backups.helper_image,
                "sh",
                "-c",
                " && ".join(steps),
            ],
            error_prefix="Restoring files from backup volume",
        )

    # ------------------------------------------------------------------
    def _file_args(self, installation: Installation) -> list[str]:
        if not installation.dev_mode:
            return []
        args: list[str] = []
        for name in dev_compose_files(installation.path):
            args.extend(["-f", name])
        return args

    def _compose(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
        capture_output: bool = True,
        error_prefix: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        return self._run_command(
            [*self.compose_command(), *args],
            cwd=cwd,
            check=check,
            capture_output=capture_output,
            error_prefix=error_prefix or f"docker compose {args[0]}",
        )

    def _stage_to_volume(self, volume: str, staged: Mapping[Path, str]) -> None:
        command = [self.docker_bin, "run", "--rm", "-v", f"{volume}:{SNAPSHOT_ROOT}"]
        copies: list[str] = []
        for index, (host_path, container_path) in enumerate(
            sorted(staged.items(), key=lambda item: str(item[0]))
        ):
            mount = f"/src{index}"
            command.extend(["-v", f"{host_path}:{mount}:ro"])
            copies.append(f"cp -a {mount} {shell_quote(container_path)}")
        command.extend(
            [
                self.backups.helper_image,
                "sh",
                "-c",
                " && ".join([f"rm -rf {SNAPSHOT_ROOT}/*", *copies]),
            ]
        )
        self._run_command(command, error_prefix="Staging files to backup volume")

    def _raise_exec_failure(self, service: str, command: str, returncode: int, output: str) -> None:
        lowered = output.lower()
        if any(marker in lowered for marker in _SERVICE_MISSING_MARKERS) and service in output:
            raise ServiceNotFound(f"Service '{service}' not found or not running: {output.strip()}")
        raise CommandFailed(
            f"Command in {service} failed (exit {returncode}): {output.strip() or 'no output'}",
            command=[*self.compose_command(), "exec", "-T", service, "/bin/bash", "-c", command],
            returncode=returncode,
            output=output,
        )


__all__ = [
    "ComposeOrchestrator",
    "DEV_COMPOSE_FILE",
    "MAIN_COMPOSE_FILE",
    "OVERRIDE_COMPOSE_FILE",
    "dev_compose_files",
    "sync_compose_profiles",
]
