"""Create, delete and restart whole installations."""
from __future__ import annotations

import re
import secrets
import shutil
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path

from .config import AppConfig
from .errors import (
    Conflict,
    FarmError,
    NotFound,
    NotRunning,
    PartialFailure,
    ValidationFailed,
)
from .farm.credentials import ensure_observability_credentials, generate_password
from .farm.envfile import EnvFile
from .farm.wikis import WikiRegistry, parse_wiki_url, validate_wiki_id, validate_wiki_path
from .fileio import atomic_write_text
from .logging import StepReporter
from .orchestrators.base import Orchestrator, import_database
from .orchestrators.compose import DEV_COMPOSE_FILE
from .orchestrators.kind import KindClusterManager, cluster_name, ports_from_env
from .schedule import BackupSchedule
from .state import BackendKind, Installation, StateRegistry
from .tenants import ADMIN_FILE, ADMIN_PASSWORD_FILE, WIKI_SETTINGS_DIR, MediaWikiInstaller

INSTALLATION_DIRS = (
    Path("config") / "settings" / "global",
    Path("extensions"),
    Path("images"),
    Path("skins"),
    Path("public_assets"),
)
_INSTALLATION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
IMAGE_CLEANUP_COMMAND = "find /mediawiki/images -mindepth 1 -delete"
CACHE_FLUSH_COMMAND = "touch LocalSettings.php"


@dataclass(frozen=True)
class CreateRequest:
    """Everything needed to lay out and start a new installation."""

    installation_id: str
    path: Path
    backend: BackendKind
    wiki_id: str
    url: str
    wiki_name: str | None = None
    admin: str = "admin"
    admin_password: str | None = None
    env_file: Path | None = None
    database: Path | None = None
    settings_file: Path | None = None
    dev_mode: bool = False
    create_cluster: bool = False
    registry: str = ""


def validate_installation_id(installation_id: str) -> None:
    """Raise unless *installation_id* uses letters, digits, ``_`` or ``-``."""
    if not installation_id or not _INSTALLATION_ID_PATTERN.match(installation_id):
        raise ValidationFailed(
            f"Invalid installation ID '{installation_id}': "
            "only letters, digits, '_' and '-' are allowed"
        )


def create_installation(
    registry: StateRegistry,
    config: AppConfig,
    orchestrator: Orchestrator,
    request: CreateRequest,
    *,
    kind_manager: KindClusterManager | None = None,
    reporter: StepReporter | None = None,
) -> Installation:
    """Lay out, register, start and install a new farm.

    Inputs are validated and the target checked before anything is written.
    Later failures raise :class:`PartialFailure` and leave files in place.
    """
    validate_installation_id(request.installation_id)
    validate_wiki_id(request.wiki_id)
    domain, wiki_path = parse_wiki_url(request.url)
    validate_wiki_path(wiki_path)
    if request.create_cluster and request.backend is not BackendKind.KUBERNETES:
        raise ValidationFailed("a kind cluster can only be created for Kubernetes installations")
    for supplied in (request.env_file, request.database, request.settings_file):
        if supplied is not None and not Path(supplied).is_file():
            raise ValidationFailed(f"{supplied} does not exist")

    path = Path(request.path).expanduser().resolve()
    for existing in registry.list_installations():
        if existing.id == request.installation_id:
            raise Conflict(f"Installation ID '{request.installation_id}' is already used")
    if path.exists() and any(path.iterdir()):
        raise Conflict(f"{path} already exists and is not empty")
    orchestrator.check_dependencies()

    installation = Installation(
        id=request.installation_id,
        path=path,
        orchestrator=request.backend,
        dev_mode=request.dev_mode,
        managed_cluster=request.create_cluster,
        kind_cluster=cluster_name(request.installation_id) if request.create_cluster else "",
        registry=request.registry,
        local_cluster=request.create_cluster,
    )
    manager = kind_manager or KindClusterManager(orchestrator.templates, config.kubernetes)
    wikis = WikiRegistry(path)
    wiki_name = request.wiki_name or request.wiki_id

    def first_wiki() -> None:
        if request.database is not None:
            import_database(
                orchestrator,
                installation,
                request.wiki_id,
                request.database,
                EnvFile(installation.env_path).get("MYSQL_PASSWORD"),
            )
        else:
            MediaWikiInstaller(orchestrator).install(installation, wikis.get(request.wiki_id))

    steps: list[tuple[str, Callable[[], object]]] = [
        ("layout", lambda: _layout(path, request)),
        ("stack files", lambda: _copy_stack_files(config.templates_dir, request.backend, path)),
        ("env", lambda: _write_env(installation, request.env_file, domain)),
        ("wikis", lambda: wikis.add(request.wiki_id, domain, wiki_path, wiki_name)),
        ("admin", lambda: _write_admin(path, request.admin, request.admin_password)),
        ("credentials", lambda: ensure_observability_credentials(EnvFile(installation.env_path))),
    ]
    if request.create_cluster:
        steps.append(
            (
                "kind cluster",
                lambda: manager.ensure(installation.kind_cluster, *ports_from_env(path)),
            )
        )
    steps.extend(
        [
            ("config", lambda: orchestrator.init_config(installation)),
            ("register", lambda: registry.add_installation(installation)),
            ("start", lambda: orchestrator.start(installation)),
            ("install", first_wiki),
        ]
    )
    _run_steps(
        steps,
        reporter,
        guidance=(
            f"Files were left in place at {path}; run 'canastactl delete -i "
            f"{installation.id}' or remove the directory before retrying."
        ),
    )
    return installation


def delete_installation(
    registry: StateRegistry,
    orchestrator: Orchestrator,
    installation: Installation,
    *,
    schedule: BackupSchedule | None = None,
    kind_manager: KindClusterManager | None = None,
    reporter: StepReporter | None = None,
) -> list[str]:
    """Tear down *installation* and forget it; returns collected warnings."""
    warnings: list[str] = []

    try:
        ensure_running(orchestrator, installation)
        orchestrator.exec(installation.path, "web", IMAGE_CLEANUP_COMMAND)
    except FarmError as exc:
        warnings.append(f"could not clean up images inside the container: {exc}")
    _report(reporter, "image cleanup", "warning" if warnings else "success")

    orchestrator.destroy(installation.path)
    _report(reporter, "destroy")

    if installation.managed_cluster and installation.kind_cluster:
        manager = kind_manager or KindClusterManager(orchestrator.templates)
        try:
            manager.delete(installation.kind_cluster)
            _report(reporter, "kind cluster")
        except FarmError as exc:
            warnings.append(f"could not delete kind cluster {installation.kind_cluster}: {exc}")
            _report(reporter, "kind cluster", "warning", str(exc))

    if installation.path.exists():
        shutil.rmtree(installation.path)
    _report(reporter, "files")

    if schedule is not None:
        try:
            schedule.remove()
            _report(reporter, "schedule")
        except FarmError as exc:
            warnings.append(f"could not remove backup schedule: {exc}")
            _report(reporter, "schedule", "warning", str(exc))

    registry.remove_installation(installation.id)
    _report(reporter, "registry")
    return warnings


def restart(orchestrator: Orchestrator, installation: Installation) -> None:
    """Stop then start the installation."""
    orchestrator.stop(installation)
    orchestrator.start(installation)


def ensure_running(orchestrator: Orchestrator, installation: Installation) -> bool:
    """Start the installation unless it is already running.

    Returns whether a start was needed.
    """
    try:
        orchestrator.check_running_status(installation)
    except NotRunning:
        orchestrator.start(installation)
        return True
    return False


def set_dev_mode(
    registry: StateRegistry,
    config: AppConfig,
    orchestrator: Orchestrator,
    installation: Installation,
    enabled: bool,
    *,
    reporter: StepReporter | None = None,
) -> Installation:
    """Switch a Compose installation in or out of development mode.

    Enabling requires ``docker-compose.dev.yml`` in the installation; when it
    is absent a copy is taken from ``<templates_dir>/stacks/compose``. The
    services are stopped with the old file list and started with the new one.
    Returns the updated installation, or *installation* itself when the mode
    already matches.
    """
    if installation.orchestrator is not BackendKind.COMPOSE:
        raise ValidationFailed(
            "development mode is only supported for Docker Compose installations"
        )
    if installation.dev_mode == enabled:
        return installation
    if enabled:
        _ensure_dev_compose_file(config.templates_dir, installation.path)

    updated = replace(installation, dev_mode=enabled)
    _run_steps(
        [
            ("register", lambda: registry.update_installation(installation.id, dev_mode=enabled)),
            ("config", lambda: orchestrator.update_config(updated)),
            ("stop", lambda: orchestrator.stop(installation)),
            ("start", lambda: orchestrator.start(updated)),
        ],
        reporter,
        guidance=(
            "The registry already records the new mode; run 'canastactl restart -i "
            f"{installation.id}' once the cause is fixed."
        ),
    )
    return updated


def upgrade_installation(
    orchestrator: Orchestrator,
    installation: Installation,
    *,
    reporter: StepReporter | None = None,
) -> str:
    """Refresh images, regenerate config, restart and flush the wiki cache.

    Returns the backend's output from the image refresh.
    """
    output: list[str] = []
    _run_steps(
        [
            ("images", lambda: output.append(orchestrator.update(installation.path))),
            ("config", lambda: orchestrator.update_config(installation)),
            ("restart", lambda: restart(orchestrator, installation)),
            (
                "flush cache",
                lambda: orchestrator.exec(installation.path, "web", CACHE_FLUSH_COMMAND),
            ),
        ],
        reporter,
        guidance=f"Re-run 'canastactl upgrade -i {installation.id}' once the cause is fixed.",
    )
    return "".join(output)


# ----------------------------------------------------------------------
def _layout(path: Path, request: CreateRequest) -> None:
    for relative in INSTALLATION_DIRS:
        (path / relative).mkdir(parents=True, exist_ok=True)
    wiki_settings = path / WIKI_SETTINGS_DIR / request.wiki_id
    wiki_settings.mkdir(parents=True, exist_ok=True)
    if request.settings_file is not None:
        shutil.copy2(request.settings_file, wiki_settings / Path(request.settings_file).name)


def _copy_stack_files(templates_dir: Path, backend: BackendKind, destination: Path) -> None:
    source = Path(templates_dir) / "stacks" / backend.value
    if not source.is_dir():
        return
    for item in sorted(source.rglob("*")):
        target = destination / item.relative_to(source)
        if item.is_dir():
            target.mkdir(parents=True, exist_ok=True)
        elif not target.exists():
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(item, target)


def _ensure_dev_compose_file(templates_dir: Path, install_path: Path) -> None:
    target = install_path / DEV_COMPOSE_FILE
    if target.is_file():
        return
    source = Path(templates_dir) / "stacks" / BackendKind.COMPOSE.value / DEV_COMPOSE_FILE
    if not source.is_file():
        raise NotFound(f"{DEV_COMPOSE_FILE} not found in {install_path} or {source.parent}")
    shutil.copy2(source, target)


def _write_env(installation: Installation, user_env: Path | None, server_name: str) -> None:
    initial = Path(user_env).read_text(encoding="utf-8") if user_env is not None else ""
    atomic_write_text(installation.env_path, initial, mode=0o644)
    env_file = EnvFile(installation.env_path)
    env = env_file.read()
    defaults = {
        "MYSQL_PASSWORD": generate_password(),
        "WIKI_DB_PASSWORD": generate_password(),
        "MW_SECRET_KEY": secrets.token_hex(32),
        "MW_SITE_SERVER": f"https://{server_name}",
        "MW_SITE_FQDN": server_name,
    }
    missing = {key: value for key, value in defaults.items() if not env.get(key)}
    if missing:
        env_file.set_many(missing)


def _write_admin(path: Path, admin: str, password: str | None) -> None:
    atomic_write_text(path / ADMIN_FILE, admin + "\n", mode=0o600)
    atomic_write_text(
        path / ADMIN_PASSWORD_FILE, (password or generate_password()) + "\n", mode=0o600
    )


def _run_steps(
    steps: list[tuple[str, Callable[[], object]]],
    reporter: StepReporter | None,
    *,
    guidance: str,
) -> None:
    completed: list[str] = []
    for name, action in steps:
        try:
            action()
        except (FarmError, OSError) as exc:
            _report(reporter, name, "error", str(exc))
            raise PartialFailure(name, exc, completed=completed, guidance=guidance) from exc
        completed.append(name)
        _report(reporter, name)


def _report(
    reporter: StepReporter | None,
    name: str,
    status: str = "success",
    detail: object | None = None,
) -> None:
    if reporter is not None:
        reporter(name, status=status, detail=detail)


__all__ = [
    "CreateRequest",
    "create_installation",
    "delete_installation",
    "ensure_running",
    "restart",
    "set_dev_mode",
    "upgrade_installation",
    "validate_installation_id",
]
