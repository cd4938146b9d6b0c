"""Typer-powered command line interface for ``canastactl``.

Every command builds on one :class:`RuntimeContext` created in the root
callback. Commands that change an installation take the global lock and the
installation's own lock before touching anything, record their steps in the
operations log and translate farm errors into exit codes.
"""
from __future__ import annotations

import socket
import sys
import textwrap
from collections.abc import Iterator, Sequence
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import BackupPipeline
from .config import AppConfig, ConfigError, load_config
from .errors import ExitCode, FarmError, NotFound, exit_code_for
from .farm.envfile import EnvFile
from .farm.wikis import WikiRegistry
from .lifecycle import (
    CreateRequest,
    create_installation,
    delete_installation,
    restart,
    set_dev_mode,
    upgrade_installation,
)
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .maintenance import MaintenanceOptions, MaintenanceRunner
from .orchestrators import (
    KindClusterManager,
    Orchestrator,
    create_orchestrator,
    export_database,
    import_database,
)
from .schedule import BackupSchedule
from .settings import ConfigMutator
from .state import BackendKind, Installation, StateRegistry, StateRegistryError
from .templates import TemplateEngine
from .tenants import TenantManager

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to canastactl's YAML config file.",
)
ID_OPTION = typer.Option(
    None,
    "--id",
    "-i",
    help="Installation ID (defaults to the installation at --path).",
)
PATH_OPTION = typer.Option(
    None,
    "--path",
    "-p",
    help="Installation directory (defaults to the current directory).",
)
YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Skip the confirmation prompt.",
)
FORCE_OPTION = typer.Option(
    False,
    "--force",
    "-f",
    help="Allow settings canastactl does not recognise.",
)
NO_RESTART_OPTION = typer.Option(
    False,
    "--no-restart",
    help="Save the change without restarting the installation.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Manage multi-wiki MediaWiki farms on Docker Compose or Kubernetes.

        Each installation hosts one or more wikis behind a Caddy reverse proxy.
        Select an installation with --id or run commands from inside its
        directory.
        """
    ).strip(),
)
config_app = typer.Typer(help="View and change an installation's .env settings.")
backup_app = typer.Typer(help="Create, inspect and restore restic backups.")
schedule_app = typer.Typer(help="Manage recurring backups in the user's crontab.")
devmode_app = typer.Typer(help="Toggle development mode for Docker Compose installations.")
maintenance_app = typer.Typer(help="Run MediaWiki maintenance scripts in the web service.")

app.add_typer(config_app, name="config")
app.add_typer(backup_app, name="backup")
app.add_typer(schedule_app, name="schedule")
app.add_typer(devmode_app, name="devmode")
app.add_typer(maintenance_app, name="maintenance")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]", highlight=False)
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    registry = StateRegistry(config.registry_dir)
    try:
        registry.ensure_root()
    except OSError as exc:
        console.print(f"[red]Cannot create registry directory {config.registry_dir}: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        locks=LockManager(config.runtime_dir, default_timeout=config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the canastactl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"canastactl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]", highlight=False)
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _farm_error(op: OperationScope, exc: FarmError) -> NoReturn:
    """Report *exc* with the exit code its class maps to."""
    errors = [str(exc)]
    output = getattr(exc, "output", "")
    if output:
        errors.append(output.strip())
    _command_error(op, str(exc), rc=exit_code_for(exc), errors=errors)


@contextmanager
def _mutation_lock(
    runtime: RuntimeContext,
    op: OperationScope,
    installation_id: str,
) -> Iterator[None]:
    """Hold the global and installation locks for the enclosed block."""
    with ExitStack() as stack:
        try:
            bundle = stack.enter_context(runtime.locks.mutate_instances([installation_id]))
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        op.set_lock_wait_ms(bundle.wait_ms)
        yield


def _resolve_installation(
    runtime: RuntimeContext,
    op: OperationScope,
    installation_id: str | None,
    path: Path | None,
) -> Installation:
    try:
        installation = runtime.registry.resolve(installation_id, path)
    except FarmError as exc:
        _farm_error(op, exc)
    except StateRegistryError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))
    op.target.update({"kind": "installation", "id": installation.id})
    return installation


def _orchestrator(
    runtime: RuntimeContext,
    op: OperationScope,
    installation: Installation,
    *,
    check_dependencies: bool = True,
) -> Orchestrator:
    """Build the installation's backend, failing early when its tooling is absent."""
    orchestrator = create_orchestrator(installation, runtime.config, runtime.templates)
    if check_dependencies:
        try:
            orchestrator.check_dependencies()
        except FarmError as exc:
            _farm_error(op, exc)
    return orchestrator


def _kind_manager(runtime: RuntimeContext) -> KindClusterManager:
    return KindClusterManager(runtime.templates, runtime.config.kubernetes)


def _print_output(output: str) -> None:
    if output.strip():
        console.print(output.rstrip(), markup=False, highlight=False)


def _confirm(prompt: str, yes: bool, op: OperationScope) -> bool:
    if yes or typer.confirm(prompt, default=False):
        return True
    op.add_step("confirm", status="skipped", detail="user-declined")
    console.print("[yellow]Operation cancelled.[/yellow]")
    op.success("Operation cancelled.", changed=0)
    return False


def _schedule_for(runtime: RuntimeContext, installation: Installation) -> BackupSchedule:
    return BackupSchedule(
        installation,
        str(Path(sys.argv[0]).resolve()),
        log_file=runtime.config.backups.schedule_log,
    )


# ----------------------------------------------------------------------
# Installations
# ----------------------------------------------------------------------
@app.command("create")
def create_command(
    ctx: typer.Context,
    installation_id: str = typer.Option(..., "--id", "-i", help="ID of the new installation."),
    path: Path | None = typer.Option(
        None,
        "--path",
        "-p",
        help="Parent directory; the installation is created in <path>/<id>.",
    ),
    orchestrator_name: str | None = typer.Option(
        None,
        "--orchestrator",
        "-o",
        help="Backend to use (compose or kubernetes).",
    ),
    wiki_id: str = typer.Option(..., "--wiki", "-w", help="ID of the first wiki."),
    url: str = typer.Option("localhost", "--domain-name", "-n", help="URL of the first wiki."),
    site_name: str | None = typer.Option(
        None, "--site-name", help="Display name of the first wiki."
    ),
    admin: str = typer.Option("admin", "--admin", "-a", help="Initial wiki administrator."),
    password: str | None = typer.Option(
        None,
        "--password",
        help="Administrator password (generated when omitted).",
    ),
    env_file: Path | None = typer.Option(None, "--env-file", "-e", help="Seed .env file."),
    database: Path | None = typer.Option(
        None,
        "--database",
        "-d",
        help="Import this .sql or .sql.gz dump instead of running the installer.",
    ),
    settings_file: Path | None = typer.Option(
        None,
        "--wiki-settings",
        help="Per-wiki settings file copied into config/settings/wikis/<wiki>/.",
    ),
    dev_mode: bool = typer.Option(False, "--dev", help="Use the development compose files."),
    create_cluster: bool = typer.Option(
        False,
        "--create-cluster",
        help="Create a local kind cluster for a Kubernetes installation.",
    ),
    image_registry: str = typer.Option("", "--registry", help="Image registry address."),
) -> None:
    """Create an installation and its first wiki."""
    runtime = _get_runtime(ctx)
    target_dir = (path or Path.cwd()) / installation_id
    with runtime.logger.operation(
        "create",
        args={
            "id": installation_id,
            "path": str(target_dir),
            "orchestrator": orchestrator_name,
            "wiki": wiki_id,
            "url": url,
            "dev": dev_mode,
            "create_cluster": create_cluster,
        },
        target={"kind": "installation", "id": installation_id},
    ) as op:
        with _mutation_lock(runtime, op, installation_id):
            try:
                backend = BackendKind.parse(
                    orchestrator_name or runtime.config.default_orchestrator
                )
                orchestrator = create_orchestrator(backend, runtime.config, runtime.templates)
                request = CreateRequest(
                    installation_id=installation_id,
                    path=target_dir,
                    backend=backend,
                    wiki_id=wiki_id,
                    url=url,
                    wiki_name=site_name,
                    admin=admin,
                    admin_password=password,
                    env_file=env_file,
                    database=database,
                    settings_file=settings_file,
                    dev_mode=dev_mode,
                    create_cluster=create_cluster,
                    registry=image_registry,
                )
                installation = create_installation(
                    runtime.registry,
                    runtime.config,
                    orchestrator,
                    request,
                    kind_manager=_kind_manager(runtime),
                    reporter=op.step_reporter("create."),
                )
            except FarmError as exc:
                _farm_error(op, exc)
            console.print(
                f"[green]Installation '{installation.id}' created at {installation.path}.[/green]"
            )
            op.success("Installation created.", changed=1, context=installation.to_dict())


@app.command("delete")
def delete_command(
    ctx: typer.Context,
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Delete an installation, its containers, volumes and files."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "delete",
        args={"id": installation_id, "path": str(path) if path else None, "yes": yes},
        target={"kind": "installation"},
    ) as op:
        installation = _resolve_installation(runtime, op, installation_id, path)
        with _mutation_lock(runtime, op, installation.id):
            if not _confirm(
                f"This will permanently delete installation '{installation.id}' "
                "and all its data. Continue?",
                yes,
                op,
            ):
                return
            try:
                warnings = delete_installation(
                    runtime.registry,
                    _orchestrator(runtime, op, installation),
                    installation,
                    schedule=_schedule_for(runtime, installation),
                    kind_manager=_kind_manager(runtime),
                    reporter=op.step_reporter("delete."),
                )
            except FarmError as exc:
                _farm_error(op, exc)
            for warning in warnings:
                console.print(f"[yellow]Warning:[/yellow] {warning}", highlight=False)
            console.print(f"[yellow]Installation '{installation.id}' deleted.[/yellow]")
            if warnings:
                op.warning("Installation deleted with warnings.", warnings=warnings, changed=1)
            else:
                op.success("Installation deleted.", changed=1)


@app.command("list")
def list_command(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List registered installations."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"json": json_output},
        target={"kind": "installation", "scope": "registry"},
    ) as op:
        installations = runtime.registry.list_installations()
        if json_output:
            console.print_json(
                data={"installations": [item.to_dict() for item in installations]}
            )
            op.success("Reported installation list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Path")
        table.add_column("Orchestrator")
        table.add_column("Dev mode")
        table.add_column("Kind cluster")
        if not installations:
            table.add_row("(none)", "", "", "", "")
        for installation in installations:
            table.add_row(
                installation.id,
                str(installation.path),
                installation.orchestrator.value,
                "yes" if installation.dev_mode else "no",
                installation.kind_cluster,
            )
        console.print(table)
        op.success("Reported installation list.", changed=0)


def _lifecycle_command(
    ctx: typer.Context,
    name: str,
    installation_id: str | None,
    path: Path | None,
) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        name,
        args={"id": installation_id, "path": str(path) if path else None},
        target={"kind": "installation"},
    ) as op:
        installation = _resolve_installation(runtime, op, installation_id, path)
        with _mutation_lock(runtime, op, installation.id):
            orchestrator = _orchestrator(runtime, op, installation)
            try:
                if name == "start":
                    orchestrator.start(installation)
                elif name == "stop":
                    orchestrator.stop(installation)
                else:
                    restart(orchestrator, installation)
            except FarmError as exc:
                _farm_error(op, exc)
            op.add_step(f"{installation.orchestrator.value}.{name}")
            past = {"start": "started", "stop": "stopped", "restart": "restarted"}[name]
            console.print(f"[green]Installation '{installation.id}' {past}.[/green]")
            op.success(f"Installation {past}.", changed=1)


@app.command("start")
def start_command(
    ctx: typer.Context,
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Start an installation's services."""
    _lifecycle_command(ctx, "start", installation_id, path)


@app.command("stop")
def stop_command(
    ctx: typer.Context,
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Stop an installation's services."""
    _lifecycle_command(ctx, "stop", installation_id, path)


@app.command("restart")
def restart_command(
    ctx: typer.Context,
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Stop and start an installation's services."""
    _lifecycle_command(ctx, "restart", installation_id, path)


@app.command("upgrade")
def upgrade_command(
    ctx: typer.Context,
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Refresh container images and restart with regenerated config."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "upgrade",
        args={"id": installation_id, "path": str(path) if path else None},
        target={"kind": "installation"},
    ) as op:
        installation = _resolve_installation(runtime, op, installation_id, path)
        with _mutation_lock(runtime, op, installation.id):
            orchestrator = _orchestrator(runtime, op, installation)
            try:
                output = upgrade_installation(
                    orchestrator, installation, reporter=op.step_reporter("upgrade.")
                )
            except FarmError as exc:
                _farm_error(op, exc)
            _print_output(output)
            console.print(f"[green]Installation '{installation.id}' upgraded.[/green]")
            op.success("Installation upgraded.", changed=1)


def _devmode_command(
    ctx: typer.Context,
    enabled: bool,
    installation_id: str | None,
    path: Path | None,
) -> None:
    runtime = _get_runtime(ctx)
    state = "enabled" if enabled else "disabled"
    with runtime.logger.operation(
        f"devmode {'enable' if enabled else 'disable'}",
        args={"id": installation_id, "path": str(path) if path else None},
        target={"kind": "installation"},
    ) as op:
        installation = _resolve_installation(runtime, op, installation_id, path)
        with _mutation_lock(runtime, op, installation.id):
            orchestrator = _orchestrator(runtime, op, installation)
            try:
                updated = set_dev_mode(
                    runtime.registry,
                    runtime.config,
                    orchestrator,
                    installation,
                    enabled,
                    reporter=op.step_reporter("devmode."),
                )
            except FarmError as exc:
                _farm_error(op, exc)
            if updated is installation:
                console.print(f"Development mode is already {state} for '{installation.id}'.")
                op.success(f"Development mode already {state}.", changed=0)
                return
            console.print(f"[green]Development mode {state} for '{installation.id}'.[/green]")
            op.success(f"Development mode {state}.", changed=1, context=updated.to_dict())


@devmode_app.command("enable")
def devmode_enable(
    ctx: typer.Context,
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Restart with docker-compose.dev.yml layered on top."""
    _devmode_command(ctx, True, installation_id, path)


@devmode_app.command("disable")
def devmode_disable(
    ctx: typer.Context,
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Restart with the regular compose files only."""
    _devmode_command(ctx, False, installation_id, path)


@app.command("import-db")
def import_db_command(
    ctx: typer.Context,
    wiki_id: str = typer.Option(..., "--wiki", "-w", help="Wiki whose database is replaced."),
    dump: Path = typer.Option(..., "--file", "-f", help="A .sql or .sql.gz dump."),
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Import a database dump into an existing wiki's database."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "import-db",
        args={"wiki": wiki_id, "file": str(dump)},
        target={"kind": "installation"},
    ) as op:
        installation = _resolve_installation(runtime, op, installation_id, path)
        with _mutation_lock(runtime, op, installation.id):
            orchestrator = _orchestrator(runtime, op, installation)
            try:
                password = EnvFile(installation.env_path).get("MYSQL_PASSWORD")
                import_database(orchestrator, installation, wiki_id, dump, password)
            except FarmError as exc:
                _farm_error(op, exc)
            op.add_step("db.import", detail=wiki_id)
            console.print(f"[green]Imported {dump} into '{wiki_id}'.[/green]")
            op.success("Database imported.", changed=1)


@app.command("export")
def export_command(
    ctx: typer.Context,
    wiki_id: str = typer.Option(..., "--wiki", "-w", help="Wiki whose database is dumped."),
    output: Path | None = typer.Option(
        None,
        "--file",
        "-f",
        help="Destination .sql file (defaults to ./<wiki>.sql).",
    ),
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Dump a wiki's database to a file on the host."""
    runtime = _get_runtime(ctx)
    target_file = output or Path.cwd() / f"{wiki_id}.sql"
    with runtime.logger.operation(
        "export",
        args={"wiki": wiki_id, "file": str(target_file)},
        target={"kind": "installation"},
    ) as op:
        installation = _resolve_installation(runtime, op, installation_id, path)
        orchestrator = _orchestrator(runtime, op, installation)
        try:
            if not WikiRegistry(installation.path).exists(wiki_id):
                raise NotFound(f"Wiki '{wiki_id}' does not exist")
            orchestrator.check_running_status(installation)
            password = EnvFile(installation.env_path).get("MYSQL_PASSWORD")
            export_database(orchestrator, installation, wiki_id, target_file, password)
        except FarmError as exc:
            _farm_error(op, exc)
        op.add_step("db.export", detail=wiki_id)
        console.print(f"[green]Exported '{wiki_id}' to {target_file}.[/green]")
        op.success("Database exported.", changed=0, context={"file": str(target_file)})


# ----------------------------------------------------------------------
# Wikis
# ----------------------------------------------------------------------
@app.command("add")
def add_command(
    ctx: typer.Context,
    wiki_id: str = typer.Option(..., "--wiki", "-w", help="ID of the new wiki."),
    url: str = typer.Option(..., "--url", "-u", help="URL of the new wiki (domain[/path])."),
    site_name: str | None = typer.Option(None, "--site-name", help="Display name of the wiki."),
    database: Path | None = typer.Option(
        None,
        "--database",
        "-d",
        help="Import this dump instead of running the installer.",
    ),
    settings_file: Path | None = typer.Option(
        None,
        "--wiki-settings",
        help="Per-wiki settings file copied into config/settings/wikis/<wiki>/.",
    ),
    admin: str | None = typer.Option(
        None,
        "--admin",
        "-a",
        help="Administrator name (defaults to the installation's admin).",
    ),
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Add a wiki to an installation."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "add",
        args={"wiki": wiki_id, "url": url, "database": str(database) if database else None},
        target={"kind": "installation"},
    ) as op:
        installation = _resolve_installation(runtime, op, installation_id, path)
        with _mutation_lock(runtime, op, installation.id):
            manager = TenantManager(
                installation,
                _orchestrator(runtime, op, installation),
                reporter=op.step_reporter("wiki."),
            )
            try:
                wiki = manager.add_wiki(
                    wiki_id,
                    url,
                    site_name,
                    database=database,
                    settings_file=settings_file,
                    admin=admin,
                )
            except FarmError as exc:
                _farm_error(op, exc)
            console.print(f"[green]Wiki '{wiki.id}' added at {wiki.url}.[/green]")
            op.success("Wiki added.", changed=1, context=wiki.to_dict())


@app.command("remove")
def remove_command(
    ctx: typer.Context,
    wiki_id: str = typer.Option(..., "--wiki", "-w", help="ID of the wiki to remove."),
    yes: bool = YES_OPTION,
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Remove a wiki, its database and its files."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "remove",
        args={"wiki": wiki_id, "yes": yes},
        target={"kind": "installation"},
    ) as op:
        installation = _resolve_installation(runtime, op, installation_id, path)
        with _mutation_lock(runtime, op, installation.id):
            if not _confirm(
                f"This will delete wiki '{wiki_id}' and its database. Continue?",
                yes,
                op,
            ):
                return
            manager = TenantManager(
                installation,
                _orchestrator(runtime, op, installation),
                reporter=op.step_reporter("wiki."),
            )
            try:
                manager.remove_wiki(wiki_id)
            except FarmError as exc:
                _farm_error(op, exc)
            console.print(f"[yellow]Wiki '{wiki_id}' removed.[/yellow]")
            op.success("Wiki removed.", changed=1)


# ----------------------------------------------------------------------
# Maintenance
# ----------------------------------------------------------------------
@maintenance_app.command("update")
def maintenance_update(
    ctx: typer.Context,
    wiki: str | None = typer.Option(
        None, "--wiki", "-w", help="Update only this wiki (all wikis when omitted)."
    ),
    skip_jobs: bool = typer.Option(False, "--skip-jobs", help="Do not run runJobs.php."),
    skip_smw: bool = typer.Option(
        False, "--skip-smw", help="Do not rebuild Semantic MediaWiki data."
    ),
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Run update.php, the job queue and the SMW rebuild for each wiki."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "maintenance update",
        args={"wiki": wiki, "skip_jobs": skip_jobs, "skip_smw": skip_smw},
        target={"kind": "installation"},
    ) as op:
        installation = _resolve_installation(runtime, op, installation_id, path)
        with _mutation_lock(runtime, op, installation.id):
            runner = MaintenanceRunner(
                installation,
                _orchestrator(runtime, op, installation),
                reporter=op.step_reporter("maintenance."),
            )
            try:
                warnings = runner.update(
                    wiki, MaintenanceOptions(skip_jobs=skip_jobs, skip_smw=skip_smw)
                )
            except FarmError as exc:
                _farm_error(op, exc)
            for warning in warnings:
                console.print(f"[yellow]Warning:[/yellow] {warning}", highlight=False)
            console.print("[green]Maintenance completed.[/green]")
            if warnings:
                op.warning("Maintenance completed with warnings.", warnings=warnings, changed=1)
            else:
                op.success("Maintenance completed.", changed=1)


# ----------------------------------------------------------------------
# Settings
# ----------------------------------------------------------------------
@config_app.command("get")
def config_get(
    ctx: typer.Context,
    keys: list[str] | None = typer.Argument(None, help="Keys to show (all when omitted)."),
    force: bool = FORCE_OPTION,
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Show settings from the installation's .env."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config get",
        args={"keys": list(keys or []), "force": force},
        target={"kind": "installation"},
    ) as op:
        installation = _resolve_installation(runtime, op, installation_id, path)
        mutator = ConfigMutator(
            installation, _orchestrator(runtime, op, installation, check_dependencies=False)
        )
        try:
            values = mutator.get(keys, force=force)
        except FarmError as exc:
            _farm_error(op, exc)
        if keys and len(keys) == 1:
            console.print(next(iter(values.values())), markup=False, highlight=False)
        else:
            for key, value in values.items():
                console.print(f"{key}={value}", markup=False, highlight=False)
        op.success("Reported settings.", changed=0)


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    pairs: list[str] = typer.Argument(..., help="KEY=VALUE assignments."),
    force: bool = FORCE_OPTION,
    no_restart: bool = NO_RESTART_OPTION,
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Change settings, apply their side effects and restart."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config set",
        args={"keys": [pair.split("=", 1)[0] for pair in pairs], "force": force},
        target={"kind": "installation"},
    ) as op:
        installation = _resolve_installation(runtime, op, installation_id, path)
        with _mutation_lock(runtime, op, installation.id):
            mutator = ConfigMutator(
                installation,
                _orchestrator(runtime, op, installation),
                _kind_manager(runtime),
                reporter=op.step_reporter("config."),
            )
            try:
                keys = mutator.set(pairs, force=force, restart=not no_restart)
            except FarmError as exc:
                _farm_error(op, exc)
            for key in keys:
                console.print(f"Saved {key}", highlight=False)
            if no_restart:
                console.print("Settings saved. Restart skipped (--no-restart).")
            console.print("[green]Done.[/green]")
            op.success("Settings saved.", changed=len(keys))


@config_app.command("unset")
def config_unset(
    ctx: typer.Context,
    keys: list[str] = typer.Argument(..., help="Keys to remove."),
    force: bool = FORCE_OPTION,
    no_restart: bool = NO_RESTART_OPTION,
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Remove settings, reverting their side effects, and restart."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config unset",
        args={"keys": list(keys), "force": force},
        target={"kind": "installation"},
    ) as op:
        installation = _resolve_installation(runtime, op, installation_id, path)
        with _mutation_lock(runtime, op, installation.id):
            mutator = ConfigMutator(
                installation,
                _orchestrator(runtime, op, installation),
                _kind_manager(runtime),
                reporter=op.step_reporter("config."),
            )
            try:
                removed = mutator.unset(keys, force=force, restart=not no_restart)
            except FarmError as exc:
                _farm_error(op, exc)
            for key in removed:
                console.print(f"Removed {key}", highlight=False)
            if no_restart:
                console.print("Settings removed. Restart skipped (--no-restart).")
            console.print("[green]Done.[/green]")
            op.success("Settings removed.", changed=len(removed))


# ----------------------------------------------------------------------
# Backups
# ----------------------------------------------------------------------
@contextmanager
def _backup_scope(
    ctx: typer.Context,
    name: str,
    installation_id: str | None,
    path: Path | None,
    *,
    mutating: bool,
    args: dict[str, object] | None = None,
) -> Iterator[tuple[OperationScope, BackupPipeline]]:
    """Open the operation log, resolve the installation and build a pipeline."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        f"backup {name}",
        args=args or {},
        target={"kind": "installation"},
    ) as op:
        installation = _resolve_installation(runtime, op, installation_id, path)
        with ExitStack() as stack:
            if mutating:
                stack.enter_context(_mutation_lock(runtime, op, installation.id))
            pipeline = BackupPipeline(
                installation,
                _orchestrator(runtime, op, installation),
                socket.gethostname(),
                reporter=op.step_reporter("backup."),
            )
            try:
                yield op, pipeline
            except FarmError as exc:
                _farm_error(op, exc)


@backup_app.command("init")
def backup_init(
    ctx: typer.Context,
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Initialise the restic repository."""
    with _backup_scope(ctx, "init", installation_id, path, mutating=True) as (op, pipeline):
        _print_output(pipeline.init())
        op.success("Backup repository initialised.", changed=1)


@backup_app.command("create")
def backup_create(
    ctx: typer.Context,
    tag: str = typer.Option(..., "--tag", "-t", help="Label recorded with the snapshot."),
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Dump every wiki database and upload a snapshot."""
    with _backup_scope(
        ctx, "create", installation_id, path, mutating=True, args={"tag": tag}
    ) as (op, pipeline):
        _print_output(pipeline.create(tag))
        console.print("[green]Backup completed.[/green]")
        op.success("Backup created.", changed=1, backups=[tag])


@backup_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    snapshot: str = typer.Option(..., "--snapshot", "-s", help="Snapshot ID to restore."),
    skip_safety: bool = typer.Option(
        False,
        "--skip-safety-backup",
        help="Do not take a safety snapshot before restoring.",
    ),
    wiki: str | None = typer.Option(
        None,
        "--wiki",
        "-w",
        help="Restore only this wiki's database and files.",
    ),
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Restore files and databases from a snapshot."""
    with _backup_scope(
        ctx,
        "restore",
        installation_id,
        path,
        mutating=True,
        args={"snapshot": snapshot, "skip_safety": skip_safety, "wiki": wiki},
    ) as (op, pipeline):
        pipeline.restore(snapshot, skip_safety=skip_safety, wiki=wiki)
        scope = f"wiki '{wiki}'" if wiki else "installation"
        console.print(f"[green]Restore completed for {scope}.[/green]")
        op.success("Snapshot restored.", changed=1, backups=[snapshot])


@backup_app.command("list")
def backup_list(
    ctx: typer.Context,
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """List snapshots in the repository."""
    with _backup_scope(ctx, "list", installation_id, path, mutating=False) as (op, pipeline):
        _print_output(pipeline.list())
        op.success("Listed snapshots.", changed=0)


@backup_app.command("delete")
def backup_delete(
    ctx: typer.Context,
    snapshot: str = typer.Option(..., "--snapshot", "-s", help="Snapshot ID to forget."),
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Forget a snapshot (repository data is not pruned)."""
    with _backup_scope(
        ctx, "delete", installation_id, path, mutating=True, args={"snapshot": snapshot}
    ) as (op, pipeline):
        _print_output(pipeline.delete(snapshot))
        op.success("Snapshot forgotten.", changed=1, backups=[snapshot])


@backup_app.command("unlock")
def backup_unlock(
    ctx: typer.Context,
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Remove stale repository locks."""
    with _backup_scope(ctx, "unlock", installation_id, path, mutating=True) as (op, pipeline):
        _print_output(pipeline.unlock())
        op.success("Repository unlocked.", changed=1)


@backup_app.command("check")
def backup_check(
    ctx: typer.Context,
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Verify repository integrity."""
    with _backup_scope(ctx, "check", installation_id, path, mutating=False) as (op, pipeline):
        _print_output(pipeline.check())
        op.success("Repository checked.", changed=0)


@backup_app.command("files")
def backup_files(
    ctx: typer.Context,
    snapshot: str = typer.Option(..., "--snapshot", "-s", help="Snapshot ID to inspect."),
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """List the files stored in a snapshot."""
    with _backup_scope(
        ctx, "files", installation_id, path, mutating=False, args={"snapshot": snapshot}
    ) as (op, pipeline):
        _print_output(pipeline.files(snapshot))
        op.success("Listed snapshot files.", changed=0)


@backup_app.command("diff")
def backup_diff(
    ctx: typer.Context,
    first: str = typer.Argument(..., help="First snapshot ID."),
    second: str = typer.Argument(..., help="Second snapshot ID."),
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Show the differences between two snapshots."""
    with _backup_scope(
        ctx, "diff", installation_id, path, mutating=False, args={"first": first, "second": second}
    ) as (op, pipeline):
        _print_output(pipeline.diff(first, second))
        op.success("Compared snapshots.", changed=0)


# ----------------------------------------------------------------------
# Schedule
# ----------------------------------------------------------------------
@schedule_app.command("set")
def schedule_set(
    ctx: typer.Context,
    expression: list[str] = typer.Argument(..., help="Cron expression, e.g. '0 2 * * *'."),
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Install or replace the recurring backup job."""
    runtime = _get_runtime(ctx)
    cron = " ".join(expression)
    with runtime.logger.operation(
        "schedule set",
        args={"cron": cron},
        target={"kind": "installation"},
    ) as op:
        installation = _resolve_installation(runtime, op, installation_id, path)
        with _mutation_lock(runtime, op, installation.id):
            try:
                replaced = _schedule_for(runtime, installation).set(cron)
            except FarmError as exc:
                _farm_error(op, exc)
            verb = "Updated" if replaced else "Added"
            console.print(f"[green]{verb} backup schedule '{cron}'.[/green]", highlight=False)
            op.success(f"{verb} backup schedule.", changed=1)


@schedule_app.command("list")
def schedule_list(
    ctx: typer.Context,
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Show the recurring backup schedule."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "schedule list",
        target={"kind": "installation"},
    ) as op:
        installation = _resolve_installation(runtime, op, installation_id, path)
        try:
            cron = _schedule_for(runtime, installation).list()
        except FarmError as exc:
            _farm_error(op, exc)
        if cron is None:
            console.print(f"No backup schedule for '{installation.id}'.")
        else:
            console.print(cron, markup=False, highlight=False)
        op.success("Reported backup schedule.", changed=0, context={"cron": cron})


@schedule_app.command("remove")
def schedule_remove(
    ctx: typer.Context,
    installation_id: str | None = ID_OPTION,
    path: Path | None = PATH_OPTION,
) -> None:
    """Remove the recurring backup job."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "schedule remove",
        target={"kind": "installation"},
    ) as op:
        installation = _resolve_installation(runtime, op, installation_id, path)
        with _mutation_lock(runtime, op, installation.id):
            try:
                removed = _schedule_for(runtime, installation).remove()
            except FarmError as exc:
                _farm_error(op, exc)
            if removed:
                console.print("[yellow]Backup schedule removed.[/yellow]")
                op.success("Backup schedule removed.", changed=1)
            else:
                console.print(f"No backup schedule for '{installation.id}'.")
                op.success("No backup schedule to remove.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
