"""Add and remove wikis in a farm.

Both operations run as an ordered list of named steps. Validation and
conflict checks happen before the first side effect; after that a failing
step raises :class:`PartialFailure` naming the step and the ones that had
already completed.
"""
from __future__ import annotations

import shutil
from collections.abc import Callable
from pathlib import Path

from .errors import Conflict, FarmError, NotFound, PartialFailure, RemoveLast
from .farm.envfile import EnvFile
from .farm.wikis import (
    Wiki,
    WikiRegistry,
    join_url,
    parse_wiki_url,
    validate_wiki_id,
    validate_wiki_path,
)
from .logging import StepReporter
from .orchestrators.base import DEFAULT_DB_PASSWORD, Orchestrator, import_database, shell_quote
from .state import Installation

WIKI_SETTINGS_DIR = Path("config") / "settings" / "wikis"
MEDIA_DIRS = ("images", "public_assets")
ADMIN_FILE = ".admin"
ADMIN_PASSWORD_FILE = ".admin-password"
DB_WAIT_COMMAND = "/wait-for-it.sh -t 60 db:3306"


def _read_first_line(path: Path) -> str:
    if not path.exists():
        raise NotFound(f"{path} does not exist")
    lines = path.read_text(encoding="utf-8").splitlines()
    return lines[0].strip() if lines else ""


class MediaWikiInstaller:
    """Run MediaWiki's ``install.php`` for a new wiki inside ``web``."""

    def __init__(self, orchestrator: Orchestrator) -> None:
        self.orchestrator = orchestrator

    def install(self, installation: Installation, wiki: Wiki, *, admin: str | None = None) -> None:
        """Create the database and tables for *wiki*.

        The generated ``LocalSettings.php`` is written to ``/tmp`` in the
        container so the farm's own settings files are never touched.
        """
        path = installation.path
        admin_name = admin or _read_first_line(path / ADMIN_FILE)
        admin_password = _read_first_line(path / ADMIN_PASSWORD_FILE)
        db_password = EnvFile(installation.env_path).get("MYSQL_PASSWORD") or DEFAULT_DB_PASSWORD
        self.orchestrator.exec(path, "web", DB_WAIT_COMMAND)
        command = " ".join(
            [
                "php maintenance/install.php",
                "--skins='Vector'",
                "--dbserver=db",
                f"--dbname={shell_quote(wiki.id)}",
                "--confpath=/tmp",
                "--scriptpath=/w",
                f"--server={shell_quote('https://' + wiki.server_name)}",
                "--dbuser='root'",
                f"--dbpass={shell_quote(db_password)}",
                f"--pass={shell_quote(admin_password)}",
                shell_quote(wiki.name),
                shell_quote(admin_name),
            ]
        )
        self.orchestrator.exec(path, "web", command)


class TenantManager:
    """Add and remove wikis for one installation."""

    def __init__(
        self,
        installation: Installation,
        orchestrator: Orchestrator,
        installer: MediaWikiInstaller | None = None,
        reporter: StepReporter | None = None,
    ) -> None:
        """Bind the manager to an installation, its backend and installer."""
        self.installation = installation
        self.orchestrator = orchestrator
        self.installer = installer or MediaWikiInstaller(orchestrator)
        self.reporter = reporter
        self.wikis = WikiRegistry(installation.path)

    def add_wiki(
        self,
        wiki_id: str,
        url: str,
        name: str | None = None,
        *,
        database: Path | None = None,
        settings_file: Path | None = None,
        admin: str | None = None,
    ) -> Wiki:
        """Install a new wiki and route traffic to it."""
        validate_wiki_id(wiki_id)
        domain, path = parse_wiki_url(url)
        validate_wiki_path(path)
        self.orchestrator.check_running_status(self.installation)
        if self.wikis.exists(wiki_id):
            raise Conflict(f"Wiki '{wiki_id}' already exists")
        if self.wikis.url_exists(domain, path):
            raise Conflict(f"A wiki already exists at {join_url(domain, path)}")
        for supplied in (database, settings_file):
            if supplied is not None and not Path(supplied).is_file():
                raise NotFound(f"{supplied} does not exist")

        wiki = Wiki(id=wiki_id, url=join_url(domain, path), name=name or wiki_id)
        settings_dir = self.installation.path / WIKI_SETTINGS_DIR / wiki_id
        steps: list[tuple[str, Callable[[], object]]] = []
        if database is not None:
            steps.append(
                (
                    "import database",
                    lambda: import_database(
                        self.orchestrator,
                        self.installation,
                        wiki_id,
                        database,
                        EnvFile(self.installation.env_path).get("MYSQL_PASSWORD"),
                    ),
                )
            )
        steps.append(("settings", lambda: _copy_settings(settings_dir, settings_file)))
        if database is None:
            steps.append(
                ("install", lambda: self.installer.install(self.installation, wiki, admin=admin))
            )
        steps.extend(
            [
                ("registry", lambda: self.wikis.add(wiki_id, domain, path, wiki.name)),
                ("routing", lambda: self.orchestrator.update_config(self.installation)),
                ("restart", self._restart),
            ]
        )
        self._run_steps(steps)
        return wiki

    def remove_wiki(self, wiki_id: str) -> None:
        """Delete a wiki's settings, database and media, then unroute it."""
        wikis = self.wikis.read()
        if wiki_id not in {wiki.id for wiki in wikis}:
            raise NotFound(f"Wiki '{wiki_id}' does not exist")
        if len(wikis) == 1:
            raise RemoveLast("cannot remove the last wiki")
        self.orchestrator.check_running_status(self.installation)

        path = self.installation.path
        self._run_steps(
            [
                ("settings", lambda: _remove_tree(path / WIKI_SETTINGS_DIR / wiki_id)),
                ("database", lambda: self._drop_database(wiki_id)),
                ("media", lambda: [_remove_tree(path / name / wiki_id) for name in MEDIA_DIRS]),
                ("registry", lambda: self.wikis.remove(wiki_id)),
                ("routing", lambda: self.orchestrator.update_config(self.installation)),
                ("restart", self._restart),
            ]
        )

    # ------------------------------------------------------------------
    def _drop_database(self, wiki_id: str) -> None:
        password = EnvFile(self.installation.env_path).get("MYSQL_PASSWORD") or DEFAULT_DB_PASSWORD
        self.orchestrator.exec(
            self.installation.path,
            "db",
            f"echo 'DROP DATABASE IF EXISTS {wiki_id};' "
            f"| mysql -h db -u root -p{shell_quote(password)}",
        )

    def _restart(self) -> None:
        self.orchestrator.stop(self.installation)
        self.orchestrator.start(self.installation)

    def _run_steps(self, steps: list[tuple[str, Callable[[], object]]]) -> None:
        completed: list[str] = []
        for name, action in steps:
            try:
                action()
            except (FarmError, OSError) as exc:
                self._report(name, status="error", detail=str(exc))
                raise PartialFailure(name, exc, completed=completed) from exc
            completed.append(name)
            self._report(name)

    def _report(self, name: str, status: str = "success", detail: object | None = None) -> None:
        if self.reporter is not None:
            self.reporter(name, status=status, detail=detail)


def _copy_settings(settings_dir: Path, settings_file: Path | None) -> None:
    settings_dir.mkdir(parents=True, exist_ok=True)
    if settings_file is not None:
        source = Path(settings_file)
        shutil.copy2(source, settings_dir / source.name)


def _remove_tree(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


__all__ = ["MediaWikiInstaller", "TenantManager", "WIKI_SETTINGS_DIR"]
