"""Tests for adding and removing wikis."""
from __future__ import annotations

from pathlib import Path

import pytest
from conftest import FakeOrchestrator, write_farm

from canastactl.errors import (
    CommandFailed,
    Conflict,
    NotFound,
    NotRunning,
    PartialFailure,
    RemoveLast,
    ValidationFailed,
)
from canastactl.farm.wikis import WikiRegistry
from canastactl.state import Installation
from canastactl.tenants import WIKI_SETTINGS_DIR, TenantManager


@pytest.fixture
def admin_farm(farm: Installation) -> Installation:
    (farm.path / ".admin").write_text("Admin\n", encoding="utf-8")
    (farm.path / ".admin-password").write_text("s3cret pass\n", encoding="utf-8")
    return farm


def test_add_wiki_runs_steps_in_order(
    admin_farm: Installation, orchestrator: FakeOrchestrator
) -> None:
    steps: list[str] = []

    def reporter(name: str, status: str = "success", detail: object | None = None) -> None:
        steps.append(name)

    wiki = TenantManager(admin_farm, orchestrator, reporter=reporter).add_wiki(
        "docs", "localhost/docs/", "Documentation"
    )

    assert wiki.url == "localhost/docs"
    assert steps == ["settings", "install", "registry", "routing", "restart"]
    assert orchestrator.names() == [
        "check_running_status",
        "exec",
        "exec",
        "update_config",
        "stop",
        "start",
    ]
    wait, install = orchestrator.commands()
    assert wait.startswith("/wait-for-it.sh")
    assert install.startswith("php maintenance/install.php")
    assert "--dbname='docs'" in install
    assert "--confpath=/tmp" in install
    assert "--server='https://localhost'" in install
    assert "--dbpass='secret'" in install
    assert install.endswith("--pass='s3cret pass' 'Documentation' 'Admin'")

    registry = WikiRegistry(admin_farm.path)
    assert registry.ids() == ["main", "docs"]
    assert registry.get("docs").name == "Documentation"
    assert (admin_farm.path / WIKI_SETTINGS_DIR / "docs").is_dir()
    caddyfile = (admin_farm.path / "config" / "Caddyfile").read_text(encoding="utf-8")
    assert "localhost {" in caddyfile


def test_add_wiki_admin_override(admin_farm: Installation, orchestrator: FakeOrchestrator) -> None:
    TenantManager(admin_farm, orchestrator).add_wiki("blog", "blog.example.com", admin="Root")
    assert orchestrator.commands()[-1].endswith("'blog' 'Root'")


def test_add_wiki_with_database_skips_installer(
    admin_farm: Installation, orchestrator: FakeOrchestrator, tmp_path: Path
) -> None:
    dump = tmp_path / "docs.sql"
    dump.write_text("", encoding="utf-8")
    settings = tmp_path / "Docs.php"
    settings.write_text("<?php\n", encoding="utf-8")

    TenantManager(admin_farm, orchestrator).add_wiki(
        "docs", "localhost/docs", database=dump, settings_file=settings
    )

    assert orchestrator.calls[1] == ("copy_to", "db", str(dump), "/tmp/docs.sql")
    assert not any("install.php" in command for command in orchestrator.commands())
    assert "mysql --no-defaults -uroot -p'secret' docs < /tmp/docs.sql" in orchestrator.commands()
    assert (admin_farm.path / WIKI_SETTINGS_DIR / "docs" / "Docs.php").is_file()


def test_add_wiki_validates_before_side_effects(
    admin_farm: Installation, orchestrator: FakeOrchestrator, tmp_path: Path
) -> None:
    manager = TenantManager(admin_farm, orchestrator)

    with pytest.raises(ValidationFailed):
        manager.add_wiki("bad-id", "localhost/x")
    with pytest.raises(ValidationFailed):
        manager.add_wiki("docs", "localhost/images")
    assert orchestrator.calls == []

    with pytest.raises(Conflict, match="already exists"):
        manager.add_wiki("main", "other.example.com")
    with pytest.raises(Conflict, match="localhost"):
        manager.add_wiki("second", "localhost")
    with pytest.raises(NotFound):
        manager.add_wiki("docs", "localhost/docs", database=tmp_path / "missing.sql")

    assert set(orchestrator.names()) == {"check_running_status"}
    assert WikiRegistry(admin_farm.path).ids() == ["main"]


def test_add_wiki_requires_running_installation(
    admin_farm: Installation, orchestrator: FakeOrchestrator
) -> None:
    orchestrator.running = False
    with pytest.raises(NotRunning):
        TenantManager(admin_farm, orchestrator).add_wiki("docs", "localhost/docs")
    assert WikiRegistry(admin_farm.path).ids() == ["main"]


def test_add_wiki_partial_failure(admin_farm: Installation, orchestrator: FakeOrchestrator) -> None:
    orchestrator.fail("update_config", CommandFailed("render failed"))

    with pytest.raises(PartialFailure) as excinfo:
        TenantManager(admin_farm, orchestrator).add_wiki("docs", "localhost/docs")

    assert excinfo.value.step == "routing"
    assert excinfo.value.completed == ["settings", "install", "registry"]
    assert WikiRegistry(admin_farm.path).ids() == ["main", "docs"]
    assert "stop" not in orchestrator.names()


def test_remove_last_wiki_refused_before_side_effects(
    farm: Installation, orchestrator: FakeOrchestrator
) -> None:
    with pytest.raises(RemoveLast):
        TenantManager(farm, orchestrator).remove_wiki("main")
    with pytest.raises(NotFound):
        TenantManager(farm, orchestrator).remove_wiki("ghost")
    assert orchestrator.calls == []


def test_remove_wiki(tmp_path: Path, orchestrator: FakeOrchestrator) -> None:
    path = write_farm(tmp_path / "farm", wikis=[("main", "localhost"), ("docs", "localhost/docs")])
    installation = Installation(id="farm", path=path)
    for directory in (WIKI_SETTINGS_DIR / "docs", Path("images") / "docs"):
        (path / directory).mkdir(parents=True)
        (path / directory / "file.txt").write_text("x", encoding="utf-8")
    (path / "images" / "main").mkdir()

    TenantManager(installation, orchestrator).remove_wiki("docs")

    assert WikiRegistry(path).ids() == ["main"]
    assert not (path / WIKI_SETTINGS_DIR / "docs").exists()
    assert not (path / "images" / "docs").exists()
    assert (path / "images" / "main").is_dir()
    assert orchestrator.commands() == [
        "echo 'DROP DATABASE IF EXISTS docs;' | mysql -h db -u root -p'secret'"
    ]
    assert orchestrator.names()[-3:] == ["update_config", "stop", "start"]
