"""Tests for creating, deleting and restarting installations."""
from __future__ import annotations

import stat
from dataclasses import replace
from pathlib import Path

import pytest
from conftest import FakeOrchestrator

from canastactl.config import AppConfig, load_config
from canastactl.errors import (
    CommandFailed,
    Conflict,
    NotFound,
    PartialFailure,
    ValidationFailed,
)
from canastactl.farm.envfile import EnvFile
from canastactl.farm.wikis import WikiRegistry
from canastactl.lifecycle import (
    CreateRequest,
    create_installation,
    delete_installation,
    ensure_running,
    restart,
    set_dev_mode,
    upgrade_installation,
    validate_installation_id,
)
from canastactl.state import BackendKind, Installation, StateRegistry


class RecordingKind:
    """kind helper double."""

    def __init__(self, *, fail_delete: bool = False) -> None:
        self.calls: list[tuple[object, ...]] = []
        self.fail_delete = fail_delete

    def ensure(self, name: str, http_port: int, https_port: int) -> bool:
        self.calls.append(("ensure", name, http_port, https_port))
        return True

    def delete(self, name: str) -> bool:
        self.calls.append(("delete", name))
        if self.fail_delete:
            raise CommandFailed("kind delete cluster failed")
        return True


class RecordingSchedule:
    def __init__(self, error: Exception | None = None) -> None:
        self.removed = False
        self.error = error

    def remove(self) -> bool:
        if self.error is not None:
            raise self.error
        self.removed = True
        return True


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    stacks = tmp_path / "templates" / "stacks" / "compose"
    stacks.mkdir(parents=True)
    (stacks / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "state_dir": str(tmp_path / "state"),
            "templates_dir": str(tmp_path / "templates"),
        },
    )


@pytest.fixture
def registry(tmp_path: Path) -> StateRegistry:
    return StateRegistry(tmp_path / "state" / "registry")


def _request(tmp_path: Path, **kwargs: object) -> CreateRequest:
    values: dict[str, object] = {
        "installation_id": "farm",
        "path": tmp_path / "sites" / "farm",
        "backend": BackendKind.COMPOSE,
        "wiki_id": "main",
        "url": "localhost",
    }
    values.update(kwargs)
    return CreateRequest(**values)  # type: ignore[arg-type]


@pytest.mark.parametrize("installation_id", ["farm", "my-farm", "farm_2"])
def test_validate_installation_id_accepts(installation_id: str) -> None:
    validate_installation_id(installation_id)


@pytest.mark.parametrize("installation_id", ["", "my farm", "farm/x", "farm.1"])
def test_validate_installation_id_rejects(installation_id: str) -> None:
    with pytest.raises(ValidationFailed):
        validate_installation_id(installation_id)


def test_create_installation(
    tmp_path: Path,
    config: AppConfig,
    registry: StateRegistry,
    orchestrator: FakeOrchestrator,
) -> None:
    steps: list[str] = []

    def reporter(name: str, status: str = "success", detail: object | None = None) -> None:
        steps.append(name)

    installation = create_installation(
        registry,
        config,
        orchestrator,
        _request(tmp_path, wiki_name="Main Wiki", admin_password="pa55"),
        reporter=reporter,
    )

    path = tmp_path / "sites" / "farm"
    assert installation.path == path.resolve()
    assert steps == [
        "layout",
        "stack files",
        "env",
        "wikis",
        "admin",
        "credentials",
        "config",
        "register",
        "start",
        "install",
    ]
    assert orchestrator.names() == ["check_dependencies", "update_config", "start", "exec", "exec"]
    assert (path / "docker-compose.yml").is_file()
    assert (path / "config" / "settings" / "wikis" / "main").is_dir()
    assert (path / "config" / "Caddyfile").is_file()
    assert (path / "config" / "Caddyfile.site").is_file()

    env = EnvFile(path / ".env").read()
    assert env["MW_SITE_SERVER"] == "https://localhost"
    assert len(env["MYSQL_PASSWORD"]) == 30
    assert len(env["MW_SECRET_KEY"]) == 64
    assert WikiRegistry(path).get("main").name == "Main Wiki"
    assert (path / ".admin-password").read_text(encoding="utf-8") == "pa55\n"
    assert stat.S_IMODE((path / ".admin").stat().st_mode) == 0o600
    assert registry.get_installation("farm").path == path.resolve()
    assert "--pass='pa55'" in orchestrator.commands()[-1]


def test_create_keeps_supplied_env_values(
    tmp_path: Path,
    config: AppConfig,
    registry: StateRegistry,
    orchestrator: FakeOrchestrator,
) -> None:
    env_file = tmp_path / "custom.env"
    env_file.write_text("MYSQL_PASSWORD=chosen\nHTTPS_PORT=8443\n", encoding="utf-8")

    create_installation(
        registry, config, orchestrator, _request(tmp_path, env_file=env_file)
    )

    env = EnvFile(tmp_path / "sites" / "farm" / ".env").read()
    assert env["MYSQL_PASSWORD"] == "chosen"
    assert env["HTTPS_PORT"] == "8443"
    assert env["WIKI_DB_PASSWORD"]


def test_create_with_kind_cluster(
    tmp_path: Path,
    config: AppConfig,
    registry: StateRegistry,
    orchestrator: FakeOrchestrator,
) -> None:
    kind = RecordingKind()

    installation = create_installation(
        registry,
        config,
        orchestrator,
        _request(tmp_path, backend=BackendKind.KUBERNETES, create_cluster=True),
        kind_manager=kind,  # type: ignore[arg-type]
    )

    assert installation.kind_cluster == "canasta-farm"
    assert installation.managed_cluster is True
    assert installation.local_cluster is True
    assert kind.calls == [("ensure", "canasta-farm", 80, 443)]


def test_create_validates_before_writing(
    tmp_path: Path,
    config: AppConfig,
    registry: StateRegistry,
    orchestrator: FakeOrchestrator,
) -> None:
    with pytest.raises(ValidationFailed):
        create_installation(registry, config, orchestrator, _request(tmp_path, create_cluster=True))
    with pytest.raises(ValidationFailed):
        create_installation(registry, config, orchestrator, _request(tmp_path, wiki_id="my-wiki"))
    with pytest.raises(ValidationFailed):
        create_installation(
            registry, config, orchestrator, _request(tmp_path, database=tmp_path / "none.sql")
        )

    occupied = tmp_path / "sites" / "farm"
    occupied.mkdir(parents=True)
    (occupied / "notes.txt").write_text("keep", encoding="utf-8")
    with pytest.raises(Conflict, match="not empty"):
        create_installation(registry, config, orchestrator, _request(tmp_path))

    registry.add_installation(Installation(id="farm", path=tmp_path / "elsewhere"))
    with pytest.raises(Conflict, match="already used"):
        create_installation(
            registry, config, orchestrator, _request(tmp_path, path=tmp_path / "new")
        )

    assert orchestrator.calls == []
    assert sorted(item.name for item in occupied.iterdir()) == ["notes.txt"]


def test_create_failure_leaves_files(
    tmp_path: Path,
    config: AppConfig,
    registry: StateRegistry,
    orchestrator: FakeOrchestrator,
) -> None:
    orchestrator.fail("start", CommandFailed("docker compose up failed"))

    with pytest.raises(PartialFailure) as excinfo:
        create_installation(registry, config, orchestrator, _request(tmp_path))

    assert excinfo.value.step == "start"
    assert "register" in excinfo.value.completed
    assert "canastactl delete -i farm" in str(excinfo.value)
    assert (tmp_path / "sites" / "farm" / ".env").is_file()
    assert registry.get_installation("farm").id == "farm"


def test_delete_installation(
    farm: Installation, registry: StateRegistry, orchestrator: FakeOrchestrator
) -> None:
    registry.add_installation(farm)
    schedule = RecordingSchedule()

    warnings = delete_installation(
        registry, orchestrator, farm, schedule=schedule  # type: ignore[arg-type]
    )

    assert warnings == []
    assert orchestrator.names() == ["check_running_status", "exec", "destroy"]
    assert orchestrator.commands() == ["find /mediawiki/images -mindepth 1 -delete"]
    assert not farm.path.exists()
    assert schedule.removed
    with pytest.raises(NotFound):
        registry.get_installation("farm")


def test_delete_starts_stopped_installation(
    farm: Installation, registry: StateRegistry, orchestrator: FakeOrchestrator
) -> None:
    registry.add_installation(farm)
    orchestrator.running = False

    delete_installation(registry, orchestrator, farm)

    assert orchestrator.names()[:3] == ["check_running_status", "start", "exec"]


def test_delete_collects_warnings(
    farm: Installation, registry: StateRegistry, orchestrator: FakeOrchestrator
) -> None:
    managed = Installation(
        id="farm",
        path=farm.path,
        orchestrator=BackendKind.KUBERNETES,
        managed_cluster=True,
        kind_cluster="canasta-farm",
    )
    registry.add_installation(managed)
    orchestrator.fail("exec", CommandFailed("web is gone"))
    kind = RecordingKind(fail_delete=True)

    warnings = delete_installation(
        registry,
        orchestrator,
        managed,
        schedule=RecordingSchedule(CommandFailed("crontab - failed")),  # type: ignore[arg-type]
        kind_manager=kind,  # type: ignore[arg-type]
    )

    assert len(warnings) == 3
    assert warnings[0].startswith("could not clean up images")
    assert "canasta-farm" in warnings[1]
    assert warnings[2].startswith("could not remove backup schedule")
    assert kind.calls == [("delete", "canasta-farm")]
    assert not farm.path.exists()
    assert registry.list_installations() == []


def test_ensure_running_and_restart(farm: Installation, orchestrator: FakeOrchestrator) -> None:
    assert ensure_running(orchestrator, farm) is False
    orchestrator.running = False
    assert ensure_running(orchestrator, farm) is True
    restart(orchestrator, farm)

    assert orchestrator.names() == [
        "check_running_status",
        "check_running_status",
        "start",
        "stop",
        "start",
    ]


def test_set_dev_mode_copies_dev_file_and_restarts(
    tmp_path: Path,
    farm: Installation,
    registry: StateRegistry,
    config: AppConfig,
    orchestrator: FakeOrchestrator,
) -> None:
    dev_template = tmp_path / "templates" / "stacks" / "compose" / "docker-compose.dev.yml"
    dev_template.write_text("services:\n  web: {}\n", encoding="utf-8")
    registry.add_installation(farm)
    steps: list[str] = []

    updated = set_dev_mode(
        registry,
        config,
        orchestrator,
        farm,
        True,
        reporter=lambda name, status="success", detail=None: steps.append(name),
    )

    assert updated.dev_mode is True
    assert registry.get_installation("farm").dev_mode is True
    assert (farm.path / "docker-compose.dev.yml").read_text(encoding="utf-8") == (
        "services:\n  web: {}\n"
    )
    assert orchestrator.names() == ["update_config", "stop", "start"]
    assert steps == ["register", "config", "stop", "start"]


def test_set_dev_mode_disable_and_unchanged(
    farm: Installation,
    registry: StateRegistry,
    config: AppConfig,
    orchestrator: FakeOrchestrator,
) -> None:
    dev = replace(farm, dev_mode=True)
    registry.add_installation(dev)

    assert set_dev_mode(registry, config, orchestrator, dev, True) is dev
    assert orchestrator.calls == []

    updated = set_dev_mode(registry, config, orchestrator, dev, False)
    assert updated.dev_mode is False
    assert registry.get_installation("farm").dev_mode is False
    assert orchestrator.names() == ["update_config", "stop", "start"]


def test_set_dev_mode_checks_before_changing_anything(
    farm: Installation,
    registry: StateRegistry,
    config: AppConfig,
    orchestrator: FakeOrchestrator,
) -> None:
    registry.add_installation(farm)
    cluster = replace(farm, orchestrator=BackendKind.KUBERNETES)

    with pytest.raises(ValidationFailed, match="Docker Compose"):
        set_dev_mode(registry, config, orchestrator, cluster, True)
    with pytest.raises(NotFound, match="docker-compose.dev.yml"):
        set_dev_mode(registry, config, orchestrator, farm, True)

    assert orchestrator.calls == []
    assert registry.get_installation("farm").dev_mode is False


def test_set_dev_mode_failed_start_is_partial(
    farm: Installation,
    registry: StateRegistry,
    config: AppConfig,
    orchestrator: FakeOrchestrator,
) -> None:
    (farm.path / "docker-compose.dev.yml").write_text("services: {}\n", encoding="utf-8")
    registry.add_installation(farm)
    orchestrator.fail("start", CommandFailed("docker compose up failed"))

    with pytest.raises(PartialFailure) as excinfo:
        set_dev_mode(registry, config, orchestrator, farm, True)

    assert excinfo.value.step == "start"
    assert excinfo.value.completed == ["register", "config", "stop"]
    assert "canastactl restart -i farm" in str(excinfo.value)
    assert registry.get_installation("farm").dev_mode is True


def test_upgrade_installation(farm: Installation, orchestrator: FakeOrchestrator) -> None:
    assert upgrade_installation(orchestrator, farm) == ""

    assert orchestrator.names() == ["update", "update_config", "stop", "start", "exec"]
    assert orchestrator.commands() == ["touch LocalSettings.php"]


def test_upgrade_stops_at_failed_image_refresh(
    farm: Installation, orchestrator: FakeOrchestrator
) -> None:
    orchestrator.fail("update", CommandFailed("docker compose pull failed"))

    with pytest.raises(PartialFailure) as excinfo:
        upgrade_installation(orchestrator, farm)

    assert excinfo.value.step == "images"
    assert excinfo.value.completed == []
    assert orchestrator.names() == ["update"]
