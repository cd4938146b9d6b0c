"""Tests for batched ``.env`` changes and their side effects."""
from __future__ import annotations

from dataclasses import replace

import pytest
from conftest import FakeOrchestrator

from canastactl.errors import CommandFailed, NotFound, PartialFailure, ValidationFailed
from canastactl.farm.envfile import EnvFile
from canastactl.farm.wikis import WikiRegistry
from canastactl.settings import ConfigMutator, SettingKind, parse_assignment
from canastactl.state import BackendKind, Installation


class RecordingKind:
    """Kind helper double that logs recreations into the orchestrator call list."""

    def __init__(self, orchestrator: FakeOrchestrator) -> None:
        self.orchestrator = orchestrator

    def recreate(self, name: str, http_port: int, https_port: int) -> None:
        self.orchestrator.calls.append(("recreate_kind", name, http_port, https_port))


def _mutator(
    installation: Installation, orchestrator: FakeOrchestrator, steps: list[str] | None = None
) -> ConfigMutator:
    def reporter(name: str, status: str = "success", detail: object | None = None) -> None:
        if steps is not None:
            steps.append(f"{name}:{status}")

    return ConfigMutator(
        installation,
        orchestrator,
        kind_manager=RecordingKind(orchestrator),  # type: ignore[arg-type]
        reporter=reporter,
    )


def test_parse_assignment() -> None:
    assert parse_assignment("A=b=c") == ("A", "b=c")
    assert parse_assignment("A=") == ("A", "")
    for bad in ("=x", "novalue"):
        with pytest.raises(ValidationFailed):
            parse_assignment(bad)


def test_setting_kind_lookup() -> None:
    assert SettingKind.for_key("HTTPS_PORT") is SettingKind.HTTPS_PORT
    assert SettingKind.for_key("MW_SECRET_KEY") is None


def test_get_values(farm: Installation, orchestrator: FakeOrchestrator) -> None:
    mutator = _mutator(farm, orchestrator)

    assert mutator.get() == {"MYSQL_PASSWORD": "secret", "MW_SITE_SERVER": "https://localhost"}
    assert mutator.get(["mysql-password"]) == {"MYSQL_PASSWORD": "secret"}
    with pytest.raises(NotFound):
        mutator.get(["HTTPS_PORT"])
    assert orchestrator.calls == []


def test_invalid_value_persists_nothing(
    farm: Installation, orchestrator: FakeOrchestrator
) -> None:
    """One bad value in a batch leaves every key untouched."""
    before = farm.env_path.read_text(encoding="utf-8")

    with pytest.raises(ValidationFailed, match="invalid port number"):
        _mutator(farm, orchestrator).set(["HTTPS_PORT=8443", "HTTP_PORT=eighty"])

    assert farm.env_path.read_text(encoding="utf-8") == before
    assert orchestrator.calls == []


def test_unknown_key_requires_force(farm: Installation, orchestrator: FakeOrchestrator) -> None:
    mutator = _mutator(farm, orchestrator)
    with pytest.raises(ValidationFailed, match="--force"):
        mutator.set(["my-flag=1"])

    assert mutator.set(["my-flag=1"], force=True, restart=False) == ["MY_FLAG"]
    assert EnvFile(farm.env_path).get("MY_FLAG") == "1"
    assert orchestrator.calls == []


def test_https_port_rewrites_urls_and_restarts(
    farm: Installation, orchestrator: FakeOrchestrator
) -> None:
    steps: list[str] = []
    mutator = _mutator(farm, orchestrator, steps)

    assert mutator.set(["HTTPS_PORT=8443"]) == ["HTTPS_PORT"]

    env = EnvFile(farm.env_path).read()
    assert env["HTTPS_PORT"] == "8443"
    assert env["MW_SITE_SERVER"] == "https://localhost:8443"
    assert [wiki.url for wiki in WikiRegistry(farm.path).read()] == ["localhost:8443"]
    assert orchestrator.names() == ["update_config", "stop", "start"]
    assert steps == [
        "save:success",
        "apply HTTPS_PORT:success",
        "update config:success",
        "stop:success",
        "start:success",
    ]

    mutator.set(["HTTPS_PORT=443"], restart=False)
    assert EnvFile(farm.env_path).get("MW_SITE_SERVER") == "https://localhost"
    assert [wiki.url for wiki in WikiRegistry(farm.path).read()] == ["localhost"]


def test_port_change_recreates_kind_cluster_once(
    farm: Installation, orchestrator: FakeOrchestrator
) -> None:
    installation = replace(
        farm, orchestrator=BackendKind.KUBERNETES, kind_cluster="canasta-farm"
    )

    _mutator(installation, orchestrator).set(["HTTP_PORT=8080", "HTTPS_PORT=8443"])

    assert orchestrator.names() == ["update_config", "stop", "recreate_kind", "start"]
    assert ("recreate_kind", "canasta-farm", 8080, 8443) in orchestrator.calls


def test_non_port_change_keeps_kind_cluster(
    farm: Installation, orchestrator: FakeOrchestrator
) -> None:
    installation = replace(farm, kind_cluster="canasta-farm")
    _mutator(installation, orchestrator).set(["PHP_UPLOAD_MAX_FILESIZE=64M"])
    assert "recreate_kind" not in orchestrator.names()


def test_observability_generates_credentials(
    farm: Installation, orchestrator: FakeOrchestrator
) -> None:
    _mutator(farm, orchestrator).set(["CANASTA_ENABLE_OBSERVABILITY=true"])

    env = EnvFile(farm.env_path).read()
    assert env["OS_USER"] == "admin"
    assert env["OS_PASSWORD_HASH"]
    caddyfile = (farm.path / "config" / "Caddyfile").read_text(encoding="utf-8")
    assert "@opensearch" in caddyfile


def test_apply_failure_is_partial(farm: Installation, orchestrator: FakeOrchestrator) -> None:
    """The value stays saved when its side effect fails."""
    (farm.path / "config" / "wikis.yaml").unlink()

    with pytest.raises(PartialFailure) as excinfo:
        _mutator(farm, orchestrator).set(["MW_SECRET_KEY=abc", "HTTPS_PORT=8443"])

    assert excinfo.value.step == "apply HTTPS_PORT"
    assert isinstance(excinfo.value.cause, NotFound)
    assert EnvFile(farm.env_path).get("HTTPS_PORT") == "8443"
    assert "canastactl restart" in str(excinfo.value)
    assert orchestrator.calls == []


def test_restart_failure_is_partial(farm: Installation, orchestrator: FakeOrchestrator) -> None:
    orchestrator.fail("stop", CommandFailed("docker compose down failed"))

    with pytest.raises(PartialFailure) as excinfo:
        _mutator(farm, orchestrator).set(["MW_SECRET_KEY=abc"])

    assert excinfo.value.step == "stop"
    assert excinfo.value.completed == ["update config"]
    assert orchestrator.names() == ["update_config", "stop"]
    assert EnvFile(farm.env_path).get("MW_SECRET_KEY") == "abc"


def test_unset_reverts_side_effects(farm: Installation, orchestrator: FakeOrchestrator) -> None:
    mutator = _mutator(farm, orchestrator)
    mutator.set(["HTTPS_PORT=8443"], restart=False)

    assert mutator.unset(["https-port"]) == ["HTTPS_PORT"]

    env = EnvFile(farm.env_path).read()
    assert "HTTPS_PORT" not in env
    assert env["MW_SITE_SERVER"] == "https://localhost"
    assert [wiki.url for wiki in WikiRegistry(farm.path).read()] == ["localhost"]
    assert orchestrator.names() == ["update_config", "stop", "start"]


def test_unset_missing_key(farm: Installation, orchestrator: FakeOrchestrator) -> None:
    before = farm.env_path.read_text(encoding="utf-8")
    with pytest.raises(NotFound, match="not set"):
        _mutator(farm, orchestrator).unset(["MYSQL_PASSWORD", "HTTPS_PORT"])
    assert farm.env_path.read_text(encoding="utf-8") == before
    assert orchestrator.calls == []
