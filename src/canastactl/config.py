"""Configuration loader for canastactl.

Configuration values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``/etc/canastactl/config.yml`` (or an override path).
3. Environment variables prefixed with ``CANASTACTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export CANASTACTL_KUBERNETES__ROLLOUT_TIMEOUT=600
    export CANASTACTL_COMPOSE__COMPOSE_PATH=/usr/local/bin/docker-compose

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load canastactl configuration. Install with "
        "`pip install canastactl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "CANASTACTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

ALLOWED_ORCHESTRATORS = {"compose", "kubernetes"}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ComposeConfig:
    """Docker Compose backend settings."""

    docker_bin: str = "docker"
    compose_path: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"docker_bin": self.docker_bin, "compose_path": self.compose_path}


@dataclass(frozen=True)
class KubernetesConfig:
    """Kubernetes backend settings."""

    kubectl_bin: str = "kubectl"
    kind_bin: str = "kind"
    rollout_timeout: int = 300

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kubectl_bin": self.kubectl_bin,
            "kind_bin": self.kind_bin,
            "rollout_timeout": self.rollout_timeout,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Restic container and scheduling defaults."""

    restic_image: str = "restic/restic"
    helper_image: str = "alpine"
    schedule_log: Path = Path("/var/log/canasta-backup.log")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "restic_image": self.restic_image,
            "helper_image": self.helper_image,
            "schedule_log": str(self.schedule_log),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for canastactl."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    default_orchestrator: str
    compose: ComposeConfig
    kubernetes: KubernetesConfig
    backups: BackupConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "default_orchestrator": self.default_orchestrator,
            "compose": self.compose.to_dict(),
            "kubernetes": self.kubernetes.to_dict(),
            "backups": self.backups.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/canastactl/config.yml",
    "state_dir": "/var/lib/canastactl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/canastactl",
    "runtime_dir": "/run/canastactl",
    "templates_dir": "/etc/canastactl/templates",
    "lock_timeout": 30.0,
    "default_orchestrator": "compose",
    "compose": {
        "docker_bin": "docker",
        "compose_path": None,
    },
    "kubernetes": {
        "kubectl_bin": "kubectl",
        "kind_bin": "kind",
        "rollout_timeout": 300,
    },
    "backups": {
        "restic_image": "restic/restic",
        "helper_image": "alpine",
        "schedule_log": "/var/log/canasta-backup.log",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "compose": {"docker_bin", "compose_path"},
    "kubernetes": {"kubectl_bin", "kind_bin", "rollout_timeout"},
    "backups": {"restic_image", "helper_image", "schedule_log"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    orchestrator = raw.get("default_orchestrator")
    if orchestrator is not None and str(orchestrator) not in ALLOWED_ORCHESTRATORS:
        allowed = ", ".join(sorted(ALLOWED_ORCHESTRATORS))
        raise ConfigError(
            f"Unsupported default_orchestrator '{orchestrator}'. Allowed: {allowed}."
        )

    for section, allowed_keys in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        section_map = _as_dict(value, section)
        unknown = set(section_map.keys()) - allowed_keys
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    kubernetes = _as_dict(raw.get("kubernetes"), "kubernetes")
    timeout = kubernetes.get("rollout_timeout")
    if timeout is not None:
        seconds = _expect_int(timeout, "kubernetes.rollout_timeout", default=300)
        if seconds <= 0:
            raise ConfigError("kubernetes.rollout_timeout must be greater than zero.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    registry_raw = raw.get("registry_dir")
    registry_dir = _to_path(registry_raw) if registry_raw else state_dir / "registry"
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    compose_map = _as_dict(raw.get("compose"), "compose")
    compose_path = compose_map.get("compose_path")
    compose = ComposeConfig(
        docker_bin=str(compose_map.get("docker_bin") or "docker"),
        compose_path=str(compose_path) if compose_path else None,
    )

    kubernetes_map = _as_dict(raw.get("kubernetes"), "kubernetes")
    kubernetes = KubernetesConfig(
        kubectl_bin=str(kubernetes_map.get("kubectl_bin") or "kubectl"),
        kind_bin=str(kubernetes_map.get("kind_bin") or "kind"),
        rollout_timeout=_expect_int(
            kubernetes_map.get("rollout_timeout"),
            "kubernetes.rollout_timeout",
            default=300,
        ),
    )

    backups_map = _as_dict(raw.get("backups"), "backups")
    backups = BackupConfig(
        restic_image=str(backups_map.get("restic_image") or "restic/restic"),
        helper_image=str(backups_map.get("helper_image") or "alpine"),
        schedule_log=_to_path(backups_map.get("schedule_log") or "/var/log/canasta-backup.log"),
    )

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        default_orchestrator=str(raw.get("default_orchestrator", "compose")),
        compose=compose,
        kubernetes=kubernetes,
        backups=backups,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ComposeConfig",
    "ConfigError",
    "KubernetesConfig",
    "load_config",
]
