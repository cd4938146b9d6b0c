"""Change ``.env`` settings and the state that depends on them.

A batch of assignments is validated as a whole before anything is written.
Once values are saved, per-key side effects run in input order and the
installation is restarted so the new values take effect. Failures after the
write are reported as :class:`PartialFailure`; nothing is rolled back.
"""
from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from enum import Enum

from .errors import FarmError, NotFound, PartialFailure, ValidationFailed
from .farm.credentials import OBSERVABILITY_FLAG, ensure_observability_credentials
from .farm.envfile import EnvFile, resolve_key
from .farm.wikis import WikiRegistry, update_site_server_port, update_url_port
from .logging import StepReporter
from .orchestrators.base import Orchestrator
from .orchestrators.kind import KindClusterManager, ports_from_env
from .state import Installation

KNOWN_KEYS = frozenset(
    {
        "HTTP_PORT",
        "HTTPS_PORT",
        "MW_SECRET_KEY",
        "MYSQL_PASSWORD",
        "WIKI_DB_PASSWORD",
        "USE_EXTERNAL_DB",
        "PHP_UPLOAD_MAX_FILESIZE",
        "PHP_POST_MAX_SIZE",
        "PHP_MAX_INPUT_VARS",
        "CANASTA_ENABLE_ELASTICSEARCH",
        "CANASTA_ENABLE_OBSERVABILITY",
        "CADDY_AUTO_HTTPS",
        "CANASTA_IMAGE",
        "RESTIC_REPOSITORY",
        "RESTIC_PASSWORD",
        "AWS_ACCESS_KEY_ID",
        "AWS_SECRET_ACCESS_KEY",
    }
)
DEFAULT_HTTPS_PORT = "443"
RESTART_GUIDANCE = (
    "Settings were saved; fix the cause and run 'canastactl restart' to apply them."
)


# ----------------------------------------------------------------------
# Side effects
# ----------------------------------------------------------------------
def validate_port(value: str) -> None:
    """Raise :class:`ValidationFailed` unless *value* is a TCP port."""
    if not value.isdigit() or not 1 <= int(value) <= 65535:
        raise ValidationFailed(f"invalid port number: {value}")


def apply_https_port(installation: Installation, value: str) -> None:
    """Point wiki urls and the site server variables at HTTPS port *value*."""
    WikiRegistry(installation.path).rewrite_ports(value)
    env_file = EnvFile(installation.env_path)
    env = env_file.read()
    updates: dict[str, str] = {}
    if env.get("MW_SITE_SERVER"):
        updates["MW_SITE_SERVER"] = update_site_server_port(env["MW_SITE_SERVER"], value)
    if env.get("MW_SITE_FQDN"):
        updates["MW_SITE_FQDN"] = update_url_port(env["MW_SITE_FQDN"], value)
    if updates:
        env_file.set_many(updates)


def unapply_https_port(installation: Installation) -> None:
    """Return wiki urls to the default HTTPS port."""
    apply_https_port(installation, DEFAULT_HTTPS_PORT)


def apply_observability(installation: Installation, value: str) -> None:
    """Generate dashboard credentials when observability is switched on."""
    if value.strip().lower() == "true":
        ensure_observability_credentials(EnvFile(installation.env_path))


Validator = Callable[[str], None]
Applier = Callable[[Installation, str], None]
Unapplier = Callable[[Installation], None]


class SettingKind(Enum):
    """Settings whose changes carry side effects beyond the ``.env`` write."""

    HTTPS_PORT = ("HTTPS_PORT", validate_port, apply_https_port, unapply_https_port)
    HTTP_PORT = ("HTTP_PORT", validate_port, None, None)
    OBSERVABILITY = (OBSERVABILITY_FLAG, None, apply_observability, None)

    def __init__(
        self,
        key: str,
        validator: Validator | None,
        applier: Applier | None,
        unapplier: Unapplier | None,
    ) -> None:
        self.key = key
        self.validator = validator
        self.applier = applier
        self.unapplier = unapplier

    @classmethod
    def for_key(cls, key: str) -> SettingKind | None:
        """Return the member handling *key*, or ``None``."""
        for member in cls:
            if member.key == key:
                return member
        return None

    def validate(self, value: str) -> None:
        if self.validator is not None:
            self.validator(value)

    def apply(self, installation: Installation, value: str) -> None:
        if self.applier is not None:
            self.applier(installation, value)

    def unapply(self, installation: Installation) -> None:
        if self.unapplier is not None:
            self.unapplier(installation)


# Changing one of these requires new host port mappings on a kind cluster.
PORT_KEYS = frozenset({SettingKind.HTTP_PORT.key, SettingKind.HTTPS_PORT.key})


def parse_assignment(text: str) -> tuple[str, str]:
    """Split ``KEY=VALUE``; the key must be non-empty."""
    index = text.find("=")
    if index < 1:
        raise ValidationFailed(f"invalid argument '{text}': expected KEY=VALUE format")
    return text[:index], text[index + 1 :]


class ConfigMutator:
    """Apply batches of setting changes to one installation."""

    def __init__(
        self,
        installation: Installation,
        orchestrator: Orchestrator,
        kind_manager: KindClusterManager | None = None,
        reporter: StepReporter | None = None,
    ) -> None:
        """Bind the mutator to an installation and its backend."""
        self.installation = installation
        self.orchestrator = orchestrator
        self.kind_manager = kind_manager
        self.reporter = reporter
        self.env_file = EnvFile(installation.env_path)

    # Queries ------------------------------------------------------------
    def get(self, keys: Sequence[str] | None = None, *, force: bool = False) -> dict[str, str]:
        """Return the requested values, or every setting when *keys* is empty."""
        env = self.env_file.read()
        if not keys:
            return env
        values: dict[str, str] = {}
        for raw in keys:
            key = self._resolve(env, raw, force=force, verb="get")
            if key not in env:
                raise NotFound(f"key '{key}' is not set")
            values[key] = env[key]
        return values

    # Mutations ----------------------------------------------------------
    def set(
        self,
        pairs: Sequence[str],
        *,
        force: bool = False,
        restart: bool = True,
    ) -> list[str]:
        """Save ``KEY=VALUE`` *pairs*, apply side effects and restart.

        Returns the resolved keys in input order.
        """
        env = self.env_file.read()
        settings: list[tuple[str, str]] = []
        for pair in pairs:
            raw_key, value = parse_assignment(pair)
            settings.append((self._resolve(env, raw_key, force=force, verb="set"), value))
        for key, value in settings:
            kind = SettingKind.for_key(key)
            if kind is not None:
                kind.validate(value)

        self.env_file.set_many(dict(settings))
        self._report("save", detail=[key for key, _ in settings])

        applied: list[str] = []
        for key, value in settings:
            kind = SettingKind.for_key(key)
            if kind is None:
                continue
            try:
                kind.apply(self.installation, value)
            except (FarmError, OSError) as exc:
                self._report(f"apply {key}", status="error", detail=str(exc))
                raise PartialFailure(
                    f"apply {key}", exc, completed=applied, guidance=RESTART_GUIDANCE
                ) from exc
            applied.append(key)
            self._report(f"apply {key}")

        keys = [key for key, _ in settings]
        if restart:
            self.restart(ports_changed=any(key in PORT_KEYS for key in keys))
        return keys

    def unset(
        self,
        keys: Sequence[str],
        *,
        force: bool = False,
        restart: bool = True,
    ) -> list[str]:
        """Revert side effects, remove *keys* from ``.env`` and restart."""
        env = self.env_file.read()
        resolved: list[str] = []
        for raw in keys:
            key = self._resolve(env, raw, force=force, verb="unset")
            if key not in env:
                raise NotFound(f"key '{key}' is not set")
            resolved.append(key)

        completed: list[str] = []
        for key in resolved:
            kind = SettingKind.for_key(key)
            if kind is None:
                continue
            try:
                kind.unapply(self.installation)
            except (FarmError, OSError) as exc:
                raise PartialFailure(f"unapply {key}", exc, completed=completed) from exc
            completed.append(key)
            self._report(f"unapply {key}")

        self.env_file.delete_many(resolved)
        self._report("remove", detail=resolved)
        if restart:
            self.restart(ports_changed=any(key in PORT_KEYS for key in resolved))
        return resolved

    def restart(self, *, ports_changed: bool = False) -> None:
        """Regenerate config, stop, optionally recreate the kind cluster, start."""
        steps: list[tuple[str, Callable[[], object]]] = [
            ("update config", lambda: self.orchestrator.update_config(self.installation)),
            ("stop", lambda: self.orchestrator.stop(self.installation)),
        ]
        if ports_changed and self.installation.kind_cluster:
            steps.append(("recreate kind cluster", self._recreate_kind_cluster))
        steps.append(("start", lambda: self.orchestrator.start(self.installation)))

        completed: list[str] = []
        for name, action in steps:
            try:
                action()
            except FarmError as exc:
                self._report(name, status="error", detail=str(exc))
                raise PartialFailure(
                    name, exc, completed=completed, guidance=RESTART_GUIDANCE
                ) from exc
            completed.append(name)
            self._report(name)

    # ------------------------------------------------------------------
    def _recreate_kind_cluster(self) -> None:
        manager = self.kind_manager or KindClusterManager(self.orchestrator.templates)
        http_port, https_port = ports_from_env(self.installation.path)
        manager.recreate(self.installation.kind_cluster, http_port, https_port)

    def _resolve(self, env: Iterable[str], raw: str, *, force: bool, verb: str) -> str:
        key = resolve_key(env, raw)
        if not key:
            raise ValidationFailed("setting name must not be empty")
        if not force and key not in KNOWN_KEYS:
            raise ValidationFailed(
                f"unrecognized setting '{key}'; use 'canastactl config {verb} --force' "
                "to change it anyway"
            )
        return key

    def _report(self, name: str, status: str = "success", detail: object | None = None) -> None:
        if self.reporter is not None:
            self.reporter(name, status=status, detail=detail)


__all__ = [
    "KNOWN_KEYS",
    "PORT_KEYS",
    "ConfigMutator",
    "SettingKind",
    "apply_https_port",
    "parse_assignment",
    "validate_port",
]
