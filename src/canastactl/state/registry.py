"""Helpers for interacting with the canastactl state registry.

The registry directory (``/var/lib/canastactl/registry`` by default) stores
``installations.yml``: one entry per managed farm with its filesystem root,
backend kind and backend handles. Files are written atomically so a crash in
the middle of a command never leaves a truncated registry behind.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import asdict, dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from ..errors import Conflict, NotFound, ValidationFailed

INSTALLATIONS_FILE = "installations.yml"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


class BackendKind(str, Enum):
    """Container backends an installation can run on."""

    COMPOSE = "compose"
    KUBERNETES = "kubernetes"

    @classmethod
    def parse(cls, value: str | BackendKind) -> BackendKind:
        """Return the backend named by *value*, accepting common aliases."""
        if isinstance(value, BackendKind):
            return value
        normalized = str(value).strip().lower()
        kind = _BACKEND_ALIASES.get(normalized)
        if kind is None:
            raise ValidationFailed(
                f"Unsupported orchestrator '{value}'. Use 'compose' or 'kubernetes'."
            )
        return kind


_BACKEND_ALIASES = {
    "compose": BackendKind.COMPOSE,
    "docker-compose": BackendKind.COMPOSE,
    "kubernetes": BackendKind.KUBERNETES,
    "k8s": BackendKind.KUBERNETES,
}


@dataclass(frozen=True)
class Installation:
    """A registered farm."""

    id: str
    path: Path
    orchestrator: BackendKind = BackendKind.COMPOSE
    dev_mode: bool = False
    managed_cluster: bool = False
    kind_cluster: str = ""
    registry: str = ""
    local_cluster: bool = False

    @property
    def env_path(self) -> Path:
        """Return the path of the installation's ``.env`` file."""
        return self.path / ".env"

    def to_dict(self) -> dict[str, object]:
        """Return the registry representation of this installation."""
        payload = asdict(self)
        payload["path"] = str(self.path)
        payload["orchestrator"] = self.orchestrator.value
        return payload

    @classmethod
    def from_mapping(cls, entry: Mapping[str, object]) -> Installation:
        """Build an installation from a registry entry."""
        identifier = str(entry.get("id") or "").strip()
        if not identifier:
            raise StateRegistryError("Installation entry missing 'id'.")
        raw_path = entry.get("path")
        if not raw_path:
            raise StateRegistryError(f"Installation '{identifier}' is missing 'path'.")
        return cls(
            id=identifier,
            path=Path(str(raw_path)),
            orchestrator=BackendKind.parse(str(entry.get("orchestrator") or "compose")),
            dev_mode=bool(entry.get("dev_mode", False)),
            managed_cluster=bool(entry.get("managed_cluster", False)),
            kind_cluster=str(entry.get("kind_cluster") or ""),
            registry=str(entry.get("registry") or ""),
            local_cluster=bool(entry.get("local_cluster", False)),
        )


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Convenience wrappers -------------------------------------------------
    def read_installations(self) -> Mapping[str, object]:
        """Return the contents of ``installations.yml`` (empty mapping if missing)."""
        value = self.read(INSTALLATIONS_FILE, default={"installations": []})
        return value if isinstance(value, Mapping) else {"installations": []}

    def write_installations(self, installations: Iterable[Installation]) -> None:
        """Persist installation entries to ``installations.yml``."""
        self.write(
            INSTALLATIONS_FILE,
            {"installations": [item.to_dict() for item in installations]},
        )

    # Installation helpers -------------------------------------------------
    def list_installations(self) -> list[Installation]:
        """Return every registered installation in insertion order."""
        raw_entries = self.read_installations().get("installations", [])
        if not isinstance(raw_entries, list):
            raise StateRegistryError(f"{INSTALLATIONS_FILE} must hold a list of installations.")
        installations: list[Installation] = []
        for entry in raw_entries:
            if not isinstance(entry, Mapping):
                raise StateRegistryError("Installation entries must be mappings.")
            installations.append(Installation.from_mapping(entry))
        return installations

    def get_installation(self, identifier: str) -> Installation:
        """Return the installation registered as *identifier*."""
        for installation in self.list_installations():
            if installation.id == identifier:
                return installation
        raise NotFound(f"Installation ID '{identifier}' not found")

    def find_installation_by_path(self, path: str | os.PathLike[str]) -> Installation:
        """Return the installation rooted at *path*."""
        wanted = _normalise_path(path)
        for installation in self.list_installations():
            if _normalise_path(installation.path) == wanted:
                return installation
        raise NotFound(f"No installation exists at {wanted}")

    def add_installation(self, installation: Installation) -> None:
        """Register *installation*; ids and paths must be unique."""
        installations = self.list_installations()
        wanted = _normalise_path(installation.path)
        for existing in installations:
            if existing.id == installation.id:
                raise Conflict(f"Installation ID '{installation.id}' is already used")
            if _normalise_path(existing.path) == wanted:
                raise Conflict(
                    f"Installation '{existing.id}' already uses the path {wanted}"
                )
        installations.append(installation)
        self.write_installations(installations)

    def update_installation(self, identifier: str, **changes: Any) -> Installation:
        """Apply *changes* to installation *identifier* and return the new value."""
        if "orchestrator" in changes:
            changes["orchestrator"] = BackendKind.parse(changes["orchestrator"])
        if "path" in changes:
            changes["path"] = Path(changes["path"])
        installations = self.list_installations()
        updated: Installation | None = None
        for index, existing in enumerate(installations):
            if existing.id == identifier:
                updated = replace(existing, **changes)
                installations[index] = updated
                break
        if updated is None:
            raise NotFound(f"Installation ID '{identifier}' not found")
        self.write_installations(installations)
        return updated

    def remove_installation(self, identifier: str) -> None:
        """Remove installation *identifier* from the registry."""
        installations = self.list_installations()
        remaining = [item for item in installations if item.id != identifier]
        if len(remaining) == len(installations):
            raise NotFound(f"Installation ID '{identifier}' not found")
        self.write_installations(remaining)

    def resolve(
        self,
        identifier: str | None = None,
        path: str | os.PathLike[str] | None = None,
    ) -> Installation:
        """Return the installation named by *identifier*, else the one at *path*."""
        if identifier:
            return self.get_installation(identifier)
        return self.find_installation_by_path(path if path is not None else Path.cwd())


def _normalise_path(path: str | os.PathLike[str]) -> Path:
    return Path(path).expanduser().resolve()


__all__ = [
    "BackendKind",
    "INSTALLATIONS_FILE",
    "Installation",
    "StateRegistry",
    "StateRegistryError",
]
