"""Line-preserving access to an installation's ``.env`` file.

The file is shared with Docker Compose and the Kubernetes config map
generator, so edits keep comments, blank lines and key order intact and only
touch the lines that hold the keys being changed.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from pathlib import Path

from ..errors import NotFound
from ..fileio import atomic_write_text


class EnvFile:
    """Read and update ``KEY=value`` lines in a dotenv file."""

    def __init__(self, path: Path) -> None:
        """Bind to the dotenv file at *path*."""
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> dict[str, str]:
        """Return every ``KEY=value`` pair, unquoting double-quoted values."""
        values: dict[str, str] = {}
        for line in self._lines():
            key, sep, value = line.partition("=")
            if not sep:
                continue
            if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
                value = value[1:-1]
            values[key] = value
        return values

    def get(self, key: str, default: str = "") -> str:
        """Return the value of *key* or *default* when unset."""
        return self.read().get(key, default)

    def set(self, key: str, value: str) -> None:
        """Replace the first ``KEY=`` line or append one."""
        self.set_many({key: value})

    def set_many(self, values: Mapping[str, str]) -> None:
        """Apply several assignments in a single write."""
        lines = self._lines()
        for key, value in values.items():
            prefix = f"{key}="
            for index, line in enumerate(lines):
                if line.startswith(prefix):
                    lines[index] = f"{key}={value}"
                    break
            else:
                lines.append(f"{key}={value}")
        self._write(lines)

    def delete(self, key: str) -> None:
        """Remove every ``KEY=`` line; the key must be present."""
        self.delete_many([key])

    def delete_many(self, keys: Iterable[str]) -> None:
        """Remove several keys in a single write."""
        lines = self._lines()
        for key in keys:
            prefix = f"{key}="
            remaining = [line for line in lines if not line.startswith(prefix)]
            if len(remaining) == len(lines):
                raise NotFound(f"key '{key}' not found in {self.path}")
            lines = remaining
        self._write(lines)

    # ------------------------------------------------------------------
    def _lines(self) -> list[str]:
        if not self.path.exists():
            raise NotFound(f"{self.path} does not exist")
        text = self.path.read_text(encoding="utf-8")
        if text.endswith("\n"):
            text = text[:-1]
        return text.split("\n") if text else []

    def _write(self, lines: list[str]) -> None:
        content = "\n".join(lines) + "\n" if lines else ""
        atomic_write_text(self.path, content, mode=0o644)


def resolve_key(existing: Iterable[str], key: str) -> str:
    """Map user input onto an env key.

    Hyphens become underscores and an existing key matching case-insensitively
    keeps its spelling; anything else is upper-cased.
    """
    normalized = key.replace("-", "_")
    for candidate in existing:
        if candidate.lower() == normalized.lower():
            return candidate
    return normalized.upper()


def is_enabled(env: Mapping[str, str], flag: str) -> bool:
    """Return whether *flag* holds ``true`` (any case)."""
    return env.get(flag, "").strip().lower() == "true"


def split_profiles(profiles: str) -> list[str]:
    """Split a ``COMPOSE_PROFILES`` value into its non-empty entries."""
    return [item.strip() for item in profiles.split(",") if item.strip()]


__all__ = ["EnvFile", "is_enabled", "resolve_key", "split_profiles"]
