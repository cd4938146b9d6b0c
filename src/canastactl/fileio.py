"""Atomic file writes shared by the registry, tenant and routing layers."""
from __future__ import annotations

import os
import tempfile
from pathlib import Path


def atomic_write_text(destination: Path, content: str, *, mode: int = 0o644) -> None:
    """Write *content* to *destination* through a temporary file and rename."""
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(
        dir=str(destination.parent), prefix=f".{destination.name}."
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(tmp_path, destination)
        os.chmod(destination, mode)
    finally:
        tmp_path.unlink(missing_ok=True)


def write_if_changed(destination: Path, content: str, *, mode: int = 0o644) -> bool:
    """Atomically write *content* unless the file already holds it."""
    destination = Path(destination)
    if destination.exists() and destination.read_text(encoding="utf-8") == content:
        return False
    atomic_write_text(destination, content, mode=mode)
    return True


__all__ = ["atomic_write_text", "write_if_changed"]
