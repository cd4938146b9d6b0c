"""Persistent state helpers for canastactl."""
from __future__ import annotations

from .registry import (
    INSTALLATIONS_FILE,
    BackendKind,
    Installation,
    StateRegistry,
    StateRegistryError,
)

__all__ = [
    "BackendKind",
    "INSTALLATIONS_FILE",
    "Installation",
    "StateRegistry",
    "StateRegistryError",
]
