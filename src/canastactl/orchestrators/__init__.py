"""Container backends and the factory that selects one per installation."""
from __future__ import annotations

from ..config import AppConfig
from ..state import BackendKind, Installation
from ..templates import TemplateEngine
from .base import Orchestrator, export_database, import_database, shell_quote
from .compose import ComposeOrchestrator
from .kind import KindClusterManager
from .kubernetes import KubernetesOrchestrator


def create_orchestrator(
    target: Installation | BackendKind | str,
    config: AppConfig,
    templates: TemplateEngine,
) -> Orchestrator:
    """Return the orchestrator for an installation or backend kind."""
    raw = target.orchestrator if isinstance(target, Installation) else target
    kind = BackendKind.parse(raw)
    if kind is BackendKind.COMPOSE:
        return ComposeOrchestrator(templates, config.compose, config.backups)
    return KubernetesOrchestrator(
        templates,
        config.kubernetes,
        config.backups,
        KindClusterManager(templates, config.kubernetes),
    )


__all__ = [
    "ComposeOrchestrator",
    "KindClusterManager",
    "KubernetesOrchestrator",
    "Orchestrator",
    "create_orchestrator",
    "export_database",
    "import_database",
    "shell_quote",
]
