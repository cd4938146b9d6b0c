"""Jinja2 rendering for generated installation files.

Built-in templates ship inside the package under ``canastactl/templates``.
Operators may shadow any of them by placing a file with the same relative name
in the configured ``templates_dir``.
"""
from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from jinja2 import (
    BaseLoader,
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
)

from .fileio import write_if_changed


class TemplateEngine:
    """Render built-in or operator-supplied templates."""

    def __init__(self, loader: BaseLoader) -> None:
        """Create an environment around *loader* with strict variables."""
        self.environment = Environment(
            loader=loader,
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine whose *override_dir* templates win over built-ins."""
        loaders: list[BaseLoader] = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("canastactl", "templates"))
        return cls(ChoiceLoader(loaders))

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        template = self.environment.get_template(name)
        return template.render(**dict(context))

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *name* into *destination*, returning whether the file changed."""
        content = self.render_to_string(name, context)
        return write_if_changed(destination, content, mode=mode)


__all__ = ["TemplateEngine"]
