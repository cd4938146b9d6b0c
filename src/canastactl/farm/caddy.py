"""Generate the Caddy reverse-proxy configuration for a farm.

``config/Caddyfile`` is fully derived from ``wikis.yaml`` and ``.env``. Operator
customisations belong in ``Caddyfile.site`` (inside the site block) and
``Caddyfile.global`` (top level), which are created once and never overwritten.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from pathlib import Path

from ..errors import ValidationFailed
from ..fileio import write_if_changed
from ..templates import TemplateEngine
from .envfile import EnvFile, is_enabled
from .wikis import Wiki, WikiRegistry, strip_port

CADDYFILE_TEMPLATE = "caddy/Caddyfile.j2"
INCLUDE_STUBS = {
    "Caddyfile.site": "# Custom Caddy directives for the wiki site block.\n",
    "Caddyfile.global": "# Global Caddy options or additional site blocks.\n",
}


def site_address(wikis: Iterable[Wiki], *, http_only: bool = False) -> str:
    """Return the Caddy site address covering every wiki domain."""
    names: list[str] = []
    for wiki in wikis:
        name = strip_port(wiki.server_name)
        if name not in names:
            names.append(name)
    if not names:
        raise ValidationFailed("no server names found in wikis.yaml")
    scheme = "http://" if http_only else ""
    return ", ".join(f"{scheme}{name}" for name in names)


def render_caddyfile(
    wikis: Iterable[Wiki],
    env: Mapping[str, str],
    templates: TemplateEngine,
) -> str:
    """Render the Caddyfile text for *wikis* under the settings in *env*."""
    http_only = env.get("CADDY_AUTO_HTTPS", "").lower() == "off"
    observable = is_enabled(env, "CANASTA_ENABLE_OBSERVABILITY")
    os_user = env.get("OS_USER", "")
    os_password_hash = env.get("OS_PASSWORD_HASH", "")
    if observable and (not os_user or not os_password_hash):
        raise ValidationFailed(
            "observability is enabled but OS_USER or OS_PASSWORD_HASH is missing from .env; "
            "run 'canastactl config set CANASTA_ENABLE_OBSERVABILITY=true' to generate them"
        )
    return templates.render_to_string(
        CADDYFILE_TEMPLATE,
        {
            "site_address": site_address(wikis, http_only=http_only),
            "observable": observable,
            "os_user": os_user,
            "os_password_hash": os_password_hash,
        },
    )


def rewrite_caddy(install_path: Path, templates: TemplateEngine) -> bool:
    """Regenerate ``config/Caddyfile``; return whether its content changed."""
    install_path = Path(install_path)
    wikis = WikiRegistry(install_path).read()
    env = EnvFile(install_path / ".env").read()
    content = render_caddyfile(wikis, env, templates)
    return write_if_changed(install_path / "config" / "Caddyfile", content, mode=0o644)


def ensure_caddy_includes(install_path: Path) -> list[Path]:
    """Create missing include stubs and return the ones written."""
    created: list[Path] = []
    config_dir = Path(install_path) / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    for name, content in INCLUDE_STUBS.items():
        path = config_dir / name
        if path.exists():
            continue
        path.write_text(content, encoding="utf-8")
        created.append(path)
    return created


__all__ = ["ensure_caddy_includes", "render_caddyfile", "rewrite_caddy", "site_address"]
