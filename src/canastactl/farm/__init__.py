"""Files that describe a farm: tenants, settings and routing config."""
from __future__ import annotations

from .caddy import ensure_caddy_includes, render_caddyfile, rewrite_caddy
from .credentials import ensure_observability_credentials
from .envfile import EnvFile, is_enabled, resolve_key
from .kustomize import generate_kustomization, read_namespace
from .wikis import (
    Wiki,
    WikiRegistry,
    normalize_wiki_id,
    parse_wiki_url,
    update_site_server_port,
    update_url_port,
    validate_wiki_id,
    validate_wiki_path,
)

__all__ = [
    "EnvFile",
    "Wiki",
    "WikiRegistry",
    "ensure_caddy_includes",
    "ensure_observability_credentials",
    "generate_kustomization",
    "is_enabled",
    "normalize_wiki_id",
    "parse_wiki_url",
    "read_namespace",
    "render_caddyfile",
    "resolve_key",
    "rewrite_caddy",
    "update_site_server_port",
    "update_url_port",
    "validate_wiki_id",
    "validate_wiki_path",
]
