"""Tenant registry stored in ``config/wikis.yaml``.

Every installation hosts one or more wikis. The file keeps them in insertion
order; the first entry is the farm's default wiki. Each ``url`` is a bare
``domain[:port][/path]`` string without scheme, which the routing layer turns
into Caddy site addresses.
"""
from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

import yaml

from ..errors import Conflict, NotFound, RemoveLast, ValidationFailed
from ..fileio import atomic_write_text

WIKIS_FILE = Path("config") / "wikis.yaml"
RESERVED_WIKI_IDS = frozenset({"settings", "images", "w", "wiki"})
RESERVED_PATH_SEGMENTS = frozenset({"w", "wiki", "images", "settings"})

_WIKI_ID_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")
_NORMALIZE_PATTERN = re.compile(r"[^A-Za-z0-9_]+")


@dataclass(frozen=True)
class Wiki:
    """One tenant of a farm."""

    id: str
    url: str
    name: str = ""

    def __post_init__(self) -> None:
        """Default the display name to the id."""
        if not self.name:
            object.__setattr__(self, "name", self.id)

    @property
    def server_name(self) -> str:
        """Return the url text before the first ``/`` (domain plus optional port)."""
        return self.url.split("/", 1)[0]

    @property
    def path(self) -> str:
        """Return the url path, always starting with ``/``."""
        parts = self.url.split("/", 1)
        return "/" + parts[1] if len(parts) > 1 else "/"

    @property
    def domain(self) -> str:
        """Return the server name without any port."""
        return strip_port(self.server_name)

    def to_dict(self) -> dict[str, str]:
        """Return the ``wikis.yaml`` representation."""
        return {"id": self.id, "url": self.url, "name": self.name}


class WikiRegistry:
    """Read and mutate the tenant list of one installation."""

    def __init__(self, install_path: Path) -> None:
        """Bind the registry to the installation rooted at *install_path*."""
        self.install_path = Path(install_path)
        self.path = self.install_path / WIKIS_FILE

    def read(self) -> list[Wiki]:
        """Return the wikis in file order."""
        if not self.path.exists():
            raise NotFound(f"no wikis found in {self.path}")
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ValidationFailed(f"Failed to parse {self.path}: {exc}") from exc
        raw_wikis = data.get("wikis") if isinstance(data, Mapping) else None
        if not raw_wikis:
            raise NotFound(f"no wikis found in {self.path}")
        wikis: list[Wiki] = []
        for entry in raw_wikis:
            if not isinstance(entry, Mapping):
                raise ValidationFailed(f"Invalid wiki entry in {self.path}: {entry!r}")
            wikis.append(
                Wiki(
                    id=str(entry.get("id") or ""),
                    url=str(entry.get("url") or ""),
                    name=str(entry.get("name") or ""),
                )
            )
        return wikis

    def write(self, wikis: Iterable[Wiki]) -> None:
        """Atomically replace the file with *wikis*."""
        payload = {"wikis": [wiki.to_dict() for wiki in wikis]}
        atomic_write_text(self.path, yaml.safe_dump(payload, sort_keys=False), mode=0o644)

    # Lookups ----------------------------------------------------------
    def ids(self) -> list[str]:
        return [wiki.id for wiki in self.read()]

    def get(self, wiki_id: str) -> Wiki:
        """Return the wiki registered as *wiki_id*."""
        for wiki in self.read():
            if wiki.id == wiki_id:
                return wiki
        raise NotFound(f"Wiki '{wiki_id}' does not exist")

    def exists(self, wiki_id: str) -> bool:
        """Return whether *wiki_id* is registered; a missing file means no."""
        if not self.path.exists():
            return False
        return wiki_id in self.ids()

    def url_exists(self, domain: str, path: str) -> bool:
        """Return whether a wiki already answers at ``domain/path``."""
        if not self.path.exists():
            return False
        target = f"{default_port_stripped(domain)}/{path.strip('/')}"
        return any(
            default_port_stripped(wiki.server_name) + wiki.path == target for wiki in self.read()
        )

    # Mutations --------------------------------------------------------
    def add(self, wiki_id: str, domain: str, path: str = "", name: str | None = None) -> Wiki:
        """Append a wiki and persist the file."""
        if self.exists(wiki_id):
            raise Conflict(f"Wiki '{wiki_id}' already exists")
        if self.url_exists(domain, path):
            raise Conflict(f"A wiki already exists at {join_url(domain, path)}")
        wikis = self.read() if self.path.exists() else []
        wiki = Wiki(id=wiki_id, url=join_url(domain, path), name=name or wiki_id)
        wikis.append(wiki)
        self.write(wikis)
        return wiki

    def remove(self, wiki_id: str) -> None:
        """Drop *wiki_id*; the farm must keep at least one wiki."""
        wikis = self.read()
        remaining = [wiki for wiki in wikis if wiki.id != wiki_id]
        if len(remaining) == len(wikis):
            raise NotFound(f"Wiki '{wiki_id}' does not exist")
        if not remaining:
            raise RemoveLast("cannot remove the last wiki")
        self.write(remaining)

    def rewrite_ports(self, port: str | int) -> list[Wiki]:
        """Rewrite every wiki url for a new HTTPS *port*."""
        updated = [
            Wiki(id=wiki.id, url=update_url_port(wiki.url, port), name=wiki.name)
            for wiki in self.read()
        ]
        self.write(updated)
        return updated


# ----------------------------------------------------------------------
# Pure helpers
# ----------------------------------------------------------------------
def validate_wiki_id(wiki_id: str) -> None:
    """Raise :class:`ValidationFailed` unless *wiki_id* is usable."""
    if not wiki_id:
        raise ValidationFailed("Wiki ID must not be empty")
    if "-" in wiki_id:
        raise ValidationFailed("The character '-' is not allowed in a wiki ID")
    if wiki_id in RESERVED_WIKI_IDS:
        raise ValidationFailed(f"{wiki_id} cannot be used as a wiki ID")
    if not _WIKI_ID_PATTERN.match(wiki_id):
        raise ValidationFailed(
            f"Invalid wiki ID '{wiki_id}': only letters, digits and '_' are allowed"
        )


def validate_wiki_path(path: str) -> None:
    """Reject paths whose first segment collides with a MediaWiki route."""
    first = path.strip("/").split("/", 1)[0]
    if first in RESERVED_PATH_SEGMENTS:
        raise ValidationFailed(
            f"The path '/{path.strip('/')}' conflicts with the reserved route '/{first}'"
        )


def parse_wiki_url(text: str) -> tuple[str, str]:
    """Split a user-supplied url into ``(domain, path)``.

    A missing scheme is treated as ``https://``. The domain keeps an explicit
    port, and the path loses its surrounding slashes.
    """
    raw = text.strip()
    if not raw.startswith(("http://", "https://")):
        raw = "https://" + raw
    try:
        parts = urlsplit(raw)
        port = parts.port
    except ValueError as exc:
        raise ValidationFailed(f"failed to parse URL '{text}': {exc}") from exc
    hostname = parts.hostname or ""
    if not hostname:
        raise ValidationFailed(f"URL '{text}' has no domain")
    domain = f"{hostname}:{port}" if port is not None else hostname
    return domain, parts.path.strip("/")


def join_url(domain: str, path: str) -> str:
    """Return the ``wikis.yaml`` url for *domain* and *path*."""
    path = path.strip("/")
    return f"{domain}/{path}" if path else domain


def normalize_wiki_id(text: str) -> str:
    """Return a filesystem-safe form of a wiki id."""
    return _NORMALIZE_PATTERN.sub("", text.replace(" ", "_"))


def update_url_port(url: str, port: str | int) -> str:
    """Return *url* (``domain[:port][/path]``) pointing at the HTTPS *port*."""
    domain, sep, path = url.partition("/")
    domain = strip_port(domain)
    if str(port) != "443":
        domain = f"{domain}:{port}"
    return domain + sep + path


def update_site_server_port(url: str, port: str | int) -> str:
    """Return the full ``scheme://host[:port]`` *url* pointing at *port*."""
    parts = urlsplit(url)
    if not parts.scheme or not parts.hostname:
        return update_url_port(url, port)
    host = parts.hostname if str(port) == "443" else f"{parts.hostname}:{port}"
    return urlunsplit((parts.scheme, host, parts.path, parts.query, parts.fragment))


def default_port_stripped(server_name: str) -> str:
    """Return *server_name* without an explicit ``:443``."""
    head, sep, tail = server_name.rpartition(":")
    if sep and tail == "443":
        return head
    return server_name


def strip_port(server_name: str) -> str:
    """Return *server_name* without a trailing numeric port."""
    head, sep, tail = server_name.rpartition(":")
    if sep and tail.isdigit():
        return head
    return server_name


__all__ = [
    "RESERVED_PATH_SEGMENTS",
    "RESERVED_WIKI_IDS",
    "WIKIS_FILE",
    "Wiki",
    "WikiRegistry",
    "default_port_stripped",
    "join_url",
    "normalize_wiki_id",
    "parse_wiki_url",
    "strip_port",
    "update_site_server_port",
    "update_url_port",
    "validate_wiki_id",
    "validate_wiki_path",
]
