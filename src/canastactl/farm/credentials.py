"""Secrets generated for a farm's ``.env``."""
from __future__ import annotations

import secrets
import string

import bcrypt

from .envfile import EnvFile, is_enabled

OBSERVABILITY_FLAG = "CANASTA_ENABLE_OBSERVABILITY"
_ALPHABET = string.ascii_letters + string.digits


def generate_password(length: int = 30) -> str:
    """Return a random alphanumeric password."""
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def hash_password(password: str) -> str:
    """Return a bcrypt hash suitable for Caddy ``basicauth``."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def ensure_observability_credentials(env_file: EnvFile) -> bool:
    """Fill in OpenSearch dashboard credentials when observability is on.

    Existing values are kept. Returns whether observability is enabled.
    """
    env = env_file.read()
    if not is_enabled(env, OBSERVABILITY_FLAG):
        return False
    updates: dict[str, str] = {}
    if not env.get("OS_USER"):
        updates["OS_USER"] = "admin"
    password = env.get("OS_PASSWORD", "")
    if not password:
        password = generate_password()
        updates["OS_PASSWORD"] = password
    if not env.get("OS_PASSWORD_HASH"):
        updates["OS_PASSWORD_HASH"] = hash_password(password)
    if updates:
        env_file.set_many(updates)
    return True


__all__ = [
    "OBSERVABILITY_FLAG",
    "ensure_observability_credentials",
    "generate_password",
    "hash_password",
]
