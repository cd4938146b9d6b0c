"""Manage local ``kind`` clusters owned by canastactl installations."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from pathlib import Path

from ..config import KubernetesConfig
from ..errors import CommandFailed, Conflict, DependencyMissing
from ..farm.envfile import EnvFile
from ..farm.kustomize import HTTP_NODE_PORT, HTTPS_NODE_PORT
from ..templates import TemplateEngine

KIND_CONFIG_TEMPLATE = "kind/cluster.yaml.j2"
DEFAULT_HTTP_PORT = 80
DEFAULT_HTTPS_PORT = 443


def cluster_name(installation_id: str) -> str:
    """Return the kind cluster name for an installation id."""
    return f"canasta-{installation_id}"


def context_name(name: str) -> str:
    """Return the kubectl context kind registers for cluster *name*."""
    return f"kind-{name}"


def ports_from_env(install_path: Path) -> tuple[int, int]:
    """Return ``(HTTP_PORT, HTTPS_PORT)`` from ``.env``, defaulting to 80/443."""
    http_port, https_port = DEFAULT_HTTP_PORT, DEFAULT_HTTPS_PORT
    env_file = EnvFile(Path(install_path) / ".env")
    if not env_file.exists():
        return http_port, https_port
    env = env_file.read()
    if env.get("HTTP_PORT", "").isdigit():
        http_port = int(env["HTTP_PORT"])
    if env.get("HTTPS_PORT", "").isdigit():
        https_port = int(env["HTTPS_PORT"])
    return http_port, https_port


class KindClusterManager:
    """Create, reuse and delete kind clusters."""

    def __init__(self, templates: TemplateEngine, settings: KubernetesConfig | None = None) -> None:
        """Bind the manager to the template engine and binary names."""
        self.templates = templates
        self.settings = settings or KubernetesConfig()

    def render_config(self, name: str, http_port: int, https_port: int) -> str:
        """Return the kind cluster config mapping node ports onto host ports."""
        return self.templates.render_to_string(
            KIND_CONFIG_TEMPLATE,
            {
                "cluster_name": name,
                "http_node_port": HTTP_NODE_PORT,
                "https_node_port": HTTPS_NODE_PORT,
                "http_port": http_port,
                "https_port": https_port,
            },
        )

    def exists(self, name: str) -> bool:
        """Return whether ``kind get clusters`` lists *name*."""
        result = self._run([self.settings.kind_bin, "get", "clusters"], "Listing kind clusters")
        return name in {line.strip() for line in (result.stdout or "").splitlines()}

    def create(self, name: str, http_port: int, https_port: int) -> None:
        """Create cluster *name*; it must not exist yet."""
        if self.exists(name):
            raise Conflict(f"kind cluster '{name}' already exists")
        self._run(
            [self.settings.kind_bin, "create", "cluster", "--config", "-"],
            "Creating kind cluster",
            input_text=self.render_config(name, http_port, https_port),
        )

    def delete(self, name: str) -> bool:
        """Delete cluster *name*; returns ``False`` when it did not exist."""
        if not self.exists(name):
            return False
        self._run(
            [self.settings.kind_bin, "delete", "cluster", "--name", name],
            "Deleting kind cluster",
        )
        return True

    def use_context(self, name: str) -> None:
        """Point kubectl at cluster *name*."""
        self._run(
            [self.settings.kubectl_bin, "config", "use-context", context_name(name)],
            f"Switching kubectl context to {context_name(name)}",
        )

    def ensure(self, name: str, http_port: int, https_port: int) -> bool:
        """Create the cluster when missing, else select its context.

        Returns whether a new cluster was created.
        """
        if self.exists(name):
            self.use_context(name)
            return False
        self.create(name, http_port, https_port)
        return True

    def recreate(self, name: str, http_port: int, https_port: int) -> None:
        """Delete and recreate the cluster so new host port mappings apply."""
        self.delete(name)
        self.create(name, http_port, https_port)

    # ------------------------------------------------------------------
    def _run(
        self,
        args: Sequence[str],
        error_prefix: str,
        *,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                input=input_text,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise DependencyMissing(f"{args[0]} not found: {exc}") from exc
        if result.returncode != 0:
            output = result.stdout or ""
            raise CommandFailed(
                f"{error_prefix} failed (exit {result.returncode}): "
                f"{output.strip() or 'no output'}",
                command=list(args),
                returncode=result.returncode,
                output=output,
            )
        return result


__all__ = [
    "KindClusterManager",
    "cluster_name",
    "context_name",
    "ports_from_env",
]
