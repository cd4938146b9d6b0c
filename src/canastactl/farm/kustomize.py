"""Generate ``kustomization.yaml`` for Kubernetes installations.

The kustomization is rebuilt from the installation tree on every config
update: global and per-wiki settings directories become config maps, the
generated Caddy files and ``.env`` are shipped alongside, and strategic merge
patches mount the per-wiki settings into the ``web`` deployment.
"""
from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

import yaml

from ..errors import NotFound, ValidationFailed
from ..fileio import write_if_changed
from .wikis import WikiRegistry, normalize_wiki_id

KUSTOMIZATION_FILE = "kustomization.yaml"
KUSTOMIZATION_HEADER = "# Auto-generated by canastactl - do not edit manually\n"
HTTP_NODE_PORT = 30080
HTTPS_NODE_PORT = 30443

RESOURCES = (
    "kubernetes/namespace.yaml",
    "kubernetes/caddy.yaml",
    "kubernetes/db.yaml",
    "kubernetes/elasticsearch.yaml",
    "kubernetes/varnish.yaml",
    "kubernetes/web.yaml",
)
STATIC_CONFIG_FILES = (
    "config/wikis.yaml",
    "config/Caddyfile",
    "config/Caddyfile.site",
    "config/Caddyfile.global",
    "config/default.vcl",
    "my.cnf",
)
_SKIPPED_FILES = frozenset({"README", ".gitkeep", ".gitignore"})


def scan_settings_dir(install_path: Path, rel_dir: str) -> list[str]:
    """Return sorted ``name=relpath`` entries for the files in *rel_dir*."""
    directory = Path(install_path) / rel_dir
    if not directory.is_dir():
        return []
    entries = [
        f"{child.name}={rel_dir}/{child.name}"
        for child in directory.iterdir()
        if child.is_file() and child.name not in _SKIPPED_FILES
    ]
    return sorted(entries)


def build_kustomization(install_path: Path, *, local_cluster: bool = False) -> dict[str, object]:
    """Return the kustomization document for the installation at *install_path*."""
    install_path = Path(install_path)
    generators: list[dict[str, object]] = [
        {
            "name": "canasta-settings-global",
            "files": scan_settings_dir(install_path, "config/settings/global"),
        }
    ]
    patches: list[dict[str, str]] = []

    for wiki in WikiRegistry(install_path).read():
        wiki_id = normalize_wiki_id(wiki.id)
        files = scan_settings_dir(install_path, f"config/settings/wikis/{wiki_id}")
        if not files:
            continue
        config_map = f"canasta-settings-wiki-{wiki_id}"
        generators.append({"name": config_map, "files": files})
        patches.append(_wiki_settings_patch(wiki_id, config_map))

    config_files = list(STATIC_CONFIG_FILES)
    if (install_path / "config" / "LocalSettings.php").exists():
        config_files.append("config/LocalSettings.php")
        patches.append(_local_settings_patch())
    generators.append({"name": "canasta-config", "files": config_files})
    generators.append({"name": "canasta-env", "envs": [".env"]})

    if local_cluster:
        patches.append(_node_port_patch())

    document: dict[str, object] = {
        "apiVersion": "kustomize.config.k8s.io/v1beta1",
        "kind": "Kustomization",
        "namespace": install_path.name,
        "resources": list(RESOURCES),
        "configMapGenerator": generators,
    }
    if patches:
        document["patches"] = patches
    return document


def generate_kustomization(install_path: Path, *, local_cluster: bool = False) -> bool:
    """Write ``kustomization.yaml``; return whether its content changed."""
    document = build_kustomization(install_path, local_cluster=local_cluster)
    content = KUSTOMIZATION_HEADER + yaml.safe_dump(document, sort_keys=False)
    return write_if_changed(Path(install_path) / KUSTOMIZATION_FILE, content, mode=0o644)


def read_namespace(install_path: Path) -> str:
    """Return the namespace recorded in ``kustomization.yaml``."""
    path = Path(install_path) / KUSTOMIZATION_FILE
    if not path.exists():
        raise NotFound(f"{path} does not exist")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ValidationFailed(f"Failed to parse {path}: {exc}") from exc
    namespace = data.get("namespace") if isinstance(data, Mapping) else None
    if not namespace:
        raise NotFound(f"namespace not found in {path}")
    return str(namespace)


# ----------------------------------------------------------------------
def _dump_patch(document: Mapping[str, object]) -> dict[str, str]:
    return {"patch": yaml.safe_dump(dict(document), sort_keys=False)}


def _web_deployment_patch(
    volume_mount: Mapping[str, object],
    volumes: list[dict[str, object]] | None = None,
) -> dict[str, str]:
    pod_spec: dict[str, object] = {
        "containers": [{"name": "web", "volumeMounts": [dict(volume_mount)]}],
    }
    if volumes:
        pod_spec["volumes"] = volumes
    return _dump_patch(
        {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": "web"},
            "spec": {"template": {"spec": pod_spec}},
        }
    )


def _wiki_settings_patch(wiki_id: str, config_map: str) -> dict[str, str]:
    return _web_deployment_patch(
        {"mountPath": f"/mediawiki/config/settings/wikis/{wiki_id}", "name": config_map},
        [{"name": config_map, "configMap": {"name": config_map}}],
    )


def _local_settings_patch() -> dict[str, str]:
    return _web_deployment_patch(
        {
            "mountPath": "/mediawiki/config/LocalSettings.php",
            "name": "canasta-config",
            "subPath": "LocalSettings.php",
        }
    )


def _node_port_patch() -> dict[str, str]:
    return _dump_patch(
        {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": "caddy-lb"},
            "spec": {
                "type": "NodePort",
                "ports": [
                    {
                        "name": "http-caddy",
                        "port": 80,
                        "targetPort": 80,
                        "nodePort": HTTP_NODE_PORT,
                    },
                    {
                        "name": "https-caddy",
                        "port": 443,
                        "targetPort": 443,
                        "nodePort": HTTPS_NODE_PORT,
                    },
                ],
            },
        }
    )


__all__ = [
    "HTTPS_NODE_PORT",
    "HTTP_NODE_PORT",
    "KUSTOMIZATION_FILE",
    "build_kustomization",
    "generate_kustomization",
    "read_namespace",
    "scan_settings_dir",
]
