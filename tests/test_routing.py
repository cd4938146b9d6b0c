"""Tests for generated Caddy and kustomize configuration."""
from __future__ import annotations

from pathlib import Path

import bcrypt
import pytest
import yaml
from conftest import write_farm

from canastactl.errors import NotFound, ValidationFailed
from canastactl.farm.caddy import (
    ensure_caddy_includes,
    render_caddyfile,
    rewrite_caddy,
    site_address,
)
from canastactl.farm.credentials import ensure_observability_credentials, hash_password
from canastactl.farm.envfile import EnvFile
from canastactl.farm.kustomize import (
    build_kustomization,
    generate_kustomization,
    read_namespace,
    scan_settings_dir,
)
from canastactl.farm.wikis import Wiki, WikiRegistry
from canastactl.templates import TemplateEngine


def test_site_address_deduplicates_and_strips_ports() -> None:
    """Tenants sharing a domain collapse into one site address."""
    wikis = [
        Wiki(id="main", url="localhost"),
        Wiki(id="docs", url="localhost/docs"),
    ]
    assert site_address(wikis) == "localhost"

    wikis.append(Wiki(id="blog", url="blog.example.com:8443"))
    assert site_address(wikis) == "localhost, blog.example.com"
    assert site_address(wikis, http_only=True) == "http://localhost, http://blog.example.com"


def test_site_address_requires_wikis() -> None:
    with pytest.raises(ValidationFailed):
        site_address([])


def test_render_caddyfile_plain(templates: TemplateEngine) -> None:
    text = render_caddyfile([Wiki(id="main", url="localhost")], {}, templates)

    assert text.startswith("# Auto-generated by canastactl - DO NOT EDIT\n")
    assert "Caddyfile.site" in text.splitlines()[1]
    assert "Caddyfile.global" in text.splitlines()[2]
    assert "import /etc/caddy/Caddyfile.global" in text
    assert "localhost {" in text
    assert "import /etc/caddy/Caddyfile.site" in text
    assert "reverse_proxy varnish:80" in text
    assert "output file /var/log/caddy/access.log" in text
    assert "@opensearch" not in text


def test_render_caddyfile_auto_https_off(templates: TemplateEngine) -> None:
    text = render_caddyfile(
        [Wiki(id="main", url="example.org")], {"CADDY_AUTO_HTTPS": "OFF"}, templates
    )
    assert "http://example.org {" in text


def test_render_caddyfile_observability(templates: TemplateEngine) -> None:
    env = {
        "CANASTA_ENABLE_OBSERVABILITY": "true",
        "OS_USER": "admin",
        "OS_PASSWORD_HASH": "$2b$12$hash",
    }
    text = render_caddyfile([Wiki(id="main", url="localhost")], env, templates)

    assert "@opensearch path /opensearch /opensearch/*" in text
    assert "admin $2b$12$hash" in text
    assert "reverse_proxy opensearch-dashboards:5601" in text
    assert "handle {" in text


def test_render_caddyfile_observability_requires_credentials(templates: TemplateEngine) -> None:
    with pytest.raises(ValidationFailed):
        render_caddyfile(
            [Wiki(id="main", url="localhost")],
            {"CANASTA_ENABLE_OBSERVABILITY": "true"},
            templates,
        )


def test_rewrite_caddy_is_idempotent(tmp_path: Path, templates: TemplateEngine) -> None:
    """A second render without registry changes is byte-identical."""
    path = write_farm(tmp_path / "farm")

    assert rewrite_caddy(path, templates) is True
    first = (path / "config" / "Caddyfile").read_bytes()
    assert rewrite_caddy(path, templates) is False
    assert (path / "config" / "Caddyfile").read_bytes() == first

    WikiRegistry(path).add("blog", "blog.example.com")
    assert rewrite_caddy(path, templates) is True
    assert b"localhost, blog.example.com {" in (path / "config" / "Caddyfile").read_bytes()


def test_ensure_caddy_includes_does_not_clobber(tmp_path: Path) -> None:
    config = tmp_path / "config"
    config.mkdir()
    (config / "Caddyfile.site").write_text("custom\n", encoding="utf-8")

    created = ensure_caddy_includes(tmp_path)

    assert created == [config / "Caddyfile.global"]
    assert (config / "Caddyfile.site").read_text(encoding="utf-8") == "custom\n"


def test_observability_credentials_are_generated_once(tmp_path: Path) -> None:
    path = write_farm(tmp_path / "farm", env={"CANASTA_ENABLE_OBSERVABILITY": "true"})
    env_file = EnvFile(path / ".env")

    assert ensure_observability_credentials(env_file) is True
    first = env_file.read()
    assert first["OS_USER"] == "admin"
    assert len(first["OS_PASSWORD"]) == 30
    assert first["OS_PASSWORD_HASH"].startswith("$2")

    ensure_observability_credentials(env_file)
    assert env_file.read() == first


def test_observability_credentials_skipped_when_disabled(tmp_path: Path) -> None:
    path = write_farm(tmp_path / "farm")
    env_file = EnvFile(path / ".env")
    assert ensure_observability_credentials(env_file) is False
    assert "OS_USER" not in env_file.read()


def test_hash_password_verifies() -> None:
    hashed = hash_password("hunter2")
    assert bcrypt.checkpw(b"hunter2", hashed.encode("utf-8"))


# ----------------------------------------------------------------------
# kustomize
# ----------------------------------------------------------------------
def test_scan_settings_dir_skips_placeholders(tmp_path: Path) -> None:
    directory = tmp_path / "config" / "settings" / "global"
    directory.mkdir(parents=True)
    for name in ("b.php", "a.php", "README", ".gitkeep"):
        (directory / name).write_text("", encoding="utf-8")
    (directory / "nested").mkdir()

    assert scan_settings_dir(tmp_path, "config/settings/global") == [
        "a.php=config/settings/global/a.php",
        "b.php=config/settings/global/b.php",
    ]


def test_build_kustomization(tmp_path: Path) -> None:
    path = write_farm(
        tmp_path / "wikifarm", wikis=[("main", "localhost"), ("docs", "localhost/docs")]
    )
    (path / "config" / "settings" / "global").mkdir(parents=True)
    (path / "config" / "settings" / "global" / "Global.php").write_text("", encoding="utf-8")
    (path / "config" / "settings" / "wikis" / "docs").mkdir(parents=True)
    (path / "config" / "settings" / "wikis" / "docs" / "Docs.php").write_text("", encoding="utf-8")

    document = build_kustomization(path)

    assert document["apiVersion"] == "kustomize.config.k8s.io/v1beta1"
    assert document["kind"] == "Kustomization"
    assert document["namespace"] == "wikifarm"
    assert "kubernetes/web.yaml" in document["resources"]
    generators = {item["name"]: item for item in document["configMapGenerator"]}
    assert generators["canasta-settings-global"]["files"] == [
        "Global.php=config/settings/global/Global.php"
    ]
    assert "canasta-settings-wiki-docs" in generators
    assert "canasta-settings-wiki-main" not in generators
    assert generators["canasta-env"] == {"name": "canasta-env", "envs": [".env"]}
    assert "config/LocalSettings.php" not in generators["canasta-config"]["files"]
    patches = [yaml.safe_load(item["patch"]) for item in document["patches"]]
    assert patches[0]["metadata"]["name"] == "web"
    mounts = patches[0]["spec"]["template"]["spec"]["containers"][0]["volumeMounts"]
    assert mounts[0]["mountPath"] == "/mediawiki/config/settings/wikis/docs"


def test_build_kustomization_local_settings_and_node_ports(tmp_path: Path) -> None:
    path = write_farm(tmp_path / "farm")
    (path / "config" / "LocalSettings.php").write_text("<?php\n", encoding="utf-8")

    document = build_kustomization(path, local_cluster=True)

    generators = {item["name"]: item for item in document["configMapGenerator"]}
    assert "config/LocalSettings.php" in generators["canasta-config"]["files"]
    patches = [yaml.safe_load(item["patch"]) for item in document["patches"]]
    service = patches[-1]
    assert service["kind"] == "Service"
    assert service["metadata"]["name"] == "caddy-lb"
    assert [port["nodePort"] for port in service["spec"]["ports"]] == [30080, 30443]


def test_generate_kustomization_and_read_namespace(tmp_path: Path) -> None:
    path = write_farm(tmp_path / "farm")

    assert generate_kustomization(path) is True
    assert generate_kustomization(path) is False
    text = (path / "kustomization.yaml").read_text(encoding="utf-8")
    assert text.startswith("# Auto-generated by canastactl")
    assert read_namespace(path) == "farm"


def test_read_namespace_missing(tmp_path: Path) -> None:
    with pytest.raises(NotFound):
        read_namespace(tmp_path)
    (tmp_path / "kustomization.yaml").write_text("kind: Kustomization\n", encoding="utf-8")
    with pytest.raises(NotFound):
        read_namespace(tmp_path)
