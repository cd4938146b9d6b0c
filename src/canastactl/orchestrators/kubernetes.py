"""Kubernetes orchestrator driven through ``kubectl``.

Each installation maps onto one namespace, recorded in the generated
``kustomization.yaml``. Backups run restic inside a short-lived pod that
mounts a ``canasta-backup`` PersistentVolumeClaim as the staging area.
"""
from __future__ import annotations

import secrets
import shutil
from collections.abc import Mapping, Sequence
from pathlib import Path

import yaml

from ..config import BackupConfig, KubernetesConfig
from ..errors import (
    BackupRepositoryMissing,
    CommandFailed,
    DependencyMissing,
    NotRunning,
    ServiceNotFound,
    ValidationFailed,
)
from ..farm.caddy import rewrite_caddy
from ..farm.envfile import EnvFile
from ..farm.kustomize import generate_kustomization, read_namespace
from ..state import BackendKind, Installation
from ..templates import TemplateEngine
from .base import SNAPSHOT_ROOT, Orchestrator, is_local_repository, repository_from_args
from .compose import REPOSITORY_MISSING_MARKER
from .kind import KindClusterManager

WEB_DEPLOYMENT = "deployment/web"
POD_LABEL_KEY = "app"
BACKUP_CLAIM = "canasta-backup"
BACKUP_CLAIM_SIZE = "10Gi"
# Variables from .env forwarded to restic inside the backup pod.
RESTIC_ENV_PREFIXES = ("RESTIC_", "AWS_")


class KubernetesOrchestrator(Orchestrator):
    """Run installations as kustomize applications in a namespace."""

    kind = BackendKind.KUBERNETES
    display_name = "Kubernetes"
    shares_install_dir = False

    def __init__(
        self,
        templates: TemplateEngine,
        settings: KubernetesConfig | None = None,
        backups: BackupConfig | None = None,
        kind_manager: KindClusterManager | None = None,
    ) -> None:
        """Configure kubectl and the kind helper."""
        super().__init__(templates)
        self.settings = settings or KubernetesConfig()
        self.backups = backups or BackupConfig()
        self.kind_manager = kind_manager or KindClusterManager(templates, self.settings)

    @property
    def kubectl(self) -> str:
        return self.settings.kubectl_bin

    # Lifecycle ---------------------------------------------------------
    def check_dependencies(self) -> None:
        """Require kubectl on PATH and a reachable cluster."""
        if shutil.which(self.kubectl) is None:
            raise DependencyMissing(f"{self.kubectl} must be installed and in PATH")
        result = self._run_command([self.kubectl, "cluster-info"], check=False)
        if result.returncode != 0:
            raise DependencyMissing(
                f"cannot connect to Kubernetes cluster: {(result.stdout or '').strip()}"
            )

    def start(self, installation: Installation) -> None:
        """Apply the kustomization and wait for the web rollout."""
        if installation.kind_cluster:
            self.kind_manager.use_context(installation.kind_cluster)
        namespace = read_namespace(installation.path)
        self._run_command(
            [self.kubectl, "apply", "-k", "."],
            cwd=installation.path,
            error_prefix="kubectl apply",
        )
        self._wait_for_rollout(namespace)

    def stop(self, installation: Installation) -> None:
        """Scale every deployment in the namespace to zero."""
        if installation.kind_cluster:
            self.kind_manager.use_context(installation.kind_cluster)
        namespace = read_namespace(installation.path)
        self._run_command(
            [self.kubectl, "scale", "deployment", "--all", "--replicas=0", "-n", namespace],
            error_prefix="Scaling down deployments",
        )

    def update_config(self, installation: Installation) -> bool:
        """Regenerate the Caddyfile and the kustomization."""
        caddy_changed = rewrite_caddy(installation.path, self.templates)
        kustomize_changed = generate_kustomization(
            installation.path, local_cluster=installation.local_cluster
        )
        return caddy_changed or kustomize_changed

    def check_running_status(self, installation: Installation) -> None:
        """Raise :class:`NotRunning` unless ``web`` reports ready replicas."""
        namespace = read_namespace(installation.path)
        result = self._run_command(
            [
                self.kubectl,
                "get",
                WEB_DEPLOYMENT,
                "-n",
                namespace,
                "-o",
                "jsonpath={.status.readyReplicas}",
            ],
            error_prefix="Checking deployment status",
        )
        replicas = (result.stdout or "").strip()
        if replicas in ("", "0"):
            raise NotRunning("web deployment has no ready replicas")

    def destroy(self, install_path: Path) -> str:
        """Delete the installation namespace."""
        namespace = read_namespace(install_path)
        result = self._run_command(
            [self.kubectl, "delete", "namespace", namespace, "--ignore-not-found"],
            error_prefix="Deleting namespace",
        )
        return result.stdout or ""

    def update(self, install_path: Path) -> str:
        """Restart the web deployment and wait for it."""
        namespace = read_namespace(install_path)
        result = self._run_command(
            [self.kubectl, "rollout", "restart", WEB_DEPLOYMENT, "-n", namespace],
            error_prefix="Restarting web deployment",
        )
        self._wait_for_rollout(namespace)
        return result.stdout or ""

    # Service access ----------------------------------------------------
    def running_pod(self, namespace: str, service: str) -> str:
        """Return the name of a running pod labelled ``app=<service>``."""
        result = self._run_command(
            [
                self.kubectl,
                "get",
                "pods",
                "-n",
                namespace,
                "-l",
                f"{POD_LABEL_KEY}={service}",
                "--field-selector=status.phase=Running",
                "-o",
                "jsonpath={.items[0].metadata.name}",
            ],
            check=False,
        )
        pod = (result.stdout or "").strip()
        if result.returncode != 0 or not pod:
            detail = f": {pod}" if result.returncode != 0 and pod else ""
            raise ServiceNotFound(
                f"no running pod found for service '{service}' in namespace '{namespace}'{detail}"
            )
        return pod

    def exec(self, install_path: Path, service: str, command: str) -> str:
        """Run *command* in the service's pod and return combined output."""
        namespace = read_namespace(install_path)
        pod = self.running_pod(namespace, service)
        result = self._run_command(
            [self.kubectl, "exec", pod, "-n", namespace, "--", "/bin/bash", "-c", command],
            error_prefix=f"Command in {service}",
        )
        return result.stdout or ""

    def exec_streaming(self, install_path: Path, service: str, command: str) -> None:
        """Run *command* in the service's pod without capturing output."""
        namespace = read_namespace(install_path)
        pod = self.running_pod(namespace, service)
        self._run_command(
            [self.kubectl, "exec", pod, "-n", namespace, "--", "/bin/bash", "-c", command],
            capture_output=False,
            error_prefix=f"Command in {service}",
        )

    def copy_to(
        self, install_path: Path, service: str, host_path: Path, container_path: str
    ) -> None:
        """``kubectl cp host ns/pod:path``."""
        namespace = read_namespace(install_path)
        pod = self.running_pod(namespace, service)
        self._run_command(
            [self.kubectl, "cp", str(host_path), f"{namespace}/{pod}:{container_path}"],
            error_prefix=f"Copying {host_path} to {service}",
        )

    def copy_from(
        self, install_path: Path, service: str, container_path: str, host_path: Path
    ) -> None:
        """``kubectl cp ns/pod:path host``."""
        namespace = read_namespace(install_path)
        pod = self.running_pod(namespace, service)
        self._run_command(
            [self.kubectl, "cp", f"{namespace}/{pod}:{container_path}", str(host_path)],
            error_prefix=f"Copying {container_path} from {service}",
        )

    # Backups -----------------------------------------------------------
    def run_backup(
        self,
        install_path: Path,
        env_path: Path,
        staged: Mapping[Path, str],
        args: Sequence[str],
    ) -> str:
        """Stage files into the backup claim and run restic in a transient pod."""
        repository = repository_from_args(args)
        if repository and is_local_repository(repository):
            raise ValidationFailed(
                "local filesystem restic repositories are not supported on Kubernetes; "
                "use a remote repository such as s3:"
            )
        namespace = read_namespace(install_path)
        environment = [
            f"{key}={value}"
            for key, value in EnvFile(env_path).read().items()
            if key.startswith(RESTIC_ENV_PREFIXES) and value
        ]
        pod = self._start_backup_pod(namespace)
        try:
            if staged:
                self._pod_exec(namespace, pod, ["sh", "-c", f"rm -rf {SNAPSHOT_ROOT}/*"])
                for host_path, container_path in sorted(
                    staged.items(), key=lambda item: str(item[0])
                ):
                    target = f"{namespace}/{pod}:{container_path}"
                    self._run_command(
                        [self.kubectl, "cp", str(host_path), target],
                        error_prefix=f"Staging {host_path}",
                    )
            command = [
                self.kubectl, "exec", pod, "-n", namespace, "--",
                "env", *environment, "restic", *args,
            ]
            result = self._run_command(command, check=False)
            output = result.stdout or ""
            if result.returncode != 0:
                if REPOSITORY_MISSING_MARKER in output:
                    raise BackupRepositoryMissing(
                        "backup repository not found. Run 'canastactl backup init' to create it",
                        command=command,
                        returncode=result.returncode,
                        output=output,
                    )
                raise CommandFailed(
                    f"restic command failed (exit {result.returncode}): "
                    f"{output.strip() or 'no output'}",
                    command=command,
                    returncode=result.returncode,
                    output=output,
                )
            return output
        finally:
            self._delete_pod(namespace, pod)

    def restore_from_backup_volume(self, install_path: Path, paths: Mapping[str, Path]) -> None:
        """Copy staged snapshot paths out of the backup claim onto the host."""
        if not paths:
            return
        namespace = read_namespace(install_path)
        pod = self._start_backup_pod(namespace)
        try:
            for source, host_path in sorted(paths.items()):
                check = f"if [ -d {source} ]; then echo d; elif [ -f {source} ]; then echo f; fi"
                kind = self._pod_exec(namespace, pod, ["sh", "-c", check]).strip()
                if not kind:
                    continue
                host_path = Path(host_path)
                if kind == "d":
                    _clear_directory(host_path)
                self._run_command(
                    [self.kubectl, "cp", f"{namespace}/{pod}:{source}", str(host_path)],
                    error_prefix=f"Restoring {source}",
                )
        finally:
            self._delete_pod(namespace, pod)

    # ------------------------------------------------------------------
    def _wait_for_rollout(self, namespace: str) -> None:
        self._run_command(
            [
                self.kubectl,
                "rollout",
                "status",
                WEB_DEPLOYMENT,
                "-n",
                namespace,
                f"--timeout={self.settings.rollout_timeout}s",
            ],
            error_prefix="web deployment rollout",
        )

    def _apply_manifest(self, namespace: str, manifest: Mapping[str, object]) -> None:
        self._run_command(
            [self.kubectl, "apply", "-n", namespace, "-f", "-"],
            input_text=yaml.safe_dump(dict(manifest), sort_keys=False),
            error_prefix=f"Applying {manifest.get('kind')}",
        )

    def _start_backup_pod(self, namespace: str) -> str:
        self._apply_manifest(namespace, _backup_claim_manifest())
        pod = f"canasta-backup-{secrets.token_hex(4)}"
        self._apply_manifest(namespace, _backup_pod_manifest(pod, self.backups.restic_image))
        self._run_command(
            [
                self.kubectl,
                "wait",
                "--for=condition=Ready",
                f"pod/{pod}",
                "-n",
                namespace,
                f"--timeout={self.settings.rollout_timeout}s",
            ],
            error_prefix="Waiting for backup pod",
        )
        return pod

    def _delete_pod(self, namespace: str, pod: str) -> None:
        self._run_command(
            [
                self.kubectl, "delete", "pod", pod, "-n", namespace,
                "--ignore-not-found", "--wait=false",
            ],
            error_prefix="Deleting backup pod",
        )

    def _pod_exec(self, namespace: str, pod: str, command: Sequence[str]) -> str:
        result = self._run_command(
            [self.kubectl, "exec", pod, "-n", namespace, "--", *command],
            error_prefix=f"Command in {pod}",
        )
        return result.stdout or ""


def _backup_claim_manifest() -> dict[str, object]:
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {"name": BACKUP_CLAIM},
        "spec": {
            "accessModes": ["ReadWriteOnce"],
            "resources": {"requests": {"storage": BACKUP_CLAIM_SIZE}},
        },
    }


def _backup_pod_manifest(name: str, image: str) -> dict[str, object]:
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": name, "labels": {POD_LABEL_KEY: "canasta-backup"}},
        "spec": {
            "restartPolicy": "Never",
            "containers": [
                {
                    "name": "restic",
                    "image": image,
                    "command": ["sleep", "86400"],
                    "volumeMounts": [{"name": "snapshot", "mountPath": SNAPSHOT_ROOT}],
                }
            ],
            "volumes": [
                {"name": "snapshot", "persistentVolumeClaim": {"claimName": BACKUP_CLAIM}}
            ],
        },
    }


def _clear_directory(path: Path) -> None:
    """Empty *path* while keeping the directory itself."""
    path.mkdir(parents=True, exist_ok=True)
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


__all__ = ["BACKUP_CLAIM", "KubernetesOrchestrator", "WEB_DEPLOYMENT"]
