from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterator
import os
import shlex
import shutil
import subprocess
import time
import uuid

import pytest

_ENV_RUN_FLAG = "NPP_RUN_KIND_INTEGRATION"
_ENV_PREREQUISITE_MANIFESTS = "NPP_IT_PREREQUISITE_MANIFESTS"
_ENV_OPERATOR_MANIFEST = "NPP_IT_CNPG_OPERATOR_MANIFEST"
_DEFAULT_OPERATOR_MANIFEST = (
    "https://raw.githubusercontent.com/cloudnative-pg/cloudnative-pg/release-1.24/releases/cnpg-1.24.1.yaml"
)
_SOURCE_MANIFEST_PATH = Path(__file__).parent / "manifests" / "pitr-source.yaml"
_REQUIRED_BINARIES = ("docker", "kind", "kubectl")


def _flag_enabled(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _render_command(command: list[str]) -> str:
    return " ".join(shlex.quote(token) for token in command)


def _run_command(
    command: list[str],
    *,
    timeout_seconds: int,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    completed = subprocess.run(
        command,
        check=False,
        capture_output=True,
        text=True,
        timeout=timeout_seconds,
    )

    if check and completed.returncode != 0:
        stdout = completed.stdout.strip() or "<empty>"
        stderr = completed.stderr.strip() or "<empty>"
        raise RuntimeError(
            f"Command failed with exit code {completed.returncode}: {_render_command(command)}\n"
            f"stdout:\n{stdout}\n"
            f"stderr:\n{stderr}"
        )

    return completed


def _prerequisite_manifests() -> list[str]:
    raw = os.getenv(_ENV_PREREQUISITE_MANIFESTS, "")
    return [entry.strip() for entry in raw.split(",") if entry.strip()]


def _verify_prerequisites() -> None:
    if not _flag_enabled(os.getenv(_ENV_RUN_FLAG)):
        pytest.skip(
            "KinD integration tests are disabled by default. "
            f"Set {_ENV_RUN_FLAG}=1 to run them.",
            allow_module_level=True,
        )

    missing = [binary for binary in _REQUIRED_BINARIES if shutil.which(binary) is None]
    if missing:
        missing_rendered = ", ".join(sorted(missing))
        pytest.skip(
            f"KinD integration prerequisites are missing: {missing_rendered}.",
            allow_module_level=True,
        )

    if not _prerequisite_manifests():
        pytest.skip(
            f"Set {_ENV_PREREQUISITE_MANIFESTS} to the snapshot CRD, snapshot controller and "
            "csi-hostpath driver manifests (comma-separated paths or URLs).",
            allow_module_level=True,
        )

    docker_info = _run_command(
        ["docker", "info", "--format", "{{.ServerVersion}}"],
        timeout_seconds=30,
        check=False,
    )
    if docker_info.returncode != 0:
        stderr = docker_info.stderr.strip() or docker_info.stdout.strip() or "unknown docker error"
        pytest.skip(
            f"Docker daemon is not reachable for KinD integration tests: {stderr}.",
            allow_module_level=True,
        )


@dataclass(frozen=True)
class KindClusterContext:
    cluster_name: str
    kubeconfig_path: Path
    harness_dir: Path
    namespace: str
    postgres_cluster: str
    snapshot_class: str
    runtime_service_account: str
    unbound_service_account: str

    def run_kubectl(
        self,
        *args: str,
        timeout_seconds: int = 120,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        return _run_command(
            ["kubectl", "--kubeconfig", str(self.kubeconfig_path), *args],
            timeout_seconds=timeout_seconds,
            check=check,
        )

    def psql(self, sql: str) -> str:
        completed = self.run_kubectl(
            "-n",
            self.namespace,
            "exec",
            f"{self.postgres_cluster}-1",
            "-c",
            "postgres",
            "--",
            "psql",
            "-qtAX",
            "-d",
            "postgres",
            "-c",
            sql,
            timeout_seconds=60,
        )
        return completed.stdout.strip()

    def collect_diagnostics(self) -> str:
        diagnostic_commands: tuple[tuple[str, list[str]], ...] = (
            ("kubectl version", ["version", "--client"]),
            ("nodes", ["get", "nodes", "-o", "wide"]),
            ("pods", ["-n", self.namespace, "get", "pods", "-o", "wide", "--show-labels"]),
            ("pvc/pv", ["-n", self.namespace, "get", "pvc,pv"]),
            ("volumesnapshots", ["-n", self.namespace, "get", "volumesnapshots", "-o", "wide"]),
            ("clusters", ["-n", self.namespace, "get", "clusters.postgresql.cnpg.io", "-o", "wide"]),
            ("events", ["-n", self.namespace, "get", "events", "--sort-by=.lastTimestamp"]),
        )

        sections: list[str] = []
        for title, args in diagnostic_commands:
            completed = self.run_kubectl(*args, timeout_seconds=60, check=False)
            output = completed.stdout.strip() or completed.stderr.strip() or "<no output>"
            sections.append(f"[{title}]\n{output}")

        return "\n\n".join(sections)

    def service_account_kubeconfig(self, service_account_name: str) -> Path:
        """Write a kubeconfig that authenticates as a ServiceAccount of the test namespace."""
        token = self.run_kubectl(
            "-n",
            self.namespace,
            "create",
            "token",
            service_account_name,
            "--duration=10m",
            timeout_seconds=60,
        ).stdout.strip()
        if not token:
            raise RuntimeError(f"ServiceAccount token generation returned empty output: {service_account_name}")

        path = self.harness_dir / f"{service_account_name}.kubeconfig"
        shutil.copyfile(self.kubeconfig_path, path)
        user = f"{service_account_name}-user"
        base = ["kubectl", "--kubeconfig", str(path)]
        _run_command([*base, "config", "set-credentials", user, f"--token={token}"], timeout_seconds=30)
        _run_command([*base, "config", "set-context", "--current", f"--user={user}"], timeout_seconds=30)
        os.chmod(path, 0o600)
        return path


def _wait_for_primary(cluster: KindClusterContext, *, timeout_seconds: int) -> None:
    deadline = time.monotonic() + timeout_seconds
    selector = f"cnpg.io/cluster={cluster.postgres_cluster},cnpg.io/instanceRole=primary"
    while time.monotonic() < deadline:
        completed = cluster.run_kubectl(
            "-n",
            cluster.namespace,
            "get",
            "pods",
            "-l",
            selector,
            "-o",
            "jsonpath={.items[*].status.phase}",
            timeout_seconds=30,
            check=False,
        )
        if completed.returncode == 0 and completed.stdout.strip() == "Running":
            return
        time.sleep(5)

    raise RuntimeError(
        f"Cluster {cluster.namespace}/{cluster.postgres_cluster} has no running primary.\n"
        f"Diagnostics:\n{cluster.collect_diagnostics()}"
    )


@pytest.fixture(scope="session")
def kind_cluster(tmp_path_factory: pytest.TempPathFactory) -> Iterator[KindClusterContext]:
    _verify_prerequisites()
    if not _SOURCE_MANIFEST_PATH.exists():
        raise RuntimeError(f"Expected KinD integration manifest at {_SOURCE_MANIFEST_PATH}.")

    harness_dir = tmp_path_factory.mktemp("kind-harness")
    kubeconfig_path = harness_dir / "kubeconfig"
    cluster_name = f"npp-it-{uuid.uuid4().hex[:8]}"

    _run_command(
        [
            "kind",
            "create",
            "cluster",
            "--name",
            cluster_name,
            "--wait",
            "180s",
            "--kubeconfig",
            str(kubeconfig_path),
        ],
        timeout_seconds=420,
    )

    cluster = KindClusterContext(
        cluster_name=cluster_name,
        kubeconfig_path=kubeconfig_path,
        harness_dir=harness_dir,
        namespace="npp-integration",
        postgres_cluster="npp-source",
        snapshot_class="npp-csi-snapclass",
        runtime_service_account="npp-runner",
        unbound_service_account="npp-unbound",
    )

    try:
        for manifest in _prerequisite_manifests():
            cluster.run_kubectl("apply", "-f", manifest, timeout_seconds=240)
        operator_manifest = os.getenv(_ENV_OPERATOR_MANIFEST, _DEFAULT_OPERATOR_MANIFEST)
        cluster.run_kubectl("apply", "--server-side", "-f", operator_manifest, timeout_seconds=240)
        cluster.run_kubectl(
            "-n",
            "cnpg-system",
            "rollout",
            "status",
            "deployment/cnpg-controller-manager",
            "--timeout=240s",
            timeout_seconds=300,
        )
        cluster.run_kubectl("apply", "-f", str(_SOURCE_MANIFEST_PATH), timeout_seconds=180)
        _wait_for_primary(cluster, timeout_seconds=600)
        yield cluster
    finally:
        _run_command(
            ["kind", "delete", "cluster", "--name", cluster_name],
            timeout_seconds=240,
            check=False,
        )
