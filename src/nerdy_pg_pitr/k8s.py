from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import os
import tempfile

from kubernetes import client, config
from kubernetes.client import ApiException
from kubernetes.stream import stream

from .models import ClusterVolume

logger = logging.getLogger(__name__)

CLUSTER_LABEL = "cnpg.io/cluster"
INSTANCE_ROLE_LABEL = "cnpg.io/instanceRole"
INSTANCE_NAME_LABEL = "cnpg.io/instanceName"
PVC_ROLE_LABEL = "cnpg.io/pvcRole"
PRIMARY_ROLE = "primary"
PVC_ROLE_DATA = "PG_DATA"
PVC_ROLE_WAL = "PG_WAL"
PVC_ROLE_TABLESPACE = "PG_TABLESPACE"
DATA_VOLUME_ROLES = (PVC_ROLE_DATA, PVC_ROLE_WAL, PVC_ROLE_TABLESPACE)
POSTGRES_CONTAINER = "postgres"


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    custom_objects_api: client.CustomObjectsApi


class KubernetesOperationError(RuntimeError):
    """Raised when a Kubernetes call needed by backup or restore fails."""


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


class SqlExecutionError(RuntimeError):
    """Raised when psql inside an instance pod reports an error."""


def persist_kubeconfig_content(kubeconfig_content: str) -> str:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as handle:
        handle.write(kubeconfig_content)
        path = Path(handle.name)
    os.chmod(path, 0o600)
    return str(path)


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        custom_objects_api=client.CustomObjectsApi(api_client),
    )


def find_primary_pod(core_api: client.CoreV1Api, *, namespace: str, cluster_name: str) -> client.V1Pod:
    selector = f"{CLUSTER_LABEL}={cluster_name},{INSTANCE_ROLE_LABEL}={PRIMARY_ROLE}"
    try:
        pods = core_api.list_namespaced_pod(namespace=namespace, label_selector=selector).items
    except ApiException as error:
        raise KubernetesOperationError(
            _format_api_exception_message(
                operation=f"find the primary pod of cluster '{namespace}/{cluster_name}'",
                hint="Verify the cluster exists and RBAC allows list on pods.",
                error=error,
            )
        ) from error

    running = [pod for pod in pods if pod.status and pod.status.phase == "Running"]
    if len(running) != 1:
        raise KubernetesOperationError(
            f"Expected exactly one running primary pod for cluster '{namespace}/{cluster_name}', "
            f"found {len(running)}. Wait for a stable primary before taking a backup."
        )
    return running[0]


def list_instance_volumes(
    core_api: client.CoreV1Api,
    *,
    namespace: str,
    cluster_name: str,
    instance_name: str,
) -> list[ClusterVolume]:
    selector = f"{CLUSTER_LABEL}={cluster_name},{INSTANCE_NAME_LABEL}={instance_name}"
    try:
        pvcs = core_api.list_namespaced_persistent_volume_claim(namespace=namespace, label_selector=selector).items
    except ApiException as error:
        raise KubernetesOperationError(
            _format_api_exception_message(
                operation=f"list volumes of instance '{namespace}/{instance_name}'",
                hint="Verify RBAC allows list on persistentvolumeclaims.",
                error=error,
            )
        ) from error

    volumes: list[ClusterVolume] = []
    for pvc in pvcs:
        labels = (pvc.metadata.labels if pvc.metadata else None) or {}
        role = labels.get(PVC_ROLE_LABEL)
        if role not in DATA_VOLUME_ROLES:
            continue
        phase = pvc.status.phase if pvc.status else None
        if phase != "Bound":
            raise KubernetesOperationError(
                f"Volume '{namespace}/{pvc.metadata.name}' is {phase or 'Unknown'}; "
                "every data volume must be Bound before it can be snapshotted."
            )
        capacity = pvc.status.capacity.get("storage") if pvc.status and pvc.status.capacity else None
        volumes.append(
            ClusterVolume(
                pvc_name=pvc.metadata.name,
                role=role,
                storage_class=pvc.spec.storage_class_name if pvc.spec else None,
                capacity=capacity,
            )
        )

    volumes.sort(key=lambda volume: (DATA_VOLUME_ROLES.index(volume.role), volume.pvc_name))
    return volumes


def instance_name_of(pod: client.V1Pod) -> str:
    labels = (pod.metadata.labels if pod.metadata else None) or {}
    return labels.get(INSTANCE_NAME_LABEL) or pod.metadata.name


def exec_sql(
    core_api: client.CoreV1Api,
    *,
    namespace: str,
    pod_name: str,
    sql: str,
    database: str = "postgres",
) -> str:
    """Run ``sql`` through psql in the instance pod and return unaligned output."""
    try:
        response = stream(
            core_api.connect_get_namespaced_pod_exec,
            pod_name,
            namespace,
            container=POSTGRES_CONTAINER,
            command=["psql", "-v", "ON_ERROR_STOP=1", "-qtAX", "-d", database, "-c", sql],
            stderr=True,
            stdin=False,
            stdout=True,
            tty=False,
            _preload_content=False,
        )
        response.run_forever(timeout=60)
        stdout = response.read_stdout() or ""
        stderr = response.read_stderr() or ""
        return_code = response.returncode
        response.close()
    except ApiException as error:
        raise KubernetesOperationError(
            _format_api_exception_message(
                operation=f"exec psql in pod '{namespace}/{pod_name}'",
                hint="Verify RBAC allows create on pods/exec and the instance pod is running.",
                error=error,
            )
        ) from error

    if return_code not in (0, None) or "ERROR:" in stderr or "FATAL:" in stderr:
        raise SqlExecutionError(stderr.strip() or f"psql exited with code {return_code}")
    return stdout.strip()


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"Kubernetes call failed while trying to {operation}: API status {status} ({reason}). {hint}"


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
