from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable, Protocol
import logging
import shlex

from kubernetes import client
from kubernetes.client import ApiException

from .k8s import (
    CLUSTER_LABEL,
    INSTANCE_NAME_LABEL,
    INSTANCE_ROLE_LABEL,
    KubernetesOperationError,
    POSTGRES_CONTAINER,
    PRIMARY_ROLE,
    PVC_ROLE_DATA,
    PVC_ROLE_LABEL,
    PVC_ROLE_WAL,
    SqlExecutionError,
    exec_sql,
)
from .models import Backup, ClusterRecord, InstanceObservation, ResolvedTarget, VolumeSnapshot
from .recovery_target import format_target_time

logger = logging.getLogger(__name__)

REPLICA_ROLE = "replica"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "nerdy-pg-pitr"
DATA_MOUNT_PATH = "/var/lib/postgresql/data"
WAL_MOUNT_PATH = "/var/lib/postgresql/wal"
TABLESPACE_MOUNT_ROOT = "/var/lib/postgresql/tablespaces"
PGDATA = f"{DATA_MOUNT_PATH}/pgdata"
POSTGRES_PORT = 5432
_FAILED_WAITING_REASONS = {"CrashLoopBackOff", "CreateContainerConfigError", "CreateContainerError"}

OBSERVE_SQL = (
    "SELECT pg_is_in_recovery(), "
    "CASE WHEN pg_is_in_recovery() THEN pg_get_wal_replay_pause_state() ELSE 'not paused' END, "
    "COALESCE(to_char(pg_last_xact_replay_timestamp() AT TIME ZONE 'UTC', 'YYYY-MM-DD\"T\"HH24:MI:SS.US'), ''), "
    "current_setting('transaction_read_only'), "
    "(SELECT count(*) FROM pg_stat_replication WHERE state = 'streaming')"
)


class InstanceDriver(Protocol):
    def provision_base(self, *, record: ClusterRecord, backup: Backup, target: ResolvedTarget) -> None: ...

    def observe(self, *, record: ClusterRecord) -> InstanceObservation: ...

    def promote(self, *, record: ClusterRecord) -> None: ...

    def attach_replicas(self, *, record: ClusterRecord, backup: Backup) -> None: ...

    def discard(self, *, record: ClusterRecord) -> None: ...


class PromotionError(RuntimeError):
    """Raised when the recovered primary refuses to leave recovery."""


@dataclass(frozen=True)
class InstanceTemplate:
    image: str
    archive_destination: str
    credentials_secret: str
    archive_endpoint_url: str | None = None
    storage_class: str | None = None
    replication_user: str = "streaming_replica"


class KubernetesInstanceDriver:
    """Runs restored instances as bare pods on volumes cloned from a backup's snapshots.

    Every method is idempotent: objects that already exist are left in place,
    so a restarted controller can call them again for the same cluster.
    """

    def __init__(self, *, core_api: client.CoreV1Api, template: InstanceTemplate) -> None:
        self.core_api = core_api
        self.template = template

    def provision_base(self, *, record: ClusterRecord, backup: Backup, target: ResolvedTarget) -> None:
        instance = primary_instance_name(record.name)
        volumes = self._ensure_volumes(record=record, backup=backup, instance=instance)
        pod = self._build_pod(
            record=record,
            backup=backup,
            instance=instance,
            role=PRIMARY_ROLE,
            volumes=volumes,
            startup=_recovery_startup_command(
                record=record,
                backup=backup,
                target=target,
            ),
        )
        self._create_ignoring_conflict(
            lambda: self.core_api.create_namespaced_pod(namespace=record.namespace, body=pod),
        )

    def observe(self, *, record: ClusterRecord) -> InstanceObservation:
        pod_name = primary_instance_name(record.name)
        try:
            pod = self.core_api.read_namespaced_pod(name=pod_name, namespace=record.namespace)
        except ApiException as error:
            if error.status == 404:
                return InstanceObservation(exists=False)
            raise

        failure = pod_failure_reason(pod)
        phase = pod.status.phase if pod.status and pod.status.phase else "Unknown"
        if failure or phase != "Running":
            return InstanceObservation(exists=True, running=False, error=failure)

        try:
            output = exec_sql(self.core_api, namespace=record.namespace, pod_name=pod_name, sql=OBSERVE_SQL)
        except (SqlExecutionError, KubernetesOperationError) as error:
            # Postgres is still starting or replaying up to a consistent state.
            logger.debug("instance %s/%s not queryable yet: %s", record.namespace, pod_name, error)
            return InstanceObservation(exists=True, running=True)
        return parse_observation(output)

    def promote(self, *, record: ClusterRecord) -> None:
        output = exec_sql(
            self.core_api,
            namespace=record.namespace,
            pod_name=primary_instance_name(record.name),
            sql="SELECT pg_promote(true, 60)",
        )
        if output.strip() != "t":
            raise PromotionError(f"pg_promote returned {output.strip() or 'nothing'}")

    def attach_replicas(self, *, record: ClusterRecord, backup: Backup) -> None:
        if record.request is None or record.request.replicas <= 0:
            return

        self._create_ignoring_conflict(
            lambda: self.core_api.create_namespaced_service(
                namespace=record.namespace,
                body=self._read_write_service(record),
            )
        )
        for index in range(2, record.request.replicas + 2):
            instance = f"{record.name}-{index}"
            volumes = self._ensure_volumes(record=record, backup=backup, instance=instance)
            pod = self._build_pod(
                record=record,
                backup=backup,
                instance=instance,
                role=REPLICA_ROLE,
                volumes=volumes,
                startup=_replica_startup_command(template=self.template, record=record, backup=backup, instance=instance),
            )
            self._create_ignoring_conflict(
                lambda pod=pod: self.core_api.create_namespaced_pod(namespace=record.namespace, body=pod),
            )

    def discard(self, *, record: ClusterRecord) -> None:
        selector = f"{CLUSTER_LABEL}={record.name},{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}"
        self.core_api.delete_collection_namespaced_pod(
            namespace=record.namespace,
            label_selector=selector,
            grace_period_seconds=0,
        )
        self.core_api.delete_collection_namespaced_persistent_volume_claim(
            namespace=record.namespace,
            label_selector=selector,
        )
        try:
            self.core_api.delete_namespaced_service(name=read_write_service_name(record.name), namespace=record.namespace)
        except ApiException as error:
            if error.status != 404:
                raise
        logger.info("discarded restored instances of %s/%s", record.namespace, record.name)

    def _ensure_volumes(self, *, record: ClusterRecord, backup: Backup, instance: str) -> list[tuple[VolumeSnapshot, str]]:
        volumes: list[tuple[VolumeSnapshot, str]] = []
        tablespace_index = 0
        for snapshot in backup.snapshots:
            if snapshot.volume_role == PVC_ROLE_DATA:
                pvc_name = instance
            elif snapshot.volume_role == PVC_ROLE_WAL:
                pvc_name = f"{instance}-wal"
            else:
                tablespace_index += 1
                pvc_name = f"{instance}-tbs-{tablespace_index}"
            claim = client.V1PersistentVolumeClaim(
                metadata=client.V1ObjectMeta(
                    name=pvc_name,
                    labels={
                        **self._labels(record, instance),
                        PVC_ROLE_LABEL: snapshot.volume_role,
                    },
                ),
                spec=client.V1PersistentVolumeClaimSpec(
                    access_modes=["ReadWriteOnce"],
                    storage_class_name=self.template.storage_class,
                    resources=client.V1VolumeResourceRequirements(
                        requests={"storage": snapshot.restore_size or "1Gi"},
                    ),
                    data_source=client.V1TypedLocalObjectReference(
                        api_group="snapshot.storage.k8s.io",
                        kind="VolumeSnapshot",
                        name=snapshot.name,
                    ),
                ),
            )
            self._create_ignoring_conflict(
                lambda claim=claim: self.core_api.create_namespaced_persistent_volume_claim(
                    namespace=record.namespace,
                    body=claim,
                )
            )
            volumes.append((snapshot, pvc_name))
        return volumes

    def _build_pod(
        self,
        *,
        record: ClusterRecord,
        backup: Backup,
        instance: str,
        role: str,
        volumes: list[tuple[VolumeSnapshot, str]],
        startup: str,
    ) -> client.V1Pod:
        pod_volumes: list[client.V1Volume] = []
        mounts: list[client.V1VolumeMount] = []
        for index, (snapshot, pvc_name) in enumerate(volumes):
            volume_name = f"vol-{index}"
            pod_volumes.append(
                client.V1Volume(
                    name=volume_name,
                    persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(claim_name=pvc_name),
                )
            )
            mounts.append(client.V1VolumeMount(name=volume_name, mount_path=_mount_path(snapshot, index)))

        return client.V1Pod(
            metadata=client.V1ObjectMeta(
                name=instance,
                labels={**self._labels(record, instance), INSTANCE_ROLE_LABEL: role},
                annotations={"nerdy-pg-pitr/source-backup": backup.name},
            ),
            spec=client.V1PodSpec(
                restart_policy="Always",
                security_context=client.V1PodSecurityContext(run_as_user=26, fs_group=26),
                containers=[
                    client.V1Container(
                        name=POSTGRES_CONTAINER,
                        image=self.template.image,
                        command=["sh", "-c", startup],
                        env=self._archive_env(),
                        ports=[client.V1ContainerPort(container_port=POSTGRES_PORT, name="postgresql")],
                        volume_mounts=mounts,
                        termination_message_policy="FallbackToLogsOnError",
                    )
                ],
                volumes=pod_volumes,
            ),
        )

    def _read_write_service(self, record: ClusterRecord) -> client.V1Service:
        return client.V1Service(
            metadata=client.V1ObjectMeta(
                name=read_write_service_name(record.name),
                labels={CLUSTER_LABEL: record.name, MANAGED_BY_LABEL: MANAGED_BY_VALUE},
            ),
            spec=client.V1ServiceSpec(
                selector={CLUSTER_LABEL: record.name, INSTANCE_ROLE_LABEL: PRIMARY_ROLE},
                ports=[client.V1ServicePort(name="postgres", port=POSTGRES_PORT, target_port=POSTGRES_PORT)],
            ),
        )

    def _archive_env(self) -> list[client.V1EnvVar]:
        env = [
            client.V1EnvVar(name="PGDATA", value=PGDATA),
            client.V1EnvVar(name="NPP_ARCHIVE_BUCKET", value=_bucket_of(self.template.archive_destination)),
            client.V1EnvVar(name="NPP_ARCHIVE_PREFIX", value=_prefix_of(self.template.archive_destination)),
            client.V1EnvVar(name="NPP_METADATA_DB_PATH", value=f"{DATA_MOUNT_PATH}/npp-archive.db"),
        ]
        if self.template.archive_endpoint_url:
            env.append(client.V1EnvVar(name="NPP_ARCHIVE_ENDPOINT_URL", value=self.template.archive_endpoint_url))
        for name, key in (("NPP_ARCHIVE_ACCESS_KEY", "ACCESS_KEY_ID"), ("NPP_ARCHIVE_SECRET_KEY", "ACCESS_SECRET_KEY")):
            env.append(
                client.V1EnvVar(
                    name=name,
                    value_from=client.V1EnvVarSource(
                        secret_key_ref=client.V1SecretKeySelector(name=self.template.credentials_secret, key=key),
                    ),
                )
            )
        return env

    def _labels(self, record: ClusterRecord, instance: str) -> dict[str, str]:
        return {
            CLUSTER_LABEL: record.name,
            INSTANCE_NAME_LABEL: instance,
            MANAGED_BY_LABEL: MANAGED_BY_VALUE,
        }

    def _create_ignoring_conflict(self, create: Callable[[], object]) -> None:
        try:
            create()
        except ApiException as error:
            if error.status != 409:
                raise


def primary_instance_name(cluster_name: str) -> str:
    return f"{cluster_name}-1"


def read_write_service_name(cluster_name: str) -> str:
    return f"{cluster_name}-rw"


def parse_observation(output: str) -> InstanceObservation:
    fields = [field.strip() for field in output.strip().split("|")]
    if len(fields) != 5:
        raise SqlExecutionError(f"unexpected observation output: {output!r}")
    in_recovery_raw, pause_state, replay_raw, read_only_raw, streaming_raw = fields
    in_recovery = in_recovery_raw == "t"
    replay_timestamp = datetime.fromisoformat(replay_raw).replace(tzinfo=UTC) if replay_raw else None
    return InstanceObservation(
        exists=True,
        running=True,
        in_recovery=in_recovery,
        replay_paused=in_recovery and pause_state == "paused",
        replay_timestamp=replay_timestamp,
        writable=not in_recovery and read_only_raw == "off",
        attached_replicas=int(streaming_raw or 0),
    )


def pod_failure_reason(pod: object) -> str | None:
    pod_status = getattr(pod, "status", None)
    if pod_status is None:
        return None
    if getattr(pod_status, "phase", None) == "Failed":
        return (getattr(pod_status, "message", None) or "instance pod failed").strip()

    for container_status in getattr(pod_status, "container_statuses", None) or []:
        state = getattr(container_status, "state", None)
        waiting = getattr(state, "waiting", None) if state is not None else None
        if waiting is not None and getattr(waiting, "reason", None) in _FAILED_WAITING_REASONS:
            last_state = getattr(container_status, "last_state", None)
            terminated = getattr(last_state, "terminated", None) if last_state is not None else None
            detail = (getattr(terminated, "message", None) or getattr(waiting, "message", None) or "").strip()
            reason = waiting.reason
            return f"{reason}: {detail}" if detail else reason
        terminated = getattr(state, "terminated", None) if state is not None else None
        if terminated is not None and (getattr(terminated, "exit_code", 0) or 0) != 0:
            detail = (getattr(terminated, "message", None) or "").strip()
            code = terminated.exit_code
            return f"exited with code {code}: {detail}" if detail else f"exited with code {code}"
    return None


def _recovery_startup_command(
    *,
    record: ClusterRecord,
    backup: Backup,
    target: ResolvedTarget,
) -> str:
    settings = [
        f"restore_command={_restore_command(backup)}",
        "recovery_target_action=pause",
        f"recovery_target_inclusive={'on' if target.inclusive else 'off'}",
        f"recovery_target_timeline={target.timeline}",
    ]
    if target.restore_point:
        settings.append(f"recovery_target_name={target.restore_point}")
    else:
        settings.append(f"recovery_target_time={format_target_time(target.target_time)}+00")
    return _startup_script("recovery.signal", record, settings)


def _replica_startup_command(*, template: InstanceTemplate, record: ClusterRecord, backup: Backup, instance: str) -> str:
    conninfo = (
        f"host={read_write_service_name(record.name)} port={POSTGRES_PORT} "
        f"user={template.replication_user} application_name={instance}"
    )
    settings = [
        f"restore_command={_restore_command(backup)}",
        f"primary_conninfo={conninfo}",
        "recovery_target_timeline=latest",
        "hot_standby=on",
    ]
    return _startup_script("standby.signal", record, settings)


def _startup_script(signal_file: str, record: ClusterRecord, settings: list[str]) -> str:
    archive_command = f"nerdy-pg-pitr-wal-archive --cluster {shlex.quote(record.name)} %p"
    arguments = ["postgres", "-D", PGDATA, "-c", "listen_addresses=*", "-c", "default_transaction_read_only=off"]
    arguments.extend(["-c", "archive_mode=on", "-c", f"archive_command={archive_command}"])
    for setting in settings:
        arguments.extend(["-c", setting])
    return (
        f'test -f "{PGDATA}/PG_VERSION" || {{ echo "no base data in {PGDATA}" >&2; exit 1; }}; '
        f'rm -f "{PGDATA}/postmaster.pid"; '
        f'touch "{PGDATA}/{signal_file}"; '
        f"exec {shlex.join(arguments)}"
    )


def _restore_command(backup: Backup) -> str:
    return f"nerdy-pg-pitr-wal-restore --cluster {shlex.quote(backup.cluster_name)} %f %p"


def _mount_path(snapshot: VolumeSnapshot, index: int) -> str:
    if snapshot.volume_role == PVC_ROLE_DATA:
        return DATA_MOUNT_PATH
    if snapshot.volume_role == PVC_ROLE_WAL:
        return WAL_MOUNT_PATH
    return f"{TABLESPACE_MOUNT_ROOT}/{index}"


def _bucket_of(destination: str) -> str:
    stripped = destination.removeprefix("s3://")
    return stripped.split("/", 1)[0]


def _prefix_of(destination: str) -> str:
    stripped = destination.removeprefix("s3://")
    return stripped.split("/", 1)[1].strip("/") if "/" in stripped else ""
