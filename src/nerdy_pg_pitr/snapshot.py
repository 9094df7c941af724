from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Callable, Protocol
import logging
import re
import threading
import time
import uuid

from kubernetes import client
from kubernetes.client import ApiException

from .archive import parse_wal_file_name
from .k8s import (
    CLUSTER_LABEL,
    SqlExecutionError,
    exec_sql,
    find_primary_pod,
    instance_name_of,
    list_instance_volumes,
)
from .metadata import RecoveryMetadataStore
from .models import Backup, BackupRequest, BackupStatus, ClusterVolume, VolumeSnapshot
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

SNAPSHOT_API_GROUP = "snapshot.storage.k8s.io"
SNAPSHOT_API_VERSION = "v1"
SNAPSHOT_PLURAL = "volumesnapshots"
BACKUP_NAME_LABEL = "nerdy-pg-pitr/backup"
VOLUME_ROLE_LABEL = "nerdy-pg-pitr/volume-role"


class SnapshotStageError(RuntimeError):
    def __init__(self, *, stage: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage


@dataclass(frozen=True)
class SnapshotReadiness:
    ready: bool
    error: str | None = None
    restore_size: str | None = None


class SnapshotProvider(Protocol):
    def create(
        self,
        *,
        namespace: str,
        name: str,
        pvc_name: str,
        snapshot_class: str,
        labels: dict[str, str],
    ) -> None: ...

    def poll_readiness(self, *, namespace: str, name: str) -> SnapshotReadiness: ...

    def delete(self, *, namespace: str, name: str) -> None: ...


class CsiVolumeSnapshotProvider:
    """VolumeSnapshot objects handled by the cluster's CSI snapshot controller."""

    def __init__(self, *, custom_objects_api: client.CustomObjectsApi) -> None:
        self.custom_objects_api = custom_objects_api

    def create(
        self,
        *,
        namespace: str,
        name: str,
        pvc_name: str,
        snapshot_class: str,
        labels: dict[str, str],
    ) -> None:
        body = {
            "apiVersion": f"{SNAPSHOT_API_GROUP}/{SNAPSHOT_API_VERSION}",
            "kind": "VolumeSnapshot",
            "metadata": {"name": name, "namespace": namespace, "labels": labels},
            "spec": {
                "volumeSnapshotClassName": snapshot_class,
                "source": {"persistentVolumeClaimName": pvc_name},
            },
        }
        self.custom_objects_api.create_namespaced_custom_object(
            group=SNAPSHOT_API_GROUP,
            version=SNAPSHOT_API_VERSION,
            namespace=namespace,
            plural=SNAPSHOT_PLURAL,
            body=body,
        )

    def poll_readiness(self, *, namespace: str, name: str) -> SnapshotReadiness:
        snapshot = self.custom_objects_api.get_namespaced_custom_object(
            group=SNAPSHOT_API_GROUP,
            version=SNAPSHOT_API_VERSION,
            namespace=namespace,
            plural=SNAPSHOT_PLURAL,
            name=name,
        )
        status = snapshot.get("status") or {}
        error = status.get("error") or {}
        message = (error.get("message") or "").strip() if isinstance(error, dict) else str(error)
        return SnapshotReadiness(
            ready=bool(status.get("readyToUse")),
            error=message or None,
            restore_size=status.get("restoreSize"),
        )

    def delete(self, *, namespace: str, name: str) -> None:
        try:
            self.custom_objects_api.delete_namespaced_custom_object(
                group=SNAPSHOT_API_GROUP,
                version=SNAPSHOT_API_VERSION,
                namespace=namespace,
                plural=SNAPSHOT_PLURAL,
                name=name,
            )
        except ApiException as error:
            if error.status == 404:
                return
            raise


@dataclass(frozen=True)
class FencePoint:
    instance_name: str
    consistency_timestamp: datetime
    wal_sequence: int
    timeline: int
    lsn: str


class WriteFence(Protocol):
    def fence(self, *, namespace: str, cluster_name: str) -> FencePoint: ...

    def unfence(self, *, namespace: str, cluster_name: str) -> None: ...


class PostgresWriteFence:
    """Fence writes on the primary with read-only transactions and a checkpoint."""

    def __init__(self, *, core_api: client.CoreV1Api) -> None:
        self.core_api = core_api

    def fence(self, *, namespace: str, cluster_name: str) -> FencePoint:
        pod = find_primary_pod(self.core_api, namespace=namespace, cluster_name=cluster_name)
        pod_name = pod.metadata.name
        self._run(namespace, pod_name, "ALTER SYSTEM SET default_transaction_read_only = on")
        self._run(namespace, pod_name, "SELECT pg_reload_conf()")
        self._run(namespace, pod_name, "CHECKPOINT")
        output = self._run(
            namespace,
            pod_name,
            "SELECT pg_walfile_name(lsn), lsn, "
            "to_char(clock_timestamp() AT TIME ZONE 'UTC', 'YYYY-MM-DD\"T\"HH24:MI:SS.US') "
            "FROM (SELECT pg_current_wal_lsn() AS lsn) AS current",
        )
        self._run(namespace, pod_name, "SELECT pg_switch_wal()")
        return _parse_fence_point(instance_name_of(pod), output)

    def unfence(self, *, namespace: str, cluster_name: str) -> None:
        pod = find_primary_pod(self.core_api, namespace=namespace, cluster_name=cluster_name)
        self._run(namespace, pod.metadata.name, "ALTER SYSTEM RESET default_transaction_read_only")
        self._run(namespace, pod.metadata.name, "SELECT pg_reload_conf()")

    def _run(self, namespace: str, pod_name: str, sql: str) -> str:
        return exec_sql(self.core_api, namespace=namespace, pod_name=pod_name, sql=sql)


@dataclass(frozen=True)
class SnapshotTriggerConfig:
    timeout_seconds: int = 600
    poll_interval_seconds: float = 5.0
    max_parallel: int = 4
    retry_policy: RetryPolicy = RetryPolicy()


VolumeLister = Callable[[str, str, str], list[ClusterVolume]]


class SnapshotTrigger:
    def __init__(
        self,
        *,
        provider: SnapshotProvider,
        fence: WriteFence,
        metadata_store: RecoveryMetadataStore,
        volume_lister: VolumeLister,
        config: SnapshotTriggerConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.provider = provider
        self.fence = fence
        self.metadata_store = metadata_store
        self.volume_lister = volume_lister
        self.config = config or SnapshotTriggerConfig()
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._sleep = sleep

    def take_backup(self, request: BackupRequest) -> Backup:
        started_at = self._clock()
        backup = Backup(
            backup_id=uuid.uuid4().hex,
            name=request.name or _backup_name(request.cluster_name, started_at),
            namespace=request.namespace,
            cluster_name=request.cluster_name,
            snapshot_class=request.snapshot_class,
            status=BackupStatus.PENDING,
            started_at=started_at,
        )
        self.metadata_store.create_backup(backup)
        logger.info("backup %s of %s/%s started", backup.name, backup.namespace, backup.cluster_name)

        created: list[VolumeSnapshot] = []
        try:
            point = self._fence(request)
            try:
                volumes = self._discover(request, point.instance_name)
                created = self._create_snapshots(backup, volumes)
            finally:
                self._unfence(request)
            ready = self._wait_until_ready(backup, created)
        except SnapshotStageError as error:
            return self._fail(backup, created, str(error))
        except Exception as error:  # pylint: disable=broad-except
            return self._fail(backup, created, f"unexpected backup failure: {_error_message(error)}")

        completed = replace(
            backup,
            status=BackupStatus.COMPLETED,
            finished_at=self._clock(),
            consistency_timestamp=point.consistency_timestamp,
            begin_wal_sequence=point.wal_sequence,
            timeline=point.timeline,
            snapshots=tuple(ready),
        )
        self.metadata_store.complete_backup(completed)
        logger.info(
            "backup %s completed with %d snapshot(s), consistent at %s",
            completed.name,
            len(ready),
            point.consistency_timestamp.isoformat(),
        )
        return completed

    def _fence(self, request: BackupRequest) -> FencePoint:
        try:
            return self.fence.fence(namespace=request.namespace, cluster_name=request.cluster_name)
        except Exception as error:  # pylint: disable=broad-except
            self._release_partial_fence(request)
            raise SnapshotStageError(stage="fence", reason=_error_message(error)) from error

    def _release_partial_fence(self, request: BackupRequest) -> None:
        # The fence may have been applied before the step that failed.
        try:
            self.fence.unfence(namespace=request.namespace, cluster_name=request.cluster_name)
        except Exception as error:  # pylint: disable=broad-except
            logger.warning(
                "unable to lift partial write fence on %s/%s: %s",
                request.namespace,
                request.cluster_name,
                _error_message(error),
            )

    def _unfence(self, request: BackupRequest) -> None:
        try:
            self.fence.unfence(namespace=request.namespace, cluster_name=request.cluster_name)
        except Exception as error:  # pylint: disable=broad-except
            raise SnapshotStageError(stage="fence", reason=f"unable to lift write fence: {_error_message(error)}") from error

    def _discover(self, request: BackupRequest, instance_name: str) -> list[ClusterVolume]:
        try:
            volumes = self.volume_lister(request.namespace, request.cluster_name, instance_name)
        except Exception as error:  # pylint: disable=broad-except
            raise SnapshotStageError(stage="discover", reason=_error_message(error)) from error
        if not volumes:
            raise SnapshotStageError(
                stage="discover",
                reason=f"no data volumes found for instance {request.namespace}/{instance_name}",
            )
        return volumes

    def _create_snapshots(self, backup: Backup, volumes: list[ClusterVolume]) -> list[VolumeSnapshot]:
        planned = [
            VolumeSnapshot(
                name=_snapshot_name(backup.name, index, volume.role),
                namespace=backup.namespace,
                source_pvc=volume.pvc_name,
                volume_role=volume.role,
                snapshot_class=backup.snapshot_class,
            )
            for index, volume in enumerate(volumes, start=1)
        ]
        created: list[VolumeSnapshot] = []
        created_lock = threading.Lock()
        failures: list[str] = []

        def create(snapshot: VolumeSnapshot) -> None:
            try:
                call_with_retry(
                    lambda: self.provider.create(
                        namespace=snapshot.namespace,
                        name=snapshot.name,
                        pvc_name=snapshot.source_pvc,
                        snapshot_class=snapshot.snapshot_class,
                        labels={
                            CLUSTER_LABEL: backup.cluster_name,
                            BACKUP_NAME_LABEL: backup.name,
                            VOLUME_ROLE_LABEL: snapshot.volume_role,
                        },
                    ),
                    operation=f"create snapshot {snapshot.name}",
                    policy=self.config.retry_policy,
                    sleep=self._sleep,
                )
            except Exception as error:  # pylint: disable=broad-except
                with created_lock:
                    failures.append(f"{snapshot.source_pvc}: {_error_message(error)}")
                return
            with created_lock:
                created.append(snapshot)

        with ThreadPoolExecutor(max_workers=self._workers(len(planned))) as executor:
            list(executor.map(create, planned))

        if failures:
            self._teardown_on_error(backup, created)
            raise SnapshotStageError(stage="snapshot", reason="; ".join(sorted(failures)))
        return sorted(created, key=lambda item: item.name)

    def _wait_until_ready(self, backup: Backup, snapshots: list[VolumeSnapshot]) -> list[VolumeSnapshot]:
        deadline = time.monotonic() + self.config.timeout_seconds
        abort = threading.Event()
        failures: list[str] = []
        failures_lock = threading.Lock()

        def wait(snapshot: VolumeSnapshot) -> VolumeSnapshot | None:
            while not abort.is_set():
                try:
                    readiness = call_with_retry(
                        lambda: self.provider.poll_readiness(namespace=snapshot.namespace, name=snapshot.name),
                        operation=f"poll snapshot {snapshot.name}",
                        policy=self.config.retry_policy,
                        sleep=self._sleep,
                    )
                except Exception as error:  # pylint: disable=broad-except
                    reason = f"{snapshot.name}: {_error_message(error)}"
                else:
                    if readiness.ready:
                        return replace(snapshot, ready=True, restore_size=readiness.restore_size)
                    if readiness.error:
                        reason = f"{snapshot.name}: {readiness.error}"
                    elif time.monotonic() >= deadline:
                        reason = (
                            f"{snapshot.name} was not ready within {self.config.timeout_seconds}s "
                            "(retryable)"
                        )
                    else:
                        self._sleep(self.config.poll_interval_seconds)
                        continue
                with failures_lock:
                    failures.append(reason)
                abort.set()
                return None
            return None

        with ThreadPoolExecutor(max_workers=self._workers(len(snapshots))) as executor:
            results = list(executor.map(wait, snapshots))

        if failures or any(result is None for result in results):
            raise SnapshotStageError(
                stage="ready",
                reason="; ".join(sorted(failures)) or "snapshot readiness wait was cancelled",
            )
        return [result for result in results if result is not None]

    def _fail(self, backup: Backup, created: list[VolumeSnapshot], message: str) -> Backup:
        cleanup_failure = self._teardown_on_error(backup, created)
        if cleanup_failure:
            message = f"{message}; {cleanup_failure}"
        finished_at = self._clock()
        self.metadata_store.fail_backup(backup.backup_id, message=message, finished_at=finished_at)
        logger.error("backup %s failed: %s", backup.name, message)
        return replace(backup, status=BackupStatus.FAILED, finished_at=finished_at, message=message)

    def _teardown_on_error(self, backup: Backup, created: list[VolumeSnapshot]) -> str | None:
        failures: list[str] = []
        for snapshot in created:
            try:
                call_with_retry(
                    lambda snapshot=snapshot: self.provider.delete(namespace=snapshot.namespace, name=snapshot.name),
                    operation=f"delete snapshot {snapshot.name}",
                    policy=self.config.retry_policy,
                    sleep=self._sleep,
                )
            except Exception as error:  # pylint: disable=broad-except
                failures.append(f"{snapshot.name}: {_error_message(error)}")
        created.clear()
        if failures:
            return f"cleanup stage failed for backup {backup.name}: {'; '.join(failures)}"
        return None

    def _workers(self, count: int) -> int:
        return max(1, min(count, self.config.max_parallel))


def kubernetes_volume_lister(core_api: client.CoreV1Api) -> VolumeLister:
    def lister(namespace: str, cluster_name: str, instance_name: str) -> list[ClusterVolume]:
        return list_instance_volumes(
            core_api,
            namespace=namespace,
            cluster_name=cluster_name,
            instance_name=instance_name,
        )

    return lister


def _parse_fence_point(instance_name: str, output: str) -> FencePoint:
    fields = output.strip().split("|")
    if len(fields) != 3:
        raise SqlExecutionError(f"unexpected fence query output: {output!r}")
    wal_file, lsn, timestamp = (field.strip() for field in fields)
    parsed = parse_wal_file_name(wal_file)
    if parsed is None:
        raise SqlExecutionError(f"unexpected WAL file name: {wal_file!r}")
    timeline, sequence = parsed
    return FencePoint(
        instance_name=instance_name,
        consistency_timestamp=datetime.fromisoformat(timestamp).replace(tzinfo=UTC),
        wal_sequence=sequence,
        timeline=timeline,
        lsn=lsn,
    )


def _backup_name(cluster_name: str, started_at: datetime) -> str:
    timestamp = started_at.astimezone(UTC).strftime("%Y%m%d%H%M%S")
    suffix = uuid.uuid4().hex[:6]
    base = _sanitize_dns_label(f"{cluster_name}-{timestamp}", max_length=63 - len(suffix) - 1)
    return f"{base}-{suffix}"


def _snapshot_name(backup_name: str, index: int, role: str) -> str:
    return _sanitize_dns_label(f"{backup_name}-{index}-{role}", max_length=253)


def _sanitize_dns_label(value: str, max_length: int) -> str:
    lowered = value.lower()
    normalized = re.sub(r"[^a-z0-9-]", "-", lowered).strip("-")
    normalized = re.sub(r"-+", "-", normalized)
    if len(normalized) > max_length:
        normalized = normalized[:max_length].rstrip("-")
    return normalized or "npp-backup"


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
