from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Callable
import threading

import pytest

from nerdy_pg_pitr.archive import WalSegmentNotFoundError
from nerdy_pg_pitr.instance import PromotionError
from nerdy_pg_pitr.metadata import RecoveryMetadataStore
from nerdy_pg_pitr.models import (
    Backup,
    BackupStatus,
    ClusterRecord,
    InstanceObservation,
    ResolvedTarget,
    VolumeSnapshot,
    WalSegment,
)
from nerdy_pg_pitr.retry import RetryPolicy
from nerdy_pg_pitr.snapshot import FencePoint, SnapshotReadiness

BASE_TIME = datetime(2026, 3, 2, 10, 0, 0, tzinfo=UTC)


class InMemoryArchiveClient:
    """Object store stand-in; ``put_failures`` makes the next N puts of a key fail."""

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, dict[str, str]]] = {}
        self.put_failures: dict[str, int] = {}
        self.unreachable = False
        self.put_calls: list[str] = []

    def put(self, key: str, payload: bytes, metadata: dict[str, str]) -> None:
        self._check_reachable()
        self.put_calls.append(key)
        remaining = self.put_failures.get(key, 0)
        if remaining:
            self.put_failures[key] = remaining - 1
            raise ConnectionError(f"simulated outage while writing {key}")
        self.objects[key] = (payload, dict(metadata))

    def get(self, key: str) -> tuple[bytes, dict[str, str]]:
        self._check_reachable()
        if key not in self.objects:
            raise WalSegmentNotFoundError(f"{key} does not exist")
        payload, metadata = self.objects[key]
        return payload, dict(metadata)

    def head(self, key: str) -> dict[str, str]:
        return self.get(key)[1]

    def list(self, prefix: str) -> list[str]:
        self._check_reachable()
        return sorted(key for key in self.objects if key.startswith(prefix))

    def _check_reachable(self) -> None:
        if self.unreachable:
            raise ConnectionError("archive endpoint unreachable")


class FakeSnapshotProvider:
    def __init__(self) -> None:
        self.created: dict[str, str] = {}
        self.deleted: list[str] = []
        self.create_failures: dict[str, str] = {}
        self.readiness_errors: dict[str, str] = {}
        self.never_ready: set[str] = set()
        self._lock = threading.Lock()

    def create(
        self,
        *,
        namespace: str,
        name: str,
        pvc_name: str,
        snapshot_class: str,
        labels: dict[str, str],
    ) -> None:
        if pvc_name in self.create_failures:
            raise RuntimeError(self.create_failures[pvc_name])
        with self._lock:
            self.created[name] = pvc_name

    def poll_readiness(self, *, namespace: str, name: str) -> SnapshotReadiness:
        with self._lock:
            pvc_name = self.created.get(name)
        if pvc_name is None:
            return SnapshotReadiness(ready=False, error="VolumeSnapshot not found")
        if pvc_name in self.readiness_errors:
            return SnapshotReadiness(ready=False, error=self.readiness_errors[pvc_name])
        if pvc_name in self.never_ready:
            return SnapshotReadiness(ready=False)
        return SnapshotReadiness(ready=True, restore_size="1Gi")

    def delete(self, *, namespace: str, name: str) -> None:
        with self._lock:
            self.deleted.append(name)
            self.created.pop(name, None)


class FakeWriteFence:
    def __init__(self, point: FencePoint) -> None:
        self.point = point
        self.error: Exception | None = None
        self.fenced = 0
        self.unfenced = 0

    def fence(self, *, namespace: str, cluster_name: str) -> FencePoint:
        if self.error is not None:
            raise self.error
        self.fenced += 1
        return self.point

    def unfence(self, *, namespace: str, cluster_name: str) -> None:
        self.unfenced += 1


@dataclass
class _SimulatedInstance:
    rows: list[str]
    target: ResolvedTarget
    consistency_timestamp: datetime
    in_recovery: bool = True
    observed: int = 0
    attached: int = 0


@dataclass
class FakeInstanceDriver:
    """A PostgreSQL stand-in that replays committed rows up to the recovery target.

    ``source_rows`` holds (row, commit time) pairs written to the source
    cluster. The base restore sees rows committed up to the backup's
    consistency time; replay adds the rest up to the target, inclusively.
    """

    source_rows: list[tuple[str, datetime]] = field(default_factory=list)
    replay_observations: int = 1
    observe_error: str | None = None
    promote_error: Exception | None = None
    attach_failures: int = 0
    start_in_recovery: bool = True
    instances: dict[tuple[str, str], _SimulatedInstance] = field(default_factory=dict)
    calls: list[str] = field(default_factory=list)

    def provision_base(self, *, record: ClusterRecord, backup: Backup, target: ResolvedTarget) -> None:
        self.calls.append("provision_base")
        key = (record.namespace, record.name)
        if key in self.instances:
            return
        assert backup.consistency_timestamp is not None
        self.instances[key] = _SimulatedInstance(
            rows=[row for row, committed_at in self.source_rows if committed_at <= backup.consistency_timestamp],
            target=target,
            consistency_timestamp=backup.consistency_timestamp,
        )

    def observe(self, *, record: ClusterRecord) -> InstanceObservation:
        self.calls.append("observe")
        instance = self.instances.get((record.namespace, record.name))
        if instance is None:
            return InstanceObservation(exists=False)
        if self.observe_error:
            return InstanceObservation(exists=True, error=self.observe_error)
        if not self.start_in_recovery:
            return InstanceObservation(exists=True, running=True)
        if instance.in_recovery:
            instance.observed += 1
            paused = instance.observed > self.replay_observations
            if paused:
                self._replay(instance)
            return InstanceObservation(exists=True, running=True, in_recovery=True, replay_paused=paused)
        return InstanceObservation(
            exists=True,
            running=True,
            in_recovery=False,
            writable=True,
            attached_replicas=instance.attached,
        )

    def promote(self, *, record: ClusterRecord) -> None:
        self.calls.append("promote")
        if self.promote_error is not None:
            raise self.promote_error
        self.instances[(record.namespace, record.name)].in_recovery = False

    def attach_replicas(self, *, record: ClusterRecord, backup: Backup) -> None:
        self.calls.append("attach_replicas")
        if self.attach_failures:
            self.attach_failures -= 1
            raise ConnectionError("replica could not resolve the read-write service")
        assert record.request is not None
        self.instances[(record.namespace, record.name)].attached = record.request.replicas

    def discard(self, *, record: ClusterRecord) -> None:
        self.calls.append("discard")
        self.instances.pop((record.namespace, record.name), None)

    def rows(self, namespace: str, name: str) -> list[str]:
        return list(self.instances[(namespace, name)].rows)

    def _replay(self, instance: _SimulatedInstance) -> None:
        for row, committed_at in self.source_rows:
            if row in instance.rows or committed_at <= instance.consistency_timestamp:
                continue
            if committed_at <= instance.target.target_time:
                instance.rows.append(row)


@pytest.fixture
def metadata_store(tmp_path: Path) -> RecoveryMetadataStore:
    store = RecoveryMetadataStore(tmp_path / "recovery.db")
    store.initialize()
    return store


@pytest.fixture
def archive_client() -> InMemoryArchiveClient:
    return InMemoryArchiveClient()


@pytest.fixture
def snapshot_provider() -> FakeSnapshotProvider:
    return FakeSnapshotProvider()


@pytest.fixture
def write_fence() -> FakeWriteFence:
    return FakeWriteFence(
        FencePoint(
            instance_name="source-1",
            consistency_timestamp=BASE_TIME,
            wal_sequence=10,
            timeline=1,
            lsn="0/A000060",
        )
    )


@pytest.fixture
def instance_driver() -> FakeInstanceDriver:
    return FakeInstanceDriver()


@pytest.fixture
def fast_retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, initial_delay_seconds=0.0, max_delay_seconds=0.0)


@pytest.fixture
def completed_backup(metadata_store: RecoveryMetadataStore) -> Callable[..., Backup]:
    """Persist a Completed backup of ``source`` consistent at BASE_TIME."""

    def factory(
        *,
        name: str = "nightly",
        namespace: str = "db",
        cluster_name: str = "source",
        consistency_timestamp: datetime = BASE_TIME,
        begin_wal_sequence: int = 10,
    ) -> Backup:
        pending = Backup(
            backup_id=f"id-{name}",
            name=name,
            namespace=namespace,
            cluster_name=cluster_name,
            snapshot_class="csi-snapclass",
            status=BackupStatus.PENDING,
            started_at=consistency_timestamp - timedelta(seconds=5),
        )
        metadata_store.create_backup(pending)
        completed = Backup(
            backup_id=pending.backup_id,
            name=name,
            namespace=namespace,
            cluster_name=cluster_name,
            snapshot_class="csi-snapclass",
            status=BackupStatus.COMPLETED,
            started_at=pending.started_at,
            finished_at=consistency_timestamp + timedelta(seconds=20),
            consistency_timestamp=consistency_timestamp,
            begin_wal_sequence=begin_wal_sequence,
            timeline=1,
            snapshots=(
                VolumeSnapshot(
                    name=f"{name}-1-pg-data",
                    namespace=namespace,
                    source_pvc=f"{cluster_name}-1",
                    volume_role="PG_DATA",
                    snapshot_class="csi-snapclass",
                    ready=True,
                    restore_size="1Gi",
                ),
            ),
        )
        metadata_store.complete_backup(completed)
        return completed

    return factory


@pytest.fixture
def archived_segments(metadata_store: RecoveryMetadataStore) -> Callable[..., list[WalSegment]]:
    """Record segments archived one minute apart, starting at ``first_archived_at``."""

    def factory(
        sequences: list[int],
        *,
        cluster_name: str = "source",
        first_archived_at: datetime = BASE_TIME + timedelta(seconds=30),
    ) -> list[WalSegment]:
        recorded: list[WalSegment] = []
        for index, sequence in enumerate(sequences):
            segment = WalSegment(
                cluster_name=cluster_name,
                timeline=1,
                sequence=sequence,
                checksum_sha256=f"{sequence:064x}",
                size_bytes=16 * 1024 * 1024,
                archived=True,
                archived_at=first_archived_at + timedelta(minutes=index),
            )
            metadata_store.record_wal_segment(segment)
            recorded.append(segment)
        return recorded

    return factory
