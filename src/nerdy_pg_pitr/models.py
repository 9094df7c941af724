from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class BackupStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"


class RecoveryState(str, Enum):
    NOT_RECOVERING = "NotRecovering"
    RESTORING_BASE = "RestoringBase"
    REPLAYING = "Replaying"
    PROMOTING = "Promoting"
    READY = "Ready"
    FAILED = "Failed"


RECOVERY_SEQUENCE: tuple[RecoveryState, ...] = (
    RecoveryState.NOT_RECOVERING,
    RecoveryState.RESTORING_BASE,
    RecoveryState.REPLAYING,
    RecoveryState.PROMOTING,
    RecoveryState.READY,
)
TERMINAL_RECOVERY_STATES = frozenset({RecoveryState.READY, RecoveryState.FAILED})


@dataclass(frozen=True)
class ClusterVolume:
    pvc_name: str
    role: str
    storage_class: str | None = None
    capacity: str | None = None


@dataclass(frozen=True)
class VolumeSnapshot:
    name: str
    namespace: str
    source_pvc: str
    volume_role: str
    snapshot_class: str
    ready: bool = False
    restore_size: str | None = None


@dataclass(frozen=True)
class Backup:
    backup_id: str
    name: str
    namespace: str
    cluster_name: str
    snapshot_class: str
    status: BackupStatus
    started_at: datetime
    finished_at: datetime | None = None
    consistency_timestamp: datetime | None = None
    begin_wal_sequence: int | None = None
    timeline: int = 1
    snapshots: tuple[VolumeSnapshot, ...] = ()
    message: str = ""

    @property
    def is_usable(self) -> bool:
        return (
            self.status is BackupStatus.COMPLETED
            and bool(self.snapshots)
            and all(snapshot.ready for snapshot in self.snapshots)
        )


@dataclass(frozen=True)
class BackupRequest:
    namespace: str
    cluster_name: str
    snapshot_class: str
    name: str | None = None


@dataclass(frozen=True)
class WalSegment:
    cluster_name: str
    timeline: int
    sequence: int
    checksum_sha256: str
    size_bytes: int
    archived: bool = False
    archived_at: datetime | None = None


@dataclass(frozen=True)
class WalCoverage:
    """Inclusive range of contiguously archived segments on one timeline."""

    cluster_name: str
    timeline: int
    earliest_sequence: int
    latest_sequence: int
    earliest_timestamp: datetime
    latest_timestamp: datetime


@dataclass(frozen=True)
class RecoveryTarget:
    target_time: datetime | None = None
    restore_point: str | None = None
    inclusive: bool = True


@dataclass(frozen=True)
class ResolvedTarget:
    backup_id: str
    target_time: datetime
    first_sequence: int
    last_sequence: int
    timeline: int
    restore_point: str | None = None
    inclusive: bool = True


@dataclass(frozen=True)
class RestoreRequest:
    namespace: str
    cluster_name: str
    backup_name: str
    target: RecoveryTarget
    replicas: int = 0
    require_full_topology: bool = True
    keep_failed: bool = False


@dataclass(frozen=True)
class InstanceObservation:
    exists: bool
    running: bool = False
    in_recovery: bool | None = None
    replay_paused: bool = False
    replay_timestamp: datetime | None = None
    writable: bool = False
    attached_replicas: int = 0
    error: str | None = None

    @property
    def reached_target(self) -> bool:
        if self.in_recovery is None:
            return False
        if self.in_recovery:
            return self.replay_paused
        return self.writable


@dataclass(frozen=True)
class ClusterRecord:
    namespace: str
    name: str
    recovery_state: RecoveryState
    request: RestoreRequest | None = None
    resolved_target: ResolvedTarget | None = None
    last_error: str | None = None
    attached_replicas: int = 0
    promoted_at: datetime | None = None
    updated_at: datetime | None = None
    history: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ClusterStatus:
    namespace: str
    name: str
    recovery_state: RecoveryState
    ready: bool
    last_error: str | None
    attached_replicas: int
    required_replicas: int
