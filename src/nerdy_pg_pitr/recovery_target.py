from __future__ import annotations

from datetime import UTC, datetime
import re

from .metadata import RecoveryMetadataStore
from .models import Backup, BackupStatus, RecoveryTarget, ResolvedTarget

RECOVERY_TARGET_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"
_TARGET_TIME_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z?$")
_RESTORE_POINT_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,62}$")


class RecoveryTargetError(ValueError):
    reason = "InvalidTarget"

    def __init__(self, detail: str) -> None:
        super().__init__(f"{self.reason}: {detail}")
        self.detail = detail


class MalformedTargetError(RecoveryTargetError):
    reason = "MalformedTarget"


class UnknownRestorePointError(RecoveryTargetError):
    reason = "UnknownRestorePoint"


class BackupNotUsableError(RecoveryTargetError):
    reason = "BackupNotUsable"


class TargetBeforeBaselineError(RecoveryTargetError):
    reason = "TargetBeforeBaseline"


class TargetBeyondArchiveError(RecoveryTargetError):
    reason = "TargetBeyondArchive"


class ArchiveGapError(RecoveryTargetError):
    reason = "ArchiveGap"

    def __init__(self, detail: str, *, missing_sequences: tuple[int, ...] = ()) -> None:
        super().__init__(detail)
        self.missing_sequences = missing_sequences


def parse_recovery_target(
    *,
    target_time: str | None = None,
    restore_point: str | None = None,
) -> RecoveryTarget:
    time_value = (target_time or "").strip()
    point_value = (restore_point or "").strip()
    if bool(time_value) == bool(point_value):
        raise MalformedTargetError("exactly one of target time or restore point must be given")

    if point_value:
        if not _RESTORE_POINT_PATTERN.match(point_value):
            raise MalformedTargetError(f"restore point name {point_value!r} is not valid")
        return RecoveryTarget(restore_point=point_value)

    return RecoveryTarget(target_time=parse_target_time(time_value))


def parse_target_time(value: str) -> datetime:
    if not _TARGET_TIME_PATTERN.match(value):
        raise MalformedTargetError(f"target time {value!r} must use the YYYY-MM-DDTHH:MM:SS format")
    try:
        parsed = datetime.strptime(value.rstrip("Z"), RECOVERY_TARGET_TIME_FORMAT)
    except ValueError as error:
        raise MalformedTargetError(f"target time {value!r} is not a valid date-time") from error
    return parsed.replace(tzinfo=UTC)


def format_target_time(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(UTC)
    return value.strftime(RECOVERY_TARGET_TIME_FORMAT)


class RecoveryTargetResolver:
    """Validate a recovery target against a backup and the archived WAL.

    A target is never clamped: anything outside the recoverable window is
    rejected with the reason of the first check it fails. A target past
    everything archived is TargetBeyondArchive; a target covered by a later
    segment with a hole before it is ArchiveGap.
    """

    def __init__(self, *, metadata_store: RecoveryMetadataStore) -> None:
        self.metadata_store = metadata_store

    def resolve(self, backup: Backup, target: RecoveryTarget) -> ResolvedTarget:
        if backup.status is not BackupStatus.COMPLETED or not backup.is_usable:
            raise BackupNotUsableError(f"backup {backup.name} is {backup.status.value}")
        if backup.consistency_timestamp is None or backup.begin_wal_sequence is None:
            raise BackupNotUsableError(f"backup {backup.name} has no recorded consistency point")

        target_time = self._target_time(backup, target)
        if target_time < backup.consistency_timestamp:
            raise TargetBeforeBaselineError(
                f"{format_target_time(target_time)} is before the consistency point of backup "
                f"{backup.name} ({backup.consistency_timestamp.isoformat()})"
            )

        segments = {
            segment.sequence: segment
            for segment in self.metadata_store.list_wal_segments(backup.cluster_name, backup.timeline)
            if segment.sequence >= backup.begin_wal_sequence
        }
        covering = [
            sequence
            for sequence, segment in segments.items()
            if segment.archived_at is not None and segment.archived_at >= target_time
        ]
        if not covering:
            latest = max((segment.archived_at for segment in segments.values()), default=None)
            latest_text = latest.isoformat() if latest else "nothing archived"
            raise TargetBeyondArchiveError(
                f"{format_target_time(target_time)} is past the latest archived WAL of "
                f"{backup.cluster_name} ({latest_text})"
            )

        last_sequence = min(covering)
        missing = tuple(
            sequence for sequence in range(backup.begin_wal_sequence, last_sequence + 1) if sequence not in segments
        )
        if missing:
            raise ArchiveGapError(
                f"{len(missing)} WAL segment(s) between the backup and the target are missing, "
                f"first missing sequence {missing[0]}",
                missing_sequences=missing,
            )

        return ResolvedTarget(
            backup_id=backup.backup_id,
            target_time=target_time,
            first_sequence=backup.begin_wal_sequence,
            last_sequence=last_sequence,
            timeline=backup.timeline,
            restore_point=target.restore_point,
            inclusive=target.inclusive,
        )

    def verify_range(self, cluster_name: str, resolved: ResolvedTarget) -> None:
        """Raise ArchiveGapError if a segment of an already resolved range has vanished."""
        present = {
            segment.sequence for segment in self.metadata_store.list_wal_segments(cluster_name, resolved.timeline)
        }
        missing = tuple(
            sequence
            for sequence in range(resolved.first_sequence, resolved.last_sequence + 1)
            if sequence not in present
        )
        if missing:
            raise ArchiveGapError(
                f"WAL segment {missing[0]} disappeared from the archive during replay",
                missing_sequences=missing,
            )

    def _target_time(self, backup: Backup, target: RecoveryTarget) -> datetime:
        if target.restore_point:
            recorded = self.metadata_store.get_restore_point(backup.cluster_name, target.restore_point)
            if recorded is None:
                raise UnknownRestorePointError(
                    f"restore point {target.restore_point!r} is not recorded for cluster {backup.cluster_name}"
                )
            return recorded
        if target.target_time is None:
            raise MalformedTargetError("recovery target has neither a time nor a restore point")
        if target.target_time.tzinfo is None:
            return target.target_time.replace(tzinfo=UTC)
        return target.target_time
