from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable
import json
import sqlite3

from .models import (
    Backup,
    BackupStatus,
    ClusterRecord,
    RecoveryState,
    RecoveryTarget,
    ResolvedTarget,
    RestoreRequest,
    VolumeSnapshot,
    WalSegment,
)


class MetadataConflictError(RuntimeError):
    """Raised when a write would mutate an immutable record."""


class BackupExistsError(MetadataConflictError):
    """Raised when a backup name is already taken in its namespace."""


class RecoveryMetadataStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS backups (
                    backup_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    namespace TEXT NOT NULL,
                    cluster_name TEXT NOT NULL,
                    snapshot_class TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    consistency_timestamp TEXT,
                    begin_wal_sequence INTEGER,
                    timeline INTEGER NOT NULL DEFAULT 1,
                    message TEXT NOT NULL DEFAULT '',
                    UNIQUE(namespace, name)
                );
                CREATE TABLE IF NOT EXISTS volume_snapshots (
                    backup_id TEXT NOT NULL REFERENCES backups(backup_id),
                    name TEXT NOT NULL,
                    namespace TEXT NOT NULL,
                    source_pvc TEXT NOT NULL,
                    volume_role TEXT NOT NULL,
                    snapshot_class TEXT NOT NULL,
                    ready INTEGER NOT NULL,
                    restore_size TEXT,
                    PRIMARY KEY (namespace, name)
                );
                CREATE TABLE IF NOT EXISTS wal_segments (
                    cluster_name TEXT NOT NULL,
                    timeline INTEGER NOT NULL,
                    sequence INTEGER NOT NULL,
                    checksum_sha256 TEXT NOT NULL,
                    size_bytes INTEGER NOT NULL,
                    archived_at TEXT NOT NULL,
                    PRIMARY KEY (cluster_name, timeline, sequence)
                );
                CREATE TABLE IF NOT EXISTS restore_points (
                    cluster_name TEXT NOT NULL,
                    name TEXT NOT NULL,
                    target_time TEXT NOT NULL,
                    PRIMARY KEY (cluster_name, name)
                );
                CREATE TABLE IF NOT EXISTS restore_clusters (
                    namespace TEXT NOT NULL,
                    name TEXT NOT NULL,
                    recovery_state TEXT NOT NULL,
                    request_json TEXT,
                    resolved_target_json TEXT,
                    last_error TEXT,
                    attached_replicas INTEGER NOT NULL DEFAULT 0,
                    promoted_at TEXT,
                    updated_at TEXT,
                    history_json TEXT NOT NULL DEFAULT '[]',
                    PRIMARY KEY (namespace, name)
                );
                CREATE INDEX IF NOT EXISTS idx_backups_cluster
                ON backups(namespace, cluster_name, started_at);
                """
            )
            connection.commit()

    # Backups ---------------------------------------------------------------

    def create_backup(self, backup: Backup) -> None:
        with sqlite3.connect(self.db_path) as connection:
            try:
                connection.execute(
                    """
                    INSERT INTO backups (
                        backup_id, name, namespace, cluster_name, snapshot_class, status,
                        started_at, finished_at, consistency_timestamp, begin_wal_sequence, timeline, message
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        backup.backup_id,
                        backup.name,
                        backup.namespace,
                        backup.cluster_name,
                        backup.snapshot_class,
                        backup.status.value,
                        _iso(backup.started_at),
                        _iso(backup.finished_at),
                        _iso(backup.consistency_timestamp),
                        backup.begin_wal_sequence,
                        backup.timeline,
                        backup.message,
                    ),
                )
            except sqlite3.IntegrityError as error:
                raise BackupExistsError(
                    f"backup {backup.namespace}/{backup.name} already exists; choose another name"
                ) from error
            connection.commit()

    def complete_backup(self, backup: Backup) -> None:
        """Mark a pending backup Completed and attach its snapshots atomically."""
        if backup.status is not BackupStatus.COMPLETED:
            raise ValueError("complete_backup requires a Completed backup")
        if not backup.is_usable:
            raise ValueError(f"backup {backup.name} has snapshots that are not ready")

        with sqlite3.connect(self.db_path) as connection:
            self._require_pending(connection, backup.backup_id)
            connection.execute(
                """
                UPDATE backups
                SET status = ?, finished_at = ?, consistency_timestamp = ?,
                    begin_wal_sequence = ?, timeline = ?, message = ?
                WHERE backup_id = ?
                """,
                (
                    backup.status.value,
                    _iso(backup.finished_at),
                    _iso(backup.consistency_timestamp),
                    backup.begin_wal_sequence,
                    backup.timeline,
                    backup.message,
                    backup.backup_id,
                ),
            )
            connection.executemany(
                """
                INSERT INTO volume_snapshots (
                    backup_id, name, namespace, source_pvc, volume_role, snapshot_class, ready, restore_size
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        backup.backup_id,
                        snapshot.name,
                        snapshot.namespace,
                        snapshot.source_pvc,
                        snapshot.volume_role,
                        snapshot.snapshot_class,
                        int(snapshot.ready),
                        snapshot.restore_size,
                    )
                    for snapshot in backup.snapshots
                ],
            )
            connection.commit()

    def fail_backup(self, backup_id: str, *, message: str, finished_at: datetime) -> None:
        with sqlite3.connect(self.db_path) as connection:
            self._require_pending(connection, backup_id)
            connection.execute(
                "UPDATE backups SET status = ?, finished_at = ?, message = ? WHERE backup_id = ?",
                (BackupStatus.FAILED.value, _iso(finished_at), message, backup_id),
            )
            connection.commit()

    def get_backup(self, backup_id: str) -> Backup | None:
        with sqlite3.connect(self.db_path) as connection:
            row = connection.execute(f"{_BACKUP_SELECT} WHERE backup_id = ?", (backup_id,)).fetchone()
            return self._backup_from_row(connection, row) if row else None

    def get_backup_by_name(self, namespace: str, name: str) -> Backup | None:
        with sqlite3.connect(self.db_path) as connection:
            row = connection.execute(
                f"{_BACKUP_SELECT} WHERE namespace = ? AND name = ?",
                (namespace, name),
            ).fetchone()
            return self._backup_from_row(connection, row) if row else None

    def list_backups(
        self,
        *,
        namespace: str | None = None,
        cluster_name: str | None = None,
        limit: int = 50,
    ) -> list[Backup]:
        if limit <= 0:
            return []

        clauses: list[str] = []
        params: list[Any] = []
        if namespace:
            clauses.append("namespace = ?")
            params.append(namespace)
        if cluster_name:
            clauses.append("cluster_name = ?")
            params.append(cluster_name)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        with sqlite3.connect(self.db_path) as connection:
            rows = connection.execute(
                f"{_BACKUP_SELECT}{where} ORDER BY started_at DESC, rowid DESC LIMIT ?",
                params,
            ).fetchall()
            return [self._backup_from_row(connection, row) for row in rows]

    def _require_pending(self, connection: sqlite3.Connection, backup_id: str) -> None:
        row = connection.execute("SELECT status FROM backups WHERE backup_id = ?", (backup_id,)).fetchone()
        if row is None:
            raise KeyError(f"unknown backup {backup_id}")
        if row[0] != BackupStatus.PENDING.value:
            raise MetadataConflictError(f"backup {backup_id} is already {row[0]} and cannot change")

    def _backup_from_row(self, connection: sqlite3.Connection, row: tuple[Any, ...]) -> Backup:
        snapshot_rows = connection.execute(
            """
            SELECT name, namespace, source_pvc, volume_role, snapshot_class, ready, restore_size
            FROM volume_snapshots
            WHERE backup_id = ?
            ORDER BY name
            """,
            (row[0],),
        ).fetchall()
        return Backup(
            backup_id=row[0],
            name=row[1],
            namespace=row[2],
            cluster_name=row[3],
            snapshot_class=row[4],
            status=BackupStatus(row[5]),
            started_at=_parse(row[6]),
            finished_at=_parse(row[7]),
            consistency_timestamp=_parse(row[8]),
            begin_wal_sequence=row[9],
            timeline=int(row[10]),
            message=row[11] or "",
            snapshots=tuple(
                VolumeSnapshot(
                    name=snapshot[0],
                    namespace=snapshot[1],
                    source_pvc=snapshot[2],
                    volume_role=snapshot[3],
                    snapshot_class=snapshot[4],
                    ready=bool(snapshot[5]),
                    restore_size=snapshot[6],
                )
                for snapshot in snapshot_rows
            ),
        )

    # WAL segments ----------------------------------------------------------

    def record_wal_segment(self, segment: WalSegment) -> None:
        if not segment.archived or segment.archived_at is None:
            raise ValueError("only archived segments can be recorded")

        with sqlite3.connect(self.db_path) as connection:
            existing = connection.execute(
                """
                SELECT checksum_sha256 FROM wal_segments
                WHERE cluster_name = ? AND timeline = ? AND sequence = ?
                """,
                (segment.cluster_name, segment.timeline, segment.sequence),
            ).fetchone()
            if existing is not None:
                if existing[0] != segment.checksum_sha256:
                    raise MetadataConflictError(
                        f"segment {segment.sequence} of {segment.cluster_name} is already archived "
                        "with a different checksum"
                    )
                return
            connection.execute(
                """
                INSERT INTO wal_segments (cluster_name, timeline, sequence, checksum_sha256, size_bytes, archived_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    segment.cluster_name,
                    segment.timeline,
                    segment.sequence,
                    segment.checksum_sha256,
                    segment.size_bytes,
                    _iso(segment.archived_at),
                ),
            )
            connection.commit()

    def list_wal_segments(self, cluster_name: str, timeline: int) -> list[WalSegment]:
        with sqlite3.connect(self.db_path) as connection:
            rows = connection.execute(
                """
                SELECT sequence, checksum_sha256, size_bytes, archived_at
                FROM wal_segments
                WHERE cluster_name = ? AND timeline = ?
                ORDER BY sequence
                """,
                (cluster_name, timeline),
            ).fetchall()

        return [
            WalSegment(
                cluster_name=cluster_name,
                timeline=timeline,
                sequence=int(row[0]),
                checksum_sha256=row[1],
                size_bytes=int(row[2]),
                archived=True,
                archived_at=_parse(row[3]),
            )
            for row in rows
        ]

    def get_wal_segment(self, cluster_name: str, timeline: int, sequence: int) -> WalSegment | None:
        with sqlite3.connect(self.db_path) as connection:
            row = connection.execute(
                """
                SELECT checksum_sha256, size_bytes, archived_at
                FROM wal_segments
                WHERE cluster_name = ? AND timeline = ? AND sequence = ?
                """,
                (cluster_name, timeline, sequence),
            ).fetchone()
        if row is None:
            return None
        return WalSegment(
            cluster_name=cluster_name,
            timeline=timeline,
            sequence=sequence,
            checksum_sha256=row[0],
            size_bytes=int(row[1]),
            archived=True,
            archived_at=_parse(row[2]),
        )

    # Restore points --------------------------------------------------------

    def record_restore_point(self, cluster_name: str, name: str, target_time: datetime) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                "INSERT OR REPLACE INTO restore_points (cluster_name, name, target_time) VALUES (?, ?, ?)",
                (cluster_name, name, _iso(target_time)),
            )
            connection.commit()

    def get_restore_point(self, cluster_name: str, name: str) -> datetime | None:
        with sqlite3.connect(self.db_path) as connection:
            row = connection.execute(
                "SELECT target_time FROM restore_points WHERE cluster_name = ? AND name = ?",
                (cluster_name, name),
            ).fetchone()
        return _parse(row[0]) if row else None

    # Restore clusters ------------------------------------------------------

    def save_cluster(self, record: ClusterRecord) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                INSERT INTO restore_clusters (
                    namespace, name, recovery_state, request_json, resolved_target_json,
                    last_error, attached_replicas, promoted_at, updated_at, history_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(namespace, name) DO UPDATE SET
                    recovery_state = excluded.recovery_state,
                    request_json = excluded.request_json,
                    resolved_target_json = excluded.resolved_target_json,
                    last_error = excluded.last_error,
                    attached_replicas = excluded.attached_replicas,
                    promoted_at = excluded.promoted_at,
                    updated_at = excluded.updated_at,
                    history_json = excluded.history_json
                """,
                (
                    record.namespace,
                    record.name,
                    record.recovery_state.value,
                    _dump_request(record.request),
                    _dump_resolved_target(record.resolved_target),
                    record.last_error,
                    record.attached_replicas,
                    _iso(record.promoted_at),
                    _iso(record.updated_at),
                    json.dumps(list(record.history)),
                ),
            )
            connection.commit()

    def get_cluster(self, namespace: str, name: str) -> ClusterRecord | None:
        with sqlite3.connect(self.db_path) as connection:
            row = connection.execute(
                f"{_CLUSTER_SELECT} WHERE namespace = ? AND name = ?",
                (namespace, name),
            ).fetchone()
        return _cluster_from_row(row) if row else None

    def list_clusters(self, *, states: Iterable[RecoveryState] | None = None) -> list[ClusterRecord]:
        state_values = [state.value for state in states] if states is not None else None
        with sqlite3.connect(self.db_path) as connection:
            if state_values is None:
                rows = connection.execute(f"{_CLUSTER_SELECT} ORDER BY namespace, name").fetchall()
            elif not state_values:
                rows = []
            else:
                placeholders = ", ".join("?" for _ in state_values)
                rows = connection.execute(
                    f"{_CLUSTER_SELECT} WHERE recovery_state IN ({placeholders}) ORDER BY namespace, name",
                    state_values,
                ).fetchall()
        return [_cluster_from_row(row) for row in rows]


_BACKUP_SELECT = """
    SELECT backup_id, name, namespace, cluster_name, snapshot_class, status, started_at,
           finished_at, consistency_timestamp, begin_wal_sequence, timeline, message
    FROM backups
"""

_CLUSTER_SELECT = """
    SELECT namespace, name, recovery_state, request_json, resolved_target_json,
           last_error, attached_replicas, promoted_at, updated_at, history_json
    FROM restore_clusters
"""


def _cluster_from_row(row: tuple[Any, ...]) -> ClusterRecord:
    return ClusterRecord(
        namespace=row[0],
        name=row[1],
        recovery_state=RecoveryState(row[2]),
        request=_load_request(row[3]),
        resolved_target=_load_resolved_target(row[4]),
        last_error=row[5],
        attached_replicas=int(row[6]),
        promoted_at=_parse(row[7]),
        updated_at=_parse(row[8]),
        history=tuple(json.loads(row[9] or "[]")),
    )


def _dump_request(request: RestoreRequest | None) -> str | None:
    if request is None:
        return None
    payload = asdict(request)
    payload["target"]["target_time"] = _iso(request.target.target_time)
    return json.dumps(payload, sort_keys=True)


def _load_request(raw: str | None) -> RestoreRequest | None:
    if not raw:
        return None
    payload = json.loads(raw)
    target = payload.pop("target")
    return RestoreRequest(
        target=RecoveryTarget(
            target_time=_parse(target.get("target_time")),
            restore_point=target.get("restore_point"),
            inclusive=bool(target.get("inclusive", True)),
        ),
        **payload,
    )


def _dump_resolved_target(target: ResolvedTarget | None) -> str | None:
    if target is None:
        return None
    payload = asdict(target)
    payload["target_time"] = _iso(target.target_time)
    return json.dumps(payload, sort_keys=True)


def _load_resolved_target(raw: str | None) -> ResolvedTarget | None:
    if not raw:
        return None
    payload = json.loads(raw)
    payload["target_time"] = _parse(payload["target_time"])
    return ResolvedTarget(**payload)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None
