from __future__ import annotations

from datetime import UTC, datetime
import re
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from kubernetes.client import ApiException

from nerdy_pg_pitr.k8s import INSTANCE_NAME_LABEL, SqlExecutionError
from nerdy_pg_pitr.metadata import BackupExistsError
from nerdy_pg_pitr.models import BackupRequest, BackupStatus, ClusterVolume
from nerdy_pg_pitr.snapshot import (
    BACKUP_NAME_LABEL,
    VOLUME_ROLE_LABEL,
    CsiVolumeSnapshotProvider,
    PostgresWriteFence,
    SnapshotTrigger,
    SnapshotTriggerConfig,
    _backup_name,
    _sanitize_dns_label,
    _snapshot_name,
)

BACKUP_AT = datetime(2026, 3, 2, 10, 0, 0, tzinfo=UTC)
VOLUMES = [
    ClusterVolume(pvc_name="source-1", role="PG_DATA", capacity="1Gi"),
    ClusterVolume(pvc_name="source-1-wal", role="PG_WAL", capacity="1Gi"),
]


def _trigger(
    snapshot_provider,
    write_fence,
    metadata_store,
    retry_policy,
    *,
    volumes: list[ClusterVolume] | None = None,
    timeout_seconds: int = 60,
) -> SnapshotTrigger:
    return SnapshotTrigger(
        provider=snapshot_provider,
        fence=write_fence,
        metadata_store=metadata_store,
        volume_lister=lambda namespace, cluster_name, instance_name: list(VOLUMES if volumes is None else volumes),
        config=SnapshotTriggerConfig(
            timeout_seconds=timeout_seconds,
            poll_interval_seconds=0.0,
            retry_policy=retry_policy,
        ),
        clock=lambda: BACKUP_AT,
        sleep=lambda _: None,
    )


def _request(name: str | None = "nightly") -> BackupRequest:
    return BackupRequest(namespace="db", cluster_name="source", snapshot_class="csi-snapclass", name=name)


def test_take_backup_snapshots_every_volume_and_records_consistency_point(
    snapshot_provider, write_fence, metadata_store, fast_retry_policy
) -> None:
    trigger = _trigger(snapshot_provider, write_fence, metadata_store, fast_retry_policy)

    backup = trigger.take_backup(_request())

    assert backup.status is BackupStatus.COMPLETED
    assert [snapshot.name for snapshot in backup.snapshots] == ["nightly-1-pg-data", "nightly-2-pg-wal"]
    assert all(snapshot.ready for snapshot in backup.snapshots)
    assert backup.consistency_timestamp == BACKUP_AT
    assert backup.begin_wal_sequence == 10
    assert snapshot_provider.created == {"nightly-1-pg-data": "source-1", "nightly-2-pg-wal": "source-1-wal"}
    assert (write_fence.fenced, write_fence.unfenced) == (1, 1)
    stored = metadata_store.get_backup_by_name("db", "nightly")
    assert stored.status is BackupStatus.COMPLETED
    assert stored.is_usable


def test_take_backup_without_name_generates_dns_safe_name(
    snapshot_provider, write_fence, metadata_store, fast_retry_policy
) -> None:
    trigger = _trigger(snapshot_provider, write_fence, metadata_store, fast_retry_policy)

    backup = trigger.take_backup(_request(name=None))

    assert re.fullmatch(r"source-20260302100000-[0-9a-f]{6}", backup.name)


def test_take_backup_twice_without_name_records_two_independent_backups(
    snapshot_provider, write_fence, metadata_store, fast_retry_policy
) -> None:
    trigger = _trigger(snapshot_provider, write_fence, metadata_store, fast_retry_policy)

    first = trigger.take_backup(_request(name=None))
    second = trigger.take_backup(_request(name=None))

    assert first.name != second.name
    assert first.backup_id != second.backup_id
    first_snapshots = {snapshot.name for snapshot in first.snapshots}
    second_snapshots = {snapshot.name for snapshot in second.snapshots}
    assert first_snapshots.isdisjoint(second_snapshots)
    assert metadata_store.get_backup(first.backup_id).is_usable
    assert metadata_store.get_backup(second.backup_id).is_usable
    assert {snapshot.name for snapshot in metadata_store.get_backup(first.backup_id).snapshots} == first_snapshots


def test_take_backup_with_taken_name_raises_before_fencing(
    snapshot_provider, write_fence, metadata_store, fast_retry_policy
) -> None:
    trigger = _trigger(snapshot_provider, write_fence, metadata_store, fast_retry_policy)
    first = trigger.take_backup(_request())

    with pytest.raises(BackupExistsError, match="backup db/nightly already exists"):
        trigger.take_backup(_request())

    assert write_fence.fenced == 1
    assert sorted(snapshot_provider.created) == ["nightly-1-pg-data", "nightly-2-pg-wal"]
    stored = metadata_store.get_backup_by_name("db", "nightly")
    assert (stored.backup_id, stored.status) == (first.backup_id, BackupStatus.COMPLETED)


def test_take_backup_with_snapshot_creation_failure_removes_created_snapshots(
    snapshot_provider, write_fence, metadata_store, fast_retry_policy
) -> None:
    snapshot_provider.create_failures["source-1-wal"] = "exceeded quota: volumesnapshots"
    trigger = _trigger(snapshot_provider, write_fence, metadata_store, fast_retry_policy)

    backup = trigger.take_backup(_request())

    assert backup.status is BackupStatus.FAILED
    assert backup.message == "snapshot stage failed: source-1-wal: exceeded quota: volumesnapshots"
    assert snapshot_provider.deleted == ["nightly-1-pg-data"]
    assert snapshot_provider.created == {}
    assert write_fence.unfenced == 1
    assert metadata_store.get_backup_by_name("db", "nightly").status is BackupStatus.FAILED


def test_take_backup_with_snapshot_error_fails_ready_stage(
    snapshot_provider, write_fence, metadata_store, fast_retry_policy
) -> None:
    snapshot_provider.readiness_errors["source-1"] = "Failed to check and update snapshot content"
    trigger = _trigger(snapshot_provider, write_fence, metadata_store, fast_retry_policy)

    backup = trigger.take_backup(_request())

    assert backup.status is BackupStatus.FAILED
    assert backup.message.startswith("ready stage failed: nightly-1-pg-data: Failed to check")
    assert sorted(snapshot_provider.deleted) == ["nightly-1-pg-data", "nightly-2-pg-wal"]
    assert not backup.is_usable


def test_take_backup_with_snapshot_never_ready_times_out(
    snapshot_provider, write_fence, metadata_store, fast_retry_policy
) -> None:
    snapshot_provider.never_ready.add("source-1-wal")
    trigger = _trigger(snapshot_provider, write_fence, metadata_store, fast_retry_policy, timeout_seconds=0)

    backup = trigger.take_backup(_request())

    assert backup.status is BackupStatus.FAILED
    assert "nightly-2-pg-wal was not ready within 0s" in backup.message


def test_take_backup_with_fence_failure_releases_fence_and_creates_nothing(
    snapshot_provider, write_fence, metadata_store, fast_retry_policy
) -> None:
    write_fence.error = SqlExecutionError("ERROR:  must be superuser to execute ALTER SYSTEM command")
    trigger = _trigger(snapshot_provider, write_fence, metadata_store, fast_retry_policy)

    backup = trigger.take_backup(_request())

    assert backup.status is BackupStatus.FAILED
    assert backup.message.startswith("fence stage failed: ERROR:  must be superuser")
    assert snapshot_provider.created == {}
    assert write_fence.unfenced == 1


def test_take_backup_without_data_volumes_fails_discover_stage(
    snapshot_provider, write_fence, metadata_store, fast_retry_policy
) -> None:
    trigger = _trigger(snapshot_provider, write_fence, metadata_store, fast_retry_policy, volumes=[])

    backup = trigger.take_backup(_request())

    assert backup.status is BackupStatus.FAILED
    assert backup.message == "discover stage failed: no data volumes found for instance db/source-1"
    assert write_fence.unfenced == 1


def test_snapshot_name_normalizes_volume_role() -> None:
    assert _snapshot_name("nightly", 3, "PG_TABLESPACE") == "nightly-3-pg-tablespace"


def test_sanitize_dns_label_replaces_invalid_characters_and_truncates() -> None:
    assert _sanitize_dns_label("My_Cluster..X", max_length=63) == "my-cluster-x"
    assert _sanitize_dns_label("___", max_length=63) == "npp-backup"
    assert _sanitize_dns_label("a" * 10 + "-b", max_length=11) == "a" * 10


def test_backup_name_fits_in_dns_label() -> None:
    name = _backup_name("c" * 80, BACKUP_AT)

    assert len(name) <= 63
    assert re.fullmatch(r"c+-[0-9a-f]{6}", name)


def test_csi_provider_create_posts_volume_snapshot() -> None:
    custom_objects_api = Mock()
    provider = CsiVolumeSnapshotProvider(custom_objects_api=custom_objects_api)

    provider.create(
        namespace="db",
        name="nightly-1-pg-data",
        pvc_name="source-1",
        snapshot_class="csi-snapclass",
        labels={BACKUP_NAME_LABEL: "nightly", VOLUME_ROLE_LABEL: "PG_DATA"},
    )

    kwargs = custom_objects_api.create_namespaced_custom_object.call_args.kwargs
    assert kwargs["group"] == "snapshot.storage.k8s.io"
    assert kwargs["version"] == "v1"
    assert kwargs["plural"] == "volumesnapshots"
    assert kwargs["body"]["spec"] == {
        "volumeSnapshotClassName": "csi-snapclass",
        "source": {"persistentVolumeClaimName": "source-1"},
    }
    assert kwargs["body"]["metadata"]["labels"][BACKUP_NAME_LABEL] == "nightly"


@pytest.mark.parametrize(
    ("status", "ready", "error", "restore_size"),
    [
        ({"readyToUse": True, "restoreSize": "1Gi"}, True, None, "1Gi"),
        ({"readyToUse": False, "error": {"message": " snapshot class not found "}}, False, "snapshot class not found", None),
        (None, False, None, None),
    ],
)
def test_csi_provider_poll_readiness_reads_status(status, ready, error, restore_size) -> None:
    custom_objects_api = Mock()
    custom_objects_api.get_namespaced_custom_object.return_value = {"status": status}

    readiness = CsiVolumeSnapshotProvider(custom_objects_api=custom_objects_api).poll_readiness(
        namespace="db", name="nightly-1-pg-data"
    )

    assert (readiness.ready, readiness.error, readiness.restore_size) == (ready, error, restore_size)


def test_csi_provider_delete_ignores_missing_snapshot() -> None:
    custom_objects_api = Mock()
    custom_objects_api.delete_namespaced_custom_object.side_effect = ApiException(status=404, reason="Not Found")

    CsiVolumeSnapshotProvider(custom_objects_api=custom_objects_api).delete(namespace="db", name="gone")

    custom_objects_api.delete_namespaced_custom_object.side_effect = ApiException(status=500, reason="boom")
    with pytest.raises(ApiException):
        CsiVolumeSnapshotProvider(custom_objects_api=custom_objects_api).delete(namespace="db", name="gone")


def test_postgres_write_fence_checkpoints_and_reads_consistency_point(monkeypatch: pytest.MonkeyPatch) -> None:
    pod = SimpleNamespace(metadata=SimpleNamespace(name="source-1", labels={INSTANCE_NAME_LABEL: "source-1"}))
    statements: list[str] = []

    def fake_exec_sql(core_api, *, namespace: str, pod_name: str, sql: str) -> str:
        statements.append(sql)
        if "pg_walfile_name" in sql:
            return "00000001000000000000000A|0/A000060|2026-03-02T10:00:00.123456"
        return ""

    monkeypatch.setattr("nerdy_pg_pitr.snapshot.find_primary_pod", lambda core_api, **kwargs: pod)
    monkeypatch.setattr("nerdy_pg_pitr.snapshot.exec_sql", fake_exec_sql)

    point = PostgresWriteFence(core_api=Mock()).fence(namespace="db", cluster_name="source")

    assert point.instance_name == "source-1"
    assert (point.timeline, point.wal_sequence, point.lsn) == (1, 10, "0/A000060")
    assert point.consistency_timestamp == datetime(2026, 3, 2, 10, 0, 0, 123456, tzinfo=UTC)
    assert statements[0] == "ALTER SYSTEM SET default_transaction_read_only = on"
    assert statements[2] == "CHECKPOINT"
    assert statements[-1] == "SELECT pg_switch_wal()"


def test_postgres_write_fence_with_unexpected_output_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    pod = SimpleNamespace(metadata=SimpleNamespace(name="source-1", labels={}))
    monkeypatch.setattr("nerdy_pg_pitr.snapshot.find_primary_pod", lambda core_api, **kwargs: pod)
    monkeypatch.setattr("nerdy_pg_pitr.snapshot.exec_sql", lambda core_api, **kwargs: "garbage")

    with pytest.raises(SqlExecutionError, match="unexpected fence query output"):
        PostgresWriteFence(core_api=Mock()).fence(namespace="db", cluster_name="source")


def test_postgres_write_fence_unfence_resets_read_only_default(monkeypatch: pytest.MonkeyPatch) -> None:
    pod = SimpleNamespace(metadata=SimpleNamespace(name="source-1", labels={}))
    statements: list[str] = []
    monkeypatch.setattr("nerdy_pg_pitr.snapshot.find_primary_pod", lambda core_api, **kwargs: pod)
    monkeypatch.setattr(
        "nerdy_pg_pitr.snapshot.exec_sql", lambda core_api, **kwargs: statements.append(kwargs["sql"]) or ""
    )

    PostgresWriteFence(core_api=Mock()).unfence(namespace="db", cluster_name="source")

    assert statements == ["ALTER SYSTEM RESET default_transaction_read_only", "SELECT pg_reload_conf()"]
