from __future__ import annotations

from nerdy_pg_pitr.models import ClusterRecord, RecoveryState, RecoveryTarget, RestoreRequest
from nerdy_pg_pitr.status import derive_cluster_status, required_replicas, status_as_dict


def _record(state: RecoveryState, *, replicas: int = 2, full: bool = True, attached: int = 0) -> ClusterRecord:
    return ClusterRecord(
        namespace="db",
        name="restored",
        recovery_state=state,
        request=RestoreRequest(
            namespace="db",
            cluster_name="restored",
            backup_name="nightly",
            target=RecoveryTarget(restore_point="before-migration"),
            replicas=replicas,
            require_full_topology=full,
        ),
        attached_replicas=attached,
    )


def test_required_replicas_without_full_topology_is_zero() -> None:
    assert required_replicas(_record(RecoveryState.PROMOTING, full=False)) == 0
    assert required_replicas(_record(RecoveryState.PROMOTING)) == 2
    assert required_replicas(ClusterRecord(namespace="db", name="x", recovery_state=RecoveryState.FAILED)) == 0


def test_derive_cluster_status_is_ready_only_in_ready_state_with_replicas_attached() -> None:
    assert derive_cluster_status(_record(RecoveryState.READY, attached=2)).ready
    assert not derive_cluster_status(_record(RecoveryState.READY, attached=1)).ready
    assert not derive_cluster_status(_record(RecoveryState.PROMOTING, attached=2)).ready


def test_status_as_dict_uses_camel_case_keys() -> None:
    status = derive_cluster_status(_record(RecoveryState.REPLAYING))

    assert status_as_dict(status) == {
        "namespace": "db",
        "name": "restored",
        "recoveryState": "Replaying",
        "ready": False,
        "lastError": None,
        "attachedReplicas": 0,
        "requiredReplicas": 2,
    }
