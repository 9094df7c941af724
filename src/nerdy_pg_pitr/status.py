from __future__ import annotations

from typing import Any

from .models import ClusterRecord, ClusterStatus, RecoveryState


def required_replicas(record: ClusterRecord) -> int:
    if record.request is None or not record.request.require_full_topology:
        return 0
    return max(0, record.request.replicas)


def derive_cluster_status(record: ClusterRecord) -> ClusterStatus:
    """Externally visible status, derived only from persisted recovery state."""
    required = required_replicas(record)
    ready = record.recovery_state is RecoveryState.READY and record.attached_replicas >= required
    return ClusterStatus(
        namespace=record.namespace,
        name=record.name,
        recovery_state=record.recovery_state,
        ready=ready,
        last_error=record.last_error,
        attached_replicas=record.attached_replicas,
        required_replicas=required,
    )


def status_as_dict(status: ClusterStatus) -> dict[str, Any]:
    return {
        "namespace": status.namespace,
        "name": status.name,
        "recoveryState": status.recovery_state.value,
        "ready": status.ready,
        "lastError": status.last_error,
        "attachedReplicas": status.attached_replicas,
        "requiredReplicas": status.required_replicas,
    }
