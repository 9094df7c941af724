"""Restore orchestration as a level-triggered state machine.

``RestoreOrchestrator.advance`` reads the persisted cluster record, observes
the restored instance and applies at most one transition along
NotRecovering -> RestoringBase -> Replaying -> Promoting -> Ready, or moves
the cluster to Failed. Progress lives in the metadata store and in the
instance itself, never in the call stack, so the controller can be
restarted at any point and pick up where the instance actually is.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Callable, Iterator
import logging
import threading
import time

from .instance import InstanceDriver
from .metadata import RecoveryMetadataStore
from .models import (
    RECOVERY_SEQUENCE,
    TERMINAL_RECOVERY_STATES,
    Backup,
    ClusterRecord,
    ClusterStatus,
    RecoveryState,
    RestoreRequest,
)
from .recovery_target import ArchiveGapError, BackupNotUsableError, RecoveryTargetResolver
from .retry import RetriesExhaustedError, RetryPolicy, call_with_retry, is_transient_error
from .snapshot import SnapshotProvider
from .status import derive_cluster_status, required_replicas

logger = logging.getLogger(__name__)

CoverageRefresher = Callable[[str, int], None]


class RestoreError(RuntimeError):
    reason = "RestoreError"


class UnknownClusterError(RestoreError):
    reason = "UnknownCluster"


class ClusterExistsError(RestoreError):
    reason = "ClusterExists"


class InvalidTransitionError(RestoreError):
    reason = "InvalidTransition"


@dataclass(frozen=True)
class RestoreOrchestratorConfig:
    replica_attach_timeout_seconds: int = 300
    retry_policy: RetryPolicy = RetryPolicy()


class RestoreOrchestrator:
    def __init__(
        self,
        *,
        metadata_store: RecoveryMetadataStore,
        resolver: RecoveryTargetResolver,
        driver: InstanceDriver,
        snapshot_provider: SnapshotProvider,
        config: RestoreOrchestratorConfig | None = None,
        coverage_refresher: CoverageRefresher | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.metadata_store = metadata_store
        self.resolver = resolver
        self.driver = driver
        self.snapshot_provider = snapshot_provider
        self.config = config or RestoreOrchestratorConfig()
        self.coverage_refresher = coverage_refresher
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._sleep = sleep
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._steps: dict[RecoveryState, Callable[[ClusterRecord], ClusterRecord]] = {
            RecoveryState.NOT_RECOVERING: self._step_not_recovering,
            RecoveryState.RESTORING_BASE: self._step_restoring_base,
            RecoveryState.REPLAYING: self._step_replaying,
            RecoveryState.PROMOTING: self._step_promoting,
        }

    def request_restore(self, request: RestoreRequest) -> ClusterStatus:
        """Validate a restore request and register the target cluster.

        Validation errors are raised before anything is provisioned or
        persisted; the cluster starts in NotRecovering.
        """
        if request.replicas < 0:
            raise ValueError("replicas must not be negative")

        with self._cluster_lock(request.namespace, request.cluster_name):
            if self.metadata_store.get_cluster(request.namespace, request.cluster_name) is not None:
                raise ClusterExistsError(f"cluster {request.namespace}/{request.cluster_name} already exists")

            backup = self.metadata_store.get_backup_by_name(request.namespace, request.backup_name)
            if backup is None:
                raise BackupNotUsableError(f"backup {request.namespace}/{request.backup_name} does not exist")
            if self.coverage_refresher is not None:
                self.coverage_refresher(backup.cluster_name, backup.timeline)
            resolved = self.resolver.resolve(backup, request.target)

            record = ClusterRecord(
                namespace=request.namespace,
                name=request.cluster_name,
                recovery_state=RecoveryState.NOT_RECOVERING,
                request=request,
                resolved_target=resolved,
                updated_at=self._clock(),
                history=(RecoveryState.NOT_RECOVERING.value,),
            )
            self.metadata_store.save_cluster(record)

        logger.info(
            "restore of %s/%s from backup %s to %s accepted",
            request.namespace,
            request.cluster_name,
            backup.name,
            resolved.target_time.isoformat(),
        )
        return derive_cluster_status(record)

    def advance(self, namespace: str, name: str) -> ClusterStatus:
        with self._cluster_lock(namespace, name):
            record = self._load(namespace, name)
            if record.recovery_state in TERMINAL_RECOVERY_STATES:
                return derive_cluster_status(record)

            step = self._steps[record.recovery_state]
            try:
                updated = step(record)
            except RetriesExhaustedError as error:
                updated = replace(record, last_error=f"Retrying: {error}", updated_at=self._clock())
            except Exception as error:  # pylint: disable=broad-except
                if is_transient_error(error):
                    updated = replace(record, last_error=f"Retrying: {_error_message(error)}", updated_at=self._clock())
                else:
                    updated = self._fail(record, _failure_reason(record.recovery_state), _error_message(error))

            if updated != record:
                self.metadata_store.save_cluster(updated)
            return derive_cluster_status(updated)

    def abort(self, namespace: str, name: str, *, detail: str = "restore aborted by operator") -> ClusterStatus:
        """Discard the target instance entirely and mark the restore Failed."""
        with self._cluster_lock(namespace, name):
            record = self._load(namespace, name)
            if record.recovery_state in TERMINAL_RECOVERY_STATES:
                raise InvalidTransitionError(
                    f"cluster {namespace}/{name} is already {record.recovery_state.value} and cannot be aborted"
                )
            self.driver.discard(record=record)
            failed = self._transition(record, RecoveryState.FAILED, last_error=f"Aborted: {detail}")
            self.metadata_store.save_cluster(failed)
            logger.warning("restore of %s/%s aborted in %s", namespace, name, record.recovery_state.value)
            return derive_cluster_status(failed)

    def status(self, namespace: str, name: str) -> ClusterStatus:
        return derive_cluster_status(self._load(namespace, name))

    def reconcile_once(self) -> list[ClusterStatus]:
        active_states = [state for state in RecoveryState if state not in TERMINAL_RECOVERY_STATES]
        statuses: list[ClusterStatus] = []
        for record in self.metadata_store.list_clusters(states=active_states):
            try:
                statuses.append(self.advance(record.namespace, record.name))
            except Exception:  # pylint: disable=broad-except
                logger.exception("reconcile of %s/%s failed", record.namespace, record.name)
        return statuses

    # State handlers ----------------------------------------------------------

    def _step_not_recovering(self, record: ClusterRecord) -> ClusterRecord:
        if record.request is None or record.resolved_target is None:
            return record
        return self._transition(record, RecoveryState.RESTORING_BASE)

    def _step_restoring_base(self, record: ClusterRecord) -> ClusterRecord:
        backup = self._backup_for(record)
        if backup is None or not backup.is_usable:
            return self._fail(record, "BackupNotUsable", "the source backup is missing or not Completed")

        for snapshot in backup.snapshots:
            readiness = self.snapshot_provider.poll_readiness(namespace=snapshot.namespace, name=snapshot.name)
            if readiness.error:
                return self._fail(record, "SnapshotUnavailable", f"{snapshot.name}: {readiness.error}")
            if not readiness.ready:
                return self._waiting(record, f"waiting for snapshot {snapshot.name} to be ready")

        self.driver.provision_base(record=record, backup=backup, target=record.resolved_target)
        observation = self.driver.observe(record=record)
        if observation.error:
            return self._fail(record, "BaseRestoreFailed", observation.error)
        if observation.running and observation.in_recovery is not None:
            return self._transition(record, RecoveryState.REPLAYING)
        return self._waiting(record, None)

    def _step_replaying(self, record: ClusterRecord) -> ClusterRecord:
        backup = self._backup_for(record)
        if backup is None:
            return self._fail(record, "BackupNotUsable", "the source backup record disappeared during replay")
        try:
            self.resolver.verify_range(backup.cluster_name, record.resolved_target)
        except ArchiveGapError as error:
            return self._fail(record, error.reason, error.detail)

        observation = self.driver.observe(record=record)
        if not observation.exists:
            return self._fail(record, "ReplayFailed", "the recovering instance disappeared")
        if observation.error:
            return self._fail(record, "ReplayFailed", observation.error)
        if observation.reached_target:
            return self._transition(record, RecoveryState.PROMOTING)
        return self._waiting(record, None)

    def _step_promoting(self, record: ClusterRecord) -> ClusterRecord:
        now = self._clock()
        observation = self.driver.observe(record=record)
        if not observation.exists:
            return self._fail(record, "PromotionFailed", "the primary instance disappeared")
        if observation.error:
            return self._fail(record, "PromotionFailed", observation.error)
        if observation.in_recovery is None:
            return self._waiting(record, None)

        if observation.in_recovery:
            try:
                self.driver.promote(record=record)
            except Exception as error:  # pylint: disable=broad-except
                return self._fail(record, "PromotionFailed", _error_message(error))
            logger.info("promoted %s/%s", record.namespace, record.name)
            return replace(record, promoted_at=record.promoted_at or now, last_error=None, updated_at=now)

        if not observation.writable:
            return self._waiting(record, "waiting for the promoted primary to accept writes")

        promoted_at = record.promoted_at or now
        request = record.request
        last_error: str | None = None
        if request is not None and request.replicas > 0:
            backup = self._backup_for(record)
            if backup is None:
                return self._fail(record, "BackupNotUsable", "the source backup record disappeared before replicas attached")
            try:
                call_with_retry(
                    lambda: self.driver.attach_replicas(record=record, backup=backup),
                    operation=f"attach replicas of {record.namespace}/{record.name}",
                    policy=self.config.retry_policy,
                    sleep=self._sleep,
                )
            except Exception as error:  # pylint: disable=broad-except
                last_error = f"ReplicaAttachRetrying: {_error_message(error)}"

        attached = observation.attached_replicas
        required = required_replicas(record)
        if attached >= required:
            return self._transition(
                record,
                RecoveryState.READY,
                attached_replicas=attached,
                promoted_at=promoted_at,
            )

        waited = (now - promoted_at).total_seconds()
        if last_error is None and waited > self.config.replica_attach_timeout_seconds:
            last_error = (
                f"ReplicaAttachTimeout: {attached}/{required} replicas attached after {int(waited)}s (retrying)"
            )
        if (last_error, attached, promoted_at) == (record.last_error, record.attached_replicas, record.promoted_at):
            return record
        return replace(
            record,
            attached_replicas=attached,
            promoted_at=promoted_at,
            last_error=last_error,
            updated_at=now,
        )

    # Helpers -----------------------------------------------------------------

    def _transition(self, record: ClusterRecord, state: RecoveryState, **changes: object) -> ClusterRecord:
        if record.recovery_state in TERMINAL_RECOVERY_STATES:
            raise InvalidTransitionError(f"{record.recovery_state.value} is terminal")
        if state is not RecoveryState.FAILED:
            position = RECOVERY_SEQUENCE.index(record.recovery_state)
            if RECOVERY_SEQUENCE[position + 1] is not state:
                raise InvalidTransitionError(
                    f"{record.recovery_state.value} cannot move to {state.value}"
                )
        changes.setdefault("last_error", None)
        logger.info(
            "cluster %s/%s: %s -> %s",
            record.namespace,
            record.name,
            record.recovery_state.value,
            state.value,
        )
        return replace(
            record,
            recovery_state=state,
            updated_at=self._clock(),
            history=record.history + (state.value,),
            **changes,
        )

    def _fail(self, record: ClusterRecord, reason: str, detail: str) -> ClusterRecord:
        message = f"{reason}: {detail}"
        keep = record.request is not None and record.request.keep_failed
        if not keep:
            try:
                self.driver.discard(record=record)
            except Exception as error:  # pylint: disable=broad-except
                message = f"{message}; cleanup failed: {_error_message(error)}"
        logger.error("restore of %s/%s failed: %s", record.namespace, record.name, message)
        return self._transition(record, RecoveryState.FAILED, last_error=message)

    def _waiting(self, record: ClusterRecord, note: str | None) -> ClusterRecord:
        if record.last_error == note:
            return record
        return replace(record, last_error=note, updated_at=self._clock())

    def _backup_for(self, record: ClusterRecord) -> Backup | None:
        if record.resolved_target is None:
            return None
        return self.metadata_store.get_backup(record.resolved_target.backup_id)

    def _load(self, namespace: str, name: str) -> ClusterRecord:
        record = self.metadata_store.get_cluster(namespace, name)
        if record is None:
            raise UnknownClusterError(f"cluster {namespace}/{name} has no restore record")
        return record

    @contextmanager
    def _cluster_lock(self, namespace: str, name: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault((namespace, name), threading.Lock())
        with lock:
            yield


def run_reconcile_loop(
    orchestrator: RestoreOrchestrator,
    *,
    interval_seconds: float,
    stop_event: threading.Event,
) -> None:
    logger.info("reconcile loop started (interval %.1fs)", interval_seconds)
    while not stop_event.is_set():
        orchestrator.reconcile_once()
        stop_event.wait(interval_seconds)
    logger.info("reconcile loop stopped")


def _failure_reason(state: RecoveryState) -> str:
    return {
        RecoveryState.NOT_RECOVERING: "RestoreFailed",
        RecoveryState.RESTORING_BASE: "BaseRestoreFailed",
        RecoveryState.REPLAYING: "ReplayFailed",
        RecoveryState.PROMOTING: "PromotionFailed",
    }.get(state, "RestoreFailed")


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
