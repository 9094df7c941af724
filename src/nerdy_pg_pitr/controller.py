from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Iterable
import argparse
import logging
import signal
import sys
import threading

from .archive import S3ArchiveClient, WalArchiveTracker
from .config import AppConfig, ConfigError, configure_logging, ensure_directories
from .instance import InstanceTemplate, KubernetesInstanceDriver
from .k8s import (
    KubernetesAuthenticationError,
    KubernetesClients,
    exec_sql,
    find_primary_pod,
    load_kubernetes_clients,
)
from .metadata import RecoveryMetadataStore
from .models import Backup, BackupRequest, BackupStatus, ClusterStatus, RestoreRequest
from .recovery_target import RecoveryTargetResolver, parse_recovery_target
from .restore import RestoreOrchestrator, RestoreOrchestratorConfig, run_reconcile_loop
from .retry import RetryPolicy
from .snapshot import (
    CsiVolumeSnapshotProvider,
    PostgresWriteFence,
    SnapshotTrigger,
    SnapshotTriggerConfig,
    kubernetes_volume_lister,
)

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Every component wired for one controller process."""

    config: AppConfig
    clients: KubernetesClients
    metadata_store: RecoveryMetadataStore
    archive_client: S3ArchiveClient
    snapshot_trigger: SnapshotTrigger
    orchestrator: RestoreOrchestrator
    retry_policy: RetryPolicy

    def tracker(self, cluster_name: str, timeline: int = 1) -> WalArchiveTracker:
        return _tracker(self.config, self.archive_client, self.metadata_store, self.retry_policy, cluster_name, timeline)

    def refresh_coverage(self, cluster_name: str, timeline: int) -> None:
        _refresh_coverage(self.tracker(cluster_name, timeline))

    def take_backup(self, request: BackupRequest) -> Backup:
        """Check the archive is reachable, then take a snapshot backup."""
        if not self.tracker(request.cluster_name).check_connectivity():
            raise RuntimeError(
                f"WAL archive s3://{self.archive_client.bucket} is not reachable; "
                "a snapshot without archived WAL cannot be restored to a point in time"
            )
        return self.snapshot_trigger.take_backup(request)

    def create_restore_point(self, *, namespace: str, cluster_name: str, name: str) -> datetime:
        name = parse_recovery_target(restore_point=name).restore_point or name
        pod = find_primary_pod(self.clients.core_api, namespace=namespace, cluster_name=cluster_name)
        literal = name.replace("'", "''")
        output = exec_sql(
            self.clients.core_api,
            namespace=namespace,
            pod_name=pod.metadata.name,
            sql=(
                f"SELECT pg_create_restore_point('{literal}'), "
                "to_char(clock_timestamp() AT TIME ZONE 'UTC', 'YYYY-MM-DD\"T\"HH24:MI:SS.US')"
            ),
        )
        recorded_at = datetime.fromisoformat(output.strip().split("|")[-1]).replace(tzinfo=UTC)
        self.metadata_store.record_restore_point(cluster_name, name, recorded_at)
        logger.info("restore point %s recorded for %s/%s at %s", name, namespace, cluster_name, recorded_at.isoformat())
        return recorded_at

    def request_restore(self, request: RestoreRequest) -> ClusterStatus:
        return self.orchestrator.request_restore(request)

    def completed_backups(self, namespace: str) -> list[Backup]:
        return [
            backup
            for backup in self.metadata_store.list_backups(namespace=namespace)
            if backup.status is BackupStatus.COMPLETED
        ]


def build_runtime(
    config: AppConfig,
    *,
    clients: KubernetesClients | None = None,
    s3_client: Any | None = None,
) -> Runtime:
    ensure_directories(config)
    if clients is None:
        clients = load_kubernetes_clients(
            kubeconfig_path=config.kubeconfig_path,
            context=config.context,
            in_cluster=config.in_cluster,
        )
    metadata_store = RecoveryMetadataStore(config.metadata_db_path)
    metadata_store.initialize()

    if s3_client is None:
        archive_client = S3ArchiveClient.from_config(config)
    else:
        archive_client = S3ArchiveClient(bucket=config.archive_bucket, s3_client=s3_client)

    retry_policy = RetryPolicy(
        max_attempts=config.retry_max_attempts,
        initial_delay_seconds=config.retry_initial_delay_seconds,
        max_delay_seconds=config.retry_max_delay_seconds,
    )
    snapshot_provider = CsiVolumeSnapshotProvider(custom_objects_api=clients.custom_objects_api)
    snapshot_trigger = SnapshotTrigger(
        provider=snapshot_provider,
        fence=PostgresWriteFence(core_api=clients.core_api),
        metadata_store=metadata_store,
        volume_lister=kubernetes_volume_lister(clients.core_api),
        config=SnapshotTriggerConfig(
            timeout_seconds=config.snapshot_timeout_seconds,
            poll_interval_seconds=config.snapshot_poll_interval_seconds,
            retry_policy=retry_policy,
        ),
    )
    destination = f"s3://{config.archive_bucket}"
    if config.archive_prefix:
        destination = f"{destination}/{config.archive_prefix}"
    driver = KubernetesInstanceDriver(
        core_api=clients.core_api,
        template=InstanceTemplate(
            image=config.postgres_image,
            archive_destination=destination,
            credentials_secret=config.archive_credentials_secret,
            archive_endpoint_url=config.archive_endpoint_url,
            storage_class=config.storage_class,
        ),
    )

    orchestrator = RestoreOrchestrator(
        metadata_store=metadata_store,
        resolver=RecoveryTargetResolver(metadata_store=metadata_store),
        driver=driver,
        snapshot_provider=snapshot_provider,
        config=RestoreOrchestratorConfig(
            replica_attach_timeout_seconds=config.replica_attach_timeout_seconds,
            retry_policy=retry_policy,
        ),
        coverage_refresher=lambda cluster_name, timeline: _refresh_coverage(
            _tracker(config, archive_client, metadata_store, retry_policy, cluster_name, timeline)
        ),
    )
    return Runtime(
        config=config,
        clients=clients,
        metadata_store=metadata_store,
        archive_client=archive_client,
        snapshot_trigger=snapshot_trigger,
        orchestrator=orchestrator,
        retry_policy=retry_policy,
    )


def _tracker(
    config: AppConfig,
    archive_client: S3ArchiveClient,
    metadata_store: RecoveryMetadataStore,
    retry_policy: RetryPolicy,
    cluster_name: str,
    timeline: int,
) -> WalArchiveTracker:
    return WalArchiveTracker(
        archive_client=archive_client,
        metadata_store=metadata_store,
        cluster_name=cluster_name,
        prefix=config.archive_prefix,
        timeline=timeline,
        retry_policy=retry_policy,
    )


def _refresh_coverage(tracker: WalArchiveTracker) -> None:
    coverage = tracker.sync_from_archive()
    if coverage is None:
        logger.info("no archived WAL found for %s on timeline %d", tracker.cluster_name, tracker.timeline)
        return
    logger.info(
        "archive coverage for %s: segments %d-%d up to %s",
        tracker.cluster_name,
        coverage.earliest_sequence,
        coverage.latest_sequence,
        coverage.latest_timestamp.isoformat(),
    )


def parse_args(argv: Iterable[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="nerdy-pg-pitr-controller",
        description="Reconcile point-in-time restores until they are Ready or Failed.",
    )
    parser.add_argument("--once", action="store_true", help="Run a single reconcile pass and exit")
    parser.add_argument("--log-level", default=None, help="Override NPP_LOG_LEVEL")
    return parser.parse_args(list(argv))


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    try:
        config = AppConfig.from_env()
    except ConfigError as error:
        print(f"Error: {error}", file=sys.stderr)
        return 2
    configure_logging(args.log_level or config.log_level)

    try:
        runtime = build_runtime(config)
    except KubernetesAuthenticationError as error:
        logger.error("%s", error)
        return 1
    except ValueError as error:
        logger.error("invalid configuration: %s", error)
        return 2

    if args.once:
        for status in runtime.orchestrator.reconcile_once():
            logger.info("%s/%s is %s", status.namespace, status.name, status.recovery_state.value)
        return 0

    stop_event = threading.Event()

    def _stop(signum: int, _frame: object) -> None:
        logger.info("received signal %d, stopping", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)
    run_reconcile_loop(
        runtime.orchestrator,
        interval_seconds=config.reconcile_interval_seconds,
        stop_event=stop_event,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
