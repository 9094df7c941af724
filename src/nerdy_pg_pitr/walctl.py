"""archive_command / restore_command entry points run inside PostgreSQL pods.

PostgreSQL retries a non-zero archive_command and keeps the segment on disk
until it succeeds, which is what lets the tracker hold an out-of-order
segment instead of archiving past a hole. A non-zero restore_command tells
recovery the file does not exist.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterable
import argparse
import logging
import os
import sys

from .archive import (
    S3ArchiveClient,
    WalArchiveError,
    WalArchiveTracker,
    WalSegmentNotFoundError,
    is_auxiliary_file,
    parse_wal_file_name,
)
from .config import AppConfig, ConfigError, configure_logging, ensure_directories
from .metadata import RecoveryMetadataStore
from .retry import RetriesExhaustedError, RetryPolicy

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_RETRY = 1
EXIT_USAGE = 2


def parse_archive_args(argv: Iterable[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="nerdy-pg-pitr-wal-archive",
        description="Archive one WAL file (use as archive_command ... %p).",
    )
    parser.add_argument("--cluster", required=True, help="Cluster whose archive receives the file")
    parser.add_argument("wal_path", help="Path of the WAL file, relative to the data directory")
    return parser.parse_args(list(argv))


def parse_restore_args(argv: Iterable[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="nerdy-pg-pitr-wal-restore",
        description="Fetch one WAL file from the archive (use as restore_command ... %f %p).",
    )
    parser.add_argument("--cluster", required=True, help="Cluster whose archive holds the file")
    parser.add_argument("wal_name", help="File name requested by recovery")
    parser.add_argument("destination", help="Path to write the file to")
    return parser.parse_args(list(argv))


def archive_wal(config: AppConfig, *, cluster_name: str, wal_path: Path, tracker: WalArchiveTracker | None = None) -> int:
    file_name = wal_path.name
    payload = wal_path.read_bytes()

    if is_auxiliary_file(file_name):
        tracker = tracker or build_tracker(config, cluster_name=cluster_name, timeline=1)
        tracker.archive_file(file_name, payload)
        logger.info("archived %s", file_name)
        return EXIT_OK

    parsed = parse_wal_file_name(file_name)
    if parsed is None:
        logger.error("%s is not a WAL file", file_name)
        return EXIT_USAGE
    timeline, sequence = parsed
    tracker = tracker or build_tracker(config, cluster_name=cluster_name, timeline=timeline)

    segment = tracker.archive(sequence, payload)
    if segment is None:
        logger.warning("%s not archived yet: %s", file_name, tracker.status().last_error)
        return EXIT_RETRY
    logger.info("archived %s", file_name)
    return EXIT_OK


def restore_wal(
    config: AppConfig,
    *,
    cluster_name: str,
    wal_name: str,
    destination: Path,
    tracker: WalArchiveTracker | None = None,
) -> int:
    parsed = parse_wal_file_name(wal_name)
    if parsed is None and not is_auxiliary_file(wal_name):
        logger.error("%s is not a WAL file", wal_name)
        return EXIT_USAGE
    timeline = parsed[0] if parsed else 1
    tracker = tracker or build_tracker(config, cluster_name=cluster_name, timeline=timeline)

    try:
        if parsed is None:
            payload = tracker.fetch_file(wal_name)
        else:
            payload = tracker.fetch(parsed[1])
    except WalSegmentNotFoundError:
        logger.debug("%s is not in the archive of %s", wal_name, cluster_name)
        return EXIT_RETRY

    partial = destination.with_name(f"{destination.name}.npp-partial")
    partial.write_bytes(payload)
    os.replace(partial, destination)
    logger.info("restored %s (%d bytes)", wal_name, len(payload))
    return EXIT_OK


def build_tracker(config: AppConfig, *, cluster_name: str, timeline: int) -> WalArchiveTracker:
    ensure_directories(config)
    metadata_store = RecoveryMetadataStore(config.metadata_db_path)
    metadata_store.initialize()
    return WalArchiveTracker(
        archive_client=S3ArchiveClient.from_config(config),
        metadata_store=metadata_store,
        cluster_name=cluster_name,
        prefix=config.archive_prefix,
        timeline=timeline,
        retry_policy=RetryPolicy(
            max_attempts=config.retry_max_attempts,
            initial_delay_seconds=config.retry_initial_delay_seconds,
            max_delay_seconds=config.retry_max_delay_seconds,
        ),
    )


def archive_main(argv: Iterable[str] | None = None) -> int:
    args = parse_archive_args(sys.argv[1:] if argv is None else argv)
    return _run(lambda config: archive_wal(config, cluster_name=args.cluster, wal_path=Path(args.wal_path)))


def restore_main(argv: Iterable[str] | None = None) -> int:
    args = parse_restore_args(sys.argv[1:] if argv is None else argv)
    return _run(
        lambda config: restore_wal(
            config,
            cluster_name=args.cluster,
            wal_name=args.wal_name,
            destination=Path(args.destination),
        )
    )


def _run(command: Callable[[AppConfig], int]) -> int:
    try:
        config = AppConfig.from_env()
    except ConfigError as error:
        print(f"Error: {error}", file=sys.stderr)
        return EXIT_USAGE
    configure_logging(config.log_level)
    try:
        return command(config)
    except (WalArchiveError, RetriesExhaustedError, OSError) as error:
        logger.error("%s", error)
        return EXIT_RETRY
