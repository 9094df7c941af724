"""WAL archive tracking on top of a durable object store.

Segments are uploaded strictly in ascending order per timeline. A segment is
only recorded as archived once the store has acknowledged the write, and
coverage is always computed as the contiguous run starting at the earliest
archived segment, so a hole in the sequence stops coverage from advancing.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Callable, Protocol
import hashlib
import logging
import re
import threading
import time

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

from .config import AppConfig
from .metadata import RecoveryMetadataStore
from .models import WalCoverage, WalSegment
from .retry import RetriesExhaustedError, RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

WAL_SEGMENTS_PER_LOG_ID = 0x100
_WAL_SEGMENT_PATTERN = re.compile(r"^([0-9A-F]{8})([0-9A-F]{8})([0-9A-F]{8})$")
_AUXILIARY_PATTERN = re.compile(r"^[0-9A-F]{8}(\.history|[0-9A-F]{16}(\.[0-9A-F]{8}\.backup|\.partial))$")
METADATA_CHECKSUM = "checksum-sha256"
METADATA_ARCHIVED_AT = "archived-at"
METADATA_SIZE = "size-bytes"


class WalArchiveError(RuntimeError):
    """Raised when the archive rejects a segment or cannot be reached."""


class WalCorruptionError(WalArchiveError):
    """Raised when a fetched segment does not match its recorded checksum."""


class WalSegmentNotFoundError(WalArchiveError):
    """Raised when a requested segment is not present in the archive."""


class ArchiveClient(Protocol):
    def put(self, key: str, payload: bytes, metadata: dict[str, str]) -> None: ...

    def get(self, key: str) -> tuple[bytes, dict[str, str]]: ...

    def head(self, key: str) -> dict[str, str]: ...

    def list(self, prefix: str) -> list[str]: ...


class S3ArchiveClient:
    """Archive client for any S3-compatible endpoint (AWS S3, MinIO)."""

    def __init__(self, *, bucket: str, s3_client: Any) -> None:
        if not bucket.strip():
            raise ValueError("an archive bucket is required")
        self.bucket = bucket.strip()
        self._client = s3_client

    @classmethod
    def from_config(cls, config: AppConfig) -> S3ArchiveClient:
        client_kwargs: dict[str, Any] = {"config": BotoConfig(retries={"mode": "standard"})}
        if config.archive_region:
            client_kwargs["region_name"] = config.archive_region
        if config.archive_endpoint_url:
            client_kwargs["endpoint_url"] = config.archive_endpoint_url
        if config.archive_access_key and config.archive_secret_key:
            client_kwargs["aws_access_key_id"] = config.archive_access_key
            client_kwargs["aws_secret_access_key"] = config.archive_secret_key
        if not config.archive_use_ssl:
            client_kwargs["use_ssl"] = False
        return cls(bucket=config.archive_bucket, s3_client=boto3.client("s3", **client_kwargs))

    def put(self, key: str, payload: bytes, metadata: dict[str, str]) -> None:
        self._client.put_object(Bucket=self.bucket, Key=key, Body=payload, Metadata=metadata)

    def get(self, key: str) -> tuple[bytes, dict[str, str]]:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as error:
            if _is_missing_key(error):
                raise WalSegmentNotFoundError(f"s3://{self.bucket}/{key} does not exist") from error
            raise
        body = response["Body"]
        try:
            payload = body.read()
        finally:
            body.close()
        return payload, dict(response.get("Metadata") or {})

    def head(self, key: str) -> dict[str, str]:
        try:
            response = self._client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as error:
            if _is_missing_key(error):
                raise WalSegmentNotFoundError(f"s3://{self.bucket}/{key} does not exist") from error
            raise
        metadata = dict(response.get("Metadata") or {})
        # Segments written by other archivers (barman-cloud) carry no user metadata.
        last_modified = response.get("LastModified")
        if METADATA_ARCHIVED_AT not in metadata and last_modified is not None:
            metadata[METADATA_ARCHIVED_AT] = last_modified.astimezone(UTC).isoformat()
        if METADATA_SIZE not in metadata and response.get("ContentLength") is not None:
            metadata[METADATA_SIZE] = str(response["ContentLength"])
        return metadata

    def list(self, prefix: str) -> list[str]:
        paginator = self._client.get_paginator("list_objects_v2")
        keys: list[str] = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            keys.extend(item["Key"] for item in page.get("Contents", []))
        return sorted(keys)


@dataclass(frozen=True)
class ArchiveStatus:
    cluster_name: str
    timeline: int
    degraded: bool
    pending_sequences: tuple[int, ...]
    last_error: str | None


class WalArchiveTracker:
    def __init__(
        self,
        *,
        archive_client: ArchiveClient,
        metadata_store: RecoveryMetadataStore,
        cluster_name: str,
        prefix: str = "",
        timeline: int = 1,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.archive_client = archive_client
        self.metadata_store = metadata_store
        self.cluster_name = cluster_name
        self.prefix = prefix.strip("/")
        self.timeline = timeline
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._sleep = sleep
        self._pending: dict[int, bytes] = {}
        self._degraded = False
        self._last_error: str | None = None
        self._lock = threading.Lock()

    @property
    def degraded(self) -> bool:
        return self._degraded

    def status(self) -> ArchiveStatus:
        with self._lock:
            return ArchiveStatus(
                cluster_name=self.cluster_name,
                timeline=self.timeline,
                degraded=self._degraded,
                pending_sequences=tuple(sorted(self._pending)),
                last_error=self._last_error,
            )

    def archive(self, sequence: int, payload: bytes) -> WalSegment | None:
        """Archive one segment; return it once durable, or None while it is pending."""
        if sequence < 0:
            raise ValueError("segment sequence must not be negative")

        with self._lock:
            existing = self.metadata_store.get_wal_segment(self.cluster_name, self.timeline, sequence)
            if existing is not None:
                if existing.checksum_sha256 != _sha256(payload):
                    raise WalArchiveError(
                        f"segment {wal_file_name(self.timeline, sequence)} is already archived with a different checksum"
                    )
                return existing

            self._pending[sequence] = payload
            archived = self._drain_pending()
            return archived.get(sequence)

    def retry_pending(self) -> list[WalSegment]:
        with self._lock:
            return list(self._drain_pending().values())

    def coverage(self) -> WalCoverage | None:
        segments = self.metadata_store.list_wal_segments(self.cluster_name, self.timeline)
        return contiguous_coverage(segments)

    def fetch(self, sequence: int) -> bytes:
        key = self.segment_key(sequence)
        payload, metadata = call_with_retry(
            lambda: self.archive_client.get(key),
            operation=f"fetch WAL segment {key}",
            policy=self.retry_policy,
            sleep=self._sleep,
        )
        recorded = self.metadata_store.get_wal_segment(self.cluster_name, self.timeline, sequence)
        expected = recorded.checksum_sha256 if recorded else metadata.get(METADATA_CHECKSUM)
        if not expected:
            logger.debug("segment %s has no recorded checksum, not verified", key)
            return payload
        actual = _sha256(payload)
        if actual != expected:
            raise WalCorruptionError(f"segment {key} checksum mismatch: expected {expected}, got {actual}")
        return payload

    def archive_file(self, file_name: str, payload: bytes) -> None:
        """Store a timeline history or backup label file next to the segments."""
        if not _AUXILIARY_PATTERN.match(file_name):
            raise ValueError(f"{file_name} is not a WAL auxiliary file")
        key = self._key(file_name)
        call_with_retry(
            lambda: self.archive_client.put(key, payload, {METADATA_CHECKSUM: _sha256(payload)}),
            operation=f"archive {key}",
            policy=self.retry_policy,
            sleep=self._sleep,
        )

    def fetch_file(self, file_name: str) -> bytes:
        key = self._key(file_name)
        payload, metadata = call_with_retry(
            lambda: self.archive_client.get(key),
            operation=f"fetch {key}",
            policy=self.retry_policy,
            sleep=self._sleep,
        )
        expected = metadata.get(METADATA_CHECKSUM)
        if expected and expected != _sha256(payload):
            raise WalCorruptionError(f"{key} checksum mismatch")
        return payload

    def sync_from_archive(self) -> WalCoverage | None:
        """Record segments found in the store that this tracker did not archive itself."""
        known = {segment.sequence for segment in self.metadata_store.list_wal_segments(self.cluster_name, self.timeline)}
        listing_prefix = self._key("")
        keys = call_with_retry(
            lambda: self.archive_client.list(listing_prefix),
            operation=f"list {listing_prefix}",
            policy=self.retry_policy,
            sleep=self._sleep,
        )
        for key in keys:
            parsed = parse_wal_file_name(key.rsplit("/", 1)[-1])
            if parsed is None:
                continue
            timeline, sequence = parsed
            if timeline != self.timeline or sequence in known:
                continue
            metadata = call_with_retry(
                lambda key=key: self.archive_client.head(key),
                operation=f"inspect {key}",
                policy=self.retry_policy,
                sleep=self._sleep,
            )
            archived_at = metadata.get(METADATA_ARCHIVED_AT)
            if not archived_at:
                logger.warning("skipping %s: archive time is unknown", key)
                continue
            checksum = metadata.get(METADATA_CHECKSUM)
            if not checksum:
                payload, _ = call_with_retry(
                    lambda key=key: self.archive_client.get(key),
                    operation=f"checksum {key}",
                    policy=self.retry_policy,
                    sleep=self._sleep,
                )
                checksum = _sha256(payload)
            self.metadata_store.record_wal_segment(
                WalSegment(
                    cluster_name=self.cluster_name,
                    timeline=timeline,
                    sequence=sequence,
                    checksum_sha256=checksum,
                    size_bytes=int(metadata.get(METADATA_SIZE, "0") or 0),
                    archived=True,
                    archived_at=datetime.fromisoformat(archived_at),
                )
            )
        return self.coverage()

    def check_connectivity(self) -> bool:
        try:
            self.archive_client.list(self._key(""))
        except Exception as error:  # pylint: disable=broad-except
            logger.warning("archive connectivity check for %s failed: %s", self.cluster_name, error)
            return False
        return True

    def segment_key(self, sequence: int) -> str:
        return self._key(wal_file_name(self.timeline, sequence))

    def _key(self, file_name: str) -> str:
        # Barman layout: <prefix>/<cluster>/wals/<timeline+log id>/<file>
        parts = [self.prefix] if self.prefix else []
        parts.extend([self.cluster_name, "wals"])
        if file_name:
            if _WAL_SEGMENT_PATTERN.match(file_name[:24]):
                parts.append(file_name[:16])
            parts.append(file_name)
            return "/".join(parts)
        return "/".join(parts) + "/"

    def _drain_pending(self) -> dict[int, WalSegment]:
        archived: dict[int, WalSegment] = {}
        for sequence in sorted(self._pending):
            coverage = self.coverage()
            if coverage is not None and sequence != coverage.latest_sequence + 1:
                if sequence <= coverage.latest_sequence:
                    if sequence < coverage.earliest_sequence:
                        logger.warning(
                            "dropping %s: it precedes the start of the archive for %s",
                            wal_file_name(self.timeline, sequence),
                            self.cluster_name,
                        )
                    self._pending.pop(sequence)
                    continue
                self._mark_degraded(
                    f"segment {wal_file_name(self.timeline, sequence)} is held until "
                    f"{wal_file_name(self.timeline, coverage.latest_sequence + 1)} is archived"
                )
                break

            payload = self._pending[sequence]
            try:
                segment = self._upload(sequence, payload)
            except RetriesExhaustedError as error:
                self._mark_degraded(str(error))
                break
            except Exception as error:  # pylint: disable=broad-except
                self._mark_degraded(f"segment {wal_file_name(self.timeline, sequence)} upload failed: {error}")
                break

            self.metadata_store.record_wal_segment(segment)
            self._pending.pop(sequence)
            archived[sequence] = segment

        if not self._pending and self._degraded:
            logger.info("WAL archive for %s recovered", self.cluster_name)
            self._degraded = False
            self._last_error = None
        return archived

    def _upload(self, sequence: int, payload: bytes) -> WalSegment:
        key = self.segment_key(sequence)
        checksum = _sha256(payload)
        archived_at = self._clock()
        metadata = {
            METADATA_CHECKSUM: checksum,
            METADATA_ARCHIVED_AT: archived_at.isoformat(),
            METADATA_SIZE: str(len(payload)),
        }
        call_with_retry(
            lambda: self.archive_client.put(key, payload, metadata),
            operation=f"archive WAL segment {key}",
            policy=self.retry_policy,
            sleep=self._sleep,
        )
        logger.debug("archived %s (%d bytes)", key, len(payload))
        return WalSegment(
            cluster_name=self.cluster_name,
            timeline=self.timeline,
            sequence=sequence,
            checksum_sha256=checksum,
            size_bytes=len(payload),
            archived=True,
            archived_at=archived_at,
        )

    def _mark_degraded(self, reason: str) -> None:
        if not self._degraded or self._last_error != reason:
            logger.warning("WAL archive for %s is degraded: %s", self.cluster_name, reason)
        self._degraded = True
        self._last_error = reason


def contiguous_coverage(segments: list[WalSegment]) -> WalCoverage | None:
    ordered = sorted((segment for segment in segments if segment.archived), key=lambda item: item.sequence)
    if not ordered:
        return None

    first = ordered[0]
    last = first
    for segment in ordered[1:]:
        if segment.sequence != last.sequence + 1:
            break
        last = segment

    return WalCoverage(
        cluster_name=first.cluster_name,
        timeline=first.timeline,
        earliest_sequence=first.sequence,
        latest_sequence=last.sequence,
        earliest_timestamp=first.archived_at,
        latest_timestamp=max(segment.archived_at for segment in ordered if segment.sequence <= last.sequence),
    )


def wal_file_name(timeline: int, sequence: int) -> str:
    log_id, segment_id = divmod(sequence, WAL_SEGMENTS_PER_LOG_ID)
    return f"{timeline:08X}{log_id:08X}{segment_id:08X}"


def parse_wal_file_name(file_name: str) -> tuple[int, int] | None:
    match = _WAL_SEGMENT_PATTERN.match(file_name)
    if match is None:
        return None
    timeline, log_id, segment_id = (int(group, 16) for group in match.groups())
    if segment_id >= WAL_SEGMENTS_PER_LOG_ID:
        return None
    return timeline, log_id * WAL_SEGMENTS_PER_LOG_ID + segment_id


def is_auxiliary_file(file_name: str) -> bool:
    return bool(_AUXILIARY_PATTERN.match(file_name))


def _is_missing_key(error: ClientError) -> bool:
    code = str(error.response.get("Error", {}).get("Code", ""))
    return code in {"NoSuchKey", "404", "NotFound"}


def _sha256(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()
