from __future__ import annotations

from typing import Any

import yaml

from .models import BackupRequest, RestoreRequest
from .recovery_target import parse_recovery_target

API_VERSION = "nerdy-pg-pitr/v1"
SUPPORTED_KINDS = ("Backup", "Restore")


class ManifestError(ValueError):
    """Raised when a Backup or Restore document cannot be turned into a request."""


def load_manifest(content: str) -> BackupRequest | RestoreRequest:
    """Parse one YAML document.

    Backup::

        kind: Backup
        metadata: {name: nightly, namespace: db}
        spec: {cluster: source, snapshotClass: csi-hostpath-snapclass}

    Restore::

        kind: Restore
        metadata: {name: restored, namespace: db}
        spec:
          backup: nightly
          recoveryTarget: {targetTime: "2024-05-01T10:15:00"}
          instances: 3
    """
    try:
        document = yaml.safe_load(content)
    except yaml.YAMLError as error:
        raise ManifestError(f"invalid YAML: {error}") from error
    if not isinstance(document, dict):
        raise ManifestError("manifest must be a YAML mapping")

    api_version = document.get("apiVersion")
    if api_version is not None and api_version != API_VERSION:
        raise ManifestError(f"unsupported apiVersion {api_version!r}, expected {API_VERSION}")

    kind = document.get("kind")
    if kind == "Backup":
        return backup_request_from_document(document)
    if kind == "Restore":
        return restore_request_from_document(document)
    raise ManifestError(f"kind must be one of {', '.join(SUPPORTED_KINDS)}, got {kind!r}")


def backup_request_from_document(document: dict[str, Any]) -> BackupRequest:
    metadata = _mapping(document, "metadata")
    spec = _mapping(document, "spec")
    return BackupRequest(
        namespace=_required_string(metadata, "namespace", "metadata"),
        cluster_name=_required_string(spec, "cluster", "spec"),
        snapshot_class=_required_string(spec, "snapshotClass", "spec"),
        name=_optional_string(metadata, "name", "metadata"),
    )


def restore_request_from_document(document: dict[str, Any]) -> RestoreRequest:
    metadata = _mapping(document, "metadata")
    spec = _mapping(document, "spec")
    target_spec = _mapping(spec, "recoveryTarget", parent="spec")

    instances = spec.get("instances", 1)
    if isinstance(instances, bool) or not isinstance(instances, int) or instances < 1:
        raise ManifestError("spec.instances must be a positive integer")

    target_time = target_spec.get("targetTime")
    if target_time is not None and not isinstance(target_time, str):
        # An unquoted timestamp is turned into a datetime by the YAML loader.
        raise ManifestError("spec.recoveryTarget.targetTime must be a quoted string")

    return RestoreRequest(
        namespace=_required_string(metadata, "namespace", "metadata"),
        cluster_name=_required_string(metadata, "name", "metadata"),
        backup_name=_required_string(spec, "backup", "spec"),
        target=parse_recovery_target(
            target_time=target_time,
            restore_point=_optional_string(target_spec, "restorePoint", "spec.recoveryTarget"),
        ),
        replicas=instances - 1,
        require_full_topology=_flag(spec, "requireFullTopology", default=True),
        keep_failed=_flag(spec, "keepFailedForInspection", default=False),
    )


def _mapping(document: dict[str, Any], key: str, *, parent: str | None = None) -> dict[str, Any]:
    value = document.get(key)
    path = f"{parent}.{key}" if parent else key
    if not isinstance(value, dict):
        raise ManifestError(f"{path} must be a mapping")
    return value


def _required_string(section: dict[str, Any], key: str, path: str) -> str:
    value = _optional_string(section, key, path)
    if value is None:
        raise ManifestError(f"{path}.{key} is required")
    return value


def _optional_string(section: dict[str, Any], key: str, path: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ManifestError(f"{path}.{key} must be a string")
    return value.strip() or None


def _flag(section: dict[str, Any], key: str, *, default: bool) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ManifestError(f"spec.{key} must be true or false")
    return value
