from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping
import logging
import os
import sys

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class ConfigError(ValueError):
    """Raised when an NPP_* environment variable cannot be parsed."""


@dataclass(frozen=True)
class AppConfig:
    metadata_db_path: Path = Path("./data/recovery.db")
    archive_bucket: str = ""
    archive_prefix: str = ""
    archive_endpoint_url: str | None = None
    archive_region: str | None = None
    archive_access_key: str | None = None
    archive_secret_key: str | None = None
    archive_use_ssl: bool = True
    archive_credentials_secret: str = "backup-storage-creds"
    snapshot_timeout_seconds: int = 600
    snapshot_poll_interval_seconds: float = 5.0
    replica_attach_timeout_seconds: int = 300
    reconcile_interval_seconds: float = 10.0
    retry_max_attempts: int = 5
    retry_initial_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    postgres_image: str = "ghcr.io/cloudnative-pg/postgresql:16"
    storage_class: str | None = None
    kubeconfig_path: str | None = None
    context: str | None = None
    in_cluster: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> AppConfig:
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            metadata_db_path=Path(env.get("NPP_METADATA_DB_PATH", str(defaults.metadata_db_path))),
            archive_bucket=env.get("NPP_ARCHIVE_BUCKET", defaults.archive_bucket).strip(),
            archive_prefix=env.get("NPP_ARCHIVE_PREFIX", defaults.archive_prefix).strip().strip("/"),
            archive_endpoint_url=_optional(env, "NPP_ARCHIVE_ENDPOINT_URL"),
            archive_region=_optional(env, "NPP_ARCHIVE_REGION"),
            archive_access_key=_optional(env, "NPP_ARCHIVE_ACCESS_KEY"),
            archive_secret_key=_optional(env, "NPP_ARCHIVE_SECRET_KEY"),
            archive_use_ssl=_bool(env, "NPP_ARCHIVE_USE_SSL", defaults.archive_use_ssl),
            archive_credentials_secret=env.get(
                "NPP_ARCHIVE_CREDENTIALS_SECRET", defaults.archive_credentials_secret
            ).strip(),
            snapshot_timeout_seconds=_int(env, "NPP_SNAPSHOT_TIMEOUT_SECONDS", defaults.snapshot_timeout_seconds),
            snapshot_poll_interval_seconds=_float(
                env, "NPP_SNAPSHOT_POLL_INTERVAL_SECONDS", defaults.snapshot_poll_interval_seconds
            ),
            replica_attach_timeout_seconds=_int(
                env, "NPP_REPLICA_ATTACH_TIMEOUT_SECONDS", defaults.replica_attach_timeout_seconds
            ),
            reconcile_interval_seconds=_float(
                env, "NPP_RECONCILE_INTERVAL_SECONDS", defaults.reconcile_interval_seconds
            ),
            retry_max_attempts=_int(env, "NPP_RETRY_MAX_ATTEMPTS", defaults.retry_max_attempts),
            retry_initial_delay_seconds=_float(
                env, "NPP_RETRY_INITIAL_DELAY_SECONDS", defaults.retry_initial_delay_seconds
            ),
            retry_max_delay_seconds=_float(env, "NPP_RETRY_MAX_DELAY_SECONDS", defaults.retry_max_delay_seconds),
            postgres_image=env.get("NPP_POSTGRES_IMAGE", defaults.postgres_image).strip(),
            storage_class=_optional(env, "NPP_STORAGE_CLASS"),
            kubeconfig_path=_optional(env, "NPP_KUBECONFIG"),
            context=_optional(env, "NPP_CONTEXT"),
            in_cluster=_bool(env, "NPP_IN_CLUSTER", defaults.in_cluster),
            log_level=env.get("NPP_LOG_LEVEL", defaults.log_level).strip().upper() or defaults.log_level,
        )


def ensure_directories(config: AppConfig) -> None:
    config.metadata_db_path.parent.mkdir(parents=True, exist_ok=True)


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if not any(getattr(handler, "_npp_handler", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._npp_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(level.upper())


def _optional(env: Mapping[str, str], key: str) -> str | None:
    value = env.get(key, "").strip()
    return value or None


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as error:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from error
    if value <= 0:
        raise ConfigError(f"{key} must be positive, got {value}")
    return value


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as error:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from error
    if value < 0:
        raise ConfigError(f"{key} must not be negative, got {value}")
    return value


def _bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key, "").strip().lower()
    if not raw:
        return default
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    raise ConfigError(f"{key} must be a boolean flag, got {raw!r}")
