from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)) or str(default))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)) or str(default))


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    return raw in {"1", "true", "yes", "on"}


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


@dataclass(frozen=True)
class IncidentPolicy:
    window_min: int = field(default_factory=lambda: _env_int("LEADFLOW_INCIDENT_WINDOW_MIN", 15))
    l1: int = field(default_factory=lambda: _env_int("LEADFLOW_INCIDENT_L1", 3))
    l2: int = field(default_factory=lambda: _env_int("LEADFLOW_INCIDENT_L2", 5))
    l3: int = field(default_factory=lambda: _env_int("LEADFLOW_INCIDENT_L3", 8))


@dataclass(frozen=True)
class IngestionPolicy:
    max_row_errors: int = field(default_factory=lambda: _env_int("LEADFLOW_MAX_ROW_ERRORS", 100))
    hash_emails: bool = field(default_factory=lambda: _env_flag("LEADFLOW_HASH_EMAILS", True))
    default_country_code: str = field(default_factory=lambda: _env_str("LEADFLOW_DEFAULT_COUNTRY_CODE", "1") or "1")


@dataclass(frozen=True)
class BatchSourceConfig:
    host: str = field(default_factory=lambda: _env_str("LEADFLOW_SFTP_HOST"))
    port: int = field(default_factory=lambda: _env_int("LEADFLOW_SFTP_PORT", 22))
    user: str = field(default_factory=lambda: _env_str("LEADFLOW_SFTP_USER"))
    password: str = field(default_factory=lambda: _env_str("LEADFLOW_SFTP_PASSWORD"))
    remote_dir: str = field(default_factory=lambda: _env_str("LEADFLOW_SFTP_REMOTE_DIR", "/inbound") or "/inbound")
    local_dir: str = field(default_factory=lambda: _env_str("LEADFLOW_BATCH_DIR"))
    file_pattern: str = field(default_factory=lambda: _env_str("LEADFLOW_BATCH_FILE_PATTERN", "*.csv") or "*.csv")
    poll_interval_min: int = field(default_factory=lambda: _env_int("LEADFLOW_POLL_INTERVAL_MINUTES", 15))
    timeout_seconds: float = field(default_factory=lambda: _env_float("LEADFLOW_SFTP_TIMEOUT_SECONDS", 20.0))

    @property
    def sftp_configured(self) -> bool:
        return bool(self.host and self.user)

    @property
    def configured(self) -> bool:
        return self.sftp_configured or bool(self.local_dir)


@dataclass(frozen=True)
class DispatchPolicy:
    interval_seconds: int = field(default_factory=lambda: _env_int("LEADFLOW_DISPATCH_INTERVAL_SECONDS", 60))
    max_attempts: int = field(default_factory=lambda: _env_int("LEADFLOW_MAX_SEND_ATTEMPTS", 5))
    retry_base_seconds: int = field(default_factory=lambda: _env_int("LEADFLOW_RETRY_BASE_SECONDS", 60))
    retry_max_seconds: int = field(default_factory=lambda: _env_int("LEADFLOW_RETRY_MAX_SECONDS", 6 * 3600))
    send_timeout_seconds: float = field(default_factory=lambda: _env_float("LEADFLOW_SEND_TIMEOUT_SECONDS", 25.0))
    batch_limit: int = field(default_factory=lambda: _env_int("LEADFLOW_DISPATCH_BATCH_LIMIT", 500))


@dataclass(frozen=True)
class CachePolicy:
    ttl_seconds: float = field(default_factory=lambda: _env_float("LEADFLOW_CACHE_TTL_SECONDS", 60.0))
    max_entries: int = field(default_factory=lambda: _env_int("LEADFLOW_CACHE_MAX_ENTRIES", 1000))
    sweep_seconds: float = field(default_factory=lambda: _env_float("LEADFLOW_CACHE_SWEEP_SECONDS", 1.0))


@dataclass(frozen=True)
class AbandonmentPolicy:
    threshold_minutes: int = field(default_factory=lambda: _env_int("LEADFLOW_ABANDONMENT_MINUTES", 30))
    sequence_name: str = field(default_factory=lambda: _env_str("LEADFLOW_ABANDONMENT_SEQUENCE"))


@dataclass(frozen=True)
class AppConfig:
    log_dir: Path = field(default_factory=lambda: Path(os.getenv("LEADFLOW_LOG_DIR", "./logs")))
    state_db: Path = field(default_factory=lambda: Path(os.getenv("LEADFLOW_STATE_DB", "./state/leadflow.db")))
    encryption_key: str = field(default_factory=lambda: _env_str("LEADFLOW_ENCRYPTION_KEY"))
    templates_file: str = field(default_factory=lambda: _env_str("LEADFLOW_TEMPLATES_FILE"))
    incident: IncidentPolicy = field(default_factory=IncidentPolicy)
    ingestion: IngestionPolicy = field(default_factory=IngestionPolicy)
    batch_source: BatchSourceConfig = field(default_factory=BatchSourceConfig)
    dispatch: DispatchPolicy = field(default_factory=DispatchPolicy)
    cache: CachePolicy = field(default_factory=CachePolicy)
    abandonment: AbandonmentPolicy = field(default_factory=AbandonmentPolicy)


def get_config() -> AppConfig:
    cfg = AppConfig()
    cfg.log_dir.mkdir(parents=True, exist_ok=True)
    cfg.state_db.parent.mkdir(parents=True, exist_ok=True)
    (cfg.log_dir / "incidents").mkdir(parents=True, exist_ok=True)
    return cfg
