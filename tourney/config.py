"""Shared configuration loader and Pydantic settings.

Supports:
  - YAML file loading with defaults for every missing key
  - LOG_LEVEL / LOG_FORMAT env var overrides for the logger
  - Subsystem configs: storage, ingestion, ledger, ranking, audit,
    retention, observability
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


_PROJECT_ROOT = Path(__file__).resolve().parent.parent


class StorageConfig(BaseModel):
    sqlite_path: str = "data/tourney.db"
    busy_timeout_secs: float = 5.0
    max_retries: int = 3
    retry_backoff_secs: float = 0.1
    backup_dir: str = "data/backups"
    max_backups: int = 10


class IngestionConfig(BaseModel):
    """Event application settings."""
    max_cas_retries: int = 5
    default_actor: str = "broker"
    recompute_on_event: bool = True


class LedgerConfig(BaseModel):
    max_page_size: int = 1000


class RankingConfig(BaseModel):
    default_page_size: int = 50
    max_page_size: int = 500


class AuditConfig(BaseModel):
    default_page_size: int = 100
    max_page_size: int = 1000


class RetentionConfig(BaseModel):
    """Maintenance horizons, in days."""
    performance_days: int = 90
    audit_days: int = 365


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = ""


class EngineConfig(BaseModel):
    storage: StorageConfig = Field(default_factory=StorageConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    ranking: RankingConfig = Field(default_factory=RankingConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def load_config(path: str | Path | None = None) -> EngineConfig:
    """Load config from YAML file, falling back to defaults."""
    if path is None:
        path = _PROJECT_ROOT / "config.yaml"
    path = Path(path)
    if path.exists():
        with open(path) as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        cfg = EngineConfig(**raw)
    else:
        cfg = EngineConfig()

    level = os.environ.get("LOG_LEVEL")
    if level:
        cfg.observability.log_level = level
    fmt = os.environ.get("LOG_FORMAT")
    if fmt:
        cfg.observability.log_format = fmt
    return cfg
