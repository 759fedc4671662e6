"""Runtime configuration loaded from YAML with environment overrides."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field
from smartimport_schemas import FrozenModel

CONFIG_ENV = "SMARTIMPORT_CONFIG"
DEFAULT_CONFIG_PATH = Path("config.yaml")


class StorageSettings(FrozenModel):
    data_root: Path = Path("data")
    database_name: str = "smartimport.db"
    ledger_name: str = "ledger.db"
    busy_timeout_seconds: float = Field(default=5.0, gt=0)
    # Counter increments give up quickly; a lost increment is acceptable.
    counter_timeout_seconds: float = Field(default=0.25, gt=0)


class DuplicateSettings(FrozenModel):
    window_days: int = Field(default=5, ge=0)
    amount_tolerance: float = Field(default=0.01, ge=0.0)
    similarity_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)


class LearningSettings(FrozenModel):
    alpha: float = Field(default=0.2, gt=0.0, le=1.0)
    user_rule_priority: int = 1
    user_rule_confidence: float = Field(default=0.9, ge=0.0, le=1.0)
    max_keywords: int = Field(default=3, ge=1)


class HistorySettings(FrozenModel):
    lookback_days: int = Field(default=365, ge=0)
    similarity_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    # Past entries count only when within this fraction of the candidate amount.
    amount_ratio: float = Field(default=0.5, gt=0.0)
    base_confidence: float = Field(default=0.3, ge=0.0, le=1.0)
    confidence_per_match: float = Field(default=0.1, ge=0.0, le=1.0)
    max_confidence: float = Field(default=0.8, ge=0.0, le=1.0)


class OracleSettings(FrozenModel):
    url: Optional[str] = None
    timeout_seconds: float = Field(default=5.0, gt=0)
    consult_below: float = Field(default=0.9, ge=0.0, le=1.0)
    max_concurrent: int = Field(default=2, ge=1)


class PipelineSettings(FrozenModel):
    max_workers: int = Field(default=4, ge=1)


class Settings(FrozenModel):
    """Top-level configuration for the import pipeline."""

    storage: StorageSettings = Field(default_factory=StorageSettings)
    duplicates: DuplicateSettings = Field(default_factory=DuplicateSettings)
    learning: LearningSettings = Field(default_factory=LearningSettings)
    history: HistorySettings = Field(default_factory=HistorySettings)
    oracle: OracleSettings = Field(default_factory=OracleSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    log_level: str = "INFO"


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    data_root = os.environ.get("SMARTIMPORT_DATA_ROOT")
    if data_root:
        data.setdefault("storage", {})["data_root"] = data_root
    oracle_url = os.environ.get("SMARTIMPORT_ORACLE_URL")
    if oracle_url:
        data.setdefault("oracle", {})["url"] = oracle_url
    oracle_timeout = os.environ.get("SMARTIMPORT_ORACLE_TIMEOUT")
    if oracle_timeout:
        data.setdefault("oracle", {})["timeout_seconds"] = float(oracle_timeout)
    log_level = os.environ.get("SMARTIMPORT_LOG_LEVEL")
    if log_level:
        data["log_level"] = log_level.upper()
    return data


def load_settings(path: Path | None = None) -> Settings:
    """Load settings from YAML; a missing file yields the defaults.

    Environment variables override file values:
    - SMARTIMPORT_CONFIG (config file path, used when ``path`` is not given)
    - SMARTIMPORT_DATA_ROOT
    - SMARTIMPORT_ORACLE_URL
    - SMARTIMPORT_ORACLE_TIMEOUT
    - SMARTIMPORT_LOG_LEVEL
    """
    if path is None:
        path = Path(os.environ.get(CONFIG_ENV, DEFAULT_CONFIG_PATH))
    data: dict[str, Any] = {}
    if path.exists():
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return Settings.model_validate(_apply_env_overrides(data))


__all__ = [
    "DuplicateSettings",
    "HistorySettings",
    "LearningSettings",
    "OracleSettings",
    "PipelineSettings",
    "Settings",
    "StorageSettings",
    "load_settings",
]
