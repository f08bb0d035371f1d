from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .types import DataKind


class ClientConfig(BaseModel):
    base_url: str = "https://fapi.binance.com"
    archive_base_url: str = "https://data.binance.vision/data/futures/um"
    connect_timeout_s: float = 10.0
    read_timeout_s: float = 30.0
    archive_read_timeout_s: float = 120.0
    max_retries: int = Field(default=5, ge=1)


class KindTuning(BaseModel):
    """Per-kind overrides. Unset fields keep the built-in policy value."""

    page_limit: Optional[int] = Field(default=None, ge=1)
    staleness_ms: Optional[int] = Field(default=None, ge=0)
    tail_tolerance_ms: Optional[int] = Field(default=None, ge=0)
    min_fill_ratio: Optional[float] = Field(default=None, gt=0.0, le=1.0)
    bulk_threshold_calls: Optional[int] = Field(default=None, ge=0)
    gap_tolerance_ms: Optional[int] = Field(default=None, ge=0)
    max_lookback_ms: Optional[int] = Field(default=None, ge=0)


class SchedulerConfig(BaseModel):
    rate_limit_delay_s: float = Field(default=0.5, ge=0.0)
    pause_poll_s: float = Field(default=0.1, gt=0.0)
    join_timeout_s: float = Field(default=1.0, gt=0.0)


class PagesConfig(BaseModel):
    fetch_workers: int = Field(default=2, ge=1)
    sync_check_interval_s: float = Field(default=5.0, gt=0.0)
    min_resync_interval_s: float = Field(default=30.0, ge=0.0)


class DownloadLogConfig(BaseModel):
    max_events: int = Field(default=10_000, ge=1)
    max_events_per_page: int = Field(default=500, ge=1)


class MarketCacheConfig(BaseModel):
    data_dir: str = "data/market"
    client: ClientConfig = Field(default_factory=ClientConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    pages: PagesConfig = Field(default_factory=PagesConfig)
    download_log: DownloadLogConfig = Field(default_factory=DownloadLogConfig)
    kinds: Dict[DataKind, KindTuning] = Field(default_factory=dict)

    @field_validator("data_dir")
    @classmethod
    def _validate_data_dir(cls, v: str) -> str:
        v2 = str(v).strip()
        if not v2:
            raise ValueError("data_dir must be non-empty")
        return v2

    def tuning_for(self, kind: DataKind) -> KindTuning:
        return self.kinds.get(kind) or KindTuning()

    @property
    def coverage_db_path(self) -> Path:
        return Path(self.data_dir) / "coverage.sqlite"


def _maybe_load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text())
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML structure in {path}")
    return data


def load_marketcache_config(path: Path = Path("config/marketcache.yaml")) -> MarketCacheConfig:
    raw = _maybe_load_yaml(path)
    return MarketCacheConfig.model_validate(raw) if raw else MarketCacheConfig()
