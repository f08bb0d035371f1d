# marketcache/common/tests/test_config_and_log.py

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from marketcache.common.config import KindTuning, MarketCacheConfig, load_marketcache_config
from marketcache.common.download_log import DownloadEventType, DownloadLog
from marketcache.common.types import DataKind, normalize_symbol


def test_missing_config_file_gives_defaults(tmp_path: Path):
    cfg = load_marketcache_config(tmp_path / "nope.yaml")
    assert cfg.data_dir == "data/market"
    assert cfg.scheduler.rate_limit_delay_s == 0.5
    assert cfg.pages.fetch_workers == 2
    assert cfg.tuning_for(DataKind.CANDLES) == KindTuning()


def test_yaml_overrides_and_kind_tuning(tmp_path: Path):
    p = tmp_path / "marketcache.yaml"
    p.write_text(
        "data_dir: /tmp/mc\n"
        "scheduler:\n"
        "  rate_limit_delay_s: 0.0\n"
        "kinds:\n"
        "  candles:\n"
        "    min_fill_ratio: 0.9\n"
        "  aggTrades:\n"
        "    page_limit: 500\n"
    )
    cfg = load_marketcache_config(p)
    assert cfg.data_dir == "/tmp/mc"
    assert cfg.coverage_db_path == Path("/tmp/mc") / "coverage.sqlite"
    assert cfg.scheduler.rate_limit_delay_s == 0.0
    assert cfg.tuning_for(DataKind.CANDLES).min_fill_ratio == 0.9
    assert cfg.tuning_for(DataKind.AGG_TRADES).page_limit == 500
    assert cfg.tuning_for(DataKind.FUNDING).page_limit is None


def test_invalid_config_rejected(tmp_path: Path):
    with pytest.raises(ValidationError):
        MarketCacheConfig.model_validate({"data_dir": "  "})
    with pytest.raises(ValidationError):
        MarketCacheConfig.model_validate({"kinds": {"candles": {"min_fill_ratio": 1.5}}})

    p = tmp_path / "bad.yaml"
    p.write_text("- just\n- a list\n")
    with pytest.raises(ValueError):
        load_marketcache_config(p)


def test_normalize_symbol():
    assert normalize_symbol("btc/usdt") == "BTCUSDT"
    assert normalize_symbol(" eth-usdt ") == "ETHUSDT"


def test_download_log_is_bounded_and_newest_first():
    log = DownloadLog(max_events=3, max_events_per_page=2)
    for i in range(5):
        log.log("candles:BTCUSDT", "candles", DownloadEventType.FETCH, f"page {i}")

    assert [e.message for e in log.global_log()] == ["page 4", "page 3", "page 2"]
    assert [e.message for e in log.page_log("candles:BTCUSDT")] == ["page 4", "page 3"]
    assert log.global_log(limit=1)[0].message == "page 4"
    assert log.page_log("unknown") == []


def test_download_log_helpers_and_listeners():
    log = DownloadLog()
    seen = []

    def _boom(ev):
        raise RuntimeError("listener bug")

    log.add_listener(_boom)
    log.add_listener(seen.append)

    log.log_load_completed("p", "candles", 24, 15)
    log.log_error("p", "candles", "timeout")

    assert [e.event_type for e in seen] == [DownloadEventType.LOAD_COMPLETED, DownloadEventType.ERROR]
    assert seen[0].meta["record_count"] == 24
    assert seen[1].message == "Error: timeout"
    assert log.error_count() == 1
    assert len(log.events_since(seen[0].ts_ms)) == 2

    log.remove_listener(seen.append)
    log.log_update_completed("p", "candles", 30, 5)
    assert len(seen) == 2

    log.clear()
    assert log.global_log() == []
    assert log.page_log("p") == []
