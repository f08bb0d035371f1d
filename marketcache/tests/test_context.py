# marketcache/tests/test_context.py

from __future__ import annotations

import asyncio
import time

from marketcache.common.config import KindTuning, MarketCacheConfig
from marketcache.common.download_log import DownloadEventType
from marketcache.common.types import DataKind
from marketcache.context import MarketDataContext
from marketcache.requirements.tracker import DataRequirement, Tier

DAY = 86_400_000
JAN_1 = 1_704_067_200_000
MAR_1 = 1_709_251_200_000


def _wait_for(pred, timeout_s: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(0.01)
    return pred()


def test_context_wires_components(tmp_path, fake_client_cls):
    cfg = MarketCacheConfig.model_validate(
        {
            "data_dir": str(tmp_path / "market"),
            "scheduler": {"rate_limit_delay_s": 0.0, "pause_poll_s": 0.01},
            "kinds": {"funding": {"page_limit": 10}},
        }
    )
    client = fake_client_cls()

    with MarketDataContext.from_config(cfg, client=client, clock=lambda: MAR_1) as ctx:
        assert set(ctx.stores) == set(DataKind)
        assert ctx.store(DataKind.FUNDING).policy.page_limit == 10
        assert ctx.store(DataKind.CANDLES).policy.page_limit == 1500
        assert cfg.tuning_for(DataKind.CANDLES) == KindTuning()
        assert (tmp_path / "market" / "coverage.sqlite").exists()

        page = ctx.pages.checkout(DataKind.CANDLES, "BTCUSDT", "1h", JAN_1, JAN_1 + DAY)
        assert _wait_for(lambda: page.is_ready)
        assert page.record_count == 24
        assert any(e.event_type is DownloadEventType.FETCH for e in ctx.download_log.global_log())

        ctx.scheduler.queue_funding("BTCUSDT", JAN_1, JAN_1 + DAY)
        assert _wait_for(lambda: ctx.store(DataKind.FUNDING).coverage_gaps("BTCUSDT", JAN_1, JAN_1 + DAY) == [])

    assert not ctx.scheduler.is_running
    assert ctx.pages.active_page_count() == 0

    # a fresh context over the same directory serves from disk
    ctx2 = MarketDataContext.from_config(cfg, client=client, clock=lambda: MAR_1)
    calls = len(client.calls)
    req = DataRequirement("OHLC:1h", "BTCUSDT", JAN_1, JAN_1 + DAY, Tier.TRADING)
    out = asyncio.run(ctx2.loader.load([req]))
    ctx2.close()

    assert len(out["OHLC:1h"]) == 24
    assert len(client.calls) == calls
    assert ctx2.tracker.is_trading_ready()
