# marketcache/preload/tests/test_scheduler.py

from __future__ import annotations

import asyncio
import time

import pytest

from marketcache.common.errors import NetworkError
from marketcache.common.ranges import TimeRange
from marketcache.common.types import DataKind
from marketcache.preload.scheduler import PreloadRequest, PreloadScheduler, Priority

DAY = 86_400_000
JAN_1 = 1_704_067_200_000
FEB_1 = 1_706_745_600_000
MAR_1 = 1_709_251_200_000


def _wait_for(pred, timeout_s: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(0.01)
    return pred()


def _scheduler(stores) -> PreloadScheduler:
    return PreloadScheduler(stores, rate_limit_delay_s=0.0, pause_poll_s=0.01, join_timeout_s=2.0, clock=lambda: MAR_1)


def test_duplicate_requests_are_dropped(make_store, fake_client_cls):
    store = make_store(DataKind.CANDLES, fake_client_cls())
    sched = _scheduler({DataKind.CANDLES: store})

    assert sched.queue_candles("btc/usdt", "1h", JAN_1, FEB_1)
    assert not sched.queue_candles("BTCUSDT", "1h", JAN_1, FEB_1)
    assert sched.queue_candles("BTCUSDT", "4h", JAN_1, FEB_1)
    assert not sched.queue_candles("BTCUSDT", "1h", FEB_1, FEB_1)
    assert sched.queue_size() == 2

    with pytest.raises(KeyError):
        sched.queue_funding("BTCUSDT", JAN_1, FEB_1)

    sched.clear_queue()
    assert sched.queue_size() == 0
    assert sched.pending_requests() == []


def test_pending_requests_in_priority_order(make_store, fake_client_cls):
    store = make_store(DataKind.CANDLES, fake_client_cls())
    sched = _scheduler({DataKind.CANDLES: store})

    sched.queue_candles("BTCUSDT", "1h", JAN_1, FEB_1, Priority.LOW)
    sched.queue_candles("BTCUSDT", "4h", JAN_1, FEB_1, Priority.HIGH)
    sched.queue_candles("BTCUSDT", "1d", JAN_1, FEB_1, Priority.MEDIUM)
    sched.queue_candles("BTCUSDT", "15m", JAN_1, FEB_1, Priority.HIGH)

    order = [(r.priority, r.subtype) for r in sched.pending_requests()]
    assert [p for p, _ in order] == [Priority.HIGH, Priority.HIGH, Priority.MEDIUM, Priority.LOW]
    assert order[-1] == (Priority.LOW, "1h")


def test_process_fills_gaps_once(make_store, fake_client_cls):
    client = fake_client_cls()
    store = make_store(DataKind.CANDLES, client)
    sched = _scheduler({DataKind.CANDLES: store})
    req = PreloadRequest(DataKind.CANDLES, "BTCUSDT", "1h", JAN_1, FEB_1)

    assert asyncio.run(sched.process(req)) == 31 * 24
    assert store.coverage_gaps("BTCUSDT", JAN_1, FEB_1, subtype="1h") == []

    calls = len(client.calls)
    assert asyncio.run(sched.process(req)) == 0
    assert len(client.calls) == calls


def test_open_interest_requests_are_clamped_to_lookback(make_store, fake_client_cls):
    client = fake_client_cls()
    store = make_store(DataKind.OPEN_INTEREST, client)
    sched = _scheduler({DataKind.OPEN_INTEREST: store})

    asyncio.run(sched.process(PreloadRequest(DataKind.OPEN_INTEREST, "BTCUSDT", None, JAN_1, MAR_1)))

    assert client.calls
    assert min(start for _, _, start, _ in client.calls) >= MAR_1 - 30 * DAY


def test_priority_load_interrupts_and_requeues(make_store, fake_client_cls):
    client = fake_client_cls()
    store = make_store(DataKind.AGG_TRADES, client)
    sched = _scheduler({DataKind.AGG_TRADES: store})
    client.on_fetch = lambda n: sched.pause_for_priority_load() if n == 1 else None

    req = PreloadRequest(DataKind.AGG_TRADES, "BTCUSDT", None, JAN_1, JAN_1 + DAY, Priority.MEDIUM)
    loaded = asyncio.run(sched.process(req))

    # one hourly page got through before the pause took effect
    assert loaded == 60
    assert sched.is_paused()
    [rest] = sched.pending_requests()
    assert (rest.start_ms, rest.end_ms, rest.priority) == (JAN_1, JAN_1 + DAY, Priority.MEDIUM)

    client.on_fetch = None
    sched.resume_after_priority_load()
    assert not sched.is_paused()
    assert asyncio.run(sched.process(rest)) == 24 * 60
    assert store.coverage_gaps("BTCUSDT", JAN_1, JAN_1 + DAY) == []


def test_worker_issues_no_fetch_while_paused(make_store, fake_client_cls):
    client = fake_client_cls()
    store = make_store(DataKind.CANDLES, client)
    sched = _scheduler({DataKind.CANDLES: store})

    with sched.priority_load():
        sched.start()
        sched.queue_candles("BTCUSDT", "1h", JAN_1, FEB_1)
        time.sleep(0.2)
        assert client.calls == []
        assert sched.queue_size() == 1

    try:
        assert _wait_for(lambda: store.coverage_gaps("BTCUSDT", JAN_1, FEB_1, subtype="1h") == [])
        assert sched.queue_size() == 0
    finally:
        sched.shutdown()
    assert not sched.is_running


def test_worker_survives_failed_request(make_store, fake_client_cls):
    bad = fake_client_cls(fail_with=NetworkError("upstream down"))
    good = fake_client_cls()
    funding = make_store(DataKind.FUNDING, bad)
    candles = make_store(DataKind.CANDLES, good)
    sched = _scheduler({DataKind.FUNDING: funding, DataKind.CANDLES: candles})

    sched.queue_funding("BTCUSDT", JAN_1, FEB_1, Priority.HIGH)
    sched.queue_candles("BTCUSDT", "1h", JAN_1, FEB_1, Priority.LOW)
    sched.start()
    try:
        assert _wait_for(lambda: candles.coverage_gaps("BTCUSDT", JAN_1, FEB_1, subtype="1h") == [])
    finally:
        sched.shutdown()

    assert bad.calls
    assert funding.coverage_gaps("BTCUSDT", JAN_1, FEB_1) == [TimeRange(JAN_1, FEB_1)]
