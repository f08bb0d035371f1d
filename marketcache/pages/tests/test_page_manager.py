# marketcache/pages/tests/test_page_manager.py

from __future__ import annotations

import asyncio
import threading
import time

from marketcache.common.download_log import DownloadEventType, DownloadLog
from marketcache.common.errors import NetworkError
from marketcache.common.types import DataKind
from marketcache.pages.manager import DataPageManager
from marketcache.pages.page import PageState

HOUR = 3_600_000
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


class Clock:
    def __init__(self, now_ms: int):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


class RecordingListener:
    def __init__(self):
        self._lock = threading.Lock()
        self.transitions: list[tuple[PageState, PageState]] = []
        self.data_changes = 0

    def on_state_changed(self, page, old, new):
        with self._lock:
            self.transitions.append((old, new))

    def on_data_changed(self, page):
        with self._lock:
            self.data_changes += 1


def _manager(stores, clock=None, log=None) -> DataPageManager:
    return DataPageManager(
        stores,
        fetch_workers=2,
        sync_check_interval_s=60.0,
        min_resync_interval_s=30.0,
        clock=clock or Clock(MAR_1),
        download_log=log,
    )


def test_page_is_shared_and_ref_counted(make_store, fake_client_cls):
    store = make_store(DataKind.CANDLES, fake_client_cls())
    mgr = _manager({DataKind.CANDLES: store})
    try:
        a = mgr.checkout(DataKind.CANDLES, "BTCUSDT", "1h", JAN_1, JAN_1 + DAY, consumer="chart")
        b = mgr.checkout(DataKind.CANDLES, "btc/usdt", "1h", JAN_1, JAN_1 + DAY, consumer="strategy")

        assert a is b
        assert a.ref_count == 2
        [info] = mgr.active_pages()
        assert info.consumers == ("chart", "strategy")

        mgr.release(a, consumer="chart")
        assert mgr.active_page_count() == 1
        assert not a.cancel.is_set()

        mgr.release(b, consumer="strategy")
        assert mgr.active_page_count() == 0
        assert mgr.peek(DataKind.CANDLES, "BTCUSDT", "1h", JAN_1, JAN_1 + DAY) is None
        assert a.cancel.is_set()

        # releasing a dead page is a no-op
        mgr.release(a)
        assert mgr.active_page_count() == 0
    finally:
        mgr.shutdown()


def test_empty_cache_loads_in_background(make_store, fake_client_cls):
    store = make_store(DataKind.CANDLES, fake_client_cls())
    log = DownloadLog()
    mgr = _manager({DataKind.CANDLES: store}, log=log)
    listener = RecordingListener()
    try:
        page = mgr.checkout(DataKind.CANDLES, "BTCUSDT", "1h", JAN_1, JAN_1 + DAY, listener=listener)

        assert _wait_for(lambda: page.is_ready)
        assert page.record_count == 24
        assert page.last_sync_ms == MAR_1
        assert listener.transitions == [
            (PageState.EMPTY, PageState.LOADING),
            (PageState.LOADING, PageState.READY),
        ]
        assert listener.data_changes == 1

        def kinds():
            return [e.event_type for e in log.page_log(page.key.label)]

        assert _wait_for(lambda: DownloadEventType.LOAD_COMPLETED in kinds())
        assert DownloadEventType.LOAD_STARTED in kinds()
        assert DownloadEventType.PAGE_CREATED in kinds()
    finally:
        mgr.shutdown()


def test_cached_page_is_ready_immediately_then_updates(make_store, fake_client_cls):
    client = fake_client_cls()
    store = make_store(DataKind.CANDLES, client)
    asyncio.run(store.get_range("BTCUSDT", JAN_1, JAN_1 + DAY, subtype="1h"))

    mgr = _manager({DataKind.CANDLES: store})
    listener = RecordingListener()
    try:
        page = mgr.checkout(DataKind.CANDLES, "BTCUSDT", "1h", JAN_1, JAN_1 + DAY, listener=listener)

        # records come from the cache before the background sync has run
        assert page.record_count == 24
        assert _wait_for(lambda: (PageState.UPDATING, PageState.READY) in listener.transitions)
        assert listener.transitions[0] == (PageState.EMPTY, PageState.READY)
        assert len(client.calls) == 1
    finally:
        mgr.shutdown()


def test_resync_waits_for_interval(make_store, fake_client_cls):
    store = make_store(DataKind.CANDLES, fake_client_cls())
    clock = Clock(MAR_1)
    log = DownloadLog()
    mgr = _manager({DataKind.CANDLES: store}, clock=clock, log=log)

    def _started(page):
        return sum(
            1
            for e in log.page_log(page.key.label)
            if e.event_type in (DownloadEventType.LOAD_STARTED, DownloadEventType.UPDATE_STARTED)
        )

    try:
        page = mgr.checkout(DataKind.CANDLES, "BTCUSDT", "1h", JAN_1, JAN_1 + DAY)
        assert _wait_for(lambda: page.is_ready)
        assert _started(page) == 1

        clock.now_ms += 10_000
        mgr.checkout(DataKind.CANDLES, "BTCUSDT", "1h", JAN_1, JAN_1 + DAY)
        assert _started(page) == 1

        clock.now_ms += 30_000
        mgr.checkout(DataKind.CANDLES, "BTCUSDT", "1h", JAN_1, JAN_1 + DAY)
        assert _started(page) == 2
        assert _wait_for(lambda: page.is_ready)

        assert mgr.refresh(page)
        assert _started(page) == 3
        assert _wait_for(lambda: page.is_ready)
    finally:
        mgr.shutdown()


def test_failed_sync_sets_error_and_retries_on_checkout(make_store, fake_client_cls):
    client = fake_client_cls(fail_with=NetworkError("upstream down"))
    store = make_store(DataKind.CANDLES, client)
    mgr = _manager({DataKind.CANDLES: store})
    listener = RecordingListener()

    def errors() -> int:
        return sum(1 for _, new in listener.transitions if new is PageState.ERROR)

    try:
        page = mgr.checkout(DataKind.CANDLES, "BTCUSDT", "1h", JAN_1, JAN_1 + DAY, listener=listener)
        assert _wait_for(lambda: errors() == 1)
        assert page.state is PageState.ERROR
        assert page.error == "upstream down"
        assert not page.has_data

        # ERROR pages are retried on the next checkout even inside the resync interval
        mgr.checkout(DataKind.CANDLES, "BTCUSDT", "1h", JAN_1, JAN_1 + DAY)
        assert _wait_for(lambda: errors() == 2)
        assert len(client.calls) == 2
    finally:
        mgr.shutdown()


def test_listener_errors_do_not_break_updates(make_store, fake_client_cls):
    store = make_store(DataKind.CANDLES, fake_client_cls())
    mgr = _manager({DataKind.CANDLES: store})

    class Broken:
        def on_state_changed(self, page, old, new):
            raise RuntimeError("ui bug")

        def on_data_changed(self, page):
            raise RuntimeError("ui bug")

    try:
        page = mgr.checkout(DataKind.CANDLES, "BTCUSDT", "1h", JAN_1, JAN_1 + DAY, listener=Broken())
        assert _wait_for(lambda: page.is_ready)
        assert page.record_count == 24
    finally:
        mgr.shutdown()
