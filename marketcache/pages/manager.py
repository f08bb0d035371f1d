from __future__ import annotations

import asyncio
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Mapping, Optional

from loguru import logger

from marketcache.common.datetime_utils import now_ms
from marketcache.common.download_log import DownloadEventType, DownloadLog
from marketcache.common.types import DataKind, normalize_symbol
from marketcache.pages.page import DataPage, PageInfo, PageKey, PageListener, PageSnapshot, PageState
from marketcache.store.records import Record
from marketcache.store.series_store import TimeSeriesStore

_IN_FLIGHT = (PageState.LOADING, PageState.UPDATING)
_UNSET = object()


class DataPageManager:
    """
    Reference-counted pages over the stores.

    checkout() returns immediately with whatever the cache holds and schedules a
    background sync on a small pool. All page state changes and listener callbacks
    go through _apply(), serialized by one re-entrant lock.

    Lock order: _apply_lock, then _registry_lock.
    """

    def __init__(
        self,
        stores: Mapping[DataKind, TimeSeriesStore],
        *,
        fetch_workers: int = 2,
        sync_check_interval_s: float = 5.0,
        min_resync_interval_s: float = 30.0,
        clock: Callable[[], int] = now_ms,
        download_log: Optional[DownloadLog] = None,
    ):
        self.stores = dict(stores)
        self.sync_check_interval_s = sync_check_interval_s
        self.min_resync_interval_ms = int(min_resync_interval_s * 1000)
        self._clock = clock
        self._log = download_log

        self._pages: dict[PageKey, DataPage] = {}
        self._registry_lock = threading.Lock()
        self._apply_lock = threading.RLock()

        self._pool = ThreadPoolExecutor(max_workers=fetch_workers, thread_name_prefix="page-fetch")
        self._stop = threading.Event()
        self._housekeeping: Optional[threading.Thread] = None

    # =========================
    # lifecycle
    # =========================

    def start(self) -> None:
        if self._housekeeping is not None and self._housekeeping.is_alive():
            return
        self._stop.clear()
        self._housekeeping = threading.Thread(target=self._housekeeping_loop, name="page-housekeeping", daemon=True)
        self._housekeeping.start()

    def shutdown(self, timeout_s: float = 5.0) -> None:
        self._stop.set()
        with self._registry_lock:
            pages = list(self._pages.values())
            self._pages.clear()
        for page in pages:
            page.cancel.set()
        if self._housekeeping is not None:
            self._housekeeping.join(timeout_s)
            self._housekeeping = None
        self._pool.shutdown(wait=True, cancel_futures=True)
        logger.info("DataPageManager stopped (released {} pages)", len(pages))

    # =========================
    # checkout / release
    # =========================

    def checkout(
        self,
        kind: DataKind,
        symbol: str,
        timeframe: Optional[str],
        start_ms: int,
        end_ms: int,
        listener: Optional[PageListener] = None,
        consumer: str = "anonymous",
    ) -> DataPage:
        if kind not in self.stores:
            raise KeyError(f"No store registered for kind={kind.value!r}")
        if end_ms <= start_ms:
            raise ValueError(f"empty page range start={start_ms} end={end_ms}")
        key = PageKey(kind=kind, symbol=normalize_symbol(symbol), timeframe=timeframe, start_ms=int(start_ms), end_ms_excl=int(end_ms))

        with self._apply_lock:
            with self._registry_lock:
                page = self._pages.get(key)
                created = page is None
                if page is None:
                    page = DataPage(key)
                    self._pages[key] = page
                page.ref_count += 1
                page.consumers.append(consumer)
                if listener is not None and listener not in page.listeners:
                    page.listeners.append(listener)

            if created:
                self._event(page, DownloadEventType.PAGE_CREATED, f"Page created: {key.symbol}/{key.timeframe or '-'}")
                self._populate_from_cache(page)
            if listener is not None:
                self._event(page, DownloadEventType.LISTENER_ADDED, f"Listener added: {consumer}")

        if page.state is PageState.ERROR or self._needs_sync(page):
            self._submit_sync(page)
        return page

    def release(self, page: DataPage, listener: Optional[PageListener] = None, consumer: Optional[str] = None) -> None:
        with self._apply_lock, self._registry_lock:
            if self._pages.get(page.key) is not page:
                return
            if listener is not None and listener in page.listeners:
                page.listeners.remove(listener)
            if consumer is not None and consumer in page.consumers:
                page.consumers.remove(consumer)
            elif page.consumers:
                page.consumers.pop()
            page.ref_count -= 1
            removed = page.ref_count <= 0
            if removed:
                del self._pages[page.key]
                page.listeners.clear()
                page.cancel.set()

        if listener is not None:
            self._event(page, DownloadEventType.LISTENER_REMOVED, f"Listener removed: {consumer or 'anonymous'}")
        if removed:
            self._event(page, DownloadEventType.PAGE_RELEASED, "Page released (ref count = 0)")
            logger.debug("Page released {}", page.key.label)

    def peek(self, kind: DataKind, symbol: str, timeframe: Optional[str], start_ms: int, end_ms: int) -> Optional[DataPage]:
        key = PageKey(kind=kind, symbol=normalize_symbol(symbol), timeframe=timeframe, start_ms=int(start_ms), end_ms_excl=int(end_ms))
        with self._registry_lock:
            return self._pages.get(key)

    def refresh(self, page: DataPage) -> bool:
        """Force a background sync regardless of the resync interval. False if one is already running."""
        if not self._is_active(page) or page.state in _IN_FLIGHT:
            return False
        return self._submit_sync(page) is not None

    def active_pages(self) -> list[PageInfo]:
        with self._registry_lock:
            return [p.info() for p in self._pages.values()]

    def active_page_count(self) -> int:
        with self._registry_lock:
            return len(self._pages)

    # =========================
    # sync
    # =========================

    def _is_active(self, page: DataPage) -> bool:
        with self._registry_lock:
            return self._pages.get(page.key) is page

    def _needs_sync(self, page: DataPage) -> bool:
        if page.state in _IN_FLIGHT:
            return False
        if page.last_attempt_ms is None:
            return True
        return self._clock() - page.last_attempt_ms >= self.min_resync_interval_ms

    def _populate_from_cache(self, page: DataPage) -> None:
        k = page.key
        try:
            records = self.stores[k.kind].get_range_cache_only(k.symbol, k.start_ms, k.end_ms_excl, subtype=k.timeframe)
        except Exception as e:
            logger.warning("Cache read failed for page {}: {}", k.label, e)
            return
        if records:
            self._apply(page, PageState.READY, records=tuple(records))

    def _submit_sync(self, page: DataPage) -> Optional[Future]:
        with self._apply_lock:
            if page.state in _IN_FLIGHT or not self._is_active(page) or self._stop.is_set():
                return None
            page.last_attempt_ms = self._clock()
            if page.has_data:
                self._apply(page, PageState.UPDATING)
                self._event(page, DownloadEventType.UPDATE_STARTED, "Background update started")
            else:
                self._apply(page, PageState.LOADING)
                self._event(page, DownloadEventType.LOAD_STARTED, f"Loading {page.key.symbol}/{page.key.timeframe or '-'}...")
        try:
            return self._pool.submit(self._sync_job, page)
        except RuntimeError:
            # pool already shut down
            return None

    def _sync_job(self, page: DataPage) -> None:
        if not self._is_active(page):
            return
        k = page.key
        store = self.stores[k.kind]
        was_update = page.state is PageState.UPDATING
        started = self._clock()
        try:
            records = asyncio.run(
                store.get_range(k.symbol, k.start_ms, k.end_ms_excl, subtype=k.timeframe, cancel=page.cancel)
            )
        except Exception as e:
            logger.exception("Page sync failed {}", k.label)
            self._apply(page, PageState.ERROR, error=str(e) or type(e).__name__)
            self._event(page, DownloadEventType.ERROR, f"Error: {e}", {"error_message": str(e)})
            return

        self._apply(page, PageState.READY, records=tuple(records), last_sync_ms=self._clock())
        elapsed = self._clock() - started
        if self._log is not None:
            if was_update:
                self._log.log_update_completed(k.label, k.kind.value, len(records), elapsed)
            else:
                self._log.log_load_completed(k.label, k.kind.value, len(records), elapsed)

    def _apply(
        self,
        page: DataPage,
        state: PageState,
        *,
        records: Optional[tuple[Record, ...]] = None,
        last_sync_ms: object = _UNSET,
        error: Optional[str] = None,
    ) -> None:
        """The only place page state changes. Listeners run here, one change at a time."""
        with self._apply_lock:
            if not self._is_active(page):
                return
            old = page.snapshot()
            new = PageSnapshot(
                state=state,
                records=old.records if records is None else records,
                last_sync_ms=old.last_sync_ms if last_sync_ms is _UNSET else last_sync_ms,
                error=error if state is PageState.ERROR else None,
            )
            page._snapshot = new
            listeners = list(page.listeners)

            data_changed = records is not None and records != old.records
            for fn in listeners:
                try:
                    if old.state is not state:
                        fn.on_state_changed(page, old.state, state)
                    if data_changed:
                        fn.on_data_changed(page)
                except Exception:
                    logger.exception("Page listener failed {}", page.key.label)

    def _housekeeping_loop(self) -> None:
        while not self._stop.wait(self.sync_check_interval_s):
            with self._registry_lock:
                pages = list(self._pages.values())
            for page in pages:
                if self._stop.is_set():
                    break
                if self._needs_sync(page):
                    logger.debug("Housekeeping resync {}", page.key.label)
                    self._submit_sync(page)

    def _event(self, page: DataPage, event_type: DownloadEventType, message: str, meta: Optional[dict] = None) -> None:
        if self._log is not None:
            self._log.log(page.key.label, page.key.kind.value, event_type, message, meta)
