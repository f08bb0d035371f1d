from __future__ import annotations

import asyncio
import itertools
import queue
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Callable, Iterator, Mapping, Optional

from loguru import logger

from marketcache.common.datetime_utils import now_ms
from marketcache.common.types import DataKind, normalize_symbol
from marketcache.store.series_store import TimeSeriesStore


class Priority(IntEnum):
    LOW = 0
    MEDIUM = 1
    HIGH = 2


@dataclass(frozen=True)
class PreloadRequest:
    kind: DataKind
    symbol: str
    subtype: Optional[str]
    start_ms: int
    end_ms: int
    priority: Priority = Priority.LOW

    @property
    def key(self) -> tuple[str, str, str, int, int]:
        return (self.kind.value, self.symbol, self.subtype or "", self.start_ms, self.end_ms)


class PreloadScheduler:
    """
    Single background worker that fills cache gaps ahead of demand.

    - queue is deduplicated by request key while queued; duplicates are dropped
    - strict priority order (HIGH first), no FIFO guarantee within a priority
    - while any priority load is active the worker issues no fetches; a request
      interrupted mid-way is persisted by the store and its remainder re-queued
    - fixed delay after each processed request
    """

    def __init__(
        self,
        stores: Mapping[DataKind, TimeSeriesStore],
        *,
        rate_limit_delay_s: float = 0.5,
        pause_poll_s: float = 0.1,
        join_timeout_s: float = 1.0,
        clock: Callable[[], int] = now_ms,
    ):
        self.stores = dict(stores)
        self.rate_limit_delay_s = rate_limit_delay_s
        self.pause_poll_s = pause_poll_s
        self.join_timeout_s = join_timeout_s
        self._clock = clock

        self._queue: "queue.PriorityQueue[tuple[int, int, PreloadRequest]]" = queue.PriorityQueue()
        self._seq = itertools.count()
        self._queued: set[tuple[str, str, str, int, int]] = set()
        self._lock = threading.Lock()

        self._pause_count = 0
        # set while paused or stopping; handed to stores as their cancel flag
        self._interrupt = threading.Event()
        self._stop = threading.Event()

        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._current: Optional[asyncio.Task] = None

    # =========================
    # lifecycle
    # =========================

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        if self._pause_count == 0:
            self._interrupt.clear()
        self._thread = threading.Thread(target=self._thread_main, name="preload-scheduler", daemon=True)
        self._thread.start()
        logger.info("PreloadScheduler started")

    def shutdown(self) -> None:
        self._stop.set()
        self._interrupt.set()
        loop, task = self._loop, self._current
        if loop is not None and task is not None and not loop.is_closed():
            try:
                loop.call_soon_threadsafe(task.cancel)
            except RuntimeError:
                pass  # loop closed between the check and the call
        t = self._thread
        if t is not None:
            t.join(self.join_timeout_s)
            if t.is_alive():
                logger.warning("PreloadScheduler worker did not stop within {}s", self.join_timeout_s)
        self._thread = None
        logger.info("PreloadScheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # =========================
    # pause / resume
    # =========================

    def pause_for_priority_load(self) -> None:
        with self._lock:
            self._pause_count += 1
            self._interrupt.set()
        logger.debug("PreloadScheduler paused (active priority loads={})", self._pause_count)

    def resume_after_priority_load(self) -> None:
        with self._lock:
            self._pause_count = max(0, self._pause_count - 1)
            if self._pause_count == 0 and not self._stop.is_set():
                self._interrupt.clear()
        logger.debug("PreloadScheduler resume (active priority loads={})", self._pause_count)

    @contextmanager
    def priority_load(self) -> Iterator[None]:
        self.pause_for_priority_load()
        try:
            yield
        finally:
            self.resume_after_priority_load()

    def is_paused(self) -> bool:
        with self._lock:
            return self._pause_count > 0

    # =========================
    # queue
    # =========================

    def enqueue(self, req: PreloadRequest) -> bool:
        """False if an identical request is already queued."""
        if req.kind not in self.stores:
            raise KeyError(f"No store registered for kind={req.kind.value!r}")
        if req.end_ms <= req.start_ms:
            return False
        with self._lock:
            if req.key in self._queued:
                return False
            self._queued.add(req.key)
            self._queue.put((-int(req.priority), next(self._seq), req))
        return True

    def _dequeue(self) -> Optional[PreloadRequest]:
        with self._lock:
            try:
                _, _, req = self._queue.get_nowait()
            except queue.Empty:
                return None
            self._queued.discard(req.key)
            return req

    def queue_size(self) -> int:
        with self._lock:
            return len(self._queued)

    def pending_requests(self) -> list[PreloadRequest]:
        with self._lock:
            items = sorted(self._queue.queue)
        return [req for _, _, req in items]

    def clear_queue(self) -> None:
        with self._lock:
            while True:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    break
            self._queued.clear()

    def _request(self, kind: DataKind, symbol: str, subtype: Optional[str], start_ms: int, end_ms: int, priority: Priority) -> bool:
        return self.enqueue(
            PreloadRequest(
                kind=kind,
                symbol=normalize_symbol(symbol),
                subtype=subtype,
                start_ms=int(start_ms),
                end_ms=int(end_ms),
                priority=priority,
            )
        )

    def queue_candles(self, symbol: str, timeframe: str, start_ms: int, end_ms: int, priority: Priority = Priority.LOW) -> bool:
        return self._request(DataKind.CANDLES, symbol, timeframe, start_ms, end_ms, priority)

    def queue_agg_trades(self, symbol: str, start_ms: int, end_ms: int, priority: Priority = Priority.LOW) -> bool:
        return self._request(DataKind.AGG_TRADES, symbol, None, start_ms, end_ms, priority)

    def queue_funding(self, symbol: str, start_ms: int, end_ms: int, priority: Priority = Priority.LOW) -> bool:
        return self._request(DataKind.FUNDING, symbol, None, start_ms, end_ms, priority)

    def queue_open_interest(self, symbol: str, start_ms: int, end_ms: int, priority: Priority = Priority.LOW) -> bool:
        return self._request(DataKind.OPEN_INTEREST, symbol, None, start_ms, end_ms, priority)

    def queue_premium(self, symbol: str, timeframe: str, start_ms: int, end_ms: int, priority: Priority = Priority.LOW) -> bool:
        return self._request(DataKind.PREMIUM_INDEX, symbol, timeframe, start_ms, end_ms, priority)

    # =========================
    # worker
    # =========================

    def _thread_main(self) -> None:
        try:
            asyncio.run(self._run())
        except Exception:
            logger.exception("PreloadScheduler worker crashed")

    async def _sleep_unless_stopped(self, seconds: float) -> None:
        remaining = seconds
        while remaining > 0 and not self._stop.is_set():
            step = min(self.pause_poll_s, remaining)
            await asyncio.sleep(step)
            remaining -= step

    async def _run(self) -> None:
        self._loop = asyncio.get_running_loop()
        try:
            while not self._stop.is_set():
                if self.is_paused():
                    await asyncio.sleep(self.pause_poll_s)
                    continue

                req = self._dequeue()
                if req is None:
                    await asyncio.sleep(self.pause_poll_s)
                    continue

                self._current = asyncio.create_task(self.process(req))
                try:
                    await self._current
                except asyncio.CancelledError:
                    if self._stop.is_set():
                        break
                    self.enqueue(req)
                except Exception:
                    logger.exception(
                        "Preload failed kind={} symbol={} subtype={} [{}..{})",
                        req.kind.value,
                        req.symbol,
                        req.subtype,
                        req.start_ms,
                        req.end_ms,
                    )
                finally:
                    self._current = None

                await self._sleep_unless_stopped(self.rate_limit_delay_s)
        finally:
            self._loop = None

    async def process(self, req: PreloadRequest) -> int:
        """
        Fill the uncovered parts of one request. Returns the number of records loaded.
        If interrupted, the unfetched remainder is re-queued at the same priority.
        """
        store = self.stores[req.kind]
        now = self._clock()
        start = req.start_ms
        end = min(req.end_ms, now)

        lookback = store.policy.max_lookback_ms
        if req.kind is DataKind.OPEN_INTEREST and lookback is not None:
            start = max(start, now - lookback)
        if end <= start:
            return 0

        gaps = store.coverage_gaps(req.symbol, start, end, subtype=req.subtype)
        if not gaps:
            logger.debug("Preload skip (covered) kind={} symbol={} subtype={}", req.kind.value, req.symbol, req.subtype)
            return 0

        loaded = 0
        for gap in gaps:
            if self._interrupt.is_set():
                self._requeue_from(req, gap.start_ms)
                return loaded

            records = await store.get_range(
                req.symbol,
                gap.start_ms,
                gap.end_ms_excl,
                subtype=req.subtype,
                cancel=self._interrupt,
            )
            loaded += len(records)

            if self._interrupt.is_set():
                self._requeue_from(req, gap.start_ms)
                return loaded

        logger.info(
            "Preloaded kind={} symbol={} subtype={} gaps={} records={}",
            req.kind.value,
            req.symbol,
            req.subtype,
            len(gaps),
            loaded,
        )
        return loaded

    def _requeue_from(self, req: PreloadRequest, start_ms: int) -> None:
        if self._stop.is_set():
            return
        rest = replace(req, start_ms=start_ms)
        queued = self.enqueue(rest)
        logger.info(
            "Preload interrupted, requeued kind={} symbol={} from={} queued={}",
            req.kind.value,
            req.symbol,
            start_ms,
            queued,
        )
