from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

from loguru import logger

from marketcache.adapters.base import ExchangeDataClient
from marketcache.common.datetime_utils import now_ms
from marketcache.common.download_log import DownloadEventType, DownloadLog
from marketcache.common.errors import GapPersistenceError
from marketcache.common.ranges import TimeRange, subtract_ranges
from marketcache.common.timeframes import bucket_end, bucket_key, bucket_start, ceil_ts, iter_buckets
from marketcache.common.types import DataKind, ProgressSink, normalize_symbol, report
from marketcache.store.bucket_files import BucketFiles, BucketState
from marketcache.store.coverage_index import CoverageIndex
from marketcache.store.policy import BucketPolicy, is_bucket_complete
from marketcache.store.records import RECORD_TYPES, Record, merge_records

BUCKET_LOCK_STRIPES = 64


@dataclass(frozen=True)
class BucketStatus:
    key: str
    start_ms: int
    end_ms_excl: int
    state: BucketState
    record_count: int


@dataclass
class _BucketPlan:
    bucket: TimeRange
    window: TimeRange
    key: str
    state: BucketState


class TimeSeriesStore:
    """
    Bucketed file cache for one data kind, filled on demand from an ExchangeDataClient.

    Per bucket:
      COMPLETE / EMPTY -> served from disk, never refetched
      PARTIAL          -> leading/interior/trailing gaps fetched, merged, completeness re-derived
      ABSENT           -> bulk archive (large historical spans) or paginated API fetch
    Known-missing ranges from the coverage index are never fetched twice.
    """

    def __init__(
        self,
        kind: DataKind,
        policy: BucketPolicy,
        client: ExchangeDataClient,
        files: BucketFiles,
        coverage: CoverageIndex,
        *,
        clock: Callable[[], int] = now_ms,
        download_log: Optional[DownloadLog] = None,
    ):
        if policy.kind is not kind:
            raise ValueError(f"policy kind {policy.kind.value} does not match store kind {kind.value}")
        self.kind = kind
        self.policy = policy
        self.client = client
        self.files = files
        self.coverage = coverage
        self.record_type = RECORD_TYPES[kind]
        self._clock = clock
        self._log = download_log
        self._bucket_locks = tuple(threading.Lock() for _ in range(BUCKET_LOCK_STRIPES))

    def _bucket_lock(self, symbol: str, subtype: Optional[str], key: str) -> threading.Lock:
        # striped: never held while taking another bucket lock
        return self._bucket_locks[hash((symbol, subtype or "", key)) % BUCKET_LOCK_STRIPES]

    def _bucket_range(self, ts_ms: int) -> TimeRange:
        size = self.policy.bucket_size
        return TimeRange(bucket_start(ts_ms, size), bucket_end(ts_ms, size))

    def _event(self, symbol: str, subtype: Optional[str], message: str, count: int) -> None:
        if self._log is None:
            return
        page_key = f"{self.kind.value}:{symbol}:{subtype or '-'}"
        self._log.log(page_key, self.kind.value, DownloadEventType.FETCH, message, {"record_count": count})

    # =========================
    # public API
    # =========================

    async def get_range(
        self,
        symbol: str,
        start_ms: int,
        end_ms: int,
        *,
        subtype: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
        progress: Optional[ProgressSink] = None,
    ) -> list[Record]:
        """
        Records with start_ms <= ts_ms < end_ms, ascending and unique by key,
        fetching whatever the cache lacks. On cancel, returns what was gathered
        after persisting it.
        """
        symbol = normalize_symbol(symbol)
        self.policy.interval_for(subtype)  # validates subtype for timeframe-keyed kinds
        if end_ms <= start_ms:
            return []

        req = TimeRange(int(start_ms), int(end_ms))
        now = self._clock()
        plans = self._plan(symbol, subtype, req)
        use_bulk = self._should_use_bulk(plans, subtype, now)

        out: list[Record] = []
        synced_through = req.start_ms
        try:
            for i, plan in enumerate(plans):
                if cancel is not None and cancel.is_set():
                    logger.info("get_range cancelled kind={} symbol={} before bucket={}", self.kind.value, symbol, plan.key)
                    break

                records = await self._sync_bucket(symbol, subtype, plan, now, use_bulk, cancel, progress)
                out.extend(r for r in records if plan.window.contains(r.ts_ms))

                if cancel is not None and cancel.is_set():
                    logger.info("get_range interrupted kind={} symbol={} bucket={}", self.kind.value, symbol, plan.key)
                    break
                synced_through = plan.window.end_ms_excl
                report(progress, i + 1, len(plans), f"{self.kind.value} {symbol} {plan.key}")
        finally:
            end = min(synced_through, now)
            if end > req.start_ms:
                self.coverage.record_coverage(self.kind, symbol, subtype, TimeRange(req.start_ms, end))

        return out

    def get_range_cache_only(
        self,
        symbol: str,
        start_ms: int,
        end_ms: int,
        *,
        subtype: Optional[str] = None,
    ) -> list[Record]:
        symbol = normalize_symbol(symbol)
        if end_ms <= start_ms:
            return []
        req = TimeRange(int(start_ms), int(end_ms))
        out: list[Record] = []
        for bs, be in iter_buckets(req.start_ms, req.end_ms_excl, self.policy.bucket_size):
            key = bucket_key(bs, self.policy.bucket_size)
            _, records = self.files.read(self.kind, symbol, subtype, key, self.record_type)
            out.extend(r for r in records if req.contains(r.ts_ms))
        return out

    def bucket_statuses(
        self,
        symbol: str,
        start_ms: int,
        end_ms: int,
        *,
        subtype: Optional[str] = None,
    ) -> list[BucketStatus]:
        symbol = normalize_symbol(symbol)
        out: list[BucketStatus] = []
        for bs, be in iter_buckets(int(start_ms), int(end_ms), self.policy.bucket_size):
            key = bucket_key(bs, self.policy.bucket_size)
            state, records = self.files.read(self.kind, symbol, subtype, key, self.record_type)
            out.append(BucketStatus(key=key, start_ms=bs, end_ms_excl=be, state=state, record_count=len(records)))
        return out

    def coverage_gaps(self, symbol: str, start_ms: int, end_ms: int, *, subtype: Optional[str] = None) -> list[TimeRange]:
        symbol = normalize_symbol(symbol)
        if end_ms <= start_ms:
            return []
        return self.coverage.find_uncovered(self.kind, symbol, subtype, TimeRange(int(start_ms), int(end_ms)))

    def clear_cache(self, symbol: str, subtype: Optional[str] = None) -> int:
        symbol = normalize_symbol(symbol)
        removed = self.files.clear(self.kind, symbol, subtype)
        self.coverage.clear(self.kind, symbol, subtype)
        logger.info("Cleared cache kind={} symbol={} subtype={} files={}", self.kind.value, symbol, subtype, removed)
        return removed

    async def repair_bucket(
        self,
        symbol: str,
        ts_ms: int,
        *,
        subtype: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
        progress: Optional[ProgressSink] = None,
    ) -> list[Record]:
        """Drop the bucket containing ts_ms (file, coverage, known-missing) and fetch it again."""
        symbol = normalize_symbol(symbol)
        bucket = self._bucket_range(int(ts_ms))
        key = bucket_key(bucket.start_ms, self.policy.bucket_size)
        with self._bucket_lock(symbol, subtype, key):
            self.files.delete(self.kind, symbol, subtype, key)
        self.coverage.clear_range(self.kind, symbol, subtype, bucket)
        logger.info("Repairing bucket kind={} symbol={} subtype={} bucket={}", self.kind.value, symbol, subtype, key)

        end = min(bucket.end_ms_excl, self._clock())
        if end <= bucket.start_ms:
            return []
        return await self.get_range(symbol, bucket.start_ms, end, subtype=subtype, cancel=cancel, progress=progress)

    async def repair_gaps(
        self,
        symbol: str,
        ranges: Iterable[TimeRange],
        *,
        subtype: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
        progress: Optional[ProgressSink] = None,
    ) -> int:
        """Force a refetch of the named ranges, ignoring coverage and known-missing. Returns records fetched."""
        symbol = normalize_symbol(symbol)
        now = self._clock()
        fetched = 0
        for rng in ranges:
            rng2 = rng.intersect(TimeRange(rng.start_ms, max(rng.start_ms, now)))
            if rng2 is None:
                continue
            self.coverage.clear_range(self.kind, symbol, subtype, rng2)
            for bs, be in iter_buckets(rng2.start_ms, rng2.end_ms_excl, self.policy.bucket_size):
                if cancel is not None and cancel.is_set():
                    return fetched
                bucket = TimeRange(bs, be)
                key = bucket_key(bs, self.policy.bucket_size)
                _, cached = self.files.read(self.kind, symbol, subtype, key, self.record_type)
                window = bucket.intersect(rng2)
                if window is None:
                    continue
                before = len(cached)
                merged = await self._fetch_into_bucket(
                    symbol, subtype, bucket, key, [window], now, cancel, progress, allow_downgrade=True
                )
                fetched += max(0, len(merged) - before)
            if cancel is None or not cancel.is_set():
                self.coverage.record_coverage(self.kind, symbol, subtype, rng2)
        logger.info("repair_gaps kind={} symbol={} new_records={}", self.kind.value, symbol, fetched)
        return fetched

    def persist_bucket(
        self,
        symbol: str,
        bucket_ts_ms: int,
        records: Sequence[Record],
        *,
        subtype: Optional[str] = None,
        complete: bool,
    ) -> BucketState:
        """
        Write a bucket file directly. complete=True is refused with GapPersistenceError
        unless the records pass the completeness check.
        """
        symbol = normalize_symbol(symbol)
        bucket = self._bucket_range(int(bucket_ts_ms))
        key = bucket_key(bucket.start_ms, self.policy.bucket_size)
        ordered = merge_records([], [r for r in records if bucket.contains(r.ts_ms)])
        if complete and not self._is_complete(symbol, subtype, bucket, ordered, self._clock()):
            raise GapPersistenceError(
                f"bucket {self.kind.value}/{symbol}/{key} does not pass completeness "
                f"(records={len(ordered)})"
            )
        with self._bucket_lock(symbol, subtype, key):
            self.files.write(self.kind, symbol, subtype, key, ordered, self.record_type, complete=complete)
        return BucketState.COMPLETE if complete else BucketState.PARTIAL

    # =========================
    # planning
    # =========================

    def _plan(self, symbol: str, subtype: Optional[str], req: TimeRange) -> list[_BucketPlan]:
        size = self.policy.bucket_size
        plans: list[_BucketPlan] = []
        for bs, be in iter_buckets(req.start_ms, req.end_ms_excl, size):
            bucket = TimeRange(bs, be)
            window = bucket.intersect(req)
            if window is None:
                continue
            key = bucket_key(bs, size)
            plans.append(_BucketPlan(bucket=bucket, window=window, key=key, state=self.files.state(self.kind, symbol, subtype, key)))
        return plans

    def _should_use_bulk(self, plans: Sequence[_BucketPlan], subtype: Optional[str], now: int) -> bool:
        if not self.policy.has_archive:
            return False
        uncached = [p for p in plans if p.state is BucketState.ABSENT]
        if not any(p.window == p.bucket and p.bucket.end_ms_excl <= now for p in uncached):
            return False
        span = sum(min(p.window.end_ms_excl, now) - p.window.start_ms for p in uncached if p.window.start_ms < now)
        calls = self.policy.estimate_api_calls(span, subtype)
        return calls > self.policy.bulk_threshold_calls

    # =========================
    # per-bucket sync
    # =========================

    async def _sync_bucket(
        self,
        symbol: str,
        subtype: Optional[str],
        plan: _BucketPlan,
        now: int,
        use_bulk: bool,
        cancel: Optional[threading.Event],
        progress: Optional[ProgressSink],
    ) -> list[Record]:
        state, cached = self.files.read(self.kind, symbol, subtype, plan.key, self.record_type)
        if state is BucketState.EMPTY:
            return []
        if state is BucketState.COMPLETE:
            return cached

        bucket = plan.bucket
        horizon = min(plan.window.end_ms_excl, now)
        if horizon <= plan.window.start_ms:
            return cached

        if state is BucketState.ABSENT and use_bulk and plan.window == bucket and bucket.end_ms_excl <= now:
            archived = await self.client.fetch_bulk_archive(self.kind, symbol, subtype, plan.key)
            if archived:
                self._event(symbol, subtype, f"archive {plan.key}", len(archived))
                cached = self._merge_and_write(symbol, subtype, bucket, plan.key, archived, now)
                state, cached = self.files.read(self.kind, symbol, subtype, plan.key, self.record_type)
                if state is BucketState.COMPLETE:
                    return cached
            else:
                logger.info(
                    "Archive unavailable, falling back to API kind={} symbol={} bucket={}",
                    self.kind.value,
                    symbol,
                    plan.key,
                )

        known = self.coverage.known_missing(self.kind, symbol, subtype, bucket)
        if not cached:
            gaps = [self._absent_fetch_range(bucket, plan.window, now, subtype)]
        else:
            gaps = self._find_gaps(cached, plan.window, now, subtype)
        gaps = self._apply_lookback(symbol, subtype, gaps, now)
        gaps = [g for gap in gaps for g in subtract_ranges(gap, known)]

        if not gaps:
            # known-missing entries may have made the bucket provable since it was written
            if cached and state is BucketState.PARTIAL and self._is_complete(symbol, subtype, bucket, cached, now):
                return self._merge_and_write(symbol, subtype, bucket, plan.key, [], now)
            if not cached and bucket.end_ms_excl <= now and self.coverage.is_known_missing(self.kind, symbol, subtype, bucket):
                with self._bucket_lock(symbol, subtype, plan.key):
                    self.files.write_empty_marker(self.kind, symbol, subtype, plan.key)
            return cached

        return await self._fetch_into_bucket(symbol, subtype, bucket, plan.key, gaps, now, cancel, progress)

    def _absent_fetch_range(self, bucket: TimeRange, window: TimeRange, now: int, subtype: Optional[str]) -> TimeRange:
        whole = TimeRange(bucket.start_ms, min(bucket.end_ms_excl, now))
        if self.policy.fits_single_page(whole.duration_ms, subtype):
            return whole
        return TimeRange(window.start_ms, min(window.end_ms_excl, now))

    def _find_gaps(
        self,
        cached: Sequence[Record],
        window: TimeRange,
        now: int,
        subtype: Optional[str],
    ) -> list[TimeRange]:
        horizon = min(window.end_ms_excl, now)
        live_edge = window.end_ms_excl >= now
        recs = [r for r in cached if window.start_ms <= r.ts_ms < horizon]
        if not recs:
            return [TimeRange(window.start_ms, horizon)]

        interval = self.policy.interval_for(subtype)
        max_step = self.policy.max_step_for(subtype)
        tail_tol = self.policy.tail_tolerance_for(subtype)
        trades = interval is None

        gaps: list[TimeRange] = []

        # leading
        first = recs[0].ts_ms
        if trades:
            if first - window.start_ms > tail_tol:
                gaps.append(TimeRange(window.start_ms, first))
        elif first > ceil_ts(window.start_ms, interval) + self.policy.gap_tolerance_ms:
            gaps.append(TimeRange(window.start_ms, first))

        # interior
        for a, b in zip(recs, recs[1:]):
            if trades:
                if b.key != a.key + 1 and b.key > a.key:
                    gaps.append(TimeRange(a.ts_ms, b.ts_ms + 1))
            elif b.ts_ms - a.ts_ms > max_step:
                gaps.append(TimeRange(a.ts_ms + 1, b.ts_ms))

        # trailing
        last = recs[-1].ts_ms
        resume = last if trades else last + 1
        if live_edge:
            if now - last > self.policy.staleness_for(subtype) and resume < horizon:
                gaps.append(TimeRange(resume, horizon))
        else:
            limit = tail_tol if trades else max_step
            if horizon - last > limit and resume < horizon:
                gaps.append(TimeRange(resume, horizon))

        return [g for g in gaps if not g.is_empty]

    def _apply_lookback(self, symbol: str, subtype: Optional[str], gaps: list[TimeRange], now: int) -> list[TimeRange]:
        lookback = self.policy.max_lookback_ms
        if lookback is None:
            return gaps
        floor = now - lookback
        out: list[TimeRange] = []
        for g in gaps:
            if g.start_ms < floor:
                lost = TimeRange(g.start_ms, min(g.end_ms_excl, floor))
                self.coverage.record_known_missing(self.kind, symbol, subtype, lost, reason="beyond_lookback")
            if g.end_ms_excl > floor:
                out.append(TimeRange(max(g.start_ms, floor), g.end_ms_excl))
        return out

    async def _fetch_into_bucket(
        self,
        symbol: str,
        subtype: Optional[str],
        bucket: TimeRange,
        key: str,
        gaps: Sequence[TimeRange],
        now: int,
        cancel: Optional[threading.Event],
        progress: Optional[ProgressSink],
        *,
        allow_downgrade: bool = False,
    ) -> list[Record]:
        fresh: list[Record] = []
        _, before = self.files.read(self.kind, symbol, subtype, key, self.record_type)
        before_keys = {r.key for r in before}
        settled_before = now - self.policy.staleness_for(subtype)

        try:
            for gap in gaps:
                if cancel is not None and cancel.is_set():
                    break
                logger.debug(
                    "Fetching kind={} symbol={} subtype={} [{}..{})",
                    self.kind.value,
                    symbol,
                    subtype,
                    gap.start_ms,
                    gap.end_ms_excl,
                )
                rows = await self.client.fetch_all(
                    self.kind,
                    symbol,
                    subtype,
                    gap.start_ms,
                    gap.end_ms_excl,
                    limit=self.policy.page_limit,
                    window_ms=self.policy.api_window_ms,
                    cancel=cancel,
                    progress=progress,
                )
                fresh.extend(rows)
                self._event(symbol, subtype, f"fetched {key} [{gap.start_ms}..{gap.end_ms_excl})", len(rows))

                if cancel is not None and cancel.is_set():
                    break
                if gap.end_ms_excl <= settled_before:
                    self._record_missing_edges(symbol, subtype, gap, rows, before_keys)
        finally:
            merged = self._merge_and_write(symbol, subtype, bucket, key, fresh, now, allow_downgrade=allow_downgrade)

        return merged

    def _record_missing_edges(
        self,
        symbol: str,
        subtype: Optional[str],
        gap: TimeRange,
        rows: Sequence[Record],
        before_keys: set[int],
    ) -> None:
        """Upstream was asked for all of gap; whatever it did not return there is confirmed missing."""
        new_rows = [r for r in rows if r.key not in before_keys]
        if not new_rows:
            self.coverage.record_known_missing(self.kind, symbol, subtype, gap, reason="empty_fetch")
            return

        interval = self.policy.interval_for(subtype)
        if interval is None:
            lead_tol = tail_tol = self.policy.tail_tolerance_for(subtype)
            step = 1
        else:
            lead_tol = tail_tol = self.policy.max_step_for(subtype) or interval
            step = interval

        first, last = rows[0].ts_ms, rows[-1].ts_ms
        if first - gap.start_ms > lead_tol:
            self.coverage.record_known_missing(
                self.kind, symbol, subtype, TimeRange(gap.start_ms, first), reason="leading_empty"
            )
        if gap.end_ms_excl - last > tail_tol and last + step < gap.end_ms_excl:
            self.coverage.record_known_missing(
                self.kind, symbol, subtype, TimeRange(last + step, gap.end_ms_excl), reason="trailing_empty"
            )

    def _merge_and_write(
        self,
        symbol: str,
        subtype: Optional[str],
        bucket: TimeRange,
        key: str,
        fresh: Sequence[Record],
        now: int,
        *,
        allow_downgrade: bool = False,
    ) -> list[Record]:
        fresh_in = [r for r in fresh if bucket.contains(r.ts_ms)]
        with self._bucket_lock(symbol, subtype, key):
            state, current = self.files.read(self.kind, symbol, subtype, key, self.record_type)
            if state is BucketState.COMPLETE and not allow_downgrade:
                return current

            merged = merge_records(current, fresh_in)
            if not merged:
                if bucket.end_ms_excl <= now and self.coverage.is_known_missing(self.kind, symbol, subtype, bucket):
                    self.files.write_empty_marker(self.kind, symbol, subtype, key)
                    logger.info("Bucket confirmed empty kind={} symbol={} bucket={}", self.kind.value, symbol, key)
                return merged

            complete = self._is_complete(symbol, subtype, bucket, merged, now)
            if fresh_in or (complete and state is not BucketState.COMPLETE):
                self.files.write(self.kind, symbol, subtype, key, merged, self.record_type, complete=complete)
                logger.debug(
                    "Wrote bucket kind={} symbol={} bucket={} rows={} complete={}",
                    self.kind.value,
                    symbol,
                    key,
                    len(merged),
                    complete,
                )
            return merged

    def _is_complete(
        self,
        symbol: str,
        subtype: Optional[str],
        bucket: TimeRange,
        records: Sequence[Record],
        now: int,
    ) -> bool:
        known = self.coverage.known_missing(self.kind, symbol, subtype, bucket)
        contiguous = True
        if self.policy.interval_for(subtype) is None:
            contiguous = all(
                b.key == a.key + 1 or any(k.start_ms <= a.ts_ms and b.ts_ms < k.end_ms_excl for k in known)
                for a, b in zip(records, records[1:])
            )
        return is_bucket_complete(
            self.policy,
            bucket=bucket,
            subtype=subtype,
            first_ts_ms=records[0].ts_ms if records else None,
            last_ts_ms=records[-1].ts_ms if records else None,
            count=len(records),
            now_ms=now,
            known_missing=known,
            contiguous=contiguous,
        )
