from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, Optional, Sequence

from marketcache.common.config import KindTuning
from marketcache.common.ranges import TimeRange, subtract_ranges, total_duration
from marketcache.common.timeframes import BucketSize, timeframe_to_ms
from marketcache.common.types import DataKind

MINUTE_MS = 60_000
HOUR_MS = 3_600_000
DAY_MS = 86_400_000

_NULLABLE_FIELDS = frozenset({"staleness_ms", "tail_tolerance_ms", "max_lookback_ms"})


@dataclass(frozen=True)
class BucketPolicy:
    """
    Per-kind cache policy.

    interval_ms=None with interval_from_subtype=True means the nominal interval is
    the subtype timeframe (candles/premium). interval_ms=None otherwise means the
    kind has no fixed cadence (trades) and continuity is judged by id.
    """

    kind: DataKind
    bucket_size: BucketSize
    page_limit: int
    interval_ms: Optional[int] = None
    interval_from_subtype: bool = False
    staleness_ms: Optional[int] = None          # None -> 2x interval
    tail_tolerance_ms: Optional[int] = None     # None -> 2x interval
    min_fill_ratio: float = 0.95
    gap_tolerance_ms: int = 0
    bulk_threshold_calls: int = 10
    has_archive: bool = True
    max_lookback_ms: Optional[int] = None
    api_window_ms: Optional[int] = None         # max span per API call, if the endpoint caps it

    def interval_for(self, subtype: Optional[str]) -> Optional[int]:
        if self.interval_from_subtype:
            if not subtype:
                raise ValueError(f"{self.kind.value} requires a timeframe subtype")
            return timeframe_to_ms(subtype)
        return self.interval_ms

    def staleness_for(self, subtype: Optional[str]) -> int:
        if self.staleness_ms is not None:
            return self.staleness_ms
        iv = self.interval_for(subtype)
        return 2 * iv if iv else 5 * MINUTE_MS

    def tail_tolerance_for(self, subtype: Optional[str]) -> int:
        if self.tail_tolerance_ms is not None:
            return self.tail_tolerance_ms
        iv = self.interval_for(subtype)
        return 2 * iv if iv else 5 * MINUTE_MS

    def max_step_for(self, subtype: Optional[str]) -> Optional[int]:
        """Largest allowed distance between consecutive records before it counts as a gap."""
        iv = self.interval_for(subtype)
        if iv is None:
            return None
        return iv + self.gap_tolerance_ms

    def expected_count(self, span: TimeRange, subtype: Optional[str], known_missing: Sequence[TimeRange] = ()) -> Optional[int]:
        iv = self.interval_for(subtype)
        if iv is None:
            return None
        live = subtract_ranges(span, known_missing)
        return total_duration(live) // iv

    def estimate_api_calls(self, span_ms: int, subtype: Optional[str]) -> int:
        if span_ms <= 0:
            return 0
        calls = 0
        iv = self.interval_for(subtype)
        if iv:
            records = span_ms // iv
            calls = max(calls, -(-records // self.page_limit))
        if self.api_window_ms:
            calls = max(calls, -(-span_ms // self.api_window_ms))
        return calls

    def fits_single_page(self, span_ms: int, subtype: Optional[str]) -> bool:
        iv = self.interval_for(subtype)
        if iv is None:
            return False
        return span_ms // iv <= self.page_limit

    def with_tuning(self, t: KindTuning) -> BucketPolicy:
        # only fields set in config apply; an explicit null clears an optional policy value
        overrides = {
            k: v for k, v in t.model_dump(exclude_unset=True).items() if v is not None or k in _NULLABLE_FIELDS
        }
        return replace(self, **overrides) if overrides else self


def is_bucket_complete(
    policy: BucketPolicy,
    *,
    bucket: TimeRange,
    subtype: Optional[str],
    first_ts_ms: Optional[int],
    last_ts_ms: Optional[int],
    count: int,
    now_ms: int,
    known_missing: Sequence[TimeRange] = (),
    contiguous: bool = True,
) -> bool:
    """
    A bucket is COMPLETE only if it is closed, its tail reaches the bucket end within
    tolerance, its head starts at the live span start within the same tolerance,
    ids are contiguous (trades) and, for fixed-cadence kinds, it holds enough records
    for its live span.
    Any doubt -> False.
    """
    if bucket.end_ms_excl > now_ms:
        return False
    if count <= 0 or last_ts_ms is None or first_ts_ms is None:
        return False

    # both edges are measured against the live span, so a pre-listing head or a
    # delisted tail recorded as known-missing does not block completion
    live = subtract_ranges(bucket, known_missing)
    if not live:
        return False
    tolerance = policy.tail_tolerance_for(subtype)
    if first_ts_ms - live[0].start_ms > tolerance:
        return False
    if live[-1].end_ms_excl - last_ts_ms > tolerance:
        return False
    if not contiguous:
        return False

    expected = policy.expected_count(bucket, subtype, known_missing)
    if expected is not None and count < policy.min_fill_ratio * expected:
        return False
    return True


DEFAULT_POLICIES: Dict[DataKind, BucketPolicy] = {
    DataKind.CANDLES: BucketPolicy(
        kind=DataKind.CANDLES,
        bucket_size=BucketSize.MONTH,
        page_limit=1500,
        interval_from_subtype=True,
    ),
    DataKind.AGG_TRADES: BucketPolicy(
        kind=DataKind.AGG_TRADES,
        bucket_size=BucketSize.DAY,
        page_limit=1000,
        staleness_ms=5 * MINUTE_MS,
        tail_tolerance_ms=5 * MINUTE_MS,
        api_window_ms=HOUR_MS,
    ),
    DataKind.FUNDING: BucketPolicy(
        kind=DataKind.FUNDING,
        bucket_size=BucketSize.MONTH,
        page_limit=1000,
        interval_ms=8 * HOUR_MS,
        gap_tolerance_ms=MINUTE_MS,
    ),
    DataKind.OPEN_INTEREST: BucketPolicy(
        kind=DataKind.OPEN_INTEREST,
        bucket_size=BucketSize.MONTH,
        page_limit=500,
        interval_ms=5 * MINUTE_MS,
        gap_tolerance_ms=MINUTE_MS,
        has_archive=False,
        max_lookback_ms=30 * DAY_MS,
    ),
    DataKind.PREMIUM_INDEX: BucketPolicy(
        kind=DataKind.PREMIUM_INDEX,
        bucket_size=BucketSize.MONTH,
        page_limit=1500,
        interval_from_subtype=True,
    ),
}


def policy_for(kind: DataKind, tuning: Optional[KindTuning] = None) -> BucketPolicy:
    base = DEFAULT_POLICIES[kind]
    return base.with_tuning(tuning) if tuning is not None else base
