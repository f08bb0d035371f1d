from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional, Sequence

import pytest

from marketcache.adapters.base import ExchangeDataClient
from marketcache.common.ranges import TimeRange
from marketcache.common.timeframes import BucketSize, ceil_ts, parse_bucket_key, bucket_end, timeframe_to_ms
from marketcache.common.types import DataKind
from marketcache.store.bucket_files import BucketFiles
from marketcache.store.coverage_index import CoverageIndex
from marketcache.store.policy import policy_for
from marketcache.store.records import AggTrade, Candle, FundingRate, OpenInterest, PremiumIndex, Record
from marketcache.store.series_store import TimeSeriesStore

MINUTE = 60_000
HOUR = 3_600_000
DAY = 86_400_000

# 2024-01-01T00:00:00Z
JAN_1_2024 = 1_704_067_200_000
FEB_1_2024 = 1_706_745_600_000
MAR_1_2024 = 1_709_251_200_000


class FakeExchangeClient(ExchangeDataClient):
    """
    Deterministic synthetic upstream.

    Emits one record per nominal interval (one trade per minute for aggTrades,
    agg id = minute index) for every ts in [listing_ms, delisted_ms) not inside a
    missing range. Records every call.
    """

    def __init__(
        self,
        *,
        listing_ms: int = 0,
        delisted_ms: Optional[int] = None,
        missing: Sequence[TimeRange] = (),
        archive_available: bool = False,
        on_fetch: Optional[Callable[[int], None]] = None,
        fail_with: Optional[BaseException] = None,
    ):
        self.listing_ms = listing_ms
        self.delisted_ms = delisted_ms
        self.missing = list(missing)
        self.archive_available = archive_available
        self.on_fetch = on_fetch
        self.fail_with = fail_with
        self.calls: list[tuple[DataKind, Optional[str], int, int]] = []
        self.archive_calls: list[tuple[DataKind, str]] = []

    def _step(self, kind: DataKind, subtype: Optional[str]) -> int:
        if kind in (DataKind.CANDLES, DataKind.PREMIUM_INDEX):
            return timeframe_to_ms(subtype or "1h")
        if kind is DataKind.FUNDING:
            return 8 * HOUR
        if kind is DataKind.OPEN_INTEREST:
            return 5 * MINUTE
        return MINUTE

    def _make(self, kind: DataKind, ts: int, step: int) -> Record:
        if kind is DataKind.CANDLES:
            return Candle(ts_ms=ts, open=100.0, high=101.0, low=99.0, close=100.5, volume=1.0)
        if kind is DataKind.PREMIUM_INDEX:
            return PremiumIndex(ts_ms=ts, open=0.0001, high=0.0002, low=0.0, close=0.0001)
        if kind is DataKind.FUNDING:
            return FundingRate(ts_ms=ts, rate=0.0001, mark_price=42_000.0)
        if kind is DataKind.OPEN_INTEREST:
            return OpenInterest(ts_ms=ts, open_interest=1_000.0, open_interest_value=42_000_000.0)
        agg_id = ts // step
        return AggTrade(agg_id=agg_id, price=42_000.0, qty=0.01, first_id=agg_id * 2, last_id=agg_id * 2 + 1, ts_ms=ts, buyer_maker=agg_id % 2 == 0)

    def records_between(self, kind: DataKind, subtype: Optional[str], start_ms: int, end_ms: int) -> list[Record]:
        step = self._step(kind, subtype)
        end = end_ms if self.delisted_ms is None else min(end_ms, self.delisted_ms)
        ts = ceil_ts(max(start_ms, self.listing_ms), step)
        out: list[Record] = []
        while ts < end:
            if not any(m.contains(ts) for m in self.missing):
                out.append(self._make(kind, ts, step))
            ts += step
        return out

    async def fetch_range(self, kind, symbol, subtype, start_ms, end_ms, limit):
        self.calls.append((kind, subtype, start_ms, end_ms))
        if self.on_fetch is not None:
            self.on_fetch(len(self.calls))
        if self.fail_with is not None:
            raise self.fail_with
        return self.records_between(kind, subtype, start_ms, end_ms)[:limit]

    async def fetch_bulk_archive(self, kind, symbol, subtype, bucket_key):
        self.archive_calls.append((kind, bucket_key))
        if not self.archive_available:
            return None
        size = BucketSize.DAY if kind is DataKind.AGG_TRADES else BucketSize.MONTH
        start = parse_bucket_key(bucket_key, size)
        return self.records_between(kind, subtype, start, bucket_end(start, size))


class FixedClock:
    def __init__(self, now_ms: int):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "market"


@pytest.fixture
def make_store(data_dir: Path):
    """make_store(kind, client, now_ms) -> TimeSeriesStore sharing one cache dir per test."""
    files = BucketFiles(data_dir)
    coverage = CoverageIndex(data_dir / "coverage.sqlite")

    def _make(kind: DataKind, client: ExchangeDataClient, now_ms: int = MAR_1_2024) -> TimeSeriesStore:
        return TimeSeriesStore(kind, policy_for(kind), client, files, coverage, clock=FixedClock(now_ms))

    return _make


@pytest.fixture
def fake_client_cls():
    return FakeExchangeClient
