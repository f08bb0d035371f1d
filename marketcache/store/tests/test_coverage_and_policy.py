# marketcache/store/tests/test_coverage_and_policy.py

from __future__ import annotations

from pathlib import Path

from marketcache.common.config import KindTuning, load_marketcache_config
from marketcache.common.ranges import TimeRange
from marketcache.common.types import DataKind
from marketcache.store.coverage_index import CoverageIndex
from marketcache.store.policy import is_bucket_complete, policy_for

HOUR = 3_600_000
DAY = 86_400_000
JAN_1 = 1_704_067_200_000
FEB_1 = 1_706_745_600_000
MAR_1 = 1_709_251_200_000


def test_coverage_rows_are_merged(tmp_path: Path):
    idx = CoverageIndex(tmp_path / "cov.sqlite")
    k = DataKind.CANDLES

    idx.record_coverage(k, "BTCUSDT", "1h", TimeRange(0, 10))
    idx.record_coverage(k, "BTCUSDT", "1h", TimeRange(20, 30))
    idx.record_coverage(k, "BTCUSDT", "1h", TimeRange(10, 20))

    assert idx.covered_ranges(k, "BTCUSDT", "1h") == [TimeRange(0, 30)]
    assert len(idx.get_coverage(k, "BTCUSDT", "1h")) == 1
    # subtypes are independent
    assert idx.covered_ranges(k, "BTCUSDT", "4h") == []
    assert idx.covered_ranges(k, "BTCUSDT", "1h", TimeRange(5, 12)) == [TimeRange(5, 12)]


def test_find_uncovered_skips_known_missing(tmp_path: Path):
    idx = CoverageIndex(tmp_path / "cov.sqlite")
    k = DataKind.FUNDING

    idx.record_coverage(k, "BTCUSDT", None, TimeRange(50, 60))
    idx.record_known_missing(k, "BTCUSDT", None, TimeRange(0, 20), reason="before_listing")

    assert idx.find_uncovered(k, "BTCUSDT", None, TimeRange(0, 100)) == [TimeRange(20, 50), TimeRange(60, 100)]
    assert idx.is_known_missing(k, "BTCUSDT", None, TimeRange(5, 15))
    assert not idx.is_known_missing(k, "BTCUSDT", None, TimeRange(5, 25))


def test_clear_range_trims_coverage_and_known_missing(tmp_path: Path):
    idx = CoverageIndex(tmp_path / "cov.sqlite")
    k = DataKind.CANDLES

    idx.record_coverage(k, "BTCUSDT", "1h", TimeRange(0, 100))
    idx.record_known_missing(k, "BTCUSDT", "1h", TimeRange(40, 45), reason="hole")
    idx.clear_range(k, "BTCUSDT", "1h", TimeRange(30, 50))

    assert idx.covered_ranges(k, "BTCUSDT", "1h") == [TimeRange(0, 30), TimeRange(50, 100)]
    assert idx.known_missing(k, "BTCUSDT", "1h") == []

    idx.clear(k, "BTCUSDT")
    assert idx.covered_ranges(k, "BTCUSDT", "1h") == []


def test_policy_defaults_and_tuning():
    candles = policy_for(DataKind.CANDLES)
    assert candles.interval_for("1h") == HOUR
    assert candles.tail_tolerance_for("1h") == 2 * HOUR
    assert candles.expected_count(TimeRange(JAN_1, FEB_1), "1h") == 744
    assert candles.estimate_api_calls(FEB_1 - JAN_1, "1m") == 30
    assert candles.fits_single_page(FEB_1 - JAN_1, "1h")
    assert not candles.fits_single_page(FEB_1 - JAN_1, "1m")

    trades = policy_for(DataKind.AGG_TRADES)
    assert trades.interval_for(None) is None
    assert trades.estimate_api_calls(DAY, None) == 24
    assert not trades.fits_single_page(DAY, None)

    tuned = policy_for(DataKind.CANDLES, KindTuning(min_fill_ratio=0.5, page_limit=100))
    assert tuned.min_fill_ratio == 0.5
    assert tuned.page_limit == 100
    assert tuned.bucket_size is candles.bucket_size


def test_bucket_completeness_rules():
    p = policy_for(DataKind.CANDLES)
    jan = TimeRange(JAN_1, FEB_1)

    def check(**kw):
        args = dict(bucket=jan, subtype="1h", first_ts_ms=JAN_1, last_ts_ms=FEB_1 - HOUR, count=744, now_ms=MAR_1)
        args.update(kw)
        return is_bucket_complete(p, **args)

    assert check()
    # still open
    assert not check(now_ms=FEB_1 - 1)
    # tail too far from the bucket end
    assert not check(last_ts_ms=FEB_1 - 3 * HOUR)
    # too few records
    assert not check(count=700)
    assert not check(count=0, first_ts_ms=None, last_ts_ms=None)
    # delisted mid-month: known-missing tail shrinks the live span
    delisted = JAN_1 + 10 * DAY
    assert check(last_ts_ms=delisted - HOUR, count=240, known_missing=[TimeRange(delisted, FEB_1)])
    # head too far from the bucket start
    assert not check(first_ts_ms=JAN_1 + DAY, count=720)
    # unless the head is known-missing (listed on Jan 2nd)
    assert check(first_ts_ms=JAN_1 + DAY, count=720, known_missing=[TimeRange(JAN_1, JAN_1 + DAY)])


def test_trade_bucket_needs_contiguous_ids():
    p = policy_for(DataKind.AGG_TRADES)
    day = TimeRange(JAN_1, JAN_1 + DAY)
    args = dict(bucket=day, subtype=None, first_ts_ms=JAN_1, last_ts_ms=JAN_1 + DAY - 60_000, count=1440, now_ms=MAR_1)

    assert is_bucket_complete(p, **args)
    assert not is_bucket_complete(p, **args, contiguous=False)
    # trades starting at noon
    assert not is_bucket_complete(p, **{**args, "first_ts_ms": JAN_1 + 12 * HOUR, "count": 720})


def test_tuning_applies_only_fields_set_in_config(tmp_path: Path):
    oi = policy_for(DataKind.OPEN_INTEREST)
    assert oi.max_lookback_ms == 30 * DAY
    assert policy_for(DataKind.OPEN_INTEREST, KindTuning()).max_lookback_ms == 30 * DAY
    assert policy_for(DataKind.OPEN_INTEREST, KindTuning(max_lookback_ms=None)).max_lookback_ms is None

    # null on a required value is ignored
    tuned = policy_for(DataKind.OPEN_INTEREST, KindTuning.model_validate({"page_limit": None}))
    assert tuned.page_limit == 500

    p = tmp_path / "marketcache.yaml"
    p.write_text("kinds:\n  openInterest:\n    max_lookback_ms: null\n  candles:\n    tail_tolerance_ms: 60000\n")
    cfg = load_marketcache_config(p)
    assert policy_for(DataKind.OPEN_INTEREST, cfg.tuning_for(DataKind.OPEN_INTEREST)).max_lookback_ms is None
    candles = policy_for(DataKind.CANDLES, cfg.tuning_for(DataKind.CANDLES))
    assert candles.tail_tolerance_ms == 60_000
    assert candles.staleness_ms is None
