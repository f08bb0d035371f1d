from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Iterator

_TIMEFRAME_RE = re.compile(r"^(\d+)([smhdw])$")


def timeframe_to_ms(tf: str) -> int:
    m = _TIMEFRAME_RE.match(tf.strip())
    if not m:
        raise ValueError(f"Invalid timeframe: {tf!r} (expected e.g. '1m', '5m', '1h')")

    n = int(m.group(1))
    unit = m.group(2)

    mult = {
        "s": 1_000,
        "m": 60_000,
        "h": 3_600_000,
        "d": 86_400_000,
        "w": 604_800_000,
    }[unit]
    return n * mult


def floor_ts(ts_ms: int, step_ms: int) -> int:
    return (ts_ms // step_ms) * step_ms


def ceil_ts(ts_ms: int, step_ms: int) -> int:
    if ts_ms % step_ms == 0:
        return ts_ms
    return ((ts_ms // step_ms) + 1) * step_ms


# =========================
# calendar buckets
# =========================

class BucketSize(str, Enum):
    DAY = "day"
    MONTH = "month"


def _utc(ts_ms: int) -> datetime:
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)


def _ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def bucket_start(ts_ms: int, size: BucketSize) -> int:
    if size is BucketSize.DAY:
        return floor_ts(ts_ms, 86_400_000)
    dt = _utc(ts_ms)
    return _ms(datetime(dt.year, dt.month, 1, tzinfo=timezone.utc))


def bucket_end(ts_ms: int, size: BucketSize) -> int:
    """Exclusive end of the bucket containing ts_ms."""
    if size is BucketSize.DAY:
        return floor_ts(ts_ms, 86_400_000) + 86_400_000
    dt = _utc(ts_ms)
    if dt.month == 12:
        nxt = datetime(dt.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        nxt = datetime(dt.year, dt.month + 1, 1, tzinfo=timezone.utc)
    return _ms(nxt)


def bucket_key(ts_ms: int, size: BucketSize) -> str:
    dt = _utc(bucket_start(ts_ms, size))
    if size is BucketSize.DAY:
        return dt.strftime("%Y-%m-%d")
    return dt.strftime("%Y-%m")


def parse_bucket_key(key: str, size: BucketSize) -> int:
    fmt = "%Y-%m-%d" if size is BucketSize.DAY else "%Y-%m"
    dt = datetime.strptime(key, fmt).replace(tzinfo=timezone.utc)
    return _ms(dt)


def iter_buckets(start_ms: int, end_ms_excl: int, size: BucketSize) -> Iterator[tuple[int, int]]:
    """Yield (bucket_start, bucket_end_excl) for every bucket touching [start_ms, end_ms_excl)."""
    if end_ms_excl <= start_ms:
        return
    cur = bucket_start(start_ms, size)
    while cur < end_ms_excl:
        nxt = bucket_end(cur, size)
        yield cur, nxt
        cur = nxt
