from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Optional

from .ranges import TimeRange


def now_ms() -> int:
    return time.time_ns() // 1_000_000


def parse_time_arg(s: str, *, now: Optional[int] = None) -> int:
    """
    CLI/config time value -> epoch ms (UTC).

    Accepts "now", raw epoch ms ("1704067200000"), a date ("2024-01-01",
    midnight UTC) or an ISO timestamp with "Z" or an offset. Naive timestamps
    are taken as UTC.
    """
    ss = s.strip()
    if not ss:
        raise ValueError("empty time value")
    if ss.lower() == "now":
        return now_ms() if now is None else now
    if ss.isdigit():
        return int(ss)

    if ss.endswith("Z"):
        ss = ss[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(ss)
    except ValueError as e:
        raise ValueError(f"Unrecognized time value {s!r}") from e
    dt = dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt.astimezone(timezone.utc)
    return int(dt.timestamp() * 1000)


def ms_to_iso8601_z(ts_ms: int) -> str:
    dt = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="seconds").replace("+00:00", "Z")


def fmt_range(rng: TimeRange) -> str:
    # "[2024-01-01T00:00:00Z .. 2024-02-01T00:00:00Z)"
    return f"[{ms_to_iso8601_z(rng.start_ms)} .. {ms_to_iso8601_z(rng.end_ms_excl)})"
