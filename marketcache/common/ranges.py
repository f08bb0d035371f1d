from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence


@dataclass(frozen=True, order=True)
class TimeRange:
    start_ms: int        # inclusive
    end_ms_excl: int     # exclusive

    def __post_init__(self) -> None:
        if self.end_ms_excl < self.start_ms:
            raise ValueError(f"TimeRange end < start ({self.start_ms}..{self.end_ms_excl})")

    @property
    def duration_ms(self) -> int:
        return self.end_ms_excl - self.start_ms

    @property
    def is_empty(self) -> bool:
        return self.end_ms_excl <= self.start_ms

    def contains(self, ts_ms: int) -> bool:
        return self.start_ms <= ts_ms < self.end_ms_excl

    def covers(self, other: TimeRange) -> bool:
        return self.start_ms <= other.start_ms and other.end_ms_excl <= self.end_ms_excl

    def intersect(self, other: TimeRange) -> Optional[TimeRange]:
        s = max(self.start_ms, other.start_ms)
        e = min(self.end_ms_excl, other.end_ms_excl)
        if e <= s:
            return None
        return TimeRange(s, e)


def merge_ranges(ranges: Iterable[TimeRange]) -> list[TimeRange]:
    """Sort and coalesce overlapping or adjacent ranges."""
    items = sorted(r for r in ranges if not r.is_empty)
    merged: list[TimeRange] = []
    for r in items:
        if not merged:
            merged.append(r)
            continue
        prev = merged[-1]
        if r.start_ms <= prev.end_ms_excl:
            merged[-1] = TimeRange(prev.start_ms, max(prev.end_ms_excl, r.end_ms_excl))
        else:
            merged.append(r)
    return merged


def subtract_ranges(base: TimeRange, holes: Sequence[TimeRange]) -> list[TimeRange]:
    """Return the parts of base not covered by any of holes, ascending."""
    out: list[TimeRange] = []
    cursor = base.start_ms
    for h in merge_ranges(holes):
        if h.end_ms_excl <= cursor:
            continue
        if h.start_ms >= base.end_ms_excl:
            break
        if h.start_ms > cursor:
            out.append(TimeRange(cursor, h.start_ms))
        cursor = max(cursor, h.end_ms_excl)
    if cursor < base.end_ms_excl:
        out.append(TimeRange(cursor, base.end_ms_excl))
    return out


def total_duration(ranges: Iterable[TimeRange]) -> int:
    return sum(r.duration_ms for r in merge_ranges(ranges))
