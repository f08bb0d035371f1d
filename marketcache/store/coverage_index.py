from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from marketcache.common.datetime_utils import now_ms
from marketcache.common.errors import LocalIOError
from marketcache.common.ranges import TimeRange, merge_ranges, subtract_ranges
from marketcache.common.types import DataKind


@dataclass(frozen=True)
class CoverageRow:
    kind: str
    symbol: str
    subtype: str
    start_ms: int          # inclusive
    end_ms_excl: int       # exclusive
    updated_at_ms: int


def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS coverage_ranges (
          kind TEXT NOT NULL,
          symbol TEXT NOT NULL,
          subtype TEXT NOT NULL,
          start_ms INTEGER NOT NULL,       -- inclusive
          end_ms_excl INTEGER NOT NULL,    -- exclusive
          updated_at_ms INTEGER NOT NULL,
          PRIMARY KEY (kind, symbol, subtype, start_ms)
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS known_missing_ranges (
          kind TEXT NOT NULL,
          symbol TEXT NOT NULL,
          subtype TEXT NOT NULL,
          start_ms INTEGER NOT NULL,       -- inclusive
          end_ms_excl INTEGER NOT NULL,    -- exclusive
          reason TEXT NOT NULL,
          updated_at_ms INTEGER NOT NULL,
          PRIMARY KEY (kind, symbol, subtype, start_ms, end_ms_excl)
        );
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_known_missing_lookup
          ON known_missing_ranges (kind, symbol, subtype, start_ms, end_ms_excl);
        """
    )
    conn.commit()


def _sub(subtype: Optional[str]) -> str:
    return subtype or ""


class CoverageIndex:
    """
    Covered and known-missing ranges per (kind, symbol, subtype).

    Coverage rows are kept merged: after every write, rows for a key never overlap or touch.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = str(db_path)
        self._lock = threading.Lock()
        try:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            with self._conn() as conn:
                ensure_schema(conn)
        except (OSError, sqlite3.OperationalError) as e:
            raise LocalIOError(f"cannot open coverage index {self.db_path}: {e}") from e

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    # =========================
    # coverage
    # =========================

    def record_coverage(self, kind: DataKind, symbol: str, subtype: Optional[str], rng: TimeRange) -> None:
        if rng.is_empty:
            return
        sub = _sub(subtype)
        with self._lock, self._conn() as conn:
            rows = conn.execute(
                """
                SELECT start_ms, end_ms_excl
                FROM coverage_ranges
                WHERE kind=? AND symbol=? AND subtype=?
                  AND start_ms<=? AND end_ms_excl>=?
                """,
                (kind.value, symbol, sub, rng.end_ms_excl, rng.start_ms),
            ).fetchall()
            merged = merge_ranges([rng, *(TimeRange(int(s), int(e)) for s, e in rows)])
            conn.executemany(
                "DELETE FROM coverage_ranges WHERE kind=? AND symbol=? AND subtype=? AND start_ms=?",
                [(kind.value, symbol, sub, int(s)) for s, _ in rows],
            )
            ts = now_ms()
            conn.executemany(
                """
                INSERT INTO coverage_ranges (kind, symbol, subtype, start_ms, end_ms_excl, updated_at_ms)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [(kind.value, symbol, sub, r.start_ms, r.end_ms_excl, ts) for r in merged],
            )
            conn.commit()

    def covered_ranges(
        self,
        kind: DataKind,
        symbol: str,
        subtype: Optional[str],
        within: Optional[TimeRange] = None,
    ) -> list[TimeRange]:
        sql = "SELECT start_ms, end_ms_excl FROM coverage_ranges WHERE kind=? AND symbol=? AND subtype=?"
        params: list[object] = [kind.value, symbol, _sub(subtype)]
        if within is not None:
            sql += " AND start_ms<? AND end_ms_excl>?"
            params.extend([within.end_ms_excl, within.start_ms])
        sql += " ORDER BY start_ms"
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        out = [TimeRange(int(s), int(e)) for s, e in rows]
        if within is None:
            return out
        return [x for x in (r.intersect(within) for r in out) if x is not None]

    def get_coverage(self, kind: DataKind, symbol: str, subtype: Optional[str]) -> list[CoverageRow]:
        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT kind, symbol, subtype, start_ms, end_ms_excl, updated_at_ms
                FROM coverage_ranges
                WHERE kind=? AND symbol=? AND subtype=?
                ORDER BY start_ms
                """,
                (kind.value, symbol, _sub(subtype)),
            ).fetchall()
        return [
            CoverageRow(
                kind=str(r[0]),
                symbol=str(r[1]),
                subtype=str(r[2]),
                start_ms=int(r[3]),
                end_ms_excl=int(r[4]),
                updated_at_ms=int(r[5]),
            )
            for r in rows
        ]

    def find_uncovered(self, kind: DataKind, symbol: str, subtype: Optional[str], rng: TimeRange) -> list[TimeRange]:
        holes = self.covered_ranges(kind, symbol, subtype, rng) + self.known_missing(kind, symbol, subtype, rng)
        return subtract_ranges(rng, holes)

    # =========================
    # known-missing
    # =========================

    def record_known_missing(
        self,
        kind: DataKind,
        symbol: str,
        subtype: Optional[str],
        rng: TimeRange,
        *,
        reason: str,
    ) -> None:
        if rng.is_empty:
            return
        with self._lock, self._conn() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO known_missing_ranges
                  (kind, symbol, subtype, start_ms, end_ms_excl, reason, updated_at_ms)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (kind.value, symbol, _sub(subtype), rng.start_ms, rng.end_ms_excl, reason, now_ms()),
            )
            conn.commit()

    def known_missing(
        self,
        kind: DataKind,
        symbol: str,
        subtype: Optional[str],
        within: Optional[TimeRange] = None,
    ) -> list[TimeRange]:
        sql = "SELECT start_ms, end_ms_excl FROM known_missing_ranges WHERE kind=? AND symbol=? AND subtype=?"
        params: list[object] = [kind.value, symbol, _sub(subtype)]
        if within is not None:
            sql += " AND start_ms<? AND end_ms_excl>?"
            params.extend([within.end_ms_excl, within.start_ms])
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        out = merge_ranges(TimeRange(int(s), int(e)) for s, e in rows)
        if within is None:
            return out
        return [x for x in (r.intersect(within) for r in out) if x is not None]

    def is_known_missing(self, kind: DataKind, symbol: str, subtype: Optional[str], rng: TimeRange) -> bool:
        return not subtract_ranges(rng, self.known_missing(kind, symbol, subtype, rng))

    # =========================
    # maintenance
    # =========================

    def clear_range(self, kind: DataKind, symbol: str, subtype: Optional[str], rng: TimeRange) -> None:
        """Forget coverage inside rng and drop any known-missing entry overlapping it."""
        sub = _sub(subtype)
        with self._lock, self._conn() as conn:
            rows = conn.execute(
                """
                SELECT start_ms, end_ms_excl
                FROM coverage_ranges
                WHERE kind=? AND symbol=? AND subtype=? AND start_ms<? AND end_ms_excl>?
                """,
                (kind.value, symbol, sub, rng.end_ms_excl, rng.start_ms),
            ).fetchall()
            conn.executemany(
                "DELETE FROM coverage_ranges WHERE kind=? AND symbol=? AND subtype=? AND start_ms=?",
                [(kind.value, symbol, sub, int(s)) for s, _ in rows],
            )
            ts = now_ms()
            keep: list[TimeRange] = []
            for s, e in rows:
                keep.extend(subtract_ranges(TimeRange(int(s), int(e)), [rng]))
            conn.executemany(
                """
                INSERT INTO coverage_ranges (kind, symbol, subtype, start_ms, end_ms_excl, updated_at_ms)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [(kind.value, symbol, sub, r.start_ms, r.end_ms_excl, ts) for r in keep],
            )
            conn.execute(
                """
                DELETE FROM known_missing_ranges
                WHERE kind=? AND symbol=? AND subtype=? AND start_ms<? AND end_ms_excl>?
                """,
                (kind.value, symbol, sub, rng.end_ms_excl, rng.start_ms),
            )
            conn.commit()

    def clear(self, kind: DataKind, symbol: str, subtype: Optional[str] = None) -> None:
        with self._lock, self._conn() as conn:
            for table in ("coverage_ranges", "known_missing_ranges"):
                if subtype is None:
                    conn.execute(f"DELETE FROM {table} WHERE kind=? AND symbol=?", (kind.value, symbol))
                else:
                    conn.execute(
                        f"DELETE FROM {table} WHERE kind=? AND symbol=? AND subtype=?",
                        (kind.value, symbol, _sub(subtype)),
                    )
            conn.commit()
