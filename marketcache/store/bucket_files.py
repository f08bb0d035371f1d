from __future__ import annotations

import csv
import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence, Type

from loguru import logger

from marketcache.common.errors import LocalIOError, ParseError
from marketcache.common.types import DataKind

_KIND_DIRS = {
    DataKind.CANDLES: "candles",
    DataKind.AGG_TRADES: "aggTrades",
    DataKind.FUNDING: "funding",
    DataKind.OPEN_INTEREST: "openinterest",
    DataKind.PREMIUM_INDEX: "premium",
}

COMPLETE_SUFFIX = ".csv"
PARTIAL_SUFFIX = ".partial.csv"
EMPTY_SUFFIX = ".empty"


class BucketState(str, Enum):
    ABSENT = "absent"
    PARTIAL = "partial"
    COMPLETE = "complete"
    EMPTY = "empty"


class BucketFiles:
    """
    On-disk layout: <data_dir>/<SYMBOL>/<kind dir>[/<subtype>]/<bucket key><suffix>

    Exactly one of <key>.csv, <key>.partial.csv, <key>.empty exists per bucket.
    Every write goes to a temp file in the same directory and is swapped in with os.replace.
    """

    def __init__(self, data_dir: Path | str):
        self.data_dir = Path(data_dir)

    def dir_for(self, kind: DataKind, symbol: str, subtype: Optional[str]) -> Path:
        d = self.data_dir / symbol / _KIND_DIRS[kind]
        if subtype:
            d = d / subtype
        return d

    def _paths(self, kind: DataKind, symbol: str, subtype: Optional[str], key: str) -> tuple[Path, Path, Path]:
        d = self.dir_for(kind, symbol, subtype)
        return d / f"{key}{COMPLETE_SUFFIX}", d / f"{key}{PARTIAL_SUFFIX}", d / f"{key}{EMPTY_SUFFIX}"

    def state(self, kind: DataKind, symbol: str, subtype: Optional[str], key: str) -> BucketState:
        complete, partial, empty = self._paths(kind, symbol, subtype, key)
        if empty.exists():
            return BucketState.EMPTY
        if complete.exists():
            return BucketState.COMPLETE
        if partial.exists():
            return BucketState.PARTIAL
        return BucketState.ABSENT

    def read(
        self,
        kind: DataKind,
        symbol: str,
        subtype: Optional[str],
        key: str,
        record_type: Type,
    ) -> tuple[BucketState, list]:
        state = self.state(kind, symbol, subtype, key)
        if state in (BucketState.ABSENT, BucketState.EMPTY):
            return state, []

        complete, partial, _ = self._paths(kind, symbol, subtype, key)
        path = complete if state is BucketState.COMPLETE else partial
        header = record_type.CSV_HEADER

        out: list = []
        skipped = 0
        try:
            with path.open("r", newline="") as f:
                reader = csv.reader(f)
                first = next(reader, None)
                if first is None:
                    return BucketState.ABSENT, []
                if len(first) != len(header):
                    logger.warning(
                        "Cache file has {} columns, expected {} - treating as absent path={}",
                        len(first),
                        len(header),
                        path,
                    )
                    return BucketState.ABSENT, []
                rows = [first] if first[0] != header[0] else []
                rows.extend(reader)
                for row in rows:
                    if not row:
                        continue
                    if len(row) != len(header):
                        logger.warning("Cache row column mismatch - treating as absent path={}", path)
                        return BucketState.ABSENT, []
                    try:
                        out.append(record_type.from_row(row))
                    except ParseError as e:
                        skipped += 1
                        logger.warning("Skipping malformed cached row path={} err={}", path, e)
        except OSError as e:
            raise LocalIOError(f"failed to read {path}: {e}") from e

        if skipped:
            logger.info("Loaded {} rows ({} skipped) from {}", len(out), skipped, path)
        return state, out

    def write(
        self,
        kind: DataKind,
        symbol: str,
        subtype: Optional[str],
        key: str,
        records: Sequence,
        record_type: Type,
        *,
        complete: bool,
    ) -> Path:
        complete_p, partial_p, empty_p = self._paths(kind, symbol, subtype, key)
        target = complete_p if complete else partial_p
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=f".{key}.", suffix=".tmp", dir=str(target.parent))
            try:
                with os.fdopen(fd, "w", newline="") as f:
                    w = csv.writer(f)
                    w.writerow(record_type.CSV_HEADER)
                    for r in records:
                        w.writerow(r.to_row())
                os.replace(tmp, target)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise

            # drop the other variants only after the new file is in place
            for other in (complete_p, partial_p, empty_p):
                if other != target and other.exists():
                    other.unlink()
        except OSError as e:
            raise LocalIOError(f"failed to write {target}: {e}") from e
        return target

    def write_empty_marker(self, kind: DataKind, symbol: str, subtype: Optional[str], key: str) -> Path:
        complete_p, partial_p, empty_p = self._paths(kind, symbol, subtype, key)
        try:
            empty_p.parent.mkdir(parents=True, exist_ok=True)
            empty_p.touch()
            for other in (complete_p, partial_p):
                if other.exists():
                    other.unlink()
        except OSError as e:
            raise LocalIOError(f"failed to write {empty_p}: {e}") from e
        return empty_p

    def delete(self, kind: DataKind, symbol: str, subtype: Optional[str], key: str) -> None:
        try:
            for p in self._paths(kind, symbol, subtype, key):
                if p.exists():
                    p.unlink()
        except OSError as e:
            raise LocalIOError(f"failed to delete bucket {key}: {e}") from e

    def clear(self, kind: DataKind, symbol: str, subtype: Optional[str]) -> int:
        """Remove every bucket file for (kind, symbol[, subtype]). Returns files removed."""
        d = self.dir_for(kind, symbol, subtype)
        if not d.exists():
            return 0
        removed = 0
        try:
            for p in sorted(d.rglob("*")):
                if p.is_file() and (p.name.endswith(COMPLETE_SUFFIX) or p.name.endswith(EMPTY_SUFFIX)):
                    p.unlink()
                    removed += 1
        except OSError as e:
            raise LocalIOError(f"failed to clear {d}: {e}") from e
        return removed

    def list_keys(self, kind: DataKind, symbol: str, subtype: Optional[str]) -> list[str]:
        d = self.dir_for(kind, symbol, subtype)
        if not d.exists():
            return []
        keys: set[str] = set()
        for p in d.iterdir():
            name = p.name
            for suffix in (PARTIAL_SUFFIX, COMPLETE_SUFFIX, EMPTY_SUFFIX):
                if name.endswith(suffix) and not name.startswith("."):
                    keys.add(name[: -len(suffix)])
                    break
        return sorted(keys)
