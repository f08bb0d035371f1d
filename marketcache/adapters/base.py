from __future__ import annotations

import abc
import threading
from typing import Optional

from loguru import logger

from marketcache.common.types import DataKind, ProgressSink, report
from marketcache.store.records import Record, merge_records


class ExchangeDataClient(abc.ABC):
    """
    Raw record source for the stores.

    fetch_range returns one page; fetch_all paginates on top of it. Implementations
    must return records sorted ascending and restricted to [start_ms, end_ms).
    """

    @abc.abstractmethod
    async def fetch_range(
        self,
        kind: DataKind,
        symbol: str,
        subtype: Optional[str],
        start_ms: int,
        end_ms: int,
        limit: int,
    ) -> list[Record]: ...

    @abc.abstractmethod
    async def fetch_bulk_archive(
        self,
        kind: DataKind,
        symbol: str,
        subtype: Optional[str],
        bucket_key: str,
    ) -> Optional[list[Record]]:
        """Whole-bucket archive download. None when the archive does not exist."""
        ...

    async def close(self) -> None:
        return None

    async def fetch_all(
        self,
        kind: DataKind,
        symbol: str,
        subtype: Optional[str],
        start_ms: int,
        end_ms: int,
        *,
        limit: int,
        window_ms: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
        progress: Optional[ProgressSink] = None,
    ) -> list[Record]:
        """
        Paginate [start_ms, end_ms) with a cursor.

        Stops on a short page at the end of the range, when the cursor does not advance,
        or when cancel is set (returning what was fetched so far).
        Trades resume at the last timestamp (inclusive) since many can share one ms;
        duplicates are removed by key.
        """
        inclusive_cursor = kind is DataKind.AGG_TRADES
        cursor = int(start_ms)
        pages = 0
        out: list[Record] = []

        while cursor < end_ms:
            if cancel is not None and cancel.is_set():
                logger.info("fetch_all cancelled kind={} symbol={} cursor={} rows={}", kind.value, symbol, cursor, len(out))
                break

            page_end = min(end_ms, cursor + window_ms) if window_ms else end_ms
            rows = await self.fetch_range(kind, symbol, subtype, cursor, page_end, limit)
            rows = [r for r in rows if cursor <= r.ts_ms < page_end]
            pages += 1
            out.extend(rows)
            report(progress, cursor - start_ms, end_ms - start_ms, f"{kind.value} {symbol} page {pages}")

            if len(rows) < limit:
                if page_end >= end_ms:
                    break
                cursor = page_end
                continue

            last_ts = rows[-1].ts_ms
            next_cursor = last_ts if inclusive_cursor else last_ts + 1
            if next_cursor <= cursor:
                if not inclusive_cursor:
                    logger.warning("fetch_all cursor did not advance (cursor={} last_ts={}) - stopping", cursor, last_ts)
                    break
                # a full page inside one ms: step past it
                next_cursor = last_ts + 1
            cursor = next_cursor

        if pages > 1:
            logger.debug("fetch_all kind={} symbol={} pages={} rows={}", kind.value, symbol, pages, len(out))
        return merge_records([], out) if inclusive_cursor else out
