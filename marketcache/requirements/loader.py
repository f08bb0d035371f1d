from __future__ import annotations

import threading
from contextlib import nullcontext
from typing import Mapping, Optional, Sequence

from loguru import logger

from marketcache.common.types import DataKind
from marketcache.preload.scheduler import PreloadScheduler
from marketcache.requirements.tracker import DataRequirement, DataRequirementsTracker, Status, Tier
from marketcache.store.records import Record
from marketcache.store.series_store import TimeSeriesStore

_TYPE_NAMES = {
    "OHLC": DataKind.CANDLES,
    "CANDLES": DataKind.CANDLES,
    "AGGTRADES": DataKind.AGG_TRADES,
    "FUNDING": DataKind.FUNDING,
    "OI": DataKind.OPEN_INTEREST,
    "OPENINTEREST": DataKind.OPEN_INTEREST,
    "PREMIUM": DataKind.PREMIUM_INDEX,
}

_NEEDS_TIMEFRAME = (DataKind.CANDLES, DataKind.PREMIUM_INDEX)


def parse_data_type(data_type: str) -> tuple[DataKind, Optional[str]]:
    """'OHLC:1h' -> (CANDLES, '1h'), 'AggTrades' -> (AGG_TRADES, None)."""
    name, _, sub = data_type.strip().partition(":")
    kind = _TYPE_NAMES.get(name.strip().upper())
    if kind is None:
        raise ValueError(f"Unknown data type {data_type!r}")
    subtype = sub.strip() or None
    if kind in _NEEDS_TIMEFRAME and subtype is None:
        raise ValueError(f"Data type {data_type!r} needs a timeframe (e.g. 'OHLC:1h')")
    if kind not in _NEEDS_TIMEFRAME and subtype is not None:
        raise ValueError(f"Data type {data_type!r} takes no timeframe")
    return kind, subtype


class RequirementsLoader:
    """
    Loads declared requirements through the stores and reports progress to a tracker.
    TRADING requirements load first with background preloading paused, then VIEW ones.
    """

    def __init__(
        self,
        tracker: DataRequirementsTracker,
        stores: Mapping[DataKind, TimeSeriesStore],
        scheduler: Optional[PreloadScheduler] = None,
    ):
        self.tracker = tracker
        self.stores = dict(stores)
        self.scheduler = scheduler

    async def load(
        self,
        requirements: Sequence[DataRequirement],
        *,
        cancel: Optional[threading.Event] = None,
    ) -> dict[str, list[Record]]:
        for req in requirements:
            self.tracker.add_requirement(req)

        trading = [r for r in requirements if r.tier is Tier.TRADING]
        view = [r for r in requirements if r.tier is Tier.VIEW]
        out: dict[str, list[Record]] = {}

        gate = self.scheduler.priority_load() if self.scheduler is not None and trading else nullcontext()
        with gate:
            for req in trading:
                out[req.data_type] = await self.load_one(req, cancel=cancel)

        for req in view:
            out[req.data_type] = await self.load_one(req, cancel=cancel)
        return out

    async def load_one(self, req: DataRequirement, *, cancel: Optional[threading.Event] = None) -> list[Record]:
        dt = req.data_type
        self.tracker.update_status(dt, Status.CHECKING)
        try:
            kind, subtype = parse_data_type(dt)
            store = self.stores.get(kind)
            if store is None:
                raise KeyError(f"No store registered for kind={kind.value!r}")

            def _progress(done: int, total: int, message: str) -> None:
                self.tracker.update_status(dt, Status.FETCHING, done, total, message)

            records = await store.get_range(
                req.symbol,
                req.start_ms,
                req.end_ms,
                subtype=subtype,
                cancel=cancel,
                progress=_progress,
            )
        except Exception as e:
            logger.exception("Requirement load failed data_type={} symbol={}", dt, req.symbol)
            self.tracker.update_status(dt, Status.ERROR, message=str(e) or type(e).__name__)
            return []

        if cancel is not None and cancel.is_set():
            self.tracker.update_status(dt, Status.ERROR, len(records), 0, "cancelled")
            return records

        self.tracker.update_status(dt, Status.READY, len(records), len(records))
        logger.info("Requirement ready data_type={} symbol={} records={}", dt, req.symbol, len(records))
        return records
