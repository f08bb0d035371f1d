from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from marketcache.adapters.base import ExchangeDataClient
from marketcache.adapters.binance_futures.client import BinanceFuturesClient
from marketcache.common.config import MarketCacheConfig
from marketcache.common.datetime_utils import now_ms
from marketcache.common.download_log import DownloadLog
from marketcache.common.types import DataKind
from marketcache.pages.manager import DataPageManager
from marketcache.preload.scheduler import PreloadScheduler
from marketcache.requirements.loader import RequirementsLoader
from marketcache.requirements.tracker import DataRequirementsTracker
from marketcache.store.bucket_files import BucketFiles
from marketcache.store.coverage_index import CoverageIndex
from marketcache.store.policy import policy_for
from marketcache.store.series_store import TimeSeriesStore


class MarketDataContext:
    """
    Owns every market-data component for one process.

    Teardown order: pages, scheduler, client.
    """

    def __init__(
        self,
        cfg: MarketCacheConfig,
        *,
        client: ExchangeDataClient,
        stores: dict[DataKind, TimeSeriesStore],
        coverage: CoverageIndex,
        download_log: DownloadLog,
        scheduler: PreloadScheduler,
        pages: DataPageManager,
    ):
        self.cfg = cfg
        self.client = client
        self.stores = stores
        self.coverage = coverage
        self.download_log = download_log
        self.scheduler = scheduler
        self.pages = pages
        self.tracker = DataRequirementsTracker()
        self.loader = RequirementsLoader(self.tracker, stores, scheduler)
        self._started = False

    @classmethod
    def from_config(
        cls,
        cfg: MarketCacheConfig,
        *,
        client: Optional[ExchangeDataClient] = None,
        clock: Callable[[], int] = now_ms,
    ) -> MarketDataContext:
        client = client or BinanceFuturesClient(cfg.client)
        data_dir = Path(cfg.data_dir)
        files = BucketFiles(data_dir)
        coverage = CoverageIndex(cfg.coverage_db_path)
        download_log = DownloadLog(
            max_events=cfg.download_log.max_events,
            max_events_per_page=cfg.download_log.max_events_per_page,
        )

        stores = {
            kind: TimeSeriesStore(
                kind,
                policy_for(kind, cfg.tuning_for(kind)),
                client,
                files,
                coverage,
                clock=clock,
                download_log=download_log,
            )
            for kind in DataKind
        }

        scheduler = PreloadScheduler(
            stores,
            rate_limit_delay_s=cfg.scheduler.rate_limit_delay_s,
            pause_poll_s=cfg.scheduler.pause_poll_s,
            join_timeout_s=cfg.scheduler.join_timeout_s,
            clock=clock,
        )
        pages = DataPageManager(
            stores,
            fetch_workers=cfg.pages.fetch_workers,
            sync_check_interval_s=cfg.pages.sync_check_interval_s,
            min_resync_interval_s=cfg.pages.min_resync_interval_s,
            clock=clock,
            download_log=download_log,
        )
        logger.info("MarketDataContext data_dir={} kinds={}", data_dir, [k.value for k in stores])
        return cls(
            cfg,
            client=client,
            stores=stores,
            coverage=coverage,
            download_log=download_log,
            scheduler=scheduler,
            pages=pages,
        )

    def store(self, kind: DataKind) -> TimeSeriesStore:
        return self.stores[kind]

    def start(self) -> None:
        if self._started:
            return
        self.pages.start()
        self.scheduler.start()
        self._started = True

    def close(self) -> None:
        self.pages.shutdown()
        self.scheduler.shutdown()
        try:
            asyncio.run(self.client.close())
        except RuntimeError as e:
            # called from inside a running loop; the client holds no loop-bound state
            logger.debug("Client close skipped: {}", e)
        self._started = False

    def __enter__(self) -> MarketDataContext:
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
