from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from loguru import logger

from marketcache.common.config import load_marketcache_config
from marketcache.common.datetime_utils import fmt_range, now_ms, parse_time_arg
from marketcache.common.ranges import TimeRange
from marketcache.common.types import DataKind
from marketcache.context import MarketDataContext


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Prime the local market-data cache for one kind/symbol/range.")
    p.add_argument("--config", default="config/marketcache.yaml", help="Config yaml path")
    p.add_argument("--kind", required=True, choices=[k.value for k in DataKind])
    p.add_argument("--symbol", required=True, help="Exchange symbol, e.g. BTCUSDT")
    p.add_argument("--timeframe", default=None, help="Timeframe for candles/premiumIndex, e.g. 1h")
    p.add_argument("--start", required=True, help="Start (inclusive): ISO time, date, epoch ms or now")
    p.add_argument("--end", default=None, help="End ISO (exclusive); defaults to now")
    return p.parse_args()


async def main_async() -> None:
    args = _parse_args()
    cfg = load_marketcache_config(Path(args.config))

    kind = DataKind(args.kind)
    start_ms = parse_time_arg(args.start)
    end_ms = parse_time_arg(args.end) if args.end else now_ms()
    if end_ms <= start_ms:
        raise ValueError(f"end <= start (start={args.start} end={args.end})")

    ctx = MarketDataContext.from_config(cfg)
    store = ctx.store(kind)

    def _progress(done: int, total: int, message: str) -> None:
        logger.debug("progress {}/{} {}", done, total, message)

    logger.info(
        "Backfiller starting kind={} symbol={} tf={} range={}",
        kind.value,
        args.symbol,
        args.timeframe,
        fmt_range(TimeRange(start_ms, end_ms)),
    )
    try:
        records = await store.get_range(args.symbol, start_ms, end_ms, subtype=args.timeframe, progress=_progress)
        for st in store.bucket_statuses(args.symbol, start_ms, end_ms, subtype=args.timeframe):
            logger.info("bucket={} state={} records={}", st.key, st.state.value, st.record_count)
        logger.info("Backfiller complete records={} data_dir={}", len(records), cfg.data_dir)
    finally:
        await ctx.client.close()


def main() -> None:
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        logger.info("Interrupted.")


if __name__ == "__main__":
    main()
