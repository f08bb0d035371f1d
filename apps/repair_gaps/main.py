# apps/repair_gaps/main.py

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import List

from loguru import logger

from marketcache.common.config import load_marketcache_config
from marketcache.common.datetime_utils import fmt_range, now_ms, parse_time_arg
from marketcache.common.ranges import TimeRange
from marketcache.common.types import DataKind
from marketcache.context import MarketDataContext
from marketcache.store.bucket_files import BucketState


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Market-data cache repair tool (per bucket or per range)")

    p.add_argument("--config", default="config/marketcache.yaml", help="Config yaml path")
    p.add_argument("--kind", required=True, choices=[k.value for k in DataKind])
    p.add_argument("--symbol", required=True, help="Exchange symbol, e.g. BTCUSDT")
    p.add_argument("--timeframe", default=None, help="Timeframe for candles/premiumIndex")

    # Either a single bucket, or a range to repair
    p.add_argument("--bucket", default=None, help="Any ISO timestamp inside the bucket to refetch")
    p.add_argument("--start", default=None, help="Range start ISO (inclusive)")
    p.add_argument("--end", default=None, help="Range end ISO (exclusive); defaults to now")

    p.add_argument(
        "--partial-only",
        action="store_true",
        help="With --start/--end: only repair buckets that are not COMPLETE",
    )
    p.add_argument("--clear", action="store_true", help="Delete the whole cache for kind/symbol[/timeframe] first")
    return p.parse_args()


async def main_async() -> None:
    args = _parse_args()
    cfg = load_marketcache_config(Path(args.config))
    kind = DataKind(args.kind)

    if args.bucket is None and args.start is None and not args.clear:
        raise ValueError("Pass --bucket, --start/--end or --clear")

    ctx = MarketDataContext.from_config(cfg)
    store = ctx.store(kind)

    try:
        if args.clear:
            removed = store.clear_cache(args.symbol, subtype=args.timeframe)
            logger.info("Cleared {} files", removed)

        if args.bucket is not None:
            ts = parse_time_arg(args.bucket)
            records = await store.repair_bucket(args.symbol, ts, subtype=args.timeframe)
            logger.info("Bucket repair complete records={}", len(records))

        if args.start is not None:
            start_ms = parse_time_arg(args.start)
            end_ms = parse_time_arg(args.end) if args.end else now_ms()
            if end_ms <= start_ms:
                raise ValueError(f"end <= start (start={args.start} end={args.end})")

            ranges: List[TimeRange] = []
            for st in store.bucket_statuses(args.symbol, start_ms, end_ms, subtype=args.timeframe):
                if args.partial_only and st.state in (BucketState.COMPLETE, BucketState.EMPTY):
                    continue
                rng = TimeRange(max(st.start_ms, start_ms), min(st.end_ms_excl, end_ms))
                logger.debug("Queued for repair bucket={} state={} range={}", st.key, st.state.value, fmt_range(rng))
                ranges.append(rng)

            logger.info(
                "Gap repair starting kind={} symbol={} tf={} ranges={}",
                kind.value,
                args.symbol,
                args.timeframe,
                len(ranges),
            )
            fetched = await store.repair_gaps(args.symbol, ranges, subtype=args.timeframe)
            logger.info("Gap repair complete. new_records={}", fetched)
    finally:
        await ctx.client.close()


def main() -> None:
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        logger.info("Interrupted.")


if __name__ == "__main__":
    main()
