from __future__ import annotations

import asyncio
import csv
import io
import random
import zipfile
from typing import Any, Optional

import aiohttp
from loguru import logger

from marketcache.adapters.base import ExchangeDataClient
from marketcache.common.config import ClientConfig
from marketcache.common.errors import NetworkError, ParseError
from marketcache.common.types import DataKind
from marketcache.store.records import AggTrade, Candle, FundingRate, OpenInterest, PremiumIndex, Record


BINANCE_SUPPORTED_TFS = {
    "1m", "3m", "5m", "15m", "30m",
    "1h", "2h", "4h", "6h", "8h", "12h",
    "1d", "3d", "1w",
}

_ENDPOINTS = {
    DataKind.CANDLES: "/fapi/v1/klines",
    DataKind.AGG_TRADES: "/fapi/v1/aggTrades",
    DataKind.FUNDING: "/fapi/v1/fundingRate",
    DataKind.OPEN_INTEREST: "/futures/data/openInterestHist",
    DataKind.PREMIUM_INDEX: "/fapi/v1/premiumIndexKlines",
}

OPEN_INTEREST_PERIOD = "5m"


class _NotFound(Exception):
    pass


def _is_int(s: str) -> bool:
    return s.strip().lstrip("-").isdigit()


class BinanceFuturesClient(ExchangeDataClient):
    """
    Binance USD-M futures REST + data.binance.vision archives.

    Every request gets a fresh ClientSession so the client can be driven from any event loop.
    """

    def __init__(self, cfg: Optional[ClientConfig] = None):
        self.cfg = cfg or ClientConfig()

    def _validate_tf(self, timeframe: Optional[str]) -> str:
        if not timeframe or timeframe not in BINANCE_SUPPORTED_TFS:
            raise ValueError(
                f"Unsupported Binance interval timeframe={timeframe!r}. "
                f"Supported: {sorted(BINANCE_SUPPORTED_TFS)}"
            )
        return timeframe

    def _timeout(self, read_s: float) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(sock_connect=self.cfg.connect_timeout_s, sock_read=read_s)

    async def _get(self, url: str, *, params: Optional[dict[str, str]] = None, read_s: float, binary: bool = False) -> Any:
        last_err: Optional[BaseException] = None
        for attempt in range(1, self.cfg.max_retries + 1):
            try:
                async with aiohttp.ClientSession(timeout=self._timeout(read_s)) as sess:
                    async with sess.get(url, params=params) as resp:
                        if resp.status == 404:
                            raise _NotFound(url)
                        if resp.status != 200:
                            text = await resp.text()
                            raise NetworkError(f"Binance HTTP {resp.status} url={url}: {text[:200]}")
                        if binary:
                            return await resp.read()
                        return await resp.json()

            except _NotFound:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, NetworkError) as e:
                last_err = e
                if attempt == self.cfg.max_retries:
                    break
                base = min(2 ** (attempt - 1), 10)
                logger.warning("Binance request failed attempt={} url={} err={}", attempt, url, e)
                await asyncio.sleep(base + random.uniform(0, 0.25))

        raise NetworkError(f"Binance request failed after {self.cfg.max_retries} attempts url={url}") from last_err

    # =========================
    # REST pages
    # =========================

    async def fetch_range(
        self,
        kind: DataKind,
        symbol: str,
        subtype: Optional[str],
        start_ms: int,
        end_ms: int,
        limit: int,
    ) -> list[Record]:
        params = {
            "symbol": symbol,
            "startTime": str(start_ms),
            "endTime": str(end_ms - 1),  # Binance endTime is inclusive
            "limit": str(limit),
        }
        if kind in (DataKind.CANDLES, DataKind.PREMIUM_INDEX):
            params["interval"] = self._validate_tf(subtype)
        elif kind is DataKind.OPEN_INTEREST:
            params["period"] = OPEN_INTEREST_PERIOD

        url = f"{self.cfg.base_url}{_ENDPOINTS[kind]}"
        try:
            data = await self._get(url, params=params, read_s=self.cfg.read_timeout_s)
        except _NotFound as e:
            raise NetworkError(f"Binance endpoint not found url={url}") from e

        if not isinstance(data, list):
            raise NetworkError(f"Unexpected Binance payload for {kind.value}: {str(data)[:200]}")

        out: list[Record] = []
        for row in data:
            try:
                out.append(_parse_api_row(kind, row))
            except ParseError as e:
                logger.warning("Skipping malformed {} record: {}", kind.value, e)
        out.sort(key=lambda r: (r.ts_ms, r.key))
        return [r for r in out if start_ms <= r.ts_ms < end_ms]

    # =========================
    # bulk archives
    # =========================

    def archive_url(self, kind: DataKind, symbol: str, subtype: Optional[str], bucket_key: str) -> Optional[str]:
        base = self.cfg.archive_base_url
        if kind is DataKind.CANDLES:
            tf = self._validate_tf(subtype)
            return f"{base}/monthly/klines/{symbol}/{tf}/{symbol}-{tf}-{bucket_key}.zip"
        if kind is DataKind.PREMIUM_INDEX:
            tf = self._validate_tf(subtype)
            return f"{base}/monthly/premiumIndexKlines/{symbol}/{tf}/{symbol}-{tf}-{bucket_key}.zip"
        if kind is DataKind.FUNDING:
            return f"{base}/monthly/fundingRate/{symbol}/{symbol}-fundingRate-{bucket_key}.zip"
        if kind is DataKind.AGG_TRADES:
            return f"{base}/daily/aggTrades/{symbol}/{symbol}-aggTrades-{bucket_key}.zip"
        return None

    async def fetch_bulk_archive(
        self,
        kind: DataKind,
        symbol: str,
        subtype: Optional[str],
        bucket_key: str,
    ) -> Optional[list[Record]]:
        url = self.archive_url(kind, symbol, subtype, bucket_key)
        if url is None:
            return None

        logger.info("Archive download kind={} symbol={} bucket={}", kind.value, symbol, bucket_key)
        try:
            body = await self._get(url, read_s=self.cfg.archive_read_timeout_s, binary=True)
        except _NotFound:
            logger.debug("Archive not found url={}", url)
            return None

        out = parse_archive_zip(kind, body)
        logger.info("Archive parsed kind={} symbol={} bucket={} rows={}", kind.value, symbol, bucket_key, len(out))
        return out


def _parse_api_row(kind: DataKind, row: Any) -> Record:
    try:
        if kind is DataKind.CANDLES:
            return Candle(
                ts_ms=int(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
            )
        if kind is DataKind.PREMIUM_INDEX:
            return PremiumIndex(
                ts_ms=int(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
            )
        if kind is DataKind.AGG_TRADES:
            return AggTrade(
                agg_id=int(row["a"]),
                price=float(row["p"]),
                qty=float(row["q"]),
                first_id=int(row["f"]),
                last_id=int(row["l"]),
                ts_ms=int(row["T"]),
                buyer_maker=bool(row["m"]),
            )
        if kind is DataKind.FUNDING:
            return FundingRate(
                ts_ms=int(row["fundingTime"]),
                rate=float(row["fundingRate"]),
                mark_price=float(row.get("markPrice") or 0.0),
            )
        if kind is DataKind.OPEN_INTEREST:
            return OpenInterest(
                ts_ms=int(row["timestamp"]),
                open_interest=float(row["sumOpenInterest"]),
                open_interest_value=float(row["sumOpenInterestValue"]),
            )
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise ParseError(f"{kind.value} row {str(row)[:120]!r}") from e
    raise ValueError(f"Unsupported kind {kind!r}")


def _parse_archive_row(kind: DataKind, row: list[str]) -> Record:
    try:
        if kind is DataKind.CANDLES:
            # open_time,open,high,low,close,volume,close_time,...
            return Candle(
                ts_ms=int(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
            )
        if kind is DataKind.PREMIUM_INDEX:
            return PremiumIndex(
                ts_ms=int(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
            )
        if kind is DataKind.AGG_TRADES:
            # agg_trade_id,price,quantity,first_trade_id,last_trade_id,transact_time,is_buyer_maker
            return AggTrade(
                agg_id=int(row[0]),
                price=float(row[1]),
                qty=float(row[2]),
                first_id=int(row[3]),
                last_id=int(row[4]),
                ts_ms=int(row[5]),
                buyer_maker=row[6].strip().lower() == "true",
            )
        if kind is DataKind.FUNDING:
            # calc_time,funding_interval_hours,last_funding_rate
            return FundingRate(ts_ms=int(row[0]), rate=float(row[2]), mark_price=0.0)
    except (IndexError, ValueError) as e:
        raise ParseError(f"{kind.value} archive row {row!r}") from e
    raise ValueError(f"No archive format for kind {kind!r}")


def parse_archive_zip(kind: DataKind, body: bytes) -> list[Record]:
    try:
        zf = zipfile.ZipFile(io.BytesIO(body))
    except zipfile.BadZipFile as e:
        raise ParseError(f"bad archive zip for {kind.value}") from e

    out: list[Record] = []
    skipped = 0
    with zf:
        for name in zf.namelist():
            if not name.endswith(".csv"):
                continue
            with zf.open(name) as raw:
                reader = csv.reader(io.TextIOWrapper(raw, encoding="utf-8"))
                for row in reader:
                    # header rows exist in newer archives only
                    if not row or not _is_int(row[0]):
                        continue
                    try:
                        out.append(_parse_archive_row(kind, row))
                    except ParseError:
                        skipped += 1
    if skipped:
        logger.warning("Archive {} skipped {} malformed rows", kind.value, skipped)
    out.sort(key=lambda r: (r.ts_ms, r.key))
    return out
