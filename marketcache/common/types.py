from __future__ import annotations

from enum import Enum
from typing import Callable, Optional


class DataKind(str, Enum):
    CANDLES = "candles"
    AGG_TRADES = "aggTrades"
    FUNDING = "funding"
    OPEN_INTEREST = "openInterest"
    PREMIUM_INDEX = "premiumIndex"


# (done, total, message)
ProgressSink = Callable[[int, int, str], None]


def normalize_symbol(symbol: str) -> str:
    # "BTC/USDT" and "btcusdt" -> "BTCUSDT"
    s = symbol.strip().upper().replace("/", "").replace("-", "")
    if not s:
        raise ValueError(f"symbol must be non-empty (got {symbol!r})")
    return s


def report(progress: Optional[ProgressSink], done: int, total: int, message: str) -> None:
    if progress is not None:
        progress(done, total, message)
