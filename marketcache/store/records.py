from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Dict, Protocol, Sequence, Tuple, Type, Union

from marketcache.common.errors import ParseError
from marketcache.common.types import DataKind


class TimeSeriesRecord(Protocol):
    CSV_HEADER: ClassVar[Tuple[str, ...]]

    @property
    def ts_ms(self) -> int: ...

    @property
    def key(self) -> int: ...

    def to_row(self) -> list[str]: ...


def _num(v: float) -> str:
    # repr keeps round-trip precision without trailing noise for integral values
    return repr(float(v))


def _check_width(row: Sequence[str], header: Tuple[str, ...]) -> None:
    if len(row) != len(header):
        raise ParseError(f"expected {len(header)} columns, got {len(row)}")


@dataclass(frozen=True)
class Candle:
    ts_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    CSV_HEADER: ClassVar[Tuple[str, ...]] = ("timestamp", "open", "high", "low", "close", "volume")

    @property
    def key(self) -> int:
        return self.ts_ms

    def to_row(self) -> list[str]:
        return [str(self.ts_ms), _num(self.open), _num(self.high), _num(self.low), _num(self.close), _num(self.volume)]

    @classmethod
    def from_row(cls, row: Sequence[str]) -> Candle:
        _check_width(row, cls.CSV_HEADER)
        try:
            return cls(
                ts_ms=int(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
            )
        except ValueError as e:
            raise ParseError(f"bad candle row {list(row)!r}") from e


@dataclass(frozen=True)
class AggTrade:
    agg_id: int
    price: float
    qty: float
    first_id: int
    last_id: int
    ts_ms: int
    buyer_maker: bool

    CSV_HEADER: ClassVar[Tuple[str, ...]] = (
        "aggTradeId", "price", "quantity", "firstTradeId", "lastTradeId", "timestamp", "isBuyerMaker",
    )

    @property
    def key(self) -> int:
        return self.agg_id

    def to_row(self) -> list[str]:
        return [
            str(self.agg_id),
            _num(self.price),
            _num(self.qty),
            str(self.first_id),
            str(self.last_id),
            str(self.ts_ms),
            "true" if self.buyer_maker else "false",
        ]

    @classmethod
    def from_row(cls, row: Sequence[str]) -> AggTrade:
        _check_width(row, cls.CSV_HEADER)
        try:
            return cls(
                agg_id=int(row[0]),
                price=float(row[1]),
                qty=float(row[2]),
                first_id=int(row[3]),
                last_id=int(row[4]),
                ts_ms=int(row[5]),
                buyer_maker=row[6].strip().lower() == "true",
            )
        except ValueError as e:
            raise ParseError(f"bad aggTrade row {list(row)!r}") from e


@dataclass(frozen=True)
class FundingRate:
    ts_ms: int
    rate: float
    mark_price: float

    CSV_HEADER: ClassVar[Tuple[str, ...]] = ("fundingTime", "fundingRate", "markPrice")

    @property
    def key(self) -> int:
        return self.ts_ms

    def to_row(self) -> list[str]:
        return [str(self.ts_ms), _num(self.rate), _num(self.mark_price)]

    @classmethod
    def from_row(cls, row: Sequence[str]) -> FundingRate:
        _check_width(row, cls.CSV_HEADER)
        try:
            return cls(ts_ms=int(row[0]), rate=float(row[1]), mark_price=float(row[2] or 0.0))
        except ValueError as e:
            raise ParseError(f"bad funding row {list(row)!r}") from e


@dataclass(frozen=True)
class OpenInterest:
    ts_ms: int
    open_interest: float
    open_interest_value: float

    CSV_HEADER: ClassVar[Tuple[str, ...]] = ("timestamp", "openInterest", "openInterestValue")

    @property
    def key(self) -> int:
        return self.ts_ms

    def to_row(self) -> list[str]:
        return [str(self.ts_ms), _num(self.open_interest), _num(self.open_interest_value)]

    @classmethod
    def from_row(cls, row: Sequence[str]) -> OpenInterest:
        _check_width(row, cls.CSV_HEADER)
        try:
            return cls(ts_ms=int(row[0]), open_interest=float(row[1]), open_interest_value=float(row[2]))
        except ValueError as e:
            raise ParseError(f"bad openInterest row {list(row)!r}") from e


@dataclass(frozen=True)
class PremiumIndex:
    ts_ms: int
    open: float
    high: float
    low: float
    close: float

    CSV_HEADER: ClassVar[Tuple[str, ...]] = ("timestamp", "open", "high", "low", "close")

    @property
    def key(self) -> int:
        return self.ts_ms

    def to_row(self) -> list[str]:
        return [str(self.ts_ms), _num(self.open), _num(self.high), _num(self.low), _num(self.close)]

    @classmethod
    def from_row(cls, row: Sequence[str]) -> PremiumIndex:
        _check_width(row, cls.CSV_HEADER)
        try:
            return cls(
                ts_ms=int(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
            )
        except ValueError as e:
            raise ParseError(f"bad premiumIndex row {list(row)!r}") from e


Record = Union[Candle, AggTrade, FundingRate, OpenInterest, PremiumIndex]

RECORD_TYPES: Dict[DataKind, Type] = {
    DataKind.CANDLES: Candle,
    DataKind.AGG_TRADES: AggTrade,
    DataKind.FUNDING: FundingRate,
    DataKind.OPEN_INTEREST: OpenInterest,
    DataKind.PREMIUM_INDEX: PremiumIndex,
}


def sort_key(r: Record) -> tuple[int, int]:
    return (r.ts_ms, r.key)


def merge_records(existing: Sequence[Record], fresh: Sequence[Record]) -> list[Record]:
    """
    Union keyed by record key; on collision the fresh record wins.
    Result is ascending by (ts_ms, key) with no duplicate keys.
    """
    by_key: dict[int, Record] = {r.key: r for r in existing}
    for r in fresh:
        by_key[r.key] = r
    return sorted(by_key.values(), key=sort_key)
