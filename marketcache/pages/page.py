from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol, Tuple, runtime_checkable

from marketcache.common.types import DataKind
from marketcache.store.records import Record


class PageState(str, Enum):
    EMPTY = "empty"
    LOADING = "loading"
    READY = "ready"
    UPDATING = "updating"
    ERROR = "error"


@dataclass(frozen=True)
class PageKey:
    kind: DataKind
    symbol: str
    timeframe: Optional[str]
    start_ms: int
    end_ms_excl: int

    @property
    def label(self) -> str:
        return f"{self.kind.value}:{self.symbol}:{self.timeframe or '-'}:{self.start_ms}-{self.end_ms_excl}"


@dataclass(frozen=True)
class PageSnapshot:
    state: PageState = PageState.EMPTY
    records: Tuple[Record, ...] = ()
    last_sync_ms: Optional[int] = None
    error: Optional[str] = None


@runtime_checkable
class PageListener(Protocol):
    def on_state_changed(self, page: DataPage, old: PageState, new: PageState) -> None: ...

    def on_data_changed(self, page: DataPage) -> None: ...


@dataclass(frozen=True)
class PageInfo:
    key: PageKey
    state: PageState
    ref_count: int
    listener_count: int
    record_count: int
    consumers: Tuple[str, ...]


class DataPage:
    """
    A checked-out view of cached data.

    Readers only ever see whole PageSnapshot objects; the manager swaps in a new
    snapshot from its apply point. ref_count, listeners and consumers are owned by
    the manager and mutated under its locks.
    """

    def __init__(self, key: PageKey):
        self.key = key
        self._snapshot = PageSnapshot()
        self.ref_count = 0
        self.listeners: list[PageListener] = []
        self.consumers: list[str] = []
        self.last_attempt_ms: Optional[int] = None
        self.cancel = threading.Event()

    def snapshot(self) -> PageSnapshot:
        return self._snapshot

    @property
    def state(self) -> PageState:
        return self._snapshot.state

    @property
    def records(self) -> Tuple[Record, ...]:
        return self._snapshot.records

    @property
    def error(self) -> Optional[str]:
        return self._snapshot.error

    @property
    def last_sync_ms(self) -> Optional[int]:
        return self._snapshot.last_sync_ms

    @property
    def record_count(self) -> int:
        return len(self._snapshot.records)

    @property
    def is_ready(self) -> bool:
        return self._snapshot.state is PageState.READY

    @property
    def has_data(self) -> bool:
        return bool(self._snapshot.records)

    def info(self) -> PageInfo:
        return PageInfo(
            key=self.key,
            state=self.state,
            ref_count=self.ref_count,
            listener_count=len(self.listeners),
            record_count=self.record_count,
            consumers=tuple(self.consumers),
        )

    def __repr__(self) -> str:
        return f"DataPage({self.key.label}, state={self.state.value}, refs={self.ref_count}, records={self.record_count})"
