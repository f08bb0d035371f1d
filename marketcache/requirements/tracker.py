from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional

from loguru import logger


class Tier(str, Enum):
    TRADING = "trading"   # blocks the backtest engine
    VIEW = "view"         # chart-only, loaded in the background


class Status(str, Enum):
    PENDING = "pending"
    CHECKING = "checking"
    FETCHING = "fetching"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class DataRequirement:
    data_type: str          # e.g. "OHLC:1h", "AggTrades", "Funding"
    symbol: str
    start_ms: int
    end_ms: int
    tier: Tier
    source: str = ""        # what declared it (strategy, phase, chart...)
    consumer: str = ""


@dataclass(frozen=True)
class RequirementState:
    requirement: DataRequirement
    status: Status = Status.PENDING
    loaded: int = 0
    expected: int = 0
    message: Optional[str] = None

    def progress_percent(self) -> int:
        if self.expected <= 0:
            return 0
        return min(100, (self.loaded * 100) // self.expected)

    def status_text(self) -> str:
        dt = self.requirement.data_type
        if self.status is Status.PENDING:
            return f"{dt}: pending"
        if self.status is Status.CHECKING:
            return f"{dt}: checking..."
        if self.status is Status.FETCHING:
            if self.expected > 0:
                return f"{dt}: {self.loaded}/{self.expected} ({self.progress_percent()}%)"
            return f"{dt}: fetching..."
        if self.status is Status.READY:
            return f"{dt}: ready"
        return f"{dt}: {self.message or 'error'}"


class DataRequirementsTracker:
    """
    Per-run registry of declared data needs, keyed by data_type.

    on_trading_ready fires every time a TRADING requirement turns READY while all
    TRADING requirements are READY. on_view_ready fires per VIEW requirement.
    Callbacks run on the thread that called update_status, outside the lock.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._states: dict[str, RequirementState] = {}
        self.on_status_change: Optional[Callable[[RequirementState], None]] = None
        self.on_trading_ready: Optional[Callable[[], None]] = None
        self.on_view_ready: Optional[Callable[[str], None]] = None

    def clear(self) -> None:
        with self._lock:
            self._states.clear()

    def add_requirement(self, req: DataRequirement) -> RequirementState:
        state = RequirementState(requirement=req)
        with self._lock:
            self._states[req.data_type] = state
        self._fire(self.on_status_change, state)
        return state

    def update_status(
        self,
        data_type: str,
        status: Status,
        loaded: int = 0,
        expected: int = 0,
        message: Optional[str] = None,
    ) -> Optional[RequirementState]:
        with self._lock:
            current = self._states.get(data_type)
            if current is None:
                logger.debug("update_status for unknown requirement {}", data_type)
                return None
            new = replace(current, status=status, loaded=loaded, expected=expected, message=message)
            self._states[data_type] = new
            trading_ready = (
                status is Status.READY
                and current.requirement.tier is Tier.TRADING
                and self.is_trading_ready()
            )

        self._fire(self.on_status_change, new)
        if status is Status.READY:
            if current.requirement.tier is Tier.TRADING:
                if trading_ready:
                    self._fire(self.on_trading_ready)
            else:
                self._fire(self.on_view_ready, data_type)
        return new

    @staticmethod
    def _fire(fn: Optional[Callable], *args) -> None:
        if fn is None:
            return
        try:
            fn(*args)
        except Exception:
            logger.exception("Requirement callback failed")

    # =========================
    # queries
    # =========================

    def get_state(self, data_type: str) -> Optional[RequirementState]:
        with self._lock:
            return self._states.get(data_type)

    def all_states(self) -> list[RequirementState]:
        with self._lock:
            return list(self._states.values())

    def _by_tier(self, tier: Tier) -> list[RequirementState]:
        with self._lock:
            return [s for s in self._states.values() if s.requirement.tier is tier]

    def trading_requirements(self) -> set[DataRequirement]:
        return {s.requirement for s in self._by_tier(Tier.TRADING)}

    def view_requirements(self) -> set[DataRequirement]:
        return {s.requirement for s in self._by_tier(Tier.VIEW)}

    def is_trading_ready(self) -> bool:
        return all(s.status is Status.READY for s in self._by_tier(Tier.TRADING))

    def is_view_ready(self) -> bool:
        return all(s.status is Status.READY for s in self._by_tier(Tier.VIEW))

    def is_loading(self, data_type: str) -> bool:
        s = self.get_state(data_type)
        return s is not None and s.status in (Status.CHECKING, Status.FETCHING)

    def is_ready(self, data_type: str) -> bool:
        s = self.get_state(data_type)
        return s is not None and s.status is Status.READY

    def has_error(self, data_type: str) -> bool:
        s = self.get_state(data_type)
        return s is not None and s.status is Status.ERROR

    def count_by_tier(self, tier: Tier) -> int:
        return len(self._by_tier(tier))

    def count_ready_by_tier(self, tier: Tier) -> int:
        return sum(1 for s in self._by_tier(tier) if s.status is Status.READY)
