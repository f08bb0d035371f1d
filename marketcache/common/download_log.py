from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

from loguru import logger

from .datetime_utils import now_ms


class DownloadEventType(str, Enum):
    PAGE_CREATED = "page_created"
    LOAD_STARTED = "load_started"
    LOAD_COMPLETED = "load_completed"
    UPDATE_STARTED = "update_started"
    UPDATE_COMPLETED = "update_completed"
    ERROR = "error"
    PAGE_RELEASED = "page_released"
    LISTENER_ADDED = "listener_added"
    LISTENER_REMOVED = "listener_removed"
    FETCH = "fetch"


@dataclass(frozen=True)
class DownloadEvent:
    ts_ms: int
    page_key: str
    data_type: str
    event_type: DownloadEventType
    message: str
    meta: Mapping[str, Any] = field(default_factory=dict)


DownloadEventListener = Callable[[DownloadEvent], None]


class DownloadLog:
    """
    Bounded in-memory history of fetch/page activity for status views.

    Events are kept newest-first, globally and per page key.
    """

    def __init__(self, *, max_events: int = 10_000, max_events_per_page: int = 500):
        self._max_per_page = max_events_per_page
        self._lock = threading.Lock()
        self._global: Deque[DownloadEvent] = deque(maxlen=max_events)
        self._pages: Dict[str, Deque[DownloadEvent]] = {}
        self._listeners: List[DownloadEventListener] = []

    def add_listener(self, fn: DownloadEventListener) -> None:
        with self._lock:
            self._listeners.append(fn)

    def remove_listener(self, fn: DownloadEventListener) -> None:
        with self._lock:
            if fn in self._listeners:
                self._listeners.remove(fn)

    # ---- writers

    def log(
        self,
        page_key: str,
        data_type: str,
        event_type: DownloadEventType,
        message: str,
        meta: Optional[Mapping[str, Any]] = None,
    ) -> DownloadEvent:
        ev = DownloadEvent(
            ts_ms=now_ms(),
            page_key=page_key,
            data_type=data_type,
            event_type=event_type,
            message=message,
            meta=dict(meta or {}),
        )
        with self._lock:
            self._global.appendleft(ev)
            page_log = self._pages.get(page_key)
            if page_log is None:
                page_log = deque(maxlen=self._max_per_page)
                self._pages[page_key] = page_log
            page_log.appendleft(ev)
            listeners = list(self._listeners)

        for fn in listeners:
            try:
                fn(ev)
            except Exception:
                logger.exception("DownloadLog listener failed event={}", ev.event_type.value)
        return ev

    def log_load_completed(self, page_key: str, data_type: str, record_count: int, duration_ms: int) -> DownloadEvent:
        return self.log(
            page_key,
            data_type,
            DownloadEventType.LOAD_COMPLETED,
            f"Loaded {record_count} records in {duration_ms}ms",
            {"record_count": record_count, "duration_ms": duration_ms},
        )

    def log_update_completed(self, page_key: str, data_type: str, record_count: int, duration_ms: int) -> DownloadEvent:
        return self.log(
            page_key,
            data_type,
            DownloadEventType.UPDATE_COMPLETED,
            f"Updated to {record_count} records in {duration_ms}ms",
            {"record_count": record_count, "duration_ms": duration_ms},
        )

    def log_error(self, page_key: str, data_type: str, error_message: str) -> DownloadEvent:
        return self.log(
            page_key,
            data_type,
            DownloadEventType.ERROR,
            f"Error: {error_message}",
            {"error_message": error_message},
        )

    # ---- readers

    def global_log(self, limit: Optional[int] = None) -> list[DownloadEvent]:
        with self._lock:
            items = list(self._global)
        return items if limit is None else items[:limit]

    def page_log(self, page_key: str) -> list[DownloadEvent]:
        with self._lock:
            page_log = self._pages.get(page_key)
            return list(page_log) if page_log else []

    def events_since(self, ts_ms: int) -> list[DownloadEvent]:
        with self._lock:
            return [e for e in self._global if e.ts_ms >= ts_ms]

    def error_count(self) -> int:
        with self._lock:
            return sum(1 for e in self._global if e.event_type is DownloadEventType.ERROR)

    def clear(self) -> None:
        with self._lock:
            self._global.clear()
            self._pages.clear()
