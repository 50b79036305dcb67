from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque


@dataclass
class ServiceEvent:
    ts: float
    level: str
    message: str
    data: dict = field(default_factory=dict)


class ServiceState:
    """In-process view of the service for ``/status``: last tick, feed link, recent events."""

    def __init__(self, max_events: int = 200) -> None:
        self._lock = threading.Lock()
        self._started_ts = time.time()
        self._latest_price: float | None = None
        self._latest_tick_ts: float | None = None
        self._tick_count = 0
        self._feed_connected_since: float | None = None
        self._feed_last_error: str | None = None
        self._events: Deque[ServiceEvent] = deque(maxlen=max_events)

    @property
    def started_ts(self) -> float:
        return self._started_ts

    def uptime_seconds(self) -> float:
        return max(0.0, time.time() - self._started_ts)

    def set_tick(self, price: float, tick_ts: float) -> None:
        with self._lock:
            self._latest_price = price
            self._latest_tick_ts = tick_ts
            self._tick_count += 1

    def set_feed_link(self, connected: bool, error: str | None = None) -> None:
        with self._lock:
            if connected:
                self._feed_connected_since = time.time()
                self._feed_last_error = None
            else:
                self._feed_connected_since = None
                if error is not None:
                    self._feed_last_error = error

    def add_event(self, level: str, message: str, data: dict | None = None) -> None:
        event = ServiceEvent(ts=time.time(), level=level, message=message, data=data or {})
        with self._lock:
            self._events.append(event)

    def events(self) -> list[ServiceEvent]:
        with self._lock:
            return list(self._events)

    def snapshot(self) -> dict:
        with self._lock:
            events = list(self._events)
            latest_price = self._latest_price
            latest_tick_ts = self._latest_tick_ts
            tick_count = self._tick_count
            connected_since = self._feed_connected_since
            last_error = self._feed_last_error

        return {
            "started_ts": self._started_ts,
            "latest_price": latest_price,
            "latest_tick_ts": latest_tick_ts,
            "tick_count": tick_count,
            "feed_connected_since": connected_since,
            "feed_last_error": last_error,
            "events": [
                {"ts": e.ts, "level": e.level, "message": e.message, "data": e.data}
                for e in events
            ],
        }
