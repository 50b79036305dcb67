from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .models import ensure_utc, utc_now

logger = logging.getLogger(__name__)

HEARTBEAT_FRAME = ": heartbeat\n\n"


class EventKind(str, Enum):
    CONNECTION = "connection"
    TEST = "test"
    PRICE_UPDATE = "price_update"
    GUESS_RESULT = "guess_result"


@dataclass(frozen=True)
class StreamEvent:
    kind: EventKind
    data: Any = None
    timestamp: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


def format_event(event_type: str, data: Any, timestamp: datetime | None = None) -> str:
    """Render one stream frame.

    The JSON body repeats the type so consumers that only read ``data:`` lines
    can still dispatch.
    """
    body = {
        "type": event_type,
        "data": data,
        "timestamp": ensure_utc(timestamp or utc_now()).isoformat(),
    }
    return f"event: {event_type}\ndata: {json.dumps(body, separators=(',', ':'))}\n\n"


class EventDecoder:
    """Incremental line decoder for the event stream.

    Feed it one line at a time (without the trailing newline). A blank line
    completes an event. Comment lines are heartbeats and produce nothing.
    """

    def __init__(self) -> None:
        self._event_type: str | None = None
        self._data_lines: list[str] = []
        self.heartbeats = 0

    def feed_line(self, line: str) -> StreamEvent | None:
        line = line.rstrip("\r")
        if not line:
            return self._flush()

        if line.startswith(":"):
            self.heartbeats += 1
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event_type = value.strip()
        elif name == "data":
            self._data_lines.append(value)
        return None

    def _flush(self) -> StreamEvent | None:
        event_type = self._event_type
        data_lines = self._data_lines
        self._event_type = None
        self._data_lines = []
        if not data_lines:
            return None

        raw_data = "\n".join(data_lines)
        if raw_data.strip() == "heartbeat":
            self.heartbeats += 1
            return None

        try:
            body = json.loads(raw_data)
        except json.JSONDecodeError:
            logger.warning("[Stream] Ignoring malformed event payload: %r", raw_data[:200])
            return None
        if not isinstance(body, dict):
            logger.warning("[Stream] Ignoring non-object event payload")
            return None

        type_name = body.get("type") or event_type
        try:
            kind = EventKind(type_name)
        except ValueError:
            logger.info("[Stream] Ignoring unknown event type: %s", type_name)
            return None

        timestamp = body.get("timestamp")
        return StreamEvent(
            kind=kind,
            data=body.get("data"),
            timestamp=str(timestamp) if timestamp is not None else None,
            raw=body,
        )
