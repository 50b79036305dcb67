from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime
from typing import Any, AsyncIterator, Sequence
from uuid import uuid4

from .errors import ConnectionClosedError
from .models import utc_now
from .sse import HEARTBEAT_FRAME, EventKind, format_event

logger = logging.getLogger(__name__)

_CLOSE = None


class ClientConnection:
    """One live event stream for an authenticated identity.

    Frames are buffered in a bounded queue drained by the HTTP response. A
    consumer that falls ``queue_size`` frames behind is treated as stale.
    """

    def __init__(self, identity: str, display_name: str, *, queue_size: int = 256) -> None:
        self.connection_id = uuid4().hex
        self.identity = identity
        self.display_name = display_name
        self.opened_at: datetime = utc_now()
        self.last_message_at: datetime = self.opened_at
        self._outbox: asyncio.Queue[str | None] = asyncio.Queue(maxsize=max(1, queue_size))
        self._closed = False
        self._timers: list[asyncio.TimerHandle] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, frame: str) -> None:
        if self._closed:
            raise ConnectionClosedError(f"connection {self.connection_id} is closed")
        try:
            self._outbox.put_nowait(frame)
        except asyncio.QueueFull:
            self.close()
            raise ConnectionClosedError(f"connection {self.connection_id} outbound buffer full") from None
        self.last_message_at = utc_now()

    def add_timer(self, handle: asyncio.TimerHandle) -> None:
        if self._closed:
            handle.cancel()
            return
        self._timers.append(handle)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()

        # Make room for the close marker so the reader always wakes up.
        while True:
            try:
                self._outbox.put_nowait(_CLOSE)
                return
            except asyncio.QueueFull:
                try:
                    self._outbox.get_nowait()
                except asyncio.QueueEmpty:
                    pass

    async def frames(self) -> AsyncIterator[str]:
        while True:
            frame = await self._outbox.get()
            if frame is _CLOSE:
                return
            yield frame


class DeliveryHub:
    """Registry of live connections, one per identity.

    Registry mutations and lookups happen under a lock; writes to connections
    happen outside it on a snapshot.
    """

    def __init__(
        self,
        *,
        queue_size: int = 256,
        heartbeat_interval_seconds: float = 30.0,
        test_frame_delays: Sequence[float] = (0.2, 1.0),
    ) -> None:
        self._queue_size = queue_size
        self._heartbeat_interval_seconds = heartbeat_interval_seconds
        self._test_frame_delays = tuple(test_frame_delays)
        self._lock = threading.Lock()
        self._connections: dict[str, ClientConnection] = {}

    def register(self, identity: str, display_name: str) -> ClientConnection:
        connection = ClientConnection(identity, display_name, queue_size=self._queue_size)
        with self._lock:
            previous = self._connections.get(identity)
            self._connections[identity] = connection
            total = len(self._connections)

        if previous is not None:
            logger.info("[Delivery] Disconnecting existing client for user %s (%s)", display_name, identity)
            previous.close()

        logger.info("[Delivery] Client connected for user %s (%s), total clients: %s", display_name, identity, total)
        return connection

    def unregister(self, connection: ClientConnection) -> bool:
        with self._lock:
            removed = self._connections.get(connection.identity) is connection
            if removed:
                del self._connections[connection.identity]
            total = len(self._connections)
        connection.close()
        if removed:
            logger.info(
                "[Delivery] Client disconnected for user %s (%s), total clients: %s",
                connection.display_name,
                connection.identity,
                total,
            )
        return removed

    def get(self, identity: str) -> ClientConnection | None:
        with self._lock:
            return self._connections.get(identity)

    def is_connected(self, identity: str) -> bool:
        return self.get(identity) is not None

    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def _snapshot(self) -> list[ClientConnection]:
        with self._lock:
            return list(self._connections.values())

    def _write_all(self, frame: str) -> int:
        delivered = 0
        failed: list[ClientConnection] = []
        for connection in self._snapshot():
            try:
                connection.write(frame)
                delivered += 1
            except ConnectionClosedError:
                failed.append(connection)

        for connection in failed:
            self.unregister(connection)
        if failed:
            logger.info("[Delivery] Dropped %s stale connection(s)", len(failed))
        return delivered

    def broadcast(self, event_type: str, data: Any) -> int:
        return self._write_all(format_event(event_type, data))

    def send_to_owner(self, identity: str, event_type: str, data: Any) -> bool:
        connection = self.get(identity)
        if connection is None:
            logger.info("[Delivery] No connected client found for user %s", identity)
            return False

        try:
            connection.write(format_event(event_type, data))
        except ConnectionClosedError as exc:
            logger.info("[Delivery] Write to user %s failed (%s); cleaning up", identity, exc)
            self.unregister(connection)
            return False
        return True

    def open(self, identity: str, display_name: str) -> ClientConnection:
        """Register a stream and queue its greeting frames.

        Must run inside the event loop; the ``test`` frames are scheduled on it.
        """
        connection = self.register(identity, display_name)
        connection.write(format_event(EventKind.CONNECTION.value, {"message": "Connected to price stream"}))

        loop = asyncio.get_running_loop()
        for index, delay in enumerate(self._test_frame_delays):
            message = "Connection test" if index == 0 else "Delayed connection test"
            connection.add_timer(loop.call_later(delay, self._send_test_frame, connection, message))
        return connection

    def _send_test_frame(self, connection: ClientConnection, message: str) -> None:
        if self.get(connection.identity) is not connection:
            return
        try:
            connection.write(format_event(EventKind.TEST.value, {"message": message}))
        except ConnectionClosedError:
            self.unregister(connection)

    def send_heartbeats(self) -> int:
        return self._write_all(HEARTBEAT_FRAME)

    async def run_heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval_seconds)
            delivered = self.send_heartbeats()
            logger.debug("[Delivery] Heartbeat sent to %s client(s)", delivered)

    def close_all(self) -> None:
        with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for connection in connections:
            connection.close()


async def event_stream(hub: DeliveryHub, connection: ClientConnection) -> AsyncIterator[str]:
    try:
        async for frame in connection.frames():
            yield frame
    finally:
        hub.unregister(connection)
