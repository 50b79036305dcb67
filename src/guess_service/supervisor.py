from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import httpx

from .backoff import reconnect_delay
from .errors import StreamAuthenticationError
from .models import PriceSample, utc_now
from .sse import EventDecoder, EventKind, StreamEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[StreamEvent], None]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class StaleStreamError(RuntimeError):
    pass


@dataclass(frozen=True)
class SupervisorConfig:
    stream_url: str
    snapshot_url: str
    token: str
    reconnect_base_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    max_reconnect_attempts: int = 5
    heartbeat_timeout_seconds: float = 60.0
    watchdog_interval_seconds: float = 10.0
    freshness_threshold_seconds: float = 30.0
    freshness_check_seconds: float = 15.0
    request_timeout_seconds: float = 5.0


class StreamSupervisor:
    """Resilient consumer of the price event stream.

    Keeps one streaming GET open, dispatches decoded events to handlers by
    kind, reconnects with capped exponential backoff and gives up after
    ``max_reconnect_attempts`` consecutive failures. While connected two
    watchdogs run: one tears the stream down after ``heartbeat_timeout_seconds``
    of silence, the other fetches a price snapshot when the last price is older
    than ``freshness_threshold_seconds``.
    """

    def __init__(
        self,
        config: SupervisorConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._transport = transport
        self._clock = clock
        self._handlers: dict[EventKind, list[EventHandler]] = {kind: [] for kind in EventKind}
        self._state = ConnectionState.DISCONNECTED
        self._reconnect_attempts = 0
        self._run_task: asyncio.Task[None] | None = None
        self._client: httpx.AsyncClient | None = None
        self._last_message_at: float | None = None
        self._last_price_at: float | None = None
        self.latest_price: PriceSample | None = None
        self.last_error: str | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def on(self, kind: EventKind, handler: EventHandler) -> None:
        self._handlers[kind].append(handler)

    def off(self, kind: EventKind, handler: EventHandler) -> None:
        handlers = self._handlers[kind]
        if handler in handlers:
            handlers.remove(handler)

    def status(self) -> dict:
        return {
            "state": self._state.value,
            "connected": self._state is ConnectionState.CONNECTED,
            "reconnect_attempts": self._reconnect_attempts,
            "last_message_at": self._last_message_at,
            "current_url": self._config.stream_url if self._run_task is not None else None,
            "last_error": self.last_error,
        }

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            logger.debug("[Stream] %s -> %s", self._state.value, state.value)
        self._state = state

    def _new_client(self) -> httpx.AsyncClient:
        timeout = self._config.request_timeout_seconds
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=httpx.Timeout(connect=timeout, read=None, write=timeout, pool=timeout),
        )

    def _headers(self, accept: str) -> dict[str, str]:
        return {
            "Accept": accept,
            "Cache-Control": "no-cache",
            "Authorization": f"Bearer {self._config.token}",
        }

    async def connect(self) -> None:
        if self._run_task is not None and not self._run_task.done():
            return
        await self._close_client()
        self._reconnect_attempts = 0
        self.last_error = None
        self._client = self._new_client()
        self._run_task = asyncio.create_task(self._run(), name="price-stream-supervisor")

    async def wait(self) -> None:
        if self._run_task is not None:
            await self._run_task

    async def disconnect(self) -> None:
        task = self._run_task
        self._run_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_client()
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("[Stream] Disconnected")

    async def _close_client(self) -> None:
        client = self._client
        self._client = None
        if client is not None:
            await client.aclose()

    async def _run(self) -> None:
        while True:
            self._set_state(ConnectionState.CONNECTING)
            try:
                await self._stream_once()
                logger.info("[Stream] Stream ended")
            except StreamAuthenticationError as exc:
                self.last_error = str(exc)
                logger.warning("[Stream] %s; not reconnecting", exc)
                self._set_state(ConnectionState.FAILED)
                await self._close_client()
                return
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                self.last_error = str(exc) or type(exc).__name__
                logger.warning("[Stream] Connection error: %s", self.last_error)

            if self._reconnect_attempts >= self._config.max_reconnect_attempts:
                logger.error("[Stream] Max reconnect attempts reached")
                self._set_state(ConnectionState.FAILED)
                await self._close_client()
                return

            self._reconnect_attempts += 1
            delay = reconnect_delay(
                self._reconnect_attempts - 1,
                self._config.reconnect_base_seconds,
                self._config.reconnect_max_seconds,
            )
            self._set_state(ConnectionState.RECONNECTING)
            logger.info("[Stream] Scheduling reconnect attempt %s in %.1fs", self._reconnect_attempts, delay)
            await asyncio.sleep(delay)

    async def _stream_once(self) -> None:
        if self._client is None:
            self._client = self._new_client()

        async with self._client.stream(
            "GET",
            self._config.stream_url,
            headers=self._headers("text/event-stream"),
        ) as response:
            if response.status_code in (401, 403):
                raise StreamAuthenticationError(response.status_code)
            if not response.is_success:
                raise RuntimeError(f"HTTP {response.status_code}")

            logger.info("[Stream] Connection established")
            self._reconnect_attempts = 0
            self._last_message_at = self._clock()
            self._set_state(ConnectionState.CONNECTED)

            reader = asyncio.create_task(self._read(response), name="price-stream-reader")
            heartbeat = asyncio.create_task(self._heartbeat_watchdog(), name="price-stream-heartbeat")
            freshness = asyncio.create_task(self._freshness_watchdog(), name="price-stream-freshness")
            try:
                done, _ = await asyncio.wait({reader, heartbeat}, return_when=asyncio.FIRST_COMPLETED)
                if reader in done:
                    reader.result()
                    return
                raise StaleStreamError("no messages received within heartbeat timeout")
            finally:
                for task in (reader, heartbeat, freshness):
                    task.cancel()
                await asyncio.gather(reader, heartbeat, freshness, return_exceptions=True)

    async def _read(self, response: httpx.Response) -> None:
        decoder = EventDecoder()
        async for line in response.aiter_lines():
            self._last_message_at = self._clock()
            event = decoder.feed_line(line)
            if event is not None:
                self._dispatch(event)

        event = decoder.feed_line("")
        if event is not None:
            self._dispatch(event)

    async def _heartbeat_watchdog(self) -> None:
        while True:
            await asyncio.sleep(self._config.watchdog_interval_seconds)
            last = self._last_message_at
            if last is None:
                continue
            silence = self._clock() - last
            if silence > self._config.heartbeat_timeout_seconds:
                logger.warning("[Stream] No messages received for %.0fs, connection may be stale", silence)
                return

    async def _freshness_watchdog(self) -> None:
        while True:
            await asyncio.sleep(self._config.freshness_check_seconds)
            try:
                await self.refresh_if_stale()
            except Exception as exc:  # noqa: BLE001
                logger.warning("[Stream] Snapshot refresh failed: %s", exc)

    def _dispatch(self, event: StreamEvent) -> None:
        if event.kind is EventKind.PRICE_UPDATE and isinstance(event.data, dict):
            try:
                self.latest_price = PriceSample.from_payload(event.data)
                self._last_price_at = self._clock()
            except (KeyError, TypeError, ValueError, ArithmeticError):
                logger.warning("[Stream] Ignoring malformed price update")

        handlers = self._handlers.get(event.kind, [])
        if not handlers:
            logger.debug("[Stream] No listeners registered for message type: %s", event.kind.value)
            return
        for handler in list(handlers):
            try:
                handler(event)
            except Exception:  # noqa: BLE001
                logger.exception("[Stream] Error in listener for %s", event.kind.value)

    def price_age_seconds(self) -> float | None:
        if self._last_price_at is None:
            return None
        return self._clock() - self._last_price_at

    async def refresh_if_stale(self) -> bool:
        age = self.price_age_seconds()
        if age is not None and age <= self._config.freshness_threshold_seconds:
            return False

        if age is not None:
            logger.warning("[Stream] Price data is %.0fs old, fetching fresh data...", age)
        sample = await self.fetch_snapshot()
        if sample is None:
            return False

        self._dispatch(
            StreamEvent(
                kind=EventKind.PRICE_UPDATE,
                data=sample.to_payload(),
                timestamp=utc_now().isoformat(),
                raw={"source": "snapshot"},
            )
        )
        return True

    async def fetch_snapshot(self) -> PriceSample | None:
        client = self._client
        owns_client = client is None
        if client is None:
            client = self._new_client()
        try:
            response = await client.get(
                self._config.snapshot_url,
                headers=self._headers("application/json"),
                timeout=self._config.request_timeout_seconds,
            )
            if not response.is_success:
                logger.warning("[Stream] Snapshot request failed: HTTP %s", response.status_code)
                return None
            return PriceSample.from_payload(response.json())
        except (httpx.HTTPError, KeyError, TypeError, ValueError, ArithmeticError) as exc:
            logger.warning("[Stream] Snapshot request failed: %s", exc)
            return None
        finally:
            if owns_client:
                await client.aclose()
