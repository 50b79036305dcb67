from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

import websockets

from .backoff import reconnect_delay
from .models import PriceSample, utc_now
from .price_cache import PriceCache
from .state import ServiceState

logger = logging.getLogger(__name__)


def _ms_to_datetime(value: Any) -> datetime:
    return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)


class FeedConnector:
    """Binance ``kline_1s`` stream -> price cache + broadcast."""

    def __init__(
        self,
        url: str,
        cache: PriceCache,
        publish: Callable[[PriceSample], object] | None = None,
        *,
        symbol: str = "BTCUSDT",
        reconnect_base_seconds: float = 5.0,
        reconnect_max_seconds: float = 30.0,
        max_reconnect_attempts: int = 10,
        ping_interval_seconds: int = 20,
        open_timeout_seconds: float = 10.0,
        state: ServiceState | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.url = url
        self.symbol = symbol.upper()
        self.reconnect_base_seconds = reconnect_base_seconds
        self.reconnect_max_seconds = reconnect_max_seconds
        self.max_reconnect_attempts = max_reconnect_attempts
        self.ping_interval_seconds = ping_interval_seconds
        self.open_timeout_seconds = open_timeout_seconds
        self._cache = cache
        self._publish = publish
        self._state = state
        self._clock = clock
        self._ws: Any = None
        self._connected = False
        self._failed = False
        self._stopped = False
        self._reconnect_attempts = 0

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def failed(self) -> bool:
        return self._failed

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def status(self) -> dict:
        return {
            "connected": self._connected,
            "reconnect_attempts": self._reconnect_attempts,
            "failed": self._failed,
            "stream_type": "kline_1s",
        }

    async def run(self) -> None:
        self._stopped = False
        self._failed = False
        while not self._stopped:
            try:
                logger.info("[Feed] Connecting: %s", self.url)
                async with websockets.connect(
                    self.url,
                    ping_interval=self.ping_interval_seconds,
                    open_timeout=self.open_timeout_seconds,
                ) as ws:
                    self._ws = ws
                    self._connected = True
                    self._reconnect_attempts = 0
                    if self._state is not None:
                        self._state.set_feed_link(True)
                    logger.info("[Feed] Connected to kline stream")
                    async for raw in ws:
                        self.handle_message(raw)
                logger.info("[Feed] Stream closed")
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.warning("[Feed] Error: %s", exc)
                if self._state is not None:
                    self._state.set_feed_link(False, str(exc) or type(exc).__name__)
            finally:
                self._connected = False
                self._ws = None
                if self._state is not None:
                    self._state.set_feed_link(False)

            if self._stopped:
                break
            if not await self._wait_before_reconnect():
                return

    async def _wait_before_reconnect(self) -> bool:
        if self._reconnect_attempts >= self.max_reconnect_attempts:
            self._failed = True
            logger.error("[Feed] Max reconnection attempts reached; price feed is down until restart")
            if self._state is not None:
                self._state.add_event("error", "feed_failed", {"attempts": self._reconnect_attempts})
            return False

        self._reconnect_attempts += 1
        delay = reconnect_delay(
            self._reconnect_attempts - 1,
            self.reconnect_base_seconds,
            self.reconnect_max_seconds,
        )
        logger.info("[Feed] Scheduling reconnect attempt %s in %.1fs", self._reconnect_attempts, delay)
        if self._state is not None:
            self._state.add_event(
                "warning",
                "feed_reconnect_scheduled",
                {"attempt": self._reconnect_attempts, "delay_seconds": delay},
            )
        await asyncio.sleep(delay)
        return True

    async def stop(self) -> None:
        self._stopped = True
        ws = self._ws
        if ws is not None:
            await ws.close()

    def handle_message(self, raw: str | bytes) -> PriceSample | None:
        sample = self.parse_message(raw)
        if sample is None:
            return None

        self._cache.set(sample)
        if self._state is not None:
            self._state.set_tick(float(sample.price), sample.sampled_at.timestamp())
        if self._publish is not None:
            try:
                self._publish(sample)
            except Exception:  # noqa: BLE001
                logger.exception("[Feed] Failed to publish price update")
        return sample

    def parse_message(self, raw: str | bytes) -> PriceSample | None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("[Feed] Ignoring malformed message")
            return None

        if not isinstance(data, dict):
            return None

        kline = data.get("k")
        if data.get("e") != "kline" or not isinstance(kline, dict):
            logger.warning("[Feed] Received unexpected data format: %s", data.get("e"))
            return None

        symbol = str(data.get("s") or kline.get("s") or "").strip().upper()
        if symbol and symbol != self.symbol:
            return None

        try:
            return PriceSample(
                price=Decimal(str(kline["c"])),
                open_price=Decimal(str(kline["o"])),
                high_price=Decimal(str(kline["h"])),
                low_price=Decimal(str(kline["l"])),
                volume=Decimal(str(kline["v"])),
                quote_volume=Decimal(str(kline["q"])),
                trades_count=int(kline["n"]),
                sampled_at=self._clock(),
                interval_start=_ms_to_datetime(kline["t"]),
                interval_end=_ms_to_datetime(kline["T"]),
                is_closed=bool(kline.get("x", False)),
            )
        except (KeyError, TypeError, ValueError, ArithmeticError):
            logger.warning("[Feed] Ignoring kline with invalid fields")
            return None
