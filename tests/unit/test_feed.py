import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from src.guess_service import feed as feed_module
from src.guess_service.feed import FeedConnector
from src.guess_service.price_cache import PriceCache
from src.guess_service.state import ServiceState

RECEIVED_AT = datetime(2026, 3, 1, 12, 0, 5, tzinfo=timezone.utc)

KLINE_PAYLOAD = json.dumps(
    {
        "e": "kline",
        "E": 1772366405123,
        "s": "BTCUSDT",
        "k": {
            "t": 1772366405000,
            "T": 1772366405999,
            "s": "BTCUSDT",
            "i": "1s",
            "o": "64250.10",
            "c": "64251.37",
            "h": "64252.00",
            "l": "64249.95",
            "v": "1.284",
            "n": 42,
            "x": True,
            "q": "82498.31",
        },
    }
)


def _connector(cache: PriceCache, published: list, **kwargs) -> FeedConnector:
    return FeedConnector(
        "wss://example.invalid/ws/btcusdt@kline_1s",
        cache,
        published.append,
        clock=lambda: RECEIVED_AT,
        **kwargs,
    )


def test_parse_message_reads_kline_fields() -> None:
    connector = _connector(PriceCache(), [])

    sample = connector.parse_message(KLINE_PAYLOAD)

    assert sample is not None
    assert sample.price == Decimal("64251.37")
    assert sample.open_price == Decimal("64250.10")
    assert sample.high_price == Decimal("64252.00")
    assert sample.low_price == Decimal("64249.95")
    assert sample.volume == Decimal("1.284")
    assert sample.quote_volume == Decimal("82498.31")
    assert sample.trades_count == 42
    assert sample.is_closed is True
    assert sample.sampled_at == RECEIVED_AT
    assert sample.interval_start == datetime(2026, 3, 1, 12, 0, 5, tzinfo=timezone.utc)


def test_handle_message_caches_and_publishes_once() -> None:
    cache = PriceCache()
    published: list = []
    state = ServiceState()
    connector = _connector(cache, published, state=state)

    sample = connector.handle_message(KLINE_PAYLOAD.encode("utf-8"))

    assert sample is not None
    assert cache.get() is sample
    assert published == [sample]
    assert state.snapshot()["tick_count"] == 1


@pytest.mark.parametrize(
    "payload",
    [
        '{"e":"trade","s":"BTCUSDT","p":"64251.37"}',
        KLINE_PAYLOAD.replace("BTCUSDT", "ETHUSDT"),
        "{not json",
        "[1, 2, 3]",
        '{"e":"kline","s":"BTCUSDT","k":{"c":"oops"}}',
    ],
)
def test_handle_message_ignores_unusable_payloads(payload: str) -> None:
    cache = PriceCache()
    published: list = []
    connector = _connector(cache, published)

    assert connector.handle_message(payload) is None
    assert cache.peek() is None
    assert published == []


def test_publish_failure_does_not_lose_cached_price() -> None:
    cache = PriceCache()

    def broken_publish(sample) -> None:
        raise RuntimeError("no subscribers")

    connector = FeedConnector("wss://example.invalid", cache, broken_publish, clock=lambda: RECEIVED_AT)

    sample = connector.handle_message(KLINE_PAYLOAD)

    assert sample is not None
    assert cache.get() is sample


def test_wait_before_reconnect_marks_failed_after_max_attempts() -> None:
    state = ServiceState()
    connector = _connector(
        PriceCache(),
        [],
        reconnect_base_seconds=0,
        reconnect_max_seconds=0,
        max_reconnect_attempts=2,
        state=state,
    )

    async def _run() -> list[bool]:
        return [await connector._wait_before_reconnect() for _ in range(3)]  # noqa: SLF001

    assert asyncio.run(_run()) == [True, True, False]
    assert connector.failed is True
    assert connector.reconnect_attempts == 2
    assert state.events()[-1].message == "feed_failed"


class _FakeSocket:
    def __init__(self, messages: list[str]) -> None:
        self._messages = messages

    async def __aenter__(self) -> "_FakeSocket":
        return self

    async def __aexit__(self, *exc) -> bool:
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self._messages:
            yield message

    async def close(self) -> None:
        return None


def test_run_reconnects_and_resets_attempts_on_open(monkeypatch: pytest.MonkeyPatch) -> None:
    cache = PriceCache()
    published: list = []
    calls: list[str] = []

    def fake_connect(url: str, **kwargs):
        calls.append(url)
        if len(calls) == 2:
            return _FakeSocket([KLINE_PAYLOAD])
        raise OSError("connection refused")

    monkeypatch.setattr(feed_module.websockets, "connect", fake_connect)
    state = ServiceState()
    connector = _connector(
        cache,
        published,
        state=state,
        reconnect_base_seconds=0,
        reconnect_max_seconds=0,
        max_reconnect_attempts=1,
    )

    asyncio.run(connector.run())

    # refused, retry, open and reset, closed, retry, refused, give up
    assert len(calls) == 3
    assert connector.failed is True
    assert connector.is_connected is False
    assert len(published) == 1
    assert cache.get().price == Decimal("64251.37")
    snapshot = state.snapshot()
    assert snapshot["feed_connected_since"] is None
    assert snapshot["feed_last_error"] == "connection refused"
    assert snapshot["tick_count"] == 1
