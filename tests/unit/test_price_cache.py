from datetime import datetime, timezone
from decimal import Decimal

import pytest

from src.guess_service.errors import PriceUnavailableError
from src.guess_service.price_cache import PriceCache
from src.guess_service.models import PriceSample


class _FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _sample(price: str) -> PriceSample:
    ts = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    value = Decimal(price)
    return PriceSample(
        price=value,
        open_price=value,
        high_price=value,
        low_price=value,
        volume=Decimal("1.5"),
        quote_volume=value * Decimal("1.5"),
        trades_count=7,
        sampled_at=ts,
        interval_start=ts,
        interval_end=ts,
        is_closed=True,
    )


def test_get_raises_when_empty() -> None:
    cache = PriceCache()

    with pytest.raises(PriceUnavailableError):
        cache.get()
    assert cache.peek() is None


def test_get_returns_latest_sample_unchanged() -> None:
    cache = PriceCache()
    first = _sample("100.10")
    second = _sample("100.20")

    cache.set(first)
    cache.set(second)

    assert cache.get() is second
    assert cache.get().price == Decimal("100.20")


def test_sample_expires_after_ttl() -> None:
    clock = _FakeClock()
    cache = PriceCache(ttl_seconds=300, clock=clock)
    cache.set(_sample("100"))

    clock.now += 299.9
    assert cache.peek() is not None

    clock.now += 0.1
    assert cache.peek() is None
    with pytest.raises(PriceUnavailableError, match="No price data available"):
        cache.get()


def test_set_refreshes_expiry() -> None:
    clock = _FakeClock()
    cache = PriceCache(ttl_seconds=10, clock=clock)
    cache.set(_sample("100"))

    clock.now += 8
    cache.set(_sample("101"))
    clock.now += 8

    assert cache.get().price == Decimal("101")


def test_rejects_non_positive_ttl() -> None:
    with pytest.raises(ValueError):
        PriceCache(ttl_seconds=0)
