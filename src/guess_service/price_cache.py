from __future__ import annotations

import threading
import time
from typing import Callable

from .errors import PriceUnavailableError
from .models import PriceSample


class PriceCache:
    """Single-slot cache for the latest price sample.

    Every ``set`` replaces the stored ``(sample, expires_at)`` pair as one
    reference swap under the lock, so readers see either the previous sample
    or the new one and never a mix. Samples themselves are frozen.
    """

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self._ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._entry: tuple[PriceSample, float] | None = None

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def set(self, sample: PriceSample) -> None:
        entry = (sample, self._clock() + self._ttl_seconds)
        with self._lock:
            self._entry = entry

    def get(self) -> PriceSample:
        sample = self.peek()
        if sample is None:
            raise PriceUnavailableError("No price data available")
        return sample

    def peek(self) -> PriceSample | None:
        with self._lock:
            entry = self._entry
            if entry is None:
                return None
            sample, expires_at = entry
            if self._clock() >= expires_at:
                self._entry = None
                return None
            return sample

    def clear(self) -> None:
        with self._lock:
            self._entry = None
