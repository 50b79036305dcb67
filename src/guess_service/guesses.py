from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

from .errors import PredictionAlreadyActiveError, StoreConflictError
from .models import PendingPrediction, UserRecord, parse_direction, utc_now
from .prediction_queue import PredictionQueue
from .price_cache import PriceCache
from .store import UserStore, call_with_timeout, write_with_timeout

logger = logging.getLogger(__name__)


class GuessService:
    def __init__(
        self,
        *,
        queue: PredictionQueue,
        cache: PriceCache,
        store: UserStore,
        resolve_seconds: int = 60,
        store_timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._queue = queue
        self._cache = cache
        self._store = store
        self._resolve_seconds = resolve_seconds
        self._store_timeout_seconds = store_timeout_seconds
        self._clock = clock

    @property
    def resolve_seconds(self) -> int:
        return self._resolve_seconds

    async def submit_guess(self, identity: str, direction: object) -> PendingPrediction:
        parsed_direction = parse_direction(direction)

        user = await call_with_timeout(self._store_timeout_seconds, self._store.get_user, identity)
        if user.active_prediction is not None or self._queue.pending_for(identity) is not None:
            raise PredictionAlreadyActiveError(identity)

        sample = self._cache.get()
        now = self._clock()
        prediction = PendingPrediction(
            owner_identity=identity,
            direction=parsed_direction,
            price_at_submission=sample.price,
            submitted_at=now,
            resolve_at=now + timedelta(seconds=self._resolve_seconds),
        )

        # The conditional write is the real guard; the read above only gives
        # the common case a cheap early answer.
        try:
            await write_with_timeout(
                self._store_timeout_seconds,
                self._store.update_user,
                identity,
                {"active_prediction": prediction},
                only_if_idle=True,
            )
        except StoreConflictError:
            raise PredictionAlreadyActiveError(identity) from None
        except TimeoutError:
            logger.warning("Claiming guess for user %s timed out; releasing claim", identity)
            await self._release_claim(prediction)
            raise

        try:
            await asyncio.to_thread(self._queue.submit, prediction)
        except Exception:
            logger.exception("Failed to enqueue guess for user %s; releasing claim", identity)
            await self._release_claim(prediction)
            raise

        logger.info(
            "Guess submitted: user=%s guess=%s price=%s resolve_at=%s",
            user.display_name,
            parsed_direction,
            prediction.price_at_submission,
            prediction.resolve_at.isoformat(),
        )
        return prediction

    async def _release_claim(self, prediction: PendingPrediction) -> None:
        try:
            await write_with_timeout(
                self._store_timeout_seconds,
                self._store.release_prediction,
                prediction.owner_identity,
                prediction.prediction_id,
            )
        except TimeoutError:
            # write_with_timeout has already waited for the release to settle.
            logger.warning("Releasing guess %s was slow", prediction.prediction_id)

    async def get_score(self, identity: str) -> UserRecord:
        return await call_with_timeout(self._store_timeout_seconds, self._store.get_user, identity)
