from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable

from .delivery import DeliveryHub
from .errors import PriceUnavailableError, UserNotFoundError
from .models import PendingPrediction, ResolutionResult, utc_now
from .prediction_queue import PredictionQueue
from .price_cache import PriceCache
from .sse import EventKind
from .state import ServiceState
from .store import UserStore, call_with_timeout, write_with_timeout

logger = logging.getLogger(__name__)


def evaluate_prediction(direction: str, price_at_submission: Decimal, current_price: Decimal) -> tuple[bool, int]:
    if direction == "up":
        is_correct = current_price > price_at_submission
    elif direction == "down":
        is_correct = current_price < price_at_submission
    else:
        raise ValueError(f"unknown direction: {direction}")
    return is_correct, 1 if is_correct else -1


class ResolutionWorker:
    def __init__(
        self,
        *,
        queue: PredictionQueue,
        cache: PriceCache,
        store: UserStore,
        hub: DeliveryHub,
        interval_seconds: float = 1.0,
        store_timeout_seconds: float = 5.0,
        state: ServiceState | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._queue = queue
        self._cache = cache
        self._store = store
        self._hub = hub
        self._interval_seconds = interval_seconds
        self._store_timeout_seconds = store_timeout_seconds
        self._state = state
        self._clock = clock
        self._worker_task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._metrics = {
            "drained": 0,
            "resolved": 0,
            "dropped": 0,
            "failed": 0,
            "delivered": 0,
        }

    @property
    def is_running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    async def start(self) -> None:
        if self.is_running:
            logger.info("[Worker] Already running")
            return
        self._stop_event.clear()
        self._worker_task = asyncio.create_task(self._worker(), name="guess-resolution-worker")
        logger.info("[Worker] Guess resolution worker started (interval %.2fs)", self._interval_seconds)

    async def stop(self) -> None:
        self._stop_event.set()
        if self._worker_task is not None:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None
            logger.info("[Worker] Guess resolution worker stopped")

    async def _worker(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # noqa: BLE001
                logger.exception("[Worker] Error in worker loop: %s", exc)
            await asyncio.sleep(self._interval_seconds)

    async def run_once(self, now: datetime | None = None) -> list[ResolutionResult]:
        due = await asyncio.to_thread(self._queue.drain_due, now or self._clock())
        if not due:
            return []

        self._metrics["drained"] += len(due)
        logger.info("[Worker] Processing %s expired guess(es)", len(due))

        results: list[ResolutionResult] = []
        for pending in due:
            try:
                result = await self.resolve(pending)
            except Exception as exc:  # noqa: BLE001
                self._metrics["failed"] += 1
                logger.exception("[Worker] Error resolving guess for user %s: %s", pending.owner_identity, exc)
                self._record("error", "guess_failed", pending, {"reason": str(exc) or type(exc).__name__})
                continue
            if result is not None:
                results.append(result)
        return results

    async def resolve(self, pending: PendingPrediction) -> ResolutionResult | None:
        """Settle one prediction; ``None`` means it was dropped.

        A dropped prediction leaves the owner's ``active_prediction`` as is.
        """
        try:
            sample = self._cache.get()
        except PriceUnavailableError:
            self._metrics["dropped"] += 1
            logger.error("[Worker] Unable to get current price; dropping guess for user %s", pending.owner_identity)
            self._record("error", "guess_dropped", pending, {"reason": "price_unavailable"})
            return None

        is_correct, score_delta = evaluate_prediction(pending.direction, pending.price_at_submission, sample.price)

        try:
            user = await call_with_timeout(self._store_timeout_seconds, self._store.get_user, pending.owner_identity)
        except UserNotFoundError:
            self._metrics["dropped"] += 1
            logger.error("[Worker] User %s not found for guess resolution", pending.owner_identity)
            self._record("error", "guess_dropped", pending, {"reason": "user_not_found"})
            return None

        new_score = user.score + score_delta
        try:
            await write_with_timeout(
                self._store_timeout_seconds,
                self._store.update_user,
                pending.owner_identity,
                {"score": new_score, "active_prediction": None},
            )
        except TimeoutError:
            if not await self._score_write_landed(pending, new_score):
                self._metrics["dropped"] += 1
                logger.error("[Worker] Score write timed out; dropping guess for user %s", pending.owner_identity)
                self._record("error", "guess_dropped", pending, {"reason": "store_timeout"})
                return None
            logger.warning("[Worker] Score write for user %s was slow but committed", pending.owner_identity)

        result = ResolutionResult(
            owner_identity=pending.owner_identity,
            display_name=user.display_name,
            direction=pending.direction,
            price_at_submission=pending.price_at_submission,
            price_at_resolution=sample.price,
            is_correct=is_correct,
            score_delta=score_delta,
            new_score=new_score,
            resolved_at=self._clock(),
        )
        self._metrics["resolved"] += 1

        delivered = self._hub.send_to_owner(pending.owner_identity, EventKind.GUESS_RESULT.value, result.to_payload())
        if delivered:
            self._metrics["delivered"] += 1
        else:
            logger.info("[Worker] User %s not connected, guess result not delivered", pending.owner_identity)

        logger.info(
            "[Worker] Resolved guess for user %s: %s (%s) - Score: %s -> %s",
            user.display_name,
            pending.direction,
            "CORRECT" if is_correct else "INCORRECT",
            user.score,
            new_score,
        )
        self._record(
            "info",
            "guess_resolved",
            pending,
            {"is_correct": is_correct, "new_score": new_score, "delivered": delivered},
        )
        return result

    async def _score_write_landed(self, pending: PendingPrediction, new_score: int) -> bool:
        """Whether a timed-out score write committed anyway.

        The write has settled by the time this runs. It landed when the claim
        for this prediction is gone and the score moved by the delta.
        """
        try:
            user = await asyncio.to_thread(self._store.get_user, pending.owner_identity)
        except Exception:  # noqa: BLE001
            logger.exception("[Worker] Unable to re-read user %s after score timeout", pending.owner_identity)
            return False
        active = user.active_prediction
        claim_cleared = active is None or active.prediction_id != pending.prediction_id
        return claim_cleared and user.score == new_score

    def _record(self, level: str, message: str, pending: PendingPrediction, data: dict) -> None:
        if self._state is None:
            return
        self._state.add_event(
            level,
            message,
            {"user_id": pending.owner_identity, "prediction_id": pending.prediction_id, **data},
        )

    def get_metrics(self) -> dict[str, int]:
        return dict(self._metrics)
