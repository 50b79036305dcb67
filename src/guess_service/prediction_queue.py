from __future__ import annotations

import heapq
import itertools
import logging
import threading
from datetime import datetime
from typing import TYPE_CHECKING

from .errors import PredictionAlreadyActiveError
from .models import PendingPrediction, ensure_utc

if TYPE_CHECKING:
    from .repository import PredictionJournal

logger = logging.getLogger(__name__)

_HeapEntry = tuple[datetime, datetime, int, PendingPrediction]


class PredictionQueue:
    """Pending predictions ordered by deadline.

    A min-heap keyed ``(resolve_at, submitted_at, seq)`` so ``drain_due`` only
    touches entries that are actually due. An optional journal keeps a
    durable copy that is reloaded on construction.
    """

    def __init__(self, journal: PredictionJournal | None = None) -> None:
        self._journal = journal
        self._lock = threading.Lock()
        self._heap: list[_HeapEntry] = []
        self._by_owner: dict[str, PendingPrediction] = {}
        self._seq = itertools.count()

        if journal is not None:
            restored = journal.load_all()
            for prediction in restored:
                if prediction.owner_identity in self._by_owner:
                    logger.warning(
                        "[Queue] Skipping duplicate journal entry %s for %s",
                        prediction.prediction_id,
                        prediction.owner_identity,
                    )
                    continue
                self._push(prediction)
            if restored:
                logger.info("[Queue] Restored %s pending prediction(s) from journal", len(self._heap))

    def _push(self, prediction: PendingPrediction) -> None:
        entry = (
            ensure_utc(prediction.resolve_at),
            ensure_utc(prediction.submitted_at),
            next(self._seq),
            prediction,
        )
        heapq.heappush(self._heap, entry)
        self._by_owner[prediction.owner_identity] = prediction

    def submit(self, prediction: PendingPrediction) -> None:
        with self._lock:
            if prediction.owner_identity in self._by_owner:
                raise PredictionAlreadyActiveError(prediction.owner_identity)
            if self._journal is not None:
                self._journal.insert(prediction)
            self._push(prediction)

    def drain_due(self, now: datetime) -> list[PendingPrediction]:
        now = ensure_utc(now)
        with self._lock:
            popped: list[_HeapEntry] = []
            while self._heap and self._heap[0][0] <= now:
                popped.append(heapq.heappop(self._heap))
            if not popped:
                return []

            due = [entry[3] for entry in popped]
            if self._journal is not None:
                try:
                    self._journal.delete_many(prediction.prediction_id for prediction in due)
                except Exception:
                    for entry in popped:
                        heapq.heappush(self._heap, entry)
                    raise

            for prediction in due:
                self._by_owner.pop(prediction.owner_identity, None)
            return due

    def pending_for(self, identity: str) -> PendingPrediction | None:
        with self._lock:
            return self._by_owner.get(identity)

    def next_deadline(self) -> datetime | None:
        with self._lock:
            if not self._heap:
                return None
            return self._heap[0][0]

    def __len__(self) -> int:
        with self._lock:
            return len(self._heap)
