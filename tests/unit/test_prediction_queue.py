from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from src.guess_service.errors import PredictionAlreadyActiveError
from src.guess_service.models import PendingPrediction
from src.guess_service.prediction_queue import PredictionQueue
from src.guess_service.repository import PredictionJournal

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _prediction(owner: str, *, resolve_in: float = 60, submitted_offset: float = 0) -> PendingPrediction:
    submitted_at = T0 + timedelta(seconds=submitted_offset)
    return PendingPrediction(
        owner_identity=owner,
        direction="up",
        price_at_submission=Decimal("100"),
        submitted_at=submitted_at,
        resolve_at=T0 + timedelta(seconds=resolve_in),
    )


def test_drain_due_returns_predictions_in_deadline_order() -> None:
    queue = PredictionQueue()
    queue.submit(_prediction("c", resolve_in=90))
    queue.submit(_prediction("a", resolve_in=30))
    queue.submit(_prediction("b", resolve_in=60))

    due = queue.drain_due(T0 + timedelta(seconds=100))

    assert [p.owner_identity for p in due] == ["a", "b", "c"]
    assert len(queue) == 0


def test_equal_deadlines_drain_by_submission_time() -> None:
    queue = PredictionQueue()
    queue.submit(_prediction("late", resolve_in=60, submitted_offset=2))
    queue.submit(_prediction("early", resolve_in=60, submitted_offset=1))

    due = queue.drain_due(T0 + timedelta(seconds=60))

    assert [p.owner_identity for p in due] == ["early", "late"]


def test_not_yet_due_predictions_stay_queued() -> None:
    queue = PredictionQueue()
    queue.submit(_prediction("a", resolve_in=60))
    queue.submit(_prediction("b", resolve_in=120))

    due = queue.drain_due(T0 + timedelta(seconds=59))
    assert due == []
    assert len(queue) == 2

    due = queue.drain_due(T0 + timedelta(seconds=60))
    assert [p.owner_identity for p in due] == ["a"]
    assert queue.next_deadline() == T0 + timedelta(seconds=120)


def test_each_prediction_is_drained_at_most_once() -> None:
    queue = PredictionQueue()
    queue.submit(_prediction("a"))

    first = queue.drain_due(T0 + timedelta(seconds=61))
    second = queue.drain_due(T0 + timedelta(seconds=62))

    assert len(first) == 1
    assert second == []
    assert queue.pending_for("a") is None


def test_submit_rejects_second_prediction_for_owner() -> None:
    queue = PredictionQueue()
    queue.submit(_prediction("a"))

    with pytest.raises(PredictionAlreadyActiveError):
        queue.submit(_prediction("a", resolve_in=90))

    assert len(queue) == 1


def test_owner_can_submit_again_after_drain() -> None:
    queue = PredictionQueue()
    queue.submit(_prediction("a"))
    queue.drain_due(T0 + timedelta(seconds=61))

    queue.submit(_prediction("a", resolve_in=200))

    assert queue.pending_for("a") is not None


def test_pending_for_returns_owner_entry() -> None:
    queue = PredictionQueue()
    a = _prediction("a", resolve_in=30)
    b = _prediction("b", resolve_in=90)
    queue.submit(a)
    queue.submit(b)

    assert queue.pending_for("a") == a
    assert queue.pending_for("b") == b
    assert queue.pending_for("c") is None

    queue.drain_due(T0 + timedelta(seconds=30))

    assert queue.pending_for("a") is None
    assert queue.pending_for("b") == b


def test_journal_restores_pending_predictions(tmp_path) -> None:
    db_path = str(tmp_path / "queue.sqlite3")
    first = PredictionQueue(journal=PredictionJournal(db_path))
    kept = _prediction("a", resolve_in=60)
    first.submit(kept)
    first.submit(_prediction("b", resolve_in=30))
    first.drain_due(T0 + timedelta(seconds=45))

    restored = PredictionQueue(journal=PredictionJournal(db_path))

    assert len(restored) == 1
    pending = restored.pending_for("a")
    assert pending is not None
    assert pending.prediction_id == kept.prediction_id
    assert pending.resolve_at == kept.resolve_at
    assert pending.price_at_submission == Decimal("100")


def test_drained_predictions_are_removed_from_journal(tmp_path) -> None:
    db_path = str(tmp_path / "queue.sqlite3")
    queue = PredictionQueue(journal=PredictionJournal(db_path))
    queue.submit(_prediction("a"))
    queue.drain_due(T0 + timedelta(seconds=61))

    assert PredictionJournal(db_path).load_all() == []


class _BrokenDeleteJournal:
    def __init__(self) -> None:
        self.inserted: list[PendingPrediction] = []

    def load_all(self) -> list[PendingPrediction]:
        return []

    def insert(self, prediction: PendingPrediction) -> None:
        self.inserted.append(prediction)

    def delete_many(self, prediction_ids) -> int:
        raise RuntimeError("journal unavailable")


def test_failed_journal_delete_leaves_predictions_queued() -> None:
    queue = PredictionQueue(journal=_BrokenDeleteJournal())
    queue.submit(_prediction("a"))

    with pytest.raises(RuntimeError, match="journal unavailable"):
        queue.drain_due(T0 + timedelta(seconds=61))

    assert len(queue) == 1
    assert queue.pending_for("a") is not None
