from __future__ import annotations

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator

from .errors import StoreConflictError, UserNotFoundError
from .models import PendingPrediction, UserRecord, ensure_utc, utc_now
from .store import UserStore

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {"display_name", "score", "active_prediction", "last_login_at"}


class _SqliteRepository(ABC):
    def __init__(self, db_path: str) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._bootstrap()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self._db_path), timeout=5.0)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    @abstractmethod
    def _bootstrap(self) -> None:
        raise NotImplementedError


class SqliteUserStore(_SqliteRepository, UserStore):
    def __init__(self, db_path: str = "data/guess_service.sqlite3") -> None:
        super().__init__(db_path)

    def _bootstrap(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    identity TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL,
                    score INTEGER NOT NULL DEFAULT 0,
                    active_prediction TEXT,
                    last_login_at TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_users_display_name
                ON users (display_name)
                """
            )

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> UserRecord:
        raw_prediction = row["active_prediction"]
        active_prediction = None
        if raw_prediction is not None:
            active_prediction = PendingPrediction.from_dict(json.loads(raw_prediction))

        def _parse_ts(raw: str | None) -> datetime | None:
            if raw is None:
                return None
            return datetime.fromisoformat(raw)

        return UserRecord(
            identity=row["identity"],
            display_name=row["display_name"],
            score=int(row["score"]),
            active_prediction=active_prediction,
            last_login_at=_parse_ts(row["last_login_at"]),
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _encode_field(name: str, value: Any) -> Any:
        if name == "active_prediction":
            if value is None:
                return None
            if isinstance(value, PendingPrediction):
                return json.dumps(value.to_dict())
            raise TypeError("active_prediction must be a PendingPrediction or None")
        if name == "last_login_at":
            return ensure_utc(value).isoformat() if value is not None else None
        if name == "score":
            return int(value)
        return value

    def create_user(self, identity: str, display_name: str, *, score: int = 0) -> UserRecord:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO users (identity, display_name, score, active_prediction, last_login_at, created_at)
                VALUES (?, ?, ?, NULL, NULL, ?)
                """,
                (identity, display_name, int(score), utc_now().isoformat()),
            )
        return self.get_user(identity)

    def get_user(self, identity: str) -> UserRecord:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE identity = ?", (identity,)).fetchone()
        if row is None:
            raise UserNotFoundError(identity)
        return self._row_to_record(row)

    def update_user(self, identity: str, fields: dict[str, Any], *, only_if_idle: bool = False) -> UserRecord:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {', '.join(sorted(unknown))}")
        if not fields:
            return self.get_user(identity)

        names = sorted(fields)
        assignments = ", ".join(f"{name} = ?" for name in names)
        params = [self._encode_field(name, fields[name]) for name in names]
        sql = f"UPDATE users SET {assignments} WHERE identity = ?"
        if only_if_idle:
            sql += " AND active_prediction IS NULL"

        with self._connect() as conn:
            cursor = conn.execute(sql, (*params, identity))
            if cursor.rowcount == 0:
                exists = conn.execute("SELECT 1 FROM users WHERE identity = ?", (identity,)).fetchone()
                if exists is None:
                    raise UserNotFoundError(identity)
                raise StoreConflictError(f"user {identity} already has an active prediction")
            row = conn.execute("SELECT * FROM users WHERE identity = ?", (identity,)).fetchone()
        return self._row_to_record(row)

    def release_prediction(self, identity: str, prediction_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE users SET active_prediction = NULL
                WHERE identity = ?
                  AND json_extract(active_prediction, '$.prediction_id') = ?
                """,
                (identity, prediction_id),
            )
            return cursor.rowcount > 0

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error as exc:
            logger.warning("[Store] ping failed: %s", exc)
            return False


class PredictionJournal(_SqliteRepository):
    """Durable copy of the pending-prediction queue."""

    def __init__(self, db_path: str = "data/guess_service.sqlite3") -> None:
        super().__init__(db_path)

    def _bootstrap(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pending_predictions (
                    prediction_id TEXT PRIMARY KEY,
                    owner_identity TEXT NOT NULL,
                    resolve_at TEXT NOT NULL,
                    submitted_at TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_pending_predictions_due
                ON pending_predictions (resolve_at, submitted_at)
                """
            )

    def insert(self, prediction: PendingPrediction) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO pending_predictions (prediction_id, owner_identity, resolve_at, submitted_at, payload)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    prediction.prediction_id,
                    prediction.owner_identity,
                    ensure_utc(prediction.resolve_at).isoformat(),
                    ensure_utc(prediction.submitted_at).isoformat(),
                    json.dumps(prediction.to_dict()),
                ),
            )

    def delete_many(self, prediction_ids: Iterable[str]) -> int:
        ids = list(prediction_ids)
        if not ids:
            return 0
        with self._connect() as conn:
            cursor = conn.executemany(
                "DELETE FROM pending_predictions WHERE prediction_id = ?",
                [(prediction_id,) for prediction_id in ids],
            )
            return cursor.rowcount

    def load_all(self) -> list[PendingPrediction]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT payload FROM pending_predictions ORDER BY resolve_at ASC, submitted_at ASC"
            ).fetchall()
        return [PendingPrediction.from_dict(json.loads(row["payload"])) for row in rows]
