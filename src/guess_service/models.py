from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Literal
from uuid import uuid4

from .errors import InvalidDirectionError

Direction = Literal["up", "down"]
DIRECTIONS: tuple[str, ...] = ("up", "down")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_direction(value: object) -> Direction:
    if value == "up":
        return "up"
    if value == "down":
        return "down"
    raise InvalidDirectionError('Guess must be either "up" or "down"')


def _iso(value: datetime) -> str:
    return ensure_utc(value).isoformat()


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def _decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class PriceSample:
    price: Decimal
    open_price: Decimal
    high_price: Decimal
    low_price: Decimal
    volume: Decimal
    quote_volume: Decimal
    trades_count: int
    sampled_at: datetime
    interval_start: datetime
    interval_end: datetime
    is_closed: bool

    def to_payload(self) -> dict[str, Any]:
        return {
            "price": float(self.price),
            "open_price": float(self.open_price),
            "high_price": float(self.high_price),
            "low_price": float(self.low_price),
            "volume": float(self.volume),
            "quote_volume": float(self.quote_volume),
            "trades_count": self.trades_count,
            "timestamp": _iso(self.sampled_at),
            "kline_start_time": _iso(self.interval_start),
            "kline_close_time": _iso(self.interval_end),
            "is_closed": self.is_closed,
            "event_type": "kline",
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> PriceSample:
        price = _decimal(payload["price"])
        sampled_at = _parse_ts(payload["timestamp"])
        return cls(
            price=price,
            open_price=_decimal(payload.get("open_price", price)),
            high_price=_decimal(payload.get("high_price", price)),
            low_price=_decimal(payload.get("low_price", price)),
            volume=_decimal(payload.get("volume", 0)),
            quote_volume=_decimal(payload.get("quote_volume", 0)),
            trades_count=int(payload.get("trades_count", 0)),
            sampled_at=sampled_at,
            interval_start=_parse_ts(payload.get("kline_start_time", sampled_at)),
            interval_end=_parse_ts(payload.get("kline_close_time", sampled_at)),
            is_closed=bool(payload.get("is_closed", True)),
        )


@dataclass(frozen=True)
class PendingPrediction:
    owner_identity: str
    direction: Direction
    price_at_submission: Decimal
    submitted_at: datetime
    resolve_at: datetime
    prediction_id: str = ""

    def __post_init__(self) -> None:
        if not self.prediction_id:
            object.__setattr__(self, "prediction_id", uuid4().hex)

    def to_dict(self) -> dict[str, Any]:
        return {
            "prediction_id": self.prediction_id,
            "owner_identity": self.owner_identity,
            "direction": self.direction,
            "price_at_submission": str(self.price_at_submission),
            "submitted_at": _iso(self.submitted_at),
            "resolve_at": _iso(self.resolve_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingPrediction:
        return cls(
            prediction_id=str(data["prediction_id"]),
            owner_identity=str(data["owner_identity"]),
            direction=parse_direction(data["direction"]),
            price_at_submission=_decimal(data["price_at_submission"]),
            submitted_at=_parse_ts(data["submitted_at"]),
            resolve_at=_parse_ts(data["resolve_at"]),
        )


@dataclass(frozen=True)
class UserRecord:
    identity: str
    display_name: str
    score: int = 0
    active_prediction: PendingPrediction | None = None
    last_login_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class ResolutionResult:
    owner_identity: str
    display_name: str
    direction: Direction
    price_at_submission: Decimal
    price_at_resolution: Decimal
    is_correct: bool
    score_delta: int
    new_score: int
    resolved_at: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "user_id": self.owner_identity,
            "username": self.display_name,
            "guess": self.direction,
            "guess_price": float(self.price_at_submission),
            "current_price": float(self.price_at_resolution),
            "is_correct": self.is_correct,
            "score_change": self.score_delta,
            "new_score": self.new_score,
            "resolved_at": _iso(self.resolved_at),
        }
