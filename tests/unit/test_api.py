import time
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from src.guess_service.api import app
from src.guess_service.auth import issue_token
from src.guess_service.config import load_config
from src.guess_service.models import PriceSample
from src.guess_service.runtime import build_runtime, set_runtime

SECRET = "api-test-secret-0123456789abcdef012345"

client = TestClient(app)


def _sample(price: str) -> PriceSample:
    ts = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    value = Decimal(price)
    return PriceSample(
        price=value,
        open_price=value,
        high_price=value,
        low_price=value,
        volume=Decimal("2"),
        quote_volume=value * 2,
        trades_count=5,
        sampled_at=ts,
        interval_start=ts,
        interval_end=ts,
        is_closed=False,
    )


def _auth(user_id: str = "u1", username: str = "alice") -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(user_id, username, SECRET)}"}


@pytest.fixture
def runtime(tmp_path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JWT_SECRET", SECRET)
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "api.sqlite3"))
    runtime = build_runtime(load_config())
    runtime.store.create_user("u1", "alice")
    set_runtime(runtime)
    yield runtime
    set_runtime(None)


def test_health_degraded_while_feed_disconnected(runtime) -> None:
    response = client.get("/health")

    assert response.status_code == 503
    body = response.json()
    assert body["status"] == "degraded"
    assert body["services"] == {"store": "connected", "feed": "disconnected"}


def test_health_ok_when_feed_connected(runtime, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(runtime.feed, "_connected", True)

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_status_reports_queue_and_clients(runtime) -> None:
    response = client.get("/status")

    assert response.status_code == 200
    body = response.json()
    assert body["pending_guesses"] == 0
    assert body["next_resolve_at"] is None
    assert body["connected_clients"] == 0
    assert body["feed"]["stream_type"] == "kline_1s"


@pytest.mark.parametrize(
    ("method", "path"),
    [("get", "/price"), ("get", "/score"), ("get", "/sse/price"), ("post", "/guess")],
)
def test_endpoints_require_token(runtime, method: str, path: str) -> None:
    response = client.request(
        method.upper(),
        path,
        headers={"Authorization": "Bearer not-a-token"},
        json={"guess": "up"},
    )

    assert response.status_code == 401
    assert response.json()["detail"]["error"] == "Unauthorized"


def test_price_unavailable_then_available(runtime) -> None:
    response = client.get("/price", headers=_auth())
    assert response.status_code == 503
    assert response.json()["detail"] == "Bitcoin price data not available"

    runtime.cache.set(_sample("64250.5"))
    response = client.get("/price", headers=_auth())

    assert response.status_code == 200
    body = response.json()
    assert body["price"] == 64250.5
    assert body["trades_count"] == 5
    assert body["event_type"] == "kline"


def test_guess_lifecycle_errors(runtime) -> None:
    response = client.post("/guess", json={"guess": "sideways"}, headers=_auth())
    assert response.status_code == 400
    assert response.json()["detail"] == 'Guess must be either "up" or "down"'

    response = client.post("/guess", json={}, headers=_auth())
    assert response.status_code == 400

    response = client.post("/guess", json={"guess": "up"}, headers=_auth())
    assert response.status_code == 503

    response = client.post("/guess", json={"guess": "up"}, headers=_auth("ghost", "casper"))
    assert response.status_code == 404


def test_guess_accepted_then_conflict(runtime) -> None:
    runtime.cache.set(_sample("64250.5"))

    response = client.post("/guess", json={"guess": "down"}, headers=_auth())

    assert response.status_code == 200
    body = response.json()
    assert body["guess"] == "down"
    assert body["price_at_guess"] == 64250.5
    assert "60 seconds" in body["message"]
    assert len(runtime.queue) == 1

    response = client.post("/guess", json={"guess": "up"}, headers=_auth())
    assert response.status_code == 409

    status = client.get("/status").json()
    assert status["pending_guesses"] == 1
    assert status["next_resolve_at"] == body["resolve_time"]


def test_score_reports_active_guess(runtime) -> None:
    response = client.get("/score", headers=_auth())
    assert response.status_code == 200
    assert response.json()["active_guess"] is None

    runtime.cache.set(_sample("64250.5"))
    client.post("/guess", json={"guess": "up"}, headers=_auth())
    runtime.store.update_user("u1", {"score": 7})

    response = client.get("/score", headers=_auth())

    body = response.json()
    assert body["user_id"] == "u1"
    assert body["username"] == "alice"
    assert body["score"] == 7
    assert body["active_guess"]["direction"] == "up"
    assert body["active_guess"]["price_at_submission"] == "64250.5"


def test_slow_store_maps_to_service_unavailable(runtime, monkeypatch: pytest.MonkeyPatch) -> None:
    runtime.cache.set(_sample("64250.5"))
    update_user = runtime.store.update_user

    def slow_update_user(identity, fields, *, only_if_idle=False):
        time.sleep(0.3)
        return update_user(identity, fields, only_if_idle=only_if_idle)

    monkeypatch.setattr(runtime.store, "update_user", slow_update_user)
    monkeypatch.setattr(runtime.guesses, "_store_timeout_seconds", 0.05)

    response = client.post("/guess", json={"guess": "up"}, headers=_auth())

    assert response.status_code == 503
    assert response.json()["detail"] == "User store unavailable. Please try again."
    assert runtime.store.get_user("u1").active_prediction is None
    assert len(runtime.queue) == 0

    get_user = runtime.store.get_user

    def slow_get_user(identity):
        time.sleep(0.3)
        return get_user(identity)

    monkeypatch.setattr(runtime.store, "get_user", slow_get_user)

    response = client.get("/score", headers=_auth())

    assert response.status_code == 503
