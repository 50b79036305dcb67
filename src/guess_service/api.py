from __future__ import annotations

from datetime import datetime, timezone

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from .auth import Identity
from .delivery import event_stream
from .errors import (
    AuthError,
    InvalidDirectionError,
    PredictionAlreadyActiveError,
    PriceUnavailableError,
    UserNotFoundError,
)
from .runtime import GameRuntime, get_or_create_runtime
from .store import call_with_timeout

app = FastAPI(title="BTC Guess Service", version="0.1.0")

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

STORE_UNAVAILABLE_DETAIL = "User store unavailable. Please try again."


class GuessRequest(BaseModel):
    guess: str | None = None


def _authenticate(runtime: GameRuntime, authorization: str | None) -> Identity:
    try:
        return runtime.verifier.verify(authorization)
    except AuthError:
        raise HTTPException(
            status_code=401,
            detail={"error": "Unauthorized", "message": "Invalid or expired JWT token"},
        ) from None


@app.get("/health")
async def health() -> JSONResponse:
    runtime = get_or_create_runtime()
    try:
        store_ok = await call_with_timeout(runtime.config.store_timeout_seconds, runtime.store.ping)
    except TimeoutError:
        store_ok = False
    feed_status = runtime.feed.status()
    feed_ok = bool(feed_status["connected"])
    healthy = store_ok and feed_ok

    body = {
        "status": "ok" if healthy else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": {
            "store": "connected" if store_ok else "disconnected",
            "feed": "connected" if feed_ok else "disconnected",
        },
        "uptime_seconds": runtime.state.uptime_seconds(),
        "reconnect_attempts": feed_status["reconnect_attempts"],
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)


@app.get("/status")
async def status() -> dict:
    runtime = get_or_create_runtime()
    next_deadline = runtime.queue.next_deadline()
    return {
        **runtime.state.snapshot(),
        "feed": runtime.feed.status(),
        "worker": runtime.worker.get_metrics(),
        "pending_guesses": len(runtime.queue),
        "next_resolve_at": next_deadline.isoformat() if next_deadline is not None else None,
        "connected_clients": runtime.hub.connection_count(),
    }


@app.get("/sse/price")
async def price_stream(authorization: str | None = Header(default=None)) -> StreamingResponse:
    runtime = get_or_create_runtime()
    identity = _authenticate(runtime, authorization)
    connection = runtime.hub.open(identity.user_id, identity.username)
    return StreamingResponse(
        event_stream(runtime.hub, connection),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )


@app.get("/price")
async def latest_price(authorization: str | None = Header(default=None)) -> dict:
    runtime = get_or_create_runtime()
    _authenticate(runtime, authorization)
    try:
        sample = runtime.cache.get()
    except PriceUnavailableError:
        raise HTTPException(status_code=503, detail="Bitcoin price data not available") from None
    return sample.to_payload()


@app.post("/guess")
async def submit_guess(payload: GuessRequest, authorization: str | None = Header(default=None)) -> dict:
    runtime = get_or_create_runtime()
    identity = _authenticate(runtime, authorization)
    try:
        prediction = await runtime.guesses.submit_guess(identity.user_id, payload.guess)
    except InvalidDirectionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from None
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found") from None
    except PredictionAlreadyActiveError:
        raise HTTPException(
            status_code=409,
            detail="You already have an active guess. Please wait for it to be resolved.",
        ) from None
    except PriceUnavailableError:
        raise HTTPException(
            status_code=503,
            detail="Unable to get current Bitcoin price. Please try again.",
        ) from None
    except TimeoutError:
        raise HTTPException(status_code=503, detail=STORE_UNAVAILABLE_DETAIL) from None

    resolve_seconds = runtime.guesses.resolve_seconds
    return {
        "guess": prediction.direction,
        "price_at_guess": float(prediction.price_at_submission),
        "timestamp": prediction.submitted_at.isoformat(),
        "resolve_time": prediction.resolve_at.isoformat(),
        "message": (
            f'Your guess of "{prediction.direction}" has been recorded. '
            f"It will be resolved in {resolve_seconds} seconds."
        ),
    }


@app.get("/score")
async def user_score(authorization: str | None = Header(default=None)) -> dict:
    runtime = get_or_create_runtime()
    identity = _authenticate(runtime, authorization)
    try:
        user = await runtime.guesses.get_score(identity.user_id)
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found") from None
    except TimeoutError:
        raise HTTPException(status_code=503, detail=STORE_UNAVAILABLE_DETAIL) from None

    return {
        "user_id": user.identity,
        "username": user.display_name,
        "score": user.score,
        "active_guess": user.active_prediction.to_dict() if user.active_prediction is not None else None,
        "last_login": user.last_login_at.isoformat() if user.last_login_at is not None else None,
    }
