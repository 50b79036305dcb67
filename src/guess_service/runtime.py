from __future__ import annotations

import threading
from dataclasses import dataclass

from .auth import TokenVerifier
from .config import Config, load_config
from .delivery import DeliveryHub
from .feed import FeedConnector
from .guesses import GuessService
from .models import PriceSample
from .prediction_queue import PredictionQueue
from .price_cache import PriceCache
from .repository import PredictionJournal, SqliteUserStore
from .sse import EventKind
from .state import ServiceState
from .worker import ResolutionWorker

_runtime: GameRuntime | None = None
_lock = threading.Lock()


@dataclass
class GameRuntime:
    config: Config
    state: ServiceState
    cache: PriceCache
    queue: PredictionQueue
    store: SqliteUserStore
    hub: DeliveryHub
    verifier: TokenVerifier
    feed: FeedConnector
    worker: ResolutionWorker
    guesses: GuessService


def build_runtime(config: Config) -> GameRuntime:
    state = ServiceState()
    cache = PriceCache(ttl_seconds=config.price_cache_ttl_seconds)
    queue = PredictionQueue(journal=PredictionJournal(config.database_path))
    store = SqliteUserStore(config.database_path)
    hub = DeliveryHub(
        queue_size=config.connection_queue_size,
        heartbeat_interval_seconds=config.heartbeat_interval_seconds,
    )

    def _broadcast_price(sample: PriceSample) -> None:
        hub.broadcast(EventKind.PRICE_UPDATE.value, sample.to_payload())

    feed = FeedConnector(
        config.feed_ws_url,
        cache,
        _broadcast_price,
        symbol=config.feed_symbol,
        reconnect_base_seconds=config.feed_reconnect_base_seconds,
        reconnect_max_seconds=config.feed_reconnect_max_seconds,
        max_reconnect_attempts=config.feed_max_reconnect_attempts,
        ping_interval_seconds=config.ws_ping_interval_seconds,
        open_timeout_seconds=config.feed_open_timeout_seconds,
        state=state,
    )
    worker = ResolutionWorker(
        queue=queue,
        cache=cache,
        store=store,
        hub=hub,
        interval_seconds=config.resolution_interval_seconds,
        store_timeout_seconds=config.store_timeout_seconds,
        state=state,
    )
    guesses = GuessService(
        queue=queue,
        cache=cache,
        store=store,
        resolve_seconds=config.guess_resolve_seconds,
        store_timeout_seconds=config.store_timeout_seconds,
    )
    return GameRuntime(
        config=config,
        state=state,
        cache=cache,
        queue=queue,
        store=store,
        hub=hub,
        verifier=TokenVerifier(config.jwt_secret),
        feed=feed,
        worker=worker,
        guesses=guesses,
    )


def get_or_create_runtime(config: Config | None = None) -> GameRuntime:
    global _runtime

    if _runtime is not None:
        return _runtime

    with _lock:
        if _runtime is None:
            _runtime = build_runtime(config or load_config())
        return _runtime


def get_runtime() -> GameRuntime | None:
    return _runtime


def set_runtime(runtime: GameRuntime | None) -> None:
    global _runtime

    with _lock:
        _runtime = runtime
