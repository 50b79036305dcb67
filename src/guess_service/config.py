from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

DEFAULT_FEED_WS_URL = "wss://stream.binance.com:9443/ws/btcusdt@kline_1s"
INSECURE_DEV_SECRET = "dev-secret-change-in-production"


@dataclass(frozen=True)
class Config:
    feed_ws_url: str
    feed_symbol: str
    feed_reconnect_base_seconds: float
    feed_reconnect_max_seconds: float
    feed_max_reconnect_attempts: int
    feed_open_timeout_seconds: float
    ws_ping_interval_seconds: int
    price_cache_ttl_seconds: float
    guess_resolve_seconds: int
    resolution_interval_seconds: float
    store_timeout_seconds: float
    heartbeat_interval_seconds: float
    connection_queue_size: int
    database_path: str
    jwt_secret: str
    api_host: str
    api_port: int
    log_level: str



def _bool_from_env(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}



def load_config() -> Config:
    load_dotenv()

    feed_reconnect_base_seconds = float(os.getenv("FEED_RECONNECT_BASE_SECONDS", "5"))
    feed_reconnect_max_seconds = float(os.getenv("FEED_RECONNECT_MAX_SECONDS", "30"))
    if feed_reconnect_max_seconds < feed_reconnect_base_seconds:
        raise ValueError("FEED_RECONNECT_MAX_SECONDS must be >= FEED_RECONNECT_BASE_SECONDS")

    feed_max_reconnect_attempts = int(os.getenv("FEED_MAX_RECONNECT_ATTEMPTS", "10"))
    if feed_max_reconnect_attempts < 0:
        raise ValueError("FEED_MAX_RECONNECT_ATTEMPTS must be >= 0")

    guess_resolve_seconds = int(os.getenv("GUESS_RESOLVE_SECONDS", "60"))
    if guess_resolve_seconds <= 0:
        raise ValueError("GUESS_RESOLVE_SECONDS must be > 0")

    resolution_interval_seconds = float(os.getenv("RESOLUTION_INTERVAL_SECONDS", "1.0"))
    if resolution_interval_seconds <= 0:
        raise ValueError("RESOLUTION_INTERVAL_SECONDS must be > 0")

    jwt_secret = os.getenv("JWT_SECRET", "").strip()
    if not jwt_secret:
        if not _bool_from_env(os.getenv("ALLOW_INSECURE_JWT_SECRET"), False):
            raise ValueError("JWT_SECRET is required")
        jwt_secret = INSECURE_DEV_SECRET

    return Config(
        feed_ws_url=os.getenv("FEED_WS_URL", DEFAULT_FEED_WS_URL).strip(),
        feed_symbol=os.getenv("FEED_SYMBOL", "BTCUSDT").strip().upper(),
        feed_reconnect_base_seconds=feed_reconnect_base_seconds,
        feed_reconnect_max_seconds=feed_reconnect_max_seconds,
        feed_max_reconnect_attempts=feed_max_reconnect_attempts,
        feed_open_timeout_seconds=float(os.getenv("FEED_OPEN_TIMEOUT_SECONDS", "10")),
        ws_ping_interval_seconds=int(os.getenv("WS_PING_INTERVAL_SECONDS", "20")),
        price_cache_ttl_seconds=float(os.getenv("PRICE_CACHE_TTL_SECONDS", "300")),
        guess_resolve_seconds=guess_resolve_seconds,
        resolution_interval_seconds=resolution_interval_seconds,
        store_timeout_seconds=float(os.getenv("STORE_TIMEOUT_SECONDS", "5.0")),
        heartbeat_interval_seconds=float(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "30")),
        connection_queue_size=int(os.getenv("CONNECTION_QUEUE_SIZE", "256")),
        database_path=os.getenv("DATABASE_PATH", "data/guess_service.sqlite3").strip(),
        jwt_secret=jwt_secret,
        api_host=os.getenv("API_HOST", "0.0.0.0").strip(),
        api_port=int(os.getenv("API_PORT", "3000")),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
    )
