from __future__ import annotations

import asyncio
import logging

from .runtime import GameRuntime, get_or_create_runtime

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )


async def run(runtime: GameRuntime | None = None) -> None:
    """Run the feed, the heartbeat and the resolution worker until cancelled."""
    runtime = runtime or get_or_create_runtime()
    logger.info("=== Starting BTC guess service ===")
    logger.info("Feed: %s (TTL %ss)", runtime.config.feed_ws_url, runtime.config.price_cache_ttl_seconds)
    logger.info("Pending guesses restored: %s", len(runtime.queue))

    await runtime.worker.start()
    try:
        async with asyncio.TaskGroup() as tg:
            tg.create_task(runtime.feed.run(), name="price-feed")
            tg.create_task(runtime.hub.run_heartbeat(), name="stream-heartbeat")
    finally:
        logger.info("Starting graceful shutdown...")
        await runtime.feed.stop()
        await runtime.worker.stop()
        runtime.hub.close_all()
        logger.info("Graceful shutdown completed")
