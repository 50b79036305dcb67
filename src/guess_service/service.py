from __future__ import annotations

import asyncio

import uvicorn

from .api import app
from .config import load_config
from .main import configure_logging, run
from .runtime import get_or_create_runtime


async def serve() -> None:
    config = load_config()
    configure_logging(config.log_level)
    runtime = get_or_create_runtime(config)

    server = uvicorn.Server(
        uvicorn.Config(
            app=app,
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower(),
        )
    )

    background = asyncio.create_task(run(runtime), name="guess-service-runtime")
    try:
        await server.serve()
    finally:
        # uvicorn owns signal handling; once it exits the background tasks go too.
        background.cancel()
        try:
            await background
        except asyncio.CancelledError:
            pass


if __name__ == "__main__":
    asyncio.run(serve())
