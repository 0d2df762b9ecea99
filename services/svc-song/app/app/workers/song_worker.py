from __future__ import annotations

import asyncio
import logging
import signal

from app.container import close_container, get_container
from app.logging import configure_logging

logger = logging.getLogger("song_worker")


async def run_forever() -> None:
    """Standalone queue worker, for deployments that run the API with WORKER_EMBEDDED=false."""
    configure_logging()
    c = await get_container()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # not available on every platform; Ctrl+C still cancels asyncio.run
            pass

    await c.queue.start()
    logger.info("song_worker_started", extra={"backend": c.backend})
    try:
        await stop.wait()
    finally:
        logger.info("song_worker_stopping")
        await close_container()


if __name__ == "__main__":
    asyncio.run(run_forever())
