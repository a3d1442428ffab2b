"""
Entry point for running the launcher via `python -m tavern_launcher`.

Claims the control port (reclaiming it from a stale launcher if needed),
then starts the FastAPI server with uvicorn.
"""

import asyncio
import logging
import sys

import uvicorn

from . import ports
from .config import config
from .health import poll_until
from .main import setup_logging

logger = logging.getLogger(__name__)


def claim_control_port(host: str, port: int, retries: int, delay: float) -> bool:
    """Free the control port, retrying a bounded number of times."""
    if ports.port_is_free(host, port):
        return True

    attempt = 0

    async def reclaimed() -> bool:
        nonlocal attempt
        attempt += 1
        logger.warning(f"Port {port} is in use, reclaiming ({attempt}/{retries})...")
        await asyncio.to_thread(ports.reclaim, port)
        return ports.port_is_free(host, port)

    return asyncio.run(poll_until(reclaimed, interval=delay, max_attempts=retries))


def main():
    """Run the launcher server."""
    setup_logging()

    if not claim_control_port(config.host, config.port, config.bind_retries, config.bind_retry_delay):
        logger.error(f"Port {config.port} could not be freed, stop the other launcher manually")
        sys.exit(1)

    logger.info(f"Control panel: http://127.0.0.1:{config.port}")
    logger.info(f"SillyTavern port: {config.app_port}")
    logger.info(f"API aggregation: http://127.0.0.1:{config.port}/v1")

    uvicorn.run(
        "tavern_launcher.main:create_app",
        factory=True,
        host=config.host,
        port=config.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
