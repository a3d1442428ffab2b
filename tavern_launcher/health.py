"""
Liveness probing for the SillyTavern server.

A probe is a single short GET against the local port. Timeouts, connection
errors and non-200 answers all count as "not alive". Repeated probing lives
in poll_until(), which callers use with their own interval and bound.
"""

import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from .config import config

logger = logging.getLogger(__name__)


async def is_alive(
    port: int,
    path: str = None,
    timeout: float = None,
    host: str = "127.0.0.1",
    transport: httpx.AsyncBaseTransport = None,
) -> bool:
    """Return True if GET http://host:port/path answers 200 within the timeout."""
    url = f"http://{host}:{port}{path or config.health_path}"
    try:
        async with httpx.AsyncClient(transport=transport) as client:
            response = await client.get(url, timeout=timeout or config.probe_timeout)
            return response.status_code == 200
    except httpx.HTTPError as e:
        logger.debug(f"Probe of {url} failed: {e}")
        return False


async def fetch_json(
    port: int,
    path: str = None,
    timeout: float = None,
    host: str = "127.0.0.1",
    transport: httpx.AsyncBaseTransport = None,
) -> dict | None:
    """Fetch a JSON document from the local server, or None on any failure."""
    url = f"http://{host}:{port}{path or config.health_path}"
    try:
        async with httpx.AsyncClient(transport=transport) as client:
            response = await client.get(url, timeout=timeout or config.probe_timeout)
            if response.status_code != 200:
                return None
            return response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.debug(f"Could not fetch {url}: {e}")
        return None


async def poll_until(
    probe: Callable[[], Awaitable[bool]],
    interval: float,
    max_attempts: int,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> bool:
    """
    Call probe() up to max_attempts times, sleeping interval seconds before each call.

    Returns True on the first successful probe, False once the bound is exceeded.
    """
    for attempt in range(1, max_attempts + 1):
        await sleep(interval)
        if await probe():
            logger.debug(f"Probe succeeded after {attempt} attempt(s)")
            return True
    return False
