import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

import httpx

from .config import Config
from .errors import NetworkFailure

logger = logging.getLogger("agenttunnel-http")


async def request_with_retry(client: httpx.AsyncClient, method: str, url: str,
                             headers: Optional[Dict[str, str]] = None,
                             attempts: int = Config.FETCH_ATTEMPTS,
                             retry_delay: float = Config.FETCH_RETRY_DELAY,
                             sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> httpx.Response:
    """
    Send a request, retrying transport failures with a fixed delay.

    Only transport errors (DNS, refused connection, timeout) are retried. Any
    HTTP response, whatever its status, is returned to the caller.

    Raises:
        NetworkFailure: once ``attempts`` transport failures have happened
    """
    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            return await client.request(method, url, headers=headers)
        except httpx.TransportError as e:
            last_error = e
            logger.warning(f"{method} {url} failed (attempt {attempt}/{attempts}): {e!r}")
            if attempt < attempts:
                await sleep(retry_delay)
    raise NetworkFailure(method, url, attempts, last_error)
