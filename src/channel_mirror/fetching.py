import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass

import httpx
from loguru import logger

from channel_mirror.errors import UpstreamFetchError

RETRYABLE_STATUSES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-delay retry policy.

    - retries counts the extra attempts after the first one (retries=3 => 4 tries).
    - delay_seconds is waited between attempts, without backoff.
    """

    retries: int = 3
    delay_seconds: float = 0.1

    def __post_init__(self) -> None:
        if self.retries < 0:
            raise ValueError("retries must be >= 0")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")


async def get_with_retries(
    client: httpx.AsyncClient,
    url: str,
    *,
    policy: RetryPolicy,
    headers: Mapping[str, str] | None = None,
    params: Mapping[str, str] | None = None,
    sleep: SleepFn = asyncio.sleep,
) -> httpx.Response:
    """GET ``url`` and return the first 2xx response.

    Transport errors and retryable statuses are retried; anything else, or
    running out of attempts, raises ``UpstreamFetchError``.
    """
    attempts = policy.retries + 1
    for attempt in range(1, attempts + 1):
        try:
            response = await client.get(url, headers=headers, params=params)
        except httpx.TransportError as e:
            if attempt >= attempts:
                raise UpstreamFetchError(url, reason=str(e) or type(e).__name__) from e
            reason = type(e).__name__
        else:
            if response.is_success:
                return response
            if response.status_code not in RETRYABLE_STATUSES or attempt >= attempts:
                raise UpstreamFetchError(url, status_code=response.status_code)
            reason = f"HTTP {response.status_code}"

        logger.warning(
            "GET {} failed with {} (attempt {}/{}), retrying",
            url,
            reason,
            attempt,
            attempts,
        )
        if policy.delay_seconds > 0:
            await sleep(policy.delay_seconds)

    # Unreachable, but keeps typing happy.
    raise UpstreamFetchError(url, reason="retry loop exited")


async def fetch_quietly(client: httpx.AsyncClient, url: str) -> httpx.Response | None:
    """Single GET for best-effort lookups: any failure or non-2xx is ``None``."""
    try:
        response = await client.get(url, follow_redirects=True)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        logger.warning("GET {} failed: {}", url, e)
        return None
    if not response.is_success:
        logger.debug("GET {} returned HTTP {}", url, response.status_code)
        return None
    return response
