from collections.abc import Mapping

import httpx
from loguru import logger

from channel_mirror.fetching import RetryPolicy, SleepFn, get_with_retries
from channel_mirror.settings import Settings

DROPPED_REQUEST_HEADERS = frozenset({"host", "cookie", "origin", "referer"})


def forwardable_headers(headers: Mapping[str, str] | None) -> dict[str, str]:
    if not headers:
        return {}
    return {
        key: value
        for key, value in headers.items()
        if key.lower() not in DROPPED_REQUEST_HEADERS
    }


def channel_page_url(host: str, channel: str) -> str:
    return f"https://{host}/s/{channel}"


def post_page_url(host: str, channel: str, post_id: str) -> str:
    return f"https://{host}/{channel}/{post_id}?embed=1&mode=tme"


class TelegramWebGateway:
    """Fetches channel and single-post pages from the public web preview."""

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=settings.http_timeout_seconds,
            follow_redirects=True,
        )
        self._policy = RetryPolicy(
            retries=settings.http_retries,
            delay_seconds=settings.http_retry_delay_seconds,
        )
        self._sleep = sleep

    async def fetch_channel_page(
        self,
        request_headers: Mapping[str, str] | None,
        *,
        before: str | None = None,
        after: str | None = None,
        q: str | None = None,
    ) -> str:
        url = channel_page_url(self._settings.telegram_host, self._settings.channel)
        params = {
            key: value
            for key, value in (("before", before), ("after", after), ("q", q))
            if value
        }
        logger.info("Fetching {} {}", url, params)
        return await self._get(url, request_headers, params)

    async def fetch_post_page(
        self,
        request_headers: Mapping[str, str] | None,
        post_id: str,
    ) -> str:
        url = post_page_url(self._settings.telegram_host, self._settings.channel, post_id)
        logger.info("Fetching {}", url)
        return await self._get(url, request_headers, {})

    async def _get(
        self,
        url: str,
        request_headers: Mapping[str, str] | None,
        params: dict[str, str],
    ) -> str:
        kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        response = await get_with_retries(
            self._client,
            url,
            policy=self._policy,
            headers=forwardable_headers(request_headers),
            params=params or None,
            **kwargs,
        )
        return response.text

    async def stop(self) -> None:
        if self._owns_client:
            await self._client.aclose()
            logger.info("HTTP client closed")
