import asyncio
import re
from collections.abc import Iterable
from urllib.parse import quote

import httpx
from bs4 import BeautifulSoup
from loguru import logger

from channel_mirror.embed_registry import append_dark_mode_style
from channel_mirror.errors import UpstreamFetchError
from channel_mirror.fetching import RetryPolicy, SleepFn, get_with_retries
from channel_mirror.models import Embed, Post
from channel_mirror.urls import absolute_http_host, host_matches

SOUNDCLOUD_OEMBED = "https://soundcloud.com/oembed"
DEFAULT_IFRAME_STYLE = "width:100%;border:0;"

ALLOWED_IFRAME_ATTRIBUTES = frozenset(
    {
        "allow",
        "allowfullscreen",
        "allowtransparency",
        "frameborder",
        "height",
        "loading",
        "scrolling",
        "sandbox",
        "src",
        "style",
        "title",
        "width",
    }
)

_IFRAME = re.compile(r"<iframe\b[^>]*></iframe>", re.IGNORECASE)


def is_soundcloud_url(url: str | None) -> bool:
    return host_matches(absolute_http_host(url), ("soundcloud.com",))


def oembed_endpoint(raw_url: str) -> str:
    return (
        f"{SOUNDCLOUD_OEMBED}?format=json&url={quote(raw_url, safe='')}"
        "&maxheight=166&show_artwork=true&color=%23212121"
    )


def sanitize_iframe_html(html: str | None) -> str:
    """Reduce an oEmbed ``html`` payload to one dark-mode player iframe."""
    if not isinstance(html, str):
        return ""
    match = _IFRAME.search(html)
    if not match:
        return ""
    iframe = BeautifulSoup(match.group(0), "html.parser").find("iframe")
    if iframe is None:
        return ""

    for name in list(iframe.attrs):
        if name not in ALLOWED_IFRAME_ATTRIBUTES:
            del iframe[name]

    src = iframe.get("src")
    if not isinstance(src, str) or not re.match(r"^https?:", src.strip(), re.IGNORECASE):
        return ""

    iframe["src"] = src.strip()
    iframe["width"] = "100%"
    if not iframe.get("loading"):
        iframe["loading"] = "lazy"
    if not iframe.get("title"):
        iframe["title"] = "SoundCloud embed"

    style = iframe.get("style")
    if isinstance(style, str) and "javascript:" in style.lower():
        del iframe["style"]
    current = iframe.get("style")
    iframe["style"] = append_dark_mode_style(
        current if isinstance(current, str) and current else DEFAULT_IFRAME_STYLE
    )
    return str(iframe)


class SoundCloudHydrator:
    """Fills SoundCloud embeds with player HTML from the oEmbed endpoint.

    Requests are coalesced per raw URL for the lifetime of the hydrator, so
    concurrent and later callers share one fetch.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        policy: RetryPolicy | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self._client = client
        self._policy = policy or RetryPolicy(retries=2, delay_seconds=0.1)
        self._sleep = sleep
        self._requests: dict[str, asyncio.Future[str | None]] = {}

    async def fetch_embed_html(self, raw_url: str) -> str | None:
        request = self._requests.get(raw_url)
        if request is None:
            request = asyncio.ensure_future(self._fetch(raw_url))
            self._requests[raw_url] = request
        return await request

    async def _fetch(self, raw_url: str) -> str | None:
        kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        try:
            response = await get_with_retries(
                self._client, oembed_endpoint(raw_url), policy=self._policy, **kwargs
            )
            data = response.json()
        except (UpstreamFetchError, httpx.InvalidURL, ValueError) as e:
            logger.warning("SoundCloud oEmbed failed for {}: {}", raw_url, e)
            return None

        html = data.get("html") if isinstance(data, dict) else None
        return sanitize_iframe_html(html) or None

    async def hydrate(self, posts: Iterable[Post]) -> None:
        targets: list[Embed] = [
            embed
            for post in posts
            for embed in post.embeds
            if embed.url and is_soundcloud_url(embed.url)
        ]
        if not targets:
            return

        results = await asyncio.gather(
            *(self.fetch_embed_html(embed.url) for embed in targets),
            return_exceptions=True,
        )
        for embed, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.warning("SoundCloud hydration failed for {}: {}", embed.url, result)
            elif result:
                embed.oembed_html = result
