from typing import Any
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

import httpx
from bs4 import BeautifulSoup
from loguru import logger

from channel_mirror.fetching import fetch_quietly
from channel_mirror.models import OpenGraphMeta

OEMBED_LINK = 'link[rel="alternate"][type="application/json+oembed"]'


def find_oembed_endpoint(html: str, page_url: str) -> str | None:
    link = BeautifulSoup(html, "lxml").select_one(OEMBED_LINK)
    href = link.get("href") if link is not None else None
    if not isinstance(href, str) or not href.strip():
        return None
    return urljoin(page_url, href.strip())


def with_url_param(endpoint: str, original: str) -> str:
    parts = urlsplit(endpoint)
    params = parse_qsl(parts.query, keep_blank_values=True)
    if any(key == "url" for key, _ in params):
        return endpoint
    params.append(("url", original))
    return urlunsplit(parts._replace(query=urlencode(params)))


def parse_meta(html: str) -> OpenGraphMeta | None:
    """Open Graph metadata of a page, ``None`` when it has no title, description or image."""
    soup = BeautifulSoup(html, "lxml")

    def pick(selector: str) -> str | None:
        tag = soup.select_one(selector)
        content = tag.get("content") if tag is not None else None
        if not isinstance(content, str):
            return None
        return content.strip() or None

    title_tag = soup.find("title")
    meta = OpenGraphMeta(
        title=pick('meta[property="og:title"]')
        or (title_tag.get_text().strip() if title_tag is not None else None)
        or None,
        description=pick('meta[property="og:description"]') or pick('meta[name="description"]'),
        image=pick('meta[property="og:image"]'),
        site_name=pick('meta[property="og:site_name"]'),
    )
    return None if meta.is_empty else meta


class OEmbedClient:
    """Discovers and fetches oEmbed payloads and scrapes Open Graph tags."""

    def __init__(self, client: httpx.AsyncClient, *, enabled: bool = True) -> None:
        self._client = client
        self._enabled = enabled

    async def discover(self, url: str) -> str | None:
        if not self._enabled:
            return None
        response = await fetch_quietly(self._client, url)
        if response is None:
            return None
        return find_oembed_endpoint(response.text, url)

    async def fetch(self, endpoint: str, original: str) -> dict[str, Any] | None:
        if not self._enabled:
            return None
        target = with_url_param(endpoint, original)
        response = await fetch_quietly(self._client, target)
        if response is None:
            return None
        try:
            data = response.json()
        except ValueError:
            logger.warning("oEmbed response from {} is not JSON", target)
            return None
        return data if isinstance(data, dict) else None

    async def scrape_meta(self, url: str) -> OpenGraphMeta | None:
        response = await fetch_quietly(self._client, url)
        if response is None:
            return None
        return parse_meta(response.text)
