import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from bs4 import BeautifulSoup
from loguru import logger

from channel_mirror.embed_registry import match_provider
from channel_mirror.models import (
    EmbedDescriptor,
    LinkEmbed,
    OEmbedEmbed,
    OpenGraphEmbed,
    OpenGraphMeta,
)
from channel_mirror.protocols import EmbedStore, OEmbedSource
from channel_mirror.settings import DEFAULT_IFRAME_ALLOWLIST
from channel_mirror.urls import absolute_http_host, host_matches, normalize_absolute_url

# Bump when the descriptor shape changes so stale cache files are ignored.
CACHE_SCHEMA_VERSION = "v2"

ResolverStep = Callable[[str], Awaitable[EmbedDescriptor | None]]


def cache_key(normalized_url: str) -> str:
    return f"{CACHE_SCHEMA_VERSION}:{normalized_url}"


def iframe_host(html: str | None) -> str | None:
    """Host of the first iframe in an oEmbed payload, ``None`` if it has none."""
    if not html:
        return None
    iframe = BeautifulSoup(html, "html.parser").find("iframe")
    if iframe is None:
        return None
    src = iframe.get("src")
    return absolute_http_host(src) if isinstance(src, str) else None


def _text(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    return value if isinstance(value, str) and value else None


class EmbedResolver:
    """Resolve a URL to exactly one embed descriptor.

    Steps run in the order of ``steps`` and the first non-empty result wins;
    the terminal step always produces a plain link. Every result is cached
    under a versioned key, and a step that raises counts as a miss.
    """

    def __init__(
        self,
        source: OEmbedSource,
        cache: EmbedStore,
        iframe_hosts: Iterable[str] = DEFAULT_IFRAME_ALLOWLIST,
    ) -> None:
        self._source = source
        self._cache = cache
        self._iframe_hosts = tuple(iframe_hosts)
        self.steps: tuple[tuple[str, ResolverStep], ...] = (
            ("first-class", self._first_class),
            ("oembed", self._oembed),
            ("opengraph", self._opengraph),
            ("link", self._link),
        )

    async def resolve(self, raw_url: str) -> EmbedDescriptor:
        normalized = normalize_absolute_url(raw_url)
        if normalized is None:
            return LinkEmbed(url=raw_url)

        key = cache_key(normalized)
        cached = await asyncio.to_thread(self._cache.get, key)
        if cached is not None:
            return cached

        for name, step in self.steps:
            try:
                descriptor = await step(normalized)
            except Exception as e:
                logger.warning("Embed step {} failed for {}: {}", name, normalized, e)
                continue
            if descriptor is not None:
                logger.debug("Resolved {} as {}", normalized, descriptor.kind)
                await asyncio.to_thread(self._cache.set, key, descriptor)
                return descriptor

        return LinkEmbed(url=normalized)

    async def _first_class(self, url: str) -> EmbedDescriptor | None:
        provider = match_provider(url)
        return provider.render(url) if provider is not None else None

    async def _oembed(self, url: str) -> EmbedDescriptor | None:
        endpoint = await self._source.discover(url)
        if not endpoint:
            return None
        data = await self._source.fetch(endpoint, url)
        if not data:
            return None

        html = _text(data, "html")
        title = _text(data, "title")
        thumbnail_url = _text(data, "thumbnail_url")
        provider_name = _text(data, "provider_name")

        if html:
            if host_matches(iframe_host(html), self._iframe_hosts):
                return OEmbedEmbed(
                    url=url,
                    html=html,
                    title=title,
                    thumbnail_url=thumbnail_url,
                    provider_name=provider_name,
                )
            scraped = await self._source.scrape_meta(url)
            meta = scraped or OpenGraphMeta(
                title=title, image=thumbnail_url, site_name=provider_name
            )
            if not meta.is_empty:
                return OpenGraphEmbed(url=url, meta=meta)

        if title or thumbnail_url or provider_name:
            return OEmbedEmbed(
                url=url,
                title=title,
                thumbnail_url=thumbnail_url,
                provider_name=provider_name,
            )
        return None

    async def _opengraph(self, url: str) -> EmbedDescriptor | None:
        meta = await self._source.scrape_meta(url)
        return OpenGraphEmbed(url=url, meta=meta) if meta is not None else None

    async def _link(self, url: str) -> EmbedDescriptor | None:
        return LinkEmbed(url=url)
