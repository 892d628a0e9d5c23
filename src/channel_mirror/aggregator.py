import asyncio
from collections.abc import Mapping, Sequence

from loguru import logger

from channel_mirror.errors import ConfigError
from channel_mirror.extractor import parse_channel_page, parse_post_page, sort_by_numeric_id
from channel_mirror.models import ChannelInfo, ChannelPage, ChannelQuery, ExtractOptions, Post
from channel_mirror.navigation import listing_bounds, pick_adjacent
from channel_mirror.protocols import ChannelSource, EmbedDescriptorResolver, EmbedHydrator
from channel_mirror.result_cache import ResultCache
from channel_mirror.settings import Settings


def build_tag_index(posts: Sequence[Post]) -> dict[str, list[Post]]:
    index: dict[str, list[Post]] = {}
    for post in posts:
        for tag in post.tags:
            if tag:
                index.setdefault(tag, []).append(post)
    return index


class ChannelAggregator:
    """Assembles ``ChannelInfo`` snapshots from upstream channel pages.

    Snapshots are cached per normalized query. Offline builds never touch
    the network and get an empty, well-formed snapshot.
    """

    def __init__(
        self,
        settings: Settings,
        source: ChannelSource,
        cache: ResultCache | None = None,
        hydrator: EmbedHydrator | None = None,
        resolver: EmbedDescriptorResolver | None = None,
    ) -> None:
        self._settings = settings
        self._source = source
        self._cache = cache or ResultCache(
            ttl_seconds=settings.result_cache_ttl_seconds,
            max_bytes=settings.result_cache_max_bytes,
        )
        self._hydrator = hydrator
        self._resolver = resolver

    @property
    def extract_options(self) -> ExtractOptions:
        return ExtractOptions(
            channel=self._settings.channel,
            static_proxy=self._settings.media_proxy,
            base_url=self._settings.site_url,
            telegram_host=self._settings.telegram_host,
            enable_embeds=self._settings.enable_embeds,
        )

    async def get_channel_info(
        self,
        request_headers: Mapping[str, str] | None,
        query: ChannelQuery,
    ) -> ChannelInfo | Post | None:
        """Return a listing, a single navigated post, or one post by id.

        A ``query.id`` without navigation returns the bare ``Post`` (or
        ``None`` when the page holds no message).
        """
        embeds_enabled = self._settings.enable_embeds
        if self._settings.offline_build:
            logger.info("Offline build, returning empty channel info")
            return ChannelInfo(selected_tag=query.tag, embeds_enabled=embeds_enabled)

        if not self._settings.channel:
            raise ConfigError("CHANNEL is not configured")

        key = query.cache_key(embeds_enabled=embeds_enabled)
        cached = self._cache.get(key)
        if cached is not None:
            logger.info("Result cache hit for {}", key)
            return cached

        result: ChannelInfo | Post | None
        if query.is_navigation:
            result = await self._navigate(request_headers, query)
        elif query.id:
            result = await self._single_post(request_headers, query.id)
        else:
            result = await self._listing(request_headers, query)

        if result is not None:
            self._cache.set(key, result)
        return result

    async def _fetch_page(
        self,
        request_headers: Mapping[str, str] | None,
        *,
        before: str | None = None,
        after: str | None = None,
        search: str = "",
    ) -> ChannelPage:
        html = await self._source.fetch_channel_page(
            request_headers, before=before, after=after, q=search or None
        )
        return parse_channel_page(html, self.extract_options)

    def _snapshot(
        self,
        page: ChannelPage,
        posts: list[Post],
        tag_index: dict[str, list[Post]],
        query: ChannelQuery,
        has_newer: bool,
        has_older: bool,
    ) -> ChannelInfo:
        return ChannelInfo(
            posts=posts,
            title=page.title,
            description=page.description,
            description_html=page.description_html,
            avatar=page.avatar,
            available_tags=sorted(tag_index),
            tag_index=tag_index,
            selected_tag=query.tag,
            embeds_enabled=self._settings.enable_embeds,
            has_newer=has_newer,
            has_older=has_older,
        )

    async def _listing(
        self, request_headers: Mapping[str, str] | None, query: ChannelQuery
    ) -> ChannelInfo:
        page = await self._fetch_page(
            request_headers,
            before=query.before,
            after=query.after,
            search=query.search_query,
        )
        tag_index = build_tag_index(page.posts)
        filtered = tag_index.get(query.tag, []) if query.tag else page.posts
        returned = filtered[-query.limit :] if query.limit else list(filtered)

        await self._enrich(returned)
        has_newer, has_older = listing_bounds(filtered, returned)
        logger.info(
            "Listing {} of {} posts (newer={}, older={})",
            len(returned),
            len(filtered),
            has_newer,
            has_older,
        )
        return self._snapshot(page, returned, tag_index, query, has_newer, has_older)

    async def _navigate(
        self, request_headers: Mapping[str, str] | None, query: ChannelQuery
    ) -> ChannelInfo:
        search = query.q or (f"#{query.tag}" if query.tag else "")
        base = await self._fetch_page(request_headers, search=search)
        if query.direction == "newer":
            extra = await self._fetch_page(
                request_headers, after=query.navigate_from, search=search
            )
        else:
            extra = await self._fetch_page(
                request_headers, before=query.navigate_from, search=search
            )

        merged: dict[str, Post] = {}
        for window in (base, extra):
            for post in window.posts:
                merged[post.id] = post
        posts = sort_by_numeric_id(list(merged.values()))

        tag_index = build_tag_index(posts)
        filtered = tag_index.get(query.tag, []) if query.tag else posts
        adjacent = pick_adjacent(
            filtered, query.navigate_from or query.navigation_pivot, query.direction
        )
        returned = [adjacent.picked_post] if adjacent.picked_post is not None else []

        await self._enrich(returned)
        logger.info(
            "Navigated {} from {} to {}",
            query.direction,
            query.navigation_pivot,
            returned[0].id if returned else None,
        )
        return self._snapshot(
            base, returned, tag_index, query, adjacent.has_newer, adjacent.has_older
        )

    async def _single_post(
        self, request_headers: Mapping[str, str] | None, post_id: str
    ) -> Post | None:
        html = await self._source.fetch_post_page(request_headers, post_id)
        post = parse_post_page(html, self.extract_options)
        if post is not None:
            await self._enrich([post])
        return post

    async def _enrich(self, posts: list[Post]) -> None:
        if not self._settings.enable_embeds or not posts:
            return
        if self._hydrator is not None:
            await self._hydrator.hydrate(posts)
        if self._resolver is not None:
            await self._resolve_descriptors(posts)

    async def _resolve_descriptors(self, posts: list[Post]) -> None:
        assert self._resolver is not None
        embeds = [embed for post in posts for embed in post.embeds if embed.url]
        if not embeds:
            return

        results = await asyncio.gather(
            *(self._resolver.resolve(embed.url) for embed in embeds),
            return_exceptions=True,
        )
        for embed, result in zip(embeds, results):
            if isinstance(result, BaseException):
                logger.warning("Embed resolution failed for {}: {}", embed.url, result)
                continue
            embed.descriptor = result
