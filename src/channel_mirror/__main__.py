import argparse
import asyncio
import json
import sys
from collections.abc import Iterable, Sequence

import httpx
from loguru import logger

from channel_mirror.aggregator import ChannelAggregator
from channel_mirror.embed_cache import EmbedCache
from channel_mirror.embed_resolver import EmbedResolver
from channel_mirror.errors import ConfigError, UpstreamFetchError
from channel_mirror.fetching import RetryPolicy
from channel_mirror.gateway import TelegramWebGateway
from channel_mirror.models import (
    ChannelInfo,
    ChannelQuery,
    EmbedDescriptor,
    FirstClassEmbed,
    OEmbedEmbed,
    Post,
)
from channel_mirror.oembed import OEmbedClient
from channel_mirror.sanitizer import sanitize_html
from channel_mirror.settings import Settings
from channel_mirror.soundcloud import SoundCloudHydrator


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="channel-mirror",
        description="Print a channel snapshot from the Telegram web preview as JSON.",
    )
    parser.add_argument("--before", help="Only posts older than this id")
    parser.add_argument("--after", help="Only posts newer than this id")
    parser.add_argument("--q", default="", help="Search query")
    parser.add_argument("--tag", default="", help="Restrict to one hashtag")
    parser.add_argument("--limit", type=int, help="Return at most the newest N posts")
    parser.add_argument("--id", help="Fetch a single post by id")
    parser.add_argument("--type", choices=("list", "post"), default="list")
    parser.add_argument("--navigate-from", help="Step to the post next to this id")
    parser.add_argument("--direction", choices=("newer", "older"))
    return parser


def _query_from_args(args: argparse.Namespace) -> ChannelQuery:
    return ChannelQuery(
        before=args.before,
        after=args.after,
        q=args.q,
        type=args.type,
        id=args.id,
        tag=args.tag,
        limit=args.limit,
        navigate_from=args.navigate_from,
        direction=args.direction,
    )


def _clean(html: str, settings: Settings) -> str:
    return sanitize_html(
        html, site_origin=settings.site_url, iframe_hosts=settings.iframe_allowlist
    )


def _sanitize_descriptor(descriptor: EmbedDescriptor | None, settings: Settings) -> None:
    if isinstance(descriptor, OEmbedEmbed) and descriptor.html:
        descriptor.html = _clean(descriptor.html, settings)
    elif isinstance(descriptor, FirstClassEmbed) and isinstance(descriptor.props.get("html"), str):
        descriptor.props["html"] = _clean(descriptor.props["html"], settings)


def _sanitize_posts(posts: Iterable[Post], settings: Settings) -> None:
    for post in posts:
        post.content = _clean(post.content, settings)
        for embed in post.embeds:
            if embed.oembed_html:
                embed.oembed_html = _clean(embed.oembed_html, settings)
            _sanitize_descriptor(embed.descriptor, settings)


def render_result(result: ChannelInfo | Post | None, settings: Settings) -> str:
    """Serialize a result with every HTML field passed through the sanitizer."""
    if result is None:
        return "null"

    result = result.model_copy(deep=True)
    if isinstance(result, Post):
        _sanitize_posts([result], settings)
    else:
        _sanitize_posts(result.posts, settings)
        for tagged in result.tag_index.values():
            _sanitize_posts(tagged, settings)
        if result.description_html:
            result.description_html = _clean(result.description_html, settings)
    return json.dumps(result.model_dump(mode="json"), ensure_ascii=False, indent=2)


async def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = Settings()

    logger.remove()
    logger.add(sys.stderr, level=settings.log_level.upper())

    query = _query_from_args(args)
    async with httpx.AsyncClient(
        timeout=settings.http_timeout_seconds, follow_redirects=True
    ) as client:
        resolver = EmbedResolver(
            OEmbedClient(client, enabled=settings.embeds_enable_oembed),
            EmbedCache(settings.embeds_cache_dir, settings.embeds_cache_ttl_seconds),
            settings.iframe_allowlist,
        )
        hydrator = SoundCloudHydrator(
            client,
            policy=RetryPolicy(retries=2, delay_seconds=settings.http_retry_delay_seconds),
        )
        aggregator = ChannelAggregator(
            settings,
            TelegramWebGateway(settings, client=client),
            hydrator=hydrator,
            resolver=resolver,
        )
        try:
            result = await aggregator.get_channel_info({}, query)
        except ConfigError as e:
            logger.error("Configuration error: {}", e)
            return 2
        except UpstreamFetchError as e:
            logger.error("Upstream fetch failed: {}", e)
            return 1

    print(render_result(result, settings))
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
