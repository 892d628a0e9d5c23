from collections.abc import Iterable, Mapping

import pytest

from channel_mirror.aggregator import ChannelAggregator, build_tag_index
from channel_mirror.errors import ConfigError, UpstreamFetchError
from channel_mirror.models import (
    ChannelInfo,
    ChannelQuery,
    EmbedDescriptor,
    LinkEmbed,
    Post,
)
from channel_mirror.result_cache import ResultCache
from channel_mirror.settings import Settings


def _message(post_id: int, text: str) -> str:
    return (
        '<div class="tgme_widget_message_wrap">'
        f'<div class="tgme_widget_message" data-post="mychan/{post_id}">'
        f'<div class="tgme_widget_message_text js-message_text">{text}</div>'
        "</div></div>"
    )


def _page(*posts: tuple[int, str]) -> str:
    header = '<div class="tgme_channel_info_header_title">My Channel</div>'
    body = "".join(_message(post_id, text) for post_id, text in posts)
    return f"<html><body>{header}{body}</body></html>"


# --- Fake Protocol implementations ---


class FakeChannelSource:
    def __init__(
        self,
        pages: dict[tuple[str | None, str | None, str | None], str] | None = None,
        post_pages: dict[str, str] | None = None,
        error: Exception | None = None,
    ) -> None:
        self._pages = pages or {}
        self._post_pages = post_pages or {}
        self._error = error
        self.calls: list[tuple[str | None, str | None, str | None]] = []
        self.post_calls: list[str] = []
        self.headers: list[Mapping[str, str] | None] = []

    async def fetch_channel_page(
        self,
        request_headers: Mapping[str, str] | None,
        *,
        before: str | None = None,
        after: str | None = None,
        q: str | None = None,
    ) -> str:
        self.calls.append((before, after, q))
        self.headers.append(request_headers)
        if self._error is not None:
            raise self._error
        return self._pages.get((before, after, q), "<html></html>")

    async def fetch_post_page(
        self,
        request_headers: Mapping[str, str] | None,
        post_id: str,
    ) -> str:
        self.post_calls.append(post_id)
        return self._post_pages.get(post_id, "<html></html>")


class FakeHydrator:
    def __init__(self) -> None:
        self.hydrated: list[list[str]] = []

    async def hydrate(self, posts: Iterable[Post]) -> None:
        self.hydrated.append([post.id for post in posts])


class FakeResolver:
    def __init__(self, failing: set[str] | None = None) -> None:
        self._failing = failing or set()
        self.resolved: list[str] = []

    async def resolve(self, raw_url: str) -> EmbedDescriptor:
        self.resolved.append(raw_url)
        if raw_url in self._failing:
            raise RuntimeError("resolver exploded")
        return LinkEmbed(url=raw_url)


def _settings(**overrides) -> Settings:
    values = {"channel": "mychan", "enable_embeds": True, "offline_build": False}
    values.update(overrides)
    return Settings(_env_file=None, **values)


FIVE_POSTS = _page(*((i, f"post {i}") for i in range(1, 6)))


class TestListing:
    async def test_limit_takes_newest_posts(self) -> None:
        source = FakeChannelSource({(None, None, None): FIVE_POSTS})
        aggregator = ChannelAggregator(_settings(), source)

        info = await aggregator.get_channel_info({}, ChannelQuery(limit=2))

        assert isinstance(info, ChannelInfo)
        assert [post.id for post in info.posts] == ["4", "5"]
        assert info.has_older is True
        assert info.has_newer is False
        assert info.title == "My Channel"

    async def test_without_limit_everything_is_returned(self) -> None:
        source = FakeChannelSource({(None, None, None): FIVE_POSTS})
        aggregator = ChannelAggregator(_settings(), source)

        info = await aggregator.get_channel_info({}, ChannelQuery())

        assert [post.id for post in info.posts] == ["1", "2", "3", "4", "5"]
        assert (info.has_newer, info.has_older) == (False, False)

    async def test_cursors_and_headers_are_forwarded(self) -> None:
        source = FakeChannelSource()
        aggregator = ChannelAggregator(_settings(), source)

        await aggregator.get_channel_info(
            {"accept-language": "en"}, ChannelQuery(before="0050", q=" cats ")
        )

        assert source.calls == [("50", None, "cats")]
        assert source.headers == [{"accept-language": "en"}]

    async def test_tag_filter(self) -> None:
        page = _page((1, "one #news"), (2, "two #other"), (3, "three #News #other"))
        source = FakeChannelSource({(None, None, "#news"): page})
        aggregator = ChannelAggregator(_settings(), source)

        info = await aggregator.get_channel_info({}, ChannelQuery(tag="#News"))

        assert source.calls == [(None, None, "#news")]
        assert [post.id for post in info.posts] == ["1", "3"]
        assert info.selected_tag == "news"
        assert info.available_tags == ["news", "other"]
        assert [post.id for post in info.tag_index["other"]] == ["2", "3"]

    async def test_empty_page(self) -> None:
        aggregator = ChannelAggregator(_settings(), FakeChannelSource())

        info = await aggregator.get_channel_info({}, ChannelQuery())

        assert info.posts == []
        assert (info.has_newer, info.has_older) == (False, False)


class TestNavigation:
    async def test_newer_merges_windows_and_picks_next(self) -> None:
        source = FakeChannelSource(
            {
                (None, None, None): _page((100, "a"), (103, "b")),
                (None, "101", None): _page((103, "b again"), (110, "c")),
            }
        )
        aggregator = ChannelAggregator(_settings(), source)

        info = await aggregator.get_channel_info(
            {}, ChannelQuery(navigate_from="101", direction="newer")
        )

        assert source.calls == [(None, None, None), (None, "101", None)]
        assert [post.id for post in info.posts] == ["103"]
        assert info.posts[0].text == "b again"
        assert (info.has_newer, info.has_older) == (True, True)

    async def test_older_from_beyond_the_newest(self) -> None:
        source = FakeChannelSource(
            {
                (None, None, None): _page((100, "a"), (103, "b"), (110, "c")),
                ("200", None, None): _page((103, "b"), (110, "c")),
            }
        )
        aggregator = ChannelAggregator(_settings(), source)

        info = await aggregator.get_channel_info(
            {}, ChannelQuery(navigate_from="200", direction="older")
        )

        assert [post.id for post in info.posts] == ["110"]
        assert (info.has_newer, info.has_older) == (False, True)

    async def test_navigation_respects_tag(self) -> None:
        source = FakeChannelSource(
            {
                (None, None, "#news"): _page((1, "#news"), (2, "#other"), (3, "#news")),
                (None, "1", "#news"): _page((2, "#other"), (3, "#news")),
            }
        )
        aggregator = ChannelAggregator(_settings(), source)

        info = await aggregator.get_channel_info(
            {}, ChannelQuery(navigate_from="1", direction="newer", tag="news")
        )

        assert [post.id for post in info.posts] == ["3"]
        assert (info.has_newer, info.has_older) == (False, True)

    async def test_malformed_pivot_older_starts_from_newest(self) -> None:
        source = FakeChannelSource({(None, None, None): _page((100, "a"), (103, "b"), (110, "c"))})
        aggregator = ChannelAggregator(_settings(), source)
        query = ChannelQuery(navigate_from="latest", direction="older")

        info = await aggregator.get_channel_info({}, query)

        assert query.navigate_from is None
        assert query.is_navigation
        assert source.calls == [(None, None, None), (None, None, None)]
        assert [post.id for post in info.posts] == ["110"]
        assert (info.has_newer, info.has_older) == (False, True)

    async def test_malformed_pivot_newer_starts_from_oldest(self) -> None:
        source = FakeChannelSource({(None, None, None): _page((100, "a"), (103, "b"))})
        aggregator = ChannelAggregator(_settings(), source)

        info = await aggregator.get_channel_info(
            {}, ChannelQuery(navigate_from="x1", direction="newer")
        )

        assert [post.id for post in info.posts] == ["100"]
        assert (info.has_newer, info.has_older) == (True, False)

    async def test_nothing_to_pick(self) -> None:
        source = FakeChannelSource({(None, None, None): _page((100, "a"))})
        aggregator = ChannelAggregator(_settings(), source)

        info = await aggregator.get_channel_info(
            {}, ChannelQuery(navigate_from="100", direction="newer")
        )

        assert info.posts == []
        assert (info.has_newer, info.has_older) == (False, False)


class TestSinglePost:
    async def test_returns_bare_post(self) -> None:
        source = FakeChannelSource(post_pages={"42": _page((42, "the answer"))})
        aggregator = ChannelAggregator(_settings(), source)

        post = await aggregator.get_channel_info({}, ChannelQuery(id="42", type="post"))

        assert isinstance(post, Post)
        assert post.id == "42"
        assert source.post_calls == ["42"]
        assert source.calls == []

    async def test_missing_post_is_not_cached(self) -> None:
        source = FakeChannelSource()
        aggregator = ChannelAggregator(_settings(), source)

        assert await aggregator.get_channel_info({}, ChannelQuery(id="7")) is None
        assert await aggregator.get_channel_info({}, ChannelQuery(id="7")) is None
        assert source.post_calls == ["7", "7"]


class TestModesAndCaching:
    async def test_offline_build_skips_network(self) -> None:
        source = FakeChannelSource(error=AssertionError("must not fetch"))
        aggregator = ChannelAggregator(_settings(channel="", offline_build=True), source)

        info = await aggregator.get_channel_info({}, ChannelQuery(tag="news"))

        assert info == ChannelInfo(selected_tag="news", embeds_enabled=True)
        assert source.calls == []

    async def test_missing_channel(self) -> None:
        aggregator = ChannelAggregator(_settings(channel=""), FakeChannelSource())

        with pytest.raises(ConfigError):
            await aggregator.get_channel_info({}, ChannelQuery())

    async def test_upstream_failure_propagates(self) -> None:
        error = UpstreamFetchError("https://t.me/s/mychan", status_code=502)
        aggregator = ChannelAggregator(_settings(), FakeChannelSource(error=error))

        with pytest.raises(UpstreamFetchError) as excinfo:
            await aggregator.get_channel_info({}, ChannelQuery())
        assert excinfo.value.status_code == 502

    async def test_cache_hit_returns_isolated_copy(self) -> None:
        source = FakeChannelSource({(None, None, None): FIVE_POSTS})
        cache = ResultCache()
        aggregator = ChannelAggregator(_settings(), source, cache=cache)

        first = await aggregator.get_channel_info({}, ChannelQuery(limit=2))
        first.posts.clear()
        second = await aggregator.get_channel_info({}, ChannelQuery(limit="2"))

        assert len(source.calls) == 1
        assert [post.id for post in second.posts] == ["4", "5"]
        assert len(cache) == 1

    async def test_embed_mode_is_part_of_cache_key(self) -> None:
        source = FakeChannelSource({(None, None, None): FIVE_POSTS})
        cache = ResultCache()

        await ChannelAggregator(_settings(), source, cache=cache).get_channel_info(
            {}, ChannelQuery()
        )
        await ChannelAggregator(
            _settings(enable_embeds=False), source, cache=cache
        ).get_channel_info({}, ChannelQuery())

        assert len(source.calls) == 2


class TestEmbedEnrichment:
    PAGE = _page(
        (1, '<a href="https://youtu.be/abc">video</a>'),
        (2, '<a href="https://vimeo.com/42">film</a>'),
        (3, "plain"),
    )

    async def test_returned_posts_are_hydrated_and_resolved(self) -> None:
        hydrator = FakeHydrator()
        resolver = FakeResolver(failing={"https://vimeo.com/42"})
        aggregator = ChannelAggregator(
            _settings(),
            FakeChannelSource({(None, None, None): self.PAGE}),
            hydrator=hydrator,
            resolver=resolver,
        )

        info = await aggregator.get_channel_info({}, ChannelQuery())

        assert hydrator.hydrated == [["1", "2", "3"]]
        assert sorted(resolver.resolved) == [
            "https://vimeo.com/42",
            "https://www.youtube.com/watch?v=abc",
        ]
        by_id = {post.id: post for post in info.posts}
        assert by_id["1"].embeds[0].descriptor == LinkEmbed(
            url="https://www.youtube.com/watch?v=abc"
        )
        assert by_id["2"].embeds[0].descriptor is None

    async def test_only_the_returned_slice_is_enriched(self) -> None:
        hydrator = FakeHydrator()
        aggregator = ChannelAggregator(
            _settings(),
            FakeChannelSource({(None, None, None): self.PAGE}),
            hydrator=hydrator,
        )

        await aggregator.get_channel_info({}, ChannelQuery(limit=1))

        assert hydrator.hydrated == [["3"]]

    async def test_disabled_embeds_skip_enrichment(self) -> None:
        hydrator = FakeHydrator()
        resolver = FakeResolver()
        aggregator = ChannelAggregator(
            _settings(enable_embeds=False),
            FakeChannelSource({(None, None, None): self.PAGE}),
            hydrator=hydrator,
            resolver=resolver,
        )

        info = await aggregator.get_channel_info({}, ChannelQuery())

        assert hydrator.hydrated == []
        assert resolver.resolved == []
        assert info.embeds_enabled is False


class TestBuildTagIndex:
    def test_groups_posts_in_order(self) -> None:
        posts = [
            Post(id="1", tags=["a"]),
            Post(id="2", tags=["b", "a"]),
            Post(id="3"),
        ]
        index = build_tag_index(posts)
        assert {tag: [p.id for p in group] for tag, group in index.items()} == {
            "a": ["1", "2"],
            "b": ["2"],
        }
