import json
from unittest.mock import AsyncMock, patch

import pytest

from channel_mirror.__main__ import _build_parser, _query_from_args, main, render_result
from channel_mirror.errors import UpstreamFetchError
from channel_mirror.models import ChannelInfo, Embed, FirstClassEmbed, OEmbedEmbed, Post
from channel_mirror.settings import Settings


@pytest.fixture
def settings():
    return Settings(_env_file=None, channel="mychan", site_url="https://mirror.example/")


@pytest.fixture
def env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("CHANNEL", "OFFLINE_BUILD", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("EMBEDS_CACHE_DIR", str(tmp_path / "embeds"))
    return monkeypatch


class TestArguments:
    def test_navigation_flags(self):
        args = _build_parser().parse_args(
            ["--navigate-from", "0012", "--direction", "older", "--tag", "#News", "--limit", "3"]
        )
        query = _query_from_args(args)

        assert query.navigate_from == "12"
        assert query.direction == "older"
        assert query.tag == "news"
        assert query.limit == 3
        assert query.is_navigation

    def test_defaults(self):
        query = _query_from_args(_build_parser().parse_args([]))
        assert query.type == "list"
        assert query.before is None
        assert not query.is_navigation

    def test_rejects_unknown_direction(self):
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["--direction", "sideways"])


class TestRenderResult:
    def test_html_fields_are_sanitized(self, settings):
        post = Post(
            id="1",
            content='<p>hi<script>x()</script><a href="https://example.com">out</a></p>',
            embeds=[
                Embed(
                    url="https://example.com",
                    oembed_html='<iframe src="https://evil.example/x"></iframe><b>card</b>',
                )
            ],
        )
        info = ChannelInfo(
            posts=[post],
            tag_index={"t": [post]},
            description_html='<span onclick="x()">about</span>',
        )

        data = json.loads(render_result(info, settings))

        content = data["posts"][0]["content"]
        assert "<script" not in content
        assert 'target="_blank"' in content
        assert data["posts"][0]["embeds"][0]["oembed_html"] == "<b>card</b>"
        assert data["tag_index"]["t"][0]["content"] == content
        assert data["description_html"] == "<span>about</span>"

    def test_descriptor_html_is_sanitized(self, settings):
        post = Post(
            id="1",
            embeds=[
                Embed(
                    url="https://www.youtube.com/embed/x",
                    descriptor=OEmbedEmbed(
                        url="https://www.youtube.com/embed/x",
                        html='<iframe src="https://www.youtube.com/embed/x"></iframe>'
                        "<script>steal()</script>",
                    ),
                ),
                Embed(
                    url="https://youtu.be/abc",
                    descriptor=FirstClassEmbed(
                        component="YouTubeEmbed",
                        props={
                            "url": "https://youtu.be/abc",
                            "html": '<iframe src="https://www.youtube-nocookie.com/embed/abc"'
                            ' onload="x()"></iframe>',
                        },
                    ),
                ),
            ],
        )

        data = json.loads(render_result(post, settings))

        oembed, first_class = (embed["descriptor"] for embed in data["embeds"])
        assert oembed["html"] == '<iframe src="https://www.youtube.com/embed/x"></iframe>'
        assert first_class["props"]["html"] == (
            '<iframe src="https://www.youtube-nocookie.com/embed/abc"></iframe>'
        )
        assert first_class["props"]["url"] == "https://youtu.be/abc"

    def test_input_is_not_mutated(self, settings):
        post = Post(id="1", content="<script>x()</script>ok")
        render_result(post, settings)
        assert post.content == "<script>x()</script>ok"

    def test_single_post(self, settings):
        data = json.loads(render_result(Post(id="9", content="<em>one</em>"), settings))
        assert data["id"] == "9"
        assert data["content"] == "<em>one</em>"

    def test_missing_result(self, settings):
        assert render_result(None, settings) == "null"


class TestMain:
    async def test_offline_build_prints_empty_snapshot(self, env, capsys):
        env.setenv("OFFLINE_BUILD", "true")

        assert await main(["--tag", "news"]) == 0

        data = json.loads(capsys.readouterr().out)
        assert data["posts"] == []
        assert data["selected_tag"] == "news"

    async def test_missing_channel_exits_2(self, env):
        assert await main([]) == 2

    async def test_upstream_failure_exits_1(self, env):
        env.setenv("CHANNEL", "mychan")
        with patch("channel_mirror.__main__.ChannelAggregator") as cls:
            cls.return_value.get_channel_info = AsyncMock(
                side_effect=UpstreamFetchError("https://t.me/s/mychan", status_code=500)
            )
            assert await main([]) == 1

    async def test_passes_parsed_query(self, env, capsys):
        env.setenv("CHANNEL", "mychan")
        with patch("channel_mirror.__main__.ChannelAggregator") as cls:
            cls.return_value.get_channel_info = AsyncMock(return_value=Post(id="5"))
            assert await main(["--id", "5", "--type", "post"]) == 0

        _, query = cls.return_value.get_channel_info.await_args.args
        assert query.id == "5"
        assert query.type == "post"
        assert json.loads(capsys.readouterr().out)["id"] == "5"
