import re
from enum import Enum
from urllib.parse import parse_qs, parse_qsl, quote, unquote, urlencode, urlsplit

from bs4 import BeautifulSoup

from channel_mirror.models import FirstClassEmbed

DARK_MODE_STYLE = "color-scheme:dark;background-color:#000;"

BANDCAMP_PLAYER = "https://bandcamp.com/EmbeddedPlayer/"
BANDCAMP_PRESET = "size=large/bgcol=333333/linkcol=0f91ff/tracklist=false/artwork=small/transparent=true/"
BANDCAMP_STYLE = "border:0;width:100%;max-width:700px;height:120px;display:block;margin:0 auto;"

_BANDCAMP_ID = re.compile(r"\b(album|track)=(\d+)", re.IGNORECASE)
_BANDCAMP_URL_PARAM = re.compile(r"[?&]url=([^&]+)", re.IGNORECASE)


def append_dark_mode_style(style: str) -> str:
    trimmed = re.sub(r";\s*$", "", style.strip())
    base = f"{trimmed};" if trimmed else ""
    return f"{base}{DARK_MODE_STYLE}"


def _host_is(hostname: str, suffix: str) -> bool:
    return hostname == suffix or hostname.endswith(f".{suffix}")


class Provider(Enum):
    """First-class providers, matched in declaration order."""

    YOUTUBE = ("YouTubeEmbed", ("youtube.com",), ("youtu.be",))
    BANDCAMP = ("BandcampEmbed", ("bandcamp.com",), ())
    SPOTIFY = ("SpotifyEmbed", ("spotify.com",), ())
    APPLE_MUSIC = ("AppleMusicEmbed", ("music.apple.com",), ())

    def __init__(
        self, component: str, suffixes: tuple[str, ...], exact_hosts: tuple[str, ...]
    ) -> None:
        self.component = component
        self.suffixes = suffixes
        self.exact_hosts = exact_hosts

    def matches(self, hostname: str) -> bool:
        host = hostname.lower()
        return host in self.exact_hosts or any(_host_is(host, s) for s in self.suffixes)

    def render(self, url: str) -> FirstClassEmbed:
        props: dict[str, str] = {"url": url}
        player = render_player(url)
        if player:
            props["html"] = player
        return FirstClassEmbed(component=self.component, props=props)


def match_provider(url: str) -> Provider | None:
    hostname = urlsplit(url).hostname
    if not hostname:
        return None
    for provider in Provider:
        if provider.matches(hostname):
            return provider
    return None


def _iframe(src: str, style: str, **attrs: str) -> str:
    soup = BeautifulSoup("", "html.parser")
    tag = soup.new_tag(
        "iframe",
        attrs={"loading": "lazy", **attrs, "src": src, "style": append_dark_mode_style(style)},
    )
    return str(tag)


def _youtube_player(url: str) -> str | None:
    parts = urlsplit(url)
    if parts.hostname == "youtu.be":
        video_id = parts.path.lstrip("/")
    else:
        params = parse_qs(parts.query)
        video_id = (params.get("v") or [parts.path.rstrip("/").split("/")[-1]])[0]
    if not video_id:
        return None

    query = urlencode({"rel": "0", "color": "white", "modestbranding": "1"})
    return _iframe(
        f"https://www.youtube-nocookie.com/embed/{quote(video_id, safe='')}?{query}",
        "width:100%;height:360px;border:0;",
        allow="accelerometer; clipboard-write; encrypted-media; picture-in-picture",
        allowfullscreen="",
    )


def _vimeo_player(url: str) -> str | None:
    parts = urlsplit(url)
    segments = [segment for segment in parts.path.split("/") if segment]
    if parts.hostname == "player.vimeo.com" and len(segments) > 1 and segments[0] == "video":
        video_id = segments[1]
    else:
        video_id = next((segment for segment in segments if segment.isdigit()), "")
    if not video_id:
        return None

    params: dict[str, str] = {}
    privacy_hash = parse_qs(parts.query).get("h")
    if privacy_hash:
        params["h"] = privacy_hash[0]
    params.update({"dnt": "1", "title": "0", "byline": "0", "portrait": "0"})
    return _iframe(
        f"https://player.vimeo.com/video/{quote(video_id, safe='')}?{urlencode(params)}",
        "width:100%;aspect-ratio:16/9;height:auto;border:0;",
        allow="autoplay; fullscreen; picture-in-picture",
        allowfullscreen="",
        allowtransparency="true",
    )


def _with_param(base: str, query: str, name: str, value: str) -> str:
    pairs = [(k, v) for k, v in parse_qsl(query, keep_blank_values=True) if k != name]
    pairs.append((name, value))
    return f"{base}?{urlencode(pairs)}"


def _spotify_player(url: str) -> str:
    parts = urlsplit(url)
    src = _with_param(f"https://open.spotify.com/embed{parts.path}", parts.query, "theme", "0")
    return _iframe(
        src,
        "width:100%;height:352px;border:0;border-radius:12px;overflow:hidden;",
        allow="autoplay; clipboard-write; encrypted-media; fullscreen; picture-in-picture",
    )


def _apple_music_player(url: str) -> str:
    parts = urlsplit(url)
    src = _with_param(f"https://embed.music.apple.com{parts.path}", parts.query, "theme", "dark")
    return _iframe(
        src,
        "width:100%;height:450px;border:0;border-radius:12px;overflow:hidden;",
        allow="autoplay *; encrypted-media *; clipboard-write",
        sandbox=(
            "allow-forms allow-popups allow-same-origin allow-scripts "
            "allow-top-navigation-by-user-activation"
        ),
    )


def _bandcamp_player(url: str) -> str | None:
    decoded = url.replace("&amp;", "&")
    id_match = _BANDCAMP_ID.search(decoded)
    if id_match:
        src = f"{BANDCAMP_PLAYER}{id_match.group(1).lower()}={id_match.group(2)}/{BANDCAMP_PRESET}"
        return _iframe(src, BANDCAMP_STYLE, seamless="")

    target = decoded
    if "/embeddedplayer/" in urlsplit(decoded).path.lower():
        url_match = _BANDCAMP_URL_PARAM.search(decoded)
        if not url_match:
            return None
        target = unquote(url_match.group(1))

    preset = BANDCAMP_PRESET.replace("/", "&")
    src = f"{BANDCAMP_PLAYER}?url={quote(target, safe='')}&{preset}"
    return _iframe(src, BANDCAMP_STYLE, seamless="")


def render_player(url: str) -> str | None:
    """Dedicated player iframe for a first-class or Vimeo URL, else ``None``."""
    try:
        hostname = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return None
    if not hostname:
        return None

    if Provider.YOUTUBE.matches(hostname):
        return _youtube_player(url)
    if _host_is(hostname, "vimeo.com"):
        return _vimeo_player(url)
    if _host_is(hostname, "open.spotify.com"):
        return _spotify_player(url)
    if Provider.APPLE_MUSIC.matches(hostname):
        return _apple_music_player(url)
    if Provider.BANDCAMP.matches(hostname):
        return _bandcamp_player(url)
    return None
