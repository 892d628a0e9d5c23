"""Terminal allowlist filter for any HTML that leaves the mirror.

The filter is pure and idempotent: running it over its own output returns
the same markup. Emoji runs in surviving text are wrapped in
``<span class="emoji">`` before tags and attributes are filtered.
"""

import re
from collections.abc import Iterable
from urllib.parse import urlsplit

from bs4 import BeautifulSoup, NavigableString, Tag

from channel_mirror.settings import DEFAULT_IFRAME_ALLOWLIST
from channel_mirror.urls import absolute_http_host, host_matches

ALLOWED_TAGS = frozenset(
    {
        "a", "abbr", "audio", "b", "bdi", "bdo", "blockquote", "br",
        "caption", "cite", "code", "dd", "del", "details", "dfn", "div",
        "dl", "dt", "em", "figcaption", "figure", "h1", "h2", "h3", "h4",
        "h5", "h6", "hr", "i", "iframe", "img", "input", "ins", "kbd", "label",
        "li", "mark", "ol", "p", "picture", "pre", "q", "s", "samp", "small",
        "source", "span", "strike", "strong", "sub", "summary", "sup",
        "tg-spoiler", "time", "u", "ul", "video",
    }
)

# Removed together with everything inside them.
DROPPED_TAGS = frozenset(
    {
        "applet", "base", "embed", "form", "frame", "frameset", "head",
        "link", "math", "meta", "noscript", "object", "option", "script",
        "select", "style", "svg", "template", "textarea", "title",
    }
)

GLOBAL_ATTRIBUTES = frozenset({"class", "style", "title", "aria-label"})

TAG_ATTRIBUTES = {
    "a": frozenset({"href", "target", "rel"}),
    "audio": frozenset({"src", "controls", "preload", "loop", "muted"}),
    "blockquote": frozenset({"cite"}),
    "iframe": frozenset(
        {
            "src", "width", "height", "allow", "allowfullscreen",
            "allowtransparency", "frameborder", "loading", "referrerpolicy",
            "sandbox", "scrolling", "seamless",
        }
    ),
    "img": frozenset(
        {
            "src", "srcset", "sizes", "alt", "width", "height", "loading",
            "decoding", "referrerpolicy",
        }
    ),
    "input": frozenset({"type", "checked"}),
    "label": frozenset({"for"}),
    "ol": frozenset({"start", "reversed"}),
    "q": frozenset({"cite"}),
    "source": frozenset({"src", "srcset", "type", "media", "sizes"}),
    "tg-spoiler": frozenset({"id"}),
    "time": frozenset({"datetime"}),
    "video": frozenset(
        {
            "src", "poster", "controls", "preload", "loop", "muted",
            "playsinline", "width", "height",
        }
    ),
}

URL_ATTRIBUTES = frozenset({"href", "src", "poster", "cite"})
SAFE_SCHEMES = frozenset({"http", "https"})
SAFE_REL_TOKENS = ("noopener", "noreferrer", "nofollow", "ugc")

_UNSAFE_STYLE = re.compile(r"javascript:|vbscript:|expression\s*\(|-moz-binding", re.IGNORECASE)
_URL_NOISE = re.compile(r"[\x00-\x20\x7f]+")
_URL_SCHEME = re.compile(r"^([a-z][a-z0-9+.-]*):", re.IGNORECASE)
_DATA_IMAGE = re.compile(r"^data:image/(?:png|jpe?g|gif|webp|avif|bmp);", re.IGNORECASE)

_PICTOGRAPHIC = (
    "©®‼⁉™ℹ↔-↙↩↪"
    "⌚⌛⌨⏏⏩-⏳⏸-⏺Ⓜ▪▫"
    "▶◀◻-◾☀-➿⤴⤵⬅-⬇"
    "⬛⬜⭐⭕〰〽㊗㊙"
    "\U0001f000-\U0001faff"
)
_EMOJI_UNIT = f"[{_PICTOGRAPHIC}](?:[︎️⃣]|[\U000e0020-\U000e007f])*"
EMOJI_RUN = re.compile(f"(?:{_EMOJI_UNIT}(?:‍{_EMOJI_UNIT})*)+")

_NO_EMOJI_PARENTS = frozenset({"script", "style", "textarea", "title"})


def _classes(tag: Tag) -> list[str]:
    value = tag.get("class") or []
    return value.split() if isinstance(value, str) else list(value)


def _attr_text(value: str | list[str]) -> str:
    return " ".join(value) if isinstance(value, list) else value


def _wrap_emoji(soup: BeautifulSoup) -> None:
    for node in list(soup.find_all(string=EMOJI_RUN)):
        if type(node) is not NavigableString:
            continue
        parent = node.parent
        if parent is None or parent.name in _NO_EMOJI_PARENTS:
            continue
        if parent.name == "span" and "emoji" in _classes(parent):
            continue

        text = str(node)
        pieces: list[NavigableString | Tag] = []
        last = 0
        for match in EMOJI_RUN.finditer(text):
            if match.start() > last:
                pieces.append(NavigableString(text[last : match.start()]))
            span = soup.new_tag("span", attrs={"class": "emoji"})
            span.string = match.group(0)
            pieces.append(span)
            last = match.end()
        if last < len(text):
            pieces.append(NavigableString(text[last:]))
        node.replace_with(*pieces)


def _is_safe_url(value: str, tag_name: str, attr: str) -> bool:
    compact = _URL_NOISE.sub("", value)
    match = _URL_SCHEME.match(compact)
    if match is None:
        return True
    scheme = match.group(1).lower()
    if scheme in SAFE_SCHEMES:
        return True
    return (
        scheme == "data"
        and tag_name == "img"
        and attr == "src"
        and bool(_DATA_IMAGE.match(compact))
    )


def _is_safe_srcset(value: str, tag_name: str) -> bool:
    candidates = (part.strip().split(" ", 1)[0] for part in value.split(","))
    return all(_is_safe_url(url, tag_name, "srcset") for url in candidates if url)


def _filter_attributes(tag: Tag) -> None:
    allowed = GLOBAL_ATTRIBUTES | TAG_ATTRIBUTES.get(tag.name, frozenset())
    for name in list(tag.attrs):
        if name not in allowed:
            del tag[name]
            continue

        text = _attr_text(tag[name])
        if name in URL_ATTRIBUTES and not _is_safe_url(text, tag.name, name):
            del tag[name]
        elif name == "srcset" and not _is_safe_srcset(text, tag.name):
            del tag[name]
        elif name == "style" and _UNSAFE_STYLE.search(text):
            del tag[name]


def _iframe_allowed(tag: Tag, iframe_hosts: Iterable[str]) -> bool:
    src = tag.get("src")
    if not isinstance(src, str):
        return False
    return host_matches(absolute_http_host(src), iframe_hosts)


def _apply_anchor_policy(tag: Tag, site_host: str | None) -> None:
    host = absolute_http_host(tag.get("href"))
    if host and host != site_host:
        tag["target"] = "_blank"
        existing = _attr_text(tag.get("rel") or "").split()
        lowered = {token.lower() for token in existing}
        missing = [token for token in SAFE_REL_TOKENS if token not in lowered]
        tag["rel"] = " ".join([*existing, *missing])
    elif _attr_text(tag.get("target") or "").lower() == "_blank":
        del tag["target"]


def _apply_image_defaults(tag: Tag) -> None:
    if not tag.get("loading"):
        tag["loading"] = "lazy"
    if not tag.get("decoding"):
        tag["decoding"] = "async"


def _filter_children(
    node: Tag,
    site_host: str | None,
    iframe_hosts: tuple[str, ...],
) -> None:
    for child in list(node.children):
        if isinstance(child, NavigableString):
            if type(child) is not NavigableString:
                # Comments, CDATA, doctypes and processing instructions.
                child.extract()
            continue
        if not isinstance(child, Tag):
            continue

        name = child.name
        if name in DROPPED_TAGS:
            child.decompose()
            continue

        if name == "iframe":
            if not _iframe_allowed(child, iframe_hosts):
                child.decompose()
                continue
            child.clear()
            _filter_attributes(child)
            continue

        # Only the checkbox of the spoiler reveal pattern is kept.
        if name == "input" and _attr_text(child.get("type") or "").lower() != "checkbox":
            child.decompose()
            continue

        if name not in ALLOWED_TAGS:
            _filter_children(child, site_host, iframe_hosts)
            child.unwrap()
            continue

        _filter_attributes(child)
        if name == "a":
            _apply_anchor_policy(child, site_host)
        elif name == "img":
            _apply_image_defaults(child)
        _filter_children(child, site_host, iframe_hosts)


def sanitize_html(
    dirty: str | None,
    *,
    site_origin: str | None = None,
    iframe_hosts: Iterable[str] = DEFAULT_IFRAME_ALLOWLIST,
) -> str:
    if not dirty:
        return ""

    site_host = urlsplit(site_origin).hostname if site_origin else None
    hosts = tuple(host.strip().lower() for host in iframe_hosts if host.strip())

    soup = BeautifulSoup(dirty, "html.parser")
    _wrap_emoji(soup)
    _filter_children(soup, site_host, hosts)
    return soup.decode()
