"""Turn Telegram web-preview pages into ``Post`` records.

Every extraction step takes the message markup as an immutable string and
works on its own freshly parsed fragment, so steps cannot observe each
other's edits. A step that fails is logged and contributes its empty value;
the rest of the post is still extracted.
"""

import math
import re
from collections.abc import Callable
from html import unescape
from typing import Any, TypeVar
from urllib.parse import urlsplit

from bs4 import BeautifulSoup, NavigableString, Tag
from loguru import logger

from channel_mirror.cursor import to_numeric_id
from channel_mirror.highlight import highlight_code
from channel_mirror.models import AudioMedia, ChannelPage, Embed, ExtractOptions, Post
from channel_mirror.tags import extract_tags, iter_hashtags, normalize_tag, tag_url
from channel_mirror.urls import (
    canonicalize_url,
    embed_family,
    is_direct_download_url,
    normalize_media_src,
    normalize_url,
    normalize_url_text,
)

T = TypeVar("T")

# Items above the fold load eagerly; the rest wait for the viewport.
EAGER_ITEMS = 15

STYLE_URL = re.compile(r"""url\(["'](.*?)["']""", re.IGNORECASE)
REMOTE_STYLE_URL = re.compile(r"""(url\(["'])((?:https?:)?//)([^/"'\s)]*)""", re.IGNORECASE)
TITLE_PATTERN = re.compile(r"^.*?(?=[。\n]|http\S)")
HTTP_URL = re.compile(r"^https?:", re.IGNORECASE)

VIDEO_SELECTORS = (
    ".tgme_widget_message_video_wrap video",
    ".tgme_widget_message_roundvideo_wrap video",
)
ATTACHMENT_SELECTORS = (
    ".tgme_widget_message_document_wrap",
    ".tgme_widget_message_video_player.not_supported",
    ".tgme_widget_message_location_wrap",
)
PREVIEW_TEXT_SELECTORS = (
    ".link_preview_title",
    ".link_preview_description",
    ".link_preview_site_name",
)

_NO_LINKIFY = frozenset({"a", "code", "pre", "script", "style"})


def _fragment(markup: str) -> BeautifulSoup:
    return BeautifulSoup(markup, "html.parser")


def _attempt(field: str, default: T, step: Callable[..., T], *args: Any) -> T:
    try:
        return step(*args)
    except Exception as e:
        logger.warning("Could not extract {}: {}", field, e)
        return default


def _attr(tag: Tag | None, name: str) -> str:
    if tag is None:
        return ""
    value = tag.get(name)
    if isinstance(value, list):
        return " ".join(value)
    return value or ""


def _classes(tag: Tag) -> list[str]:
    return _attr(tag, "class").split()


def _add_class(tag: Tag, name: str) -> None:
    classes = _classes(tag)
    if name not in classes:
        tag["class"] = [*classes, name]


def _loading(index: int) -> str:
    return "eager" if index < EAGER_ITEMS else "lazy"


def _wrap_contents(soup: BeautifulSoup, tag: Tag, name: str) -> None:
    wrapper = soup.new_tag(name)
    for child in list(tag.contents):
        wrapper.append(child.extract())
    tag.append(wrapper)


# Rich text


def _rewrite_anchors(root: Tag, base_url: str) -> None:
    for anchor in root.find_all("a"):
        text = anchor.get_text()
        href = _attr(anchor, "href")
        tag = normalize_tag(text)
        is_hashtag_link = "q=%23" in href or "tgme_widget_message_hashtag" in _classes(anchor)

        anchor["title"] = text
        anchor.attrs.pop("onclick", None)

        if tag and is_hashtag_link:
            stripped = text.strip()
            anchor["href"] = tag_url(tag, base_url)
            anchor["title"] = stripped if stripped.startswith("#") else f"#{tag}"
            _add_class(anchor, "hashtag")


def _wrap_spoilers(soup: BeautifulSoup, root: Tag, scope: str) -> None:
    for position, spoiler in enumerate(root.find_all("tg-spoiler")):
        spoiler["id"] = f"spoiler-{scope}-{position}"
        spoiler.wrap(soup.new_tag("label", attrs={"class": "spoiler-button"}))
        spoiler.insert_before(soup.new_tag("input", attrs={"type": "checkbox"}))


def _highlight_blocks(root: Tag) -> None:
    for pre in root.find_all("pre"):
        try:
            for br in pre.find_all("br"):
                br.replace_with("\n")
            language, markup = highlight_code(pre.get_text())
            code = _fragment(f'<code class="language-{language}">{markup}</code>').code
            pre.clear()
            pre.append(code)
        except Exception as e:
            logger.warning("Could not highlight code block: {}", e)


def _linkify_hashtags(soup: BeautifulSoup, node: Tag, base_url: str) -> None:
    for child in list(node.children):
        if isinstance(child, Tag):
            if child.name not in _NO_LINKIFY:
                _linkify_hashtags(soup, child, base_url)
            continue
        if type(child) is not NavigableString or "#" not in child:
            continue

        text = str(child)
        pieces: list[NavigableString | Tag] = []
        last = 0
        for match in iter_hashtags(text):
            tag = normalize_tag(match.group(0))
            if not tag:
                continue
            if match.start() > last:
                pieces.append(NavigableString(text[last : match.start()]))
            anchor = soup.new_tag(
                "a",
                attrs={
                    "href": tag_url(tag, base_url),
                    "class": "hashtag",
                    "title": match.group(0),
                },
            )
            anchor.string = match.group(0)
            pieces.append(anchor)
            last = match.end()

        if pieces:
            if last < len(text):
                pieces.append(NavigableString(text[last:]))
            child.replace_with(*pieces)


def process_rich_text(
    soup: BeautifulSoup, root: Tag, *, spoiler_scope: str, base_url: str
) -> Tag:
    """Apply the message-text rewrites to ``root`` inside its own fragment."""
    for emoji in root.select(".emoji"):
        emoji.attrs.pop("style", None)
    _rewrite_anchors(root, base_url)
    _wrap_spoilers(soup, root, spoiler_scope)
    _highlight_blocks(root)
    _linkify_hashtags(soup, root, base_url)
    return root


def _text_element(soup: BeautifulSoup) -> Tag | None:
    if soup.select_one(".js-message_reply_text") is not None:
        return soup.select_one(".tgme_widget_message_text.js-message_text")
    return soup.select_one(".tgme_widget_message_text")


def _rich_text(message_html: str, index: int, options: ExtractOptions) -> tuple[str, str]:
    soup = _fragment(message_html)
    element = _text_element(soup)
    if element is None:
        return "", ""
    process_rich_text(soup, element, spoiler_scope=str(index), base_url=options.base_url)
    return element.decode_contents(), element.get_text()


def derive_title(text: str) -> str:
    match = TITLE_PATTERN.match(text)
    return match.group(0) if match else text


# Media


def _audio_item(node: Tag, static_proxy: str) -> AudioMedia | None:
    audio = node if node.name == "audio" else node.find("audio")
    sources: list[tuple[str, str]] = []

    if audio is not None:
        direct = _attr(audio, "src") or _attr(audio, "data-src")
        if direct:
            sources.append((direct, _attr(audio, "type")))
        for source in audio.find_all("source"):
            src = _attr(source, "src") or _attr(source, "data-src")
            if src:
                sources.append((src, _attr(source, "type")))

    fallback = _attr(node, "src") or _attr(node, "data-src") or _attr(node, "href")
    if fallback:
        sources.append((fallback, _attr(node, "type")))

    for src, mime in sources:
        url = normalize_media_src(src, static_proxy)
        if url:
            break
    else:
        return None

    figcaption = node.find("figcaption")
    caption = (
        _attr(audio, "title")
        or _attr(node, "title")
        or (figcaption.get_text() if figcaption is not None else "")
    ).strip()
    return AudioMedia(url=url, mime=mime or None, caption=caption or None)


def extract_audio(message_html: str, static_proxy: str) -> tuple[str, list[AudioMedia]]:
    """Collect audio sources and return the message markup without them."""
    soup = _fragment(message_html)
    nodes = soup.select("audio, .tgme_widget_message_voice")
    if not nodes:
        return message_html, []

    items = [item for item in (_audio_item(node, static_proxy) for node in nodes) if item]
    for node in nodes:
        node.extract()

    media: list[AudioMedia] = []
    seen: set[str] = set()
    for item in items:
        key = normalize_url(item.url)
        if key in seen:
            continue
        seen.add(key)
        media.append(item)
    return soup.decode(), media


AUDIO_MIME_TYPES = {
    "mp3": "audio/mpeg",
    "m4a": "audio/mp4",
    "aac": "audio/aac",
    "ogg": "audio/ogg",
    "wav": "audio/wav",
    "flac": "audio/flac",
}
_AUDIO_EXTENSIONS = "|".join(AUDIO_MIME_TYPES)
AUDIO_URL = re.compile(
    rf"""\bhttps?://[^\s<>'"]+\.(?:{_AUDIO_EXTENSIONS})(?:\?[^\s<>'"]*)?(?![^\s<>'"])""",
    re.IGNORECASE,
)


def audio_mime(url: str) -> str | None:
    extension = url.split("?", 1)[0].rsplit(".", 1)[-1].lower()
    return AUDIO_MIME_TYPES.get(extension)


def _audio_player(soup: BeautifulSoup, url: str) -> Tag:
    player = soup.new_tag("audio", attrs={"controls": "", "preload": "metadata"})
    source = soup.new_tag("source", attrs={"src": url})
    mime = audio_mime(url)
    if mime:
        source["type"] = mime
    player.append(source)
    return player


def link_audio_to_player(content_html: str) -> str:
    """Replace links to audio files, anchors and bare URLs, with players."""
    soup = _fragment(content_html)
    changed = False

    for anchor in soup.find_all("a", href=True):
        href = _attr(anchor, "href").strip()
        if href and audio_mime(href):
            anchor.replace_with(_audio_player(soup, href))
            changed = True

    for node in list(soup.find_all(string=AUDIO_URL)):
        if type(node) is not NavigableString:
            continue
        if any(parent.name in _NO_LINKIFY for parent in node.parents):
            continue
        text = str(node)
        pieces: list[NavigableString | Tag] = []
        last = 0
        for match in AUDIO_URL.finditer(text):
            if match.start() > last:
                pieces.append(NavigableString(text[last : match.start()]))
            pieces.append(_audio_player(soup, match.group(0)))
            last = match.end()
        if last < len(text):
            pieces.append(NavigableString(text[last:]))
        node.replace_with(*pieces)
        changed = True

    return soup.decode() if changed else content_html


def extract_audio_links(text: str) -> list[AudioMedia]:
    """Absolute audio-file URLs in ``text``, first occurrence wins."""
    if not text:
        return []
    seen: set[str] = set()
    links: list[AudioMedia] = []
    for match in AUDIO_URL.finditer(text):
        url = unescape(match.group(0))
        if url in seen:
            continue
        seen.add(url)
        links.append(AudioMedia(url=url, mime=audio_mime(url)))
    return links


def merge_audio(media: list[AudioMedia], extra: list[AudioMedia]) -> list[AudioMedia]:
    seen = {normalize_url(item.url) for item in media}
    merged = list(media)
    for item in extra:
        key = normalize_url(item.url)
        if key not in seen:
            seen.add(key)
            merged.append(item)
    return merged


def _reply_html(message_html: str, channel: str) -> str:
    soup = _fragment(message_html)
    reply = soup.select_one(".tgme_widget_message_reply")
    if reply is None:
        return ""

    _wrap_contents(soup, reply, "small")
    _wrap_contents(soup, reply, "blockquote")
    href = _attr(reply, "href")
    if href:
        path = urlsplit(href).path
        reply["href"] = re.sub(
            f"/{re.escape(channel)}/", "/posts/", path, count=1, flags=re.IGNORECASE
        )
    return str(reply)


def _images_html(message_html: str, index: int, title: str, options: ExtractOptions) -> str:
    soup = _fragment(message_html)
    links: list[Tag] = []
    for photo in soup.select(".tgme_widget_message_photo_wrap"):
        match = STYLE_URL.search(_attr(photo, "style"))
        if not match:
            continue
        src = options.static_proxy + match.group(1)
        link = soup.new_tag(
            "a",
            attrs={
                "class": "image-preview-link image-preview-wrap",
                "href": src,
                "target": "_blank",
                "rel": "noopener noreferrer",
            },
        )
        link.append(
            soup.new_tag(
                "img",
                attrs={"src": src, "alt": title, "loading": _loading(index), "decoding": "async"},
            )
        )
        links.append(link)

    if not links:
        return ""
    parity = "image-list-even" if len(links) % 2 == 0 else "image-list-odd"
    container = soup.new_tag("div", attrs={"class": f"image-list-container {parity}"})
    container.extend(links)
    return str(container)


def _video_html(message_html: str, index: int, options: ExtractOptions) -> str:
    soup = _fragment(message_html)
    parts: list[str] = []
    for selector in VIDEO_SELECTORS:
        for video in soup.select(selector):
            src = _attr(video, "src")
            if src:
                video["src"] = options.static_proxy + src
            video.attrs.pop("autoplay", None)
            video["controls"] = ""
            video["preload"] = "auto" if index < EAGER_ITEMS else "metadata"
            video["playsinline"] = ""
            video["webkit-playsinline"] = ""
            parts.append(str(video))
    return "".join(parts)


def _stickers_html(message_html: str, index: int, options: ExtractOptions) -> str:
    soup = _fragment(message_html)
    parts: list[str] = []
    for sticker in soup.select(".tgme_widget_message_sticker"):
        webp = _attr(sticker, "data-webp")
        if not webp:
            continue
        image = soup.new_tag(
            "img",
            attrs={
                "class": "sticker",
                "src": options.static_proxy + webp,
                "style": "width: 256px;",
                "alt": "Sticker",
                "loading": _loading(index),
                "decoding": "async",
            },
        )
        parts.append(str(image))
    return "".join(parts)


def _video_stickers_html(message_html: str, index: int, options: ExtractOptions) -> str:
    soup = _fragment(message_html)
    parts: list[str] = []
    for source in soup.select(".js-videosticker_video"):
        src = _attr(source, "src")
        if not src:
            continue
        wrapper = soup.new_tag("div", attrs={"style": "background-image: none; width: 256px;"})
        video = soup.new_tag(
            "video",
            attrs={
                "src": options.static_proxy + src,
                "width": "100%",
                "height": "100%",
                "preload": "metadata",
                "muted": "",
                "loop": "",
                "playsinline": "",
                "disablepictureinpicture": "",
                "controls": "",
            },
        )
        poster = _attr(source.find("img"), "src")
        if poster:
            video.append(
                soup.new_tag(
                    "img",
                    attrs={
                        "class": "sticker",
                        "src": options.static_proxy + poster,
                        "alt": "Video Sticker",
                        "loading": _loading(index),
                        "decoding": "async",
                    },
                )
            )
        wrapper.append(video)
        parts.append(str(wrapper))
    return "".join(parts)


def _attachments_html(message_html: str) -> str:
    soup = _fragment(message_html)
    parts: list[str] = []
    poll = soup.select_one(".tgme_widget_message_poll")
    if poll is not None:
        parts.append(poll.decode_contents())
    for selector in ATTACHMENT_SELECTORS:
        parts.extend(str(tag) for tag in soup.select(selector))
    return "".join(parts)


def proxy_style_urls(markup: str, static_proxy: str, own_host: str) -> str:
    """Route remote ``url(...)`` references in inline styles through the proxy."""

    def replace(match: re.Match[str]) -> str:
        prefix, scheme, host = match.groups()
        if host.lower() == own_host.lower():
            return match.group(0)
        absolute = "https://" if scheme == "//" else scheme
        return f"{prefix}{static_proxy}{absolute}{host}"

    return REMOTE_STYLE_URL.sub(replace, markup)


# Embeds


def extract_embeddable_links(content_html: str) -> list[str]:
    """Canonical URLs of known rich providers linked from the message text."""
    seen: set[str] = set()
    links: list[str] = []
    for anchor in _fragment(content_html).find_all("a", href=True):
        href = _attr(anchor, "href").strip()
        if not HTTP_URL.match(href) or is_direct_download_url(href):
            continue
        canonical = canonicalize_url(href)
        if not canonical or embed_family(canonical) is None or canonical in seen:
            continue
        seen.add(canonical)
        links.append(canonical)
    return links


def _preview_duplicates_embed(canonical: str, family: str | None, links: list[str]) -> bool:
    if not family:
        return False
    for url in links:
        embed_canonical = canonicalize_url(url) or normalize_url_text(url)
        if canonical and embed_canonical == canonical:
            return True
        if embed_family(embed_canonical or url) == family:
            return True
    return False


def _link_preview(
    message_html: str, links: list[str], index: int, options: ExtractOptions
) -> tuple[str, str] | None:
    soup = _fragment(message_html)
    link = soup.select_one(".tgme_widget_message_link_preview")
    if link is None:
        return None

    title_tag = soup.select_one(".link_preview_title") or soup.select_one(".link_preview_site_name")
    title = title_tag.get_text() if title_tag is not None else ""
    description_tag = soup.select_one(".link_preview_description")
    description = description_tag.get_text() if description_tag is not None else ""

    href = _attr(link, "href").strip()
    canonical = canonicalize_url(href)
    family = embed_family(canonical or href)
    normalized_href = normalize_url_text(canonical or href)

    if is_direct_download_url(href):
        return None
    if _preview_duplicates_embed(canonical, family, links):
        return None

    link["target"] = "_blank"
    link["rel"] = "noopener"
    if description:
        link["title"] = description
    for url_tag in link.select(".link_preview_url"):
        url_tag.decompose()

    if normalized_href:
        for selector in PREVIEW_TEXT_SELECTORS:
            for element in link.select(selector):
                text = element.get_text().strip()
                if text and normalize_url_text(text) == normalized_href:
                    element.decompose()

    image = link.select_one(".link_preview_image")
    if image is not None:
        match = STYLE_URL.search(_attr(image, "style"))
        if match:
            image.replace_with(
                soup.new_tag(
                    "img",
                    attrs={
                        "class": "link_preview_image",
                        "alt": title,
                        "src": options.static_proxy + match.group(1),
                        "loading": _loading(index),
                        "decoding": "async",
                    },
                )
            )
        else:
            image.decompose()

    _add_class(link, "tlp")
    for selector, namespaced in (
        (".link_preview_title", "tlp__title"),
        (".link_preview_description", "tlp__desc"),
        (".link_preview_site_name", "tlp__site"),
        (".link_preview_image, .image, img", "tlp__thumb"),
    ):
        element = link.select_one(selector)
        if element is not None:
            _add_class(element, namespaced)

    return str(link), href


def assemble_embeds(links: list[str], preview: tuple[str, str] | None) -> list[Embed]:
    """Dedupe by canonical URL and keep at most one embed per provider family."""
    embeds: list[Embed] = []
    seen_keys: set[str] = set()
    seen_families: set[str] = set()

    for url in links:
        canonical = canonicalize_url(url)
        key = canonical or url.strip()
        family = embed_family(canonical or url)
        if key in seen_keys or (family and family in seen_families):
            continue
        seen_keys.add(key)
        if family:
            seen_families.add(family)
        embeds.append(Embed(url=canonical or url))

    if preview is not None:
        markup, href = preview
        canonical = canonicalize_url(href)
        key = canonical or href.strip()
        family = embed_family(canonical or href)
        if not ((key and key in seen_keys) or (family and family in seen_families)):
            embeds.append(Embed(url=canonical or href or None, oembed_html=markup))

    return embeds


# Posts


def _message_meta(message_html: str, channel: str) -> tuple[str, str, str | None]:
    message = _fragment(message_html).find(True)
    if message is None:
        return "", "text", None

    raw_id = _attr(message, "data-post")
    post_id = re.sub(f"{re.escape(channel)}/", "", raw_id, count=1, flags=re.IGNORECASE)
    post_type = "service" if "service_message" in _attr(message, "class") else "text"
    time_tag = message.select_one(".tgme_widget_message_date time")
    posted_at = _attr(time_tag, "datetime") or None
    return post_id, post_type, posted_at


def extract_post(message_html: str, *, index: int, options: ExtractOptions) -> Post:
    stripped, media = _attempt(
        "audio", (message_html, []), extract_audio, message_html, options.static_proxy
    )
    content_html, text = _attempt("text", ("", ""), _rich_text, stripped, index, options)
    title = derive_title(text)

    links: list[str] = []
    if options.enable_embeds:
        links = _attempt("embeds", [], extract_embeddable_links, content_html)
    preview = _attempt("link preview", None, _link_preview, stripped, links, index, options)

    media = merge_audio(media, _attempt("audio links", [], extract_audio_links, content_html))
    content_html = _attempt(
        "audio players", content_html, link_audio_to_player, content_html
    )

    pieces = [
        _attempt("reply", "", _reply_html, stripped, options.channel),
        _attempt("images", "", _images_html, stripped, index, title, options),
        _attempt("video", "", _video_html, stripped, index, options),
        content_html,
        _attempt("stickers", "", _stickers_html, stripped, index, options),
        _attempt("video stickers", "", _video_stickers_html, stripped, index, options),
        _attempt("attachments", "", _attachments_html, stripped),
    ]
    joined = "".join(piece for piece in pieces if piece)
    content = _attempt(
        "style urls", joined, proxy_style_urls, joined, options.static_proxy, options.telegram_host
    )

    post_id, post_type, posted_at = _attempt(
        "message metadata", ("", "text", None), _message_meta, stripped, options.channel
    )
    return Post(
        id=post_id,
        type=post_type,
        title=title,
        text=text,
        tags=extract_tags(text),
        content=content,
        media=media,
        embeds=assemble_embeds(links, preview),
        datetime=posted_at,
        embeds_enabled=options.enable_embeds,
    )


def is_listable(post: Post) -> bool:
    return post.type == "text" and bool(post.id) and bool(post.content)


def sort_by_numeric_id(posts: list[Post]) -> list[Post]:
    def key(post: Post) -> tuple[bool, float]:
        value = to_numeric_id(post.id)
        return math.isnan(value), 0.0 if math.isnan(value) else value

    return sorted(posts, key=key)


def _description_html(markup: str, options: ExtractOptions) -> str:
    soup = _fragment(markup)
    root = soup.find(True)
    if root is None:
        return ""
    process_rich_text(soup, root, spoiler_scope="channel", base_url=options.base_url)
    return root.decode_contents()


def _channel_metadata(soup: BeautifulSoup, options: ExtractOptions) -> dict[str, str | None]:
    title = soup.select_one(".tgme_channel_info_header_title")
    description = soup.select_one(".tgme_channel_info_description")
    avatar = soup.select_one(".tgme_page_photo_image img")

    description_html = None
    if description is not None:
        description_html = _attempt(
            "channel description", None, _description_html, str(description), options
        )
    return {
        "title": title.get_text() if title is not None else None,
        "description": description.get_text() if description is not None else None,
        "description_html": description_html,
        "avatar": _attr(avatar, "src") or None,
    }


def parse_channel_page(html: str, options: ExtractOptions) -> ChannelPage:
    soup = BeautifulSoup(html, "lxml")
    posts: list[Post] = []
    for index, wrap in enumerate(soup.select(".tgme_widget_message_wrap")):
        message = wrap.select_one(".tgme_widget_message")
        if message is None:
            continue
        posts.append(extract_post(str(message), index=index, options=options))

    kept = sort_by_numeric_id([post for post in posts if is_listable(post)])
    logger.debug("Parsed {} of {} messages from channel page", len(kept), len(posts))
    return ChannelPage(posts=kept, **_channel_metadata(soup, options))


def parse_post_page(html: str, options: ExtractOptions) -> Post | None:
    soup = BeautifulSoup(html, "lxml")
    message = soup.select_one(".tgme_widget_message")
    if message is None:
        logger.warning("No message found on single post page")
        return None
    return extract_post(str(message), index=0, options=options)
