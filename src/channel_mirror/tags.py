import re
from collections.abc import Iterator
from urllib.parse import quote

HASHTAG_PATTERN = re.compile(r"#[\w-]+")
_TAG_BODY = re.compile(r"[\w-]+")
_TAG_CHAR = re.compile(r"[\w-]")


def normalize_tag(raw: str | None) -> str:
    if not isinstance(raw, str):
        return ""
    tag = raw.strip().lstrip("#").strip().lower()
    if not tag or not _TAG_BODY.fullmatch(tag):
        return ""
    return tag


def is_tag_boundary(text: str, start: int) -> bool:
    """A hashtag may only start after a non-word, non-hyphen character."""
    if start == 0:
        return True
    return not _TAG_CHAR.match(text[start - 1])


def iter_hashtags(text: str) -> Iterator[re.Match[str]]:
    for match in HASHTAG_PATTERN.finditer(text):
        if is_tag_boundary(text, match.start()):
            yield match


def extract_tags(text: str | None) -> list[str]:
    if not text:
        return []

    tags: list[str] = []
    seen: set[str] = set()
    for match in iter_hashtags(text):
        tag = normalize_tag(match.group(0))
        if tag and tag not in seen:
            seen.add(tag)
            tags.append(tag)
    return tags


def ensure_base_url(base_url: str | None) -> str:
    if not isinstance(base_url, str) or not base_url:
        return "/"

    if re.match(r"^(?:[a-zA-Z][\w+.-]*:|//)", base_url):
        return base_url if base_url.endswith("/") else f"{base_url}/"

    if not base_url.startswith("/"):
        base_url = f"/{base_url}"
    if not base_url.endswith("/"):
        base_url = f"{base_url}/"
    return base_url


def tag_url(tag: str, base_url: str | None = "/") -> str:
    return f"{ensure_base_url(base_url)}tags/{quote(tag, safe='')}/"
