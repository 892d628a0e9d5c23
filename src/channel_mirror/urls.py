import re
from collections.abc import Iterable
from urllib.parse import SplitResult, parse_qsl, urlencode, urlsplit, urlunsplit

TRACKING_PARAM_PATTERN = re.compile(r"^utm_", re.IGNORECASE)
TRACKING_PARAM_NAMES = frozenset(
    {
        "si",
        "fbclid",
        "gclid",
        "dclid",
        "igshid",
        "mc_cid",
        "mc_eid",
        "mkt_tok",
        "oly_anon_id",
        "oly_enc_id",
        "ref",
        "ref_src",
        "ref_url",
        "spm",
    }
)

DEFAULT_PORTS = {"http": 80, "https": 443}

DIRECT_DOWNLOAD_EXTENSIONS = (
    ".7z", ".aac", ".apk", ".avi", ".bz2", ".doc", ".docx", ".flac",
    ".gif", ".gz", ".jpeg", ".jpg", ".m4a", ".m4v", ".mkv", ".mov",
    ".mp3", ".mp4", ".ogg", ".oga", ".ogv", ".pdf", ".png", ".ppt",
    ".pptx", ".rar", ".svg", ".tar", ".tgz", ".wav", ".webm", ".webp",
    ".xls", ".xlsx", ".xz", ".zip",
)

# Checked in order; the first substring hit names the family.
EMBED_FAMILIES = (
    ("youtube", ("youtube.com/", "youtu.be/")),
    ("vimeo", ("vimeo.com/",)),
    ("soundcloud", ("soundcloud.com/",)),
    ("bandcamp", ("bandcamp.com/",)),
    ("spotify", ("open.spotify.com/",)),
    ("applemusic", ("music.apple.com/",)),
)

_SCHEME = re.compile(r"^[a-z][a-z0-9+.-]*:", re.IGNORECASE)


def _ensure_https_scheme(raw: str) -> str:
    if re.match(r"^https?:", raw, re.IGNORECASE):
        return re.sub(r"^http:", "https:", raw, flags=re.IGNORECASE)
    if raw.startswith("//"):
        return f"https:{raw}"
    if _SCHEME.match(raw):
        return raw
    return f"https://{raw}"


def _split(raw: str) -> SplitResult | None:
    try:
        parts = urlsplit(raw)
        # Port parsing is lazy in urllib; force it so bad ports fail here.
        parts.port
    except ValueError:
        return None
    if not parts.hostname:
        return None
    # Browsers read "\" as "/" in http(s) authorities; urllib keeps it in the host.
    if parts.scheme.lower() in ("http", "https") and "\\" in _authority(raw):
        return None
    return parts


def _authority(raw: str) -> str:
    rest = raw.split(":", 1)[1] if ":" in raw else raw
    rest = rest.lstrip("/\\")
    return re.split(r"[/?#]", rest, maxsplit=1)[0]


def _rewrite_shortener(
    host: str, path: str, params: list[tuple[str, str]]
) -> tuple[str, str, list[tuple[str, str]]]:
    if host in ("youtu.be", "www.youtu.be"):
        video_id = path.lstrip("/").split("/")[0]
        if video_id:
            kept = [(k, v) for k, v in params if k.lower() != "v"]
            return "www.youtube.com", "/watch", [("v", video_id), *kept]
    return host, path, params


def _strip_tracking(params: list[tuple[str, str]]) -> list[tuple[str, str]]:
    kept = [
        (key, value)
        for key, value in params
        if not TRACKING_PARAM_PATTERN.match(key)
        and key.lower() not in TRACKING_PARAM_NAMES
    ]
    return sorted(kept, key=lambda item: (item[0].lower(), item[1]))


def _normalize_path(path: str) -> str:
    path = re.sub(r"/+", "/", path or "/")
    if not path.startswith("/"):
        path = f"/{path}"
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return path


def canonicalize_url(value: str | None) -> str:
    """Reduce a URL to a stable comparison key, or ``""`` if it is not http(s).

    Scheme is forced to https, youtu.be links become youtube.com watch links,
    the host is lowercased, the fragment and tracking parameters are dropped,
    remaining parameters are sorted, duplicate and trailing slashes are
    collapsed and the default port is removed.
    """
    if not isinstance(value, str):
        return ""
    trimmed = value.strip()
    if not trimmed:
        return ""

    original_scheme = trimmed.split(":", 1)[0].lower() if ":" in trimmed else ""
    parts = _split(_ensure_https_scheme(trimmed))
    if parts is None or parts.scheme.lower() not in ("http", "https"):
        return ""

    host = parts.hostname.lower()
    params = parse_qsl(parts.query, keep_blank_values=True)
    host, path, params = _rewrite_shortener(host, parts.path, params)

    port = parts.port
    if port is not None and port in (
        DEFAULT_PORTS["https"],
        DEFAULT_PORTS.get(original_scheme),
    ):
        port = None

    userinfo = ""
    if "@" in parts.netloc:
        userinfo = parts.netloc.rsplit("@", 1)[0] + "@"
    if ":" in host:
        host = f"[{host}]"
    netloc = f"{userinfo}{host}" + (f":{port}" if port is not None else "")

    query = urlencode(_strip_tracking(params))
    path = _normalize_path(path)
    if path == "/" and not query:
        path = ""
    return urlunsplit(("https", netloc, path, query, ""))


def host_matches(hostname: str | None, allowed: Iterable[str]) -> bool:
    """True when ``hostname`` equals or is a subdomain of an allowed host."""
    if not hostname:
        return False
    host = hostname.strip().lower().rstrip(".")
    if not host:
        return False
    return any(host == entry or host.endswith(f".{entry}") for entry in allowed)


def absolute_http_host(value: str | None) -> str | None:
    """Hostname of an absolute http(s) URL, ``None`` for anything else."""
    if not isinstance(value, str):
        return None
    parts = _split(value.strip())
    if parts is None or parts.scheme.lower() not in ("http", "https"):
        return None
    return parts.hostname.lower()


def embed_family(value: str | None) -> str | None:
    text = (value or "").lower()
    for family, needles in EMBED_FAMILIES:
        if any(needle in text for needle in needles):
            return family
    return None


def is_direct_download_url(value: str | None) -> bool:
    if not isinstance(value, str) or not value:
        return False
    parts = _split(value)
    if parts is None:
        return False
    if parts.path.lower().endswith(DIRECT_DOWNLOAD_EXTENSIONS):
        return True
    return any(key == "file" for key, _ in parse_qsl(parts.query, keep_blank_values=True))


def normalize_url(value: str | None) -> str:
    """Loose key used to dedupe media: https, lowercase host, no trailing slash."""
    raw = value if isinstance(value, str) else ""
    replaced = re.sub(r"^http://", "https://", raw, flags=re.IGNORECASE)
    parts = _split(replaced)
    if parts is None or not parts.scheme:
        return raw.strip()
    netloc = parts.netloc.rsplit("@", 1)
    netloc[-1] = netloc[-1].lower()
    return urlunsplit(
        (parts.scheme, "@".join(netloc), parts.path.rstrip("/"), parts.query, parts.fragment)
    )


def normalize_url_text(value: str | None) -> str:
    """Compare a URL against link text that may omit the scheme or slash."""
    if not isinstance(value, str):
        return ""
    trimmed = value.strip()
    if not trimmed:
        return ""

    parts = _split(trimmed) if _SCHEME.match(trimmed) else None
    if parts is not None:
        path = parts.path.rstrip("/")
        query = f"?{parts.query}" if parts.query else ""
        fragment = f"#{parts.fragment}" if parts.fragment else ""
        return f"{parts.hostname.lower()}{path}{query}{fragment}"

    stripped = re.sub(r"^https?://", "", trimmed, flags=re.IGNORECASE)
    return stripped.rstrip("/").lower()


def normalize_media_src(src: str | None, static_proxy: str) -> str:
    """Make a media reference absolute or route it through the static proxy."""
    if not src:
        return ""
    trimmed = src.strip()
    if not trimmed:
        return ""

    if re.match(r"^(?:data:|blob:|https?:)", trimmed):
        return trimmed
    if trimmed.startswith("//"):
        return f"https:{trimmed}"

    proxy = static_proxy if static_proxy.endswith("/") else f"{static_proxy}/"
    if trimmed.startswith(proxy):
        return trimmed
    return f"{proxy}{trimmed.removeprefix('/')}"


def normalize_absolute_url(value: str | None) -> str | None:
    """Serialize an absolute URL in its standard form, ``None`` if it is not one."""
    if not isinstance(value, str):
        return None
    parts = _split(value.strip())
    if parts is None or not parts.scheme:
        return None

    netloc = parts.netloc.rsplit("@", 1)
    netloc[-1] = netloc[-1].lower()
    path = parts.path or "/"
    return urlunsplit(
        (parts.scheme.lower(), "@".join(netloc), path, parts.query, parts.fragment)
    )
