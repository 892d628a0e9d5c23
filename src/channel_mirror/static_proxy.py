"""Target policy for the static media proxy.

Rewritten media URLs look like ``{static_proxy}https://cdn.example/file``.
The serving route turns the remainder back into an absolute URL, proxies it
when the host is a Telegram media host and redirects to it otherwise.
"""

import re
from typing import Literal

from channel_mirror.urls import absolute_http_host, host_matches

PROXY_ALLOWED_HOSTS = (
    "telegram-cdn.org",
    "cdn-telegram.org",
    "telegra.ph",
    "telesco.pe",
    "yandex.ru",
    "t.me",
    "telegram.org",
    "telegram.me",
    "telegram.dog",
)

ProxyAction = Literal["proxy", "redirect"]

# Path normalization upstream of the route may collapse "https://" to "https:/".
_COLLAPSED_SCHEME = re.compile(r"^(https?):/+", re.IGNORECASE)


def proxy_target(path: str, query: str = "") -> str | None:
    """Absolute URL encoded in a proxy path, ``None`` if it is not http(s)."""
    raw = _COLLAPSED_SCHEME.sub(r"\1://", path.lstrip("/"))
    query = query.lstrip("?")
    target = f"{raw}?{query}" if query else raw
    return target if absolute_http_host(target) else None


def is_proxy_target_allowed(url: str | None) -> bool:
    return host_matches(absolute_http_host(url), PROXY_ALLOWED_HOSTS)


def proxy_action(path: str, query: str = "") -> tuple[ProxyAction, str] | None:
    target = proxy_target(path, query)
    if target is None:
        return None
    return ("proxy" if is_proxy_target_allowed(target) else "redirect"), target
