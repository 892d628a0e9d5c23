from collections.abc import Mapping
from typing import Any


def _normalize_key(name: str) -> str:
    return name.replace("_", "").upper()


def _normalize_value(value: Any) -> Any:
    if isinstance(value, str):
        trimmed = value.strip()
        return trimmed or None
    return value


def _find(source: Mapping[str, Any] | None, name: str) -> Any:
    if not source:
        return None

    if name in source:
        return _normalize_value(source[name])

    wanted = _normalize_key(name)
    for key, value in source.items():
        if not isinstance(key, str):
            continue
        if _normalize_key(key) == wanted:
            return _normalize_value(value)
    return None


def get_env(name: str, *sources: Mapping[str, Any] | None) -> Any:
    """Look ``name`` up in each source in turn, ignoring case and underscores.

    ``STATIC_PROXY``, ``static_proxy`` and ``StaticProxy`` all resolve to the
    same entry. Blank strings count as unset so a later source can fill in.
    """
    for source in sources:
        value = _find(source, name)
        if value is not None:
            return value
    return None
