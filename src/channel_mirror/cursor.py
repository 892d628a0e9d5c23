import math
import re
from typing import Any

MAX_SAFE_INTEGER = 2**53 - 1

_DIGITS = re.compile(r"[0-9]+")


def normalize_cursor(raw: Any) -> str | None:
    """Return the canonical decimal form of a numeric cursor, or ``None``.

    Only strings made entirely of ASCII digits (surrounding whitespace
    allowed) that fit a safe integer are accepted. ``"007"`` becomes ``"7"``.
    """
    if not isinstance(raw, str):
        return None

    trimmed = raw.strip()
    if not trimmed or not _DIGITS.fullmatch(trimmed):
        return None

    value = int(trimmed)
    if value > MAX_SAFE_INTEGER:
        return None
    return str(value)


def to_numeric_id(value: Any) -> float:
    """Parse a post id leniently, returning ``nan`` when it is not a number.

    Leading digits win (``"12abc"`` is 12), matching how ids are compared
    across fetched windows.
    """
    if value is None or isinstance(value, bool):
        return math.nan
    if isinstance(value, int):
        return float(value)
    if isinstance(value, float):
        return value if math.isfinite(value) else math.nan

    match = re.match(r"\s*([+-]?[0-9]+)", str(value))
    if not match:
        return math.nan
    return float(int(match.group(1)))
