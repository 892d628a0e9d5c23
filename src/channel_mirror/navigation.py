import math
from collections.abc import Sequence

from channel_mirror.cursor import to_numeric_id
from channel_mirror.models import AdjacentPost, Post


def _numeric(post: Post | None) -> float:
    return to_numeric_id(post.id if post is not None else None)


def pick_adjacent(
    posts: Sequence[Post],
    navigate_from: str | None,
    direction: str | None,
) -> AdjacentPost:
    """Pick the single post next to ``navigate_from`` in ``direction``.

    ``posts`` must be sorted ascending by numeric id. An unparsable pivot
    starts from the newest end when going older and from the oldest end
    when going newer. The boundary flags are computed from the picked
    post's own id, so they describe where the reader can go next.
    """
    if direction not in ("newer", "older"):
        return AdjacentPost()

    pivot = to_numeric_id(navigate_from)
    if math.isnan(pivot):
        pivot = math.inf if direction == "older" else -math.inf

    picked: Post | None = None
    if direction == "newer":
        for post in posts:
            value = _numeric(post)
            if not math.isnan(value) and value > pivot:
                picked = post
                break
    else:
        for post in reversed(posts):
            value = _numeric(post)
            if not math.isnan(value) and value < pivot:
                picked = post
                break

    if picked is None:
        return AdjacentPost()

    picked_id = _numeric(picked)
    ids = [value for value in map(_numeric, posts) if not math.isnan(value)]
    return AdjacentPost(
        picked_post=picked,
        has_newer=any(value > picked_id for value in ids),
        has_older=any(value < picked_id for value in ids),
    )


def listing_bounds(
    filtered: Sequence[Post], returned: Sequence[Post]
) -> tuple[bool, bool]:
    """Return ``(has_newer, has_older)`` for a tail slice of ``filtered``."""
    if not returned:
        return False, False

    newest = _numeric(returned[-1])
    oldest = _numeric(returned[0])
    ids = [value for value in map(_numeric, filtered) if not math.isnan(value)]
    has_newer = not math.isnan(newest) and any(value > newest for value in ids)
    has_older = not math.isnan(oldest) and any(value < oldest for value in ids)
    return has_newer, has_older
