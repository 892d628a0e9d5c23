from channel_mirror.models import Post
from channel_mirror.navigation import listing_bounds, pick_adjacent


def _posts(*ids: int) -> list[Post]:
    return [Post(id=str(i), content=f"<p>{i}</p>") for i in ids]


class TestPickAdjacent:
    def test_newer_picks_first_post_above_pivot(self) -> None:
        result = pick_adjacent(_posts(100, 103, 110), "101", "newer")
        assert result.picked_post is not None
        assert result.picked_post.id == "103"
        assert result.has_newer is True
        assert result.has_older is True

    def test_older_from_beyond_the_newest_post(self) -> None:
        result = pick_adjacent(_posts(100, 103, 110), "200", "older")
        assert result.picked_post is not None
        assert result.picked_post.id == "110"
        assert result.has_newer is False
        assert result.has_older is True

    def test_older_picks_last_post_below_pivot(self) -> None:
        result = pick_adjacent(_posts(100, 103, 110), "103", "older")
        assert result.picked_post.id == "100"
        assert result.has_older is False
        assert result.has_newer is True

    def test_nothing_qualifies(self) -> None:
        result = pick_adjacent(_posts(100, 103), "103", "newer")
        assert result.picked_post is None
        assert result.has_newer is False
        assert result.has_older is False

    def test_unparsable_pivot_starts_from_the_matching_end(self) -> None:
        posts = _posts(100, 103, 110)
        assert pick_adjacent(posts, "abc", "older").picked_post.id == "110"
        assert pick_adjacent(posts, None, "newer").picked_post.id == "100"

    def test_invalid_direction(self) -> None:
        result = pick_adjacent(_posts(1, 2), "1", "sideways")
        assert result.picked_post is None


class TestListingBounds:
    def test_tail_slice_has_only_older(self) -> None:
        filtered = _posts(1, 2, 3, 4, 5)
        assert listing_bounds(filtered, filtered[-2:]) == (False, True)

    def test_middle_slice_has_both(self) -> None:
        filtered = _posts(1, 2, 3, 4, 5)
        assert listing_bounds(filtered, filtered[1:3]) == (True, True)

    def test_empty_slice(self) -> None:
        assert listing_bounds(_posts(1, 2), []) == (False, False)
