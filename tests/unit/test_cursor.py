import math

import pytest

from channel_mirror.cursor import MAX_SAFE_INTEGER, normalize_cursor, to_numeric_id


class TestNormalizeCursor:
    @pytest.mark.parametrize("raw", ["0", "7", "42", "1000", str(MAX_SAFE_INTEGER)])
    def test_digit_strings_round_trip_through_int(self, raw: str) -> None:
        assert normalize_cursor(raw) == str(int(raw))

    def test_leading_zeros_are_dropped(self) -> None:
        assert normalize_cursor("007") == "7"

    def test_surrounding_whitespace_is_ignored(self) -> None:
        assert normalize_cursor("  15 ") == "15"

    @pytest.mark.parametrize(
        "raw",
        ["", "   ", "abc", "12a", "-5", "1.5", "+3", str(MAX_SAFE_INTEGER + 1), "١٢"],
    )
    def test_rejects_malformed_strings(self, raw: str) -> None:
        assert normalize_cursor(raw) is None

    @pytest.mark.parametrize("raw", [None, 5, 5.0, ["5"], True])
    def test_rejects_non_strings(self, raw: object) -> None:
        assert normalize_cursor(raw) is None


class TestToNumericId:
    def test_parses_plain_ids(self) -> None:
        assert to_numeric_id("103") == 103.0

    def test_uses_leading_digits(self) -> None:
        assert to_numeric_id("12abc") == 12.0

    def test_accepts_ints(self) -> None:
        assert to_numeric_id(9) == 9.0

    @pytest.mark.parametrize("value", [None, "", "abc", True, float("inf")])
    def test_unparsable_values_are_nan(self, value: object) -> None:
        assert math.isnan(to_numeric_id(value))
