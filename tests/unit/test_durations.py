"""Tests for duration parsing."""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from alertpipe.core.durations import format_duration, parse_duration


class TestParseDuration:
    """Tests for parse_duration()."""

    @pytest.mark.core
    @pytest.mark.tier(0)
    @pytest.mark.parametrize(
        ("text", "seconds"),
        [
            ("0s", 0.0),
            ("30s", 30.0),
            ("5m", 300.0),
            ("1h", 3600.0),
            ("1h30m", 5400.0),
            ("250ms", 0.25),
            ("2d", 172800.0),
            ("1w", 604800.0),
            (" 15s ", 15.0),
            (10, 10.0),
            (1.5, 1.5),
        ],
    )
    def test_valid_durations(self, text: str | float, seconds: float) -> None:
        assert parse_duration(text) == pytest.approx(seconds)

    @pytest.mark.core
    @pytest.mark.tier(0)
    @pytest.mark.parametrize("text", ["", "5", "m5", "5 m", "5x", "-5s", True, -1])
    def test_invalid_durations(self, text: str | int) -> None:
        with pytest.raises(ValueError):
            parse_duration(text)

    @pytest.mark.core
    @pytest.mark.tier(0)
    @given(st.integers(min_value=0, max_value=10 * 86400))
    def test_format_then_parse_is_identity(self, seconds: int) -> None:
        assert parse_duration(format_duration(seconds)) == seconds
