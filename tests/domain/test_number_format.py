"""Tests for sequence number formatting and the year-reset rule."""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from membership_kernel.domain.number_format import (
    format_number,
    has_year_placeholder,
    needs_year_reset,
    next_counter_value,
    resolve_prefix,
)


class TestFormatNumber:
    def test_pads_to_length(self):
        assert format_number("M-", 42, 4, 2026) == "M-0042"

    def test_substitutes_year(self):
        assert format_number("TSV-{YYYY}-", 1, 3, 2026) == "TSV-2026-001"

    def test_empty_prefix(self):
        assert format_number("", 7, 4, 2026) == "0007"

    def test_does_not_truncate_wide_values(self):
        assert format_number("M-", 123456, 4, 2026) == "M-123456"

    def test_zero_padding(self):
        assert format_number("M-", 5, 0, 2026) == "M-5"

    def test_negative_value_rejected(self):
        with pytest.raises(ValueError):
            format_number("M-", -1, 4, 2026)

    @given(value=st.integers(min_value=0, max_value=10**9), pad=st.integers(0, 12))
    def test_digits_round_trip(self, value, pad):
        rendered = format_number("X", value, pad, 2026)

        assert rendered.startswith("X")
        assert int(rendered[1:]) == value
        assert len(rendered) - 1 >= pad


class TestYearPlaceholder:
    def test_detection(self):
        assert has_year_placeholder("TSV-{YYYY}-")
        assert not has_year_placeholder("M-")
        assert not has_year_placeholder(None)

    def test_resolve_pads_year(self):
        assert resolve_prefix("{YYYY}/", 987) == "0987/"


class TestYearReset:
    def test_resets_in_new_year(self):
        assert needs_year_reset("TSV-{YYYY}-", True, 17, 2025, 2026)
        assert next_counter_value("TSV-{YYYY}-", True, 17, 2025, 2026) == 1

    def test_same_year_continues(self):
        assert next_counter_value("TSV-{YYYY}-", True, 17, 2026, 2026) == 18

    def test_disabled_reset_continues(self):
        assert next_counter_value("TSV-{YYYY}-", False, 17, 2025, 2026) == 18

    def test_prefix_without_year_never_resets(self):
        assert not needs_year_reset("M-", True, 17, 2025, 2026)

    def test_unused_counter_does_not_reset(self):
        assert not needs_year_reset("TSV-{YYYY}-", True, 0, 2025, 2026)
        assert next_counter_value("TSV-{YYYY}-", True, 0, 2025, 2026) == 1
