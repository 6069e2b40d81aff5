"""
Tests for page range parsing.
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from pdf2word.utils.page_range import parse_page_range


class TestParsePageRange:
    """Test page selection parsing."""

    def test_empty_selects_all_pages(self):
        result = parse_page_range("", 4)

        assert result.pages == [1, 2, 3, 4]
        assert not result.has_error
        assert result.warnings == []

    def test_whitespace_selects_all_pages(self):
        assert parse_page_range("   ", 2).pages == [1, 2]
        assert parse_page_range(None, 2).pages == [1, 2]

    def test_mixed_ranges_sorted_and_deduplicated(self):
        """Overlapping segments collapse to a sorted unique list."""
        result = parse_page_range("5, 1-3, 2", 10)

        assert result.pages == [1, 2, 3, 5]
        assert not result.has_error

    def test_full_width_comma_is_normalized(self):
        result = parse_page_range("1，3", 5)

        assert result.pages == [1, 3]
        assert len(result.warnings) == 1

    def test_reversed_range_is_swapped(self):
        result = parse_page_range("5-3", 10)

        assert result.pages == [3, 4, 5]
        assert any("corrected" in w for w in result.warnings)

    def test_out_of_range_pages_are_dropped(self):
        result = parse_page_range("2-6", 4)

        assert result.pages == [2, 3, 4]
        assert len(result.warnings) == 2

    def test_entirely_out_of_range_is_error(self):
        result = parse_page_range("7-9", 4)

        assert result.has_error
        assert result.pages == []

    def test_zero_page_is_out_of_range(self):
        result = parse_page_range("0,1", 3)

        assert result.pages == [1]
        assert result.warnings

    def test_malformed_inputs(self):
        """Non-numeric or structurally broken input yields no pages."""
        for text in ["abc", "1-", "-3", "1-2-3", "1,,2", "1,", "2.5"]:
            result = parse_page_range(text, 10)
            assert result.has_error, text
            assert result.pages == [], text

    def test_non_positive_total_is_error(self):
        result = parse_page_range("1", 0)

        assert result.has_error
