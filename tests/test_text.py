"""
Tests for OCR text post-processing.
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from pdf2word.utils.text import clean_text, replacement_char_rate


class TestCleanText:
    """Test control character removal."""

    def test_keeps_line_structure(self):
        assert clean_text("a\tb\nc\r\nd") == "a\tb\nc\r\nd"

    def test_removes_control_characters(self):
        assert clean_text("ab\x00c\x07d\x1b") == "abcd"

    def test_keeps_unicode_text(self):
        assert clean_text("表格 Café ½") == "表格 Café ½"

    def test_empty_input(self):
        assert clean_text("") == ""
        assert clean_text(None) == ""

    def test_idempotent(self):
        samples = ["ab\x00c\x07d", "a\tb\r\nc", "表格\x1b Café", "\x7f\x85​", ""]
        for text in samples:
            once = clean_text(text)
            assert clean_text(once) == once


class TestReplacementCharRate:

    def test_rate(self):
        assert replacement_char_rate("ab\ufffd\ufffd") == 0.5

    def test_empty_text(self):
        assert replacement_char_rate("") == 0.0
