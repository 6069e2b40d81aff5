"""
Text post-processing for OCR output.
"""

import unicodedata

_KEPT_CONTROLS = {"\n", "\t", "\r"}


def clean_text(text: str) -> str:
    """Remove control characters, keeping newlines, tabs and carriage returns."""
    if not text:
        return ""
    return "".join(
        ch for ch in text
        if ch in _KEPT_CONTROLS or unicodedata.category(ch) != "Cc"
    )


def replacement_char_rate(text: str) -> float:
    """Fraction of characters that are U+FFFD (undecodable glyphs)."""
    if not text:
        return 0.0
    return text.count("\ufffd") / len(text)
