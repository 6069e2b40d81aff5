"""
Page range parsing.

Turns a free-form selection such as ``"1-3, 5"`` into a sorted, deduplicated
list of 1-based page numbers. Recoverable problems (full-width commas,
reversed ranges, out-of-range pages) become warnings; malformed input is an
error and yields no pages.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional

_DIGITS = re.compile(r"^\d+$")


@dataclass
class PageRangeResult:
    """Result of parsing a page selection."""
    pages: List[int] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def has_error(self) -> bool:
        return self.error is not None


def _parse_int(token: str) -> Optional[int]:
    token = token.strip()
    if not _DIGITS.match(token):
        return None
    return int(token)


def parse_page_range(text: Optional[str], total_pages: int) -> PageRangeResult:
    """
    Parse a page selection expression.

    Args:
        text: Selection like ``"1,3,5-7"``; empty or whitespace means all pages
        total_pages: Number of pages in the document (must be > 0)

    Returns:
        PageRangeResult with pages, warnings and an optional error message
    """
    result = PageRangeResult()
    if total_pages <= 0:
        result.error = "total_pages must be positive"
        return result

    normalized = (text or "").strip()
    if not normalized:
        result.pages = list(range(1, total_pages + 1))
        return result

    if "，" in normalized:
        normalized = normalized.replace("，", ",")
        result.warnings.append("Replaced full-width commas with ASCII commas.")

    pages = set()
    for raw_token in normalized.split(","):
        token = raw_token.strip()
        if not token:
            result.error = "Page range contains an empty segment."
            return result

        if "-" in token:
            parts = token.split("-")
            start = _parse_int(parts[0]) if len(parts) == 2 else None
            end = _parse_int(parts[1]) if len(parts) == 2 else None
            if start is None or end is None:
                result.error = f"Malformed page range: {token!r}."
                return result

            if start > end:
                result.warnings.append(
                    f"Range {parts[0].strip()}-{parts[1].strip()} corrected to {end}-{start}."
                )
                start, end = end, start

            for page in range(start, end + 1):
                if page < 1 or page > total_pages:
                    result.warnings.append(f"Ignored out-of-range page: {page}.")
                    continue
                pages.add(page)
        else:
            page = _parse_int(token)
            if page is None:
                result.error = f"Malformed page number: {token!r}."
                return result

            if page < 1 or page > total_pages:
                result.warnings.append(f"Ignored out-of-range page: {page}.")
                continue
            pages.add(page)

    if not pages:
        result.error = "Page range is empty or entirely out of range."
        return result

    result.pages = sorted(pages)
    return result
