"""
Table grid validation.

A table's declared cells must tile its rows x cols grid exactly. The same
grid-owner computation is used by the validator (strict) and by the DOCX
writer (lenient), so both always agree on which cell owns which position.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..config import ErrorCode
from .ir import TableBlock, TableCell

logger = logging.getLogger(__name__)

Position = Tuple[int, int]


@dataclass
class Placement:
    """A declared cell placed on the grid with its effective span."""
    cell: TableCell
    row: int
    col: int
    rowspan: int
    colspan: int


@dataclass
class GridOwners:
    """Owner matrix of a table grid."""
    n_rows: int
    n_cols: int
    owner: List[List[Optional[Position]]]
    placements: Dict[Position, Placement] = field(default_factory=dict)
    error_code: Optional[str] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_code is None

    def unowned(self) -> List[Position]:
        return [
            (r, c)
            for r in range(self.n_rows)
            for c in range(self.n_cols)
            if self.owner[r][c] is None
        ]


@dataclass
class ValidationResult:
    is_valid: bool
    error_code: Optional[str] = None
    message: Optional[str] = None


def compute_grid_owners(table: TableBlock, strict: bool = True) -> GridOwners:
    """
    Place every declared cell on the grid, row by row, left to right.

    Within a row a column cursor skips positions already claimed by row
    spans from above, then the cell claims rowspan x colspan positions.

    Args:
        table: Table IR with rows of declared cells
        strict: If True, stop at the first conflict and report it. If False,
            clip spans to the grid, shrink spans that would overlap an
            owned position to a single cell, and drop cells that no longer
            fit in their row.

    Returns:
        GridOwners with the owner matrix and, in strict mode, any error
    """
    n_rows = table.n_rows
    n_cols = table.n_cols
    owner: List[List[Optional[Position]]] = [[None] * max(n_cols, 0) for _ in range(n_rows)]
    grid = GridOwners(n_rows=n_rows, n_cols=n_cols, owner=owner)

    if n_cols < 1 or n_rows < 1:
        grid.error_code = ErrorCode.TABLE_GRID_INSUFFICIENT_LINES
        grid.message = "Table has fewer than one row or column."
        return grid

    for r, row in enumerate(table.rows):
        cursor = 0
        for cell in row.cells:
            rowspan = max(1, cell.rowspan)
            colspan = max(1, cell.colspan)
            while cursor < n_cols and owner[r][cursor] is not None:
                cursor += 1

            if cursor >= n_cols:
                if strict:
                    grid.error_code = ErrorCode.TABLE_GRID_CONFLICT
                    grid.message = f"Row {r} has more cells than columns."
                    return grid
                break

            if r + rowspan > n_rows or cursor + colspan > n_cols:
                if strict:
                    grid.error_code = ErrorCode.TABLE_GRID_CONFLICT
                    grid.message = f"Merged cell at row {r}, column {cursor} exceeds the table bounds."
                    return grid
                rowspan = min(rowspan, n_rows - r)
                colspan = min(colspan, n_cols - cursor)

            claimed = [
                (rr, cc)
                for rr in range(r, r + rowspan)
                for cc in range(cursor, cursor + colspan)
            ]
            if any(owner[rr][cc] is not None for rr, cc in claimed):
                if strict:
                    grid.error_code = ErrorCode.TABLE_GRID_CONFLICT
                    grid.message = f"Merged cell at row {r}, column {cursor} overlaps another cell."
                    return grid
                rowspan, colspan = 1, 1
                claimed = [(r, cursor)]

            for rr, cc in claimed:
                owner[rr][cc] = (r, cursor)
            grid.placements[(r, cursor)] = Placement(cell, r, cursor, rowspan, colspan)
            cursor += colspan

    if strict:
        missing = grid.unowned()
        if missing:
            grid.error_code = ErrorCode.TABLE_GRID_CONFLICT
            grid.message = f"Grid position {missing[0]} is not covered by any cell."

    return grid


def validate_table(table: TableBlock) -> ValidationResult:
    """Check that a table's declared cells tile its grid exactly."""
    grid = compute_grid_owners(table, strict=True)
    if not grid.ok:
        logger.debug(f"Table grid rejected: {grid.error_code} {grid.message}")
        return ValidationResult(is_valid=False, error_code=grid.error_code, message=grid.message)
    return ValidationResult(is_valid=True)
