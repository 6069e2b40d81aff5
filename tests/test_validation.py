"""
Tests for table grid validation.
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from pdf2word.config import ErrorCode
from pdf2word.utils.ir import BBox, TableBlock, TableCell, TableRow
from pdf2word.utils.validation import compute_grid_owners, validate_table


def _table(n_cols, rows):
    """Build a table from rows of (rowspan, colspan) tuples."""
    return TableBlock(
        table_bbox=BBox(0, 0, 100, 100),
        n_cols=n_cols,
        rows=[
            TableRow(cells=[TableCell(text=f"{r}{i}", rowspan=rs, colspan=cs)
                            for i, (rs, cs) in enumerate(row)])
            for r, row in enumerate(rows)
        ],
    )


class TestValidateTable:
    """Test strict grid validation."""

    def test_plain_grid(self):
        table = _table(2, [[(1, 1), (1, 1)], [(1, 1), (1, 1)]])

        assert validate_table(table).is_valid

    def test_rowspan_skips_claimed_position(self):
        """The second row declares one cell; column 0 is claimed from above."""
        table = _table(2, [[(2, 1), (1, 1)], [(1, 1)]])

        assert validate_table(table).is_valid

        grid = compute_grid_owners(table)
        assert grid.owner[1][0] == (0, 0)
        assert grid.owner[1][1] == (1, 1)

    def test_colspan(self):
        table = _table(3, [[(1, 2), (1, 1)], [(1, 1), (1, 1), (1, 1)]])

        assert validate_table(table).is_valid

    def test_uncovered_position(self):
        table = _table(2, [[(1, 1), (1, 1)], [(1, 1)]])

        result = validate_table(table)

        assert not result.is_valid
        assert result.error_code == ErrorCode.TABLE_GRID_CONFLICT

    def test_too_many_cells_in_row(self):
        table = _table(2, [[(1, 1), (1, 1), (1, 1)]])

        result = validate_table(table)

        assert result.error_code == ErrorCode.TABLE_GRID_CONFLICT

    def test_span_exceeds_bounds(self):
        table = _table(2, [[(3, 1), (1, 1)], [(1, 1)]])

        assert validate_table(table).error_code == ErrorCode.TABLE_GRID_CONFLICT

    def test_overlapping_spans(self):
        """A colspan in row 1 runs into a rowspan from row 0."""
        table = _table(3, [[(1, 1), (2, 1), (1, 1)], [(1, 2), (1, 1)]])

        assert validate_table(table).error_code == ErrorCode.TABLE_GRID_CONFLICT

    def test_no_columns(self):
        table = _table(0, [[]])

        result = validate_table(table)

        assert result.error_code == ErrorCode.TABLE_GRID_INSUFFICIENT_LINES

    def test_no_rows(self):
        assert validate_table(_table(2, [])).error_code == ErrorCode.TABLE_GRID_INSUFFICIENT_LINES


class TestLenientGridOwners:
    """Lenient placement used by the DOCX writer."""

    def test_clips_span_to_bounds(self):
        grid = compute_grid_owners(_table(2, [[(1, 5)], [(1, 1), (1, 1)]]), strict=False)

        assert grid.ok
        assert grid.placements[(0, 0)].colspan == 2

    def test_overlap_shrinks_to_single_cell(self):
        table = _table(3, [[(1, 1), (2, 1), (1, 1)], [(1, 2), (1, 1)]])

        grid = compute_grid_owners(table, strict=False)

        placement = grid.placements[(1, 0)]
        assert (placement.rowspan, placement.colspan) == (1, 1)
        assert grid.owner[1][1] == (0, 1)

    def test_extra_cells_are_dropped(self):
        grid = compute_grid_owners(_table(1, [[(1, 1), (1, 1)]]), strict=False)

        assert list(grid.placements) == [(0, 0)]

    def test_gaps_are_left_unowned(self):
        grid = compute_grid_owners(_table(2, [[(1, 1)]]), strict=False)

        assert grid.ok
        assert grid.unowned() == [(0, 1)]
