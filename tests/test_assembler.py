"""
Tests for page IR assembly.
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from pdf2word.utils.assembler import (
    ParagraphText, Segment, TABLE_PRODUCER,
    build_vertical_segments, distribute_paragraphs, place_paragraphs,
    sort_blocks, build_table_ir, build_page_ir,
)
from pdf2word.utils.ir import BBox, CropInfo, ParagraphBlock, TableBlock, ParagraphRole
from pdf2word.utils.tables import CellBox, TableDetection


def _detection():
    """2x2 grid whose first row is one merged cell."""
    return TableDetection(
        bbox=BBox(50, 400, 500, 200),
        image_color=None,
        image_binary=None,
        col_lines=[0, 250, 499],
        row_lines=[0, 100, 199],
        cells=[
            CellBox("p1_t00_r1_c1", BBox(252, 102, 245, 95), 1, 1),
            CellBox("p1_t00_r0_c0", BBox(2, 2, 495, 95), 0, 0, colspan=2),
            CellBox("p1_t00_r1_c0", BBox(2, 102, 245, 95), 1, 0),
        ],
        debug_id="t00",
    )


class TestSegments:
    """Test table-free band computation."""

    def test_no_tables(self):
        assert build_vertical_segments(1000, []) == [Segment(0, 1000)]

    def test_bands_around_tables(self):
        segments = build_vertical_segments(
            1000, [BBox(0, 600, 10, 100), BBox(0, 200, 10, 100)]
        )

        assert segments == [Segment(0, 200), Segment(300, 600), Segment(700, 1000)]

    def test_overlapping_tables(self):
        segments = build_vertical_segments(
            1000, [BBox(0, 100, 10, 300), BBox(0, 200, 10, 100)]
        )

        assert segments == [Segment(0, 100), Segment(400, 1000)]

    def test_full_page_table(self):
        assert build_vertical_segments(500, [BBox(0, 0, 10, 500)]) == [Segment(0, 500)]

    def test_height_is_at_least_one(self):
        assert Segment(10, 10).height == 1


class TestDistribution:

    def test_proportional(self):
        assert distribute_paragraphs(4, [300, 100]) == [3, 1]

    def test_sum_is_preserved(self):
        for total in range(0, 12):
            for heights in ([1, 1, 1], [10, 3, 7, 1], [5]):
                assert sum(distribute_paragraphs(total, heights)) == total

    def test_empty_inputs(self):
        assert distribute_paragraphs(3, []) == []
        assert distribute_paragraphs(0, [5, 5]) == [0, 0]


class TestPlaceParagraphs:

    def test_paragraphs_fill_single_segment(self):
        blocks = place_paragraphs(
            [ParagraphText("a"), ParagraphText("b", "TITLE")], 800, 1000, []
        )

        assert [b.text for b in blocks] == ["a", "b"]
        assert blocks[0].bbox == BBox(0, 0, 800, 500)
        assert blocks[1].bbox == BBox(0, 500, 800, 500)
        assert blocks[1].role == ParagraphRole.TITLE

    def test_unknown_role_becomes_body(self):
        blocks = place_paragraphs([ParagraphText("x", "caption")], 100, 100, [])

        assert blocks[0].role == ParagraphRole.BODY

    def test_paragraphs_avoid_tables(self):
        table = BBox(0, 400, 800, 200)
        paragraphs = [ParagraphText(str(i)) for i in range(4)]

        blocks = place_paragraphs(paragraphs, 800, 1000, [table])

        assert len(blocks) == 4
        for block in blocks:
            assert not block.bbox.intersects(table)


class TestSortBlocks:

    def test_orders_by_top_then_left(self):
        a = ParagraphBlock("a", bbox=BBox(100, 50, 10, 10))
        b = ParagraphBlock("b", bbox=BBox(0, 50, 10, 10))
        c = ParagraphBlock("c", bbox=BBox(0, 10, 10, 10))

        assert [x.text for x in sort_blocks([a, b, c], 100, 100)] == ["c", "b", "a"]

    def test_missing_bbox_gets_full_page(self):
        block = ParagraphBlock("x")

        sort_blocks([block], 640, 480)

        assert block.bbox == BBox(0, 0, 640, 480)


class TestBuildTableIr:

    def test_rows_follow_anchors(self):
        table = build_table_ir(_detection(), {"p1_t00_r0_c0": "Header", "p1_t00_r1_c1": "B"}, attempt=2)

        assert table.n_cols == 2
        assert table.n_rows == 2
        assert [c.text for c in table.rows[0].cells] == ["Header"]
        assert table.rows[0].cells[0].colspan == 2
        # Sorted left to right, missing ids get empty text
        assert [c.text for c in table.rows[1].cells] == ["", "B"]
        assert table.detected_cell_count == 3
        assert table.source.attempt == 2
        assert table.source.debug_id == "t00"
        assert table.source.producer == TABLE_PRODUCER


class TestBuildPageIr:

    def test_reading_order(self):
        table = build_table_ir(_detection())
        paragraphs = [ParagraphText("Title", "title"), ParagraphText("Body"), ParagraphText("After")]

        page = build_page_ir(4, (600, 1100), (600, 1000), CropInfo(), paragraphs, [table])

        assert page.page_number == 4
        assert page.width_px == 600
        assert page.height_px == 1000
        tops = [b.bbox.top for b in page.blocks]
        assert tops == sorted(tops)
        kinds = [type(b) for b in page.blocks]
        assert kinds.count(TableBlock) == 1
        assert kinds.count(ParagraphBlock) == 3

    def test_empty_page(self):
        page = build_page_ir(1, (100, 100), (100, 100), CropInfo(), [], [])

        assert page.blocks == []
