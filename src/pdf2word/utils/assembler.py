"""
Page IR assembly.

Builds table IR from detected grids and places OCR paragraphs around the
tables of a page. Paragraph OCR carries no positions, so reading order is
synthesized: the page height is split into the vertical gaps between
tables and paragraphs are spread over those gaps in proportion to their
height.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Dict, Tuple

from .ir import (
    BBox, CropInfo, PageIr, ParagraphBlock, ParagraphRole, TableBlock,
    TableCell, TableRow, BlockSource, Block
)
from .tables import TableDetection

logger = logging.getLogger(__name__)

TABLE_PRODUCER = "OpenCvTable+GeminiCells"
PARAGRAPH_PRODUCER = "GeminiText"


@dataclass
class ParagraphText:
    """A recognized paragraph before placement."""
    text: str
    role: str = ParagraphRole.BODY


@dataclass(frozen=True)
class Segment:
    """A vertical band of the page free of tables."""
    top: int
    bottom: int

    @property
    def height(self) -> int:
        return max(1, self.bottom - self.top)


# ============================================================================
# Table IR
# ============================================================================

def build_table_ir(
    detection: TableDetection,
    texts: Optional[Dict[str, str]] = None,
    attempt: int = 1
) -> TableBlock:
    """
    Build the table IR of a detected grid.

    Args:
        detection: Detected table with cells anchored at (row, col)
        texts: Recognized text by cell id; missing ids get empty text
        attempt: OCR attempt that produced the texts

    Returns:
        TableBlock whose rows hold cells sorted left to right
    """
    texts = texts or {}
    rows = [TableRow() for _ in range(max(0, detection.n_rows))]

    for cell in detection.cells:
        if cell.row < 0 or cell.row >= len(rows):
            continue
        rows[cell.row].cells.append(TableCell(
            text=texts.get(cell.cell_id) or "",
            rowspan=max(1, cell.rowspan),
            colspan=max(1, cell.colspan),
            bbox=cell.bbox,
            cell_id=cell.cell_id,
        ))

    for row in rows:
        row.cells.sort(key=lambda c: c.bbox.x if c.bbox else 0)

    return TableBlock(
        table_bbox=detection.bbox,
        n_cols=detection.n_cols,
        rows=rows,
        engine="OpenCV",
        detected_cell_count=len(detection.cells),
        source=BlockSource(producer=TABLE_PRODUCER, attempt=attempt, debug_id=detection.debug_id),
    )


# ============================================================================
# Paragraph Placement
# ============================================================================

def build_vertical_segments(page_height: int, table_boxes: List[BBox]) -> List[Segment]:
    """Split the page height into the bands above, between and below tables."""
    if not table_boxes:
        return [Segment(0, page_height)]

    segments = []
    current_top = 0
    for box in sorted(table_boxes, key=lambda b: b.top):
        if box.top > current_top:
            segments.append(Segment(current_top, box.top))
        current_top = max(current_top, box.bottom)

    if current_top < page_height:
        segments.append(Segment(current_top, page_height))

    if not segments:
        segments.append(Segment(0, page_height))
    return segments


def distribute_paragraphs(total: int, heights: List[int]) -> List[int]:
    """
    Spread ``total`` paragraphs over segments proportionally to their heights.

    Each share is rounded, then the rounding remainder is corrected one unit
    at a time round-robin so the shares always sum to ``total``.
    """
    distribution = [0] * len(heights)
    if not heights or total == 0:
        return distribution

    total_height = sum(heights)
    if total_height <= 0:
        distribution[0] = total
        return distribution

    for i, height in enumerate(heights):
        distribution[i] = int(round(height / total_height * total))

    remaining = total - sum(distribution)
    idx = 0
    while remaining != 0:
        step = 1 if remaining > 0 else -1
        distribution[idx % len(distribution)] += step
        remaining -= step
        idx += 1

    return distribution


def _role_of(paragraph: ParagraphText) -> str:
    if (paragraph.role or "").lower() == ParagraphRole.TITLE:
        return ParagraphRole.TITLE
    return ParagraphRole.BODY


def place_paragraphs(
    paragraphs: List[ParagraphText],
    page_width: int,
    page_height: int,
    table_boxes: List[BBox],
    producer: str = PARAGRAPH_PRODUCER
) -> List[ParagraphBlock]:
    """Give each paragraph a synthetic bbox inside the table-free bands."""
    blocks: List[ParagraphBlock] = []
    if not paragraphs:
        return blocks

    segments = build_vertical_segments(page_height, table_boxes)
    distribution = distribute_paragraphs(len(paragraphs), [s.height for s in segments])

    index = 0
    for segment, count in zip(segments, distribution):
        if count <= 0:
            continue
        slice_height = max(1, segment.height // count)
        for i in range(count):
            if index >= len(paragraphs):
                break
            paragraph = paragraphs[index]
            index += 1
            blocks.append(ParagraphBlock(
                text=paragraph.text,
                role=_role_of(paragraph),
                bbox=BBox(0, segment.top + i * slice_height, page_width, max(1, slice_height)),
                source=BlockSource(producer=producer),
            ))

    # Leftovers are pinned to the bottom edge
    while index < len(paragraphs):
        paragraph = paragraphs[index]
        index += 1
        blocks.append(ParagraphBlock(
            text=paragraph.text,
            role=_role_of(paragraph),
            bbox=BBox(0, max(0, page_height - 1), page_width, 1),
            source=BlockSource(producer=producer),
        ))

    return blocks


def sort_blocks(blocks: List[Block], page_width: int, page_height: int) -> List[Block]:
    """Stable sort by (top, left, block type); blocks without a bbox get the full page."""
    for block in blocks:
        if isinstance(block, ParagraphBlock) and block.bbox is None:
            block.bbox = BBox(0, 0, page_width, page_height)

    return sorted(blocks, key=lambda b: (b.bbox.top, b.bbox.left, b.block_type))


# ============================================================================
# Page IR
# ============================================================================

def build_page_ir(
    page_number: int,
    original_size: Tuple[int, int],
    cropped_size: Tuple[int, int],
    crop_info: CropInfo,
    paragraphs: List[ParagraphText],
    tables: List[TableBlock],
    producer: str = PARAGRAPH_PRODUCER
) -> PageIr:
    """
    Assemble the IR of one page.

    Args:
        page_number: 1-based page number
        original_size: (w, h) of the rendered page
        cropped_size: (w, h) after header/footer cropping
        crop_info: Crop details
        paragraphs: Recognized paragraphs in reading order
        tables: Table blocks placed at their detected bboxes
        producer: Provenance recorded on paragraph blocks

    Returns:
        PageIr with blocks in reading order
    """
    width, height = cropped_size
    paragraph_blocks = place_paragraphs(
        paragraphs, width, height, [t.table_bbox for t in tables], producer
    )
    for table in tables:
        table.source.producer = TABLE_PRODUCER

    blocks: List[Block] = []
    blocks.extend(paragraph_blocks)
    blocks.extend(tables)

    page = PageIr(
        page_number=page_number,
        original_size=original_size,
        cropped_size=cropped_size,
        crop=crop_info,
        blocks=sort_blocks(blocks, width, height),
    )
    logger.debug(
        f"Page {page_number}: assembled {len(paragraph_blocks)} paragraph(s), {len(tables)} table(s)"
    )
    return page
