"""
Table structure detection for the conversion pipeline.

Provides:
- Table bounding box detection from ruling lines
- Row/column line coordinates by projection and clustering
- Cell segmentation with row/column spans
- Masking of table regions before body-text OCR
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Iterable
import numpy as np

from ..config import TableDetectConfig
from .ir import BBox
from .images import PageImageBundle, to_grayscale

logger = logging.getLogger(__name__)


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class CellBox:
    """A grid-reconstructed cell in table image coordinates."""
    cell_id: str
    bbox: BBox
    row: int
    col: int
    rowspan: int = 1
    colspan: int = 1


@dataclass
class TableDetection:
    """One detected table with its cropped images and reconstructed grid."""
    bbox: BBox  # in page coordinates
    image_color: Optional[np.ndarray]
    image_binary: Optional[np.ndarray]
    col_lines: List[int]
    row_lines: List[int]
    cells: List[CellBox] = field(default_factory=list)
    debug_id: str = ""

    @property
    def n_cols(self) -> int:
        return len(self.col_lines) - 1

    @property
    def n_rows(self) -> int:
        return len(self.row_lines) - 1

    def release(self):
        self.image_color = None
        self.image_binary = None


# ============================================================================
# Geometry Helpers
# ============================================================================

def boxes_are_close(a: BBox, b: BBox, gap: int) -> bool:
    """True when both the horizontal and vertical gaps are within ``gap``."""
    horizontal_gap = max(0, max(a.left - b.right, b.left - a.right))
    vertical_gap = max(0, max(a.top - b.bottom, b.top - a.bottom))
    return horizontal_gap <= gap and vertical_gap <= gap


def merge_bboxes(boxes: List[BBox], gap: int) -> List[BBox]:
    """Merge close boxes transitively until stable; sorted top to bottom."""
    merged = list(boxes)
    changed = True
    while changed:
        changed = False
        for i in range(len(merged)):
            for j in range(i + 1, len(merged)):
                if boxes_are_close(merged[i], merged[j], gap):
                    a, b = merged[i], merged[j]
                    merged[i] = BBox.from_bounds(
                        min(a.left, b.left), min(a.top, b.top),
                        max(a.right, b.right), max(a.bottom, b.bottom)
                    )
                    del merged[j]
                    changed = True
                    break
            if changed:
                break

    return sorted(merged, key=lambda b: b.top)


def cluster_indices(indices: List[int], eps: int) -> List[int]:
    """Collapse runs of indices no more than ``eps`` apart into their mean."""
    if not indices:
        return []

    indices = sorted(indices)
    clusters = []
    total = indices[0]
    count = 1
    for prev, cur in zip(indices, indices[1:]):
        if cur - prev <= eps:
            total += cur
            count += 1
        else:
            clusters.append(total // count)
            total = cur
            count = 1
    clusters.append(total // count)
    return clusters


def map_to_line_range(
    start: int,
    end: int,
    lines: List[int],
    tolerance: int
) -> Optional[Tuple[int, int]]:
    """
    Map a pixel extent onto the line intervals it falls within.

    Interval i spans ``[lines[i] - tolerance, lines[i+1] + tolerance]``, so
    an edge lying next to a line is inside two intervals. The start maps to
    the last interval containing it and the end to the first, which is the
    interval the edge is actually bounded by.

    Returns:
        (start_index, end_index) or None if either side cannot be mapped
    """
    if len(lines) < 2:
        return None

    start_index = -1
    end_index = -1
    for i in range(len(lines) - 1):
        left = lines[i] - tolerance
        right = lines[i + 1] + tolerance
        if left <= start <= right:
            start_index = i
        if end_index == -1 and left <= end <= right:
            end_index = i

    if start_index == -1 or end_index == -1:
        return None

    if end_index < start_index:
        start_index, end_index = end_index, start_index
    return start_index, end_index


# ============================================================================
# OpenCV Table Engine
# ============================================================================

class OpenCVTableEngine:
    """Table detection from ruling lines using OpenCV morphology."""

    def __init__(self, config: Optional[TableDetectConfig] = None):
        self.config = config or TableDetectConfig()

    def detect_tables(self, bundle: PageImageBundle) -> List[TableDetection]:
        """
        Detect tables on a preprocessed page.

        Args:
            bundle: Page bundle with the binary and OCR color images

        Returns:
            Detected tables, top to bottom. Tables with fewer than two lines
            on either axis are dropped.
        """
        binary = self._ensure_foreground(to_grayscale(bundle.binary_for_table))

        horizontal = self._extract_lines(binary, horizontal=True)
        vertical = self._extract_lines(binary, horizontal=False)
        import cv2
        grid_mask = cv2.bitwise_or(horizontal, vertical)

        page_w, page_h = bundle.cropped_size
        bboxes = self._detect_table_bboxes(grid_mask, page_w * page_h)

        tables = []
        for table_index, bbox in enumerate(bboxes):
            table = self._build_table(
                bundle, binary, grid_mask, horizontal, vertical, bbox, table_index
            )
            if table is not None:
                tables.append(table)
            else:
                logger.debug(
                    f"Page {bundle.page_number}: rejected table candidate {table_index} "
                    f"at {bbox} (not enough ruling lines)"
                )

        logger.info(f"Page {bundle.page_number}: detected {len(tables)} table(s)")
        return tables

    def mask_tables(self, image: np.ndarray, boxes: Iterable[BBox]) -> np.ndarray:
        """Return a copy of the image with every table box painted white."""
        import cv2

        masked = image.copy()
        white = (255, 255, 255) if len(masked.shape) == 3 else 255
        for box in boxes:
            cv2.rectangle(
                masked, (box.x, box.y), (box.x + box.w - 1, box.y + box.h - 1), white, -1
            )
        return masked

    # ------------------------------------------------------------------------

    @staticmethod
    def _ensure_foreground(binary: np.ndarray) -> np.ndarray:
        """
        Return a mask where ink is the bright foreground.

        Pages are mostly background, so a bright majority means dark ink on
        white paper and the image is inverted.
        """
        import cv2

        if float(binary.mean()) >= 128:
            return cv2.bitwise_not(binary)
        return binary.copy()

    def _extract_lines(self, binary: np.ndarray, horizontal: bool) -> np.ndarray:
        import cv2

        cfg = self.config
        h, w = binary.shape[:2]
        if horizontal:
            size = (max(cfg.min_kernel_px, w // cfg.kernel_divisor), 1)
        else:
            size = (1, max(cfg.min_kernel_px, h // cfg.kernel_divisor))

        kernel = cv2.getStructuringElement(cv2.MORPH_RECT, size)
        extracted = cv2.erode(binary, kernel)
        extracted = cv2.dilate(extracted, kernel)
        if cfg.dilate_kernel_px > 0:
            heal = cv2.getStructuringElement(
                cv2.MORPH_RECT, (cfg.dilate_kernel_px, cfg.dilate_kernel_px)
            )
            extracted = cv2.dilate(extracted, heal)
        return extracted

    def _detect_table_bboxes(self, grid_mask: np.ndarray, page_area: int) -> List[BBox]:
        import cv2

        cfg = self.config
        kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (3, 3))
        dilated = cv2.dilate(grid_mask, kernel)
        contours, _ = cv2.findContours(dilated, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

        candidates = []
        for cnt in contours:
            x, y, w, h = cv2.boundingRect(cnt)
            if w * h < page_area * cfg.min_area_ratio:
                continue
            if w < cfg.min_width_px or h < cfg.min_height_px:
                continue
            candidates.append(BBox(int(x), int(y), int(w), int(h)))

        return merge_bboxes(candidates, cfg.merge_gap_px)

    def _build_table(
        self,
        bundle: PageImageBundle,
        binary: np.ndarray,
        grid_mask: np.ndarray,
        horizontal: np.ndarray,
        vertical: np.ndarray,
        bbox: BBox,
        table_index: int
    ) -> Optional[TableDetection]:
        region = (slice(bbox.top, bbox.bottom), slice(bbox.left, bbox.right))
        table_grid = grid_mask[region]

        col_lines = self._extract_line_coordinates(vertical[region], vertical_lines=True)
        row_lines = self._extract_line_coordinates(horizontal[region], vertical_lines=False)
        if len(col_lines) < 2 or len(row_lines) < 2:
            return None

        cells = self._detect_cells(
            table_grid, col_lines, row_lines, table_index, bundle.page_number
        )
        return TableDetection(
            bbox=bbox,
            image_color=bundle.color_for_ocr[region].copy(),
            image_binary=binary[region].copy(),
            col_lines=col_lines,
            row_lines=row_lines,
            cells=cells,
            debug_id=f"t{table_index:02d}",
        )

    def _extract_line_coordinates(self, mask: np.ndarray, vertical_lines: bool) -> List[int]:
        """Project a line mask onto one axis and cluster the strong positions."""
        h, w = mask.shape[:2]
        if vertical_lines:
            projection = mask.sum(axis=0, dtype=np.float64)
            length, last = h, w - 1
        else:
            projection = mask.sum(axis=1, dtype=np.float64)
            length, last = w, h - 1

        threshold = length * 0.3 * 255
        hits = [int(i) for i in np.nonzero(projection >= threshold)[0]]

        eps = self.config.cluster_eps_px
        # The table edges stand in for border lines clustered next to them
        inner = [
            c for c in cluster_indices(hits, eps)
            if eps < c < last - eps
        ]
        return sorted(set([0] + inner + [last]))

    def _detect_cells(
        self,
        table_grid: np.ndarray,
        col_lines: List[int],
        row_lines: List[int],
        table_index: int,
        page_number: int
    ) -> List[CellBox]:
        import cv2

        cfg = self.config
        kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (3, 3))
        inverted = cv2.bitwise_not(cv2.dilate(table_grid, kernel))
        contours, _ = cv2.findContours(inverted, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

        table_h, table_w = table_grid.shape[:2]
        min_w = table_w * cfg.min_cell_size_ratio
        min_h = table_h * cfg.min_cell_size_ratio

        cells = []
        for cnt in contours:
            x, y, w, h = (int(v) for v in cv2.boundingRect(cnt))
            if w < min_w or h < min_h:
                continue
            # Whole-table background, not a real cell
            if w > table_w * 0.98 and h > table_h * 0.98:
                continue

            col_range = map_to_line_range(x, x + w, col_lines, cfg.cluster_eps_px)
            row_range = map_to_line_range(y, y + h, row_lines, cfg.cluster_eps_px)
            if col_range is None or row_range is None:
                continue

            col_start, col_end = col_range
            row_start, row_end = row_range
            cells.append(CellBox(
                cell_id=f"p{page_number}_t{table_index:02d}_r{row_start}_c{col_start}",
                bbox=BBox(x, y, w, h),
                row=row_start,
                col=col_start,
                rowspan=max(1, row_end - row_start + 1),
                colspan=max(1, col_end - col_start + 1),
            ))

        return cells
