"""
Intermediate representation (IR) of a converted document.

The IR is a versioned tree: DocumentIr -> PageIr -> blocks, where a block is
either a ParagraphBlock or a TableBlock. It serializes to JSON with
``to_dict`` and can be rebuilt with ``DocumentIr.from_dict`` so that a saved
IR can be rendered to DOCX again without re-running OCR.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any, Tuple, Union

from ..config import HeaderFooterMode, PageSizeMode, JSON_SCHEMA_VERSION


# ============================================================================
# Geometry
# ============================================================================

@dataclass(frozen=True)
class BBox:
    """Integer rectangle (x, y, w, h) in pixel space."""
    x: int
    y: int
    w: int
    h: int

    def __post_init__(self):
        if self.w < 0 or self.h < 0:
            raise ValueError(f"BBox size must be non-negative: {self.w}x{self.h}")

    @property
    def left(self) -> int:
        return self.x

    @property
    def top(self) -> int:
        return self.y

    @property
    def right(self) -> int:
        return self.x + self.w

    @property
    def bottom(self) -> int:
        return self.y + self.h

    def intersects(self, other: "BBox") -> bool:
        return not (
            self.right <= other.left or other.right <= self.left
            or self.bottom <= other.top or other.bottom <= self.top
        )

    @classmethod
    def from_bounds(cls, left: int, top: int, right: int, bottom: int) -> "BBox":
        return cls(left, top, max(0, right - left), max(0, bottom - top))

    def to_dict(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["BBox"]:
        if data is None:
            return None
        return cls(int(data["x"]), int(data["y"]), int(data["w"]), int(data["h"]))


@dataclass(frozen=True)
class CropInfo:
    """Crop mode and pixels removed from the top and bottom of a page."""
    mode: str = HeaderFooterMode.NONE
    crop_top_px: int = 0
    crop_bottom_px: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "cropTopPx": self.crop_top_px,
            "cropBottomPx": self.crop_bottom_px,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CropInfo":
        return cls(
            mode=data.get("mode", HeaderFooterMode.NONE),
            crop_top_px=int(data.get("cropTopPx", 0)),
            crop_bottom_px=int(data.get("cropBottomPx", 0)),
        )


# ============================================================================
# Blocks
# ============================================================================

class ParagraphRole:
    TITLE = "title"
    BODY = "body"


@dataclass
class BlockSource:
    """Provenance of a block."""
    producer: str = ""
    attempt: int = 1
    debug_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"producer": self.producer, "attempt": self.attempt, "debugId": self.debug_id}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BlockSource":
        data = data or {}
        return cls(
            producer=data.get("producer", ""),
            attempt=int(data.get("attempt", 1)),
            debug_id=data.get("debugId"),
        )


@dataclass
class ParagraphBlock:
    """A paragraph of recognized text."""
    text: str = ""
    role: str = ParagraphRole.BODY
    bbox: Optional[BBox] = None
    source: BlockSource = field(default_factory=BlockSource)

    block_type = "paragraph"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.block_type,
            "role": self.role,
            "text": self.text,
            "bbox": self.bbox.to_dict() if self.bbox else None,
            "source": self.source.to_dict(),
        }


@dataclass
class TableCell:
    """One declared cell of a table grid."""
    text: str = ""
    rowspan: int = 1
    colspan: int = 1
    bbox: Optional[BBox] = None  # in table image coordinates
    cell_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "rowspan": self.rowspan,
            "colspan": self.colspan,
            "cellBBoxInTableImage": self.bbox.to_dict() if self.bbox else None,
            "cellId": self.cell_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TableCell":
        return cls(
            text=data.get("text", ""),
            rowspan=int(data.get("rowspan", 1)),
            colspan=int(data.get("colspan", 1)),
            bbox=BBox.from_dict(data.get("cellBBoxInTableImage")),
            cell_id=data.get("cellId"),
        )


@dataclass
class TableRow:
    cells: List[TableCell] = field(default_factory=list)


@dataclass
class TableBlock:
    """A reconstructed table placed at its detected page bbox."""
    table_bbox: BBox
    n_cols: int
    rows: List[TableRow] = field(default_factory=list)
    engine: str = "OpenCV"
    detected_cell_count: Optional[int] = None
    source: BlockSource = field(default_factory=BlockSource)

    block_type = "table"

    @property
    def bbox(self) -> BBox:
        return self.table_bbox

    @property
    def n_rows(self) -> int:
        return len(self.rows)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.block_type,
            "bbox": self.table_bbox.to_dict(),
            "tableBBox": self.table_bbox.to_dict(),
            "nCols": self.n_cols,
            "rows": [{"cells": [c.to_dict() for c in row.cells]} for row in self.rows],
            "structureMeta": {
                "engine": self.engine,
                "detectedCellCount": self.detected_cell_count,
            },
            "source": self.source.to_dict(),
        }


Block = Union[ParagraphBlock, TableBlock]


def block_from_dict(data: Dict[str, Any]) -> Block:
    """Rebuild a block from its JSON form, dispatching on ``type``."""
    block_type = data.get("type")
    if block_type == ParagraphBlock.block_type:
        return ParagraphBlock(
            text=data.get("text", ""),
            role=data.get("role", ParagraphRole.BODY),
            bbox=BBox.from_dict(data.get("bbox")),
            source=BlockSource.from_dict(data.get("source")),
        )
    if block_type == TableBlock.block_type:
        meta = data.get("structureMeta") or {}
        return TableBlock(
            table_bbox=BBox.from_dict(data["tableBBox"]),
            n_cols=int(data["nCols"]),
            rows=[
                TableRow(cells=[TableCell.from_dict(c) for c in row.get("cells", [])])
                for row in data.get("rows", [])
            ],
            engine=meta.get("engine", "OpenCV"),
            detected_cell_count=meta.get("detectedCellCount"),
            source=BlockSource.from_dict(data.get("source")),
        )
    raise ValueError(f"Unknown block type: {block_type!r}")


# ============================================================================
# Pages and Document
# ============================================================================

@dataclass
class PageIr:
    """A converted page: sizes, crop info and blocks in reading order."""
    page_number: int
    original_size: Tuple[int, int]  # (w, h) before cropping
    cropped_size: Tuple[int, int]   # (w, h) after cropping
    crop: CropInfo = field(default_factory=CropInfo)
    blocks: List[Block] = field(default_factory=list)

    @property
    def width_px(self) -> int:
        return self.cropped_size[0]

    @property
    def height_px(self) -> int:
        return self.cropped_size[1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pageNumber": self.page_number,
            "originalSize": {"w": self.original_size[0], "h": self.original_size[1]},
            "croppedSize": {"w": self.cropped_size[0], "h": self.cropped_size[1]},
            "crop": self.crop.to_dict(),
            "blocks": [b.to_dict() for b in self.blocks],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PageIr":
        original = data.get("originalSize", {})
        cropped = data.get("croppedSize", {})
        return cls(
            page_number=int(data["pageNumber"]),
            original_size=(int(original.get("w", 0)), int(original.get("h", 0))),
            cropped_size=(int(cropped.get("w", 0)), int(cropped.get("h", 0))),
            crop=CropInfo.from_dict(data.get("crop", {})),
            blocks=[block_from_dict(b) for b in data.get("blocks", [])],
        )


@dataclass
class OptionsSnapshot:
    """Key options recorded with the document for diagnostics."""
    dpi: int = 300
    page_range: str = ""
    header_footer_mode: str = HeaderFooterMode.NONE
    header_percent: float = 0.06
    footer_percent: float = 0.06
    page_size_mode: str = PageSizeMode.FOLLOW_PDF

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dpi": self.dpi,
            "pageRange": self.page_range,
            "headerFooterMode": self.header_footer_mode,
            "headerPercent": self.header_percent,
            "footerPercent": self.footer_percent,
            "pageSizeMode": self.page_size_mode,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OptionsSnapshot":
        defaults = cls()
        return cls(
            dpi=int(data.get("dpi", defaults.dpi)),
            page_range=data.get("pageRange", defaults.page_range),
            header_footer_mode=data.get("headerFooterMode", defaults.header_footer_mode),
            header_percent=float(data.get("headerPercent", defaults.header_percent)),
            footer_percent=float(data.get("footerPercent", defaults.footer_percent)),
            page_size_mode=data.get("pageSizeMode", defaults.page_size_mode),
        )


@dataclass
class DocumentMeta:
    source_path: str = ""
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    options: OptionsSnapshot = field(default_factory=OptionsSnapshot)


@dataclass
class DocumentIr:
    """Root of the IR tree."""
    meta: DocumentMeta = field(default_factory=DocumentMeta)
    pages: List[PageIr] = field(default_factory=list)
    version: str = JSON_SCHEMA_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "meta": {
                "sourcePath": self.meta.source_path,
                "generatedAt": self.meta.generated_at.isoformat(),
                "optionsSnapshot": self.meta.options.to_dict(),
            },
            "pages": [p.to_dict() for p in self.pages],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocumentIr":
        meta = data.get("meta", {})
        generated_at = meta.get("generatedAt")
        return cls(
            version=data.get("version", JSON_SCHEMA_VERSION),
            meta=DocumentMeta(
                source_path=meta.get("sourcePath", ""),
                generated_at=(
                    datetime.fromisoformat(generated_at) if generated_at
                    else datetime.now(timezone.utc)
                ),
                options=OptionsSnapshot.from_dict(meta.get("optionsSnapshot", {})),
            ),
            pages=[PageIr.from_dict(p) for p in data.get("pages", [])],
        )
