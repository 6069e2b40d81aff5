"""
DOCX export of the document IR.

Uses python-docx for:
- Page geometry per page (follow the PDF) or fixed A4
- Section breaks or page breaks between pages
- Tables with merged cells from the shared grid-owner computation
- Runs with ASCII and East Asian fonts and explicit line breaks
"""

import logging
from pathlib import Path
from typing import Optional, Union, Tuple

from ..config import DocxConfig, LayoutConfig, PageSizeMode
from .ir import DocumentIr, PageIr, ParagraphBlock, TableBlock, ParagraphRole
from .validation import compute_grid_owners

logger = logging.getLogger(__name__)

A4_WIDTH_TWIPS = 11906
A4_HEIGHT_TWIPS = 16838


def pixels_to_twips(px: int, dpi: int) -> int:
    """Convert a pixel length at ``dpi`` to twips (1/1440 inch)."""
    if dpi <= 0:
        raise ValueError(f"DPI must be positive, got {dpi}")
    return int(round(px * 1440 / dpi))


class DocxWriter:
    """Write a DocumentIr to a .docx file."""

    def __init__(
        self,
        docx_config: Optional[DocxConfig] = None,
        layout_config: Optional[LayoutConfig] = None,
        dpi: Optional[int] = None
    ):
        self.docx_config = docx_config or DocxConfig()
        self.layout_config = layout_config or LayoutConfig()
        self.dpi = dpi

    def write(self, document: DocumentIr, output_path: Union[str, Path]) -> Path:
        """
        Render the IR and save it.

        Args:
            document: Document IR with pages in output order
            output_path: Target .docx path; parent directories are created

        Returns:
            Path to the written file
        """
        from docx import Document as DocxDocument
        from docx.enum.section import WD_SECTION
        from docx.enum.text import WD_BREAK

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        dpi = self.dpi or document.meta.options.dpi
        follow_pdf = self.layout_config.page_size_mode != PageSizeMode.A4
        doc = DocxDocument()

        for index, page in enumerate(document.pages):
            if follow_pdf:
                # Each page gets its own section; the new section holds this page's geometry
                section = doc.sections[0] if index == 0 else doc.add_section(WD_SECTION.NEW_PAGE)
                page_width, page_height = self._page_size_twips(page, dpi)
                self._apply_geometry(section, page_width, page_height)
            else:
                if index > 0:
                    doc.add_paragraph().add_run().add_break(WD_BREAK.PAGE)
                page_width = A4_WIDTH_TWIPS

            for block in page.blocks:
                if isinstance(block, TableBlock):
                    self._add_table(doc, block, page_width)
                elif isinstance(block, ParagraphBlock):
                    self._add_paragraph(doc, block)

        if not follow_pdf or not document.pages:
            self._apply_geometry(doc.sections[-1], A4_WIDTH_TWIPS, A4_HEIGHT_TWIPS)

        doc.save(str(output_path))
        logger.info(f"Exported DOCX to: {output_path}")
        return output_path

    # ------------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------------

    @staticmethod
    def _page_size_twips(page: PageIr, dpi: int) -> Tuple[int, int]:
        return pixels_to_twips(page.width_px, dpi), pixels_to_twips(page.height_px, dpi)

    def _apply_geometry(self, section, width_twips: int, height_twips: int):
        from docx.enum.section import WD_ORIENT
        from docx.shared import Twips

        layout = self.layout_config
        section.orientation = (
            WD_ORIENT.LANDSCAPE if width_twips > height_twips else WD_ORIENT.PORTRAIT
        )
        section.page_width = Twips(width_twips)
        section.page_height = Twips(height_twips)
        section.top_margin = Twips(layout.margin_top_twips)
        section.bottom_margin = Twips(layout.margin_bottom_twips)
        section.left_margin = Twips(layout.margin_left_twips)
        section.right_margin = Twips(layout.margin_right_twips)

    # ------------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------------

    def _add_paragraph(self, doc, block: ParagraphBlock):
        paragraph = doc.add_paragraph()
        if block.role == ParagraphRole.TITLE:
            paragraph.style = "Heading 1"
        self._fill_paragraph(paragraph, block.text)

    def _fill_paragraph(self, paragraph, text: str):
        if not text:
            return

        if not self.docx_config.keep_line_breaks:
            self._format_run(paragraph.add_run(text.replace("\r\n", " ").replace("\n", " ")))
            return

        lines = text.replace("\r\n", "\n").split("\n")
        for i, line in enumerate(lines):
            run = paragraph.add_run(line)
            self._format_run(run)
            if i < len(lines) - 1:
                run.add_break()

    def _format_run(self, run):
        from docx.oxml.ns import qn
        from docx.shared import Pt

        cfg = self.docx_config
        run.font.name = cfg.font_ascii
        run.font.size = Pt(cfg.font_size_half_points / 2)
        r_fonts = run._element.get_or_add_rPr().get_or_add_rFonts()
        r_fonts.set(qn('w:eastAsia'), cfg.font_east_asia)

    def _add_table(self, doc, block: TableBlock, page_width_twips: int):
        from docx.shared import Twips

        grid = compute_grid_owners(block, strict=False)
        if grid.n_rows < 1 or grid.n_cols < 1:
            logger.warning(f"Skipping table {block.source.debug_id or ''} without rows or columns")
            return

        table = doc.add_table(rows=grid.n_rows, cols=grid.n_cols)
        if self.docx_config.table_borders:
            table.style = "Table Grid"

        layout = self.layout_config
        available = max(1, page_width_twips - layout.margin_left_twips - layout.margin_right_twips)
        col_width = Twips(available // grid.n_cols)
        for column in table.columns:
            column.width = col_width
        for row in table.rows:
            for cell in row.cells:
                cell.width = col_width

        for (r, c), placement in sorted(grid.placements.items()):
            cell = table.cell(r, c)
            if placement.rowspan > 1 or placement.colspan > 1:
                cell = cell.merge(
                    table.cell(r + placement.rowspan - 1, c + placement.colspan - 1)
                )
            self._fill_paragraph(cell.paragraphs[0], placement.cell.text)
