"""
Utility modules for the PDF to Word conversion pipeline.
"""

from .io import PdfRenderer, Pdf2ImageRenderer, TempStorage, save_json, load_json
from .images import preprocess_page, crop_page, enhance_contrast, denoise, binarize, PageImageBundle
from .tables import OpenCVTableEngine, TableDetection, CellBox
from .validation import validate_table, compute_grid_owners
from .ocr_gemini import OcrClient, GeminiClient, map_gemini_error
from .assembler import build_page_ir, build_table_ir, ParagraphText
from .export import DocxWriter, pixels_to_twips
from .ir import DocumentIr, PageIr, ParagraphBlock, TableBlock, BBox
from .page_range import parse_page_range
from .text import clean_text

__all__ = [
    # IO
    "PdfRenderer", "Pdf2ImageRenderer", "TempStorage", "save_json", "load_json",
    # Images
    "preprocess_page", "crop_page", "enhance_contrast", "denoise", "binarize", "PageImageBundle",
    # Tables
    "OpenCVTableEngine", "TableDetection", "CellBox", "validate_table", "compute_grid_owners",
    # OCR
    "OcrClient", "GeminiClient", "map_gemini_error",
    # Assembly
    "build_page_ir", "build_table_ir", "ParagraphText",
    # Export
    "DocxWriter", "pixels_to_twips",
    # IR
    "DocumentIr", "PageIr", "ParagraphBlock", "TableBlock", "BBox",
    # Text
    "parse_page_range", "clean_text",
]
