"""
Configuration and constants for the PDF to Word conversion pipeline.

This module provides:
- Logging setup shared by every module
- Option vocabularies (crop modes, fallback policies, job stages, error codes)
- Immutable processing configuration, one value per conversion job
- Environment overrides for the OCR service credentials
"""

import os
from dataclasses import dataclass, field, replace
from typing import Optional
import logging

# ============================================================================
# Logging Configuration
# ============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("pdf2word")


# ============================================================================
# Option Vocabularies
# ============================================================================

class HeaderFooterMode:
    """Which page edges are cropped before processing."""
    NONE = "none"
    REMOVE_HEADER = "header"
    REMOVE_FOOTER = "footer"
    REMOVE_BOTH = "both"


class PageSizeMode:
    """Output page geometry."""
    A4 = "a4"
    FOLLOW_PDF = "follow_pdf"


class ContrastMode:
    NONE = "none"
    LINEAR = "linear"
    CLAHE = "clahe"


class DenoiseMode:
    NONE = "none"
    GAUSSIAN3 = "gaussian3"
    MEDIAN3 = "median3"


class BinarizeMode:
    ADAPTIVE = "adaptive"
    OTSU = "otsu"


class TableFallbackPolicy:
    """What to do with a table whose structure or text was rejected."""
    KEEP_STRUCTURE_EMPTY_CELLS = "keep_structure_empty_cells"
    FALLBACK_TEXT_TABLE = "fallback_text_table"
    INSERT_IMAGE = "insert_image"  # reserved, no behavior


class TextFallbackPolicy:
    SINGLE_PARAGRAPH = "single_paragraph"
    EMPTY = "empty"


class JobStatus:
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELED = "Canceled"


class ErrorSeverity:
    FATAL = "Fatal"
    RECOVERABLE = "Recoverable"
    WARNING = "Warning"


class JobStage:
    """Pipeline stages, in processing order."""
    INIT = "Init"
    PDF_OPEN = "PdfOpen"
    PDF_RENDER = "PdfRender"
    PREPROCESS = "Preprocess"
    TABLE_DETECT = "TableDetect"
    TABLE_GRID = "TableGrid"
    GEMINI_TABLE_OCR = "GeminiTableOcr"
    GEMINI_PAGE_OCR = "GeminiPageOcr"
    ASSEMBLE_IR = "AssembleIr"
    DOCX_WRITE = "DocxWrite"
    FINALIZE = "Finalize"


class ErrorCode:
    """Error codes reported in FailureInfo records."""
    CFG_INVALID_PDF_PATH = "E_CFG_INVALID_PDF_PATH"
    CFG_CROP_TOO_LARGE = "E_CFG_CROP_TOO_LARGE"
    CFG_INVALID_PAGE_RANGE = "E_CFG_INVALID_PAGE_RANGE"
    PDF_GET_PAGECOUNT_FAILED = "E_PDF_GET_PAGECOUNT_FAILED"
    PDF_RENDER_FAILED = "E_PDF_RENDER_FAILED"
    IMG_PREPROCESS_FAILED = "E_IMG_PREPROCESS_FAILED"
    TABLE_DETECT_FAILED = "E_TABLE_DETECT_FAILED"
    TABLE_GRID_INSUFFICIENT_LINES = "E_TABLE_GRID_INSUFFICIENT_LINES"
    TABLE_GRID_CONFLICT = "E_TABLE_GRID_CONFLICT"
    GEMINI_OCR_MISSING_IDS = "E_GEMINI_OCR_MISSING_IDS"
    GEMINI_OCR_EMPTY_TEXT = "E_GEMINI_OCR_EMPTY_TEXT"
    GEMINI_JSON_INVALID = "E_GEMINI_JSON_INVALID"
    GEMINI_TIMEOUT = "E_GEMINI_TIMEOUT"
    GEMINI_RATE_LIMITED = "E_GEMINI_RATE_LIMITED"
    GEMINI_SERVER_ERROR = "E_GEMINI_SERVER_ERROR"
    GEMINI_HTTP_ERROR = "E_GEMINI_HTTP_ERROR"
    PAGE_EMPTY = "E_PAGE_EMPTY"
    PAGE_ALL_FAILED = "E_PAGE_ALL_FAILED"
    PAGE_FAILED = "E_PAGE_FAILED"
    DOCX_WRITE_FAILED = "E_DOCX_WRITE_FAILED"


# ============================================================================
# Processing Configuration
# ============================================================================

@dataclass(frozen=True)
class RenderConfig:
    """PDF rasterization configuration."""
    dpi: int = 300
    color_mode: str = "color"  # color or grayscale


@dataclass(frozen=True)
class LayoutConfig:
    """Cropping and output page layout."""
    header_footer_mode: str = HeaderFooterMode.NONE
    header_percent: float = 0.06
    footer_percent: float = 0.06
    max_crop_total_percent: float = 0.30
    page_size_mode: str = PageSizeMode.FOLLOW_PDF
    # Margins in twips (1134 = 2 cm)
    margin_top_twips: int = 1134
    margin_bottom_twips: int = 1134
    margin_left_twips: int = 1134
    margin_right_twips: int = 1134


@dataclass(frozen=True)
class RuntimeConfig:
    """Concurrency limits."""
    page_concurrency: int = 2
    ocr_concurrency: int = 2


@dataclass(frozen=True)
class PreprocessConfig:
    """Image preprocessing configuration."""
    enable_deskew: bool = True
    contrast: str = ContrastMode.CLAHE
    clahe_clip_limit: float = 2.5
    clahe_tile_grid_size: int = 8
    denoise: str = DenoiseMode.MEDIAN3
    binarize: str = BinarizeMode.ADAPTIVE
    adaptive_block_size: int = 41
    adaptive_c: int = 10
    # Median skew outside this band is treated as noise
    deskew_min_angle_deg: float = 0.3
    deskew_max_angle_deg: float = 10.0


@dataclass(frozen=True)
class TableDetectConfig:
    """Table structure detection configuration."""
    enable: bool = True
    min_area_ratio: float = 0.005
    min_width_px: int = 150
    min_height_px: int = 80
    merge_gap_px: int = 15
    # Line extraction kernels
    kernel_divisor: int = 30
    min_kernel_px: int = 20
    dilate_kernel_px: int = 3
    # Grid reconstruction
    cluster_eps_px: int = 4
    min_cell_size_ratio: float = 0.02
    enable_text_table_fallback: bool = True


@dataclass(frozen=True)
class GeminiConfig:
    """OCR service configuration."""
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-2.0-flash"
    endpoint: Optional[str] = None  # overrides base_url/model when set
    api_key: Optional[str] = None
    table_timeout_s: int = 90
    page_timeout_s: int = 90
    # Retry policy
    max_retry_count: int = 1
    backoff_base_ms: int = 500
    # Quality gates
    table_missing_id_threshold: float = 0.05
    table_empty_text_rate_threshold: float = 0.80
    min_page_text_char_count: int = 10
    # Image upload
    max_long_edge_px: int = 2800
    jpeg_quality: int = 90

    def resolve_endpoint(self) -> str:
        if self.endpoint:
            return self.endpoint
        if not self.base_url or not self.model:
            return ""
        return f"{self.base_url.rstrip('/')}/models/{self.model}:generateContent"


@dataclass(frozen=True)
class DocxConfig:
    """DOCX formatting configuration."""
    font_ascii: str = "Calibri"
    font_east_asia: str = "微软雅黑"
    font_size_half_points: int = 24
    table_borders: bool = True
    keep_line_breaks: bool = True


@dataclass(frozen=True)
class DiagnosticsConfig:
    """What the job leaves behind for troubleshooting."""
    keep_temp_files: bool = False
    save_raw_ocr_json: bool = False
    export_zip: bool = True


@dataclass(frozen=True)
class ValidationConfig:
    """Validation gates and fallback policies."""
    enable: bool = True
    fail_fast: bool = False
    allow_skip_failed_pages: bool = True
    table_structure_ok_text_bad: str = TableFallbackPolicy.KEEP_STRUCTURE_EMPTY_CELLS
    table_structure_bad: str = TableFallbackPolicy.FALLBACK_TEXT_TABLE
    text_empty: str = TextFallbackPolicy.SINGLE_PARAGRAPH


@dataclass(frozen=True)
class PipelineConfig:
    """Main pipeline configuration."""
    render: RenderConfig = field(default_factory=RenderConfig)
    layout: LayoutConfig = field(default_factory=LayoutConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    preprocess: PreprocessConfig = field(default_factory=PreprocessConfig)
    table: TableDetectConfig = field(default_factory=TableDetectConfig)
    gemini: GeminiConfig = field(default_factory=GeminiConfig)
    docx: DocxConfig = field(default_factory=DocxConfig)
    diagnostics: DiagnosticsConfig = field(default_factory=DiagnosticsConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    output_directory: Optional[str] = None


# ============================================================================
# Default Configuration Instance
# ============================================================================

def _env_int(name: str) -> Optional[int]:
    value = os.environ.get(name, "").strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={value!r}")
        return None


def get_config() -> PipelineConfig:
    """Get the default pipeline configuration with environment overrides."""
    config = PipelineConfig()

    gemini_overrides = {}
    if os.environ.get("GEMINI_API_KEY"):
        gemini_overrides["api_key"] = os.environ["GEMINI_API_KEY"]
    if os.environ.get("GEMINI_BASE_URL"):
        gemini_overrides["base_url"] = os.environ["GEMINI_BASE_URL"]
    if os.environ.get("GEMINI_MODEL"):
        gemini_overrides["model"] = os.environ["GEMINI_MODEL"]
    if gemini_overrides:
        config = replace(config, gemini=replace(config.gemini, **gemini_overrides))

    runtime_overrides = {}
    page_concurrency = _env_int("PDF2WORD_PAGE_CONCURRENCY")
    if page_concurrency is not None:
        runtime_overrides["page_concurrency"] = page_concurrency
    ocr_concurrency = _env_int("PDF2WORD_OCR_CONCURRENCY")
    if ocr_concurrency is not None:
        runtime_overrides["ocr_concurrency"] = ocr_concurrency
    if runtime_overrides:
        config = replace(config, runtime=replace(config.runtime, **runtime_overrides))

    if os.environ.get("PDF2WORD_DEBUG", "").lower() == "true":
        config = replace(
            config,
            diagnostics=replace(config.diagnostics, keep_temp_files=True, save_raw_ocr_json=True)
        )

    return config


# ============================================================================
# JSON Schema Version
# ============================================================================

JSON_SCHEMA_VERSION = "1.0"
