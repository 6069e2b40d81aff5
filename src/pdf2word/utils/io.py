"""
I/O utilities for the conversion pipeline.

Handles:
- PDF page counting and single-page rendering (pdf2image / poppler)
- Per-job temporary storage for diagnostics
- Image and JSON serialization
- Zipping a job directory
"""

import abc
import json
import logging
import shutil
import tempfile
import uuid
import zipfile
from dataclasses import asdict
from pathlib import Path
from typing import Any, Optional, Union

import numpy as np

logger = logging.getLogger(__name__)


# ============================================================================
# PDF Rendering
# ============================================================================

class PdfRenderer(abc.ABC):
    """Rasterizes PDF pages."""

    @abc.abstractmethod
    def get_page_count(self, pdf_path: Union[str, Path]) -> int:
        ...

    @abc.abstractmethod
    def render_page(self, pdf_path: Union[str, Path], page_index: int, dpi: int) -> np.ndarray:
        """Render the 0-based ``page_index`` as a BGR (or grayscale) array."""
        ...


class Pdf2ImageRenderer(PdfRenderer):
    """Renderer backed by pdf2image, which drives poppler's pdftoppm."""

    def __init__(self, grayscale: bool = False, poppler_path: Optional[str] = None):
        self.grayscale = grayscale
        self.poppler_path = poppler_path

    def get_page_count(self, pdf_path: Union[str, Path]) -> int:
        from pdf2image import pdfinfo_from_path

        info = pdfinfo_from_path(str(pdf_path), poppler_path=self.poppler_path)
        return int(info.get('Pages', 0))

    def render_page(self, pdf_path: Union[str, Path], page_index: int, dpi: int) -> np.ndarray:
        from pdf2image import convert_from_path

        page_number = page_index + 1
        pil_images = convert_from_path(
            str(pdf_path),
            dpi=dpi,
            first_page=page_number,
            last_page=page_number,
            grayscale=self.grayscale,
            poppler_path=self.poppler_path
        )
        if not pil_images:
            raise RuntimeError(f"Renderer returned no image for page {page_number}")

        pil_img = pil_images[0]
        if self.grayscale:
            return np.array(pil_img.convert('L'))

        # RGB -> BGR for OpenCV
        img_array = np.array(pil_img.convert('RGB'))
        return img_array[:, :, ::-1].copy()


# ============================================================================
# Temporary Storage
# ============================================================================

class TempStorage:
    """
    Per-job scratch directory for diagnostics.

    Layout::

        <tmp>/Pdf2Word/job_<hex>/
            pages/   p001_original.png, p001_cropped.png, p001_binary.png
            tables/  p001_t00_color.png
            ir/      p001_ir.json, doc_ir.json, raw OCR responses
            logs/    job.log
    """

    def __init__(self, root: Optional[Union[str, Path]] = None):
        if root is None:
            root = Path(tempfile.gettempdir()) / "Pdf2Word" / f"job_{uuid.uuid4().hex}"
        self.job_root = Path(root)
        self.pages_dir = self.job_root / "pages"
        self.tables_dir = self.job_root / "tables"
        self.ir_dir = self.job_root / "ir"
        self.logs_dir = self.job_root / "logs"

    def ensure_created(self):
        for directory in (self.pages_dir, self.tables_dir, self.ir_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def get_page_image_path(self, page_number: int, suffix: str) -> Path:
        return self.pages_dir / f"p{page_number:03d}_{suffix}.png"

    def get_table_image_path(self, page_number: int, table_index: int, suffix: str) -> Path:
        return self.tables_dir / f"p{page_number:03d}_t{table_index:02d}_{suffix}.png"

    def get_ir_path(self, name: str) -> Path:
        return self.ir_dir / name

    def get_log_path(self, name: str) -> Path:
        return self.logs_dir / name

    def cleanup(self):
        if self.job_root.exists():
            shutil.rmtree(self.job_root)
            logger.debug(f"Removed directory: {self.job_root}")


# ============================================================================
# Image and JSON Serialization
# ============================================================================

def save_image(image: np.ndarray, output_path: Union[str, Path]) -> Path:
    """Save an image with OpenCV, creating parent directories."""
    import cv2

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    if not cv2.imwrite(str(output_path), image):
        raise IOError(f"Failed to write image: {output_path}")

    logger.debug(f"Saved image: {output_path}")
    return output_path


class EnhancedJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles numpy scalars, IR objects and dataclasses."""

    def default(self, obj):
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return float(obj)
        if hasattr(obj, 'to_dict'):
            return obj.to_dict()
        if hasattr(obj, '__dataclass_fields__'):
            return asdict(obj)
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def save_json(
    data: Any,
    output_path: Union[str, Path],
    indent: int = 2,
    ensure_ascii: bool = False
) -> Path:
    """
    Save data to a JSON file.

    Args:
        data: Data to serialize (dict, list, IR object, dataclass)
        output_path: Path to save the JSON file
        indent: Indentation level for pretty printing
        ensure_ascii: If True, escape non-ASCII characters

    Returns:
        Path to the saved file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=indent, ensure_ascii=ensure_ascii, cls=EnhancedJSONEncoder)

    logger.debug(f"Saved JSON: {output_path}")
    return output_path


def save_text(text: str, output_path: Union[str, Path]) -> Path:
    """Save a raw response body as-is."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(text or "", encoding='utf-8')
    return output_path


def load_json(json_path: Union[str, Path]) -> Any:
    """
    Load data from a JSON file.

    Args:
        json_path: Path to the JSON file

    Returns:
        Parsed JSON data
    """
    json_path = Path(json_path)
    if not json_path.exists():
        raise FileNotFoundError(f"JSON file not found: {json_path}")

    with open(json_path, 'r', encoding='utf-8') as f:
        return json.load(f)


# ============================================================================
# Archiving
# ============================================================================

def export_zip(directory: Union[str, Path], zip_path: Optional[Union[str, Path]] = None) -> Path:
    """
    Zip a directory tree.

    Args:
        directory: Directory to archive
        zip_path: Target archive; defaults to ``<directory>.zip``

    Returns:
        Path to the archive
    """
    directory = Path(directory)
    zip_path = Path(zip_path) if zip_path else directory.with_suffix(".zip")
    if zip_path.exists():
        zip_path.unlink()

    with zipfile.ZipFile(zip_path, 'w', zipfile.ZIP_DEFLATED) as zf:
        for file in sorted(directory.rglob("*")):
            if file.is_file():
                zf.write(file, file.relative_to(directory))

    logger.info(f"Exported diagnostics archive: {zip_path}")
    return zip_path
