"""
Image preprocessing utilities for the conversion pipeline.

Provides:
- Header/footer cropping
- Contrast enhancement (linear stretch or CLAHE)
- Denoising (3x3 Gaussian or median)
- Binarization (Otsu or adaptive mean)
- Deskew angle estimation and rotation
- The per-page bundle of derived images
"""

import logging
from dataclasses import dataclass
from typing import Tuple, Optional
import numpy as np

from ..config import (
    PreprocessConfig, HeaderFooterMode, ContrastMode, DenoiseMode, BinarizeMode
)
from .ir import CropInfo

logger = logging.getLogger(__name__)


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class PageImageBundle:
    """
    Derived images of one page, owned by that page's processing task.

    Use as a context manager (or call ``release``) so every image is dropped
    on every exit path.
    """
    page_number: int
    original_color: Optional[np.ndarray]
    cropped_color: Optional[np.ndarray]
    gray: Optional[np.ndarray]
    binary_for_table: Optional[np.ndarray]
    color_for_ocr: Optional[np.ndarray]
    original_size: Tuple[int, int]  # (w, h)
    cropped_size: Tuple[int, int]   # (w, h)
    crop_info: CropInfo
    deskew_angle: float = 0.0

    def release(self):
        self.original_color = None
        self.cropped_color = None
        self.gray = None
        self.binary_for_table = None
        self.color_for_ocr = None

    @property
    def released(self) -> bool:
        return self.color_for_ocr is None

    def __enter__(self) -> "PageImageBundle":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


# ============================================================================
# Core Preprocessing Functions
# ============================================================================

def to_grayscale(image: np.ndarray) -> np.ndarray:
    """
    Convert image to grayscale if it's color.

    Args:
        image: Input image (BGR, BGRA or grayscale)

    Returns:
        Grayscale image
    """
    import cv2

    if len(image.shape) == 2:
        return image
    elif len(image.shape) == 3:
        if image.shape[2] == 3:
            return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        elif image.shape[2] == 4:
            return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
        elif image.shape[2] == 1:
            return image.squeeze()

    raise ValueError(f"Unexpected image shape: {image.shape}")


def to_color(image: np.ndarray) -> np.ndarray:
    """Return a 3-channel BGR view of the image."""
    import cv2

    if len(image.shape) == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    return image


def crop_page(
    image: np.ndarray,
    mode: str = HeaderFooterMode.NONE,
    header_percent: float = 0.06,
    footer_percent: float = 0.06
) -> Tuple[np.ndarray, CropInfo]:
    """
    Remove a header and/or footer band from a page.

    Args:
        image: Rendered page
        mode: Which edges to crop (see HeaderFooterMode)
        header_percent: Fraction of the height removed from the top
        footer_percent: Fraction of the height removed from the bottom

    Returns:
        Tuple of (cropped copy, CropInfo)
    """
    height = image.shape[0]
    top = 0
    bottom = 0
    if mode in (HeaderFooterMode.REMOVE_HEADER, HeaderFooterMode.REMOVE_BOTH):
        top = int(round(height * header_percent))
    if mode in (HeaderFooterMode.REMOVE_FOOTER, HeaderFooterMode.REMOVE_BOTH):
        bottom = int(round(height * footer_percent))

    crop_height = max(1, height - top - bottom)
    y0 = max(0, min(top, height - 1))
    cropped = image[y0:y0 + crop_height].copy()

    return cropped, CropInfo(mode=mode, crop_top_px=top, crop_bottom_px=bottom)


def enhance_contrast(
    gray: np.ndarray,
    mode: str = ContrastMode.CLAHE,
    clip_limit: float = 2.5,
    grid_size: int = 8
) -> np.ndarray:
    """
    Enhance contrast of a grayscale image.

    Args:
        gray: Grayscale image
        mode: 'none', 'linear' (min-max stretch) or 'clahe'
        clip_limit: CLAHE threshold for contrast limiting
        grid_size: CLAHE tile grid size

    Returns:
        Contrast-enhanced image
    """
    import cv2

    if mode == ContrastMode.NONE:
        return gray.copy()

    if mode == ContrastMode.LINEAR:
        return cv2.normalize(gray, None, 0, 255, cv2.NORM_MINMAX)

    clahe = cv2.createCLAHE(
        clipLimit=clip_limit,
        tileGridSize=(grid_size, grid_size)
    )
    enhanced = clahe.apply(gray)
    logger.debug(f"Applied CLAHE contrast enhancement (clip={clip_limit})")
    return enhanced


def denoise(gray: np.ndarray, mode: str = DenoiseMode.MEDIAN3) -> np.ndarray:
    """Remove speckle noise with a 3x3 Gaussian or median filter."""
    import cv2

    if mode == DenoiseMode.GAUSSIAN3:
        return cv2.GaussianBlur(gray, (3, 3), 0)
    if mode == DenoiseMode.MEDIAN3:
        return cv2.medianBlur(gray, 3)
    return gray.copy()


def binarize(
    gray: np.ndarray,
    method: str = BinarizeMode.ADAPTIVE,
    block_size: int = 41,
    c: int = 10
) -> np.ndarray:
    """
    Convert image to binary (black and white).

    Args:
        gray: Grayscale image
        method: 'otsu' or 'adaptive' (mean of the neighbourhood)
        block_size: Block size for adaptive thresholding, forced odd and >= 3
        c: Constant subtracted for adaptive thresholding

    Returns:
        Binary image
    """
    import cv2

    if method == BinarizeMode.OTSU:
        _, binary = cv2.threshold(
            gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU
        )
        return binary

    if block_size % 2 == 0:
        block_size += 1
    block_size = max(3, block_size)
    return cv2.adaptiveThreshold(
        gray,
        255,
        cv2.ADAPTIVE_THRESH_MEAN_C,
        cv2.THRESH_BINARY,
        block_size,
        c
    )


def estimate_skew_angle(
    binary: np.ndarray,
    min_angle: float = 0.3,
    max_angle: float = 10.0
) -> float:
    """
    Estimate page skew from near-horizontal lines.

    Uses Canny edges and a probabilistic Hough transform, keeps line angles
    under 45 degrees and takes their median. A median outside
    [min_angle, max_angle] is noise or a detection error, so 0 is returned.

    Args:
        binary: Binary page image
        min_angle: Smallest magnitude (degrees) treated as real skew
        max_angle: Largest magnitude (degrees) treated as real skew

    Returns:
        Skew angle in degrees, or 0.0 when no correction should be applied
    """
    import cv2

    edges = cv2.Canny(binary, 50, 150)
    lines = cv2.HoughLinesP(
        edges,
        rho=1,
        theta=np.pi / 180,
        threshold=100,
        minLineLength=binary.shape[1] / 4.0,
        maxLineGap=10
    )

    if lines is None or len(lines) == 0:
        logger.debug("No lines detected for deskewing")
        return 0.0

    angles = []
    # OpenCV 4 returns (N, 1, 4), OpenCV 5 returns (N, 4)
    for x1, y1, x2, y2 in np.asarray(lines).reshape(-1, 4):
        angle = float(np.degrees(np.arctan2(y2 - y1, x2 - x1)))
        if abs(angle) < 45:
            angles.append(angle)

    if not angles:
        logger.debug("No valid angles found for deskewing")
        return 0.0

    # Upper median, matching an index-based pick on the sorted list
    median_angle = sorted(angles)[len(angles) // 2]

    if abs(median_angle) < min_angle or abs(median_angle) > max_angle:
        logger.debug(f"Skew angle outside correction band: {median_angle:.2f}°")
        return 0.0

    return median_angle


def rotate(image: np.ndarray, angle: float) -> np.ndarray:
    """Rotate about the center keeping the size, filling exposed corners white."""
    import cv2

    h, w = image.shape[:2]
    center = (w / 2.0, h / 2.0)
    rotation_matrix = cv2.getRotationMatrix2D(center, angle, 1.0)
    return cv2.warpAffine(
        image,
        rotation_matrix,
        (w, h),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(255, 255, 255) if len(image.shape) == 3 else 255
    )


# ============================================================================
# Full Preprocessing Pipeline
# ============================================================================

def preprocess_page(
    rendered: np.ndarray,
    config: PreprocessConfig,
    page_number: int,
    crop_mode: str = HeaderFooterMode.NONE,
    header_percent: float = 0.06,
    footer_percent: float = 0.06
) -> PageImageBundle:
    """
    Run the full preprocessing pipeline on a rendered page.

    Crop -> grayscale -> contrast -> denoise -> binarize -> deskew. The skew
    correction is applied identically to the binary image used for table
    detection and to the color image sent to OCR.

    Args:
        rendered: Rendered page (BGR or grayscale)
        config: Preprocessing configuration
        page_number: 1-based page number
        crop_mode: Header/footer crop mode
        header_percent: Header band height as a fraction of the page
        footer_percent: Footer band height as a fraction of the page

    Returns:
        PageImageBundle holding every derived image
    """
    original = to_color(rendered)
    original_size = (original.shape[1], original.shape[0])

    cropped, crop_info = crop_page(original, crop_mode, header_percent, footer_percent)
    gray = to_grayscale(cropped)
    enhanced = enhance_contrast(
        gray, config.contrast, config.clahe_clip_limit, config.clahe_tile_grid_size
    )
    denoised = denoise(enhanced, config.denoise)
    binary = binarize(
        denoised, config.binarize, config.adaptive_block_size, config.adaptive_c
    )

    angle = 0.0
    if config.enable_deskew:
        angle = estimate_skew_angle(
            binary, config.deskew_min_angle_deg, config.deskew_max_angle_deg
        )

    if angle != 0.0:
        binary_for_table = rotate(binary, angle)
        color_for_ocr = rotate(cropped, angle)
        logger.info(f"Page {page_number}: deskewed by {angle:.2f}°")
    else:
        binary_for_table = binary
        color_for_ocr = cropped.copy()

    return PageImageBundle(
        page_number=page_number,
        original_color=original,
        cropped_color=cropped,
        gray=enhanced,
        binary_for_table=binary_for_table,
        color_for_ocr=color_for_ocr,
        original_size=original_size,
        cropped_size=(cropped.shape[1], cropped.shape[0]),
        crop_info=crop_info,
        deskew_angle=angle,
    )
