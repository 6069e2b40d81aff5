"""
Tests for image preprocessing module.
"""

import pytest
import numpy as np
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from pdf2word.config import PreprocessConfig, HeaderFooterMode, ContrastMode, DenoiseMode


def _rotated_lines(angle: float) -> np.ndarray:
    import cv2

    img = np.ones((400, 500), dtype=np.uint8) * 255
    for y in range(50, 350, 30):
        img[y:y+2, 50:450] = 0

    rotation_matrix = cv2.getRotationMatrix2D((250, 200), angle, 1.0)
    return cv2.warpAffine(img, rotation_matrix, (500, 400), borderValue=255)


class TestPreprocessing:
    """Test image preprocessing functions."""

    @pytest.fixture
    def sample_image(self):
        """Create a sample grayscale image."""
        img = np.ones((300, 400), dtype=np.uint8) * 255
        # Text-like dark bars
        img[50:60, 50:200] = 0
        img[80:90, 50:180] = 0
        img[110:120, 50:220] = 0
        return img

    @pytest.fixture
    def sample_color_image(self):
        """Create a sample color page."""
        img = np.ones((1000, 400, 3), dtype=np.uint8) * 255
        img[50:60, 50:200] = [0, 0, 0]
        img[480:490, 50:180] = [0, 0, 0]
        return img

    def test_to_grayscale_already_gray(self, sample_image):
        """Test that grayscale images are returned unchanged."""
        from pdf2word.utils.images import to_grayscale

        result = to_grayscale(sample_image)

        assert result.shape == sample_image.shape
        np.testing.assert_array_equal(result, sample_image)

    def test_to_grayscale_from_color(self, sample_color_image):
        """Test conversion from color to grayscale."""
        from pdf2word.utils.images import to_grayscale

        result = to_grayscale(sample_color_image)

        assert len(result.shape) == 2
        assert result.shape[:2] == sample_color_image.shape[:2]

    def test_crop_none(self, sample_color_image):
        from pdf2word.utils.images import crop_page

        cropped, info = crop_page(sample_color_image, HeaderFooterMode.NONE)

        assert cropped.shape == sample_color_image.shape
        assert info.crop_top_px == 0
        assert info.crop_bottom_px == 0

    def test_crop_header(self, sample_color_image):
        from pdf2word.utils.images import crop_page

        cropped, info = crop_page(sample_color_image, HeaderFooterMode.REMOVE_HEADER, 0.06, 0.06)

        assert info.crop_top_px == 60
        assert info.crop_bottom_px == 0
        assert cropped.shape[0] == 940
        # The first row of the crop is row 60 of the page
        np.testing.assert_array_equal(cropped[0], sample_color_image[60])

    def test_crop_both(self, sample_color_image):
        from pdf2word.utils.images import crop_page

        cropped, info = crop_page(sample_color_image, HeaderFooterMode.REMOVE_BOTH, 0.1, 0.05)

        assert info.crop_top_px == 100
        assert info.crop_bottom_px == 50
        assert cropped.shape[0] == 850
        assert cropped.shape[1] == sample_color_image.shape[1]

    def test_crop_returns_copy(self, sample_color_image):
        from pdf2word.utils.images import crop_page

        cropped, _ = crop_page(sample_color_image, HeaderFooterMode.NONE)
        cropped[:] = 0

        assert sample_color_image.max() == 255

    def test_enhance_contrast_modes(self, sample_image):
        from pdf2word.utils.images import enhance_contrast

        for mode in (ContrastMode.NONE, ContrastMode.LINEAR, ContrastMode.CLAHE):
            result = enhance_contrast(sample_image, mode)
            assert result.shape == sample_image.shape
            assert result.dtype == np.uint8

    def test_linear_stretch_spans_full_range(self):
        from pdf2word.utils.images import enhance_contrast

        img = np.full((20, 20), 100, dtype=np.uint8)
        img[:10] = 150

        result = enhance_contrast(img, ContrastMode.LINEAR)

        assert result.min() == 0
        assert result.max() == 255

    def test_denoise_removes_speckle(self, sample_image):
        """A median filter erases isolated dark pixels."""
        from pdf2word.utils.images import denoise

        noisy = sample_image.copy()
        noisy[200, 300] = 0
        noisy[250, 100] = 0

        result = denoise(noisy, DenoiseMode.MEDIAN3)

        assert result.shape == noisy.shape
        assert result[200, 300] == 255
        assert result[250, 100] == 255

    def test_denoise_gaussian(self, sample_image):
        from pdf2word.utils.images import denoise

        result = denoise(sample_image, DenoiseMode.GAUSSIAN3)

        assert result.shape == sample_image.shape

    def test_binarize_otsu(self, sample_image):
        """Test Otsu binarization."""
        from pdf2word.utils.images import binarize

        result = binarize(sample_image, method="otsu")

        assert result.shape == sample_image.shape
        unique_values = np.unique(result)
        assert all(v in [0, 255] for v in unique_values)

    def test_binarize_adaptive_even_block_size(self, sample_image):
        """Even block sizes are bumped to the next odd value."""
        from pdf2word.utils.images import binarize

        result = binarize(sample_image, method="adaptive", block_size=40, c=10)

        assert result.shape == sample_image.shape
        assert all(v in [0, 255] for v in np.unique(result))
        # Text stays dark, paper stays white
        assert result[55, 100] == 0
        assert result[200, 300] == 255


class TestSkew:
    """Test skew estimation."""

    def test_straight_lines_need_no_correction(self):
        from pdf2word.utils.images import estimate_skew_angle

        assert estimate_skew_angle(_rotated_lines(0.0)) == 0.0

    def test_detects_moderate_skew(self):
        from pdf2word.utils.images import estimate_skew_angle

        angle = estimate_skew_angle(_rotated_lines(5.0), 0.3, 10.0)

        assert abs(abs(angle) - 5.0) < 2.0

    def test_skew_above_limit_is_ignored(self):
        from pdf2word.utils.images import estimate_skew_angle

        assert estimate_skew_angle(_rotated_lines(20.0), 0.3, 10.0) == 0.0

    def test_blank_page(self):
        from pdf2word.utils.images import estimate_skew_angle

        assert estimate_skew_angle(np.full((200, 300), 255, dtype=np.uint8)) == 0.0

    @pytest.mark.parametrize("shape", [(3, 1, 4), (3, 4)])
    def test_hough_output_layouts(self, shape):
        """Both nested and flat HoughLinesP rows are read."""
        from unittest.mock import patch
        from pdf2word.utils.images import estimate_skew_angle

        segments = np.array([[0, 0, 100, 5], [10, 50, 210, 60], [0, 90, 300, 105]], dtype=np.int32)
        expected = float(np.degrees(np.arctan2(5, 100)))

        with patch("cv2.HoughLinesP", return_value=segments.reshape(shape)):
            angle = estimate_skew_angle(np.full((200, 300), 255, dtype=np.uint8))

        assert angle == pytest.approx(expected, abs=0.01)

    def test_rotate_keeps_size_and_white_fill(self):
        from pdf2word.utils.images import rotate

        img = np.full((100, 200, 3), 255, dtype=np.uint8)
        result = rotate(img, 7.0)

        assert result.shape == img.shape
        assert result[0, 0].tolist() == [255, 255, 255]


class TestPreprocessPage:
    """Test the full preprocessing pipeline."""

    def test_bundle_sizes(self):
        from pdf2word.utils.images import preprocess_page

        page = np.ones((1000, 800, 3), dtype=np.uint8) * 255
        page[300:310, 100:600] = 0

        bundle = preprocess_page(
            page, PreprocessConfig(), 3, HeaderFooterMode.REMOVE_BOTH, 0.06, 0.04
        )

        assert bundle.page_number == 3
        assert bundle.original_size == (800, 1000)
        assert bundle.cropped_size == (800, 900)
        assert bundle.crop_info.crop_top_px == 60
        assert bundle.crop_info.crop_bottom_px == 40
        assert bundle.binary_for_table.shape == (900, 800)
        assert bundle.color_for_ocr.shape == (900, 800, 3)
        assert bundle.deskew_angle == 0.0

    def test_grayscale_render_is_accepted(self):
        from pdf2word.utils.images import preprocess_page

        page = np.ones((200, 300), dtype=np.uint8) * 255
        bundle = preprocess_page(page, PreprocessConfig(enable_deskew=False), 1)

        assert bundle.color_for_ocr.shape == (200, 300, 3)

    def test_context_manager_releases_images(self):
        from pdf2word.utils.images import preprocess_page

        page = np.ones((200, 300, 3), dtype=np.uint8) * 255
        with preprocess_page(page, PreprocessConfig(), 1) as bundle:
            assert not bundle.released

        assert bundle.released
        assert bundle.original_color is None
        assert bundle.binary_for_table is None
