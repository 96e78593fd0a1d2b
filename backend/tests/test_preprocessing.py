"""Tests for image preprocessing service."""

import pytest
import numpy as np
from PIL import Image
import io

from scanmatch.services.preprocessing import ImagePreprocessor, to_grayscale


@pytest.fixture
def preprocessor():
    """Create preprocessor instance."""
    return ImagePreprocessor()


def image_bytes(size=(200, 100), color="white", fmt="PNG") -> bytes:
    img = Image.new("RGB", size, color=color)
    buffer = io.BytesIO()
    img.save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def sample_image_bytes():
    """Create a 200x100 white image with a black rectangle."""
    img = Image.new("RGB", (200, 100), color="white")
    pixels = img.load()
    for i in range(50, 150):
        for j in range(30, 70):
            pixels[i, j] = (0, 0, 0)
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def two_page_pdf_bytes():
    """Two 200x100pt pages."""
    first = Image.new("RGB", (200, 100), color="white")
    second = Image.new("RGB", (200, 100), color="black")
    buffer = io.BytesIO()
    first.save(buffer, format="PDF", save_all=True, append_images=[second], resolution=72.0)
    return buffer.getvalue()


class TestValidation:
    """Upload validation."""

    def test_validate_valid_image(self, preprocessor, sample_image_bytes):
        is_valid, error = preprocessor.validate_image(sample_image_bytes, "test.png")
        assert is_valid is True
        assert error == ""

    def test_validate_invalid_extension(self, preprocessor, sample_image_bytes):
        is_valid, error = preprocessor.validate_image(sample_image_bytes, "test.gif")
        assert is_valid is False
        assert "Allowed formats" in error

    def test_validate_image_too_small(self, preprocessor):
        is_valid, error = preprocessor.validate_image(image_bytes((50, 50)), "small.png")
        assert is_valid is False
        assert "too small" in error.lower()

    def test_invalid_image_data(self, preprocessor):
        is_valid, error = preprocessor.validate_image(b"not an image", "test.png")
        assert is_valid is False
        assert "Unable to read" in error

    def test_empty_image_data(self, preprocessor):
        is_valid, error = preprocessor.validate_image(b"", "test.png")
        assert is_valid is False
        assert error == "Empty file."

    def test_pdf_header_checked(self, preprocessor, two_page_pdf_bytes):
        assert preprocessor.validate_image(two_page_pdf_bytes, "manifest.PDF") == (True, "")
        is_valid, error = preprocessor.validate_image(b"hello", "manifest.pdf")
        assert is_valid is False
        assert "%PDF" in error

    def test_get_image_info(self, preprocessor, sample_image_bytes):
        info = preprocessor.get_image_info(sample_image_bytes)
        assert info["format"] == "PNG"
        assert info["width"] == 200
        assert info["height"] == 100
        assert info["size_bytes"] > 0


class TestContrast:
    """Grayscale and contrast stretch around mid-gray."""

    def test_luminance_rounding(self):
        rgb = np.array([[[100, 150, 200]]], dtype=np.uint8)
        assert to_grayscale(rgb)[0, 0] == 141

    def test_enhance_contrast_values(self, preprocessor):
        rgb = np.array([[[100, 150, 200], [255, 255, 255], [0, 0, 0], [128, 128, 128]]], dtype=np.uint8)
        result = preprocessor.enhance_contrast(rgb, factor=2.0)
        assert result.shape == (1, 4)
        assert result.dtype == np.uint8
        assert result.tolist() == [[154, 255, 0, 128]]

    def test_factor_one_is_grayscale(self, preprocessor):
        rgb = np.array([[[100, 150, 200]]], dtype=np.uint8)
        assert preprocessor.enhance_contrast(rgb, factor=1.0)[0, 0] == 141

    def test_default_factor_from_settings(self, preprocessor):
        gray = np.array([[138]], dtype=np.uint8)
        expected = 128 + (138 - 128) * preprocessor.settings.contrast_factor
        assert preprocessor.enhance_contrast(gray)[0, 0] == round(expected)


class TestLoadPages:
    """Images and PDFs become RGB page arrays."""

    def test_single_image(self, preprocessor, sample_image_bytes):
        pages = preprocessor.load_pages(sample_image_bytes, "label.png")
        assert len(pages) == 1
        page = pages[0]
        assert page.page_number == 1
        assert (page.width, page.height) == (200, 100)
        assert page.image.shape == (100, 200, 3)

    def test_grayscale_image_converted_to_rgb(self, preprocessor):
        img = Image.new("L", (120, 120), color=200)
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        pages = preprocessor.load_pages(buffer.getvalue(), "gray.png")
        assert pages[0].image.shape == (120, 120, 3)

    def test_pdf_pages_rendered(self, preprocessor, two_page_pdf_bytes):
        pages = preprocessor.load_pages(two_page_pdf_bytes, "manifest.pdf")
        assert [p.page_number for p in pages] == [1, 2]
        scale = preprocessor.settings.pdf_render_scale
        assert abs(pages[0].width - 200 * scale) <= 2
        assert pages[0].image.ndim == 3
        assert pages[1].image.mean() < pages[0].image.mean()
