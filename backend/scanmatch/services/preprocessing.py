"""Image loading and contrast enhancement ahead of recognition.

Manifests arrive as photos or multi-page PDFs. Every page is turned into
an RGB array, then into the high-contrast grayscale the recognizer reads
best on printed barcode labels.
"""

import cv2
import numpy as np
import pdfplumber
from PIL import Image
import io
from typing import Tuple, List
from dataclasses import dataclass
import logging

from ..config import get_settings

logger = logging.getLogger(__name__)

# ITU-R BT.601 luma weights (R, G, B)
_LUMA = np.array([0.299, 0.587, 0.114])


@dataclass
class PageImage:
    """One page of an upload, ready for recognition."""
    page_number: int
    image: np.ndarray  # RGB
    width: int
    height: int


def to_grayscale(rgb: np.ndarray) -> np.ndarray:
    """Rounded luminance grayscale of an RGB array."""
    if rgb.ndim == 2:
        return rgb.astype(np.uint8)
    gray = rgb[..., :3].astype(np.float64) @ _LUMA
    return np.clip(np.floor(gray + 0.5), 0, 255).astype(np.uint8)


def contrast_table(factor: float) -> np.ndarray:
    """Lookup table for clamp((v - 128) * factor + 128)."""
    values = (np.arange(256, dtype=np.float64) - 128) * factor + 128
    return np.clip(np.floor(values + 0.5), 0, 255).astype(np.uint8)


class ImagePreprocessor:
    """Validates uploads, splits them into pages and enhances contrast."""

    def __init__(self):
        self.settings = get_settings()

    @staticmethod
    def is_pdf(filename: str) -> bool:
        return filename.lower().endswith(".pdf")

    def enhance_contrast(self, image: np.ndarray, factor: float = None) -> np.ndarray:
        """
        Grayscale and stretch contrast around mid-gray.

        gray = round(0.299R + 0.587G + 0.114B), then
        clamp((gray - 128) * factor + 128, 0, 255).

        Args:
            image: RGB (or already grayscale) uint8 array
            factor: Contrast factor, defaults to settings.contrast_factor

        Returns:
            Single-channel uint8 array
        """
        if factor is None:
            factor = self.settings.contrast_factor
        gray = to_grayscale(image)
        return cv2.LUT(gray, contrast_table(factor))

    def load_pages(self, data: bytes, filename: str) -> List[PageImage]:
        """
        Turn an upload into RGB page images.

        Images yield a single page. PDFs are rendered page by page at
        pdf_render_scale (72dpi base).
        """
        if self.is_pdf(filename):
            return self._render_pdf(data)
        image = self._load_image(data)
        h, w = image.shape[:2]
        return [PageImage(page_number=1, image=image, width=w, height=h)]

    def _render_pdf(self, data: bytes) -> List[PageImage]:
        resolution = int(72 * self.settings.pdf_render_scale)
        pages = []
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            for number, page in enumerate(pdf.pages, start=1):
                rendered = page.to_image(resolution=resolution).original
                image = np.array(rendered.convert("RGB"))
                h, w = image.shape[:2]
                pages.append(PageImage(page_number=number, image=image, width=w, height=h))
        logger.info(f"Rendered {len(pages)} PDF page(s) at {resolution}dpi")
        return pages

    def _load_image(self, image_bytes: bytes) -> np.ndarray:
        """Load image bytes as an RGB array."""
        pil_image = Image.open(io.BytesIO(image_bytes))
        if pil_image.mode != "RGB":
            pil_image = pil_image.convert("RGB")
        return np.array(pil_image)

    def get_image_info(self, image_bytes: bytes) -> dict:
        """Get basic image information without decoding pixels."""
        pil_image = Image.open(io.BytesIO(image_bytes))
        return {
            "format": pil_image.format,
            "mode": pil_image.mode,
            "width": pil_image.width,
            "height": pil_image.height,
            "size_bytes": len(image_bytes),
            "size_mb": len(image_bytes) / (1024 * 1024)
        }

    def validate_image(self, image_bytes: bytes, filename: str) -> Tuple[bool, str]:
        """
        Validate an upload before recognition.

        Returns:
            Tuple of (is_valid, error_message)
        """
        ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
        if ext not in self.settings.allowed_extensions:
            allowed = ", ".join(sorted(self.settings.allowed_extensions)).upper()
            return False, f"Invalid file type. Allowed formats: {allowed}"

        size_mb = len(image_bytes) / (1024 * 1024)
        if size_mb > self.settings.max_upload_size_mb:
            return False, f"File exceeds {self.settings.max_upload_size_mb}MB upload limit."

        if not image_bytes:
            return False, "Empty file."

        if ext == "pdf":
            if not image_bytes.startswith(b"%PDF"):
                return False, "Unable to read PDF: missing %PDF header"
            return True, ""

        min_dim = self.settings.min_image_dimension
        try:
            info = self.get_image_info(image_bytes)
            if info["width"] < min_dim or info["height"] < min_dim:
                return False, f"Image too small. Minimum dimensions: {min_dim}x{min_dim} pixels."
        except Exception as e:
            return False, f"Unable to read image: {str(e)}"

        return True, ""
