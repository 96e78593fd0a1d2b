"""OCR service using EasyOCR.

The recognizer is a black box: it receives an enhanced page image and
returns word boxes with confidences. Everything downstream works on the
RecognitionResult built here.
"""

import numpy as np
from typing import Optional, List, Tuple
from dataclasses import dataclass, field
import logging
import os
import re
import threading
import time
import unicodedata

from .errors import RecognitionError
from ..config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class OCRWord:
    """A recognized word (or short phrase) with its bounding box."""
    text: str
    confidence: float
    bbox: List[List[int]]  # [[x1,y1], [x2,y2], [x3,y3], [x4,y4]]

    @property
    def top(self) -> int:
        """Top Y coordinate (minimum Y)."""
        return min(p[1] for p in self.bbox)

    @property
    def left(self) -> int:
        """Left X coordinate (minimum X)."""
        return min(p[0] for p in self.bbox)


@dataclass
class OCRLine:
    """A recognized line with the recognizer's own confidence."""
    text: str
    confidence: float


@dataclass
class RecognitionResult:
    """Recognizer output for one page."""
    text: str = ""
    lines: List[OCRLine] = field(default_factory=list)
    words: List[OCRWord] = field(default_factory=list)
    processing_time_ms: float = 0.0

    @classmethod
    def empty(cls) -> "RecognitionResult":
        """Result for a page with nothing recognized."""
        return cls()

    @property
    def is_empty(self) -> bool:
        return not self.lines and not self.words and not self.text.strip()


def _normalize_text(text: str) -> str:
    normalized = unicodedata.normalize("NFKC", text)
    return re.sub(r"\s+", " ", normalized).strip()


class OCRService:
    """EasyOCR wrapper, one reader per process."""

    _instance: Optional["OCRService"] = None
    _reader = None
    _initialized = False
    _lock = threading.Lock()
    _semaphore: Optional[threading.Semaphore] = None

    def __new__(cls):
        """Singleton pattern to reuse OCR engine."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        self.settings = get_settings()
        if self._semaphore is None:
            OCRService._semaphore = threading.Semaphore(self.settings.ocr_max_concurrent)

    def initialize(self) -> bool:
        """
        Initialize OCR engine. Call on app startup.
        Thread-safe initialization.

        Returns:
            True if initialization successful
        """
        with self._lock:
            if self._initialized:
                return True

            try:
                import easyocr
                import torch

                num_threads = int(os.environ.get("TORCH_NUM_THREADS", min(4, os.cpu_count() or 2)))
                torch.set_num_threads(num_threads)

                logger.info(f"Initializing EasyOCR ({','.join(self.settings.ocr_languages)}) with {num_threads} threads...")

                model_dir = os.environ.get("EASYOCR_MODULE_PATH")
                kwargs = {"gpu": False, "verbose": False}
                if model_dir:
                    kwargs["model_storage_directory"] = model_dir

                OCRService._reader = easyocr.Reader(list(self.settings.ocr_languages), **kwargs)
                OCRService._initialized = True
                logger.info("EasyOCR initialized successfully")
                return True

            except Exception as e:
                logger.error(f"Failed to initialize EasyOCR: {e}")
                return False

    @property
    def is_ready(self) -> bool:
        """Check if OCR engine is ready."""
        return self._initialized and self._reader is not None

    def recognize(self, image: np.ndarray) -> RecognitionResult:
        """
        Run one recognition pass on an enhanced page.

        Args:
            image: Grayscale or RGB page as numpy array

        Returns:
            RecognitionResult; empty when nothing was recognized

        Raises:
            RecognitionError: engine not initialized or readtext failed
        """
        if not self.is_ready:
            logger.error("OCR engine not initialized")
            raise RecognitionError("OCR engine not initialized")

        start = time.time()
        with self._semaphore:
            try:
                detections = self._reader.readtext(
                    image,
                    decoder="greedy",
                    batch_size=1,
                    paragraph=False,
                )
            except Exception as e:
                logger.error(f"OCR processing failed: {e}")
                raise RecognitionError("OCR processing failed", str(e)) from e

        words = []
        for bbox_points, text, confidence in detections:
            normalized = _normalize_text(text)
            if not normalized:
                continue
            words.append(OCRWord(
                text=normalized,
                confidence=float(confidence),
                bbox=[[int(p[0]), int(p[1])] for p in bbox_points],
            ))

        elapsed_ms = (time.time() - start) * 1000
        result = RecognitionResult(
            text=self._reading_order_text(words),
            words=words,
            processing_time_ms=elapsed_ms,
        )
        if words:
            avg = sum(w.confidence for w in words) / len(words)
            logger.info(f"OCR: {len(words)} words, avg_conf={avg:.2f}, time={elapsed_ms:.0f}ms")
        else:
            logger.warning("OCR returned no results")
        return result

    def _reading_order_text(self, words: List[OCRWord]) -> str:
        """Newline-separated text, one line per row of words."""
        if not words:
            return ""
        tolerance = self.settings.word_line_tolerance_px
        rows: List[Tuple[int, List[OCRWord]]] = []
        for word in sorted(words, key=lambda w: (w.top, w.left)):
            if rows and abs(word.top - rows[-1][0]) <= tolerance:
                rows[-1][1].append(word)
            else:
                rows.append((word.top, [word]))
        return "\n".join(
            " ".join(w.text for w in sorted(row, key=lambda w: w.left))
            for _, row in rows
        )
