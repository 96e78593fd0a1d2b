"""Tests for the EasyOCR wrapper, with the reader replaced by a stub."""

import numpy as np
import pytest

from scanmatch.services.errors import RecognitionError
from scanmatch.services.ocr import OCRService


class StubReader:
    def __init__(self, detections=None, error=None):
        self.detections = detections or []
        self.error = error

    def readtext(self, image, **kwargs):
        if self.error:
            raise self.error
        return self.detections


def box(x, y, w=100, h=20):
    return [[x, y], [x + w, y], [x + w, y + h], [x, y + h]]


@pytest.fixture
def page():
    return np.full((200, 300), 255, dtype=np.uint8)


@pytest.fixture
def service(monkeypatch):
    def install(reader):
        monkeypatch.setattr(OCRService, "_reader", reader)
        monkeypatch.setattr(OCRService, "_initialized", reader is not None)
        return OCRService()
    return install


class TestRecognize:
    def test_not_initialized(self, service, page):
        ocr = service(None)
        assert not ocr.is_ready
        with pytest.raises(RecognitionError, match="not initialized"):
            ocr.recognize(page)

    def test_reader_failure_raises(self, service, page):
        ocr = service(StubReader(error=RuntimeError("CUDA out of memory")))
        with pytest.raises(RecognitionError) as exc_info:
            ocr.recognize(page)
        assert exc_info.value.message == "OCR processing failed"
        assert exc_info.value.detail == "CUDA out of memory"

    def test_words_in_reading_order(self, service, page):
        ocr = service(StubReader([
            (box(150, 12), "0001", 0.8),
            (box(10, 10), "2M00000000", 0.9),
            (box(10, 60), "2M000000000002", 0.7),
            (box(10, 100), "   ", 0.1),
        ]))
        result = ocr.recognize(page)
        assert result.text == "2M00000000 0001\n2M000000000002"
        assert [w.text for w in result.words] == ["0001", "2M00000000", "2M000000000002"]
        assert not result.is_empty

    def test_nothing_recognized(self, service, page):
        result = service(StubReader([])).recognize(page)
        assert result.is_empty
