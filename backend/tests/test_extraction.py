"""Tests for code extraction from recognizer output."""

import pytest
from scanmatch.services.extraction import (
    CodeExtractor,
    CandidateSource,
    ExtractionStrategy,
    group_words_into_lines,
    scale_confidence,
    NO_TEXT_MESSAGE,
)
from scanmatch.services.ocr import RecognitionResult, OCRLine, OCRWord


@pytest.fixture
def extractor():
    """Create extractor for 2M codes of length 14."""
    return CodeExtractor(prefixes="2M", target_length=14)


def make_word(text: str, top: int, left: int = 0, confidence: float = 0.9) -> OCRWord:
    """Word box of fixed size at the given position."""
    return OCRWord(
        text=text,
        confidence=confidence,
        bbox=[[left, top], [left + 80, top], [left + 80, top + 20], [left, top + 20]],
    )


def make_recognition_result(lines: list = None, words: list = None, text: str = "") -> RecognitionResult:
    """
    Helper to create a RecognitionResult.

    Args:
        lines: List of (text, confidence) tuples
        words: List of OCRWord
        text: Raw text
    """
    return RecognitionResult(
        text=text,
        lines=[OCRLine(text=t, confidence=c) for t, c in (lines or [])],
        words=words or [],
    )


class TestLineStrategy:
    """Structured lines with confidence."""

    def test_exact_code_round_trip(self, extractor):
        result = extractor.extract(make_recognition_result(lines=[("2M123456789012", 0.93)]))
        assert result.codes == ["2M123456789012"]
        assert result.strategy == ExtractionStrategy.LINES
        assert result.candidates[0].confidence == 93.0
        assert result.candidates[0].source == CandidateSource.LINES

    def test_long_match_truncated(self, extractor):
        result = extractor.extract(make_recognition_result(lines=[("2M0000000000019", 0.9)]))
        assert result.codes == ["2M000000000001"]

    def test_repair_before_matching(self, extractor):
        result = extractor.extract(make_recognition_result(lines=[("2M00000000000B", 0.9)]))
        assert result.codes == ["2M000000000008"]

    def test_several_codes_in_line(self, extractor):
        result = extractor.extract(
            make_recognition_result(lines=[("2M000000000001 2M000000000002", 0.9)])
        )
        assert result.codes == ["2M000000000001", "2M000000000002"]

    def test_deduplicated_in_order(self, extractor):
        result = extractor.extract(make_recognition_result(lines=[
            ("2M000000000002", 0.9),
            ("2m 000000000001", 0.9),
            ("2M000000000002", 0.8),
        ]))
        assert result.codes == ["2M000000000002", "2M000000000001"]

    def test_other_prefix_rejected(self, extractor):
        result = extractor.extract(make_recognition_result(lines=[
            ("1M000000000001", 0.9),
            ("hello", 0.9),
            ("", 0.0),
        ]))
        assert result.codes == []
        assert result.total_lines == 2
        assert result.empty_lines == 1
        assert result.rejected_lines == 2
        assert result.rejected_examples == ["1M000000000001", "hello"]

    def test_short_digit_run_rejected(self, extractor):
        result = extractor.extract(make_recognition_result(lines=[("2M00000001", 0.9)]))
        assert result.codes == []

    def test_rejected_examples_capped(self, extractor):
        lines = [(f"noise {i}", 0.5) for i in range(20)]
        result = extractor.extract(make_recognition_result(lines=lines))
        assert result.rejected_lines == 20
        assert len(result.rejected_examples) == 15


class TestWordStrategy:
    """Word boxes grouped into lines."""

    def test_group_words_into_lines(self):
        words = [
            make_word("B", 15, left=100),
            make_word("A", 10, left=0),
            make_word("C", 20, left=0),
        ]
        lines = group_words_into_lines(words, tolerance=6)
        assert [text for text, _ in lines] == ["A B", "C"]

    def test_words_used_without_lines(self, extractor):
        words = [
            make_word("2M000000000001", 10, left=0, confidence=0.8),
            make_word("BOX", 12, left=200, confidence=1.0),
            make_word("2M000000000002", 60, left=0, confidence=0.9),
        ]
        result = extractor.extract(make_recognition_result(words=words))
        assert result.strategy == ExtractionStrategy.WORDS
        assert result.codes == ["2M000000000001", "2M000000000002"]
        assert result.candidates[0].source == CandidateSource.WORDS
        assert result.candidates[0].confidence == pytest.approx(90.0)

    def test_split_code_found_by_window(self, extractor):
        words = [
            make_word("2M000000", 10, left=0),
            make_word("000001", 10, left=100),
        ]
        result = extractor.extract(make_recognition_result(words=words))
        assert result.codes == ["2M000000000001"]
        assert result.candidates[0].source == CandidateSource.WINDOW


class TestTextStrategy:
    """Raw text fallback."""

    def test_text_split_on_newlines(self, extractor):
        result = extractor.extract(make_recognition_result(text="foo\n2M000000000003\n\n"))
        assert result.strategy == ExtractionStrategy.TEXT
        assert result.codes == ["2M000000000003"]
        assert result.candidates[0].confidence == 0.0
        assert result.empty_lines == 2

    def test_nothing_recognized(self, extractor):
        result = extractor.extract(RecognitionResult.empty())
        assert result.codes == []
        assert result.strategy == ExtractionStrategy.NONE
        assert result.message == NO_TEXT_MESSAGE


class TestMerge:
    """Multi-page results."""

    def test_extract_pages_merges(self, extractor):
        pages = [
            make_recognition_result(lines=[("2M000000000001", 0.9), ("noise", 0.4)]),
            make_recognition_result(lines=[("2M000000000001", 0.9), ("2M000000000002", 0.7)]),
        ]
        result = extractor.extract_pages(pages)
        assert result.codes == ["2M000000000001", "2M000000000002"]
        assert result.pages == 2
        assert result.total_lines == 4
        assert result.rejected_lines == 1
        assert result.candidates[1].page == 2
        assert result.message is None


class TestScaleConfidence:
    def test_scaling(self):
        assert scale_confidence(0.5) == 50.0
        assert scale_confidence(87) == 87.0
        assert scale_confidence(None) == 0.0
        assert scale_confidence(150) == 100.0
