"""Code extraction from recognizer output.

Strategies, in priority order:
1. Structured lines with confidence
2. Word boxes grouped into lines by vertical position
3. Raw text split on newlines

A secondary pass scans a rolling concatenation of consecutive word tokens
to catch codes the recognizer split in two.
"""

import re
from typing import Optional, List, Tuple, Iterable
from dataclasses import dataclass, field
from enum import Enum
import logging

from .barcode import normalize_barcode, PrefixFilter
from .ocr import RecognitionResult, OCRWord
from .postprocess import repair_ocr_text
from ..config import get_settings

logger = logging.getLogger(__name__)

# Examples of rejected lines kept for the status panel
MAX_REJECTED_EXAMPLES = 15
NO_TEXT_MESSAGE = "No text recognized"


class ExtractionStrategy(str, Enum):
    """Which recognizer structure produced the candidates."""
    LINES = "lines"
    WORDS = "words"
    TEXT = "text"
    NONE = "none"


class CandidateSource(str, Enum):
    LINES = "lines"
    WORDS = "words"
    TEXT = "text"
    WINDOW = "window"


@dataclass
class CodeCandidate:
    """A code found in recognized text."""
    code: str
    confidence: float  # 0-100
    source: CandidateSource
    page: int = 1


@dataclass
class ExtractionResult:
    """Candidates and line statistics for one or more pages."""
    candidates: List[CodeCandidate] = field(default_factory=list)
    strategy: ExtractionStrategy = ExtractionStrategy.NONE
    total_lines: int = 0
    empty_lines: int = 0
    rejected_lines: int = 0
    rejected_examples: List[str] = field(default_factory=list)
    pages: int = 1
    message: Optional[str] = None

    @property
    def codes(self) -> List[str]:
        return [c.code for c in self.candidates]

    def merge(self, other: "ExtractionResult") -> "ExtractionResult":
        """Combine per-page results, keeping the first occurrence of each code."""
        seen = set(self.codes)
        candidates = list(self.candidates)
        for candidate in other.candidates:
            if candidate.code not in seen:
                seen.add(candidate.code)
                candidates.append(candidate)

        strategy = self.strategy if self.strategy != ExtractionStrategy.NONE else other.strategy
        examples = (self.rejected_examples + other.rejected_examples)[:MAX_REJECTED_EXAMPLES]
        merged = ExtractionResult(
            candidates=candidates,
            strategy=strategy,
            total_lines=self.total_lines + other.total_lines,
            empty_lines=self.empty_lines + other.empty_lines,
            rejected_lines=self.rejected_lines + other.rejected_lines,
            rejected_examples=examples,
            pages=self.pages + other.pages,
        )
        if merged.total_lines == 0 and not candidates:
            merged.message = NO_TEXT_MESSAGE
        return merged


def scale_confidence(value: Optional[float]) -> float:
    """Recognizer confidence as 0-100 (0-1 inputs are scaled)."""
    if value is None:
        return 0.0
    value = float(value)
    if 0.0 <= value <= 1.0:
        value *= 100.0
    return round(max(0.0, min(value, 100.0)), 2)


def group_words_into_lines(words: List[OCRWord], tolerance: int = 6) -> List[Tuple[str, float]]:
    """
    Group word boxes into text lines by their top edge.

    A word joins the current group when its top is within tolerance of the
    group's first word. Returns (text, average_confidence) per group.
    """
    ordered = sorted((w for w in words if w.text.strip()), key=lambda w: w.top)
    groups: List[List[OCRWord]] = []
    for word in ordered:
        if groups and abs(word.top - groups[-1][0].top) <= tolerance:
            groups[-1].append(word)
        else:
            groups.append([word])

    lines = []
    for group in groups:
        group.sort(key=lambda w: w.left)
        text = " ".join(w.text.strip() for w in group).strip()
        confidence = sum(w.confidence for w in group) / len(group)
        lines.append((text, confidence))
    return lines


class CodeExtractor:
    """Finds fixed-format codes (prefix + digit run) in recognizer output."""

    def __init__(
        self,
        prefixes: Iterable[str] = None,
        target_length: Optional[int] = None,
        window_size: Optional[int] = None,
        line_tolerance: Optional[int] = None,
        min_repair_confidence: Optional[float] = None,
    ):
        self.settings = get_settings()
        if prefixes is None:
            prefixes = self.settings.allowed_prefixes
        self.prefix_filter = PrefixFilter(prefixes)
        self.target_length = target_length or self.settings.target_code_length
        self.window_size = window_size or self.settings.word_window_size
        self.line_tolerance = (
            line_tolerance if line_tolerance is not None else self.settings.word_line_tolerance_px
        )
        self.min_repair_confidence = (
            min_repair_confidence
            if min_repair_confidence is not None
            else self.settings.ocr_aggressive_repair_min_confidence
        )
        self.pattern = self._build_pattern()

    def _build_pattern(self) -> re.Pattern:
        alternatives = []
        for prefix in self.prefix_filter.prefixes:
            digits = max(self.target_length - len(prefix), 1)
            alternatives.append(rf"{re.escape(prefix)}\d{{{digits}}}\d*")
        if not alternatives:
            # Any two-character prefix
            alternatives.append(rf"[0-9A-Z]{{2}}\d{{{max(self.target_length - 2, 1)}}}\d*")
        return re.compile("|".join(f"(?:{a})" for a in alternatives))

    def find_codes(self, text: str) -> List[str]:
        """All codes in one (already repaired) line, truncated to the target length."""
        found = []
        for token in text.split():
            normalized = normalize_barcode(token)
            for match in self.pattern.finditer(normalized):
                code = match.group(0)[:self.target_length]
                if self.prefix_filter.accepts(code):
                    found.append(code)
        return found

    def extract(self, result: RecognitionResult, page: int = 1) -> ExtractionResult:
        """
        Extract candidate codes from one page of recognizer output.

        Args:
            result: Recognizer output for the page
            page: Page number recorded on each candidate

        Returns:
            ExtractionResult with de-duplicated candidates and line statistics
        """
        if result is None or result.is_empty:
            return ExtractionResult(message=NO_TEXT_MESSAGE, pages=1)

        extraction = ExtractionResult(pages=1)
        seen = set()

        structured = [(l.text or "", l.confidence) for l in result.lines]
        if structured:
            extraction.strategy = ExtractionStrategy.LINES
            self._scan_lines(structured, CandidateSource.LINES, page, extraction, seen)
        else:
            grouped = group_words_into_lines(result.words, self.line_tolerance) if result.words else []
            word_extraction = ExtractionResult(pages=1)
            word_seen = set()
            if grouped:
                self._scan_lines(grouped, CandidateSource.WORDS, page, word_extraction, word_seen)
            if word_extraction.candidates:
                word_extraction.strategy = ExtractionStrategy.WORDS
                extraction, seen = word_extraction, word_seen
            else:
                raw_lines = [(t, None) for t in (result.text or "").split("\n")]
                extraction.strategy = ExtractionStrategy.TEXT
                self._scan_lines(raw_lines, CandidateSource.TEXT, page, extraction, seen)

        self._scan_windows(result, page, extraction, seen)

        if extraction.total_lines == 0 and not extraction.candidates:
            extraction.message = NO_TEXT_MESSAGE

        logger.info(
            f"Extraction page {page}: strategy={extraction.strategy.value}, "
            f"lines={extraction.total_lines}, candidates={len(extraction.candidates)}, "
            f"rejected={extraction.rejected_lines}"
        )
        return extraction

    def _scan_lines(
        self,
        lines: List[Tuple[str, Optional[float]]],
        source: CandidateSource,
        page: int,
        extraction: ExtractionResult,
        seen: set,
    ) -> None:
        for text, confidence in lines:
            stripped = text.strip()
            if not stripped:
                extraction.empty_lines += 1
                continue
            extraction.total_lines += 1

            scaled = scale_confidence(confidence)
            gate_confidence = scaled if confidence is not None else None
            repaired = repair_ocr_text(stripped, gate_confidence, self.min_repair_confidence)
            codes = self.find_codes(repaired)
            if not codes:
                extraction.rejected_lines += 1
                if len(extraction.rejected_examples) < MAX_REJECTED_EXAMPLES:
                    extraction.rejected_examples.append(stripped)
                continue

            for code in codes:
                if code not in seen:
                    seen.add(code)
                    extraction.candidates.append(
                        CodeCandidate(code=code, confidence=scaled, source=source, page=page)
                    )

    def _window_tokens(self, result: RecognitionResult) -> List[Tuple[str, Optional[float]]]:
        if result.words:
            ordered = []
            tolerance = self.line_tolerance
            rows: List[List[OCRWord]] = []
            for word in sorted(result.words, key=lambda w: w.top):
                if rows and abs(word.top - rows[-1][0].top) <= tolerance:
                    rows[-1].append(word)
                else:
                    rows.append([word])
            for row in rows:
                ordered.extend(sorted(row, key=lambda w: w.left))
            return [(w.text, w.confidence) for w in ordered if w.text.strip()]
        source = "\n".join(l.text for l in result.lines) if result.lines else (result.text or "")
        return [(token, None) for token in source.split()]

    def _scan_windows(self, result: RecognitionResult, page: int, extraction: ExtractionResult, seen: set) -> None:
        tokens = self._window_tokens(result)
        for start in range(len(tokens)):
            for size in range(2, self.window_size + 1):
                chunk = tokens[start:start + size]
                if len(chunk) < size:
                    break
                joined = "".join(normalize_barcode(t) for t, _ in chunk)
                confidences = [c for _, c in chunk if c is not None]
                confidence = sum(confidences) / len(confidences) if confidences else None
                scaled = scale_confidence(confidence)
                repaired = repair_ocr_text(
                    joined, scaled if confidence is not None else None, self.min_repair_confidence
                )
                for code in self.find_codes(repaired):
                    if code not in seen:
                        seen.add(code)
                        extraction.candidates.append(
                            CodeCandidate(code=code, confidence=scaled, source=CandidateSource.WINDOW, page=page)
                        )

    def extract_pages(self, results: List[RecognitionResult]) -> ExtractionResult:
        """Extract and merge every page of a multi-page upload."""
        merged: Optional[ExtractionResult] = None
        for number, result in enumerate(results, start=1):
            page_result = self.extract(result, page=number)
            merged = page_result if merged is None else merged.merge(page_result)
        if merged is None:
            return ExtractionResult(message=NO_TEXT_MESSAGE, pages=0)
        return merged
