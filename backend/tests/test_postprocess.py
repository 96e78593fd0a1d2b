"""Tests for OCR digit/letter repair."""

from scanmatch.services.postprocess import repair_ocr_text


class TestContextRules:
    """Letters touching digits are repaired."""

    def test_trailing_b_after_digit_run(self):
        assert repair_ocr_text("2M00000000000B") == "2M000000000008"

    def test_letter_between_digits(self):
        assert repair_ocr_text("1B2") == "182"
        assert repair_ocr_text("2M0000S0000001") == "2M000050000001"

    def test_letter_before_digit_run(self):
        assert repair_ocr_text("O12345") == "012345"

    def test_letter_after_digit_run(self):
        assert repair_ocr_text("12O") == "120"

    def test_alphabetic_words_untouched(self):
        assert repair_ocr_text("BOX 12") == "BOX 12"
        assert repair_ocr_text("SOB") == "SOB"

    def test_empty(self):
        assert repair_ocr_text("") == ""


class TestAggressivePass:
    """B next to any digit in a code-like token."""

    def test_code_like_token(self):
        assert repair_ocr_text("AB1CDEF") == "A81CDEF"

    def test_not_code_like_with_space(self):
        assert repair_ocr_text("AB1 CDEF") == "AB1 CDEF"

    def test_too_short(self):
        assert repair_ocr_text("AB1CD") == "AB1CD"

    def test_confidence_gate(self):
        """Low recognizer confidence skips the aggressive pass only."""
        assert repair_ocr_text("AB1CDEF", confidence=40, min_confidence=50) == "AB1CDEF"
        assert repair_ocr_text("AB1CDEF", confidence=60, min_confidence=50) == "A81CDEF"
        assert repair_ocr_text("2M00000000000B", confidence=10, min_confidence=50) == "2M000000000008"

    def test_deterministic(self):
        assert repair_ocr_text("2MB0O00S000001") == repair_ocr_text("2MB0O00S000001")
