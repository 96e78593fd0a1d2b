"""Heuristic repair of common OCR digit/letter confusions.

The recognizer regularly reads 8 as B, 5 as S and 0 as O inside long
numeric runs. The rules only fire when the letter touches digits so that
alphabetic prefixes survive.
"""

import re
from typing import List, Optional, Tuple

# (pattern, replacement) applied in order, per letter/digit pair
_CONTEXT_RULES: List[Tuple[re.Pattern, str]] = []
for _letter, _digit in (("B", "8"), ("S", "5"), ("O", "0")):
    _CONTEXT_RULES.extend([
        (re.compile(rf"(\d){_letter}(\d)"), rf"\g<1>{_digit}\g<2>"),   # between digits
        (re.compile(rf"{_letter}(\d{{2,}})"), rf"{_digit}\g<1>"),      # before 2+ digits
        (re.compile(rf"(\d{{2,}}){_letter}"), rf"\g<1>{_digit}"),      # after 2+ digits
    ])

# Whole-token gate for the aggressive pass
CODE_LIKE_PATTERN = re.compile(r"^[A-Z0-9]{6,}$")
_B_BEFORE_DIGIT = re.compile(r"B(?=\d)")
_B_AFTER_DIGIT = re.compile(r"(?<=\d)B")


def repair_ocr_text(text: str, confidence: Optional[float] = None, min_confidence: float = 0.0) -> str:
    """
    Repair recognizer confusions in a single line of text.

    Args:
        text: Raw recognized line
        confidence: Recognizer confidence for the line (0-100), if known
        min_confidence: Skip the aggressive B->8 pass below this confidence

    Returns:
        Repaired text (deterministic, no side effects)
    """
    if not text:
        return text

    processed = text
    for pattern, replacement in _CONTEXT_RULES:
        processed = pattern.sub(replacement, processed)

    gate_open = confidence is None or confidence >= min_confidence
    if gate_open and CODE_LIKE_PATTERN.match(processed):
        processed = _B_BEFORE_DIGIT.sub("8", processed)
        processed = _B_AFTER_DIGIT.sub("8", processed)

    return processed
