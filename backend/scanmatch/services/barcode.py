"""Barcode normalization shared by the OCR, scan and inventory flows."""

import re
from typing import Iterable, List, Optional

# Zero-width space/non-joiner/joiner and the byte order mark
_INVISIBLE_CHARS = re.compile("[%s-%s%s]" % (chr(0x200B), chr(0x200D), chr(0xFEFF)))
_SEPARATORS = re.compile(r"[\s-]+")


def normalize_barcode(raw: Optional[str]) -> str:
    """
    Canonicalize scanned or recognized text into a comparable code.

    Trims, drops zero-width characters, removes whitespace and hyphens
    and uppercases. No prefix or length validation happens here.
    """
    if not raw:
        return ""
    trimmed = str(raw).strip()
    cleaned = _INVISIBLE_CHARS.sub("", trimmed)
    return _SEPARATORS.sub("", cleaned).upper()


def parse_prefixes(text: Optional[str]) -> List[str]:
    """Split a comma separated prefix list ("1M, 2M") into clean prefixes."""
    if not text:
        return []
    return [p.strip().upper() for p in text.split(",") if p.strip()]


class PrefixFilter:
    """Accepts codes starting with one of the allowed prefixes."""

    def __init__(self, prefixes: Iterable[str] = ()):
        if isinstance(prefixes, str):
            prefixes = parse_prefixes(prefixes)
        self.prefixes = [p.upper() for p in prefixes if p]

    def accepts(self, code: str) -> bool:
        if not code:
            return False
        if not self.prefixes:
            return True
        return any(code.startswith(p) for p in self.prefixes)

    @property
    def label(self) -> str:
        """Provenance tag stored alongside rows ("prefixes" column)."""
        return ",".join(self.prefixes)


def suffix_matches(code: str, query: str, length: int = 3) -> bool:
    """
    Match a code by its last characters, the way operators search a list
    by reading the tail digits off a label.
    """
    q = (query or "").strip().upper()
    if not q:
        return True
    c = code.upper()
    if len(q) < length:
        return c.endswith(q)
    return c[-length:] == q[-length:]
