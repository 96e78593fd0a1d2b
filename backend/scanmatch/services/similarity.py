"""Similarity scoring for probable OCR misreads between two codes."""

import re
from typing import Optional, List, Iterable
from dataclasses import dataclass, field
from enum import Enum
import logging

from rapidfuzz.distance import Hamming

logger = logging.getLogger(__name__)

_LEADING_LETTERS = re.compile(r"^[A-Z]+")

# Rule 3 acceptance: matched characters / shorter length
ALIGNMENT_MIN_RATIO = 0.85
# Score when the numeric parts are identical down to the anchored suffix
EMPTY_HEAD_SCORE = 0.9


class SimilarityRule(str, Enum):
    """Which rule produced a similarity score."""
    SUFFIX = "suffix"
    HAMMING = "hamming"
    ALIGNMENT = "alignment"


@dataclass
class SimilarityScore:
    """Accepted similarity between two codes."""
    similarity: float
    rule: SimilarityRule
    explanation: str


@dataclass
class SimilarityCandidate:
    """A ranked candidate for one unmatched code."""
    code: str
    similarity: float
    rule: SimilarityRule
    explanation: str


@dataclass
class CorrectionProposal:
    """Advisory correction candidates for one unmatched code."""
    unmatched_code: str
    missing_candidates: List[SimilarityCandidate] = field(default_factory=list)
    scanned_candidates: List[SimilarityCandidate] = field(default_factory=list)

    @property
    def best(self) -> Optional[SimilarityCandidate]:
        return self.missing_candidates[0] if self.missing_candidates else None


def numeric_part(code: str) -> str:
    """Code with its leading alphabetic prefix removed."""
    return _LEADING_LETTERS.sub("", code or "")


def _best_alignment(shorter: str, longer: str) -> int:
    best = 0
    for offset in range(len(longer) - len(shorter) + 1):
        window = longer[offset:offset + len(shorter)]
        matches = len(shorter) - Hamming.distance(shorter, window)
        if matches > best:
            best = matches
    return best


def score_similarity(
    a: str,
    b: str,
    suffix_length: int = 3,
    strict: bool = False,
) -> Optional[SimilarityScore]:
    """
    Score whether two codes are probably the same item misread by OCR.

    Rules are tried in order and the first qualifying rule wins:
    anchored suffix, equal-length Hamming, then sliding alignment.

    Args:
        a: First normalized code
        b: Second normalized code
        suffix_length: Characters that must agree for the suffix rule
        strict: Allow at most one difference under the suffix rule

    Returns:
        SimilarityScore, or None when no rule qualifies
    """
    na, nb = numeric_part(a), numeric_part(b)
    if not na or not nb:
        return None

    # Rule 1: anchored suffix
    if len(na) >= suffix_length and len(nb) >= suffix_length and na[-suffix_length:] == nb[-suffix_length:]:
        head_a, head_b = na[:-suffix_length], nb[:-suffix_length]
        diff = Hamming.distance(head_a, head_b, pad=True)
        max_len = max(len(head_a), len(head_b))
        allowed = 1 if strict else 2
        if max_len == 0:
            return SimilarityScore(
                similarity=EMPTY_HEAD_SCORE,
                rule=SimilarityRule.SUFFIX,
                explanation=f"Last {suffix_length} digits identical",
            )
        if diff <= allowed:
            return SimilarityScore(
                similarity=1 - diff / max_len,
                rule=SimilarityRule.SUFFIX,
                explanation=f"Last {suffix_length} digits match, {diff} difference(s) before them",
            )

    # Rule 2: equal length
    if len(na) == len(nb):
        distance = Hamming.distance(na, nb)
        if 0 < distance <= 2:
            return SimilarityScore(
                similarity=1 - distance / len(na),
                rule=SimilarityRule.HAMMING,
                explanation=f"{distance} differing position(s) over {len(na)} characters",
            )
        return None

    # Rule 3: different lengths
    shorter, longer = (na, nb) if len(na) < len(nb) else (nb, na)
    matches = _best_alignment(shorter, longer)
    if matches / len(shorter) >= ALIGNMENT_MIN_RATIO:
        return SimilarityScore(
            similarity=matches / len(longer),
            rule=SimilarityRule.ALIGNMENT,
            explanation=f"{matches}/{len(shorter)} characters align (length {len(shorter)} vs {len(longer)})",
        )
    return None


class SimilarityMatcher:
    """Ranks expected codes against unmatched scans and proposes corrections."""

    def __init__(
        self,
        threshold: float = 0.7,
        top_n: int = 5,
        suffix_length: int = 3,
        target_length: int = 14,
        strict: bool = False,
    ):
        self.threshold = threshold
        self.top_n = top_n
        self.suffix_length = suffix_length
        self.target_length = target_length
        self.strict = strict

    def score(self, a: str, b: str) -> Optional[SimilarityScore]:
        return score_similarity(a, b, suffix_length=self.suffix_length, strict=self.strict)

    def rank_candidates(self, code: str, pool: Iterable[str]) -> List[SimilarityCandidate]:
        """Top-N pool entries at or above the threshold, best first."""
        candidates = []
        for other in pool:
            if other == code:
                continue
            result = self.score(code, other)
            if result is None or result.similarity < self.threshold:
                continue
            candidates.append(SimilarityCandidate(
                code=other,
                similarity=round(result.similarity, 4),
                rule=result.rule,
                explanation=result.explanation,
            ))
        candidates.sort(key=lambda c: (-c.similarity, c.code))
        return candidates[:self.top_n]

    def propose(
        self,
        unmatched: Iterable[str],
        missing: Iterable[str],
        expected: Optional[Iterable[str]] = None,
        seen: Optional[Iterable[str]] = None,
    ) -> List[CorrectionProposal]:
        """
        Build one proposal per unmatched code.

        When expected and seen are given (extended mode) the expected codes
        that were already scanned are ranked as a separate group.
        """
        missing = list(missing)
        scanned_pool: List[str] = []
        if expected is not None and seen is not None:
            seen_set = set(seen)
            scanned_pool = [code for code in expected if code in seen_set]

        proposals = []
        for code in unmatched:
            proposal = CorrectionProposal(
                unmatched_code=code,
                missing_candidates=self.rank_candidates(code, missing),
            )
            if scanned_pool:
                proposal.scanned_candidates = self.rank_candidates(code, scanned_pool)
            proposals.append(proposal)

        with_candidates = sum(1 for p in proposals if p.missing_candidates)
        logger.info(f"Similarity: {with_candidates}/{len(proposals)} unmatched codes have candidates")
        return proposals

    def normalize_to_length(self, code: str) -> str:
        """Keep the first target_length characters; shorter codes are kept as-is."""
        if len(code) > self.target_length:
            return code[:self.target_length]
        return code
