"""Merchant match engine.

Decides whether the merchant name read from a receipt belongs to the
business whose QR code the customer scanned.  OCR output is noisy
(branch suffixes, dropped letters, payment-terminal headers), so the
decision is a cascade of increasingly lenient checks where the first
success wins:

1. ``exact`` - normalised strings are equal.
2. ``containment`` - one space-free string contains the other.  The
   detected name may only be the *contained* side when it is at least
   ``min_contained_length`` characters long.
3. ``words`` - weighted overlap of words of ``min_word_length`` or more
   characters, compared against ``word_ratio_threshold``.
4. ``brand`` - a word of each name starts with the same well-known
   brand token.
5. ``similarity`` - normalised Levenshtein similarity of the
   space-free strings, compared against ``similarity_threshold``.

``match`` is pure and returns a ``MatchResult`` naming the deciding
stage and its score.  ``traced_match`` wraps it with logging.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional

from loyalty.core.config import DEFAULT_BRAND_TOKENS, settings
from loyalty.models.enums import MatchStage

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9 ]")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class MatchPolicy:
    """Thresholds of the match cascade.

    The defaults reproduce the production tuning.  Changing any of them
    moves the false-accept / false-reject rates of merchant verification.
    """

    min_contained_length: int = 4
    min_word_length: int = 3
    exact_word_weight: float = 1.0
    partial_word_weight: float = 0.7
    word_ratio_threshold: float = 0.40
    similarity_threshold: float = 0.50
    brand_tokens: FrozenSet[str] = field(default_factory=lambda: frozenset(DEFAULT_BRAND_TOKENS))

    @classmethod
    def from_settings(cls) -> "MatchPolicy":
        return cls(
            min_contained_length=settings.MATCH_MIN_CONTAINED_LENGTH,
            min_word_length=settings.MATCH_MIN_WORD_LENGTH,
            partial_word_weight=settings.MATCH_PARTIAL_WORD_WEIGHT,
            word_ratio_threshold=settings.MATCH_WORD_RATIO_THRESHOLD,
            similarity_threshold=settings.MATCH_SIMILARITY_THRESHOLD,
            brand_tokens=frozenset(compact(normalize(t)) for t in settings.MATCH_BRAND_TOKENS if t.strip()),
        )


@dataclass(frozen=True)
class MatchResult:
    matched: bool
    stage: MatchStage
    score: Optional[float] = None

    def __bool__(self) -> bool:
        return self.matched


def normalize(value: str) -> str:
    """Lowercase, keep only ``[a-z0-9 ]``, collapse whitespace and trim."""
    lowered = _WHITESPACE.sub(" ", (value or "").lower())
    return _WHITESPACE.sub(" ", _NON_ALNUM.sub("", lowered)).strip()


def compact(value: str) -> str:
    return value.replace(" ", "")


def levenshtein(a: str, b: str) -> int:
    """Edit distance (insertions, deletions, substitutions) between two strings."""
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """``(max_len - distance) / max_len``; two empty strings are identical."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return (longest - levenshtein(a, b)) / longest


def _words(value: str, min_length: int) -> List[str]:
    return [w for w in value.split(" ") if len(w) >= min_length]


def word_ratio(expected: str, detected: str, policy: MatchPolicy) -> float:
    """Weighted share of expected words found among detected words.

    Each expected word is credited once, by the first detected word that
    equals it (full weight) or contains / is contained by it (partial
    weight).
    """
    expected_words = _words(expected, policy.min_word_length)
    detected_words = _words(detected, policy.min_word_length)
    total = 0.0
    for ew in expected_words:
        for dw in detected_words:
            if ew == dw:
                total += policy.exact_word_weight
                break
            if ew in dw or dw in ew:
                total += policy.partial_word_weight
                break
    return total / max(1, len(expected_words))


def _has_brand_word(words: List[str], token: str) -> bool:
    # Prefix so glued OCR output ("petronmain") still carries the brand
    return any(word.startswith(token) for word in words)


def shared_brand(expected: str, detected: str, tokens: Iterable[str]) -> Optional[str]:
    """Brand token that starts a word in both normalised names, if any."""
    expected_words = expected.split(" ")
    detected_words = detected.split(" ")
    for token in sorted(tokens):
        if token and _has_brand_word(expected_words, token) and _has_brand_word(detected_words, token):
            return token
    return None


def match(expected_name: str, detected_name: str, policy: Optional[MatchPolicy] = None) -> MatchResult:
    """Run the match cascade and report the deciding stage."""
    policy = policy or MatchPolicy.from_settings()

    if not detected_name or not detected_name.strip():
        return MatchResult(False, MatchStage.EMPTY)

    expected = normalize(expected_name)
    detected = normalize(detected_name)
    # Punctuation-only input normalises to nothing and can never validate
    if not detected or not expected:
        return MatchResult(False, MatchStage.EMPTY)

    if expected == detected:
        return MatchResult(True, MatchStage.EXACT, 1.0)

    expected_c = compact(expected)
    detected_c = compact(detected)
    if expected_c in detected_c:
        return MatchResult(True, MatchStage.CONTAINMENT, 1.0)
    if detected_c in expected_c and len(detected_c) >= policy.min_contained_length:
        return MatchResult(True, MatchStage.CONTAINMENT, len(detected_c) / len(expected_c))

    ratio = word_ratio(expected, detected, policy)
    if ratio >= policy.word_ratio_threshold:
        return MatchResult(True, MatchStage.WORDS, ratio)

    if shared_brand(expected, detected, policy.brand_tokens):
        return MatchResult(True, MatchStage.BRAND, 1.0)

    score = similarity(expected_c, detected_c)
    if score >= policy.similarity_threshold:
        return MatchResult(True, MatchStage.SIMILARITY, score)
    return MatchResult(False, MatchStage.NONE, score)


def names_match(expected_name: str, detected_name: str, policy: Optional[MatchPolicy] = None) -> bool:
    return match(expected_name, detected_name, policy).matched


def traced_match(
    expected_name: str,
    detected_name: str,
    policy: Optional[MatchPolicy] = None,
    receipt_id: Optional[str] = None,
) -> MatchResult:
    """``match`` with a log line describing the decision."""
    result = match(expected_name, detected_name, policy)
    score = f"{result.score:.2f}" if result.score is not None else "-"
    logger.info(
        "[match] receipt=%s expected=%r detected=%r matched=%s stage=%s score=%s",
        receipt_id,
        expected_name,
        detected_name,
        result.matched,
        result.stage.value,
        score,
    )
    return result
