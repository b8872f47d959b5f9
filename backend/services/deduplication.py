"""
Fuzzy deduplication of freeform text lists (pain points, next steps).

Repeated analysis passes produce near-identical entries ("Schedule demo" /
"Schedule a demo call").  Two items are treated as the same when, after
normalization, they are equal, one contains the other, or the Jaccard
overlap of their significant words reaches the threshold.

First occurrence wins and input order is preserved.
"""

import logging
import re
from typing import Any, Iterable, Optional

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.8

_PUNCTUATION_RE = re.compile(r"[.,!?;:'\"]")
_WHITESPACE_RE = re.compile(r"\s+")

# Words this short carry no signal for the token-set comparison
MIN_SIGNIFICANT_WORD_LENGTH = 3


def normalize_text(text: str) -> str:
    """Lowercase, trim, drop punctuation and collapse whitespace."""
    lowered = _PUNCTUATION_RE.sub("", text.lower().strip())
    return _WHITESPACE_RE.sub(" ", lowered).strip()


def _significant_words(normalized: str) -> set[str]:
    return {w for w in normalized.split(" ") if len(w) >= MIN_SIGNIFICANT_WORD_LENGTH}


def word_jaccard(a: str, b: str) -> float:
    """
    Jaccard similarity of the significant words of two normalized strings.

    Two empty word sets count as identical (1.0); one empty set as disjoint.
    """
    words_a = _significant_words(a)
    words_b = _significant_words(b)
    if not words_a and not words_b:
        return 1.0
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def is_similar(a: str, b: str, threshold: float = DEFAULT_SIMILARITY_THRESHOLD) -> bool:
    """Compare two already-normalized, non-empty strings."""
    if a == b:
        return True
    shorter, longer = (a, b) if len(a) <= len(b) else (b, a)
    if shorter and shorter in longer:
        return True
    return word_jaccard(a, b) >= threshold


def dedupe(
    items: Optional[Iterable[str]],
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> list[str]:
    """Remove near-duplicates, keeping the first occurrence of each.

    Kept items are returned trimmed; items that normalize to nothing are
    dropped.
    """
    if not items:
        return []

    kept: list[str] = []
    kept_normalized: list[str] = []
    for item in items:
        if not isinstance(item, str):
            continue
        normalized = normalize_text(item)
        if not normalized:
            continue
        if any(is_similar(normalized, existing, threshold) for existing in kept_normalized):
            continue
        kept.append(item.strip())
        kept_normalized.append(normalized)
    return kept


def merge_and_dedupe(
    existing: Optional[Iterable[str]],
    incoming: Optional[Iterable[str]],
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> list[str]:
    """Reconcile a stored list with new entries: ``dedupe(existing + incoming)``."""
    return dedupe([*(existing or []), *(incoming or [])], threshold)


def dedupe_pain_points(items: Optional[Iterable[str]]) -> list[str]:
    return dedupe(items)


def dedupe_next_steps(items: Optional[Iterable[str]]) -> list[str]:
    return dedupe(items)


# Deal analysis payload keys that hold freeform text lists
ANALYSIS_LIST_FIELDS: tuple[str, ...] = (
    "pain_points",
    "next_steps",
    "blockers",
    "opportunities",
)


def clean_deal_analysis(data: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of an analysis payload with every text-list field deduplicated."""
    cleaned = dict(data)
    for field_name in ANALYSIS_LIST_FIELDS:
        value = cleaned.get(field_name)
        if isinstance(value, list):
            before = len(value)
            cleaned[field_name] = dedupe(value)
            if len(cleaned[field_name]) != before:
                logger.debug(
                    "Removed %d duplicate %s entries",
                    before - len(cleaned[field_name]),
                    field_name,
                )
    return cleaned
