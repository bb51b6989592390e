"""
Text normalization shared by every matcher in the simulator.
Canonical lowercase ASCII plus deterministic seeded choices.
"""

import re
import unicodedata
from functools import lru_cache
from typing import Any, Optional, Sequence


def normalize_to_ascii_lower(text: Any) -> str:
    """
    Normalize text to lowercase ASCII for consistent pattern matching.

    Examples:
        "Hello World" -> "hello world"
        "Café" -> "cafe"
        "  Multiple   Spaces  " -> "multiple spaces"
        None -> ""
    """
    if text is None:
        return ""
    decomposed = unicodedata.normalize("NFKD", str(text).lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", stripped).strip()


@lru_cache(maxsize=1024)
def _term_pattern(term: str) -> "re.Pattern":
    return re.compile(r"(?<![a-z0-9])" + re.escape(term))


def contains_term(text: str, term: str) -> bool:
    """
    Check whether a vocabulary term occurs in text.

    Both sides are normalized. The term must start at a word boundary, so
    "age" matches "aged 54" but not "manage".
    """
    normalized_term = normalize_to_ascii_lower(term)
    if not normalized_term:
        return False
    return bool(_term_pattern(normalized_term).search(normalize_to_ascii_lower(text)))


def contains_any(text: str, terms: Sequence[str]) -> bool:
    """True if any of the terms occurs in text."""
    normalized = normalize_to_ascii_lower(text)
    return any(contains_term(normalized, term) for term in terms)


def compute_deterministic_int(seed_text: Any, min_inclusive: int, max_inclusive: int) -> int:
    """
    Compute a deterministic integer in [min_inclusive, max_inclusive] from text.

    Uses a 31-multiplier rolling hash truncated to 32 bits so the same seed
    always lands on the same value across processes.
    """
    text = str(seed_text) if seed_text else "seed"
    value = 0
    for ch in text:
        value = (value * 31 + ord(ch)) & 0xFFFFFFFF
    span = max(1, max_inclusive - min_inclusive + 1)
    return min_inclusive + (value % span)


def pick_deterministic_option(seed_text: Any, options: Sequence[Any]) -> Optional[Any]:
    """Pick one option based on seed text. Returns None for empty options."""
    if not options:
        return None
    index = compute_deterministic_int(seed_text, 0, len(options) - 1)
    return options[index]
