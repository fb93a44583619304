"""
Text matching utilities – fuzzy string similarity, phone normalization and money formatting.

Use anywhere (receipt matching, webhooks, scripts) without DB or GHL API dependencies.
"""

import re
from typing import Iterable, Optional

# ---------------------------------------------------------------------------
# String similarity
# ---------------------------------------------------------------------------


def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance between two strings (insert, delete, substitute all cost 1)."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(a: Optional[str], b: Optional[str]) -> float:
    """
    Normalized similarity in [0, 1]: 1 - distance / longer length.
    Comparison is case-insensitive; an empty side scores 0.
    """
    a = (a or "").strip().lower()
    b = (b or "").strip().lower()
    if not a or not b:
        return 0.0
    longest = max(len(a), len(b))
    return 1.0 - levenshtein_distance(a, b) / longest


def best_similarity(needles: Iterable[Optional[str]], haystacks: Iterable[Optional[str]]) -> float:
    haystacks = [h for h in haystacks if h]
    best = 0.0
    for needle in needles:
        if not needle:
            continue
        for haystack in haystacks:
            best = max(best, similarity(needle, haystack))
    return best


# ---------------------------------------------------------------------------
# Phones & money
# ---------------------------------------------------------------------------

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: Optional[str]) -> str:
    """Digits only, last 10 (drops country code and formatting)."""
    return _NON_DIGITS.sub("", phone or "")[-10:]


def format_currency(amount: Optional[float]) -> str:
    """USD display format, e.g. $1,234.56"""
    return f"${float(amount or 0):,.2f}"
