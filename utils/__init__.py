# utils/__init__.py
from .text_matching import (
    levenshtein_distance,
    similarity,
    best_similarity,
    normalize_phone,
    format_currency,
)

__all__ = [
    'levenshtein_distance', 'similarity', 'best_similarity', 'normalize_phone', 'format_currency',
]
