#!/usr/bin/env python3
"""
Tests for fuzzy matching, phone normalization and currency formatting helpers.
"""

import pytest

from utils.text_matching import levenshtein_distance, similarity, best_similarity, normalize_phone, format_currency


def test_levenshtein_distance():
    assert levenshtein_distance("kitten", "sitting") == 3
    assert levenshtein_distance("", "abc") == 3
    assert levenshtein_distance("same", "same") == 0


def test_similarity_is_case_insensitive_and_bounded():
    assert similarity("Home Depot", "home depot") == 1.0
    assert similarity("abcd", "abcf") == pytest.approx(0.75)
    assert similarity("", "anything") == 0.0
    assert similarity(None, "x") == 0.0


def test_best_similarity_skips_empty_values():
    score = best_similarity([None, "Smith Dock"], ["", None, "smith dock", "Jones"])
    assert score == 1.0
    assert best_similarity([None], ["abc"]) == 0.0


def test_normalize_phone():
    assert normalize_phone("+1 (555) 123-4567") == "5551234567"
    assert normalize_phone("555.123.4567") == "5551234567"
    assert normalize_phone(None) == ""


def test_format_currency():
    assert format_currency(1234.5) == "$1,234.50"
    assert format_currency(None) == "$0.00"
