"""
Composite person-name similarity.

Blends token alignment (tolerant of reordering and initials), phonetic token
alignment and Jaro-Winkler over the whole normalized name. All functions are
pure.
"""

from __future__ import annotations

import re

from .phonetic import phonetic_codes
from .string_comparison import jaro_winkler, strip_diacritics

TOKEN_WEIGHT = 0.5
PHONETIC_WEIGHT = 0.3
STRING_WEIGHT = 0.2
INITIAL_SCORE = 0.8
TOKEN_JW_FLOOR = 0.8

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_name(value: str) -> str:
    """
    Normalize a person name for comparison.

    Examples:
        "José  O'Brien" -> "jose obrien"
        "SMITH, John"   -> "smith john"
    """
    text = strip_diacritics(str(value).lower())
    text = _NON_ALNUM.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


def token_similarity(left: list[str], right: list[str]) -> float:
    if not left or not right:
        return 0.0
    used: set[int] = set()
    total = 0.0
    for token in left:
        best_score = 0.0
        best_index = -1
        for index, other in enumerate(right):
            if index in used:
                continue
            if token == other:
                best_score, best_index = 1.0, index
                break
            if len(token) == 1 or len(other) == 1:
                # initial against a full token
                if token[0] == other[0] and INITIAL_SCORE > best_score:
                    best_score, best_index = INITIAL_SCORE, index
            else:
                score = jaro_winkler(token, other)
                if score > best_score and score > TOKEN_JW_FLOOR:
                    best_score, best_index = score, index
        if best_index >= 0:
            total += best_score
            used.add(best_index)
    return total / max(len(left), len(right))


def phonetic_similarity(left: list[str], right: list[str]) -> float:
    left_valid = [token for token in left if len(token) > 1]
    right_valid = [token for token in right if len(token) > 1]
    if not left_valid or not right_valid:
        return 0.0
    right_codes = [phonetic_codes(token) for token in right_valid]
    matches = 0
    for token in left_valid:
        codes = phonetic_codes(token)
        if any(codes & other for other in right_codes):
            matches += 1
    return matches / max(len(left_valid), len(right_valid))


def name_similarity(left: str, right: str) -> float:
    """Similarity of two person names in ``[0, 1]``."""
    if not left or not right:
        return 0.0
    first = normalize_name(left)
    second = normalize_name(right)
    if not first or not second:
        return 0.0
    if first == second:
        return 1.0
    left_tokens = first.split(" ")
    right_tokens = second.split(" ")
    return (
        token_similarity(left_tokens, right_tokens) * TOKEN_WEIGHT
        + phonetic_similarity(left_tokens, right_tokens) * PHONETIC_WEIGHT
        + jaro_winkler(first, second) * STRING_WEIGHT
    )
