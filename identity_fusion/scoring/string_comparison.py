"""
String similarity measures used by the scorers.

All functions are pure and return a similarity in ``[0, 1]`` (LIG3 works on a
0-100 scale internally, like the other percentage helpers in this package).
"""

from __future__ import annotations

import math
import re
import unicodedata

from rapidfuzz.distance import JaroWinkler

WINKLER_PREFIX_WEIGHT = 0.1

_WHITESPACE = re.compile(r"\s+")


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def bigrams(value: str) -> set[str]:
    return {value[i : i + 2] for i in range(len(value) - 1)}


def dice_coefficient(left: str, right: str) -> float:
    """Sorensen-Dice coefficient over the sets of character bigrams."""
    if left == right:
        return 1.0
    if len(left) < 2 or len(right) < 2:
        return 0.0
    left_pairs = bigrams(left)
    right_pairs = bigrams(right)
    overlap = len(left_pairs & right_pairs)
    return 2.0 * overlap / (len(left_pairs) + len(right_pairs))


def jaro_winkler(left: str, right: str) -> float:
    """Jaro similarity with the Winkler boost for a common prefix of up to 4 chars."""
    if left == right:
        return 1.0
    if not left or not right:
        return 0.0
    return JaroWinkler.similarity(left, right, prefix_weight=WINKLER_PREFIX_WEIGHT)


def strip_diacritics(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_for_lig3(value: str) -> str:
    return _WHITESPACE.sub(" ", strip_diacritics(value.lower()).strip())


def lig3_edit_similarity(left: str, right: str) -> float:
    """Weighted edit distance turned into a 0-100 similarity.

    Gaps cost 0.8 on the borders and 0.9 inside, substitutions 1 and adjacent
    transpositions 0.5.
    """
    rows, cols = len(left), len(right)
    longest = max(rows, cols)
    if longest == 0:
        return 100.0
    previous2: list[float] = []
    previous = [j * 0.8 for j in range(cols + 1)]
    for i in range(1, rows + 1):
        current = [i * 0.8] + [0.0] * cols
        for j in range(1, cols + 1):
            cost = 0 if left[i - 1] == right[j - 1] else 1
            best = min(previous[j - 1] + cost, current[j - 1] + 0.9, previous[j] + 0.9)
            if i > 1 and j > 1 and left[i - 1] == right[j - 2] and left[i - 2] == right[j - 1]:
                best = min(best, previous2[j - 2] + 0.5)
            current[j] = best
        previous2, previous = previous, current
    distance = previous[cols]
    return max(0.0, (longest - distance) / longest * 100)


def lig3_token_bonus(left: str, right: str) -> float:
    left_tokens = [token for token in left.split(" ") if token]
    right_tokens = [token for token in right.split(" ") if token]
    if len(left_tokens) <= 1 and len(right_tokens) <= 1:
        return 0.0
    used: set[int] = set()
    matched = 0
    for token in left_tokens:
        for index, other in enumerate(right_tokens):
            if index in used:
                continue
            if token == other or (len(token) > 2 and other.startswith(token[:2])):
                matched += 1
                used.add(index)
                break
    return matched / max(len(left_tokens), len(right_tokens)) * 100


def common_prefix_length(left: str, right: str) -> int:
    count = 0
    for a, b in zip(left, right):
        if a != b:
            break
        count += 1
    return count


def lig3_prefix_bonus(left: str, right: str) -> float:
    return min(common_prefix_length(left, right), 5) / 5 * 100


def lig3_score(left: str, right: str) -> float:
    """Blend of edit similarity (70%), token alignment (20%) and prefix (10%), capped at 100.

    Expects both values already passed through :func:`normalize_for_lig3`.
    """
    raw = (
        lig3_edit_similarity(left, right) * 0.7
        + lig3_token_bonus(left, right) * 0.2
        + lig3_prefix_bonus(left, right) * 0.1
    )
    return min(100.0, raw)
