"""
Per-algorithm scorers.

Every scorer has the signature ``score(value_a, value_b, rule) -> ScoreReport``,
is deterministic and reports ``is_match == score >= rule.fusion_score``.
"""

from __future__ import annotations

from typing import Callable, Dict, Optional

from ..config import MatchingRule
from ..models import ScoreReport
from .name_matching import name_similarity
from .phonetic import double_metaphone
from .string_comparison import (
    dice_coefficient,
    jaro_winkler,
    lig3_score,
    normalize_for_lig3,
    round_half_up,
)

Scorer = Callable[[str, str, MatchingRule], ScoreReport]


def _report(rule: MatchingRule, score: int, comment: Optional[str] = None) -> ScoreReport:
    return ScoreReport(
        attribute=rule.attribute,
        algorithm=rule.algorithm,
        score=score,
        fusion_score=rule.fusion_score,
        is_match=score >= rule.fusion_score,
        comment=comment,
    )


def score_dice(value_a: str, value_b: str, rule: MatchingRule) -> ScoreReport:
    return _report(rule, round_half_up(dice_coefficient(value_a, value_b) * 100))


def score_jaro_winkler(value_a: str, value_b: str, rule: MatchingRule) -> ScoreReport:
    return _report(rule, round_half_up(jaro_winkler(value_a, value_b) * 100))


def score_name_matcher(value_a: str, value_b: str, rule: MatchingRule) -> ScoreReport:
    return _report(rule, round_half_up(name_similarity(value_a, value_b) * 100))


def score_double_metaphone(value_a: str, value_b: str, rule: MatchingRule) -> ScoreReport:
    a_primary, a_secondary = double_metaphone(value_a)
    b_primary, b_secondary = double_metaphone(value_b)
    if a_primary and a_primary == b_primary:
        return _report(rule, 100, "Primary codes match")
    if a_secondary and a_secondary == b_secondary:
        return _report(rule, 80, "Secondary codes match")
    if (a_primary and a_primary == b_secondary) or (a_secondary and a_secondary == b_primary):
        return _report(rule, 70, "Cross-match between primary and secondary codes")
    return _report(rule, 0, "No phonetic match")


def lig3_comment(score: int) -> str:
    if score >= 95:
        return "Very high similarity"
    if score >= 80:
        return "High similarity with minor differences"
    if score >= 60:
        return "Moderate similarity detected"
    if score >= 40:
        return "Low similarity, possible match"
    return "Low similarity"


def score_lig3(value_a: str, value_b: str, rule: MatchingRule) -> ScoreReport:
    left = normalize_for_lig3(value_a)
    right = normalize_for_lig3(value_b)
    if left == right:
        return _report(rule, 100, "Exact match")
    if not left or not right:
        return _report(rule, 0, "Empty string comparison")
    score = round_half_up(lig3_score(left, right))
    return _report(rule, score, lig3_comment(score))


SCORERS: Dict[str, Scorer] = {
    "dice": score_dice,
    "jaro-winkler": score_jaro_winkler,
    "name-matcher": score_name_matcher,
    "double-metaphone": score_double_metaphone,
    "lig3": score_lig3,
}


def get_scorer(algorithm: str) -> Scorer:
    try:
        return SCORERS[algorithm]
    except KeyError:
        raise ValueError(f"Unknown matching algorithm: {algorithm}") from None


def score(value_a: str, value_b: str, rule: MatchingRule) -> ScoreReport:
    return get_scorer(rule.algorithm)(value_a, value_b, rule)
