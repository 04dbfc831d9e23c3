from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable, List, Mapping, Tuple

from ..config import MatchingSettings
from ..models import AttributeValue, FusionMatch, ScoreReport, value_as_text
from .scorers import score
from .string_comparison import round_half_up

if TYPE_CHECKING:  # pragma: no cover
    from ..fusion_account import FusionAccount

logger = logging.getLogger(__name__)

AVERAGE_ATTRIBUTE = "Average Score"
AVERAGE_ALGORITHM = "average"


class MatchingEngine:
    """Scores a candidate account against existing fusion identities.

    Outside report and average-score mode a failing mandatory rule stops the
    comparison with that identity. In report mode every rule is scored so the
    full evidence is available, but the verdict is unchanged.
    """

    def __init__(self, matching: MatchingSettings, *, report_mode: bool = False) -> None:
        self.matching = matching
        self.report_mode = report_mode

    @property
    def full_run(self) -> bool:
        return self.report_mode or self.matching.use_average_score

    def compare(
        self,
        candidate: Mapping[str, AttributeValue],
        identity: Mapping[str, AttributeValue],
    ) -> Tuple[bool, List[ScoreReport]]:
        scores: List[ScoreReport] = []
        has_mandatory = False
        mandatory_failed = False
        any_failed = False
        for rule in self.matching.rules:
            value_a = value_as_text(candidate.get(rule.attribute))
            value_b = value_as_text(identity.get(rule.attribute))
            if value_a is None or value_b is None:
                continue
            report = score(value_a, value_b, rule)
            scores.append(report)
            if rule.mandatory:
                has_mandatory = True
            if report.is_match:
                continue
            any_failed = True
            if rule.mandatory:
                mandatory_failed = True
                if not self.full_run:
                    return False, scores
        if not scores:
            return False, scores
        if self.matching.use_average_score:
            return self._average(scores)
        if has_mandatory:
            return not mandatory_failed, scores
        return not any_failed, scores

    def _average(self, scores: List[ScoreReport]) -> Tuple[bool, List[ScoreReport]]:
        threshold = float(self.matching.average_score or 0)
        mean = sum(report.score for report in scores) / len(scores)
        is_match = mean >= threshold
        comment = "Average score is above threshold" if is_match else "Average score is below threshold"
        scores.append(
            ScoreReport(
                attribute=AVERAGE_ATTRIBUTE,
                algorithm=AVERAGE_ALGORITHM,
                score=round_half_up(mean),
                fusion_score=threshold,
                is_match=is_match,
                comment=comment,
            )
        )
        return is_match, scores

    def score_fusion_account(self, candidate: "FusionAccount", pool: Iterable["FusionAccount"]) -> List[FusionMatch]:
        """Attach a FusionMatch to ``candidate`` for every identity in ``pool`` it matches."""
        matches: List[FusionMatch] = []
        for identity in pool:
            if identity is candidate:
                continue
            is_match, scores = self.compare(candidate.attributes, identity.attributes)
            if not is_match:
                continue
            match = FusionMatch(fusion_identity=identity, scores=scores)
            candidate.add_fusion_match(match)
            matches.append(match)
        if matches:
            logger.debug("%s matched %d identity(ies)", candidate.name, len(matches))
        return matches
