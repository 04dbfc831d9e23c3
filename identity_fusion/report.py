from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .models import FusionMatch, ScoreReport


@dataclass
class ReportMatch:
    identity_id: Optional[str]
    identity_name: str
    scores: List[ScoreReport]

    @classmethod
    def from_match(cls, match: FusionMatch) -> "ReportMatch":
        return cls(identity_id=match.identity_id, identity_name=match.identity_name, scores=list(match.scores))

    def to_record(self) -> Dict[str, object]:
        return {
            "identityId": self.identity_id,
            "identityName": self.identity_name,
            "scores": [score.to_record() for score in self.scores],
        }


@dataclass
class ReportEntry:
    account_id: str
    account_name: str
    source_name: str
    outcome: str
    matches: List[ReportMatch] = field(default_factory=list)

    def to_record(self) -> Dict[str, object]:
        return {
            "accountId": self.account_id,
            "accountName": self.account_name,
            "sourceName": self.source_name,
            "outcome": self.outcome,
            "matches": [match.to_record() for match in self.matches],
        }


@dataclass
class FusionReport:
    """Scored candidates collected during a run."""

    entries: List[ReportEntry] = field(default_factory=list)
    failures: List[Dict[str, str]] = field(default_factory=list)
    include_non_matches: bool = True

    def add(
        self,
        account_id: str,
        account_name: str,
        source_name: str,
        outcome: str,
        matches: Optional[List[FusionMatch]] = None,
    ) -> None:
        if outcome == "unmatched" and not self.include_non_matches:
            return
        self.entries.append(
            ReportEntry(
                account_id=account_id,
                account_name=account_name,
                source_name=source_name,
                outcome=outcome,
                matches=[ReportMatch.from_match(match) for match in matches or []],
            )
        )

    def add_failure(self, account: str, attribute: str, message: str) -> None:
        self.failures.append({"account": account, "attribute": attribute, "message": message})

    def counts(self) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        for entry in self.entries:
            totals[entry.outcome] = totals.get(entry.outcome, 0) + 1
        return totals

    def to_dict(self) -> Dict[str, object]:
        return {
            "summary": self.counts(),
            "entries": [entry.to_record() for entry in self.entries],
            "failures": list(self.failures),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)

    def render_text(self) -> str:
        lines: List[str] = []
        summary = ", ".join(f"{count} {outcome}" for outcome, count in sorted(self.counts().items()))
        lines.append(f"Fusion report: {summary or 'no accounts processed'}")
        for entry in self.entries:
            lines.append(f"- {entry.account_name} [{entry.source_name}]: {entry.outcome}")
            for match in entry.matches:
                lines.append(f"    candidate {match.identity_name} ({match.identity_id})")
                for score in match.scores:
                    verdict = "match" if score.is_match else "no match"
                    detail = f" - {score.comment}" if score.comment else ""
                    lines.append(
                        f"      {score.attribute} [{score.algorithm}]: {score.score} / {score.fusion_score:g} {verdict}{detail}"
                    )
        for failure in self.failures:
            lines.append(f"! {failure['account']}: {failure['attribute']} failed: {failure['message']}")
        return "\n".join(lines)
