import unittest

from identity_fusion.config import MatchingRule, MatchingSettings
from identity_fusion.fusion_account import FusionAccount
from identity_fusion.scoring import MatchingEngine
from identity_fusion.scoring.engine import AVERAGE_ATTRIBUTE


def identity(identity_id: str, **attributes) -> FusionAccount:
    return FusionAccount(kind="fusion", native_identity=identity_id, name=identity_id, identity_id=identity_id, attributes=attributes)


def candidate(**attributes) -> FusionAccount:
    return FusionAccount(kind="managed", native_identity="acc-1", name="candidate", attributes=attributes)


class TestCompare(unittest.TestCase):
    def setUp(self):
        self.settings = MatchingSettings(
            rules=[
                MatchingRule(attribute="email", algorithm="jaro-winkler", fusion_score=95, mandatory=True),
                MatchingRule(attribute="name", algorithm="jaro-winkler", fusion_score=90),
            ]
        )

    def test_mandatory_failure_stops_comparison(self):
        engine = MatchingEngine(self.settings)
        is_match, scores = engine.compare(
            {"email": "alice@example.com", "name": "Alice"},
            {"email": "zed@other.org", "name": "Alice"},
        )
        self.assertFalse(is_match)
        self.assertEqual([report.attribute for report in scores], ["email"])

    def test_report_mode_scores_every_rule_but_keeps_verdict(self):
        engine = MatchingEngine(self.settings, report_mode=True)
        is_match, scores = engine.compare(
            {"email": "alice@example.com", "name": "Alice"},
            {"email": "zed@other.org", "name": "Alice"},
        )
        self.assertFalse(is_match)
        self.assertEqual([report.attribute for report in scores], ["email", "name"])

    def test_mandatory_rules_decide_when_present(self):
        engine = MatchingEngine(self.settings)
        is_match, scores = engine.compare(
            {"email": "alice@example.com", "name": "Alice"},
            {"email": "alice@example.com", "name": "Bob"},
        )
        self.assertTrue(is_match)
        self.assertFalse(scores[1].is_match)

    def test_all_rules_must_pass_without_mandatory(self):
        settings = MatchingSettings(
            rules=[
                MatchingRule(attribute="email", algorithm="dice", fusion_score=90),
                MatchingRule(attribute="name", algorithm="dice", fusion_score=90),
            ]
        )
        engine = MatchingEngine(settings)
        is_match, _ = engine.compare({"email": "a@b.io", "name": "Alice"}, {"email": "a@b.io", "name": "Bob"})
        self.assertFalse(is_match)

    def test_absent_values_are_skipped(self):
        engine = MatchingEngine(self.settings)
        is_match, scores = engine.compare({"name": "Alice"}, {"email": "alice@example.com", "name": "Alice"})
        self.assertTrue(is_match)
        self.assertEqual([report.attribute for report in scores], ["name"])

    def test_no_comparable_values_is_no_match(self):
        engine = MatchingEngine(self.settings)
        self.assertEqual(engine.compare({"phone": "1"}, {"phone": "1"}), (False, []))

    def test_average_mode_ignores_mandatory_gate(self):
        settings = MatchingSettings(
            rules=[
                MatchingRule(attribute="email", algorithm="dice", fusion_score=100, mandatory=True),
                MatchingRule(attribute="name", algorithm="dice", fusion_score=100),
            ],
            use_average_score=True,
            average_score=50,
        )
        engine = MatchingEngine(settings)
        is_match, scores = engine.compare({"email": "xx", "name": "Alice"}, {"email": "yy", "name": "Alice"})
        self.assertTrue(is_match)
        self.assertEqual(len(scores), 3)
        average = scores[-1]
        self.assertEqual(average.attribute, AVERAGE_ATTRIBUTE)
        self.assertEqual(average.score, 50)
        self.assertTrue(average.is_match)
        self.assertEqual(average.comment, "Average score is above threshold")


class TestScoreFusionAccount(unittest.TestCase):
    def test_records_every_matching_identity(self):
        settings = MatchingSettings(rules=[MatchingRule(attribute="name", algorithm="dice", fusion_score=90)])
        engine = MatchingEngine(settings)
        pool = [identity("id-1", name="Alice Doe"), identity("id-2", name="Alice Doe"), identity("id-3", name="Bob")]
        account = candidate(name="Alice Doe")
        matches = engine.score_fusion_account(account, pool)
        self.assertEqual([match.identity_id for match in matches], ["id-1", "id-2"])
        self.assertEqual(account.fusion_matches, matches)
        self.assertTrue(all(match.all_scores_perfect() for match in matches))

    def test_mandatory_gate_never_records_match(self):
        settings = MatchingSettings(
            rules=[
                MatchingRule(attribute="employeeId", algorithm="dice", fusion_score=100, mandatory=True),
                MatchingRule(attribute="name", algorithm="dice", fusion_score=50),
            ]
        )
        engine = MatchingEngine(settings)
        account = candidate(employeeId="E1", name="Alice Doe")
        matches = engine.score_fusion_account(account, [identity("id-1", employeeId="E2", name="Alice Doe")])
        self.assertEqual(matches, [])
        self.assertFalse(account.is_match)


if __name__ == "__main__":
    unittest.main()
