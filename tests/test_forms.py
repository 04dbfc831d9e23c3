import unittest
from datetime import datetime, timedelta, timezone

from identity_fusion.config import RetrySettings, ReviewSettings
from identity_fusion.forms import FORM_RESPONSE, PENDING_FORM, FormService, form_name, parse_decision
from identity_fusion.fusion_account import FusionAccount
from identity_fusion.messaging import MessagingService
from identity_fusion.models import (
    FormDefinition,
    FormInstance,
    FusionMatch,
    IdentityRecord,
    ManagedAccount,
    ScoreReport,
)
from identity_fusion.platform import InMemoryPlatform
from identity_fusion.work_queue import WorkQueue

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def managed(account_id, name="Jane Doe"):
    return ManagedAccount(
        id=account_id,
        source_id="src-hr",
        source_name="HR",
        native_identity=account_id,
        name=name,
        attributes={"email": f"{account_id}@example.com"},
    )


def candidate(identity_id, name):
    account = FusionAccount.from_identity(IdentityRecord(id=identity_id, name=name, attributes={"email": "c@x.io"}))
    return FusionMatch(account, [ScoreReport("email", "jaro-winkler", 95, 90, True)])


class FormsTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.platform = InMemoryPlatform()
        self.review = ReviewSettings(form_attributes=["email"])
        self.messaging = MessagingService(self.platform)
        self.forms = FormService(
            self.platform,
            self.review,
            RetrySettings(max_retries=0),
            self.messaging,
            owner_id="owner-1",
            now=NOW,
        )
        self.queue = WorkQueue([("acc-1", managed("acc-1"))], name="managed accounts")

    def add_form(self, *instances, form_id="form-a"):
        self.platform.form_definitions[form_id] = FormDefinition(id=form_id, name="Fusion Review - Jane Doe [HR]")
        self.platform.form_instances[form_id] = list(instances)

    def instance(self, instance_id, state, recipient="rev-1", form_data=None, account_id="acc-1", form_id="form-a"):
        return FormInstance(
            id=instance_id,
            form_definition_id=form_id,
            state=state,
            recipients=[recipient],
            form_input={"account": {"id": account_id}, "candidates": [{"id": "id-1"}, {"id": "id-2"}]},
            form_data=form_data or {},
            url=f"https://forms/{instance_id}",
        )


class TestParseDecision(unittest.TestCase):
    def test_assignment(self):
        instance = FormInstance(
            "i1",
            "f1",
            "COMPLETED",
            recipients=["rev-1"],
            form_data={"newIdentity": False, "identities": ["id-7"], "submitterName": "Rita", "comments": "same"},
        )
        decision = parse_decision(instance, managed("acc-1"))
        self.assertFalse(decision.new_identity)
        self.assertEqual(decision.identity_id, "id-7")
        self.assertEqual(decision.submitter.name, "Rita")
        self.assertEqual(decision.account.source_name, "HR")
        self.assertEqual(decision.managed_account.id, "acc-1")

    def test_new_identity_is_default(self):
        instance = FormInstance("i1", "f1", "COMPLETED", recipients=["rev-1"])
        self.assertTrue(parse_decision(instance, managed("acc-1")).new_identity)

    def test_string_answers(self):
        for answer, expected in (("false", False), ("False", False), ("true", True), ("0", False), (1, True)):
            with self.subTest(answer=answer):
                instance = FormInstance(
                    "i1",
                    "f1",
                    "COMPLETED",
                    recipients=["rev-1"],
                    form_data={"newIdentity": answer, "identities": ["id-7"]},
                )
                decision = parse_decision(instance, managed("acc-1"))
                self.assertEqual(decision.new_identity, expected)
                self.assertEqual(decision.identity_id, None if expected else "id-7")

    def test_inconsistent_answer(self):
        instance = FormInstance("i1", "f1", "COMPLETED", recipients=["rev-1"], form_data={"newIdentity": False})
        with self.assertLogs("identity_fusion.forms", level="WARNING"):
            self.assertIsNone(parse_decision(instance, managed("acc-1")))
        self.assertIsNone(parse_decision(FormInstance("i2", "f1", "COMPLETED"), managed("acc-1")))

    def test_form_name(self):
        self.assertEqual(form_name("Fusion Review", "Jane", "HR"), "Fusion Review - Jane [HR]")


class TestAnalyzeForms(FormsTestCase):
    async def test_response_takes_account_and_records_decision(self):
        self.add_form(
            self.instance("i1", "ASSIGNED", recipient="rev-2"),
            self.instance("i2", "COMPLETED", form_data={"newIdentity": False, "identities": ["id-1"]}),
        )
        await self.forms.fetch_form_data(self.queue)
        self.assertNotIn("acc-1", self.queue)
        self.assertEqual(self.queue.taken_by("acc-1"), FORM_RESPONSE)
        decisions = self.forms.take_assignment_decisions("id-1")
        self.assertEqual(len(decisions), 1)
        self.assertEqual(decisions[0].managed_account.id, "acc-1")
        self.assertEqual(self.forms.take_assignment_decisions("id-1"), [])
        self.assertEqual(self.forms.forms_to_delete, {"form-a"})

        self.assertEqual(await self.forms.clean_up_forms(), 1)
        self.assertEqual(self.platform.form_definitions, {})

    async def test_new_identity_response(self):
        self.add_form(self.instance("i1", "IN_PROGRESS", form_data={"newIdentity": True}))
        await self.forms.fetch_form_data(self.queue)
        self.assertEqual(len(self.forms.new_identity_decisions), 1)
        self.assertEqual(len(self.queue), 0)

    async def test_pending_keeps_form_and_takes_account(self):
        self.add_form(self.instance("i1", "ASSIGNED"), self.instance("i2", "CANCELLED", recipient="rev-2"))
        await self.forms.fetch_form_data(self.queue)
        self.assertEqual(self.queue.taken_by("acc-1"), PENDING_FORM)
        self.assertEqual(self.forms.pending_reviews_for("rev-1"), ["https://forms/i1"])
        self.assertEqual(self.forms.pending_reviews_for("rev-2"), [])
        self.assertEqual(self.forms.pending_candidate_ids, {"id-1", "id-2"})
        self.assertEqual(self.forms.forms_to_delete, set())

    async def test_all_cancelled_deletes_form_and_requeues(self):
        self.add_form(self.instance("i1", "CANCELLED"), self.instance("i2", "cancelled", recipient="rev-2"))
        await self.forms.fetch_form_data(self.queue)
        self.assertIn("acc-1", self.queue)
        self.assertEqual(self.forms.forms_to_delete, {"form-a"})

    async def test_expired_instances_count_as_cancelled(self):
        expired = FormInstance(
            "i1",
            "form-a",
            "ASSIGNED",
            recipients=["rev-1"],
            form_input={"account": {"id": "acc-1"}},
            expire=datetime(2026, 2, 1),
        )
        self.add_form(expired, self.instance("i2", "CANCELLED", recipient="rev-2"))
        await self.forms.fetch_form_data(self.queue)
        self.assertIn("acc-1", self.queue)
        self.assertEqual(self.forms.forms_to_delete, {"form-a"})
        self.assertEqual(self.forms.pending_review_urls, {})

    async def test_account_no_longer_queued(self):
        self.add_form(self.instance("i1", "ASSIGNED", account_id="gone"))
        await self.forms.fetch_form_data(self.queue)
        self.assertEqual(self.forms.forms_to_delete, {"form-a"})
        self.assertIn("acc-1", self.queue)

    async def test_form_without_instances(self):
        self.add_form()
        await self.forms.fetch_form_data(self.queue)
        self.assertEqual(self.forms.forms_to_delete, {"form-a"})

    async def test_inconsistent_response_keeps_account_queued(self):
        self.add_form(self.instance("i1", "COMPLETED", form_data={"newIdentity": False}))
        with self.assertLogs("identity_fusion.forms", level="WARNING"):
            await self.forms.fetch_form_data(self.queue)
        self.assertIn("acc-1", self.queue)
        self.assertEqual(self.forms.forms_to_delete, {"form-a"})

    async def test_unfinished_decisions_are_kept_apart(self):
        decision = parse_decision(self.instance("i1", "COMPLETED"), managed("acc-1"))
        decision.finished = False
        self.forms.add_decision(decision)
        self.assertEqual(self.forms.unfinished_decisions, [decision])
        self.assertEqual(self.forms.new_identity_decisions, [])


class TestCreateReviewForm(FormsTestCase):
    def account(self, matches):
        account = FusionAccount.from_managed_account(managed("acc-1"))
        for match in matches:
            account.add_fusion_match(match)
        return account

    async def test_one_instance_per_reviewer(self):
        await self.messaging.fetch_sender()
        account = self.account([candidate("id-1", "Jane"), candidate("id-2", "Janet")])
        definition = await self.forms.create_review_form(account, ["rev-1", "rev-2"])
        self.assertEqual(definition.name, "Fusion Review - Jane Doe [HR]")
        self.assertEqual(definition.owner_id, "owner-1")
        instances = self.platform.form_instances[definition.id]
        self.assertEqual([instance.recipients for instance in instances], [["rev-1"], ["rev-2"]])
        self.assertEqual(instances[0].expire, NOW + timedelta(days=7))
        self.assertEqual(instances[0].account_id, "acc-1")
        self.assertEqual(instances[0].candidate_ids, ["id-1", "id-2"])
        self.assertEqual(instances[0].form_input["attributes"], {"email": "acc-1@example.com"})
        self.assertEqual(len(self.platform.notifications), 2)
        self.assertEqual(self.platform.notifications[0]["payload"]["sender"], "no-reply@example.com")
        self.assertEqual(self.forms.pending_reviews_for("rev-2"), [instances[1].url])

    async def test_no_reviewers(self):
        with self.assertLogs("identity_fusion.forms", level="WARNING"):
            self.assertIsNone(await self.forms.create_review_form(self.account([candidate("id-1", "Jane")]), []))
        self.assertEqual(self.platform.form_definitions, {})

    async def test_candidates_are_truncated(self):
        self.review.max_candidates = 1
        account = self.account([candidate("id-1", "Jane"), candidate("id-2", "Janet")])
        with self.assertLogs("identity_fusion.forms", level="WARNING"):
            definition = await self.forms.create_review_form(account, ["rev-1"])
        instance = self.platform.form_instances[definition.id][0]
        self.assertEqual(instance.candidate_ids, ["id-1"])

    async def test_notification_failure_is_not_fatal(self):
        self.platform.fail_notifications = True
        with self.assertLogs("identity_fusion.messaging", level="WARNING"):
            definition = await self.forms.create_review_form(self.account([candidate("id-1", "Jane")]), ["rev-1"])
        self.assertIsNotNone(definition)
        self.assertEqual(self.messaging.failed, 1)
        self.assertEqual(self.messaging.sent, 0)

    async def test_delete_existing_forms(self):
        self.add_form(self.instance("i1", "ASSIGNED"))
        self.add_form(form_id="form-b")
        self.assertEqual(await self.forms.delete_existing_forms(), 2)
        self.assertEqual(self.platform.form_definitions, {})


if __name__ == "__main__":
    unittest.main()
