"""
End-to-end runs of list_accounts against the in-memory platform.

Each test builds a small tenant: one HR source, an identity that already owns
an HR account, a reviewer identity and a handful of uncorrelated accounts.
"""

import asyncio
import unittest

from identity_fusion.account_list import list_accounts
from identity_fusion.config import Settings
from identity_fusion.context import RunContext
from identity_fusion.errors import FusionError, ProcessLockError
from identity_fusion.fusion import FusionService
from identity_fusion.fusion_account import FusionAccount
from identity_fusion.models import (
    FormDefinition,
    FusionAccountRecord,
    IdentityAccountRef,
    IdentityRecord,
    ManagedAccount,
    Source,
)
from identity_fusion.platform import InMemoryPlatform
from identity_fusion.state import BATCH_CUMULATIVE_COUNT, PROCESS_LOCK, RESET, RESET_CONSUMED, InMemoryStateStore


def person(firstname, lastname, email):
    return {"firstname": firstname, "lastname": lastname, "email": email}


def hr_account(account_id, attributes, identity_id=None):
    return ManagedAccount(
        id=account_id,
        source_id="src-hr",
        source_name="HR",
        native_identity=account_id,
        name=f"{attributes['firstname']} {attributes['lastname']}",
        identity_id=identity_id,
        uncorrelated=identity_id is None,
        attributes=attributes,
    )


def build_settings(matching=None, review=None, processing=None):
    raw = {
        "platform": {"base_url": "memory://", "fusion_source_id": "fusion-1"},
        "sources": [{"name": "HR", "account_limit": 100}],
        "matching": {
            "rules": [{"attribute": "email", "algorithm": "dice", "fusion_score": 90}],
            "merge_identical": True,
            **(matching or {}),
        },
        "attributes": {
            "definitions": [
                {"name": "uid", "expression": "{{ firstname[0] }}{{ lastname }}", "type": "unique", "case": "lower"}
            ]
        },
        "review": {"reviewers": {"HR": ["id-rev"]}, **(review or {})},
        "processing": {"identity_attribute": "uid", "keepalive_seconds": 0, **(processing or {})},
        "retry": {"max_retries": 0},
    }
    return Settings.from_mapping(raw)


class ListAccountsTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.platform = InMemoryPlatform()
        self.platform.add_source(Source("src-hr", "HR"))
        self.platform.add_identity(
            IdentityRecord(
                "id-1",
                "jane.doe",
                attributes=person("Jane", "Doe", "jane@example.com"),
                accounts=[IdentityAccountRef("hr-1", "HR")],
            )
        )
        self.platform.add_identity(IdentityRecord("id-rev", "rita", attributes=person("Rita", "Ortega", "rita@corp.io")))
        self.platform.add_account(hr_account("hr-1", person("Jane", "Doe", "jane@example.com"), identity_id="id-1"))
        self.platform.add_account(hr_account("hr-2", person("Janet", "Doe", "jane@example.com")))
        self.platform.add_account(hr_account("hr-3", person("Max", "Power", "max@power.org")))
        self.state = InMemoryStateStore()

    def context(self, settings=None, report=False):
        return RunContext.create(
            settings or build_settings(),
            accounts=self.platform,
            identities=self.platform,
            forms=self.platform,
            messenger=self.platform,
            state=self.state,
            report=report,
        )

    @staticmethod
    def by_account(result, account_id):
        for output in result.outputs:
            if account_id in output.attributes["accounts"]:
                return output
        return None

    def only_form_instance(self):
        (instances,) = self.platform.form_instances.values()
        return instances[0]


class TestReconciliation(ListAccountsTestCase):
    async def test_auto_link_and_unmatched(self):
        sent = []
        result = await list_accounts(self.context(), send=sent.append)

        outputs = {output.key: output for output in result.outputs}
        self.assertEqual(set(outputs), {"jdoe", "rortega", "mpower"})
        self.assertEqual([output.key for output in sent], [output.key for output in result.outputs])

        jane = outputs["jdoe"].attributes
        self.assertEqual(jane["accounts"], ["hr-1", "hr-2"])
        self.assertEqual(jane["missing-accounts"], ["hr-2"])
        self.assertIn("auto", jane["statuses"])
        self.assertIn("baseline", jane["statuses"])
        self.assertIn("reviewer", outputs["rortega"].attributes["statuses"])
        self.assertIn("unmatched", outputs["mpower"].attributes["statuses"])

        claimed = [account_id for output in result.outputs for account_id in output.attributes["accounts"]]
        self.assertEqual(sorted(claimed), ["hr-1", "hr-2", "hr-3"])

        self.assertFalse(self.state.get("fusion-1")[PROCESS_LOCK])
        self.assertEqual(self.state.get("fusion-1")[BATCH_CUMULATIVE_COUNT], {"HR": 100})
        self.assertEqual(self.state.get_values("fusion-1", "uid"), {"jdoe", "rortega", "mpower"})
        self.assertEqual(result.forms_created, 0)

    async def test_async_send(self):
        received = []

        async def send(output):
            received.append(output.key)

        await list_accounts(self.context(), send=send)
        self.assertEqual(len(received), 3)

    async def test_report_mode(self):
        context = self.context(report=True)
        await list_accounts(context)
        self.assertEqual(context.report.counts(), {"auto": 1, "unmatched": 1})

    async def test_orphans(self):
        self.platform.add_fusion_account(
            "fusion-1", FusionAccountRecord("f-9", name="Gone", attributes={"accounts": "[hr-9]", "uid": "gone"})
        )
        result = await list_accounts(self.context())
        orphan = next(output for output in result.outputs if output.key == "gone")
        self.assertIn("orphan", orphan.attributes["statuses"])

        result = await list_accounts(self.context(build_settings(processing={"delete_empty": True})))
        self.assertNotIn("gone", {output.key for output in result.outputs})


class TestReviews(ListAccountsTestCase):
    def review_settings(self, **review):
        return build_settings(matching={"merge_identical": False}, review=review or None)

    async def test_ambiguous_match_creates_review_form(self):
        result = await list_accounts(self.context(self.review_settings()))

        self.assertEqual(result.forms_created, 1)
        self.assertEqual(result.pending_forms, 1)
        self.assertIsNone(self.by_account(result, "hr-2"))
        instance = self.only_form_instance()
        self.assertEqual(instance.recipients, ["id-rev"])
        self.assertEqual(instance.account_id, "hr-2")
        self.assertEqual(instance.candidate_ids, ["id-1"])
        self.assertEqual([item["recipient"] for item in self.platform.notifications], ["id-rev"])

        outputs = {output.key: output.attributes for output in result.outputs}
        self.assertEqual(outputs["rortega"]["reviews"], [instance.url])
        self.assertIn("activeReviews", outputs["rortega"]["statuses"])
        self.assertIn("candidate", outputs["jdoe"]["statuses"])

    async def test_pending_form_is_not_duplicated(self):
        await list_accounts(self.context(self.review_settings()))
        result = await list_accounts(self.context(self.review_settings()))
        self.assertEqual(result.forms_created, 0)
        self.assertEqual(len(self.platform.form_definitions), 1)
        self.assertEqual(result.pending_forms, 1)
        self.assertIsNone(self.by_account(result, "hr-2"))

    async def test_assignment_decision(self):
        await list_accounts(self.context(self.review_settings()))
        instance = self.only_form_instance()
        self.platform.answer(instance.id, "COMPLETED", {"newIdentity": False, "identities": ["id-1"]})

        result = await list_accounts(self.context(self.review_settings()))
        jane = self.by_account(result, "hr-2")
        self.assertIn("hr-1", jane.attributes["accounts"])
        self.assertIn("authorized", jane.attributes["statuses"])
        self.assertEqual(self.platform.form_definitions, {})
        self.assertEqual(result.pending_forms, 0)

    async def test_new_identity_decision(self):
        await list_accounts(self.context(self.review_settings()))
        self.platform.answer(self.only_form_instance().id, "COMPLETED", {"newIdentity": True})

        result = await list_accounts(self.context(self.review_settings()))
        janet = self.by_account(result, "hr-2")
        self.assertEqual(janet.attributes["accounts"], ["hr-2"])
        self.assertIn("manual", janet.attributes["statuses"])
        self.assertEqual(len(result.outputs), 4)

    async def test_decision_for_unknown_identity(self):
        await list_accounts(self.context(self.review_settings()))
        self.platform.answer(self.only_form_instance().id, "COMPLETED", {"newIdentity": False, "identities": ["id-x"]})

        with self.assertLogs("identity_fusion.fusion", level="WARNING"):
            result = await list_accounts(self.context(self.review_settings()))
        orphaned = self.by_account(result, "hr-2")
        self.assertIn("unmatched", orphaned.attributes["statuses"])

    async def test_cancelled_form_is_offered_again(self):
        await list_accounts(self.context(self.review_settings()))
        self.platform.answer(self.only_form_instance().id, "CANCELLED")

        result = await list_accounts(self.context(self.review_settings()))
        self.assertEqual(result.forms_created, 1)
        self.assertEqual(len(self.platform.form_definitions), 1)

    async def test_notification_failure_is_not_fatal(self):
        self.platform.fail_notifications = True
        with self.assertLogs("identity_fusion.messaging", level="WARNING"):
            result = await list_accounts(self.context(self.review_settings()))
        self.assertEqual(result.forms_created, 1)
        self.assertEqual(self.platform.notifications, [])

    async def test_source_without_reviewers(self):
        settings = build_settings(matching={"merge_identical": False}, review={"reviewers": {}})
        with self.assertLogs("identity_fusion.forms", level="WARNING"):
            result = await list_accounts(self.context(settings))
        self.assertEqual(result.forms_created, 0)
        self.assertIsNone(self.by_account(result, "hr-2"))


class TestLockAndReset(ListAccountsTestCase):
    async def test_held_lock(self):
        self.state.patch("fusion-1", [{"op": "add", "path": f"/{PROCESS_LOCK}", "value": True}])
        with self.assertRaises(ProcessLockError) as ctx:
            await list_accounts(self.context())
        self.assertTrue(str(ctx.exception).startswith("Failed to list accounts:"))
        self.assertFalse(self.state.get("fusion-1")[PROCESS_LOCK])

        result = await list_accounts(self.context())
        self.assertEqual(len(result.outputs), 3)

    async def test_reset(self):
        await list_accounts(self.context())
        self.platform.form_definitions["form-old"] = FormDefinition("form-old", "Fusion Review - Old [HR]")
        self.state.patch("fusion-1", [{"op": "add", "path": f"/{RESET}", "value": True}])

        result = await list_accounts(self.context())
        self.assertTrue(result.reset)
        self.assertEqual(result.outputs, [])
        self.assertEqual(self.platform.form_definitions, {})
        bag = self.state.get("fusion-1")
        self.assertFalse(bag[RESET])
        self.assertFalse(bag[PROCESS_LOCK])
        self.assertNotIn(BATCH_CUMULATIVE_COUNT, bag)
        self.assertEqual(self.state.get_values("fusion-1", "uid"), set())

    async def test_configured_reset_runs_once(self):
        settings = build_settings(processing={"reset": True})
        first = await list_accounts(self.context(settings))
        self.assertTrue(first.reset)
        self.assertEqual(first.outputs, [])
        self.assertTrue(self.state.get("fusion-1")[RESET_CONSUMED])

        second = await list_accounts(self.context(settings))
        self.assertFalse(second.reset)
        self.assertEqual({output.key for output in second.outputs}, {"jdoe", "rortega", "mpower"})

    async def test_failure_is_wrapped_and_lock_released(self):
        async def broken(**_kwargs):
            raise RuntimeError("directory offline")

        self.platform.list_identities = broken
        with self.assertLogs("identity_fusion.errors", level="ERROR"):
            with self.assertRaises(FusionError) as ctx:
                await list_accounts(self.context())
        self.assertEqual(str(ctx.exception), "Failed to list accounts: directory offline")
        self.assertFalse(self.state.get("fusion-1")[PROCESS_LOCK])


class TestUniqueAttributeBatches(ListAccountsTestCase):
    async def test_pending_accounts_leave_the_buffer_batch_by_batch(self):
        context = self.context(build_settings(processing={"batch_size": 2}))
        fusion = FusionService(context)
        surnames = ["Adams", "Baker", "Clark", "Davis", "Evans"]
        fusion.pending_unique.extend(
            FusionAccount.from_identity(
                IdentityRecord(f"id-new-{index}", name, attributes=person("Pat", name, f"{name.lower()}@example.com"))
            )
            for index, name in enumerate(surnames)
        )
        created = list(fusion.pending_unique)

        buffered = []
        in_flight = 0
        peak = 0
        refresh = context.attributes.refresh_unique_attributes

        async def recording(account):
            nonlocal in_flight, peak
            buffered.append(len(fusion.pending_unique))
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0)
            try:
                return await refresh(account)
            finally:
                in_flight -= 1

        context.attributes.refresh_unique_attributes = recording
        self.assertEqual(await fusion.refresh_unique_attributes(), 5)

        self.assertEqual(buffered, [3, 3, 1, 1, 0])
        self.assertEqual(peak, 2)
        self.assertEqual(fusion.pending_unique, [])
        self.assertEqual([account.attributes["uid"] for account in created], [f"p{name.lower()}" for name in surnames])


if __name__ == "__main__":
    unittest.main()
