"""
The reconciliation phases.

Managed accounts start in a WorkQueue and each phase takes the accounts it
can classify, cheapest first:

1. existing fusion accounts claim the accounts already linked to them,
2. identities without a fusion account become baseline fusion accounts and
   claim their correlated accounts,
3. reviewer "new identity" decisions create fusion accounts from the account
   the form phase took off the queue,
4. whatever remains is scored by the MatchingEngine and is either linked
   automatically, sent for review or becomes a new unmatched fusion account.

An account leaves the queue exactly once, so it can never be linked and
turned into a new identity in the same run.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Optional, Set

from .batching import gather_batches
from .context import RunContext
from .fusion_account import FusionAccount
from .models import (
    AccountOutput,
    AccountSchema,
    DecisionAccount,
    FusionAccountRecord,
    FusionDecision,
    FusionMatch,
    IdentityRecord,
    ManagedAccount,
    SYSTEM_USER,
    Status,
)
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)

FUSION_ACCOUNTS = "fusion-accounts"
IDENTITIES = "identities"
MANAGED_ACCOUNTS = "managed-accounts"

AUTO_CORRELATED_COMMENT = "Auto-correlated: all attribute scores were 100"
SINGLE_MATCH_COMMENT = "Auto-correlated: single candidate match"


class FusionService:
    def __init__(self, context: RunContext) -> None:
        self.context = context
        self.settings = context.settings
        self.attributes = context.attributes
        self.identity_map: Dict[str, FusionAccount] = {}
        self.account_map: Dict[str, FusionAccount] = {}
        self.identities: Dict[str, IdentityRecord] = {}
        self.pending_unique: List[FusionAccount] = []
        self.unreviewed: List[FusionAccount] = []
        self.reviewer_sources: Dict[str, Set[str]] = {}
        self._load_reviewers()

    # setup

    def _load_reviewers(self) -> None:
        for source_name, reviewer_ids in self.settings.review.reviewers.items():
            for reviewer_id in reviewer_ids:
                self.reviewer_sources.setdefault(reviewer_id, set()).add(source_name)
        owner = self.settings.platform.owner_id
        if self.settings.review.owner_is_global_reviewer and owner:
            self.reviewer_sources.setdefault(owner, set()).update(self.settings.source_names())

    def reviewers_for(self, source_name: str) -> List[str]:
        return sorted(reviewer for reviewer, sources in self.reviewer_sources.items() if source_name in sources)

    def _options(self) -> dict:
        return {"max_history": self.settings.processing.max_history_messages}

    def _mark_reviewer(self, account: FusionAccount) -> None:
        for source_name in sorted(self.reviewer_sources.get(account.identity_id or "", ())):
            account.set_source_reviewer(source_name)

    def set_fusion_account(self, account: FusionAccount) -> None:
        if account.identity_id:
            if account.identity_id in self.identity_map and self.identity_map[account.identity_id] is not account:
                logger.warning("Identity %s already has a fusion account; replacing it", account.identity_id)
            self.identity_map[account.identity_id] = account
        else:
            self.account_map[account.native_identity] = account

    def all_accounts(self) -> List[FusionAccount]:
        return list(self.identity_map.values()) + list(self.account_map.values())

    def _report(self, account: FusionAccount, outcome: str, matches: Optional[List[FusionMatch]] = None) -> None:
        if self.context.report is not None:
            self.context.report.add(
                account.managed_account_id or account.native_identity,
                account.name,
                account.source_name,
                outcome,
                matches,
            )

    def _apply_assignments(self, account: FusionAccount) -> None:
        for decision in self.context.forms.take_assignment_decisions(account.identity_id):
            account.add_decision_layer(decision)
            logger.debug("Linked %s to %s by decision", decision.account.name, account.name)

    async def _refresh_mapped(self, account: FusionAccount) -> None:
        self.attributes.map_attributes(account)
        await self.attributes.refresh_non_unique_attributes(account)

    # phase: existing fusion accounts

    async def process_fusion_accounts(
        self,
        records: List[FusionAccountRecord],
        identities: List[IdentityRecord],
        queue: WorkQueue[str, ManagedAccount],
    ) -> None:
        self.identities = {identity.id: identity for identity in identities}
        for record in records:
            await self.process_fusion_account(record, queue)
        logger.info(
            "Processed %d fusion account(s); %d managed account(s) claimed",
            len(records),
            queue.taken_count(FUSION_ACCOUNTS),
        )

    async def process_fusion_account(
        self, record: FusionAccountRecord, queue: WorkQueue[str, ManagedAccount]
    ) -> FusionAccount:
        account = FusionAccount.from_record(record, **self._options())
        if account.identity_id:
            self._mark_reviewer(account)
            identity = self.identities.get(account.identity_id)
            if identity is not None:
                account.add_identity_layer(identity, self.settings.source_names())
        account.add_managed_account_layer(queue, phase=FUSION_ACCOUNTS)
        self._apply_assignments(account)
        await self._refresh_mapped(account)
        await self.attributes.register_unique_attributes(account)
        if any(
            definition.type != "normal" and account.attributes.get(definition.name) in (None, "", [])
            for definition in self.attributes.definitions
        ):
            self.pending_unique.append(account)
        self.set_fusion_account(account)
        return account

    # phase: identities

    async def process_identities(
        self, identities: List[IdentityRecord], queue: WorkQueue[str, ManagedAccount]
    ) -> List[FusionAccount]:
        created: List[FusionAccount] = []
        for identity in identities:
            if identity.id in self.identity_map:
                continue
            created.append(await self.process_identity(identity, queue))
        self.pending_unique.extend(created)
        logger.info(
            "Created %d fusion account(s) from identities; %d managed account(s) claimed",
            len(created),
            queue.taken_count(IDENTITIES),
        )
        return created

    async def process_identity(self, identity: IdentityRecord, queue: WorkQueue[str, ManagedAccount]) -> FusionAccount:
        account = FusionAccount.from_identity(identity, **self._options())
        self._mark_reviewer(account)
        account.add_identity_layer(identity, self.settings.source_names())
        account.add_managed_account_layer(queue, phase=IDENTITIES)
        self._apply_assignments(account)
        await self._refresh_mapped(account)
        self.set_fusion_account(account)
        return account

    # phase: decisions

    async def process_decisions(self) -> List[FusionAccount]:
        created: List[FusionAccount] = []
        for decision in self.context.forms.new_identity_decisions:
            created.append(await self.process_decision(decision))
        for identity_id, decisions in sorted(self.context.forms.assignment_decisions.items()):
            for decision in decisions:
                logger.warning(
                    "Decision for %s targets unknown identity %s; treating the account as unmatched",
                    decision.account.name,
                    identity_id,
                )
                created.append(await self._orphaned_decision(decision))
        self.context.forms.assignment_decisions.clear()
        self.pending_unique.extend(created)
        logger.info("Processed %d decision(s)", len(created))
        return created

    async def process_decision(self, decision: FusionDecision) -> FusionAccount:
        account = FusionAccount.from_decision(decision, **self._options())
        account.add_decision_layer(decision)
        await self._refresh_mapped(account)
        self.set_fusion_account(account)
        self._report(account, "manual")
        return account

    async def _orphaned_decision(self, decision: FusionDecision) -> FusionAccount:
        assert decision.managed_account is not None
        account = FusionAccount.from_managed_account(decision.managed_account, **self._options())
        account.add_history(
            f"Decision by {decision.submitter.id} targeted missing identity {decision.identity_id}"
        )
        account.set_unmatched()
        await self._refresh_mapped(account)
        self.set_fusion_account(account)
        self._report(account, "unmatched")
        return account

    # phase: remaining managed accounts

    async def process_managed_accounts(self, queue: WorkQueue[str, ManagedAccount]) -> None:
        processed = 0
        for batch in queue.drain(self.settings.processing.batch_size, by=MANAGED_ACCOUNTS):
            for managed in batch:
                await self.process_managed_account(managed)
                processed += 1
        logger.info(
            "Scored %d managed account(s): %d identities, %d unmatched, %d awaiting a reviewer",
            processed,
            len(self.identity_map),
            len(self.account_map),
            len(self.unreviewed),
        )

    def _auto_link_target(self, matches: List[FusionMatch]) -> Optional[FusionMatch]:
        if self.settings.matching.merge_identical:
            perfect = [match for match in matches if match.all_scores_perfect()]
            if len(perfect) == 1:
                return perfect[0]
        if self.settings.matching.auto_link_single_match and len(matches) == 1:
            return matches[0]
        return None

    async def process_managed_account(self, managed: ManagedAccount) -> FusionAccount:
        account = FusionAccount.from_managed_account(managed, **self._options())
        await self._refresh_mapped(account)
        matches = self.context.engine.score_fusion_account(account, list(self.identity_map.values()))
        if not matches:
            await self.attributes.refresh_unique_attributes(account)
            account.set_unmatched()
            self.set_fusion_account(account)
            self._report(account, "unmatched")
            return account

        target = self._auto_link_target(matches)
        if target is not None:
            await self._auto_link(account, managed, target)
            return target.fusion_identity

        self._report(account, "review", matches)
        form = await self.context.forms.create_review_form(account, self.reviewers_for(managed.source_name))
        if form is None:
            self.unreviewed.append(account)
        account.clear_fusion_matches()
        return account

    async def _auto_link(self, account: FusionAccount, managed: ManagedAccount, match: FusionMatch) -> None:
        comment = AUTO_CORRELATED_COMMENT if match.all_scores_perfect() else SINGLE_MATCH_COMMENT
        decision = FusionDecision(
            submitter=SYSTEM_USER,
            account=DecisionAccount(id=managed.id, name=managed.name or managed.id, source_name=managed.source_name),
            new_identity=False,
            identity_id=match.identity_id,
            comments=comment,
            managed_account=managed,
        )
        target: FusionAccount = match.fusion_identity
        target.add_decision_layer(decision)
        await self._refresh_mapped(target)
        self._report(account, "auto", [match])
        logger.debug("Auto-linked %s to %s", managed.name, target.name)

    # reconciliation and output

    def reconcile_pending_form_state(self) -> None:
        """Recompute candidate status and review URLs from the open forms."""
        forms = self.context.forms
        for account in self.all_accounts():
            account.remove_status(Status.CANDIDATE)
            account.clear_reviews()
        for identity_id in forms.pending_candidate_ids:
            account = self.identity_map.get(identity_id)
            if account is not None:
                account.add_status(Status.CANDIDATE)
        for reviewer_id, urls in forms.pending_review_urls.items():
            account = self.identity_map.get(reviewer_id)
            if account is None:
                logger.debug("Reviewer %s has no fusion account", reviewer_id)
                continue
            for url in urls:
                account.add_review(url)

    def _drain_pending_unique(self) -> Iterator[List[FusionAccount]]:
        size = self.settings.processing.batch_size
        while self.pending_unique:
            batch = self.pending_unique[:size]
            del self.pending_unique[:size]
            yield batch

    async def refresh_unique_attributes(self) -> int:
        results = await gather_batches(self._drain_pending_unique(), self.attributes.refresh_unique_attributes)
        failed = sum(1 for ok in results if not ok)
        if results:
            logger.info("Refreshed unique attributes of %d account(s), %d failed", len(results), failed)
        return len(results)

    def outputs(self, schema: Optional[AccountSchema] = None) -> List[AccountOutput]:
        identity_attribute = schema.identity_attribute if schema else self.settings.processing.identity_attribute
        emitted: List[AccountOutput] = []
        for account in self.all_accounts():
            if self.settings.processing.delete_empty and account.is_orphan():
                logger.debug("Skipping orphan %s", account.name)
                continue
            if identity_attribute in account.generation_failed:
                logger.warning("Skipping %s: no %s could be generated", account.name, identity_attribute)
                continue
            emitted.append(account.to_output(schema, identity_attribute=identity_attribute))
        return emitted

    def clear(self) -> None:
        self.identity_map.clear()
        self.account_map.clear()
        self.identities.clear()
        self.pending_unique.clear()
        self.unreviewed.clear()
