from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from .models import (
    AccountOutput,
    AccountSchema,
    Action,
    Attributes,
    FusionAccountRecord,
    FusionDecision,
    FusionMatch,
    IdentityRecord,
    ManagedAccount,
    Status,
    attr_concat,
    attr_split,
)
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)

IDENTITIES_SOURCE = "Identities"
REFRESH_THRESHOLD = timedelta(seconds=60)

COLLECTION_ATTRIBUTES = ("accounts", "missing-accounts", "statuses", "actions", "reviews", "history", "sources")


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def _parse_statuses(values: Iterable[str]) -> Set[Status]:
    statuses: Set[Status] = set()
    for value in values:
        try:
            statuses.add(Status(value))
        except ValueError:
            logger.debug("Ignoring unknown status %r", value)
    return statuses


def _parse_actions(values: Iterable[str]) -> Set[Action]:
    actions: Set[Action] = set()
    for value in values:
        try:
            actions.add(Action(value))
        except ValueError:
            logger.debug("Ignoring unknown action %r", value)
    return actions


class FusionAccount:
    """The merged view of one person.

    Built in layers: the stored fusion record (or identity, managed account or
    decision it starts from), then the identity document, then any reviewer
    decision, then the managed accounts claimed from the work queue.
    """

    def __init__(
        self,
        *,
        kind: str,
        native_identity: str,
        name: str = "",
        source_name: str = "",
        identity_id: Optional[str] = None,
        disabled: bool = False,
        uncorrelated: bool = False,
        modified: Optional[datetime] = None,
        attributes: Optional[Attributes] = None,
        managed_account_id: Optional[str] = None,
        max_history: int = 10,
        refresh_threshold: timedelta = REFRESH_THRESHOLD,
    ) -> None:
        self.kind = kind
        self.native_identity = native_identity
        self.name = name
        self.display_name = name
        self.email: Optional[str] = None
        self.source_name = source_name
        self.identity_id = identity_id
        self.disabled = disabled
        self.uncorrelated = uncorrelated
        self.modified = modified
        self.managed_account_id = managed_account_id
        self.max_history = max_history
        self.refresh_threshold = refresh_threshold
        self.key: Optional[str] = None

        self.attributes: Attributes = dict(attributes or {})
        self.previous_attributes: Attributes = dict(attributes or {})
        self.identity_attributes: Dict[str, Any] = {}
        self.account_attributes: List[Dict[str, Any]] = []
        self.source_attributes: Dict[str, List[Dict[str, Any]]] = {}

        self.account_ids: Set[str] = set()
        self.missing_account_ids: Set[str] = set()
        self.previous_account_ids: Set[str] = set()
        self.statuses: Set[Status] = set()
        self.actions: Set[Action] = set()
        self.reviews: List[str] = []
        self.sources: Set[str] = set()
        self.reviewer_sources: Set[str] = set()
        self.fusion_matches: List[FusionMatch] = []
        self.history: List[str] = []
        self.linked_accounts: List[ManagedAccount] = []
        self.generation_failed: Set[str] = set()

        self.needs_refresh = False
        self.needs_reset = False

    def __repr__(self) -> str:
        return f"FusionAccount({self.kind}, {self.name!r}, identity={self.identity_id!r})"

    # factories

    @classmethod
    def from_record(cls, record: FusionAccountRecord, **options: Any) -> "FusionAccount":
        account = cls(
            kind="fusion",
            native_identity=record.native_identity,
            name=record.name,
            source_name=str(record.attributes.get("originSource") or ""),
            identity_id=record.identity_id,
            disabled=record.disabled,
            uncorrelated=record.uncorrelated,
            modified=record.modified,
            attributes={key: value for key, value in record.attributes.items() if key not in COLLECTION_ATTRIBUTES},
            **options,
        )
        stored = record.attributes
        account.statuses = _parse_statuses(attr_split(stored.get("statuses")))
        account.actions = _parse_actions(attr_split(stored.get("actions")))
        account.statuses.discard(Status.CANDIDATE)
        account.account_ids = set(attr_split(stored.get("accounts")))
        account.missing_account_ids = set(attr_split(stored.get("missing-accounts")))
        account.previous_account_ids = account.account_ids | account.missing_account_ids
        account.sources = set(attr_split(stored.get("sources")))
        if Status.BASELINE in account.statuses:
            account.sources.add(IDENTITIES_SOURCE)
        history = stored.get("history")
        if isinstance(history, list):
            account.import_history([str(entry) for entry in history])
        elif history:
            account.import_history([str(history)])
        return account

    @classmethod
    def from_identity(cls, identity: IdentityRecord, **options: Any) -> "FusionAccount":
        account = cls(
            kind="identity",
            native_identity=identity.id,
            name=identity.display_name,
            source_name=IDENTITIES_SOURCE,
            identity_id=identity.id,
            disabled=identity.disabled,
            attributes=dict(identity.attributes),
            **options,
        )
        account.needs_refresh = True
        account.sources.add(IDENTITIES_SOURCE)
        account.set_baseline()
        return account

    @classmethod
    def from_managed_account(cls, managed: ManagedAccount, **options: Any) -> "FusionAccount":
        account = cls(
            kind="managed",
            native_identity=managed.id,
            name=managed.name,
            source_name=managed.source_name,
            disabled=managed.disabled,
            attributes=dict(managed.attributes),
            managed_account_id=managed.id,
            **options,
        )
        account.needs_refresh = True
        account.sources.add(managed.source_name)
        account._set_uncorrelated_account(managed.id)
        account._record_account_attributes(managed)
        account.linked_accounts.append(managed)
        return account

    @classmethod
    def from_decision(cls, decision: FusionDecision, **options: Any) -> "FusionAccount":
        managed = decision.managed_account
        account = cls(
            kind="decision",
            native_identity=decision.account.id,
            name=decision.account.name,
            source_name=decision.account.source_name,
            disabled=managed.disabled if managed else False,
            attributes=dict(managed.attributes) if managed else {},
            managed_account_id=decision.account.id,
            **options,
        )
        account.needs_refresh = True
        account._set_uncorrelated_account(decision.account.id)
        return account

    # history and collections

    def add_history(self, message: str) -> None:
        self.history.append(f"[{_today()}] {message}")
        if len(self.history) > self.max_history:
            self.history = self.history[-self.max_history :]

    def import_history(self, history: List[str]) -> None:
        self.history = list(history)[-self.max_history :] if self.max_history else []

    def add_status(self, status: Status, message: Optional[str] = None) -> None:
        self.statuses.add(status)
        if message:
            self.add_history(message)

    def remove_status(self, status: Status, message: Optional[str] = None) -> None:
        if status in self.statuses:
            self.statuses.discard(status)
            if message:
                self.add_history(message)

    def has_status(self, status: Status) -> bool:
        return status in self.statuses

    def add_action(self, action: Action) -> None:
        self.actions.add(action)

    def add_review(self, url: str) -> None:
        if url not in self.reviews:
            self.reviews.append(url)
        self.statuses.add(Status.ACTIVE_REVIEWS)

    def clear_reviews(self) -> None:
        self.reviews.clear()
        self.statuses.discard(Status.ACTIVE_REVIEWS)

    def set_source_reviewer(self, source_id: str) -> None:
        self.reviewer_sources.add(source_id)
        self.statuses.add(Status.REVIEWER)

    def set_baseline(self) -> None:
        self.add_status(Status.BASELINE, f"Set {self.name} [{self.source_name}] as baseline")

    def set_unmatched(self) -> None:
        self.add_status(Status.UNMATCHED, f"Set {self.name} [{self.source_name}] as unmatched")

    def is_orphan(self) -> bool:
        return Status.ORPHAN in self.statuses

    @property
    def is_match(self) -> bool:
        return bool(self.fusion_matches)

    def add_fusion_match(self, match: FusionMatch) -> None:
        self.fusion_matches.append(match)

    def clear_fusion_matches(self) -> None:
        self.fusion_matches.clear()

    # correlation helpers

    def _set_uncorrelated_account(self, account_id: str) -> None:
        self.account_ids.add(account_id)
        self.missing_account_ids.add(account_id)
        self.uncorrelated = True
        self.statuses.add(Status.UNCORRELATED)
        self.actions.discard(Action.CORRELATED)

    def set_correlated_account(self, account_id: str) -> None:
        self.account_ids.add(account_id)
        self.missing_account_ids.discard(account_id)

    def update_correlation_status(self) -> None:
        if self.missing_account_ids:
            self.statuses.add(Status.UNCORRELATED)
            self.actions.discard(Action.CORRELATED)
            self.uncorrelated = True
        else:
            self.statuses.discard(Status.UNCORRELATED)
            self.actions.add(Action.CORRELATED)
            self.uncorrelated = False

    # layers

    def add_identity_layer(self, identity: IdentityRecord, source_names: Iterable[str] = ()) -> None:
        self.email = identity.email
        self.name = identity.name or self.name
        self.display_name = identity.display_name
        self.identity_attributes = dict(identity.attributes)
        self.identity_id = identity.id
        names = set(source_names)
        for ref in identity.accounts:
            if ref.source_name in names:
                self.set_correlated_account(ref.id)

    def claims(self, account: ManagedAccount) -> bool:
        if account.id in self.missing_account_ids:
            return True
        return self.identity_id is not None and account.identity_id == self.identity_id

    def add_managed_account_layer(self, queue: WorkQueue[str, ManagedAccount], *, phase: str) -> List[ManagedAccount]:
        """Claim this identity's accounts from ``queue``, removing them from it."""
        claimed = queue.take_where(lambda _key, account: self.claims(account), by=phase)
        for account in claimed:
            self.link_managed_account(account)
        self._rebuild_account_sets({account.id for account in claimed})
        if not self.account_ids and Status.BASELINE not in self.statuses:
            self.statuses.add(Status.ORPHAN)
            self.needs_refresh = False
        else:
            self.statuses.discard(Status.ORPHAN)
        return claimed

    def link_managed_account(self, account: ManagedAccount) -> None:
        is_new = account.id not in self.account_ids
        if is_new:
            self.needs_refresh = True
        if account.uncorrelated:
            self._set_uncorrelated_account(account.id)
        elif is_new:
            self.set_correlated_account(account.id)
        if not self.needs_refresh and account.modified and self.modified:
            if account.modified > self.modified + self.refresh_threshold:
                self.needs_refresh = True
        self._record_account_attributes(account)
        if account not in self.linked_accounts:
            self.linked_accounts.append(account)

    def _record_account_attributes(self, account: ManagedAccount) -> None:
        if not account.source_name:
            return
        attributes = dict(account.attributes)
        self.source_attributes.setdefault(account.source_name, []).append(attributes)
        self.account_attributes.append(attributes)
        self.sources.discard(IDENTITIES_SOURCE)
        self.sources.add(account.source_name)

    def _rebuild_account_sets(self, processed: Set[str]) -> None:
        if self.previous_account_ids:
            for account_id in self.previous_account_ids - processed:
                self.account_ids.discard(account_id)
                self.missing_account_ids.discard(account_id)
        self.previous_account_ids = self.account_ids | self.missing_account_ids

    def add_decision_layer(self, decision: FusionDecision) -> None:
        self._set_uncorrelated_account(decision.account.id)
        submitter = decision.submitter.name or decision.submitter.email or decision.submitter.id
        subject = f"{decision.account.name} [{decision.account.source_name}]"
        if decision.new_identity:
            self.add_status(Status.MANUAL, f"Set {subject} as new account by {submitter}")
        elif decision.submitter.id == "system":
            self.add_status(Status.AUTO, f"Set {subject} as auto-correlated by {submitter}")
        else:
            self.add_status(Status.AUTHORIZED, f"Set {subject} as authorized by {submitter}")
        if decision.managed_account is not None:
            self.link_managed_account(decision.managed_account)
            self.previous_account_ids.add(decision.managed_account.id)
        self.statuses.discard(Status.ORPHAN)

    # templates and output

    def template_context(self) -> Dict[str, Any]:
        context: Dict[str, Any] = dict(self.attributes)
        context["identity"] = self.identity_attributes
        context["accounts"] = self.account_attributes
        context["previous"] = self.previous_attributes
        context["sources"] = self.source_attributes
        return context

    def output_key(self, identity_attribute: str) -> str:
        if self.key:
            return self.key
        value = self.attributes.get(identity_attribute)
        if isinstance(value, list):
            value = value[0] if value else None
        return str(value) if value not in (None, "") else self.native_identity

    def to_output(self, schema: Optional[AccountSchema] = None, *, identity_attribute: str = "id") -> AccountOutput:
        self.update_correlation_status()
        identity_attribute = schema.identity_attribute if schema else identity_attribute
        key = self.output_key(identity_attribute)
        self.key = key
        attributes: Attributes = schema.cast(self.attributes) if schema else dict(self.attributes)
        if schema:
            attributes[schema.identity_attribute] = key
            display = self.attributes.get(schema.display_attribute) or self.display_name or self.name
            attributes[schema.display_attribute] = display
        attributes["sources"] = attr_concat(sorted(self.sources))
        attributes["accounts"] = sorted(self.account_ids)
        attributes["missing-accounts"] = sorted(self.missing_account_ids)
        attributes["history"] = list(self.history)
        attributes["reviews"] = list(self.reviews)
        attributes["statuses"] = sorted(status.value for status in self.statuses)
        attributes["actions"] = sorted(action.value for action in self.actions)
        if self.source_name:
            attributes["originSource"] = self.source_name
        return AccountOutput(key=key, attributes=attributes, disabled=self.disabled)
