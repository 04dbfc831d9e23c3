"""
Review forms: reading reviewer decisions back and issuing new review requests.

Every ambiguous match gets one form definition named after the account, with
one instance per reviewer. On the next run each definition is classified from
its instances:

* a ``COMPLETED`` or ``IN_PROGRESS`` instance is a response. The decision is
  parsed, the managed account is taken off the work queue and attached to it,
  and the form is queued for deletion.
* when every instance is ``CANCELLED`` or past its expiration the form is
  deleted and the account stays in the queue so it can be offered for
  review again.
* otherwise the review is still pending. The form is kept and the account is
  taken off the queue so no duplicate form is issued while a reviewer decides.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Set

from .config import RetrySettings, ReviewSettings
from .errors import PreconditionError
from .fusion_account import FusionAccount
from .messaging import MessagingService
from .models import DecisionAccount, FormDefinition, FormInstance, FusionDecision, ManagedAccount, User
from .platform import FormsClient
from .retry import run_with_retries
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)

FORM_RESPONSE = "form-response"
PENDING_FORM = "pending-form"


def form_name(pattern: str, account_name: str, source_name: str) -> str:
    return f"{pattern} - {account_name} [{source_name}]"


def _first(value: Any) -> Optional[str]:
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if isinstance(value, Mapping):
        value = value.get("id")
    return str(value) if value else None


def _flag(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return value is True or value == 1


def parse_decision(instance: FormInstance, account: ManagedAccount) -> Optional[FusionDecision]:
    """Build the reviewer decision carried by a responded instance.

    Returns None when the instance names no reviewer or the answer is
    inconsistent (an assignment without a target identity).
    """
    if not instance.recipients:
        return None
    data = instance.form_data or {}
    new_identity = _flag(data.get("newIdentity"), True)
    identity_id = None if new_identity else _first(data.get("identities"))
    try:
        return FusionDecision(
            submitter=User(id=instance.recipients[0], name=str(data.get("submitterName") or "")),
            account=DecisionAccount(id=account.id, name=account.name or account.id, source_name=account.source_name),
            new_identity=new_identity,
            identity_id=identity_id,
            comments=str(data.get("comments") or ""),
            finished=instance.is_response,
            form_url=instance.url,
            managed_account=account,
        )
    except PreconditionError as exc:
        logger.warning("Ignoring decision in form instance %s: %s", instance.id, exc)
        return None


def _score_summary(match_scores: List[Any]) -> List[Dict[str, object]]:
    return [score.to_record() for score in match_scores]


class FormService:
    """Tracks review forms for one run."""

    def __init__(
        self,
        client: FormsClient,
        review: ReviewSettings,
        retry: RetrySettings,
        messaging: Optional[MessagingService] = None,
        *,
        owner_id: Optional[str] = None,
        created_by: str = "identity-fusion",
        now: Optional[datetime] = None,
    ) -> None:
        self.client = client
        self.review = review
        self.retry = retry
        self.messaging = messaging
        self.owner_id = owner_id
        self.created_by = created_by
        self.now = now
        self.new_identity_decisions: List[FusionDecision] = []
        self.assignment_decisions: Dict[str, List[FusionDecision]] = {}
        self.unfinished_decisions: List[FusionDecision] = []
        self.pending_review_urls: Dict[str, List[str]] = {}
        self.pending_candidate_ids: Set[str] = set()
        self.forms_to_delete: Set[str] = set()
        self.created_forms: List[FormDefinition] = []
        self.created_instances: List[FormInstance] = []

    async def _call(self, label: str, fn):
        return await run_with_retries(fn, self.retry, label=label)

    # reading

    async def fetch_form_data(self, queue: WorkQueue[str, ManagedAccount]) -> None:
        definitions = await self._call(
            "search form definitions",
            lambda: self.client.search_form_definitions(self.review.form_name_pattern),
        )
        if not definitions:
            logger.info("No outstanding review forms")
            return
        results = await asyncio.gather(
            *(
                self._call(f"list instances of {definition.id}", lambda d=definition: self.client.list_form_instances(d.id))
                for definition in definitions
            )
        )
        for definition, instances in zip(definitions, results):
            self.analyze_form_instances(definition, instances, queue)
        logger.info(
            "Processed %d review form(s): %d new-identity decision(s), %d assignment decision(s), %d pending",
            len(definitions),
            len(self.new_identity_decisions),
            sum(len(items) for items in self.assignment_decisions.values()),
            queue.taken_count(PENDING_FORM),
        )

    def analyze_form_instances(
        self,
        definition: FormDefinition,
        instances: List[FormInstance],
        queue: WorkQueue[str, ManagedAccount],
    ) -> None:
        account_id = next((instance.account_id for instance in instances if instance.account_id), None)
        if not instances or account_id is None:
            logger.debug("Deleting form %s without instances or account", definition.name)
            self.forms_to_delete.add(definition.id)
            return

        response: Optional[FormInstance] = None
        all_cancelled = True
        pending: List[FormInstance] = []
        for instance in instances:
            if instance.is_response:
                response = instance
                all_cancelled = False
                break
            if instance.is_cancelled or self._is_expired(instance):
                continue
            all_cancelled = False
            pending.append(instance)

        if account_id not in queue:
            logger.debug("Deleting form %s: account %s is no longer awaiting review", definition.name, account_id)
            self.forms_to_delete.add(definition.id)
            return

        if response is not None:
            self.forms_to_delete.add(definition.id)
            account = queue.peek(account_id)
            assert account is not None
            decision = parse_decision(response, account)
            if decision is None:
                # the account stays queued and is offered for review again
                logger.warning("Failed to create a decision from form instance %s", response.id)
                return
            queue.take(account_id, by=FORM_RESPONSE)
            self.add_decision(decision)
            return

        if all_cancelled:
            logger.debug("All instances of form %s were cancelled", definition.name)
            self.forms_to_delete.add(definition.id)
            return

        queue.take(account_id, by=PENDING_FORM)
        for instance in pending:
            self._track_pending(instance)

    def add_decision(self, decision: FusionDecision) -> None:
        if not decision.finished:
            self.unfinished_decisions.append(decision)
            return
        if decision.new_identity:
            self.new_identity_decisions.append(decision)
            outcome = "new identity"
        else:
            assert decision.identity_id is not None
            self.assignment_decisions.setdefault(decision.identity_id, []).append(decision)
            outcome = f"link to {decision.identity_id}"
        logger.debug(
            "Decision for account %s by %s: %s", decision.account.id, decision.submitter.id, outcome
        )

    def take_assignment_decisions(self, identity_id: Optional[str]) -> List[FusionDecision]:
        if not identity_id:
            return []
        return self.assignment_decisions.pop(identity_id, [])

    def _track_pending(self, instance: FormInstance) -> None:
        if instance.url:
            for recipient in instance.recipients:
                urls = self.pending_review_urls.setdefault(recipient, [])
                if instance.url not in urls:
                    urls.append(instance.url)
        self.pending_candidate_ids.update(instance.candidate_ids)

    def pending_reviews_for(self, reviewer_id: Optional[str]) -> List[str]:
        if not reviewer_id:
            return []
        return list(self.pending_review_urls.get(reviewer_id, []))

    # writing

    def _now(self) -> datetime:
        return self.now or datetime.now(timezone.utc)

    def _is_expired(self, instance: FormInstance) -> bool:
        if instance.expire is None:
            return False
        expire = instance.expire
        if expire.tzinfo is None:
            expire = expire.replace(tzinfo=timezone.utc)
        return expire <= self._now()

    def _expiration(self) -> datetime:
        return self._now() + timedelta(days=self.review.form_expiration_days)

    def _form_input(self, account: FusionAccount) -> Dict[str, Any]:
        candidates = []
        for match in account.fusion_matches[: self.review.max_candidates]:
            identity = match.fusion_identity
            candidates.append(
                {
                    "id": match.identity_id,
                    "name": match.identity_name,
                    "attributes": {name: identity.attributes.get(name) for name in self.review.form_attributes},
                    "scores": _score_summary(match.scores),
                }
            )
        return {
            "account": {"id": account.managed_account_id, "name": account.name, "sourceName": account.source_name},
            "attributes": {name: account.attributes.get(name) for name in self.review.form_attributes},
            "candidates": candidates,
        }

    def _fields(self, candidate_count: int) -> List[Dict[str, Any]]:
        fields: List[Dict[str, Any]] = [
            {"id": "newIdentity", "type": "TOGGLE", "label": "This is a new identity"},
            {"id": "identities", "type": "SELECT", "label": "Existing identity", "options": candidate_count},
            {"id": "comments", "type": "TEXTAREA", "label": "Comments"},
        ]
        for name in self.review.form_attributes:
            fields.append({"id": f"account.{name}", "type": "TEXT", "label": name, "readOnly": True})
        return fields

    async def create_review_form(self, account: FusionAccount, reviewers: List[str]) -> Optional[FormDefinition]:
        """Issue a review for ``account`` and its scored candidates, one instance per reviewer."""
        if not reviewers:
            logger.warning("No reviewers for source %s; %s cannot be reviewed", account.source_name, account.name)
            return None
        if len(account.fusion_matches) > self.review.max_candidates:
            logger.warning(
                "%s has %d candidates; only the first %d are offered for review",
                account.name,
                len(account.fusion_matches),
                self.review.max_candidates,
            )
        form_input = self._form_input(account)
        name = form_name(self.review.form_name_pattern, account.name, account.source_name)
        definition = await self._call(
            f"create form {name}",
            lambda: self.client.create_form_definition(
                name, owner_id=self.owner_id, fields=self._fields(len(form_input["candidates"]))
            ),
        )
        self.created_forms.append(definition)
        expire = self._expiration()
        for reviewer in reviewers:
            instance = await self._call(
                f"create instance of {name}",
                lambda r=reviewer: self.client.create_form_instance(
                    definition.id,
                    recipients=[r],
                    form_input=form_input,
                    expire=expire,
                    created_by=self.created_by,
                ),
            )
            self.created_instances.append(instance)
            self._track_pending(instance)
            if self.messaging is not None:
                await self.messaging.notify_review(
                    instance, {"subject": name, "account": account.name, "candidates": len(form_input["candidates"])}
                )
        logger.info("Created review form %s for %d reviewer(s)", name, len(reviewers))
        return definition

    # cleanup

    async def delete_existing_forms(self) -> int:
        definitions = await self._call(
            "search form definitions",
            lambda: self.client.search_form_definitions(self.review.form_name_pattern),
        )
        for definition in definitions:
            await self._call(f"delete form {definition.id}", lambda d=definition: self.client.delete_form_definition(d.id))
        logger.info("Deleted %d review form(s)", len(definitions))
        return len(definitions)

    async def clean_up_forms(self) -> int:
        deleted = 0
        for form_id in sorted(self.forms_to_delete):
            try:
                await self._call(f"delete form {form_id}", lambda f=form_id: self.client.delete_form_definition(f))
            except Exception as exc:
                logger.warning("Failed to delete form %s: %s", form_id, exc)
                continue
            deleted += 1
        if deleted:
            logger.info("Deleted %d answered or stale review form(s)", deleted)
        self.forms_to_delete.clear()
        return deleted
