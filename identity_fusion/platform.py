"""
Collaborator interfaces for the identity platform and an in-memory backend.

The reconciliation core only talks to these protocols. ``InMemoryPlatform``
implements all of them and is used by the CLI (loaded from a JSON fixture)
and by the tests.
"""

from __future__ import annotations

import itertools
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol

from .errors import ApiError
from .models import (
    FormDefinition,
    FormInstance,
    FormState,
    FusionAccountRecord,
    IdentityAccountRef,
    IdentityRecord,
    ManagedAccount,
    Source,
)


class AccountDirectory(Protocol):
    async def list_sources(self) -> List[Source]: ...

    async def list_accounts(
        self, source_id: str, *, offset: int, limit: int, account_filter: Optional[str] = None
    ) -> List[ManagedAccount]: ...

    async def list_fusion_accounts(self, source_id: str, *, offset: int, limit: int) -> List[FusionAccountRecord]: ...

    async def aggregate(self, source_id: str) -> None: ...


class IdentityDirectory(Protocol):
    async def list_identities(self, *, offset: int, limit: int) -> List[IdentityRecord]: ...

    async def get_identity(self, identity_id: str) -> Optional[IdentityRecord]: ...


class FormsClient(Protocol):
    async def search_form_definitions(self, name_prefix: str) -> List[FormDefinition]: ...

    async def create_form_definition(
        self, name: str, *, owner_id: Optional[str], fields: List[Dict[str, Any]]
    ) -> FormDefinition: ...

    async def list_form_instances(self, form_definition_id: str) -> List[FormInstance]: ...

    async def create_form_instance(
        self,
        form_definition_id: str,
        *,
        recipients: List[str],
        form_input: Mapping[str, Any],
        expire: datetime,
        created_by: str,
    ) -> FormInstance: ...

    async def delete_form_definition(self, form_definition_id: str) -> None: ...


class Messenger(Protocol):
    async def get_sender(self) -> Optional[str]: ...

    async def send_review_notification(
        self, instance: FormInstance, recipient_id: str, payload: Mapping[str, Any]
    ) -> None: ...


def matches_filter(attributes: Mapping[str, Any], account_filter: Optional[str]) -> bool:
    """Evaluate a ``key=value [and key=value ...]`` account filter."""
    if not account_filter:
        return True
    for clause in account_filter.split(" and "):
        key, _, expected = clause.partition("=")
        actual = attributes.get(key.strip())
        if actual is None or str(actual) != expected.strip().strip('"'):
            return False
    return True


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class InMemoryPlatform:
    """Single object implementing every collaborator protocol."""

    def __init__(self, base_url: str = "memory://platform") -> None:
        self.base_url = base_url
        self.sources: Dict[str, Source] = {}
        self.accounts: Dict[str, List[ManagedAccount]] = {}
        self.fusion_accounts: Dict[str, List[FusionAccountRecord]] = {}
        self.identities: Dict[str, IdentityRecord] = {}
        self.form_definitions: Dict[str, FormDefinition] = {}
        self.form_instances: Dict[str, List[FormInstance]] = {}
        self.notifications: List[Dict[str, Any]] = []
        self.aggregations: List[str] = []
        self.sender: Optional[str] = "no-reply@example.com"
        self.fail_notifications = False
        self._ids = itertools.count(1)

    # sources and accounts

    def add_source(self, source: Source) -> Source:
        self.sources[source.id] = source
        self.accounts.setdefault(source.id, [])
        return source

    def add_account(self, account: ManagedAccount) -> ManagedAccount:
        self.accounts.setdefault(account.source_id, []).append(account)
        return account

    def add_fusion_account(self, source_id: str, record: FusionAccountRecord) -> FusionAccountRecord:
        self.fusion_accounts.setdefault(source_id, []).append(record)
        return record

    def add_identity(self, identity: IdentityRecord) -> IdentityRecord:
        self.identities[identity.id] = identity
        return identity

    async def list_sources(self) -> List[Source]:
        return list(self.sources.values())

    async def list_accounts(
        self, source_id: str, *, offset: int, limit: int, account_filter: Optional[str] = None
    ) -> List[ManagedAccount]:
        if source_id not in self.sources:
            raise ApiError(f"Source {source_id} not found", status=404)
        accounts = [
            account for account in self.accounts.get(source_id, []) if matches_filter(account.attributes, account_filter)
        ]
        return accounts[offset : offset + limit]

    async def list_fusion_accounts(self, source_id: str, *, offset: int, limit: int) -> List[FusionAccountRecord]:
        return self.fusion_accounts.get(source_id, [])[offset : offset + limit]

    async def aggregate(self, source_id: str) -> None:
        self.aggregations.append(source_id)

    # identities

    async def list_identities(self, *, offset: int, limit: int) -> List[IdentityRecord]:
        return list(self.identities.values())[offset : offset + limit]

    async def get_identity(self, identity_id: str) -> Optional[IdentityRecord]:
        return self.identities.get(identity_id)

    # forms

    async def search_form_definitions(self, name_prefix: str) -> List[FormDefinition]:
        return [form for form in self.form_definitions.values() if form.name.startswith(name_prefix)]

    async def create_form_definition(
        self, name: str, *, owner_id: Optional[str], fields: List[Dict[str, Any]]
    ) -> FormDefinition:
        definition = FormDefinition(id=f"form-{next(self._ids)}", name=name, owner_id=owner_id, fields=list(fields))
        self.form_definitions[definition.id] = definition
        self.form_instances[definition.id] = []
        return definition

    async def list_form_instances(self, form_definition_id: str) -> List[FormInstance]:
        return list(self.form_instances.get(form_definition_id, []))

    async def create_form_instance(
        self,
        form_definition_id: str,
        *,
        recipients: List[str],
        form_input: Mapping[str, Any],
        expire: datetime,
        created_by: str,
    ) -> FormInstance:
        if form_definition_id not in self.form_definitions:
            raise ApiError(f"Form definition {form_definition_id} not found", status=404)
        instance_id = f"instance-{next(self._ids)}"
        instance = FormInstance(
            id=instance_id,
            form_definition_id=form_definition_id,
            state=FormState.ASSIGNED.value,
            recipients=list(recipients),
            form_input=dict(form_input),
            url=f"{self.base_url}/forms/{instance_id}",
            expire=expire,
        )
        self.form_instances[form_definition_id].append(instance)
        return instance

    async def delete_form_definition(self, form_definition_id: str) -> None:
        self.form_definitions.pop(form_definition_id, None)
        self.form_instances.pop(form_definition_id, None)

    def answer(self, instance_id: str, state: str, form_data: Optional[Mapping[str, Any]] = None) -> FormInstance:
        """Replace a stored instance with a reviewer's response (test and fixture helper)."""
        for definition_id, instances in self.form_instances.items():
            for index, instance in enumerate(instances):
                if instance.id == instance_id:
                    updated = FormInstance(
                        id=instance.id,
                        form_definition_id=definition_id,
                        state=state,
                        recipients=instance.recipients,
                        form_input=instance.form_input,
                        form_data=dict(form_data or {}),
                        url=instance.url,
                        expire=instance.expire,
                    )
                    instances[index] = updated
                    return updated
        raise KeyError(instance_id)

    # messaging

    async def get_sender(self) -> Optional[str]:
        return self.sender

    async def send_review_notification(
        self, instance: FormInstance, recipient_id: str, payload: Mapping[str, Any]
    ) -> None:
        if self.fail_notifications:
            raise ApiError("Notification service unavailable", status=503)
        self.notifications.append({"instance": instance.id, "recipient": recipient_id, "payload": dict(payload)})

    # fixtures

    @classmethod
    def from_fixture(cls, data: Mapping[str, Any]) -> "InMemoryPlatform":
        """Build a platform from a JSON-compatible mapping.

        Expected keys: ``sources``, ``accounts``, ``fusionAccounts`` (keyed by
        fusion source id), ``identities`` and ``forms``.
        """
        platform = cls(base_url=str(data.get("baseUrl", "memory://platform")))
        for raw in data.get("sources", []):
            platform.add_source(Source(id=raw["id"], name=raw["name"], owner_id=raw.get("ownerId")))
        for raw in data.get("accounts", []):
            platform.add_account(
                ManagedAccount(
                    id=raw["id"],
                    source_id=raw["sourceId"],
                    source_name=raw.get("sourceName") or platform.sources[raw["sourceId"]].name,
                    native_identity=raw.get("nativeIdentity", raw["id"]),
                    name=raw.get("name", ""),
                    identity_id=raw.get("identityId"),
                    uncorrelated=bool(raw.get("uncorrelated", raw.get("identityId") is None)),
                    disabled=bool(raw.get("disabled", False)),
                    modified=_parse_datetime(raw.get("modified")),
                    attributes=dict(raw.get("attributes", {})),
                )
            )
        for source_id, records in data.get("fusionAccounts", {}).items():
            for raw in records:
                platform.add_fusion_account(
                    source_id,
                    FusionAccountRecord(
                        native_identity=raw["nativeIdentity"],
                        name=raw.get("name", ""),
                        identity_id=raw.get("identityId"),
                        uncorrelated=bool(raw.get("uncorrelated", False)),
                        disabled=bool(raw.get("disabled", False)),
                        modified=_parse_datetime(raw.get("modified")),
                        attributes=dict(raw.get("attributes", {})),
                    ),
                )
        for raw in data.get("identities", []):
            platform.add_identity(
                IdentityRecord(
                    id=raw["id"],
                    name=raw.get("name", ""),
                    attributes=dict(raw.get("attributes", {})),
                    accounts=[
                        IdentityAccountRef(id=ref["id"], source_name=ref["sourceName"])
                        for ref in raw.get("accounts", [])
                    ],
                    disabled=bool(raw.get("disabled", False)),
                )
            )
        for raw in data.get("forms", []):
            definition = FormDefinition(id=raw["id"], name=raw["name"], owner_id=raw.get("ownerId"))
            platform.form_definitions[definition.id] = definition
            platform.form_instances[definition.id] = [
                FormInstance(
                    id=instance["id"],
                    form_definition_id=definition.id,
                    state=instance.get("state", FormState.ASSIGNED.value),
                    recipients=list(instance.get("recipients", [])),
                    form_input=dict(instance.get("formInput", {})),
                    form_data=dict(instance.get("formData", {})),
                    url=instance.get("url"),
                    expire=_parse_datetime(instance.get("expire")),
                )
                for instance in raw.get("instances", [])
            ]
        return platform

    def describe(self) -> str:
        return (
            f"{len(self.sources)} source(s), {sum(len(v) for v in self.accounts.values())} account(s), "
            f"{len(self.identities)} identities, {len(self.form_definitions)} form(s)"
        )
