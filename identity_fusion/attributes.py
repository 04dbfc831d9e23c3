from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Set

from .config import AttributeDefinitionSettings, AttributeMap, AttributeSettings
from .errors import TemplateError
from .fusion_account import FusionAccount
from .models import AttributeValue, attr_concat, attr_split
from .state import FUSION_STATE, StateStore
from .unique import IdFormat, TemplateRenderer, UniqueIdentifierGenerator, apply_format, pad_number

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttributeFailure:
    account: str
    attribute: str
    message: str


def _non_empty(value: object) -> bool:
    if value is None:
        return False
    if isinstance(value, (list, tuple, set)):
        return len(value) > 0
    return str(value) != ""


def merge_values(values: Sequence[AttributeValue], strategy: str) -> AttributeValue:
    """Combine values gathered across sources (in source order)."""
    present = [value for value in values if _non_empty(value)]
    if not present:
        return None
    if strategy in ("first", "source"):
        return present[0]
    flattened: List[str] = []
    for value in present:
        for item in attr_split(value):
            if item not in flattened:
                flattened.append(item)
    if strategy == "list":
        return flattened
    return attr_concat(flattened)


def _fmt(definition: AttributeDefinitionSettings) -> IdFormat:
    return IdFormat(
        normalize=definition.normalize,
        spaces=definition.spaces,
        case=definition.case,
        digits=definition.digits,
        max_length=definition.max_length,
    )


class AttributeDefinition:
    """A derived attribute together with its uniqueness ledger."""

    def __init__(self, settings: AttributeDefinitionSettings, renderer: TemplateRenderer) -> None:
        self.settings = settings
        self.values: Set[str] = set()
        self.fmt = _fmt(settings)
        self.generator: Optional[UniqueIdentifierGenerator] = None
        if settings.type == "unique":
            self.generator = UniqueIdentifierGenerator(settings.expression or "", self.fmt, self.values, renderer)

    @property
    def name(self) -> str:
        return self.settings.name

    @property
    def type(self) -> str:
        return self.settings.type

    @property
    def is_unique(self) -> bool:
        return self.type in ("unique", "uuid")


class AttributeService:
    """Maps source attributes onto fusion accounts and generates derived ones."""

    def __init__(
        self,
        settings: AttributeSettings,
        state: StateStore,
        state_key: str,
        source_names: Sequence[str],
        *,
        uuid_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.settings = settings
        self.state = state
        self.state_key = state_key
        self.source_names = list(source_names)
        self.uuid_factory = uuid_factory
        self.renderer = TemplateRenderer()
        self.definitions: List[AttributeDefinition] = [
            AttributeDefinition(definition, self.renderer) for definition in settings.definitions
        ]
        self.maps: Dict[str, AttributeMap] = {item.new_attribute: item for item in settings.maps}
        self.counters: Dict[str, int] = {}
        self.failures: List[AttributeFailure] = []
        self._locks: Dict[str, asyncio.Lock] = {}

    def definition(self, name: str) -> Optional[AttributeDefinition]:
        for definition in self.definitions:
            if definition.name == name:
                return definition
        return None

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # state

    def load_state(self) -> None:
        for definition in self.definitions:
            if definition.is_unique:
                definition.values.update(self.state.get_values(self.state_key, definition.name))
        logger.debug("Loaded uniqueness ledgers for %d definition(s)", sum(d.is_unique for d in self.definitions))

    def initialize_counters(self) -> None:
        stored = self.state.get(self.state_key).get(FUSION_STATE) or {}
        for definition in self.definitions:
            if definition.type != "counter":
                continue
            self.counters[definition.name] = int(stored.get(definition.name, definition.settings.counter_start))
        if self.counters:
            logger.debug("Counters initialized: %s", self.counters)

    def next_counter(self, name: str) -> int:
        value = self.counters.get(name)
        if value is None:
            definition = self.definition(name)
            value = definition.settings.counter_start if definition else 1
        self.counters[name] = value + 1
        return value

    def save_state(self) -> None:
        if self.counters:
            stored = dict(self.state.get(self.state_key).get(FUSION_STATE) or {})
            stored.update(self.counters)
            self.state.patch(self.state_key, [{"op": "add", "path": f"/{FUSION_STATE}", "value": stored}])
        for definition in self.definitions:
            if definition.is_unique:
                self.state.set_values(self.state_key, definition.name, definition.values)

    def reset_state(self) -> None:
        self.counters.clear()
        self.state.patch(self.state_key, [{"op": "remove", "path": f"/{FUSION_STATE}"}])
        for definition in self.definitions:
            definition.values.clear()
            if definition.is_unique:
                self.state.set_values(self.state_key, definition.name, [])

    # ledger

    async def register_unique_attributes(self, account: FusionAccount) -> None:
        for definition in self.definitions:
            if not definition.is_unique:
                continue
            value = account.attributes.get(definition.name)
            if not _non_empty(value):
                continue
            async with self._lock(f"{definition.type}:{definition.name}"):
                definition.values.add(str(value))

    async def unregister_unique_attributes(self, account: FusionAccount) -> None:
        for definition in self.definitions:
            if not definition.is_unique:
                continue
            value = account.attributes.get(definition.name)
            if not _non_empty(value):
                continue
            async with self._lock(f"{definition.type}:{definition.name}"):
                definition.values.discard(str(value))

    # mapping

    def _gather(self, account: FusionAccount, attribute_names: Sequence[str], source: Optional[str]) -> List[AttributeValue]:
        ordered = [name for name in self.source_names if name in account.source_attributes]
        ordered += [name for name in account.source_attributes if name not in ordered]
        if source:
            ordered = [name for name in ordered if name == source]
        values: List[AttributeValue] = []
        for source_name in ordered:
            for attributes in account.source_attributes[source_name]:
                for name in attribute_names:
                    if name in attributes:
                        values.append(attributes[name])
        return values

    def map_attributes(self, account: FusionAccount) -> None:
        """Merge source account attributes into ``account.attributes``."""
        if not account.source_attributes:
            return
        if not (account.needs_refresh or self.settings.force_refresh):
            return
        keys: List[str] = []
        for attribute_list in account.source_attributes.values():
            for attributes in attribute_list:
                for key in attributes:
                    if key not in keys:
                        keys.append(key)
        for key in keys:
            merged = merge_values(self._gather(account, [key], None), self.settings.merge)
            if merged is not None:
                account.attributes[key] = merged
        for attribute_map in self.maps.values():
            strategy = attribute_map.merge or self.settings.merge
            values = self._gather(account, attribute_map.existing_attributes, attribute_map.source)
            merged = merge_values(values, strategy)
            if merged is not None:
                account.attributes[attribute_map.new_attribute] = merged

    # definitions

    def _record_failure(self, account: FusionAccount, definition: AttributeDefinition, exc: Exception) -> None:
        failure = AttributeFailure(account=account.name or account.native_identity, attribute=definition.name, message=str(exc))
        self.failures.append(failure)
        account.add_history(f"Failed to generate {definition.name}: {exc}")
        logger.error("Failed to generate %s for %s: %s", definition.name, failure.account, exc)

    def _render(self, definition: AttributeDefinition, account: FusionAccount, counter: str = "") -> Optional[str]:
        value = self.renderer.render(
            definition.settings.expression or "",
            account.template_context(),
            counter=counter,
            max_length=definition.settings.max_length,
        )
        value = apply_format(value, definition.fmt)
        return value or None

    def _needs_generation(self, definition: AttributeDefinition, account: FusionAccount) -> bool:
        current = account.attributes.get(definition.name)
        return account.needs_reset or not _non_empty(current)

    async def refresh_non_unique_attributes(self, account: FusionAccount) -> None:
        for definition in self.definitions:
            if definition.type != "normal":
                continue
            if not (account.needs_refresh or definition.settings.refresh or self.settings.force_refresh):
                if _non_empty(account.attributes.get(definition.name)):
                    continue
            try:
                value = self._render(definition, account)
            except TemplateError as exc:
                self._record_failure(account, definition, exc)
                continue
            if value is not None:
                account.attributes[definition.name] = value

    async def refresh_unique_attributes(self, account: FusionAccount) -> bool:
        """Generate unique, uuid and counter attributes still missing on ``account``.

        Returns False when a template failure left the account without one.
        """
        ok = True
        for definition in self.definitions:
            if definition.type == "normal" or not self._needs_generation(definition, account):
                continue
            try:
                await self._generate(definition, account)
            except TemplateError as exc:
                self._record_failure(account, definition, exc)
                account.generation_failed.add(definition.name)
                ok = False
        account.needs_reset = False
        return ok

    async def _generate(self, definition: AttributeDefinition, account: FusionAccount) -> None:
        lock_key = f"{definition.type}:{definition.name}"
        previous = account.attributes.get(definition.name)
        if definition.type == "counter":
            async with self._lock(lock_key):
                counter = pad_number(self.next_counter(definition.name), definition.settings.digits)
            value = self._render(definition, account, counter)
            if value is None:
                raise TemplateError("No value returned by template")
            account.attributes[definition.name] = value
            return
        async with self._lock(lock_key):
            if _non_empty(previous):
                definition.values.discard(str(previous))
            if definition.type == "uuid":
                value = self._unique_uuid(definition)
            else:
                assert definition.generator is not None
                value = definition.generator.generate(account.template_context())
            account.attributes[definition.name] = value
        logger.debug("Generated %s=%s for %s", definition.name, value, account.name)

    def _unique_uuid(self, definition: AttributeDefinition) -> str:
        for _ in range(max(1, self.settings.max_attempts)):
            value = self.uuid_factory()
            if value not in definition.values:
                definition.values.add(value)
                return value
            logger.debug("UUID collision for %s, regenerating", definition.name)
        raise TemplateError(
            f"Failed to generate a unique uuid for {definition.name} after {self.settings.max_attempts} attempts"
        )
