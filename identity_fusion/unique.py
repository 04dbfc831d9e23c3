"""
Template rendering and collision-free identifier generation.

Identifiers are rendered from Jinja2 expressions such as
``{{ firstname[0] }}{{ lastname }}{{ counter }}``. When the counter-less
rendering (the base ID) is taken, the generator looks for the highest numeric
suffix already issued for that base and continues from there, remembering the
result so repeated collisions on one base cost O(1).
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import AbstractSet, Any, Dict, Mapping, MutableSet, Optional

import jinja2
from jinja2 import meta
from jinja2.sandbox import SandboxedEnvironment

from .errors import TemplateError

logger = logging.getLogger(__name__)

COUNTER = "counter"
COUNTER_SUFFIX = "{{ counter }}"

_COUNTER_AT_END = re.compile(r"\{\{-?\s*counter\s*-?\}\}\s*$")
_WHITESPACE = re.compile(r"\s")


@dataclass(frozen=True)
class IdFormat:
    normalize: bool = False
    spaces: bool = False
    case: str = "same"
    digits: int = 1
    max_length: Optional[int] = None


def transliterate(value: str) -> str:
    normalized = unicodedata.normalize("NFKD", value)
    return normalized.encode("ascii", "ignore").decode("ascii")


def switch_case(value: str, case: str) -> str:
    if case == "lower":
        return value.lower()
    if case == "upper":
        return value.upper()
    if case == "capitalize":
        return " ".join(word[:1].upper() + word[1:] for word in value.split(" "))
    return value


def apply_format(value: str, fmt: IdFormat) -> str:
    if fmt.normalize:
        value = transliterate(value).replace("'", "")
    if fmt.spaces:
        value = _WHITESPACE.sub("", value)
    return switch_case(value, fmt.case)


def pad_number(number: int, digits: int) -> str:
    return str(number).zfill(max(1, digits))


class TemplateRenderer:
    """Compiles and caches sandboxed Jinja2 expressions."""

    def __init__(self) -> None:
        self.env = SandboxedEnvironment(autoescape=False, keep_trailing_newline=False)
        self._cache: Dict[str, jinja2.Template] = {}

    def has_variable(self, expression: str, name: str) -> bool:
        try:
            parsed = self.env.parse(expression)
        except jinja2.TemplateSyntaxError as exc:
            raise TemplateError(f"Invalid template {expression!r}: {exc}") from exc
        return name in meta.find_undeclared_variables(parsed)

    def _compile(self, expression: str) -> jinja2.Template:
        template = self._cache.get(expression)
        if template is None:
            try:
                template = self.env.from_string(expression)
            except jinja2.TemplateSyntaxError as exc:
                raise TemplateError(f"Invalid template {expression!r}: {exc}") from exc
            self._cache[expression] = template
        return template

    def render(
        self,
        expression: str,
        context: Mapping[str, Any],
        *,
        counter: str = "",
        max_length: Optional[int] = None,
    ) -> str:
        template = self._compile(expression)
        try:
            result = template.render({**context, COUNTER: counter})
        except jinja2.TemplateError as exc:
            raise TemplateError(f"Failed to render {expression!r}: {exc}") from exc
        result = result.strip()
        if max_length and len(result) > max_length:
            result = self._truncate(result, expression, counter, max_length)
        return result

    @staticmethod
    def _truncate(result: str, expression: str, counter: str, max_length: int) -> str:
        if not counter:
            return result[:max_length]
        if not _COUNTER_AT_END.search(expression):
            logger.error("Counter is not at the end of %s; truncating without preserving it", expression)
            return result[:max_length]
        available = max_length - len(counter)
        if available < 0:
            logger.error("Maximum length %d is shorter than counter %s", max_length, counter)
            return result[:max_length]
        return result[: len(result) - len(counter)][:available] + counter


class UniqueIdentifierGenerator:
    """Generates identifiers that never collide with the ``ids`` ledger.

    The max-counter cache belongs to the instance. Two fresh generators given
    the same ledger and context produce the same identifier.
    """

    def __init__(
        self,
        template: str,
        fmt: IdFormat = IdFormat(),
        ids: Optional[MutableSet[str]] = None,
        renderer: Optional[TemplateRenderer] = None,
    ) -> None:
        self.renderer = renderer or TemplateRenderer()
        if not self.renderer.has_variable(template, COUNTER):
            template = template + COUNTER_SUFFIX
        self.template = template
        self.fmt = fmt
        self.ids: MutableSet[str] = ids if ids is not None else set()
        self._max_counters: Dict[str, int] = {}

    def _render(self, context: Mapping[str, Any], counter: str) -> str:
        value = self.renderer.render(
            self.template, context, counter=counter, max_length=self.fmt.max_length
        )
        return apply_format(value, self.fmt)

    def base_id(self, context: Mapping[str, Any]) -> str:
        value = self._render(context, "")
        if not value:
            raise TemplateError("No value returned by template")
        return value

    def _scan_max_counter(self, base: str, existing: AbstractSet[str]) -> int:
        pattern = re.compile(rf"^{re.escape(base)}(\d+)$")
        highest = 0
        for value in existing:
            found = pattern.match(value)
            if found:
                highest = max(highest, int(found.group(1)))
        return highest

    def build_unique_id(
        self,
        attributes: Mapping[str, Any],
        existing_ids: Optional[AbstractSet[str]] = None,
        *,
        derived: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """Return an identifier for ``attributes`` absent from ``existing_ids``.

        ``derived`` carries merge-map attributes layered over the account's own
        attributes. The ledger defaults to ``self.ids``; nothing is registered.
        """
        existing = self.ids if existing_ids is None else existing_ids
        context = dict(attributes)
        if derived:
            context.update(derived)
        base = self.base_id(context)
        if base not in existing:
            return base

        highest = self._max_counters.get(base)
        if highest is None:
            highest = self._scan_max_counter(base, existing)
        counter = highest + 1
        candidate = self._render(context, pad_number(counter, self.fmt.digits))
        while candidate in existing:
            counter += 1
            candidate = self._render(context, pad_number(counter, self.fmt.digits))
        self._max_counters[base] = counter
        logger.debug("Base %s taken, issued %s", base, candidate)
        return candidate

    def generate(self, attributes: Mapping[str, Any], *, derived: Optional[Mapping[str, Any]] = None) -> str:
        """Build an identifier against the ledger and register it."""
        value = self.build_unique_id(attributes, derived=derived)
        self.ids.add(value)
        return value

    def register(self, value: str) -> None:
        self.ids.add(value)

    def unregister(self, value: str) -> None:
        self.ids.discard(value)

    def clear_cache(self) -> None:
        self._max_counters.clear()
