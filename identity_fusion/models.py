from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import PreconditionError

AttributeValue = Union[str, int, float, bool, None, List[str]]
Attributes = Dict[str, AttributeValue]

_BRACKETED = re.compile(r"\[([^\]]*)\]")
_TRUE_STRINGS = {"true", "yes", "1", "y", "on"}
_FALSE_STRINGS = {"false", "no", "0", "n", "off", ""}


class Status(Enum):
    """Statuses carried by a fusion identity."""
    AUTHORIZED = "authorized"
    AUTO = "auto"
    BASELINE = "baseline"
    MANUAL = "manual"
    ORPHAN = "orphan"
    UNMATCHED = "unmatched"
    REVIEWER = "reviewer"
    UNCORRELATED = "uncorrelated"
    CANDIDATE = "candidate"
    ACTIVE_REVIEWS = "activeReviews"


class Action(Enum):
    REPORT = "report"
    FUSION = "fusion"
    CORRELATED = "correlated"


class FormState(Enum):
    COMPLETED = "COMPLETED"
    IN_PROGRESS = "IN_PROGRESS"
    CANCELLED = "CANCELLED"
    ASSIGNED = "ASSIGNED"
    UNASSIGNED = "UNASSIGNED"

    @classmethod
    def parse(cls, value: object) -> Optional["FormState"]:
        if value is None or isinstance(value, FormState):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            return None


def attr_split(value: AttributeValue) -> List[str]:
    """Split a stored multi-value attribute.

    Lists pass through, ``"[a] [b]"`` strings are split on their brackets and a
    plain scalar becomes a one-item list.
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(item) for item in value if item is not None and str(item) != ""]
    text = str(value).strip()
    if not text:
        return []
    bracketed = _BRACKETED.findall(text)
    if bracketed:
        return [item.strip() for item in bracketed if item.strip()]
    return [text]


def attr_concat(values: List[str]) -> str:
    unique = sorted({str(value) for value in values if value is not None and str(value) != ""})
    return " ".join(f"[{value}]" for value in unique)


def first_value(value: AttributeValue) -> AttributeValue:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def value_as_text(value: AttributeValue) -> Optional[str]:
    """Text form used by the scorers; ``None`` means the attribute is absent."""
    value = first_value(value)
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    text = str(value)
    return text if text.strip() else None


def cast_attribute(value: Any, *, attr_type: str = "string", multi: bool = False) -> AttributeValue:
    """Coerce a raw value to the closed attribute value type for a schema attribute."""
    if multi:
        return attr_split(value)
    if isinstance(value, (list, tuple, set)):
        items = [item for item in value if item is not None]
        value = items[0] if items else None
    if value is None:
        return None
    kind = attr_type.lower()
    if kind in ("int", "integer", "long"):
        try:
            return int(value)
        except (TypeError, ValueError):
            return None
    if kind in ("boolean", "bool"):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        return None
    if kind in ("number", "float", "decimal"):
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass(frozen=True)
class SchemaAttribute:
    name: str
    type: str = "string"
    multi: bool = False
    description: str = ""


@dataclass
class AccountSchema:
    identity_attribute: str = "id"
    display_attribute: str = "name"
    attributes: List[SchemaAttribute] = field(default_factory=list)

    def names(self) -> List[str]:
        return [attribute.name for attribute in self.attributes]

    def cast(self, raw: Mapping[str, Any]) -> Attributes:
        """Return the schema subset of ``raw`` with every value cast to its declared type."""
        lowered = {key.lower(): key for key in raw}
        result: Attributes = {}
        for attribute in self.attributes:
            key = attribute.name if attribute.name in raw else lowered.get(attribute.name.lower())
            if key is None:
                continue
            result[attribute.name] = cast_attribute(raw[key], attr_type=attribute.type, multi=attribute.multi)
        return result


@dataclass(frozen=True)
class ManagedAccount:
    """An account as fetched from a managed source for this run."""
    id: str
    source_id: str
    source_name: str
    native_identity: str
    name: str = ""
    identity_id: Optional[str] = None
    uncorrelated: bool = True
    disabled: bool = False
    modified: Optional[datetime] = None
    attributes: Mapping[str, AttributeValue] = field(default_factory=dict)

    def get(self, attribute: str) -> AttributeValue:
        return self.attributes.get(attribute)


@dataclass(frozen=True)
class FusionAccountRecord:
    """A previously emitted fusion account as stored on the fusion source."""
    native_identity: str
    name: str = ""
    identity_id: Optional[str] = None
    uncorrelated: bool = False
    disabled: bool = False
    modified: Optional[datetime] = None
    attributes: Mapping[str, AttributeValue] = field(default_factory=dict)


@dataclass(frozen=True)
class IdentityAccountRef:
    id: str
    source_name: str


@dataclass(frozen=True)
class IdentityRecord:
    id: str
    name: str
    attributes: Mapping[str, AttributeValue] = field(default_factory=dict)
    accounts: List[IdentityAccountRef] = field(default_factory=list)
    disabled: bool = False

    @property
    def email(self) -> Optional[str]:
        value = self.attributes.get("email")
        return str(value) if value else None

    @property
    def display_name(self) -> str:
        value = self.attributes.get("displayName")
        return str(value) if value else self.name


@dataclass(frozen=True)
class Source:
    id: str
    name: str
    owner_id: Optional[str] = None


@dataclass(frozen=True)
class ScoreReport:
    attribute: str
    algorithm: str
    score: int
    fusion_score: float
    is_match: bool
    comment: Optional[str] = None

    def to_record(self) -> Dict[str, object]:
        record: Dict[str, object] = {
            "attribute": self.attribute,
            "algorithm": self.algorithm,
            "score": self.score,
            "fusionScore": self.fusion_score,
            "isMatch": self.is_match,
        }
        if self.comment:
            record["comment"] = self.comment
        return record


@dataclass
class FusionMatch:
    fusion_identity: Any
    scores: List[ScoreReport] = field(default_factory=list)

    @property
    def identity_id(self) -> Optional[str]:
        return self.fusion_identity.identity_id

    @property
    def identity_name(self) -> str:
        return self.fusion_identity.name

    @property
    def attribute_scores(self) -> List[ScoreReport]:
        return [score for score in self.scores if score.algorithm != "average"]

    def all_scores_perfect(self) -> bool:
        scores = self.attribute_scores
        return bool(scores) and all(score.score == 100 for score in scores)


@dataclass(frozen=True)
class User:
    id: str
    name: str = ""
    email: str = ""


SYSTEM_USER = User(id="system", name="System (auto-correlated)")


@dataclass(frozen=True)
class DecisionAccount:
    id: str
    name: str
    source_name: str


@dataclass
class FusionDecision:
    """A reviewer's resolution of one ambiguous match.

    ``new_identity`` and ``identity_id`` are mutually exclusive. The managed
    account the decision resolves is attached once it has been taken off the
    work queue.
    """
    submitter: User
    account: DecisionAccount
    new_identity: bool
    identity_id: Optional[str] = None
    comments: str = ""
    finished: bool = True
    form_url: Optional[str] = None
    managed_account: Optional[ManagedAccount] = None

    def __post_init__(self) -> None:
        if self.new_identity and self.identity_id:
            raise PreconditionError("A new-identity decision must not name a target identity")
        if not self.new_identity and not self.identity_id:
            raise PreconditionError("An assignment decision must name a target identity")


@dataclass(frozen=True)
class FormDefinition:
    id: str
    name: str
    owner_id: Optional[str] = None
    fields: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class FormInstance:
    id: str
    form_definition_id: str
    state: str
    recipients: List[str] = field(default_factory=list)
    form_input: Mapping[str, Any] = field(default_factory=dict)
    form_data: Mapping[str, Any] = field(default_factory=dict)
    url: Optional[str] = None
    expire: Optional[datetime] = None

    @property
    def parsed_state(self) -> Optional[FormState]:
        return FormState.parse(self.state)

    @property
    def is_response(self) -> bool:
        return self.parsed_state in (FormState.COMPLETED, FormState.IN_PROGRESS)

    @property
    def is_cancelled(self) -> bool:
        return self.parsed_state is FormState.CANCELLED

    @property
    def is_pending(self) -> bool:
        return not (self.is_response or self.is_cancelled)

    @property
    def account_id(self) -> Optional[str]:
        account = self.form_input.get("account")
        if isinstance(account, Mapping):
            value = account.get("id")
            return str(value) if value else None
        value = self.form_input.get("accountId")
        return str(value) if value else None

    @property
    def candidate_ids(self) -> List[str]:
        candidates = self.form_input.get("candidates") or []
        ids: List[str] = []
        for candidate in candidates:
            if isinstance(candidate, Mapping):
                candidate = candidate.get("id")
            if candidate:
                ids.append(str(candidate))
        return ids


@dataclass
class AccountOutput:
    """One emitted fusion-identity record."""
    key: str
    attributes: Attributes
    disabled: bool = False

    def to_record(self) -> Dict[str, object]:
        return {"key": self.key, "attributes": dict(self.attributes), "disabled": self.disabled}
