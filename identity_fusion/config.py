from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError, soft_assert

logger = logging.getLogger(__name__)

ALGORITHMS = ("name-matcher", "jaro-winkler", "lig3", "dice", "double-metaphone")

Algorithm = Literal["name-matcher", "jaro-winkler", "lig3", "dice", "double-metaphone"]
MergeStrategy = Literal["first", "list", "concatenate", "source"]
DefinitionType = Literal["normal", "unique", "uuid", "counter"]
CaseOption = Literal["same", "lower", "upper", "capitalize"]


class PlatformSettings(BaseModel):
    base_url: str
    fusion_source_id: str
    owner_id: Optional[str] = None


class SourceSettings(BaseModel):
    name: str
    force_aggregation: bool = False
    account_filter: Optional[str] = None
    account_limit: Optional[int] = None

    @field_validator("account_limit")
    @classmethod
    def _positive_limit(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value <= 0:
            raise ValueError("account_limit must be positive")
        return value


class MatchingRule(BaseModel):
    attribute: str
    algorithm: Algorithm = "jaro-winkler"
    fusion_score: float = 0
    mandatory: bool = False

    @field_validator("fusion_score")
    @classmethod
    def _score_range(cls, value: float) -> float:
        if not 0 <= value <= 100:
            raise ValueError("fusion_score must be within 0..100")
        return value


class MatchingSettings(BaseModel):
    rules: List[MatchingRule] = Field(default_factory=list)
    use_average_score: bool = False
    average_score: Optional[float] = None
    merge_identical: bool = False
    auto_link_single_match: bool = False

    @model_validator(mode="after")
    def _average_threshold(self) -> "MatchingSettings":
        if self.use_average_score:
            if self.average_score is None:
                raise ValueError("average_score is required when use_average_score is enabled")
            if not 0 <= self.average_score <= 100:
                raise ValueError("average_score must be within 0..100")
        return self


class AttributeMap(BaseModel):
    new_attribute: str
    existing_attributes: List[str]
    merge: Optional[MergeStrategy] = None
    source: Optional[str] = None

    @model_validator(mode="after")
    def _source_required(self) -> "AttributeMap":
        if self.merge == "source" and not self.source:
            raise ValueError(f"attribute map {self.new_attribute!r} uses merge 'source' without a source")
        return self


class AttributeDefinitionSettings(BaseModel):
    name: str
    expression: Optional[str] = None
    type: DefinitionType = "normal"
    case: CaseOption = "same"
    normalize: bool = False
    spaces: bool = False
    digits: int = 1
    counter_start: int = 1
    max_length: Optional[int] = None
    refresh: bool = False

    @model_validator(mode="after")
    def _expression_required(self) -> "AttributeDefinitionSettings":
        if self.type in ("unique", "counter", "normal") and not self.expression:
            raise ValueError(f"attribute definition {self.name!r} of type {self.type!r} needs an expression")
        if self.digits < 1:
            raise ValueError("digits must be at least 1")
        return self


class AttributeSettings(BaseModel):
    merge: MergeStrategy = "first"
    maps: List[AttributeMap] = Field(default_factory=list)
    definitions: List[AttributeDefinitionSettings] = Field(default_factory=list)
    max_attempts: int = 100
    force_refresh: bool = False

    @field_validator("merge")
    @classmethod
    def _global_merge(cls, value: str) -> str:
        if value == "source":
            raise ValueError("merge 'source' is only valid on an attribute map")
        return value


class ReviewSettings(BaseModel):
    form_name_pattern: str = "Fusion Review"
    form_attributes: List[str] = Field(default_factory=list)
    form_expiration_days: int = 7
    owner_is_global_reviewer: bool = False
    report_on_aggregation: bool = False
    reviewers: Dict[str, List[str]] = Field(default_factory=dict)
    max_candidates: int = 15


class ProcessingSettings(BaseModel):
    reset: bool = False
    delete_empty: bool = False
    batch_size: int = 50
    keepalive_seconds: float = 30.0
    max_history_messages: int = 10
    identity_attribute: str = "id"
    display_attribute: str = "name"
    include_identities: bool = True
    page_size: int = 250

    @field_validator("batch_size")
    @classmethod
    def _batch_size(cls, value: int) -> int:
        if value < 1:
            raise ValueError("batch_size must be at least 1")
        return value


class RetrySettings(BaseModel):
    max_retries: int = 20
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    jitter: float = 0.3


class StateSettings(BaseModel):
    path: Optional[Path] = None

    @field_validator("path", mode="before")
    @classmethod
    def _expand_path(cls, value: Optional[str | Path]) -> Optional[Path]:
        if value is None:
            return None
        return Path(value).expanduser().resolve()


class Settings(BaseModel):
    platform: PlatformSettings
    sources: List[SourceSettings] = Field(default_factory=list)
    matching: MatchingSettings = MatchingSettings()
    attributes: AttributeSettings = AttributeSettings()
    review: ReviewSettings = ReviewSettings()
    processing: ProcessingSettings = ProcessingSettings()
    retry: RetrySettings = RetrySettings()
    state: StateSettings = StateSettings()

    @classmethod
    def load(cls, path: Path) -> "Settings":
        try:
            with path.open("r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh)
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"Unable to read configuration {path}: {exc}") from exc
        return cls.from_mapping(raw or {})

    @classmethod
    def from_mapping(cls, raw: dict) -> "Settings":
        try:
            settings = cls.model_validate(raw)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid configuration: {exc}") from exc
        settings.check_defaults()
        return settings

    def check_defaults(self) -> None:
        soft_assert(self.sources, "No sources configured; only fusion accounts will be processed")
        soft_assert(self.matching.rules, "No matching rules configured; every account becomes a new identity")
        for rule in self.matching.rules:
            if rule.fusion_score == 0 and not self.matching.use_average_score:
                logger.debug("Rule on %s has threshold 0 and always matches", rule.attribute)

    def source_names(self) -> List[str]:
        return [source.name for source in self.sources]

    def source_settings(self, name: str) -> Optional[SourceSettings]:
        for source in self.sources:
            if source.name == name:
                return source
        return None


def find_config(explicit_path: Optional[Path]) -> Path:
    if explicit_path:
        return explicit_path
    cwd = Path.cwd()
    for candidate in (cwd / "config.yaml", cwd / "config.yml"):
        if candidate.exists():
            return candidate
    raise ConfigurationError("Could not find config.yaml - pass --config explicitly.")
