"""Rule models shared by RuleStore and RuleQueryEngine."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from config.loader import get_validation_limits
from models.shared import (
    DEFAULT_CATEGORY,
    WIRE_RULE_TYPES,
    ResultSource,
    RuleCategoryType,
    RuleOrigin,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: Optional[datetime]) -> Optional[datetime]:
    # Remote payloads sometimes omit the offset; treat those as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TemplateRef(BaseModel):
    """(template id, template name) pair. Immutable once set on a rule."""
    model_config = ConfigDict(frozen=True)

    template_id: str
    template_name: Optional[str] = None


class RuleMetadata(BaseModel):
    """User-editable metadata for a rule. Validated as a whole on save and update."""
    name: str = ""
    description: str = ""
    category: str = ""
    tags: list[str] = Field(default_factory=list)
    template_id: Optional[str] = None
    template_name: Optional[str] = None

    @field_validator("name", "description", "category", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("tags", mode="before")
    @classmethod
    def _none_to_list(cls, v: Any) -> Any:
        return [] if v is None else v

    def validation_errors(self) -> list[str]:
        """Every violated constraint, in a stable order. Empty when valid."""
        limits = get_validation_limits()
        errors: list[str] = []

        name = self.name or ""
        if len(name.strip()) < limits["name_min_length"]:
            errors.append(f"Rule name must be at least {limits['name_min_length']} characters long")
        if len(name) > limits["name_max_length"]:
            errors.append(f"Rule name must be at most {limits['name_max_length']} characters")
        if len(self.description or "") > limits["description_max_length"]:
            errors.append(f"Description must be at most {limits['description_max_length']} characters")
        if len(self.tags) > limits["max_tags"]:
            errors.append(f"Maximum {limits['max_tags']} tags allowed")

        return errors

    @property
    def template_ref(self) -> Optional[TemplateRef]:
        if not self.template_id:
            return None
        return TemplateRef(template_id=self.template_id, template_name=self.template_name)

    def to_wire(self, category_type: RuleCategoryType) -> dict[str, Any]:
        """Metadata block as the remote store expects it."""
        return {
            "name": self.name,
            "description": self.description or "",
            "category": self.category or DEFAULT_CATEGORY[category_type],
            "tags": list(self.tags),
            "template_id": self.template_id,
            "template_name": self.template_name,
            "rule_type": WIRE_RULE_TYPES[category_type],
        }


class Rule(BaseModel):
    """A named, versioned configuration blob belonging to one category.

    ``rule_config`` is opaque here: its shape is owned by the delta,
    reconciliation or transformation domain and is passed through untouched.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    category_type: RuleCategoryType = Field(alias="rule_type")
    name: str
    description: str = ""
    category: str = ""
    tags: list[str] = Field(default_factory=list)
    template_id: Optional[str] = None
    template_name: Optional[str] = None
    rule_config: Any = None
    usage_count: int = 0
    last_used_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: str = "1.0"
    origin: RuleOrigin = RuleOrigin.REMOTE

    @field_validator("category_type", mode="before")
    @classmethod
    def _parse_category_type(cls, v: Any) -> Any:
        return RuleCategoryType.parse(v) if v is not None else v

    @field_validator("description", "category", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("tags", mode="before")
    @classmethod
    def _none_to_list(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("usage_count", mode="before")
    @classmethod
    def _none_to_zero(cls, v: Any) -> Any:
        return 0 if v is None else v

    @field_validator("last_used_at", "created_at", "updated_at", mode="after")
    @classmethod
    def _aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_aware(v)

    @field_serializer("category_type")
    def _wire_rule_type(self, v: RuleCategoryType) -> str:
        return WIRE_RULE_TYPES[v]

    @property
    def template_ref(self) -> Optional[TemplateRef]:
        if not self.template_id:
            return None
        return TemplateRef(template_id=self.template_id, template_name=self.template_name)

    def to_metadata(self) -> RuleMetadata:
        return RuleMetadata(
            name=self.name,
            description=self.description,
            category=self.category,
            tags=list(self.tags),
            template_id=self.template_id,
            template_name=self.template_name,
        )

    def to_record(self) -> dict[str, Any]:
        """JSON-safe dict using wire field names (rule_type, ISO timestamps)."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_record(cls, data: dict[str, Any], category_type: RuleCategoryType) -> "Rule":
        """Parse a remote or replica record, filling the type when the record omits it."""
        payload = dict(data)
        if not payload.get("rule_type") and not payload.get("category_type"):
            payload["rule_type"] = category_type
        return cls.model_validate(payload)


class RuleListFilters(BaseModel):
    """Filters accepted by RuleStore.list on both paths."""
    category: Optional[str] = None
    template_id: Optional[str] = None
    limit: Optional[int] = None
    offset: Optional[int] = None

    def to_query_params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        if self.category:
            params["category"] = self.category
        if self.template_id:
            params["template_id"] = self.template_id
        if self.limit:
            params["limit"] = str(self.limit)
        if self.offset:
            params["offset"] = str(self.offset)
        return params


class RuleSearchFilters(BaseModel):
    """Search predicate. Tag match is "at least one shared tag"; name_contains
    is a case-insensitive substring match against name or description."""
    category: Optional[str] = None
    template_id: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    name_contains: Optional[str] = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


# -- Tagged results ---------------------------------------------------------


class NotFound(BaseModel):
    """Entity absent. A normal outcome, not an error."""
    id: str
    source: ResultSource = ResultSource.REMOTE


class _SourcedResult(BaseModel):
    source: ResultSource = ResultSource.REMOTE
    warning: Optional[str] = None

    @property
    def is_local(self) -> bool:
        return self.source == ResultSource.LOCAL


class SaveResult(_SourcedResult):
    rule: Rule


class RuleResult(_SourcedResult):
    rule: Rule


class RuleListResult(_SourcedResult):
    rules: list[Rule] = Field(default_factory=list)


class DeleteResult(_SourcedResult):
    id: str


class UsageResult(_SourcedResult):
    id: str
    usage_count: int


class BulkDeleteResult(_SourcedResult):
    deleted_count: int = 0
    not_found_ids: list[str] = Field(default_factory=list)


class CategoriesResult(_SourcedResult):
    categories: list[str] = Field(default_factory=list)


class AllRulesResult(BaseModel):
    """Rules across every category, newest first."""
    rules: list[Rule] = Field(default_factory=list)
    sources: list[ResultSource] = Field(default_factory=list)
    partial_failure: bool = False


class ImportReport(BaseModel):
    successful: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)


class RuleStatistics(BaseModel):
    """Derived summary of a rule collection. Never persisted."""
    total: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    by_category: dict[str, int] = Field(default_factory=dict)
    by_template: dict[str, int] = Field(default_factory=dict)
    total_usage: int = 0
    most_used: Optional[Rule] = None
    recently_created: int = 0
