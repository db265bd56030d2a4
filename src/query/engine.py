"""Client-side filtering, sorting, statistics and export over a rule collection.

Pure computation: no I/O, no suspension, and no exceptions for missing
optional fields (description, tags, category are read as empty).
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Literal, Optional

import structlog

from config.loader import get_query_config
from models.rules import Rule, RuleStatistics, utc_now
from models.shared import WIRE_RULE_TYPES, RuleCategoryType

logger = structlog.get_logger(__name__)

EXPORT_VERSION = "1.0"

SortField = Literal["name", "created_at", "updated_at", "usage_count", "category"]
SortOrder = Literal["asc", "desc"]

SORT_FIELDS: tuple[str, ...] = ("name", "created_at", "updated_at", "usage_count", "category")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class Facets:
    """Distinct filter option values in order of first appearance."""
    categories: list[str] = field(default_factory=list)
    types: list[str] = field(default_factory=list)

    def filter_options(self) -> list[str]:
        """filter_by values a caller can offer, in display order."""
        return [
            "all",
            "recent",
            "frequently_used",
            *(f"category:{c}" for c in self.categories),
            *(f"type:{t}" for t in self.types),
        ]


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _tags(rule: Rule) -> list[str]:
    tags = getattr(rule, "tags", None) or []
    return [t for t in tags if isinstance(t, str)]


def _type_value(rule: Rule) -> str:
    category_type = getattr(rule, "category_type", None)
    if isinstance(category_type, RuleCategoryType):
        return category_type.value
    return _text(category_type)


def _timestamp(value: Any) -> datetime:
    if not isinstance(value, datetime):
        return _EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _usage(rule: Rule) -> int:
    usage = getattr(rule, "usage_count", 0)
    return usage if isinstance(usage, int) else 0


def matches_search_term(rule: Rule, search_term: str) -> bool:
    """Case-insensitive substring match on name, description, category, type or any tag."""
    if not search_term:
        return True
    needle = search_term.lower()
    type_value = _type_value(rule)
    haystack = [
        _text(getattr(rule, "name", "")),
        _text(getattr(rule, "description", "")),
        _text(getattr(rule, "category", "")),
        type_value,
    ]
    category_type = getattr(rule, "category_type", None)
    if isinstance(category_type, RuleCategoryType):
        haystack.append(WIRE_RULE_TYPES[category_type])
    haystack.extend(_tags(rule))
    return any(needle in value.lower() for value in haystack)


class RuleQueryEngine:
    """Deterministic view computations over rules from any RuleStore source."""

    def __init__(
        self,
        clock: Callable[[], datetime] = utc_now,
        recent_days: Optional[int] = None,
        frequently_used_threshold: Optional[int] = None,
    ) -> None:
        cfg = get_query_config()
        self._clock = clock
        self.recent_days = recent_days if recent_days is not None else int(cfg.get("recent_days", 7))
        self.frequently_used_threshold = (
            frequently_used_threshold
            if frequently_used_threshold is not None
            else int(cfg.get("frequently_used_threshold", 3))
        )

    def _recent_cutoff(self) -> datetime:
        return _timestamp(self._clock()) - timedelta(days=self.recent_days)

    def _matches_filter(self, rule: Rule, filter_by: str, cutoff: datetime) -> bool:
        if not filter_by or filter_by == "all":
            return True
        if filter_by == "recent":
            return _timestamp(getattr(rule, "created_at", None)) > cutoff
        if filter_by == "frequently_used":
            return _usage(rule) >= self.frequently_used_threshold
        if filter_by.startswith("type:"):
            wanted = filter_by[len("type:"):]
            try:
                wanted = RuleCategoryType.parse(wanted).value
            except ValueError:
                pass
            return _type_value(rule) == wanted
        if filter_by.startswith("category:"):
            return _text(getattr(rule, "category", "")) == filter_by[len("category:"):]
        logger.warning("unknown_filter_ignored", filter_by=filter_by)
        return True

    def filter(self, rules: Iterable[Rule], search_term: str = "", filter_by: str = "all") -> list[Rule]:
        """Rules matching the search term AND the filter_by selector, input order kept.

        filter_by: all | recent | frequently_used | type:<T> | category:<C>
        """
        cutoff = self._recent_cutoff()
        return [
            rule
            for rule in rules
            if matches_search_term(rule, search_term) and self._matches_filter(rule, filter_by, cutoff)
        ]

    @staticmethod
    def _sort_key(sort_field: str) -> Callable[[Rule], Any]:
        if sort_field == "name":
            return lambda r: _text(getattr(r, "name", "")).lower()
        if sort_field == "category":
            return lambda r: _text(getattr(r, "category", "")).lower()
        if sort_field == "usage_count":
            return _usage
        if sort_field == "created_at":
            return lambda r: _timestamp(getattr(r, "created_at", None))
        return lambda r: _timestamp(getattr(r, "updated_at", None))

    def sort(self, rules: Iterable[Rule], sort_field: str = "updated_at", order: str = "desc") -> list[Rule]:
        """Stable sort; equal keys keep their input order in both directions.

        Unknown fields sort by updated_at.
        """
        if sort_field not in SORT_FIELDS:
            logger.warning("unknown_sort_field", sort_field=sort_field)
        return sorted(rules, key=self._sort_key(sort_field), reverse=(order == "desc"))

    def view(
        self,
        rules: Iterable[Rule],
        search_term: str = "",
        filter_by: str = "all",
        sort_field: str = "updated_at",
        order: str = "desc",
    ) -> list[Rule]:
        return self.sort(self.filter(rules, search_term, filter_by), sort_field, order)

    def statistics(self, rules: Iterable[Rule]) -> RuleStatistics:
        """One pass. most_used keeps the first rule seen with the highest usage."""
        cutoff = self._recent_cutoff()
        stats = RuleStatistics()
        most_used_count = -1

        for rule in rules:
            stats.total += 1

            type_value = _type_value(rule) or "unknown"
            stats.by_type[type_value] = stats.by_type.get(type_value, 0) + 1

            category = _text(getattr(rule, "category", "")) or "uncategorized"
            stats.by_category[category] = stats.by_category.get(category, 0) + 1

            template_name = _text(getattr(rule, "template_name", None))
            if template_name:
                stats.by_template[template_name] = stats.by_template.get(template_name, 0) + 1

            usage = _usage(rule)
            stats.total_usage += usage
            if usage > most_used_count:
                stats.most_used = rule
                most_used_count = usage

            if _timestamp(getattr(rule, "created_at", None)) > cutoff:
                stats.recently_created += 1

        return stats

    @staticmethod
    def facets(rules: Iterable[Rule]) -> Facets:
        facets = Facets()
        seen_categories: set[str] = set()
        seen_types: set[str] = set()
        for rule in rules:
            category = _text(getattr(rule, "category", ""))
            if category and category not in seen_categories:
                seen_categories.add(category)
                facets.categories.append(category)
            type_value = _type_value(rule)
            if type_value and type_value not in seen_types:
                seen_types.add(type_value)
                facets.types.append(type_value)
        return facets

    def export(self, rules: Iterable[Rule], exported_at: Optional[datetime] = None) -> bytes:
        """Serialize exactly the given view with a version/timestamp/count header."""
        view = list(rules)
        payload = {
            "version": EXPORT_VERSION,
            "exported_at": (exported_at or self._clock()).isoformat(),
            "total_rules": len(view),
            "rules": [rule.to_record() for rule in view],
        }
        return json.dumps(payload, indent=2, default=str).encode("utf-8")

    def export_filename(self) -> str:
        return f"rules_export_{self._clock().date().isoformat()}.json"
