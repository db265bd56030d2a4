"""Shared enums and per-category constants for the rules core.

Usage:
    from models.shared import RuleCategoryType, RuleOrigin, ResultSource
"""
from __future__ import annotations

from enum import Enum


class RuleCategoryType(str, Enum):
    """Closed set of rule categories. Fixed at creation, never mutated.

    - DELTA: delta comparison configurations
    - RECONCILIATION: reconciliation matching configurations
    - TRANSFORMATION: transformation / SQL generation configurations
    """
    DELTA = "delta"
    RECONCILIATION = "reconciliation"
    TRANSFORMATION = "transformation"

    @classmethod
    def parse(cls, value: "str | RuleCategoryType") -> "RuleCategoryType":
        """Accept the enum, its value, or the wire rule_type (delta_generation)."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        if text == WIRE_DELTA_RULE_TYPE:
            return cls.DELTA
        return cls(text)


class RuleOrigin(str, Enum):
    """Where a rule's last write landed. Diagnostic only."""
    REMOTE = "remote"
    LOCAL_ONLY = "local_only"


class ResultSource(str, Enum):
    """Which backend produced a result. Informational only."""
    REMOTE = "remote"
    LOCAL = "local"


# The remote store names delta rules differently on the wire.
WIRE_DELTA_RULE_TYPE = "delta_generation"

WIRE_RULE_TYPES: dict[RuleCategoryType, str] = {
    RuleCategoryType.DELTA: WIRE_DELTA_RULE_TYPE,
    RuleCategoryType.RECONCILIATION: "reconciliation",
    RuleCategoryType.TRANSFORMATION: "transformation",
}

# Local persistence keys, one array of rules per category
STORAGE_KEYS: dict[RuleCategoryType, str] = {
    RuleCategoryType.DELTA: "delta_rules_unified",
    RuleCategoryType.RECONCILIATION: "reconciliation_rules_unified",
    RuleCategoryType.TRANSFORMATION: "transformation_rules_unified",
}

RECENT_KEY_PREFIX = "recent_"

DEFAULT_CATEGORY: dict[RuleCategoryType, str] = {
    RuleCategoryType.DELTA: "delta",
    RuleCategoryType.RECONCILIATION: "reconciliation",
    RuleCategoryType.TRANSFORMATION: "transformation",
}

DEFAULT_CATEGORY_LISTS: dict[RuleCategoryType, list[str]] = {
    RuleCategoryType.DELTA: [
        "delta", "financial", "trading", "data-comparison", "validation", "general", "custom",
    ],
    RuleCategoryType.RECONCILIATION: [
        "reconciliation", "financial", "trading", "validation", "general", "custom",
    ],
    RuleCategoryType.TRANSFORMATION: [
        "transformation", "financial", "trading", "validation", "general", "custom",
    ],
}

COMMON_TAGS: dict[RuleCategoryType, list[str]] = {
    RuleCategoryType.DELTA: [
        "key-matching", "comparison", "tolerance", "fuzzy-match", "exact-match",
        "date-matching", "amount-matching", "id-matching", "delta-generation",
    ],
    RuleCategoryType.RECONCILIATION: [
        "extraction", "filtering", "tolerance", "fuzzy-match", "exact-match",
        "date-matching", "amount-matching", "id-matching",
    ],
    RuleCategoryType.TRANSFORMATION: [
        "transformation", "merging", "validation", "row-generation", "data-cleaning", "aggregation",
    ],
}
