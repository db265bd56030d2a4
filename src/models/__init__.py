"""Rule and analytics data models."""
from models.metrics import CacheEntry, DashboardData, DerivedMetrics, MetricsSummary, ProcessPage, calculate_metrics
from models.rules import (
    AllRulesResult,
    ImportReport,
    NotFound,
    Rule,
    RuleListFilters,
    RuleMetadata,
    RuleSearchFilters,
    RuleStatistics,
)
from models.shared import ResultSource, RuleCategoryType, RuleOrigin

__all__ = [
    "AllRulesResult",
    "CacheEntry",
    "DashboardData",
    "DerivedMetrics",
    "ImportReport",
    "MetricsSummary",
    "NotFound",
    "ProcessPage",
    "ResultSource",
    "Rule",
    "RuleCategoryType",
    "RuleListFilters",
    "RuleMetadata",
    "RuleOrigin",
    "RuleSearchFilters",
    "RuleStatistics",
    "calculate_metrics",
]
