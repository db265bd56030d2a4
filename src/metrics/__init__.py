"""Cached analytics reads shared across the process."""
from metrics.cache import (
    AutoRefresher,
    DashboardView,
    MetricsCache,
    MetricsKey,
    get_metrics_cache,
    initialize_metrics_cache,
    shutdown_metrics_cache,
)
from metrics.client import AnalyticsClient

__all__ = [
    "AnalyticsClient",
    "AutoRefresher",
    "DashboardView",
    "MetricsCache",
    "MetricsKey",
    "get_metrics_cache",
    "initialize_metrics_cache",
    "shutdown_metrics_cache",
]
