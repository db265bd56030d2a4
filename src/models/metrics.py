"""Pydantic models for analytics payloads served through the metrics cache."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A value and the clock reading at which it was fetched."""
    value: T
    fetched_at: float

    def age(self, now: float) -> float:
        return now - self.fetched_at

    def is_fresh(self, now: float, ttl: float) -> bool:
        return self.age(now) < ttl


class MetricsSummary(BaseModel):
    """Aggregate process analytics for one user."""
    model_config = ConfigDict(extra="allow")

    total_processes: int = 0
    total_tokens_used: int = 0
    total_input_rows: int = 0
    total_output_rows: int = 0
    success_rate: float = 0.0
    avg_processing_time_seconds: float = 0.0


class ProcessPage(BaseModel):
    """One page of a user's processes, newest first."""
    model_config = ConfigDict(extra="allow")

    processes: list[dict[str, Any]] = Field(default_factory=list)
    last_evaluated_key: Optional[str] = None


class DashboardData(BaseModel):
    summary: MetricsSummary
    recent_processes: list[dict[str, Any]] = Field(default_factory=list)
    last_updated: datetime


class DerivedMetrics(BaseModel):
    avg_tokens_per_process: int = 0
    data_efficiency: float = 0.0
    success_rate: float = 0.0
    avg_processing_time: float = 0.0


def calculate_metrics(summary: MetricsSummary) -> DerivedMetrics:
    """Efficiency figures derived from a summary; zero-safe."""
    avg_tokens = (
        summary.total_tokens_used / summary.total_processes
        if summary.total_processes > 0
        else 0
    )
    efficiency = (
        (summary.total_output_rows / summary.total_input_rows) * 100
        if summary.total_input_rows > 0
        else 0.0
    )
    return DerivedMetrics(
        avg_tokens_per_process=round(avg_tokens),
        data_efficiency=round(efficiency, 1),
        success_rate=summary.success_rate,
        avg_processing_time=summary.avg_processing_time_seconds,
    )
