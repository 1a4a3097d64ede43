"""
Delegation Analytics - Data Models

Frozen result records produced by the analytics engine, plus the filter
used to select delegation history.

All values are plain numbers computed deterministically from the input
history; nothing here is stored by the core.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Tuple

from .errors import InvalidRequestError
from .role_registry import Role
from .task_model import DelegationRecord


# -----------------------------------------------------------------------------
# Filter
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class AnalyticsFilter:
    """
    Criteria for selecting delegation records.

    role matches records where the role sends or receives.
    start_date / end_date bound delegated_at, inclusive. Naive dates are
    taken as UTC.
    """
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    role: Optional[Role] = None
    task_id: Optional[str] = None

    def __post_init__(self):
        for name in ("start_date", "end_date"):
            value = getattr(self, name)
            if value is not None and value.tzinfo is None:
                object.__setattr__(self, name, value.replace(tzinfo=timezone.utc))
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise InvalidRequestError(
                "start_date must not be after end_date",
                start_date=self.start_date.isoformat(),
                end_date=self.end_date.isoformat(),
            )

    def matches_task(self, task_id: str) -> bool:
        return self.task_id is None or self.task_id == task_id

    def matches(self, record: DelegationRecord) -> bool:
        if not self.matches_task(record.task_id):
            return False
        if self.start_date and record.delegated_at < self.start_date:
            return False
        if self.end_date and record.delegated_at > self.end_date:
            return False
        if self.role and self.role not in (record.from_role, record.to_role):
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "role": self.role.value if self.role else None,
            "task_id": self.task_id,
        }


# -----------------------------------------------------------------------------
# Role Metrics
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class RoleMetric:
    """
    Per-role performance across the selected records.

    Percentages are 0-100; average_completion_time is in hours.
    """
    role: Role
    tasks_received: int
    tasks_completed: int
    average_completion_time: float
    success_rate: float
    delegation_efficiency: float
    workload_share: float
    quality_score: float
    redelegations_received: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role.value,
            "tasks_received": self.tasks_received,
            "tasks_completed": self.tasks_completed,
            "average_completion_time": self.average_completion_time,
            "success_rate": self.success_rate,
            "delegation_efficiency": self.delegation_efficiency,
            "workload_share": self.workload_share,
            "quality_score": self.quality_score,
            "redelegations_received": self.redelegations_received,
        }


@dataclass(frozen=True)
class RoleMetricsReport:
    metrics: Tuple[RoleMetric, ...]
    excluded_task_count: int = 0
    excluded_task_ids: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metrics": [m.to_dict() for m in self.metrics],
            "excluded_task_count": self.excluded_task_count,
            "excluded_task_ids": list(self.excluded_task_ids),
        }


# -----------------------------------------------------------------------------
# Delegation Flow
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class TransitionPath:
    from_role: Role
    to_role: Role
    count: int
    percentage: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_role": self.from_role.value,
            "to_role": self.to_role.value,
            "count": self.count,
            "percentage": self.percentage,
        }


@dataclass(frozen=True)
class RedelegationHotspot:
    from_role: Role
    to_role: Role
    count: int
    reasons: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_role": self.from_role.value,
            "to_role": self.to_role.value,
            "count": self.count,
            "reasons": list(self.reasons),
        }


@dataclass(frozen=True)
class Bottleneck:
    role: Role
    average_wait_hours: float
    threshold_hours: float
    sample_size: int
    impact: str  # "high" | "medium"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role.value,
            "average_wait_hours": self.average_wait_hours,
            "threshold_hours": self.threshold_hours,
            "sample_size": self.sample_size,
            "impact": self.impact,
        }


@dataclass(frozen=True)
class SuccessBreakdown:
    """success_rate counts decided records only; pending is reported apart."""
    successful: int = 0
    failed: int = 0
    pending: int = 0
    total: int = 0
    success_rate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "successful": self.successful,
            "failed": self.failed,
            "pending": self.pending,
            "total": self.total,
            "success_rate": self.success_rate,
        }


@dataclass(frozen=True)
class WeeklyTrend:
    """Oldest week first."""
    successful: Tuple[int, ...] = (0, 0, 0, 0)
    failed: Tuple[int, ...] = (0, 0, 0, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {"successful": list(self.successful), "failed": list(self.failed)}


@dataclass(frozen=True)
class WorkflowHealth:
    score: int = 0
    grade: str = "F"
    factors: Tuple[Tuple[str, int], ...] = (
        ("success", 0), ("handoff", 0), ("redelegation", 0), ("efficiency", 0),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "grade": self.grade, "factors": dict(self.factors)}


@dataclass(frozen=True)
class DelegationAnalytics:
    """Cross-task delegation analytics."""
    total_records: int
    task_count: int
    common_paths: Tuple[TransitionPath, ...]
    hotspots: Tuple[RedelegationHotspot, ...]
    bottlenecks: Tuple[Bottleneck, ...]
    transition_matrix: Tuple[Tuple[str, Tuple[Tuple[str, int], ...]], ...]
    success: SuccessBreakdown
    average_handoff_hours: float
    average_redelegations_per_task: float
    weekly_trend: WeeklyTrend
    health: WorkflowHealth
    excluded_task_count: int = 0
    excluded_task_ids: Tuple[str, ...] = field(default_factory=tuple)

    def matrix_dict(self) -> Dict[str, Dict[str, int]]:
        return {src: dict(row) for src, row in self.transition_matrix}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_records": self.total_records,
            "task_count": self.task_count,
            "common_paths": [p.to_dict() for p in self.common_paths],
            "hotspots": [h.to_dict() for h in self.hotspots],
            "bottlenecks": [b.to_dict() for b in self.bottlenecks],
            "transition_matrix": self.matrix_dict(),
            "success": self.success.to_dict(),
            "average_handoff_hours": self.average_handoff_hours,
            "average_redelegations_per_task": self.average_redelegations_per_task,
            "weekly_trend": self.weekly_trend.to_dict(),
            "health": self.health.to_dict(),
            "excluded_task_count": self.excluded_task_count,
            "excluded_task_ids": list(self.excluded_task_ids),
        }
