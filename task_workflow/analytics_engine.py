"""
Delegation Analytics Engine

Aggregates delegation histories into role and workflow statistics.

Formulas (fixed, reproducible):
- success_rate            = successful received / total received * 100
- delegation_efficiency   = max(0, success_ratio*100 - 20 * redelegation_rate)
- speed_score             = max(0, 100 - (avg_completion_hours / 24) * 100),
                            0 when the role has no completed records
- quality_score           = 0.4*success_rate + 0.3*speed_score
                            + 0.3*delegation_efficiency
- health score            = 0.3*success + 0.25*handoff + 0.25*redelegation
                            + 0.2*efficiency, graded A/B/C/D/F at 90/80/70/60

A record's completion time is its completed_at when set, otherwise the
delegated_at of the next record of the same task (the receiver handing off),
or the task's completed_at for the final record of a closed task.

READ-ONLY: every operation is a pure function of its inputs. A task whose
history fails replay is excluded and reported, never fatal.
"""

import logging
from collections import OrderedDict, defaultdict
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional, Dict, List, Mapping, Sequence, Tuple

from .analytics_model import (
    AnalyticsFilter,
    Bottleneck,
    DelegationAnalytics,
    RedelegationHotspot,
    RoleMetric,
    RoleMetricsReport,
    SuccessBreakdown,
    TransitionPath,
    WeeklyTrend,
    WorkflowHealth,
)
from .config import WorkflowConfig
from .delegation_chain import DelegationChain
from .errors import MalformedHistoryError
from .role_registry import CANONICAL_STAGES, Role
from .task_model import DelegationRecord, utc_now

logger = logging.getLogger("analytics_engine")

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
REDELEGATION_PENALTY = 20.0
SPEED_BASELINE_HOURS = 24.0
QUALITY_WEIGHTS = (0.4, 0.3, 0.3)  # success, speed, efficiency
HEALTH_WEIGHTS = (0.3, 0.25, 0.25, 0.2)  # success, handoff, redelegation, efficiency
HEALTH_GRADES = ((90, "A"), (80, "B"), (70, "C"), (60, "D"))
TREND_WEEKS = 4

Histories = Mapping[str, Sequence[DelegationRecord]]
Completions = Mapping[str, datetime]


def _hours(delta: timedelta) -> float:
    return delta.total_seconds() / 3600


def _round1(value: float) -> float:
    return round(value, 1)


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


# -----------------------------------------------------------------------------
# History Preparation
# -----------------------------------------------------------------------------
def resolve_completion_times(
    records: Sequence[DelegationRecord],
    closed_at: Optional[datetime] = None,
) -> List[DelegationRecord]:
    """
    Copies of one task's records with completed_at filled from the next record.

    closed_at is the task's own completion time: closing the task writes
    no record, so it completes the final record instead.
    The inputs are not modified.
    """
    ordered = sorted(records, key=lambda r: r.delegated_at)
    resolved = []
    for index, record in enumerate(ordered):
        if record.completed_at is None:
            if index + 1 < len(ordered):
                record = replace(record, completed_at=ordered[index + 1].delegated_at)
            elif closed_at is not None and closed_at >= record.delegated_at:
                record = replace(record, completed_at=closed_at)
        resolved.append(record)
    return resolved


def prepare_records(
    histories: Histories,
    criteria: Optional[AnalyticsFilter] = None,
    completions: Optional[Completions] = None,
) -> Tuple[List[DelegationRecord], List[str], List[str]]:
    """
    Validate, resolve and filter histories.

    completions maps task id to completed_at for tasks that have been
    closed. Returns (records, included_task_ids, excluded_task_ids).
    Records are ordered chronologically across tasks.
    """
    criteria = criteria or AnalyticsFilter()
    completions = completions or {}
    selected: List[DelegationRecord] = []
    included: List[str] = []
    excluded: List[str] = []

    for task_id, records in histories.items():
        if not criteria.matches_task(task_id):
            continue
        ordered = sorted(records, key=lambda r: r.delegated_at)
        try:
            DelegationChain.replay(task_id, ordered)
        except MalformedHistoryError as e:
            logger.warning(f"Excluding task {task_id} from analytics: {e.message}")
            excluded.append(task_id)
            continue

        resolved = resolve_completion_times(ordered, completions.get(task_id))
        matching = [r for r in resolved if criteria.matches(r)]
        if matching:
            included.append(task_id)
            selected.extend(matching)

    selected.sort(key=lambda r: (r.delegated_at, r.task_id, r.sequence))
    return selected, included, excluded


# -----------------------------------------------------------------------------
# Analytics Engine (READ-ONLY)
# -----------------------------------------------------------------------------
class DelegationAnalyticsEngine:
    """Pure aggregation over delegation records."""

    def __init__(self, config: Optional[WorkflowConfig] = None):
        self._config = config or WorkflowConfig()

    @property
    def config(self) -> WorkflowConfig:
        return self._config

    # -------------------------------------------------------------------------
    # Role Efficiency
    # -------------------------------------------------------------------------

    @staticmethod
    def completion_hours(records: Sequence[DelegationRecord]) -> List[float]:
        return [
            _hours(r.completed_at - r.delegated_at)
            for r in records
            if r.completed_at is not None and r.completed_at >= r.delegated_at
        ]

    @staticmethod
    def delegation_efficiency(received: int, successful: int, redelegated: int) -> float:
        """Success percentage minus 20 points per unit of redelegation rate."""
        if received == 0:
            return 0.0
        success_ratio = successful / received
        redelegation_rate = redelegated / received
        return max(0.0, success_ratio * 100 - REDELEGATION_PENALTY * redelegation_rate)

    @staticmethod
    def speed_score(average_hours: float, has_samples: bool) -> float:
        if not has_samples:
            return 0.0
        return max(0.0, 100 - (average_hours / SPEED_BASELINE_HOURS) * 100)

    @staticmethod
    def quality_score(success_rate: float, speed: float, efficiency: float) -> float:
        w_success, w_speed, w_efficiency = QUALITY_WEIGHTS
        return success_rate * w_success + speed * w_speed + efficiency * w_efficiency

    def role_metrics(self, records: Sequence[DelegationRecord]) -> List[RoleMetric]:
        """Metrics for every role that received at least one record."""
        total = len(records)
        by_role: Dict[Role, List[DelegationRecord]] = defaultdict(list)
        for record in records:
            by_role[record.to_role].append(record)

        metrics = []
        for role in CANONICAL_STAGES:
            received = by_role.get(role)
            if not received:
                continue
            successful = sum(1 for r in received if r.success is True)
            redelegated = sum(1 for r in received if r.success is False)
            durations = self.completion_hours(received)
            average = _mean(durations)
            success_rate = successful / len(received) * 100
            efficiency = self.delegation_efficiency(len(received), successful, redelegated)
            speed = self.speed_score(average, bool(durations))

            metrics.append(RoleMetric(
                role=role,
                tasks_received=len(received),
                tasks_completed=len(durations),
                average_completion_time=_round1(average),
                success_rate=_round1(success_rate),
                delegation_efficiency=_round1(efficiency),
                workload_share=_round1(len(received) / total * 100),
                quality_score=_round1(self.quality_score(success_rate, speed, efficiency)),
                redelegations_received=redelegated,
            ))
        return metrics

    # -------------------------------------------------------------------------
    # Delegation Flow
    # -------------------------------------------------------------------------

    def common_paths(self, records: Sequence[DelegationRecord], limit: Optional[int] = None) -> List[TransitionPath]:
        """(from, to) frequencies, descending; ties keep first-seen order."""
        if limit is None:
            limit = self._config.top_paths_limit
        counts: "OrderedDict[Tuple[Role, Role], int]" = OrderedDict()
        for record in records:
            key = (record.from_role, record.to_role)
            counts[key] = counts.get(key, 0) + 1

        total = len(records)
        ranked = sorted(counts.items(), key=lambda item: -item[1])
        return [
            TransitionPath(
                from_role=src,
                to_role=dst,
                count=count,
                percentage=_round1(count / total * 100),
            )
            for (src, dst), count in ranked[:limit]
        ]

    def redelegation_hotspots(self, records: Sequence[DelegationRecord]) -> List[RedelegationHotspot]:
        """Rejected records grouped by (from, to), most frequent first."""
        groups: "OrderedDict[Tuple[Role, Role], List[str]]" = OrderedDict()
        counts: Dict[Tuple[Role, Role], int] = {}
        for record in records:
            if not record.is_redelegation:
                continue
            key = (record.from_role, record.to_role)
            counts[key] = counts.get(key, 0) + 1
            reasons = groups.setdefault(key, [])
            if record.rejection_reason and record.rejection_reason not in reasons:
                reasons.append(record.rejection_reason)

        ranked = sorted(groups.items(), key=lambda item: -counts[item[0]])
        return [
            RedelegationHotspot(from_role=src, to_role=dst, count=counts[(src, dst)], reasons=tuple(reasons))
            for (src, dst), reasons in ranked
        ]

    def bottlenecks(self, records: Sequence[DelegationRecord]) -> List[Bottleneck]:
        """
        Roles whose average holding time exceeds the threshold.

        Threshold: bottleneck_threshold_hours when configured, otherwise the
        global average holding time times bottleneck_multiplier.
        """
        by_role: Dict[Role, List[float]] = defaultdict(list)
        for record in records:
            by_role[record.to_role].extend(self.completion_hours([record]))

        all_durations = [d for durations in by_role.values() for d in durations]
        if not all_durations:
            return []

        global_average = _mean(all_durations)
        if self._config.bottleneck_threshold_hours is not None:
            threshold = self._config.bottleneck_threshold_hours
            high_mark = 2 * threshold
        else:
            threshold = global_average * self._config.bottleneck_multiplier
            high_mark = 2 * global_average

        flagged = []
        for role in CANONICAL_STAGES:
            durations = by_role.get(role)
            if not durations:
                continue
            average = _mean(durations)
            if average > threshold:
                flagged.append(Bottleneck(
                    role=role,
                    average_wait_hours=_round1(average),
                    threshold_hours=_round1(threshold),
                    sample_size=len(durations),
                    impact="high" if average > high_mark else "medium",
                ))

        flagged.sort(key=lambda b: -b.average_wait_hours)
        return flagged[:self._config.bottleneck_limit]

    def transition_matrix(self, records: Sequence[DelegationRecord]) -> Dict[Role, Dict[Role, int]]:
        matrix = {src: {dst: 0 for dst in CANONICAL_STAGES} for src in CANONICAL_STAGES}
        for record in records:
            matrix[record.from_role][record.to_role] += 1
        return matrix

    # -------------------------------------------------------------------------
    # Timing / Success
    # -------------------------------------------------------------------------

    @staticmethod
    def success_breakdown(records: Sequence[DelegationRecord]) -> SuccessBreakdown:
        successful = sum(1 for r in records if r.success is True)
        failed = sum(1 for r in records if r.success is False)
        pending = sum(1 for r in records if r.success is None)
        decided = successful + failed
        return SuccessBreakdown(
            successful=successful,
            failed=failed,
            pending=pending,
            total=len(records),
            success_rate=_round1(successful / decided * 100) if decided else 0.0,
        )

    def average_handoff_hours(self, records: Sequence[DelegationRecord]) -> float:
        """Mean gap between consecutive records of the same task, within the window."""
        by_task: Dict[str, List[DelegationRecord]] = defaultdict(list)
        for record in records:
            by_task[record.task_id].append(record)

        gaps = []
        for task_records in by_task.values():
            ordered = sorted(task_records, key=lambda r: r.delegated_at)
            for earlier, later in zip(ordered, ordered[1:]):
                gap = _hours(later.delegated_at - earlier.delegated_at)
                if 0 < gap < self._config.handoff_window_hours:
                    gaps.append(gap)
        return _mean(gaps)

    @staticmethod
    def weekly_trend(records: Sequence[DelegationRecord], now: datetime) -> WeeklyTrend:
        """Successful / failed counts for the last four weeks, oldest first."""
        successful = [0] * TREND_WEEKS
        failed = [0] * TREND_WEEKS
        for record in records:
            age = now - record.delegated_at
            if age < timedelta(0):
                continue
            week = int(age / timedelta(weeks=1))
            if week >= TREND_WEEKS:
                continue
            slot = TREND_WEEKS - 1 - week
            if record.success is True:
                successful[slot] += 1
            elif record.success is False:
                failed[slot] += 1
        return WeeklyTrend(successful=tuple(successful), failed=tuple(failed))

    @staticmethod
    def workflow_health(
        success_rate: float,
        average_handoff_hours: float,
        average_redelegations: float,
        efficiencies: Sequence[float],
    ) -> WorkflowHealth:
        """Weighted health score; efficiencies are 0-100 per role."""
        success_score = min(success_rate, 100.0)
        handoff_score = max(0.0, 100 - average_handoff_hours * 2)
        redelegation_score = max(0.0, 100 - average_redelegations * 20)
        efficiency_score = _mean(efficiencies)

        w_success, w_handoff, w_redelegation, w_efficiency = HEALTH_WEIGHTS
        score = (
            success_score * w_success
            + handoff_score * w_handoff
            + redelegation_score * w_redelegation
            + efficiency_score * w_efficiency
        )
        score = round(score)
        grade = next((letter for floor, letter in HEALTH_GRADES if score >= floor), "F")
        return WorkflowHealth(
            score=score,
            grade=grade,
            factors=(
                ("success", round(success_score)),
                ("handoff", round(handoff_score)),
                ("redelegation", round(redelegation_score)),
                ("efficiency", round(efficiency_score)),
            ),
        )

    # -------------------------------------------------------------------------
    # Entry Points
    # -------------------------------------------------------------------------

    def get_role_metrics(
        self,
        histories: Histories,
        criteria: Optional[AnalyticsFilter] = None,
        completions: Optional[Completions] = None,
    ) -> RoleMetricsReport:
        criteria = criteria or AnalyticsFilter()
        records, _, excluded = prepare_records(histories, criteria, completions)
        metrics = self.role_metrics(records)
        if criteria.role is not None:
            metrics = [m for m in metrics if m.role == criteria.role]
        return RoleMetricsReport(
            metrics=tuple(metrics),
            excluded_task_count=len(excluded),
            excluded_task_ids=tuple(excluded),
        )

    def get_delegation_analytics(
        self,
        histories: Histories,
        criteria: Optional[AnalyticsFilter] = None,
        now: Optional[datetime] = None,
        completions: Optional[Completions] = None,
    ) -> DelegationAnalytics:
        now = now or utc_now()
        records, included, excluded = prepare_records(histories, criteria, completions)

        success = self.success_breakdown(records)
        handoff = self.average_handoff_hours(records)
        redelegations_per_task = success.failed / len(included) if included else 0.0
        if records:
            efficiencies = [m.delegation_efficiency for m in self.role_metrics(records)]
            health = self.workflow_health(success.success_rate, handoff, redelegations_per_task, efficiencies)
        else:
            health = WorkflowHealth()

        matrix = self.transition_matrix(records)
        logger.debug(
            f"Delegation analytics: {len(records)} records, {len(included)} tasks, {len(excluded)} excluded"
        )
        return DelegationAnalytics(
            total_records=len(records),
            task_count=len(included),
            common_paths=tuple(self.common_paths(records)),
            hotspots=tuple(self.redelegation_hotspots(records)),
            bottlenecks=tuple(self.bottlenecks(records)),
            transition_matrix=tuple(
                (src.value, tuple((dst.value, count) for dst, count in row.items()))
                for src, row in matrix.items()
            ),
            success=success,
            average_handoff_hours=_round1(handoff),
            average_redelegations_per_task=_round1(redelegations_per_task),
            weekly_trend=self.weekly_trend(records, now),
            health=health,
            excluded_task_count=len(excluded),
            excluded_task_ids=tuple(excluded),
        )


# -----------------------------------------------------------------------------
# Module-Level Functions
# -----------------------------------------------------------------------------
def get_role_metrics(
    histories: Histories,
    criteria: Optional[AnalyticsFilter] = None,
    config: Optional[WorkflowConfig] = None,
    completions: Optional[Completions] = None,
) -> RoleMetricsReport:
    return DelegationAnalyticsEngine(config).get_role_metrics(histories, criteria, completions)


def get_delegation_analytics(
    histories: Histories,
    criteria: Optional[AnalyticsFilter] = None,
    config: Optional[WorkflowConfig] = None,
    now: Optional[datetime] = None,
    completions: Optional[Completions] = None,
) -> DelegationAnalytics:
    return DelegationAnalyticsEngine(config).get_delegation_analytics(histories, criteria, now, completions)
