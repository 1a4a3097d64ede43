"""
Workflow Status Projector

Derives a read-only WorkflowTransitionView from a Task and its ordered
delegation history.

Pure: no I/O, no mutation, and `now` is an explicit input, so identical
inputs always produce identical views.
"""

from collections import Counter
from datetime import datetime, timedelta
from typing import Optional, List, Sequence

from .config import WorkflowConfig
from .role_registry import (
    CANONICAL_STAGES,
    Role,
    RoutingContext,
    legal_successors,
    next_role,
)
from .task_model import (
    Blocker,
    BlockerSeverity,
    DelegationKind,
    DelegationRecord,
    Escalation,
    Task,
    TaskStatus,
    WorkflowTransitionView,
    utc_now,
)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def completion_ratio(
    task: Task,
    records: Sequence[DelegationRecord],
    completed_units: Optional[int] = None,
    total_units: Optional[int] = None,
) -> float:
    """
    Fraction of the task done, in [0, 1].

    Uses completed_units / total_units when sub-unit counts are supplied.
    Otherwise estimates from the canonical stages reached by forward
    handoffs; redelegation loops do not add progress.
    """
    if task.status == TaskStatus.COMPLETED:
        return 1.0
    if total_units:
        return _clamp((completed_units or 0) / total_units)
    if not records:
        return 0.0

    reached = {records[0].from_role}
    for record in records:
        if record.kind == DelegationKind.HANDOFF:
            reached.add(record.to_role)
    return _clamp(len(reached) / len(CANONICAL_STAGES))


def time_in_current_stage(task: Task, records: Sequence[DelegationRecord], now: datetime) -> timedelta:
    """Time since the record that set the current owner (or since creation)."""
    if task.is_terminal:
        return timedelta(0)
    since = records[-1].delegated_at if records else task.created_at
    return max(timedelta(0), now - since)


def average_stage_hours(records: Sequence[DelegationRecord], default_hours: float) -> float:
    """Average holding time between consecutive records, hours."""
    durations = [
        (later.delegated_at - earlier.delegated_at).total_seconds() / 3600
        for earlier, later in zip(records, records[1:])
    ]
    durations = [d for d in durations if d > 0]
    if not durations:
        return default_hours
    return sum(durations) / len(durations)


def _redelegation_severity(count: int, threshold: int) -> BlockerSeverity:
    excess = count - threshold
    if excess >= 3:
        return BlockerSeverity.HIGH
    if excess == 2:
        return BlockerSeverity.MEDIUM
    return BlockerSeverity.LOW


def open_escalations(
    task: Task,
    records: Sequence[DelegationRecord],
    escalations: Sequence[Escalation],
) -> List[Escalation]:
    """Escalations raised since the current owner received the task."""
    if task.is_terminal:
        return []
    since = records[-1].delegated_at if records else task.created_at
    return sorted(
        (e for e in escalations if e.escalated_at >= since),
        key=lambda e: e.escalated_at,
    )


def identify_blockers(
    task: Task,
    records: Sequence[DelegationRecord],
    stage_time: timedelta,
    config: WorkflowConfig,
    escalations: Sequence[Escalation] = (),
) -> List[Blocker]:
    """
    Heuristic blockers, most severe first.

    - redelegation-loop: a role targeted by more than the configured number
      of redelegations in this chain
    - changes-requested: the task currently sits in needs-changes
    - stalled-stage: the current owner has held the task too long
    - escalation: an open escalation, at the severity it was raised with
    """
    blockers: List[Blocker] = []
    threshold = config.blocker_redelegation_threshold

    targets = Counter(r.to_role for r in records if r.is_redelegation)
    last_seen = {r.to_role: r.delegated_at for r in records if r.is_redelegation}
    for role in CANONICAL_STAGES:
        count = targets.get(role, 0)
        if count > threshold:
            blockers.append(Blocker(
                type="redelegation-loop",
                description=f"Work was sent back to {role.value} {count} times",
                severity=_redelegation_severity(count, threshold),
                role=role,
                identified_at=last_seen[role],
            ))

    if task.status == TaskStatus.NEEDS_CHANGES and records and records[-1].is_redelegation:
        latest = records[-1]
        blockers.append(Blocker(
            type="changes-requested",
            description=f"{latest.from_role.value} requested changes: {latest.rejection_reason}",
            severity=BlockerSeverity.MEDIUM,
            role=latest.to_role,
            identified_at=latest.delegated_at,
        ))

    stalled_after = timedelta(hours=config.stalled_stage_hours)
    if task.current_owner is not None and stage_time > stalled_after:
        hours = stage_time.total_seconds() / 3600
        blockers.append(Blocker(
            type="stalled-stage",
            description=f"{task.current_owner.value} has held the task for {hours:.1f} hours",
            severity=BlockerSeverity.MEDIUM,
            role=task.current_owner,
            identified_at=records[-1].delegated_at if records else task.created_at,
        ))

    for escalation in open_escalations(task, records, escalations):
        description = escalation.reason
        if escalation.blockers:
            description += f" (blocked by: {', '.join(escalation.blockers)})"
        blockers.append(Blocker(
            type="escalation",
            description=description,
            severity=escalation.severity,
            role=escalation.role,
            identified_at=escalation.escalated_at,
        ))

    order = {
        BlockerSeverity.CRITICAL: 0, BlockerSeverity.HIGH: 1, BlockerSeverity.MEDIUM: 2, BlockerSeverity.LOW: 3,
    }
    return sorted(blockers, key=lambda b: order[b.severity])


def _current_stage(task: Task) -> str:
    if task.current_owner is not None:
        return task.current_owner.value
    if task.status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED):
        return task.status.value
    return TaskStatus.NOT_STARTED.value


def project_status(
    task: Task,
    records: Sequence[DelegationRecord],
    now: Optional[datetime] = None,
    config: Optional[WorkflowConfig] = None,
    completed_units: Optional[int] = None,
    total_units: Optional[int] = None,
    routing: Optional[RoutingContext] = None,
    escalations: Sequence[Escalation] = (),
) -> WorkflowTransitionView:
    """Compute the point-in-time view of a task."""
    config = config or WorkflowConfig()
    now = now or utc_now()
    records = sorted(records, key=lambda r: r.delegated_at)

    stage_time = time_in_current_stage(task, records, now)
    expected = timedelta(hours=average_stage_hours(records, config.default_stage_hours))
    remaining = max(timedelta(0), expected - stage_time) if not task.is_terminal else timedelta(0)

    owner: Optional[Role] = task.current_owner
    if routing is None and total_units:
        routing = RoutingContext(total_work_units=total_units, completed_work_units=completed_units or 0)

    return WorkflowTransitionView(
        task_id=task.task_id,
        status=task.status,
        current_stage=_current_stage(task),
        current_owner=owner,
        completion_percentage=round(completion_ratio(task, records, completed_units, total_units) * 100, 1),
        time_in_current_stage=stage_time,
        estimated_time_remaining=remaining,
        blockers=tuple(identify_blockers(task, records, stage_time, config, escalations)),
        available_transitions=tuple(legal_successors(owner)) if owner and not task.is_terminal else (),
        suggested_next_role=next_role(owner, routing) if owner and not task.is_terminal else None,
        delegation_count=len(records),
        redelegation_count=sum(1 for r in records if r.is_redelegation),
    )
