"""
Task Workflow - Data Models

Typed records for tasks, delegation history and derived views.

- Task: mutable projection of current owner and status. Defaults are fixed
  at creation (Task.new) and validated on construction.
- DelegationRecord: FROZEN log entry. Created already carrying its final
  success value; never updated afterwards.
- StatusTransition: FROZEN log entry for status-only changes
  (pause, resume, needs-review, cancel).
- Escalation: FROZEN log entry for a problem raised by the owner.
- WorkflowTransitionView / Blocker: derived, never stored.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Dict, Any, Set, Tuple

from .role_registry import Role


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class TaskStatus(str, Enum):
    """Task status values."""
    NOT_STARTED = "not-started"
    IN_PROGRESS = "in-progress"
    NEEDS_REVIEW = "needs-review"
    COMPLETED = "completed"
    NEEDS_CHANGES = "needs-changes"
    PAUSED = "paused"
    CANCELLED = "cancelled"

    @classmethod
    def terminal_states(cls) -> Set["TaskStatus"]:
        """States that accept no further delegation."""
        return {cls.COMPLETED, cls.CANCELLED}


class CompletionOutcome(str, Enum):
    """Outcome reported by the owning role when it finishes its part."""
    COMPLETED = "completed"
    REJECTED = "rejected"


class DelegationKind(str, Enum):
    """Classification of a delegation record."""
    HANDOFF = "handoff"            # forward delegation
    COMPLETION = "completion"      # receiver returns finished work to its delegator
    REDELEGATION = "redelegation"  # rejection sent back up the chain


class BlockerSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# -----------------------------------------------------------------------------
# Task
# -----------------------------------------------------------------------------
@dataclass
class Task:
    """
    A work item and its current owner/status projection.

    The delegation history is owned by the task but stored separately,
    ordered by delegated_at.
    """
    task_id: str
    name: str
    status: TaskStatus
    created_at: datetime
    updated_at: datetime
    current_owner: Optional[Role] = None
    completed_at: Optional[datetime] = None
    redelegation_count: int = 0
    description: str = ""

    def __post_init__(self):
        if not self.task_id:
            raise ValueError("task_id is required")
        if self.current_owner is None and self.status not in (
            TaskStatus.NOT_STARTED, TaskStatus.COMPLETED, TaskStatus.CANCELLED
        ):
            raise ValueError(f"Task '{self.task_id}' in status {self.status.value} must have an owner")

    @classmethod
    def new(
        cls,
        name: str,
        task_id: Optional[str] = None,
        description: str = "",
        now: Optional[datetime] = None,
    ) -> "Task":
        """Create a task in its initial state: not-started, no owner."""
        now = now or utc_now()
        return cls(
            task_id=task_id or str(uuid.uuid4()),
            name=name,
            status=TaskStatus.NOT_STARTED,
            created_at=now,
            updated_at=now,
            description=description,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TaskStatus.terminal_states()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "name": self.name,
            "status": self.status.value,
            "current_owner": self.current_owner.value if self.current_owner else None,
            "created_at": _format_dt(self.created_at),
            "updated_at": _format_dt(self.updated_at),
            "completed_at": _format_dt(self.completed_at),
            "redelegation_count": self.redelegation_count,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Deserialize from dictionary."""
        return cls(
            task_id=data["task_id"],
            name=data["name"],
            status=TaskStatus(data["status"]),
            current_owner=Role(data["current_owner"]) if data.get("current_owner") else None,
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data["updated_at"]),
            completed_at=_parse_dt(data.get("completed_at")),
            redelegation_count=data.get("redelegation_count", 0),
            description=data.get("description", ""),
        )


# -----------------------------------------------------------------------------
# Delegation Record (Frozen - Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class DelegationRecord:
    """
    One handoff in a task's delegation chain.

    success: None = pending, True = accepted/returned cleanly,
    False = rejected back up the chain (rejection_reason required).
    """
    record_id: str
    task_id: str
    sequence: int
    from_role: Role
    to_role: Role
    kind: DelegationKind
    delegated_at: datetime
    success: Optional[bool] = None
    completed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    message: str = ""

    def __post_init__(self):
        if self.success is False and not (self.rejection_reason or "").strip():
            raise ValueError("rejection_reason is required when success is False")

    @property
    def is_redelegation(self) -> bool:
        return self.success is False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "task_id": self.task_id,
            "sequence": self.sequence,
            "from_role": self.from_role.value,
            "to_role": self.to_role.value,
            "kind": self.kind.value,
            "delegated_at": _format_dt(self.delegated_at),
            "success": self.success,
            "completed_at": _format_dt(self.completed_at),
            "rejection_reason": self.rejection_reason,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], kind: Optional[DelegationKind] = None) -> "DelegationRecord":
        """
        Deserialize from dictionary.

        Records stored without a kind take the caller's kind, else a
        redelegation when success is false, else a plain handoff
        (see delegation_chain.infer_kinds for completions).
        """
        stored_kind = data.get("kind")
        if stored_kind:
            resolved_kind = DelegationKind(stored_kind)
        elif kind is not None:
            resolved_kind = kind
        elif data.get("success") is False:
            resolved_kind = DelegationKind.REDELEGATION
        else:
            resolved_kind = DelegationKind.HANDOFF
        return cls(
            record_id=data.get("record_id") or str(uuid.uuid4()),
            task_id=data["task_id"],
            sequence=data.get("sequence", 0),
            from_role=Role(data["from_role"]),
            to_role=Role(data["to_role"]),
            kind=resolved_kind,
            delegated_at=_parse_dt(data["delegated_at"]),
            success=data.get("success"),
            completed_at=_parse_dt(data.get("completed_at")),
            rejection_reason=data.get("rejection_reason"),
            message=data.get("message") or "",
        )


# -----------------------------------------------------------------------------
# Status Transition (Frozen - Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class StatusTransition:
    """Status-only change that does not move ownership."""
    transition_id: str
    task_id: str
    role: Optional[Role]
    from_status: TaskStatus
    to_status: TaskStatus
    reason: str
    transitioned_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transition_id": self.transition_id,
            "task_id": self.task_id,
            "role": self.role.value if self.role else None,
            "from_status": self.from_status.value,
            "to_status": self.to_status.value,
            "reason": self.reason,
            "transitioned_at": _format_dt(self.transitioned_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatusTransition":
        return cls(
            transition_id=data["transition_id"],
            task_id=data["task_id"],
            role=Role(data["role"]) if data.get("role") else None,
            from_status=TaskStatus(data["from_status"]),
            to_status=TaskStatus(data["to_status"]),
            reason=data.get("reason", ""),
            transitioned_at=_parse_dt(data["transitioned_at"]),
        )


# -----------------------------------------------------------------------------
# Escalation (Frozen - Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Escalation:
    """
    A problem raised by the owning role without handing the task off.

    Open until the task changes hands or reaches a terminal status.
    """
    escalation_id: str
    task_id: str
    role: Role
    reason: str
    severity: BlockerSeverity
    escalated_at: datetime
    blockers: Tuple[str, ...] = ()
    required_changes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "escalation_id": self.escalation_id,
            "task_id": self.task_id,
            "role": self.role.value,
            "reason": self.reason,
            "severity": self.severity.value,
            "escalated_at": _format_dt(self.escalated_at),
            "blockers": list(self.blockers),
            "required_changes": self.required_changes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Escalation":
        return cls(
            escalation_id=data["escalation_id"],
            task_id=data["task_id"],
            role=Role(data["role"]),
            reason=data["reason"],
            severity=BlockerSeverity(data.get("severity") or BlockerSeverity.MEDIUM.value),
            escalated_at=_parse_dt(data["escalated_at"]),
            blockers=tuple(data.get("blockers") or ()),
            required_changes=data.get("required_changes") or "",
        )


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a mutation: the updated task plus what to persist."""
    task: Task
    record: Optional[DelegationRecord] = None
    status_transition: Optional[StatusTransition] = None
    escalation: Optional[Escalation] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task": self.task.to_dict(),
            "record": self.record.to_dict() if self.record else None,
            "status_transition": self.status_transition.to_dict() if self.status_transition else None,
            "escalation": self.escalation.to_dict() if self.escalation else None,
        }


# -----------------------------------------------------------------------------
# Derived Views
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Blocker:
    type: str
    description: str
    severity: BlockerSeverity
    role: Optional[Role] = None
    identified_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "description": self.description,
            "severity": self.severity.value,
            "role": self.role.value if self.role else None,
            "identified_at": _format_dt(self.identified_at),
        }


@dataclass(frozen=True)
class WorkflowTransitionView:
    """Point-in-time summary of one task."""
    task_id: str
    status: TaskStatus
    current_stage: str
    current_owner: Optional[Role]
    completion_percentage: float
    time_in_current_stage: timedelta
    estimated_time_remaining: timedelta
    blockers: Tuple[Blocker, ...] = field(default_factory=tuple)
    available_transitions: Tuple[Role, ...] = field(default_factory=tuple)
    suggested_next_role: Optional[Role] = None
    delegation_count: int = 0
    redelegation_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "current_stage": self.current_stage,
            "current_owner": self.current_owner.value if self.current_owner else None,
            "completion_percentage": self.completion_percentage,
            "time_in_current_stage_hours": round(self.time_in_current_stage.total_seconds() / 3600, 1),
            "estimated_time_remaining_hours": round(self.estimated_time_remaining.total_seconds() / 3600, 1),
            "blockers": [b.to_dict() for b in self.blockers],
            "available_transitions": [r.value for r in self.available_transitions],
            "suggested_next_role": self.suggested_next_role.value if self.suggested_next_role else None,
            "delegation_count": self.delegation_count,
            "redelegation_count": self.redelegation_count,
        }
