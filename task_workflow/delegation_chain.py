"""
Delegation Chain Tracker

Validates and records role-to-role handoffs for a single task.

The chain is replayed from the stored DelegationRecord history into an
explicit stack of open delegators. Each frame is (delegator role, index of
the handoff that opened it):

- handoff A -> B        pushes (A, i); B now owns the task
- completion B -> A     pops the top frame; A must be its delegator
- redelegation B -> X   pops frames down to and including the most recent
                        frame for X; X must be an open delegator

complete() therefore returns work to the most recent delegator of the
completing role in O(1), even when the role has received work from
different sources across redelegation cycles.

escalate() and transition_status() change a task without touching the chain.

The tracker never performs I/O. Mutations return a TransitionResult that
the caller persists; callers must serialize mutations per task.
"""

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional, Dict, List, Iterable, Set, Tuple

from .errors import (
    DelegatorNotFoundError,
    InvalidRequestError,
    InvalidTransitionError,
    MalformedHistoryError,
    OwnershipMismatchError,
    TaskTerminalError,
)
from .role_registry import Role, require_legal_transition
from .task_model import (
    BlockerSeverity,
    CompletionOutcome,
    DelegationKind,
    DelegationRecord,
    Escalation,
    StatusTransition,
    Task,
    TaskStatus,
    TransitionResult,
    utc_now,
)

logger = logging.getLogger("delegation_chain")

# -----------------------------------------------------------------------------
# Status Transition Rules
# -----------------------------------------------------------------------------

# Status-only moves; ownership changes go through delegate/complete
STATUS_TRANSITIONS: Dict[TaskStatus, Set[TaskStatus]] = {
    TaskStatus.NOT_STARTED: {TaskStatus.CANCELLED},
    TaskStatus.IN_PROGRESS: {TaskStatus.PAUSED, TaskStatus.NEEDS_REVIEW, TaskStatus.CANCELLED},
    TaskStatus.NEEDS_REVIEW: {
        TaskStatus.IN_PROGRESS, TaskStatus.NEEDS_CHANGES, TaskStatus.PAUSED, TaskStatus.CANCELLED,
    },
    TaskStatus.NEEDS_CHANGES: {TaskStatus.IN_PROGRESS, TaskStatus.PAUSED, TaskStatus.CANCELLED},
    TaskStatus.PAUSED: {TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.CANCELLED: set(),
}


@dataclass(frozen=True)
class StackFrame:
    """An open delegation waiting for work to come back to `role`."""
    role: Role
    record_index: int


# -----------------------------------------------------------------------------
# Delegation Chain
# -----------------------------------------------------------------------------
class DelegationChain:
    """
    In-memory delegation chain for one task.

    Construct with replay(); every record is validated against the chain
    invariants and MalformedHistoryError is raised on the first violation.
    """

    def __init__(self, task_id: str):
        self.task_id = task_id
        self._records: List[DelegationRecord] = []
        self._stack: List[StackFrame] = []

    @classmethod
    def replay(cls, task_id: str, records: Iterable[DelegationRecord]) -> "DelegationChain":
        """Rebuild the chain from stored records (ordered by delegated_at)."""
        chain = cls(task_id)
        for record in records:
            chain._apply(record)
        return chain

    # -------------------------------------------------------------------------
    # Read Accessors
    # -------------------------------------------------------------------------

    @property
    def records(self) -> Tuple[DelegationRecord, ...]:
        return tuple(self._records)

    @property
    def stack(self) -> Tuple[StackFrame, ...]:
        return tuple(self._stack)

    @property
    def owner(self) -> Optional[Role]:
        """Role that received the last record, None for an empty chain."""
        return self._records[-1].to_role if self._records else None

    @property
    def last_record(self) -> Optional[DelegationRecord]:
        return self._records[-1] if self._records else None

    def open_delegators(self) -> List[Role]:
        """Roles waiting on returned work, most recent last."""
        return [frame.role for frame in self._stack]

    def delegator_for(self, role: Role) -> Optional[Role]:
        """Who handed the current work to `role`; None if nobody is waiting."""
        if not self._stack or self.owner != role:
            return None
        return self._stack[-1].role

    def __len__(self) -> int:
        return len(self._records)

    # -------------------------------------------------------------------------
    # Replay / Append
    # -------------------------------------------------------------------------

    def _apply(self, record: DelegationRecord) -> None:
        """Validate a record against the chain and advance the stack."""
        index = len(self._records)

        if record.task_id != self.task_id:
            raise MalformedHistoryError(
                self.task_id, f"record {record.record_id} belongs to task '{record.task_id}'", index
            )
        if record.from_role == record.to_role:
            raise MalformedHistoryError(
                self.task_id, f"self-delegation {record.from_role.value} -> {record.to_role.value}", index
            )

        previous = self.last_record
        if previous is not None:
            if record.delegated_at <= previous.delegated_at:
                raise MalformedHistoryError(self.task_id, "records are not strictly ordered by delegated_at", index)
            if record.from_role != previous.to_role:
                raise MalformedHistoryError(
                    self.task_id,
                    f"from_role {record.from_role.value} does not match current owner {previous.to_role.value}",
                    index,
                )

        if record.kind == DelegationKind.HANDOFF:
            if record.success is False:
                raise MalformedHistoryError(self.task_id, "handoff recorded as rejected", index)
            self._stack.append(StackFrame(role=record.from_role, record_index=index))

        elif record.kind == DelegationKind.COMPLETION:
            if not self._stack or self._stack[-1].role != record.to_role:
                raise MalformedHistoryError(
                    self.task_id,
                    f"completion returns to {record.to_role.value}, which is not the open delegator",
                    index,
                )
            self._stack.pop()

        elif record.kind == DelegationKind.REDELEGATION:
            if record.success is not False:
                raise MalformedHistoryError(self.task_id, "redelegation must be recorded with success=false", index)
            if record.to_role not in self.open_delegators():
                raise MalformedHistoryError(
                    self.task_id,
                    f"redelegation target {record.to_role.value} never delegated earlier in the chain",
                    index,
                )
            self._unwind_to(record.to_role)

        self._records.append(record)

    def _unwind_to(self, role: Role) -> None:
        """Pop frames down to and including the most recent frame for role."""
        while self._stack:
            frame = self._stack.pop()
            if frame.role == role:
                return

    def _next_timestamp(self, now: datetime) -> datetime:
        """Keep delegated_at strictly increasing within the chain."""
        previous = self.last_record
        if previous is not None and now <= previous.delegated_at:
            return previous.delegated_at + timedelta(microseconds=1)
        return now

    def _new_record(
        self,
        from_role: Role,
        to_role: Role,
        kind: DelegationKind,
        success: Optional[bool],
        now: datetime,
        message: str = "",
        rejection_reason: Optional[str] = None,
    ) -> DelegationRecord:
        return DelegationRecord(
            record_id=str(uuid.uuid4()),
            task_id=self.task_id,
            sequence=len(self._records) + 1,
            from_role=from_role,
            to_role=to_role,
            kind=kind,
            delegated_at=self._next_timestamp(now),
            success=success,
            rejection_reason=rejection_reason,
            message=message or "",
        )

    # -------------------------------------------------------------------------
    # Preconditions
    # -------------------------------------------------------------------------

    def _check_mutable(self, task: Task) -> None:
        if task.task_id != self.task_id:
            raise InvalidRequestError(
                f"Chain for task '{self.task_id}' cannot mutate task '{task.task_id}'", task_id=task.task_id
            )
        if task.is_terminal:
            raise TaskTerminalError(task.task_id, task.status.value)
        if self._records and self.owner != task.current_owner:
            raise MalformedHistoryError(
                task.task_id,
                f"task owner {task.current_owner.value if task.current_owner else None} "
                f"disagrees with chain owner {self.owner.value}",
            )

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def delegate(
        self,
        task: Task,
        from_role: Role,
        to_role: Role,
        message: str = "",
        now: Optional[datetime] = None,
        force: bool = False,
    ) -> TransitionResult:
        """
        Hand the task from from_role to to_role.

        Delegating to an open delegator is a redelegation: the work is sent
        back, message becomes the required rejection reason, and the stack
        unwinds to that role. Any other target must be a legal edge unless
        force is set. from_role must always be the current owner.
        """
        self._check_mutable(task)
        now = now or utc_now()

        if task.current_owner is not None and from_role != task.current_owner:
            raise OwnershipMismatchError(task.task_id, from_role.value, task.current_owner.value)
        if from_role == to_role:
            raise InvalidTransitionError(from_role.value, to_role.value, task_id=task.task_id)

        if to_role in self.open_delegators():
            if not (message or "").strip():
                raise InvalidRequestError(
                    f"Sending work back to {to_role.value} requires a reason", task_id=task.task_id,
                    from_role=from_role.value, to_role=to_role.value,
                )
            record = self._new_record(
                from_role, to_role, DelegationKind.REDELEGATION, False, now,
                message=message, rejection_reason=message,
            )
            self._apply(record)
            updated = replace(
                task,
                current_owner=to_role,
                status=TaskStatus.NEEDS_CHANGES,
                updated_at=record.delegated_at,
                redelegation_count=task.redelegation_count + 1,
            )
            logger.info(f"Task {task.task_id}: redelegated {from_role.value} -> {to_role.value}")
            return TransitionResult(task=updated, record=record)

        if not force:
            require_legal_transition(from_role, to_role, task_id=task.task_id)

        record = self._new_record(from_role, to_role, DelegationKind.HANDOFF, True, now, message=message)
        self._apply(record)
        updated = replace(
            task,
            current_owner=to_role,
            status=TaskStatus.IN_PROGRESS,
            updated_at=record.delegated_at,
        )
        logger.info(f"Task {task.task_id}: {from_role.value} -> {to_role.value}")
        return TransitionResult(task=updated, record=record)

    def complete(
        self,
        task: Task,
        role: Role,
        outcome: CompletionOutcome,
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Finish the owning role's part of the task.

        completed: work returns to the role's delegator; with no delegator
        the task itself completes and loses its owner.
        rejected: work returns to the delegator with success=false and notes
        as the rejection reason.
        """
        self._check_mutable(task)
        now = now or utc_now()

        if task.current_owner is None or role != task.current_owner:
            raise OwnershipMismatchError(
                task.task_id, role.value, task.current_owner.value if task.current_owner else None
            )

        delegator = self.delegator_for(role)

        if outcome == CompletionOutcome.REJECTED:
            if not (notes or "").strip():
                raise InvalidRequestError("Rejection requires notes", task_id=task.task_id, role=role.value)
            if delegator is None:
                raise DelegatorNotFoundError(task.task_id, role.value)
            record = self._new_record(
                role, delegator, DelegationKind.REDELEGATION, False, now,
                message=notes, rejection_reason=notes,
            )
            self._apply(record)
            updated = replace(
                task,
                current_owner=delegator,
                status=TaskStatus.NEEDS_CHANGES,
                updated_at=record.delegated_at,
                redelegation_count=task.redelegation_count + 1,
            )
            logger.info(f"Task {task.task_id}: {role.value} rejected back to {delegator.value}")
            return TransitionResult(task=updated, record=record)

        if delegator is None:
            logger.debug(f"Task {task.task_id}: no delegator for {role.value}, closing task")
            completed_at = self._next_timestamp(now)
            updated = replace(
                task,
                current_owner=None,
                status=TaskStatus.COMPLETED,
                updated_at=completed_at,
                completed_at=completed_at,
            )
            logger.info(f"Task {task.task_id}: completed by {role.value}")
            return TransitionResult(task=updated, record=None)

        record = self._new_record(role, delegator, DelegationKind.COMPLETION, True, now, message=notes)
        self._apply(record)
        updated = replace(
            task,
            current_owner=delegator,
            status=TaskStatus.IN_PROGRESS,
            updated_at=record.delegated_at,
        )
        logger.info(f"Task {task.task_id}: {role.value} returned work to {delegator.value}")
        return TransitionResult(task=updated, record=record)


def infer_kinds(records: Iterable[DelegationRecord]) -> List[DelegationRecord]:
    """
    Reclassify records stored without a kind.

    Such records load as handoffs (or redelegations when success is false).
    A successful "handoff" back to the open delegator is really a completion;
    delegate() never produces one, so the rewrite is safe on any history.
    """
    stack: List[Role] = []
    inferred = []
    for record in records:
        if record.kind == DelegationKind.HANDOFF and stack and stack[-1] == record.to_role:
            record = replace(record, kind=DelegationKind.COMPLETION)

        if record.kind == DelegationKind.HANDOFF:
            stack.append(record.from_role)
        elif record.kind == DelegationKind.COMPLETION and stack:
            stack.pop()
        elif record.kind == DelegationKind.REDELEGATION and record.to_role in stack:
            while stack and stack.pop() != record.to_role:
                pass
        inferred.append(record)
    return inferred


# -----------------------------------------------------------------------------
# Status Transitions
# -----------------------------------------------------------------------------
def transition_status(
    task: Task,
    new_status: TaskStatus,
    role: Optional[Role] = None,
    reason: str = "",
    now: Optional[datetime] = None,
) -> TransitionResult:
    """
    Change status without moving ownership (pause, resume, needs-review, cancel).

    When the task has an owner, only the owner may change its status.
    Cancelling clears the owner.
    """
    if task.is_terminal:
        raise TaskTerminalError(task.task_id, task.status.value)
    if task.current_owner is not None and role != task.current_owner:
        raise OwnershipMismatchError(
            task.task_id, role.value if role else "none", task.current_owner.value
        )
    allowed = STATUS_TRANSITIONS.get(task.status, set())
    if new_status not in allowed:
        raise InvalidRequestError(
            f"Cannot change status {task.status.value} -> {new_status.value}",
            task_id=task.task_id,
            allowed=sorted(s.value for s in allowed),
        )
    if new_status == TaskStatus.IN_PROGRESS and task.current_owner is None:
        raise InvalidRequestError("A task without an owner cannot be in progress", task_id=task.task_id)

    now = now or utc_now()
    transition = StatusTransition(
        transition_id=str(uuid.uuid4()),
        task_id=task.task_id,
        role=role,
        from_status=task.status,
        to_status=new_status,
        reason=reason,
        transitioned_at=now,
    )
    owner = None if new_status == TaskStatus.CANCELLED else task.current_owner
    updated = replace(task, status=new_status, current_owner=owner, updated_at=now)
    logger.info(f"Task {task.task_id}: status {task.status.value} -> {new_status.value}")
    return TransitionResult(task=updated, status_transition=transition)


# -----------------------------------------------------------------------------
# Escalation
# -----------------------------------------------------------------------------
def escalate(
    task: Task,
    role: Role,
    reason: str,
    severity: BlockerSeverity = BlockerSeverity.MEDIUM,
    blockers: Iterable[str] = (),
    required_changes: str = "",
    now: Optional[datetime] = None,
) -> TransitionResult:
    """
    Raise a problem on the task without moving ownership or status.

    Only the current owner may escalate. The escalation stays open, and is
    reported as a blocker, until the task changes hands or ends.
    """
    if task.is_terminal:
        raise TaskTerminalError(task.task_id, task.status.value)
    if task.current_owner is None or role != task.current_owner:
        raise OwnershipMismatchError(
            task.task_id, role.value, task.current_owner.value if task.current_owner else None
        )
    if not (reason or "").strip():
        raise InvalidRequestError("Escalation requires a reason", task_id=task.task_id, role=role.value)

    now = now or utc_now()
    escalation = Escalation(
        escalation_id=str(uuid.uuid4()),
        task_id=task.task_id,
        role=role,
        reason=reason.strip(),
        severity=severity,
        escalated_at=now,
        blockers=tuple(b.strip() for b in blockers if b and b.strip()),
        required_changes=required_changes or "",
    )
    updated = replace(task, updated_at=now)
    logger.warning(f"Task {task.task_id}: {role.value} escalated ({severity.value}): {escalation.reason}")
    return TransitionResult(task=updated, escalation=escalation)
