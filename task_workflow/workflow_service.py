"""
Workflow Service

Coordinates the store, the delegation chain and the read-side projections.

Each mutation loads the task and its history, replays the chain, applies
the change and commits the result. Mutations on the same task id are
serialized with a per-task lock; different tasks proceed independently.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, Iterable, Iterator, List

from .analytics_engine import DelegationAnalyticsEngine
from .analytics_model import AnalyticsFilter, DelegationAnalytics, RoleMetricsReport
from .config import WorkflowConfig
from .delegation_chain import DelegationChain, escalate, transition_status
from .errors import InvalidRequestError, TaskNotFoundError, WorkflowError
from .role_registry import Role, RoutingContext
from .status_projector import project_status
from .task_model import (
    BlockerSeverity,
    CompletionOutcome,
    DelegationRecord,
    Task,
    TaskStatus,
    TransitionResult,
    WorkflowTransitionView,
    utc_now,
)
from .task_store import TaskStore

logger = logging.getLogger("workflow_service")


class _TaskLock:
    """A task's lock plus the number of callers holding or waiting on it."""

    def __init__(self):
        self.lock = threading.Lock()
        self.holders = 0


class WorkflowService:
    """Task delegation workflow backed by a TaskStore."""

    def __init__(self, store: TaskStore, config: Optional[WorkflowConfig] = None):
        self._store = store
        self._config = config or WorkflowConfig()
        self._analytics = DelegationAnalyticsEngine(self._config)
        self._locks: Dict[str, _TaskLock] = {}
        self._locks_guard = threading.Lock()

    @property
    def store(self) -> TaskStore:
        return self._store

    @property
    def config(self) -> WorkflowConfig:
        return self._config

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    @contextmanager
    def _task_lock(self, task_id: str) -> Iterator[None]:
        """Serialize work on one task; the entry is dropped once nobody holds or waits on it."""
        with self._locks_guard:
            entry = self._locks.get(task_id)
            if entry is None:
                entry = self._locks[task_id] = _TaskLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[task_id]

    def _require_task(self, task_id: str) -> Task:
        task = self._store.load_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _load_chain(self, task_id: str) -> DelegationChain:
        return DelegationChain.replay(task_id, self._store.load_delegation_history(task_id))

    def _commit(self, result: TransitionResult) -> TransitionResult:
        self._store.commit(
            result.task,
            record=result.record,
            transition=result.status_transition,
            escalation=result.escalation,
        )
        return result

    @contextmanager
    def _refusals_logged(self, operation: str, task_id: str) -> Iterator[None]:
        try:
            yield
        except WorkflowError as e:
            logger.warning(f"{operation} refused for task {task_id}: [{e.code}] {e.message}")
            raise

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def create_task(
        self,
        name: str,
        task_id: Optional[str] = None,
        description: str = "",
        now: Optional[datetime] = None,
    ) -> Task:
        """Create a not-started task with no owner."""
        if not (name or "").strip():
            raise InvalidRequestError("Task name is required")
        if task_id:
            with self._task_lock(task_id):
                if self._store.load_task(task_id) is not None:
                    raise InvalidRequestError(f"Task '{task_id}' already exists", task_id=task_id)
                task = Task.new(name, task_id=task_id, description=description, now=now)
                self._store.save_task(task)
        else:
            task = Task.new(name, description=description, now=now)
            self._store.save_task(task)
        logger.info(f"Task {task.task_id} created: {name}")
        return task

    def delegate(
        self,
        task_id: str,
        from_role: Role,
        to_role: Role,
        message: str = "",
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        with self._refusals_logged("delegate", task_id), self._task_lock(task_id):
            task = self._require_task(task_id)
            chain = self._load_chain(task_id)
            result = chain.delegate(task, from_role, to_role, message=message, now=now, force=force)
            return self._commit(result)

    def complete(
        self,
        task_id: str,
        role: Role,
        outcome: CompletionOutcome = CompletionOutcome.COMPLETED,
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        with self._refusals_logged("complete", task_id), self._task_lock(task_id):
            task = self._require_task(task_id)
            chain = self._load_chain(task_id)
            result = chain.complete(task, role, outcome, notes=notes, now=now)
            return self._commit(result)

    def transition_status(
        self,
        task_id: str,
        new_status: TaskStatus,
        role: Optional[Role] = None,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        with self._refusals_logged("transition_status", task_id), self._task_lock(task_id):
            task = self._require_task(task_id)
            result = transition_status(task, new_status, role=role, reason=reason, now=now)
            return self._commit(result)

    def escalate(
        self,
        task_id: str,
        role: Role,
        reason: str,
        severity: BlockerSeverity = BlockerSeverity.MEDIUM,
        blockers: Iterable[str] = (),
        required_changes: str = "",
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        with self._refusals_logged("escalate", task_id), self._task_lock(task_id):
            task = self._require_task(task_id)
            result = escalate(
                task, role, reason,
                severity=severity, blockers=blockers, required_changes=required_changes, now=now,
            )
            return self._commit(result)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_task(self, task_id: str) -> Task:
        return self._require_task(task_id)

    def list_tasks(self) -> List[Task]:
        return self._store.list_tasks()

    def get_history(self, task_id: str) -> Dict[str, Any]:
        """Delegation records, status transitions and escalations for one task."""
        self._require_task(task_id)
        records: List[DelegationRecord] = self._store.load_delegation_history(task_id)
        return {
            "task_id": task_id,
            "records": [r.to_dict() for r in records],
            "status_transitions": [t.to_dict() for t in self._store.load_status_transitions(task_id)],
            "escalations": [e.to_dict() for e in self._store.load_escalations(task_id)],
        }

    def get_status(
        self,
        task_id: str,
        now: Optional[datetime] = None,
        completed_units: Optional[int] = None,
        total_units: Optional[int] = None,
        needs_research: bool = False,
        review_rejected: bool = False,
    ) -> WorkflowTransitionView:
        """Point-in-time view; raises MalformedHistoryError on a broken chain."""
        task = self._require_task(task_id)
        chain = self._load_chain(task_id)
        routing = RoutingContext(
            needs_research=needs_research,
            review_rejected=review_rejected,
            total_work_units=total_units or 0,
            completed_work_units=completed_units or 0,
        )
        return project_status(
            task,
            chain.records,
            now=now or utc_now(),
            config=self._config,
            completed_units=completed_units,
            total_units=total_units,
            routing=routing,
            escalations=self._store.load_escalations(task_id),
        )

    def get_role_metrics(self, criteria: Optional[AnalyticsFilter] = None) -> RoleMetricsReport:
        histories = self._store.load_histories(criteria)
        completions = self._store.load_completions(criteria)
        return self._analytics.get_role_metrics(histories, criteria, completions)

    def get_delegation_analytics(
        self,
        criteria: Optional[AnalyticsFilter] = None,
        now: Optional[datetime] = None,
    ) -> DelegationAnalytics:
        histories = self._store.load_histories(criteria)
        completions = self._store.load_completions(criteria)
        return self._analytics.get_delegation_analytics(histories, criteria, now=now, completions=completions)


# -----------------------------------------------------------------------------
# Singleton Instance
# -----------------------------------------------------------------------------

_service_instance: Optional[WorkflowService] = None


def get_workflow_service(config: Optional[WorkflowConfig] = None) -> WorkflowService:
    """Get or create the workflow service singleton."""
    global _service_instance
    if _service_instance is None:
        config = config or WorkflowConfig()
        _service_instance = WorkflowService(TaskStore(Path(config.storage_dir)), config)
    return _service_instance


def set_workflow_service(service: Optional[WorkflowService]) -> None:
    """Replace the singleton (tests and app startup)."""
    global _service_instance
    _service_instance = service
