"""
Pytest configuration for Task Workflow tests.

This module provides:
1. A fixed reference time so timing assertions are deterministic
2. Config, store and service fixtures backed by tmp_path
3. A factory for hand-built delegation records
"""

from datetime import datetime, timedelta, timezone

import pytest

from task_workflow.config import WorkflowConfig
from task_workflow.role_registry import Role
from task_workflow.task_model import DelegationKind, DelegationRecord, Task
from task_workflow.task_store import TaskStore
from task_workflow.workflow_service import WorkflowService

BASE_TIME = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


# -----------------------------------------------------------------------------
# Time
# -----------------------------------------------------------------------------
@pytest.fixture
def base_time():
    """Monday 2026-01-05 09:00 UTC."""
    return BASE_TIME


@pytest.fixture
def at(base_time):
    """Return a function mapping an hour offset to a timestamp."""
    def _at(hours: float) -> datetime:
        return base_time + timedelta(hours=hours)
    return _at


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def config():
    return WorkflowConfig()


@pytest.fixture
def store(tmp_path):
    """TaskStore writing under a temporary directory."""
    return TaskStore(tmp_path / "task_workflow")


@pytest.fixture
def service(store, config):
    return WorkflowService(store, config)


@pytest.fixture
def new_task(base_time):
    """A not-started task created at base_time."""
    return Task.new("Add export endpoint", task_id="T1", now=base_time)


@pytest.fixture
def make_record(at):
    """
    Build a DelegationRecord at an hour offset.

    Usage:
        make_record("T1", 1, Role.INTAKE, Role.ARCHITECTURE, hours=0)
        make_record("T1", 2, Role.ARCHITECTURE, Role.INTAKE, hours=3,
                    kind=DelegationKind.REDELEGATION, success=False, reason="missing diagram")
    """
    def _make(
        task_id: str,
        sequence: int,
        from_role: Role,
        to_role: Role,
        hours: float,
        kind: DelegationKind = DelegationKind.HANDOFF,
        success=True,
        reason=None,
        completed_hours=None,
    ) -> DelegationRecord:
        return DelegationRecord(
            record_id=f"{task_id}-{sequence}",
            task_id=task_id,
            sequence=sequence,
            from_role=from_role,
            to_role=to_role,
            kind=kind,
            delegated_at=at(hours),
            success=success,
            rejection_reason=reason,
            completed_at=at(completed_hours) if completed_hours is not None else None,
        )
    return _make
