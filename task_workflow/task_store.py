"""
Task Store - Append-Only Persistence

JSONL storage for tasks, delegation records, status transitions and
escalations.

CONSTRAINTS:
- APPEND-ONLY: delegation records, status transitions and escalations are
  never edited or deleted
- TASK SNAPSHOTS: every task change appends a full snapshot; the latest
  snapshot for a task id wins
- FSYNC: every write is flushed and fsynced before returning
- ATOMIC COMMIT: commit() writes the record before the task snapshot under
  one lock, so a reader never sees an owner without the record behind it
"""

import json
import logging
import os
import threading
from collections import OrderedDict
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, Iterator, List

from .analytics_model import AnalyticsFilter
from .delegation_chain import infer_kinds
from .task_model import DelegationRecord, Escalation, StatusTransition, Task, TaskStatus

logger = logging.getLogger("task_store")

TASKS_FILENAME = "tasks.jsonl"
DELEGATIONS_FILENAME = "delegations.jsonl"
STATUS_TRANSITIONS_FILENAME = "status_transitions.jsonl"
ESCALATIONS_FILENAME = "escalations.jsonl"


class TaskStore:
    """File-backed task and delegation history store."""

    def __init__(self, storage_dir: Path):
        self._storage_dir = Path(storage_dir)
        self._tasks_file = self._storage_dir / TASKS_FILENAME
        self._delegations_file = self._storage_dir / DELEGATIONS_FILENAME
        self._transitions_file = self._storage_dir / STATUS_TRANSITIONS_FILENAME
        self._escalations_file = self._storage_dir / ESCALATIONS_FILENAME
        self._lock = threading.Lock()

    @property
    def storage_dir(self) -> Path:
        return self._storage_dir

    # -------------------------------------------------------------------------
    # Write Operations (Append-Only)
    # -------------------------------------------------------------------------

    def save_task(self, task: Task) -> None:
        """Append a task snapshot."""
        with self._lock:
            self._append_record(self._tasks_file, task.to_dict())

    def append_delegation_record(self, record: DelegationRecord) -> None:
        with self._lock:
            self._append_record(self._delegations_file, record.to_dict())

    def append_status_transition(self, transition: StatusTransition) -> None:
        with self._lock:
            self._append_record(self._transitions_file, transition.to_dict())

    def commit(
        self,
        task: Task,
        record: Optional[DelegationRecord] = None,
        transition: Optional[StatusTransition] = None,
        escalation: Optional[Escalation] = None,
    ) -> None:
        """Persist a mutation result: history first, then the task snapshot."""
        with self._lock:
            if record is not None:
                self._append_record(self._delegations_file, record.to_dict())
            if transition is not None:
                self._append_record(self._transitions_file, transition.to_dict())
            if escalation is not None:
                self._append_record(self._escalations_file, escalation.to_dict())
            self._append_record(self._tasks_file, task.to_dict())
        logger.debug(f"Committed task {task.task_id} ({task.status.value})")

    # -------------------------------------------------------------------------
    # Read Operations (Read-Only)
    # -------------------------------------------------------------------------

    def load_task(self, task_id: str) -> Optional[Task]:
        """Latest snapshot of a task, None if unknown."""
        latest = None
        for data in self._read_records(self._tasks_file):
            if data.get("task_id") == task_id:
                latest = data
        return Task.from_dict(latest) if latest else None

    def list_tasks(self) -> List[Task]:
        """Latest snapshot of every task, in creation order."""
        snapshots: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        for data in self._read_records(self._tasks_file):
            task_id = data.get("task_id")
            if task_id:
                snapshots[task_id] = data
        return [Task.from_dict(data) for data in snapshots.values()]

    def load_completions(self, criteria: Optional[AnalyticsFilter] = None) -> Dict[str, datetime]:
        """completed_at of every closed task, keyed by task id."""
        criteria = criteria or AnalyticsFilter()
        return {
            task.task_id: task.completed_at
            for task in self.list_tasks()
            if task.status == TaskStatus.COMPLETED
            and task.completed_at is not None
            and criteria.matches_task(task.task_id)
        }

    def load_delegation_history(self, task_id: str) -> List[DelegationRecord]:
        """One task's delegation chain, ordered by delegated_at."""
        return self.load_histories(AnalyticsFilter(task_id=task_id)).get(task_id, [])

    def load_histories(self, criteria: Optional[AnalyticsFilter] = None) -> Dict[str, List[DelegationRecord]]:
        """
        Delegation chains grouped by task id.

        Only the task id criterion is applied here; chains are returned whole
        so completion times can be derived before date/role filtering.
        """
        criteria = criteria or AnalyticsFilter()
        grouped: "OrderedDict[str, List[DelegationRecord]]" = OrderedDict()
        for data in self._read_records(self._delegations_file):
            task_id = data.get("task_id")
            if not task_id or not criteria.matches_task(task_id):
                continue
            try:
                record = DelegationRecord.from_dict(data)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable delegation record for task {task_id}: {e}")
                continue
            grouped.setdefault(task_id, []).append(record)

        for task_id, records in grouped.items():
            records.sort(key=lambda r: r.delegated_at)
            grouped[task_id] = infer_kinds(records)
        return dict(grouped)

    def query_delegations(self, criteria: Optional[AnalyticsFilter] = None) -> List[DelegationRecord]:
        """Flat list of records matching every criterion, chronological."""
        criteria = criteria or AnalyticsFilter()
        matching = [
            record
            for records in self.load_histories(criteria).values()
            for record in records
            if criteria.matches(record)
        ]
        matching.sort(key=lambda r: r.delegated_at)
        return matching

    def load_status_transitions(self, task_id: str) -> List[StatusTransition]:
        transitions = [
            StatusTransition.from_dict(data)
            for data in self._read_records(self._transitions_file)
            if data.get("task_id") == task_id
        ]
        transitions.sort(key=lambda t: t.transitioned_at)
        return transitions

    def load_escalations(self, task_id: str) -> List[Escalation]:
        escalations = [
            Escalation.from_dict(data)
            for data in self._read_records(self._escalations_file)
            if data.get("task_id") == task_id
        ]
        escalations.sort(key=lambda e: e.escalated_at)
        return escalations

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    def _append_record(self, file_path: Path, record: Dict[str, Any]) -> None:
        """Append record to JSONL file with fsync. Caller holds the lock."""
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(file_path, 'a') as f:
                f.write(json.dumps(record) + '\n')
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            logger.error(f"Failed to append to {file_path}: {e}")
            raise

    def _read_records(self, file_path: Path) -> Iterator[Dict[str, Any]]:
        """Read records from JSONL file, skipping malformed lines."""
        if not file_path.exists():
            return
        with open(file_path, 'r') as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.warning(f"Skipping malformed line {line_number} in {file_path.name}: {e}")
                    continue
                if isinstance(data, dict):
                    yield data
