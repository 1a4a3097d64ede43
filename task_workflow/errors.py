"""
Workflow Errors

Structured error taxonomy for the delegation state machine.
Every error carries a stable code, a human-readable message and the
details a caller needs to diagnose the refusal (task id, roles involved).
"""

from typing import Any, Dict, List, Optional


class WorkflowError(Exception):
    """Base workflow error with structured details."""
    def __init__(self, code: str, message: str, details: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class InvalidTransitionError(WorkflowError):
    def __init__(self, from_role: str, to_role: str, task_id: Optional[str] = None, allowed: List[str] = None):
        super().__init__(
            code="INVALID_TRANSITION",
            message=f"Invalid transition: {from_role} -> {to_role}",
            details={
                "task_id": task_id,
                "from_role": from_role,
                "to_role": to_role,
                "allowed": allowed or [],
            }
        )


class TaskTerminalError(WorkflowError):
    def __init__(self, task_id: str, status: str):
        super().__init__(
            code="TASK_TERMINAL",
            message=f"Task '{task_id}' is {status} and accepts no further changes",
            details={"task_id": task_id, "status": status}
        )


class OwnershipMismatchError(WorkflowError):
    def __init__(self, task_id: str, actor: str, owner: Optional[str]):
        super().__init__(
            code="OWNERSHIP_MISMATCH",
            message=f"Role '{actor}' does not own task '{task_id}' (owner: {owner or 'none'})",
            details={"task_id": task_id, "actor": actor, "owner": owner}
        )


class TaskNotFoundError(WorkflowError):
    def __init__(self, task_id: str):
        super().__init__(
            code="TASK_NOT_FOUND",
            message=f"Task '{task_id}' not found",
            details={"task_id": task_id}
        )


class MalformedHistoryError(WorkflowError):
    def __init__(self, task_id: str, reason: str, record_index: Optional[int] = None):
        super().__init__(
            code="MALFORMED_HISTORY",
            message=f"Malformed delegation history for task '{task_id}': {reason}",
            details={"task_id": task_id, "reason": reason, "record_index": record_index}
        )


class DelegatorNotFoundError(WorkflowError):
    """
    Raised when a rejecting role has no open delegator to send work back to.

    Completing without a delegator closes the task instead, so only
    complete(rejected) raises this.
    """
    def __init__(self, task_id: str, role: str):
        super().__init__(
            code="DELEGATOR_NOT_FOUND",
            message=f"No open delegator for role '{role}' on task '{task_id}'",
            details={"task_id": task_id, "role": role}
        )


class InvalidRequestError(WorkflowError):
    def __init__(self, message: str, task_id: Optional[str] = None, **details: Any):
        super().__init__(
            code="INVALID_REQUEST",
            message=message,
            details={"task_id": task_id, **details}
        )


class ConfigError(WorkflowError):
    def __init__(self, errors: List[str]):
        super().__init__(
            code="CONFIG_INVALID",
            message="Workflow configuration is invalid",
            details={"errors": errors}
        )
