# domain/operations/errors.py
#
# Every failure the state machines care about carries an ErrorKind tag.
# Decision points branch on error_kind(exc); nothing downstream should need
# to know the concrete exception class.

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    ALREADY_LOCKED = "already_locked"
    AGENT_UNREACHABLE = "agent_unreachable"
    SCHEDULER = "scheduler"
    UNEXPECTED = "unexpected"


class OperationError(Exception):
    kind: ErrorKind = ErrorKind.UNEXPECTED
    code: str = "ERR_OPERATION"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})


class SubjectValidationError(OperationError):
    kind = ErrorKind.VALIDATION
    code = "ERR_BAD_REQUEST"


class ResourceNotFoundError(OperationError):
    kind = ErrorKind.NOT_FOUND
    code = "ERR_RESOURCE_NOT_FOUND"


class DependencyNotFoundError(OperationError):
    """The deployment/instance behind an operation no longer exists."""
    kind = ErrorKind.NOT_FOUND
    code = "ERR_SERVICE_INSTANCE_NOT_FOUND"


class VersionConflictError(OperationError):
    kind = ErrorKind.CONFLICT
    code = "ERR_CONFLICT"


class AlreadyLockedError(OperationError):
    kind = ErrorKind.ALREADY_LOCKED
    code = "ERR_DEPLOYMENT_LOCKED"

    def __init__(self, subject_id: str, operation: Optional[str], locked_at: Optional[str]) -> None:
        super().__init__(
            f"Resource {subject_id} is locked for {operation or 'unknown'} operation since {locked_at}",
            details={"subject_id": subject_id, "operation": operation, "locked_at": locked_at},
        )
        self.subject_id = subject_id
        self.operation = operation
        self.locked_at = locked_at


class AgentUnreachableError(OperationError):
    kind = ErrorKind.AGENT_UNREACHABLE
    code = "ERR_AGENT_UNREACHABLE"


class SchedulerError(OperationError):
    kind = ErrorKind.SCHEDULER
    code = "ERR_SCHEDULER"


def error_kind(exc: BaseException) -> ErrorKind:
    if isinstance(exc, OperationError):
        return exc.kind
    return ErrorKind.UNEXPECTED


def build_error_json(exc: BaseException, message: Optional[str] = None) -> Dict[str, Any]:
    """Payload stored under status.error."""
    if isinstance(exc, OperationError):
        return {
            "code": exc.code,
            "kind": exc.kind.value,
            "message": message or exc.message,
            "details": exc.details,
        }
    return {
        "code": "ERR_INTERNAL",
        "kind": ErrorKind.UNEXPECTED.value,
        "message": message or str(exc) or type(exc).__name__,
        "details": {"type": type(exc).__name__},
    }
