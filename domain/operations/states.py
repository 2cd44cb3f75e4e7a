# domain/operations/states.py
from __future__ import annotations

from enum import Enum
from typing import Optional


class ResourceState(str, Enum):
    """
    status.state values stored on subjects in the resource store.
    Also used verbatim in watch filters ("state in (...)").
    """
    IN_QUEUE = "in_queue"
    IN_PROGRESS = "in_progress"
    UPDATE = "update"
    DELETE = "delete"
    PROCESSING = "processing"
    ABORTING = "aborting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"
    DELETE_FAILED = "delete_failed"


class WatchEventType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


class SubjectKind(str, Enum):
    BACKUP = "Backup"
    RESTORE = "Restore"
    DEPLOYMENT = "Deployment"
    LOCK = "DeploymentLock"


class OperationType(str, Enum):
    BACKUP = "backup"
    RESTORE = "restore"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Trigger(str, Enum):
    ON_DEMAND = "on-demand"
    SCHEDULED = "scheduled"


TERMINAL_STATES = frozenset(
    {
        ResourceState.SUCCEEDED,
        ResourceState.FAILED,
        ResourceState.ABORTED,
        ResourceState.DELETE_FAILED,
    }
)

# Agent-reported states. The agent has its own vocabulary; "processing" is its
# only non-terminal value.
AGENT_TERMINAL_STATES = frozenset({"succeeded", "failed", "aborted"})


def coerce_state(value: Optional[str]) -> Optional[ResourceState]:
    if value is None:
        return None
    try:
        return ResourceState(str(value).strip().lower())
    except ValueError:
        return None


def is_finished(state: Optional[str]) -> bool:
    s = coerce_state(state)
    return s is not None and s in TERMINAL_STATES


def is_agent_finished(state: Optional[str]) -> bool:
    return str(state or "").strip().lower() in AGENT_TERMINAL_STATES


def state_filter(states) -> str:
    """Watch selector in the resource store's syntax: state in (a,b)."""
    values = [s.value if isinstance(s, ResourceState) else str(s) for s in states]
    return f"state in ({','.join(values)})"
