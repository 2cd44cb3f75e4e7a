# domain/operations/subject.py
#
# Typed views over resource-store entries.
# Resource payloads may carry spec.options / status.response as JSON strings
# (older writers did that); they are decoded exactly once, here.

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import SubjectValidationError
from .states import OperationType, Trigger

ABORT_MARKER_KEY = "abort_started_at"
POLLER_ANNOTATION = "lockedByTaskPoller"


def _decode(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, (str, bytes)):
        try:
            parsed = json.loads(value)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 (with or without Z) or epoch seconds -> aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def format_timestamp(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


@dataclass(frozen=True)
class Subject:
    """
    One operation instance as stored in the resource store:
      { kind, metadata:{name, version, annotations}, spec:{options}, status:{state, response, error} }
    """
    id: str
    kind: str
    state: Optional[str]
    version: Optional[str]
    options: Dict[str, Any] = field(default_factory=dict)
    response: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    annotations: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_resource(cls, resource: Mapping[str, Any]) -> "Subject":
        metadata = resource.get("metadata") or {}
        spec = resource.get("spec") or {}
        status = resource.get("status") or {}
        return cls(
            id=str(metadata.get("name") or ""),
            kind=str(resource.get("kind") or ""),
            state=status.get("state"),
            version=metadata.get("version"),
            options=_decode(spec.get("options")),
            response=_decode(status.get("response")),
            error=status.get("error"),
            annotations=dict(metadata.get("annotations") or {}),
        )

    def merged_options(self) -> Dict[str, Any]:
        """spec.options overlaid with status.response (the agent-facing details live there)."""
        out = dict(self.options)
        for k, v in self.response.items():
            if v is not None:
                out[k] = v
        return out


def _missing(data: Mapping[str, Any], required: Iterable[str]) -> List[str]:
    return [k for k in required if data.get(k) in (None, "")]


def _require(subject: Subject, data: Mapping[str, Any], required: Iterable[str], what: str) -> None:
    missing = _missing(data, required)
    if missing:
        raise SubjectValidationError(
            f"{what} status poller cannot proceed, required params ({' | '.join(missing)}) are empty",
            details={"subject_id": subject.id, "missing": missing},
        )


def _timestamp_field(subject: Subject, data: Mapping[str, Any], key: str) -> datetime:
    ts = parse_timestamp(data.get(key))
    if ts is None:
        raise SubjectValidationError(
            f"Field '{key}' is not a valid timestamp",
            details={"subject_id": subject.id, key: data.get(key)},
        )
    return ts


def _trigger(value: Any) -> Trigger:
    try:
        return Trigger(str(value or Trigger.ON_DEMAND.value).lower())
    except ValueError:
        return Trigger.ON_DEMAND


@dataclass(frozen=True)
class AgentOperationDetails:
    """Fields shared by agent-driven operations (backup, restore)."""
    subject_id: str
    instance_guid: str
    plan_id: str
    deployment: str
    agent_ip: str
    started_at: datetime
    abort_started_at: Optional[datetime]
    trigger: Trigger
    tenant_id: Optional[str] = None
    service_id: Optional[str] = None


BACKUP_REQUIRED = ("instance_guid", "backup_guid", "plan_id", "started_at", "deployment", "agent_ip")
RESTORE_REQUIRED = ("instance_guid", "restore_guid", "backup_guid", "plan_id", "started_at", "deployment", "agent_ip")


@dataclass(frozen=True)
class BackupDetails(AgentOperationDetails):
    backup_guid: str = ""

    @classmethod
    def from_subject(cls, subject: Subject) -> "BackupDetails":
        data = subject.merged_options()
        _require(subject, data, BACKUP_REQUIRED, "Backup")
        return cls(
            subject_id=subject.id,
            instance_guid=str(data["instance_guid"]),
            plan_id=str(data["plan_id"]),
            deployment=str(data["deployment"]),
            agent_ip=str(data["agent_ip"]),
            started_at=_timestamp_field(subject, data, "started_at"),
            abort_started_at=parse_timestamp(data.get(ABORT_MARKER_KEY)),
            trigger=_trigger(data.get("trigger")),
            tenant_id=data.get("tenant_id"),
            service_id=data.get("service_id"),
            backup_guid=str(data["backup_guid"]),
        )


@dataclass(frozen=True)
class RestoreDetails(AgentOperationDetails):
    restore_guid: str = ""
    backup_guid: str = ""

    @classmethod
    def from_subject(cls, subject: Subject) -> "RestoreDetails":
        data = subject.merged_options()
        _require(subject, data, RESTORE_REQUIRED, "Restore")
        return cls(
            subject_id=subject.id,
            instance_guid=str(data["instance_guid"]),
            plan_id=str(data["plan_id"]),
            deployment=str(data["deployment"]),
            agent_ip=str(data["agent_ip"]),
            started_at=_timestamp_field(subject, data, "started_at"),
            abort_started_at=parse_timestamp(data.get(ABORT_MARKER_KEY)),
            trigger=_trigger(data.get("trigger")),
            tenant_id=data.get("tenant_id"),
            service_id=data.get("service_id"),
            restore_guid=str(data["restore_guid"]),
            backup_guid=str(data["backup_guid"]),
        )


@dataclass(frozen=True)
class DeploymentDetails:
    subject_id: str
    instance_id: str
    operation: OperationType
    task_id: str

    @classmethod
    def from_subject(cls, subject: Subject) -> "DeploymentDetails":
        data = subject.merged_options()
        data.setdefault("instance_id", subject.id)
        _require(subject, data, ("instance_id", "type", "task_id"), "Deployment")
        try:
            op = OperationType(str(data["type"]).lower())
        except ValueError:
            raise SubjectValidationError(
                f"Unsupported deployment operation type {data['type']!r}",
                details={"subject_id": subject.id},
            )
        if op not in (OperationType.CREATE, OperationType.UPDATE, OperationType.DELETE):
            raise SubjectValidationError(
                f"Deployment poller does not handle {op.value} operations",
                details={"subject_id": subject.id},
            )
        return cls(
            subject_id=subject.id,
            instance_id=str(data["instance_id"]),
            operation=op,
            task_id=str(data["task_id"]),
        )


def lock_subject_id(subject: Subject) -> Optional[str]:
    """
    Leases are held on the target instance, not on the operation subject.
    Best effort: used on the validation-failure path where details are incomplete.
    """
    data = subject.merged_options()
    v = data.get("instance_guid") or data.get("instance_id")
    return str(v) if v else None
