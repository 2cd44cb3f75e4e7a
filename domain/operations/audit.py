from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict

@dataclass(frozen=True)
class AuditEvent:
    type: str
    payload: Dict[str, Any]

def operation_finished(*, kind: str, subject_id: str, operation: str, state: str, response: Dict[str, Any]) -> AuditEvent:
    return AuditEvent(
        type=f"{operation}.finished",
        payload={
            "kind": kind,
            "subject_id": subject_id,
            "operation": operation,
            "state": state,
            "response": dict(response),
        },
    )
