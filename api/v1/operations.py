# api/v1/operations.py
from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from domain.operations.errors import OperationError
from domain.operations.states import Trigger
from domain.operations.subject import Subject
from lifecycle.log import emit
from lifecycle.operations import resolve_kind

from .state import get_runtime, http_error

router = APIRouter()


class StartOperationRequest(BaseModel):
    subject_id: Optional[str] = Field(default=None, description="Subject id (generated when omitted).")
    options: Dict[str, Any] = Field(default_factory=dict, description="Operation parameters (instance_guid, plan_id, agent_ip...).")
    operation: Optional[str] = Field(default=None, description="Deployment operation: create | update | delete.")
    trigger: Trigger = Field(default=Trigger.ON_DEMAND)


def _subject_view(subject: Subject) -> Dict[str, Any]:
    # What the broker API relays for "last operation": state + description, nothing internal.
    return {
        "subject_id": subject.id,
        "kind": subject.kind,
        "state": subject.state,
        "description": subject.response.get("description"),
        "error": subject.error,
    }


@router.post("/operations/{kind}", status_code=202)
async def start_operation(
    kind: str,
    req: StartOperationRequest,
    runtime: Any = Depends(get_runtime),
) -> Dict[str, Any]:
    try:
        subject_kind = resolve_kind(kind)
    except OperationError as e:
        raise http_error(e)

    subject_id = (req.subject_id or "").strip() or str(uuid.uuid4())
    try:
        subject = await runtime.starter.start(
            subject_kind,
            subject_id,
            req.options,
            operation=req.operation,
            trigger=req.trigger,
        )
    except OperationError as e:
        emit("OPERATION_REJECTED", component="api", subject_id=subject_id, kind=subject_kind.value, reason=e.code)
        raise http_error(e)

    return {"ok": True, **_subject_view(subject)}


@router.get("/operations/{kind}/{subject_id}")
async def get_operation(kind: str, subject_id: str, runtime: Any = Depends(get_runtime)) -> Dict[str, Any]:
    try:
        subject_kind = resolve_kind(kind)
        subject = await runtime.starter.get(subject_kind, subject_id)
    except OperationError as e:
        raise http_error(e)
    if subject is None:
        raise HTTPException(status_code=404, detail=f"{subject_kind.value} {subject_id} not found")
    return _subject_view(subject)
