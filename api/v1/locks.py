# api/v1/locks.py
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from domain.operations.errors import OperationError
from lifecycle.locks import LockLease

from .state import get_runtime, http_error

router = APIRouter()


class AcquireLockRequest(BaseModel):
    operation: str = Field(..., min_length=1, description="Operation taking the lease (backup, restore, update...).")
    ttl_s: Optional[float] = Field(default=None, gt=0, description="Override of the per-operation lease TTL.")
    locked_resource: Dict[str, Any] = Field(default_factory=dict, description="Free-form details stored with the lease.")


class LockStatusResponse(BaseModel):
    subject_id: str
    locked: bool
    details: Optional[Dict[str, Any]] = None


def _lease_view(lease: LockLease) -> Dict[str, Any]:
    return lease.as_dict()


@router.get("/locks/{subject_id}", response_model=LockStatusResponse)
async def get_lock(subject_id: str, runtime: Any = Depends(get_runtime)) -> LockStatusResponse:
    try:
        status = await runtime.locks.status(subject_id)
    except OperationError as e:
        raise http_error(e)
    return LockStatusResponse(
        subject_id=subject_id,
        locked=status.locked,
        details=_lease_view(status.details) if status.details else None,
    )


@router.post("/locks/{subject_id}", response_model=LockStatusResponse)
async def acquire_lock(
    subject_id: str,
    req: AcquireLockRequest,
    runtime: Any = Depends(get_runtime),
) -> LockStatusResponse:
    try:
        lease = await runtime.locks.acquire(
            subject_id,
            req.operation.strip(),
            locked_resource=req.locked_resource,
            ttl_s=req.ttl_s,
        )
    except OperationError as e:
        raise http_error(e)
    return LockStatusResponse(subject_id=subject_id, locked=True, details=_lease_view(lease))


@router.delete("/locks/{subject_id}")
async def release_lock(subject_id: str, runtime: Any = Depends(get_runtime)) -> Dict[str, Any]:
    """Idempotent: releasing a lease that does not exist is still ok."""
    try:
        removed = await runtime.locks.release(subject_id)
    except OperationError as e:
        raise http_error(e)
    return {"ok": True, "subject_id": subject_id, "removed": removed}
