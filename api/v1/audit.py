# api/v1/audit.py
from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from .state import get_runtime

router = APIRouter()


@router.get("/audit")
def get_audit(
    type: Optional[str] = Query(default=None, description="Filter by event type, e.g. backup.finished"),
    subject_id: Optional[str] = Query(default=None),
    limit: int = Query(default=200, ge=1, le=2000),
    runtime: Any = Depends(get_runtime),
) -> Dict[str, Any]:
    rows = runtime.audit.recent(limit=2000)
    if type:
        rows = [r for r in rows if r.type == type]
    if subject_id:
        rows = [r for r in rows if r.payload.get("subject_id") == subject_id]

    rows = rows[-limit:]
    return {
        "ok": True,
        "count": len(rows),
        "limit": limit,
        "events": [asdict(r) for r in rows],
    }
