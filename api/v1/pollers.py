# api/v1/pollers.py
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from .state import get_runtime

router = APIRouter()


@router.get("/pollers")
def list_pollers(runtime: Any = Depends(get_runtime)) -> Dict[str, Any]:
    return {
        "ok": True,
        "broker_ip": runtime.settings.broker_ip,
        "active": runtime.active_pollers(),
        "pollers": runtime.poller_snapshot(),
    }
