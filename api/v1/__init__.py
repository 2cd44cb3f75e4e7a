# api/v1/__init__.py

from fastapi import APIRouter

# v1 router (mounted by app.py at /v1)
router = APIRouter()

from .locks import router as locks_router  # noqa: E402
from .operations import router as operations_router  # noqa: E402
from .pollers import router as pollers_router  # noqa: E402
from .audit import router as audit_router  # noqa: E402
from .events import router as events_router  # noqa: E402

# Write endpoints
router.include_router(operations_router, tags=["v1/operations"])
router.include_router(locks_router, tags=["v1/locks"])

# Read + realtime
router.include_router(pollers_router, tags=["v1/pollers"])
router.include_router(audit_router, tags=["v1/audit"])
router.include_router(events_router, tags=["v1/events"])


__all__ = ["router"]
