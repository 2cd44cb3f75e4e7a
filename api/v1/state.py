# api/v1/state.py
#
# The v1 routers hold no state of their own: everything lives on the
# BrokerRuntime that app.py puts on app.state.

from __future__ import annotations

from typing import Any, Dict

from fastapi import HTTPException, Request

from domain.operations.errors import ErrorKind, OperationError, build_error_json, error_kind

_STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.ALREADY_LOCKED: 422,
    ErrorKind.AGENT_UNREACHABLE: 502,
    ErrorKind.SCHEDULER: 502,
}


def get_runtime(request: Request) -> Any:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Broker runtime not initialized")
    return runtime


def http_error(exc: OperationError) -> HTTPException:
    return HTTPException(
        status_code=_STATUS_BY_KIND.get(error_kind(exc), 500),
        detail=build_error_json(exc),
    )
