# app.py
#
# Operations broker HTTP process.
#
#   uvicorn app:app
#
# Startup builds the BrokerRuntime (store, leases, clients, pollers) and
# starts the pollers; shutdown stops them.

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from api.v1 import router as v1_router
from observability.logging_config import configure_logging
from runtime import BrokerRuntime

log = logging.getLogger(__name__)


def create_app(runtime: Optional[BrokerRuntime] = None, *, setup_logging: bool = True) -> FastAPI:
    app = FastAPI(title="Operations Broker")
    app.state.runtime = runtime
    app.include_router(v1_router, prefix="/v1")

    @app.on_event("startup")
    async def broker_startup() -> None:
        """
        Startup hook: wires the runtime (unless one was injected) and starts the pollers.
        """
        if setup_logging:
            configure_logging()
        if app.state.runtime is None:
            app.state.runtime = BrokerRuntime()
        await app.state.runtime.start()
        log.info("operations broker started")

    @app.on_event("shutdown")
    async def broker_shutdown() -> None:
        rt = app.state.runtime
        if rt is not None:
            await rt.stop()
        log.info("operations broker stopped")

    @app.get("/healthz", response_class=PlainTextResponse)
    def healthz(request: Request) -> PlainTextResponse:
        """
        Simple health check for the orchestrator and UI.
        """
        rt = request.app.state.runtime
        if rt is None:
            return PlainTextResponse("starting", status_code=503, media_type="text/plain")

        per_kind = " ".join(f"{p.kind.lower()}={p.registry.active_count()}" for p in rt.pollers)
        running = sum(1 for p in rt.pollers if p.running)
        return PlainTextResponse(
            f"ok pollers={running}/{len(rt.pollers)} active={rt.active_pollers()} {per_kind}",
            media_type="text/plain",
        )

    return app


app = create_app()
