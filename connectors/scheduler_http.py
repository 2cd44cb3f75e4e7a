# connectors/scheduler_http.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from domain.operations.errors import SchedulerError

log = logging.getLogger(__name__)

SCHEDULED_BACKUP_JOB = "ScheduledBackup"


class SchedulerClient:
    """
    Thin client for the external job scheduler.
    Jobs are keyed by (subject_id, job_type).
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout_s, transport=transport)

    async def _call(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, json=json)
        except httpx.HTTPError as e:
            raise SchedulerError(f"Scheduler unreachable: {e}", details={"path": path}) from e
        if resp.status_code >= 400:
            raise SchedulerError(
                f"Scheduler answered {resp.status_code} for {method} {path}",
                details={"path": path, "status_code": resp.status_code},
            )
        return resp

    async def schedule(
        self,
        subject_id: str,
        job_type: str,
        interval: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        resp = await self._call(
            "PUT",
            f"/v1/schedules/{subject_id}/{job_type}",
            json={"interval": interval, "data": dict(data or {})},
        )
        log.info("job scheduled", extra={"subject_id": subject_id, "job_type": job_type, "interval": interval})
        return resp.json() if resp.content else {}

    async def get_schedule(self, subject_id: str, job_type: str) -> Dict[str, Any]:
        resp = await self._call("GET", f"/v1/schedules/{subject_id}/{job_type}")
        return resp.json()

    async def cancel_schedule(self, subject_id: str, job_type: str) -> None:
        await self._call("DELETE", f"/v1/schedules/{subject_id}/{job_type}")

    async def aclose(self) -> None:
        await self._client.aclose()
