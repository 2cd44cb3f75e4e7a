# connectors/director_http.py
from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from domain.operations.errors import AgentUnreachableError, DependencyNotFoundError
from domain.operations.states import ResourceState

# director task states -> subject resource state
_TASK_STATES = {
    "queued": ResourceState.IN_PROGRESS,
    "processing": ResourceState.IN_PROGRESS,
    "cancelling": ResourceState.IN_PROGRESS,
    "done": ResourceState.SUCCEEDED,
    "error": ResourceState.FAILED,
    "timeout": ResourceState.FAILED,
    "cancelled": ResourceState.FAILED,
}


class DirectorClient:
    """
    Reads deployment task progress from the deployment director.
    Only the result contract matters to the pollers:
      {"state": <resource state>, "description": str, "task_id": str}
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout_s, transport=transport)

    async def get_last_operation(self, instance_id: str, task_id: str) -> Dict[str, Any]:
        try:
            resp = await self._client.get(f"/tasks/{task_id}")
        except httpx.HTTPError as e:
            raise AgentUnreachableError(f"Director unreachable: {e}", details={"task_id": task_id}) from e

        if resp.status_code == 404:
            raise DependencyNotFoundError(
                f"Deployment for instance {instance_id} not found (task {task_id})",
                details={"instance_id": instance_id, "task_id": task_id},
            )
        if resp.status_code != 200:
            raise AgentUnreachableError(
                f"Director answered {resp.status_code} for task {task_id}",
                details={"task_id": task_id, "status_code": resp.status_code},
            )

        body = resp.json()
        raw = str(body.get("state") or "processing").lower()
        state = _TASK_STATES.get(raw, ResourceState.IN_PROGRESS)
        return {
            "state": state.value,
            "description": body.get("description") or body.get("result") or raw,
            "task_id": str(task_id),
        }

    async def aclose(self) -> None:
        await self._client.aclose()
