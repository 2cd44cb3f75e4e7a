# connectors/agent_http.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from domain.operations.errors import AgentUnreachableError, DependencyNotFoundError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class LastOperation:
    state: str
    stage: Optional[str] = None
    snapshot_id: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "LastOperation":
        return cls(
            state=str(body.get("state") or "processing").lower(),
            stage=body.get("stage"),
            snapshot_id=body.get("snapshotId") or body.get("snapshot_id"),
            updated_at=body.get("updated_at") or body.get("updatedAt"),
        )

    def as_response(self) -> Dict[str, Any]:
        return {
            "agent_state": self.state,
            "stage": self.stage,
            "snapshot_id": self.snapshot_id,
            "updated_at": self.updated_at,
        }


def parse_log_lines(text: str) -> List[Dict[str, Any]]:
    """Agent logs are newline-delimited JSON; non-JSON lines are kept as messages."""
    entries: List[Dict[str, Any]] = []
    for line in (text or "").split("\n"):
        line = line.strip()
        if not line:
            continue
        try:
            parsed = json.loads(line)
        except ValueError:
            entries.append({"msg": line})
            continue
        entries.append(parsed if isinstance(parsed, dict) else {"msg": parsed})
    return entries


class AgentClient:
    """
    Minimal async client for the workload agent running next to a deployment.

    v1 behavior:
      - GET  /v1/<operation>          last operation of the agent
      - POST /v1/<operation>/abort    ask the agent to abort (202)
      - GET  /v1/<operation>/logs     newline-delimited JSON
    """

    def __init__(
        self,
        *,
        port: int = 2718,
        username: str = "admin",
        password: str = "admin",
        timeout_s: float = 30.0,
        scheme: str = "http",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.port = int(port)
        self.scheme = scheme
        self._client = httpx.AsyncClient(
            auth=(username, password),
            timeout=timeout_s,
            transport=transport,
        )

    def url(self, ip: str, path: str) -> str:
        return f"{self.scheme}://{ip}:{self.port}/v1/{path}"

    async def _request(self, method: str, ip: str, path: str, expected: int) -> httpx.Response:
        url = self.url(ip, path)
        try:
            resp = await self._client.request(method, url)
        except httpx.HTTPError as e:
            raise AgentUnreachableError(
                f"Agent at {ip} unreachable: {e}", details={"url": url}
            ) from e

        if resp.status_code == 404:
            raise DependencyNotFoundError(
                f"Agent at {ip} reports no such deployment ({path})", details={"url": url}
            )
        if resp.status_code != expected:
            raise AgentUnreachableError(
                f"Agent at {ip} answered {resp.status_code} for {method} {path}",
                details={"url": url, "status_code": resp.status_code},
            )
        return resp

    async def get_last_operation(self, ip: str, operation: str) -> LastOperation:
        resp = await self._request("GET", ip, operation, 200)
        try:
            body = resp.json()
        except ValueError as e:
            raise AgentUnreachableError(f"Agent at {ip} returned a non-JSON body") from e
        return LastOperation.from_body(body if isinstance(body, dict) else {})

    async def abort(self, ip: str, operation: str) -> None:
        await self._request("POST", ip, f"{operation}/abort", 202)
        log.info("agent abort requested", extra={"agent_ip": ip, "operation": operation})

    async def get_logs(self, ip: str, operation: str) -> List[Dict[str, Any]]:
        resp = await self._request("GET", ip, f"{operation}/logs", 200)
        return parse_log_lines(resp.text)

    async def aclose(self) -> None:
        await self._client.aclose()
