# api/v1/events.py
#
# SSE stream of terminal-outcome audit events (backup.finished, restore.finished, ...).
# Publishers are the pollers, which run on the server's event loop.

from __future__ import annotations

import asyncio
import json
import threading
import time
from typing import Any, Dict, List

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

router = APIRouter()

_SUBSCRIBERS: List[asyncio.Queue] = []
_SUBSCRIBERS_LOCK = threading.Lock()

_QUEUE_MAX = 200
_KEEPALIVE_INTERVAL_S = 15.0


def _sse_format(event_type: str, data: Dict[str, Any]) -> str:
    payload = json.dumps(data, separators=(",", ":"), ensure_ascii=False, default=str)
    return f"event: {event_type}\ndata: {payload}\n\n"


def subscriber_count() -> int:
    with _SUBSCRIBERS_LOCK:
        return len(_SUBSCRIBERS)


def publish_event(event_type: str, data: Dict[str, Any]) -> int:
    """
    Fan out one event to every connected client; returns how many got it.
    A full subscriber queue drops the event for that subscriber only.
    """
    with _SUBSCRIBERS_LOCK:
        subscribers = list(_SUBSCRIBERS)
    if not subscribers:
        return 0

    msg = _sse_format(event_type, data)
    delivered = 0
    for q in subscribers:
        try:
            q.put_nowait(msg)
            delivered += 1
        except asyncio.QueueFull:
            pass
    return delivered


@router.get("/events")
async def sse_events(request: Request) -> StreamingResponse:
    q: asyncio.Queue = asyncio.Queue(maxsize=_QUEUE_MAX)
    with _SUBSCRIBERS_LOCK:
        _SUBSCRIBERS.append(q)

    async def event_generator():
        yield _sse_format("hello", {"ts": time.time()})
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    msg = await asyncio.wait_for(q.get(), timeout=_KEEPALIVE_INTERVAL_S)
                    yield msg
                except asyncio.TimeoutError:
                    yield f": keepalive {int(time.time())}\n\n"
        finally:
            with _SUBSCRIBERS_LOCK:
                if q in _SUBSCRIBERS:
                    _SUBSCRIBERS.remove(q)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
