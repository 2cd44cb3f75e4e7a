# lifecycle/log.py
from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict, Optional

log = logging.getLogger("lifecycle")

# LogRecord attributes; `extra` must not overwrite them.
_RESERVED = frozenset(
    {
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename", "module",
        "exc_info", "exc_text", "stack_info", "lineno", "funcName", "created", "msecs",
        "relativeCreated", "thread", "threadName", "processName", "process", "message",
        "taskName", "asctime",
    }
)


def _plain(v: Any) -> Any:
    if v is None or isinstance(v, (str, int, float, bool)):
        return v
    if isinstance(v, dict):
        return {str(k): _plain(x) for k, x in v.items()}
    if isinstance(v, (list, tuple, set)):
        return [_plain(x) for x in v]
    value = getattr(v, "value", None)
    if isinstance(value, str):
        return value
    try:
        return str(v)
    except Exception:
        return "<unserializable>"


def emit(event: str, *, component: str = "broker", subject_id: Optional[str] = None, **fields: Any) -> None:
    """
    Structured lifecycle event (poller started, subject finalized, lease released...).
    Rendered as one JSON line by observability.logging_config. Never throws.
    """
    payload: Dict[str, Any] = {
        "event": event,
        "component": component,
        "event_id": uuid.uuid4().hex,
        "ts_ms": int(time.time() * 1000),
    }
    if subject_id is not None:
        payload["subject_id"] = subject_id
    for k, v in fields.items():
        key = f"f_{k}" if k in _RESERVED else k
        payload[key] = _plain(v)

    try:
        log.info(event, extra=payload)
    except Exception:
        # Logging must never take a poller down.
        pass
