import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

SERVICE = os.getenv("SERVICE_NAME", "operations-broker")
ENV = os.getenv("ENV", "dev")
# Several brokers may share one log sink; tag lines with the broker address.
BROKER = os.getenv("BROKER_IP")

_RECORD_ATTRS = frozenset(
    {
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename", "module",
        "exc_info", "exc_text", "stack_info", "lineno", "funcName", "created", "msecs",
        "relativeCreated", "thread", "threadName", "processName", "process", "taskName",
        "message",
    }
)

def _utc_iso(ts: Optional[float] = None) -> str:
    if ts is None:
        return datetime.now(timezone.utc).isoformat()
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()

class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base: Dict[str, Any] = {
            "ts": _utc_iso(record.created),
            "level": record.levelname,
            "service": SERVICE,
            "env": ENV,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if BROKER:
            base["broker"] = BROKER

        # Fields passed via `extra=...` land on the record itself
        for k, v in record.__dict__.items():
            if k.startswith("_") or k in _RECORD_ATTRS:
                continue
            if k not in base:
                base[k] = v

        if record.exc_info:
            base["exception"] = self.formatException(record.exc_info)

        return json.dumps(base, ensure_ascii=False, default=str)

def configure_logging(level: Optional[str] = None, stream: Optional[TextIO] = None) -> None:
    lvl = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    root = logging.getLogger()
    root.setLevel(lvl)

    # uvicorn installs its own handlers; one JSON stream only
    root.handlers.clear()

    h = logging.StreamHandler(stream or sys.stdout)
    h.setLevel(lvl)
    h.setFormatter(JsonFormatter())
    root.addHandler(h)

    logging.getLogger("uvicorn.access").setLevel(os.getenv("UVICORN_ACCESS_LEVEL", "WARNING"))
    logging.getLogger("uvicorn.error").setLevel(lvl)
    # one line per agent/scheduler request is noise at INFO
    logging.getLogger("httpx").setLevel(os.getenv("HTTPX_LOG_LEVEL", "WARNING"))
