# lifecycle/audit.py
from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from domain.operations.audit import AuditEvent
from lifecycle.log import emit

log = logging.getLogger(__name__)

_AUDIT_MAX = 2000  # bounded buffer


def _publish_event_best_effort(event: str, data: Dict[str, Any]) -> None:
    from api.v1.events import publish_event  # deferred: api imports lifecycle

    publish_event(event, data)


class AuditEmitter:
    """
    Receives terminal-outcome notifications.

    Each event is:
      - written as a lifecycle log line
      - kept in a bounded in-memory buffer (GET /v1/audit)
      - pushed to SSE subscribers of /v1/events

    publish() never raises; an audit failure must not change an operation outcome.
    """

    def __init__(
        self,
        publisher: Optional[Callable[[str, Dict[str, Any]], None]] = None,
        maxlen: int = _AUDIT_MAX,
    ) -> None:
        self._publisher = publisher or _publish_event_best_effort
        self._events: Deque[AuditEvent] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def publish(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)
        emit("AUDIT", component="audit", audit_type=event.type, **event.payload)
        try:
            self._publisher(event.type, dict(event.payload))
        except Exception:
            log.warning(f"Failed to publish audit event {event.type}", exc_info=True)

    def recent(self, limit: int = 200) -> List[AuditEvent]:
        with self._lock:
            items = list(self._events)
        if limit <= 0:
            return []
        return items[-limit:]
