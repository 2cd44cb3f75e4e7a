# connectors/resource_store.py
#
# Versioned, watchable resource store.
#
# ResourceStore is the contract the pollers and the lock manager consume.
# InMemoryResourceStore is the in-process implementation the broker runs with
# by default (and what the tests drive): a dict of resources behind one lock,
# plus an asyncio.Queue per watch subscription.

from __future__ import annotations

import asyncio
import copy
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Protocol, Tuple

from domain.operations.errors import ResourceNotFoundError, VersionConflictError
from domain.operations.states import ResourceState, WatchEventType, state_filter

log = logging.getLogger(__name__)

API_VERSION = "operations.broker/v1alpha1"


@dataclass(frozen=True)
class WatchEvent:
    type: str
    object: Dict[str, Any]

    @property
    def name(self) -> str:
        return str((self.object.get("metadata") or {}).get("name") or "")

    @property
    def state(self) -> Optional[str]:
        return (self.object.get("status") or {}).get("state")


class WatchSubscription(Protocol):
    def __aiter__(self) -> AsyncIterator[WatchEvent]:
        ...

    async def next_event(self, timeout: Optional[float] = None) -> Optional[WatchEvent]:
        ...

    def close(self) -> None:
        ...


class ResourceStore(Protocol):
    async def get(self, kind: str, name: str) -> Dict[str, Any]:
        ...

    async def list(self, kind: str, states: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        ...

    async def create(
        self,
        kind: str,
        name: str,
        *,
        options: Optional[Dict[str, Any]] = None,
        status: Optional[Dict[str, Any]] = None,
        annotations: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        ...

    async def patch(
        self,
        kind: str,
        name: str,
        *,
        status: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
        annotations: Optional[Dict[str, Any]] = None,
        version: Optional[str] = None,
    ) -> Dict[str, Any]:
        ...

    async def delete(self, kind: str, name: str) -> None:
        ...

    def watch(self, kind: str, states: Optional[Iterable[str]] = None) -> WatchSubscription:
        ...


def merge_patch(target: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """
    JSON merge-patch (RFC 7386) applied in place:
      - dict values merge recursively
      - None removes the key
      - anything else replaces
    """
    for k, v in patch.items():
        if v is None:
            target.pop(k, None)
        elif isinstance(v, dict) and isinstance(target.get(k), dict):
            merge_patch(target[k], v)
        else:
            target[k] = copy.deepcopy(v)
    return target


def _state_values(states: Optional[Iterable[str]]) -> Optional[Tuple[str, ...]]:
    if states is None:
        return None
    return tuple(s.value if isinstance(s, ResourceState) else str(s) for s in states)


_CLOSED = object()


class _QueueSubscription:
    def __init__(self, store: "InMemoryResourceStore", kind: str, states: Optional[Tuple[str, ...]]) -> None:
        self._store = store
        self.kind = kind
        self.states = states
        self.selector = state_filter(states) if states is not None else ""
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def matches(self, kind: str, resource: Dict[str, Any]) -> bool:
        if kind != self.kind:
            return False
        if self.states is None:
            return True
        return (resource.get("status") or {}).get("state") in self.states

    def push(self, event: WatchEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    async def next_event(self, timeout: Optional[float] = None) -> Optional[WatchEvent]:
        """Next event, or None once closed or when `timeout` elapses first."""
        if self.closed and self._queue.empty():
            return None
        try:
            if timeout is None:
                item = await self._queue.get()
            else:
                item = await asyncio.wait_for(self._queue.get(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            return None
        return item

    def __aiter__(self) -> AsyncIterator[WatchEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[WatchEvent]:
        while True:
            ev = await self.next_event()
            if ev is None:
                return
            yield ev

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._store._unsubscribe(self)
        self._queue.put_nowait(_CLOSED)


class InMemoryResourceStore:
    """
    Resource store kept in process memory.

    Versions are monotonically increasing integers rendered as strings.
    Every successful write bumps the version and fans out a watch event.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._resources: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._subscriptions: List[_QueueSubscription] = []
        self._version = 0

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _publish(self, event_type: WatchEventType, kind: str, resource: Dict[str, Any]) -> None:
        for sub in list(self._subscriptions):
            if sub.matches(kind, resource):
                sub.push(WatchEvent(type=event_type.value, object=copy.deepcopy(resource)))

    def _unsubscribe(self, sub: _QueueSubscription) -> None:
        with self._lock:
            try:
                self._subscriptions.remove(sub)
            except ValueError:
                pass

    def _require(self, kind: str, name: str) -> Dict[str, Any]:
        res = self._resources.get((kind, name))
        if res is None:
            raise ResourceNotFoundError(
                f"{kind} '{name}' not found", details={"kind": kind, "name": name}
            )
        return res

    # -------------------------------------------------------------------------
    # ResourceStore
    # -------------------------------------------------------------------------

    async def get(self, kind: str, name: str) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._require(kind, name))

    async def list(self, kind: str, states: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        wanted = _state_values(states)
        with self._lock:
            out = []
            for (k, _name), res in self._resources.items():
                if k != kind:
                    continue
                if wanted is not None and (res.get("status") or {}).get("state") not in wanted:
                    continue
                out.append(copy.deepcopy(res))
            return out

    async def create(
        self,
        kind: str,
        name: str,
        *,
        options: Optional[Dict[str, Any]] = None,
        status: Optional[Dict[str, Any]] = None,
        annotations: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        with self._lock:
            if (kind, name) in self._resources:
                raise VersionConflictError(
                    f"{kind} '{name}' already exists", details={"kind": kind, "name": name}
                )
            resource = {
                "apiVersion": API_VERSION,
                "kind": kind,
                "metadata": {
                    "name": name,
                    "version": self._next_version(),
                    "annotations": copy.deepcopy(annotations or {}),
                    "creationTimestamp": datetime.now(timezone.utc).isoformat(),
                },
                "spec": {"options": copy.deepcopy(options or {})},
                "status": {"state": None, "response": {}, "error": None},
            }
            if status:
                merge_patch(resource["status"], status)
            self._resources[(kind, name)] = resource
            self._publish(WatchEventType.ADDED, kind, resource)
            return copy.deepcopy(resource)

    async def patch(
        self,
        kind: str,
        name: str,
        *,
        status: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
        annotations: Optional[Dict[str, Any]] = None,
        version: Optional[str] = None,
    ) -> Dict[str, Any]:
        with self._lock:
            resource = self._require(kind, name)
            current = resource["metadata"]["version"]
            if version is not None and str(version) != current:
                raise VersionConflictError(
                    f"{kind} '{name}' was modified (expected version {version}, found {current})",
                    details={"kind": kind, "name": name, "expected": version, "found": current},
                )
            if status:
                merge_patch(resource.setdefault("status", {}), status)
            if options:
                merge_patch(resource.setdefault("spec", {}).setdefault("options", {}), options)
            if annotations:
                merge_patch(resource["metadata"].setdefault("annotations", {}), annotations)
            resource["metadata"]["version"] = self._next_version()
            self._publish(WatchEventType.MODIFIED, kind, resource)
            return copy.deepcopy(resource)

    async def delete(self, kind: str, name: str) -> None:
        with self._lock:
            resource = self._require(kind, name)
            del self._resources[(kind, name)]
            self._publish(WatchEventType.DELETED, kind, resource)

    def watch(self, kind: str, states: Optional[Iterable[str]] = None) -> _QueueSubscription:
        """
        Open a watch on `kind`, optionally restricted to subjects whose state is in `states`.
        Existing matches are replayed as ADDED first (list-then-watch).
        """
        sub = _QueueSubscription(self, kind, _state_values(states))
        with self._lock:
            for (k, _name), res in self._resources.items():
                if sub.matches(k, res):
                    sub.push(WatchEvent(type=WatchEventType.ADDED.value, object=copy.deepcopy(res)))
            self._subscriptions.append(sub)
        log.debug("watch opened", extra={"kind": kind, "selector": sub.selector})
        return sub
