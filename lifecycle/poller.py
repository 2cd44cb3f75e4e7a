# lifecycle/poller.py
#
# Watch-driven status pollers.
#
# The watch says "this subject is in a state worth polling".
# The registry makes sure there is exactly one timer per subject.
# The timer ticks get_status() until the state machine says it is done.
#
# Watches redeliver. Streams get recycled. Ticks run slow.
# None of that may ever produce a second timer or an overlapping tick.

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from connectors.resource_store import ResourceStore, WatchEvent
from domain.operations.errors import ErrorKind, OperationError, error_kind
from domain.operations.states import WatchEventType, state_filter
from domain.operations.subject import POLLER_ANNOTATION, Subject, format_timestamp, parse_timestamp
from lifecycle.log import emit

log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------

@dataclass
class PollerRegistration:
    subject_id: str
    token: str
    registered_ts: float
    task: Optional[asyncio.Task] = None
    active: bool = True
    busy: bool = False
    ticks: int = 0
    last_tick_ts: Optional[float] = None


class PollerRegistry:
    """
    subject_id -> PollerRegistration, owned by one StatusPoller.

    Invariant: at most one active registration per subject id.
    Mutated from watch handling and from tick completion, hence the lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, PollerRegistration] = {}

    def register(self, subject_id: str) -> Optional[PollerRegistration]:
        """New registration, or None if the subject already has an active one."""
        with self._lock:
            existing = self._entries.get(subject_id)
            if existing is not None and existing.active:
                return None
            reg = PollerRegistration(subject_id=subject_id, token=uuid.uuid4().hex, registered_ts=time.time())
            self._entries[subject_id] = reg
            return reg

    def get(self, subject_id: str) -> Optional[PollerRegistration]:
        with self._lock:
            return self._entries.get(subject_id)

    def is_current(self, subject_id: str, token: str) -> bool:
        with self._lock:
            reg = self._entries.get(subject_id)
            return reg is not None and reg.active and reg.token == token

    def clear(self, subject_id: str, token: str) -> Optional[PollerRegistration]:
        """
        Deactivate and drop the registration if `token` is the current one.
        Stale tokens and repeated calls return None and change nothing.
        """
        with self._lock:
            reg = self._entries.get(subject_id)
            if reg is None or not reg.active or reg.token != token:
                return None
            reg.active = False
            del self._entries[subject_id]
            return reg

    def begin_tick(self, subject_id: str, token: str) -> Optional[PollerRegistration]:
        """Single-flight gate: None if the token is stale or a tick is already running."""
        with self._lock:
            reg = self._entries.get(subject_id)
            if reg is None or not reg.active or reg.token != token:
                return None
            if reg.busy:
                return None
            reg.busy = True
            return reg

    def end_tick(self, reg: PollerRegistration) -> None:
        with self._lock:
            reg.busy = False
            reg.ticks += 1
            reg.last_tick_ts = time.time()

    def drain(self) -> List[PollerRegistration]:
        with self._lock:
            regs = list(self._entries.values())
            for reg in regs:
                reg.active = False
            self._entries.clear()
            return regs

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for r in self._entries.values() if r.active)

    def snapshot(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                {
                    "subject_id": r.subject_id,
                    "active": r.active,
                    "busy": r.busy,
                    "ticks": r.ticks,
                    "registered_ts": r.registered_ts,
                    "last_tick_ts": r.last_tick_ts,
                }
                for r in self._entries.values()
            ]


# -----------------------------------------------------------------------------
# Base poller
# -----------------------------------------------------------------------------

class StatusPoller:
    """
    Generic status poller. Subclasses set `kind` / `valid_states` and implement get_status().

    Lifecycle:
      start() -> watch loop task (re-subscribes every watch_refresh_interval_s)
      watch event (ADDED/MODIFIED, state in valid_states) -> handle_event() -> one timer per subject
      timer tick -> poll_status() -> get_status(subject, token)
      get_status decides terminal -> clear_poller(subject_id, token)
      stop() -> cancel the watch loop and every timer
    """

    kind: str = ""
    valid_states: Tuple[str, ...] = ()
    valid_events: Tuple[str, ...] = (WatchEventType.ADDED.value, WatchEventType.MODIFIED.value)

    def __init__(
        self,
        *,
        store: ResourceStore,
        poll_interval_s: float,
        watch_refresh_interval_s: float = 300.0,
        watch_error_delay_s: float = 5.0,
        broker_ip: str = "127.0.0.1",
        poller_relaxation_s: float = 5.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not self.kind:
            raise ValueError(f"{type(self).__name__} must define 'kind'")
        if not self.valid_states:
            raise ValueError(f"{type(self).__name__} must define 'valid_states'")
        if poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be positive")

        self._store = store
        self.poll_interval_s = float(poll_interval_s)
        self.watch_refresh_interval_s = float(watch_refresh_interval_s)
        self.watch_error_delay_s = float(watch_error_delay_s)
        self.broker_ip = broker_ip
        self.poller_relaxation_s = float(poller_relaxation_s)
        self._clock = clock

        self.registry = PollerRegistry()
        self._watch_task: Optional[asyncio.Task] = None
        self.watch_cycles = 0

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def selector(self) -> str:
        return state_filter(self.valid_states)

    # -------------------------------------------------------------------------
    # Strategy
    # -------------------------------------------------------------------------

    async def get_status(self, subject: Subject, token: str) -> None:
        raise NotImplementedError(f"{self.name}.get_status")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self._watch_task is not None and not self._watch_task.done():
            log.warning(f"{self.name} already running; skip start")
            return
        self._watch_task = asyncio.create_task(self._watch_loop(), name=f"watch:{self.kind}")
        emit(
            "POLLER_STARTED",
            component=self.name,
            kind=self.kind,
            selector=self.selector,
            poll_interval_s=self.poll_interval_s,
            watch_refresh_interval_s=self.watch_refresh_interval_s,
        )

    async def stop(self) -> None:
        """Cancel the watch loop and every timer. Safe to call when not started."""
        tasks: List[asyncio.Task] = []
        if self._watch_task is not None:
            self._watch_task.cancel()
            tasks.append(self._watch_task)
            self._watch_task = None

        for reg in self.registry.drain():
            if reg.task is not None and not reg.task.done():
                reg.task.cancel()
                tasks.append(reg.task)

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        emit("POLLER_STOPPED", component=self.name, kind=self.kind)

    @property
    def running(self) -> bool:
        return self._watch_task is not None and not self._watch_task.done()

    async def _watch_loop(self) -> None:
        """
        One subscription per cycle. The subscription is closed after
        watch_refresh_interval_s and a fresh one opened; the new one replays
        current matches, which handle_event() de-duplicates via the registry.
        """
        loop = asyncio.get_running_loop()
        while True:
            try:
                sub = self._store.watch(self.kind, self.valid_states)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.error(f"{self.name}: failed to register watch on {self.kind}", exc_info=True)
                await asyncio.sleep(self.watch_error_delay_s)
                continue

            self.watch_cycles += 1
            log.debug(f"{self.name}: watching {self.kind} with '{self.selector}'")
            deadline = loop.time() + self.watch_refresh_interval_s
            failed = False
            try:
                while True:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        break
                    event = await sub.next_event(timeout=remaining)
                    if event is None:
                        break
                    self.handle_event(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                failed = True
                log.error(f"{self.name}: watch on {self.kind} failed", exc_info=True)
            finally:
                sub.close()

            if failed:
                await asyncio.sleep(self.watch_error_delay_s)
            else:
                log.debug(f"{self.name}: refreshing watch after {self.watch_refresh_interval_s}s")

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def handle_event(self, event: WatchEvent) -> Optional[str]:
        """
        Single entry point for watch events. Returns the new registration token,
        or None when the event was ignored or the subject is already polled.
        """
        if event.type not in self.valid_events:
            return None
        if event.state not in self.valid_states:
            return None
        subject_id = event.name
        if not subject_id:
            return None

        reg = self.registry.register(subject_id)
        if reg is None:
            log.debug(f"{self.name}: {subject_id} already has an active poller")
            return None

        reg.task = asyncio.get_running_loop().create_task(
            self._run_timer(subject_id, reg.token),
            name=f"poller:{self.kind}:{subject_id}",
        )
        emit("POLLER_REGISTERED", component=self.name, subject_id=subject_id, event_type=event.type, state=event.state)
        return reg.token

    async def _run_timer(self, subject_id: str, token: str) -> None:
        while self.registry.is_current(subject_id, token):
            await asyncio.sleep(self.poll_interval_s)
            if not self.registry.is_current(subject_id, token):
                break
            await self.poll_status(subject_id, token)

    def clear_poller(self, subject_id: str, token: str) -> bool:
        """
        Stop polling `subject_id` if `token` is still the active registration.
        Idempotent, and safe from inside the tick being cleared: the running
        timer is never cancelled from under itself, it just sees it is no
        longer current and exits.
        """
        reg = self.registry.clear(subject_id, token)
        if reg is None:
            return False

        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if reg.task is not None and reg.task is not current and not reg.task.done():
            reg.task.cancel()

        emit("POLLER_CLEARED", component=self.name, subject_id=subject_id, ticks=reg.ticks)
        return True

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    async def poll_status(self, subject_id: str, token: str) -> None:
        """
        One tick for one subject: re-read, re-check the state filter, claim, get_status().
        Overlapping ticks for the same subject are skipped, never queued.
        Anything unexpected that escapes get_status() clears this subject's poller.
        """
        reg = self.registry.begin_tick(subject_id, token)
        if reg is None:
            log.debug(f"{self.name}: skipping tick for {subject_id} (stale token or tick in flight)")
            return

        try:
            try:
                resource = await self._store.get(self.kind, subject_id)
            except OperationError as e:
                if error_kind(e) is ErrorKind.NOT_FOUND:
                    log.info(f"{self.name}: {subject_id} no longer exists, clearing poller")
                    self.clear_poller(subject_id, token)
                    return
                raise

            if (resource.get("status") or {}).get("state") not in self.valid_states:
                log.debug(f"{self.name}: {subject_id} left {self.selector}, clearing poller")
                self.clear_poller(subject_id, token)
                return

            claimed = await self._claim(resource)
            if claimed is None:
                return

            await self.get_status(Subject.from_resource(claimed), token)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Subject and lease stay as they are: the next watch refresh replays
            # the subject and registers it again.
            log.error(
                f"{self.name}: error while polling {self.kind} {subject_id}, clearing poller until next watch refresh",
                exc_info=True,
                extra={"subject_id": subject_id, "retry_after_s": self.watch_refresh_interval_s},
            )
            emit(
                "POLLER_TICK_FAILED",
                component=self.name,
                subject_id=subject_id,
                error=str(e),
                retry_after_s=self.watch_refresh_interval_s,
            )
            self.clear_poller(subject_id, token)
        finally:
            self.registry.end_tick(reg)

    def _claim_holder(self, resource: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        raw = ((resource.get("metadata") or {}).get("annotations") or {}).get(POLLER_ANNOTATION)
        if isinstance(raw, dict):
            return raw
        if isinstance(raw, str) and raw:
            try:
                parsed = json.loads(raw)
            except ValueError:
                return None
            return parsed if isinstance(parsed, dict) else None
        return None

    async def _claim(self, resource: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Multi-broker guard: stamp this broker on the subject before working on it.
        Returns the updated resource, or None when another broker holds a fresh
        claim or won the race for this version.
        """
        metadata = resource.get("metadata") or {}
        subject_id = str(metadata.get("name") or "")
        now = self._clock()

        holder = self._claim_holder(resource)
        if holder and holder.get("ip") != self.broker_ip:
            claimed_at = parse_timestamp(holder.get("lockTime"))
            if claimed_at is not None:
                age = (now - claimed_at).total_seconds()
                if age < self.poll_interval_s + self.poller_relaxation_s:
                    log.debug(f"{self.name}: broker {holder.get('ip')} is already polling {subject_id}")
                    return None

        annotation = json.dumps({"ip": self.broker_ip, "lockTime": format_timestamp(now)})
        try:
            return await self._store.patch(
                self.kind,
                subject_id,
                annotations={POLLER_ANNOTATION: annotation},
                version=metadata.get("version"),
            )
        except OperationError as e:
            if error_kind(e) is ErrorKind.CONFLICT:
                log.debug(f"{self.name}: could not claim {subject_id}, probably picked by another broker")
                return None
            raise
