# runtime.py
#
# Wires one broker process: store, lease manager, clients, pollers.
# app.py owns exactly one BrokerRuntime (on app.state.runtime).

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from connectors.agent_http import AgentClient
from connectors.director_http import DirectorClient
from connectors.resource_store import InMemoryResourceStore, ResourceStore
from connectors.scheduler_http import SchedulerClient
from lifecycle.audit import AuditEmitter
from lifecycle.backup_poller import BackupStatusPoller
from lifecycle.deployment_poller import DeploymentStatusPoller
from lifecycle.locks import LockManager
from lifecycle.log import emit
from lifecycle.operations import OperationStarter
from lifecycle.poller import StatusPoller
from lifecycle.restore_poller import RestoreStatusPoller
from lifecycle.retry import RetryConfig
from settings import BrokerSettings

log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BrokerRuntime:
    def __init__(
        self,
        settings: Optional[BrokerSettings] = None,
        *,
        store: Optional[ResourceStore] = None,
        agent: Optional[AgentClient] = None,
        director: Optional[DirectorClient] = None,
        scheduler: Optional[SchedulerClient] = None,
        audit: Optional[AuditEmitter] = None,
        locks: Optional[LockManager] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings or BrokerSettings.from_env()
        s = self.settings

        # Clients handed in by the caller are closed by the caller.
        self._owned: List[Any] = []

        self.store: ResourceStore = store if store is not None else InMemoryResourceStore()
        if agent is None:
            agent = AgentClient(
                port=s.agent_port,
                username=s.agent_username,
                password=s.agent_password,
                timeout_s=s.agent_timeout_s,
            )
            self._owned.append(agent)
        if director is None:
            director = DirectorClient(s.director_url, timeout_s=s.agent_timeout_s)
            self._owned.append(director)
        if scheduler is None:
            scheduler = SchedulerClient(s.scheduler_url, timeout_s=s.agent_timeout_s)
            self._owned.append(scheduler)

        self.agent = agent
        self.director = director
        self.scheduler = scheduler
        self.audit = audit or AuditEmitter()
        self.locks = locks or LockManager(
            self.store,
            ttl_for=s.lock_ttl_for,
            unlock_retry=RetryConfig(max_attempts=s.unlock_max_attempts, min_delay_s=s.unlock_retry_delay_s),
            clock=clock,
        )
        self.starter = OperationStarter(self.store, self.locks, clock=clock)

        common: Dict[str, Any] = dict(
            store=self.store,
            watch_refresh_interval_s=s.watch_refresh_interval_s,
            watch_error_delay_s=s.watch_error_delay_s,
            broker_ip=s.broker_ip,
            poller_relaxation_s=s.poller_relaxation_s,
            clock=clock,
        )
        self.backup_poller = BackupStatusPoller(
            agent=self.agent,
            locks=self.locks,
            audit=self.audit,
            abort_timeout_s=s.abort_timeout_s,
            scheduler=self.scheduler,
            backup_interval_for=s.backup_interval_for,
            reschedule_delay=s.reschedule_delay,
            requeue_retry=RetryConfig(max_attempts=s.requeue_max_attempts, min_delay_s=s.requeue_min_delay_s),
            poll_interval_s=s.poll_interval_s,
            **common,
        )
        self.restore_poller = RestoreStatusPoller(
            agent=self.agent,
            locks=self.locks,
            audit=self.audit,
            abort_timeout_s=s.abort_timeout_s,
            poll_interval_s=s.poll_interval_s,
            **common,
        )
        self.deployment_poller = DeploymentStatusPoller(
            director=self.director,
            locks=self.locks,
            audit=self.audit,
            poll_interval_s=s.deployment_poll_interval_s,
            **common,
        )
        self.pollers: List[StatusPoller] = [self.backup_poller, self.restore_poller, self.deployment_poller]
        self.started = False

    async def start(self) -> None:
        if self.started:
            return
        for p in self.pollers:
            await p.start()
        self.started = True
        emit("BROKER_STARTED", component="runtime", broker_ip=self.settings.broker_ip, pollers=[p.name for p in self.pollers])

    async def stop(self) -> None:
        for p in self.pollers:
            try:
                await p.stop()
            except Exception:
                log.error(f"Failed to stop {p.name}", exc_info=True)
        for client in self._owned:
            try:
                await client.aclose()
            except Exception:
                log.warning(f"Failed to close {type(client).__name__}", exc_info=True)
        self._owned.clear()
        self.started = False
        emit("BROKER_STOPPED", component="runtime")

    def active_pollers(self) -> int:
        return sum(p.registry.active_count() for p in self.pollers)

    def poller_snapshot(self) -> Dict[str, Any]:
        return {
            p.kind: {
                "poller": p.name,
                "running": p.running,
                "selector": p.selector,
                "poll_interval_s": p.poll_interval_s,
                "watch_cycles": p.watch_cycles,
                "active": p.registry.active_count(),
                "subjects": p.registry.snapshot(),
            }
            for p in self.pollers
        }
