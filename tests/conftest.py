"""
Shared fakes and fixtures for the broker tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from connectors.agent_http import LastOperation
from connectors.resource_store import InMemoryResourceStore
from domain.operations.errors import OperationError
from domain.operations.states import ResourceState, SubjectKind
from domain.operations.subject import format_timestamp
from lifecycle.audit import AuditEmitter
from lifecycle.backup_poller import BackupStatusPoller
from lifecycle.deployment_poller import DeploymentStatusPoller
from lifecycle.locks import LockManager
from lifecycle.restore_poller import RestoreStatusPoller
from lifecycle.retry import RetryConfig

T0 = datetime(2026, 1, 1, 10, 0, 0, tzinfo=timezone.utc)
LEASE_TTL_S = 3600.0
ABORT_TIMEOUT_S = 300.0
BROKER_IP = "10.0.0.1"


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeAgent:
    """
    Stands in for AgentClient. `state` is what the next last-operation call
    reports; `error` (if set) is raised instead.
    """

    def __init__(self) -> None:
        self.state = "processing"
        self.stage = "uploading"
        self.error: Optional[Exception] = None
        self.abort_error: Optional[Exception] = None
        self.logs_error: Optional[Exception] = None
        self.logs: List[Dict[str, Any]] = [{"msg": "backup done"}]
        self.calls: List[str] = []
        self.abort_calls: List[str] = []

    async def get_last_operation(self, ip: str, operation: str) -> LastOperation:
        self.calls.append(ip)
        if self.error is not None:
            raise self.error
        return LastOperation(state=self.state, stage=self.stage, snapshot_id="snap-1", updated_at=format_timestamp(T0))

    async def abort(self, ip: str, operation: str) -> None:
        self.abort_calls.append(ip)
        if self.abort_error is not None:
            raise self.abort_error

    async def get_logs(self, ip: str, operation: str) -> List[Dict[str, Any]]:
        if self.logs_error is not None:
            raise self.logs_error
        return list(self.logs)

    async def aclose(self) -> None:
        return None


class FakeScheduler:
    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.failures: List[Exception] = []

    async def schedule(self, subject_id: str, job_type: str, interval: str, data: Optional[Dict[str, Any]] = None):
        self.calls.append({"subject_id": subject_id, "job_type": job_type, "interval": interval, "data": data})
        if self.failures:
            raise self.failures.pop(0)
        return {"name": subject_id, "type": job_type, "interval": interval}

    async def get_schedule(self, subject_id: str, job_type: str) -> Dict[str, Any]:
        return {}

    async def cancel_schedule(self, subject_id: str, job_type: str) -> None:
        return None

    async def aclose(self) -> None:
        return None


class FakeDirector:
    def __init__(self) -> None:
        self.result: Dict[str, Any] = {"state": ResourceState.IN_PROGRESS.value, "description": "processing"}
        self.error: Optional[OperationError] = None
        self.calls: List[str] = []

    async def get_last_operation(self, instance_id: str, task_id: str) -> Dict[str, Any]:
        self.calls.append(task_id)
        if self.error is not None:
            raise self.error
        return dict(self.result, task_id=task_id)

    async def aclose(self) -> None:
        return None


class CountingLockManager(LockManager):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.releases: List[str] = []

    async def release(self, subject_id: str, resource_id: Optional[str] = None) -> bool:
        self.releases.append(subject_id)
        return await super().release(subject_id, resource_id=resource_id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryResourceStore()


@pytest.fixture
def locks(store, clock):
    return CountingLockManager(
        store,
        ttl_for=lambda operation: LEASE_TTL_S,
        unlock_retry=RetryConfig(max_attempts=2, min_delay_s=0.0),
        clock=clock,
    )


@pytest.fixture
def published():
    return []


@pytest.fixture
def audit(published):
    return AuditEmitter(publisher=lambda event_type, data: published.append((event_type, data)))


@pytest.fixture
def agent():
    return FakeAgent()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def director():
    return FakeDirector()


def _poller_kwargs(store, clock):
    return dict(
        store=store,
        poll_interval_s=60.0,
        broker_ip=BROKER_IP,
        poller_relaxation_s=5.0,
        clock=clock,
    )


@pytest.fixture
def backup_poller(store, locks, agent, audit, scheduler, clock):
    return BackupStatusPoller(
        agent=agent,
        locks=locks,
        audit=audit,
        abort_timeout_s=ABORT_TIMEOUT_S,
        scheduler=scheduler,
        backup_interval_for=lambda plan_id: "daily",
        reschedule_delay="3 minutes",
        requeue_retry=RetryConfig(max_attempts=3, min_delay_s=0.0),
        **_poller_kwargs(store, clock),
    )


@pytest.fixture
def restore_poller(store, locks, agent, audit, clock):
    return RestoreStatusPoller(
        agent=agent,
        locks=locks,
        audit=audit,
        abort_timeout_s=ABORT_TIMEOUT_S,
        **_poller_kwargs(store, clock),
    )


@pytest.fixture
def deployment_poller(store, locks, director, audit, clock):
    return DeploymentStatusPoller(
        director=director,
        locks=locks,
        audit=audit,
        **_poller_kwargs(store, clock),
    )


def backup_options(**overrides: Any) -> Dict[str, Any]:
    opts = {
        "instance_guid": "inst-1",
        "backup_guid": "bkp-1",
        "plan_id": "plan-small",
        "deployment": "service-fabrik-0001-inst-1",
        "agent_ip": "10.11.0.2",
        "started_at": format_timestamp(T0),
        "trigger": "on-demand",
    }
    opts.update(overrides)
    return {k: v for k, v in opts.items() if v is not None}


async def create_subject(store, locks, kind: str, name: str, options: Dict[str, Any], operation: str, state: str = "in_progress"):
    lease_target = options.get("instance_guid") or options.get("instance_id")
    if lease_target:
        await locks.acquire(lease_target, operation, locked_resource={"resourceId": name, "kind": kind})
    return await store.create(kind, name, options=options, status={"state": state, "response": {}})


async def create_backup(store, locks, name: str = "bkp-1", **overrides: Any):
    return await create_subject(store, locks, SubjectKind.BACKUP.value, name, backup_options(**overrides), "backup")


async def tick(poller, subject_id: str) -> None:
    """Run one poll tick for `subject_id`, registering it first if needed."""
    reg = poller.registry.get(subject_id) or poller.registry.register(subject_id)
    await poller.poll_status(subject_id, reg.token)


async def status_of(store, kind: str, name: str) -> Dict[str, Any]:
    return (await store.get(kind, name))["status"]
