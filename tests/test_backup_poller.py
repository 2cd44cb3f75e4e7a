"""
Backup state machine: agent outcomes, timeout escalation, forced abort,
lease release and scheduled-retry requeue.
"""

from datetime import timedelta

import pytest

from conftest import (
    ABORT_TIMEOUT_S,
    LEASE_TTL_S,
    T0,
    create_backup,
    status_of,
    tick,
)
from connectors.scheduler_http import SCHEDULED_BACKUP_JOB
from domain.operations.errors import (
    AgentUnreachableError,
    DependencyNotFoundError,
    SchedulerError,
    VersionConflictError,
)
from domain.operations.subject import ABORT_MARKER_KEY, format_timestamp

BACKUP = "Backup"


@pytest.mark.asyncio
async def test_within_limit_patches_progress_only(backup_poller, store, locks, agent, clock):
    await create_backup(store, locks)
    clock.set(T0 + timedelta(seconds=120))

    await tick(backup_poller, "bkp-1")

    status = await status_of(store, BACKUP, "bkp-1")
    assert status["state"] == "in_progress"
    assert status["response"]["agent_state"] == "processing"
    assert status["response"]["stage"] == "uploading"
    assert ABORT_MARKER_KEY not in status["response"]
    assert agent.abort_calls == []
    assert locks.releases == []
    assert backup_poller.registry.active_count() == 1


@pytest.mark.asyncio
async def test_agent_success_finalizes_and_releases_once(backup_poller, store, locks, agent, scheduler, audit, published):
    await create_backup(store, locks)
    agent.state = "succeeded"

    await tick(backup_poller, "bkp-1")

    status = await status_of(store, BACKUP, "bkp-1")
    assert status["state"] == "succeeded"
    assert status["response"]["snapshot_id"] == "snap-1"
    assert status["response"]["logs"] == [{"msg": "backup done"}]
    assert locks.releases == ["inst-1"]
    assert (await locks.status("inst-1")).locked is False
    assert backup_poller.registry.get("bkp-1") is None
    assert scheduler.calls == []

    events = audit.recent()
    assert [e.type for e in events] == ["backup.finished"]
    assert events[0].payload["state"] == "succeeded"
    assert published[0][0] == "backup.finished"


@pytest.mark.asyncio
async def test_logs_failure_does_not_block_finalize(backup_poller, store, locks, agent):
    await create_backup(store, locks)
    agent.state = "failed"
    agent.logs_error = AgentUnreachableError("logs endpoint down")

    await tick(backup_poller, "bkp-1")

    status = await status_of(store, BACKUP, "bkp-1")
    assert status["state"] == "failed"
    assert "logs" not in status["response"]
    assert locks.releases == ["inst-1"]


@pytest.mark.asyncio
async def test_timeout_escalates_to_aborting(backup_poller, store, locks, agent, clock):
    await create_backup(store, locks)
    abort_at = T0 + timedelta(seconds=LEASE_TTL_S + 1)
    clock.set(abort_at)

    await tick(backup_poller, "bkp-1")

    status = await status_of(store, BACKUP, "bkp-1")
    assert status["state"] == "aborting"
    assert status["response"][ABORT_MARKER_KEY] == format_timestamp(abort_at)
    assert agent.abort_calls == ["10.11.0.2"]
    assert locks.releases == []
    assert backup_poller.registry.active_count() == 1


@pytest.mark.asyncio
async def test_abort_marker_is_never_rewritten_while_aborting(backup_poller, store, locks, agent, clock):
    await create_backup(store, locks)
    abort_at = T0 + timedelta(seconds=LEASE_TTL_S + 1)
    clock.set(abort_at)
    await tick(backup_poller, "bkp-1")

    for seconds in (60, 120, ABORT_TIMEOUT_S - 1):
        clock.set(abort_at + timedelta(seconds=seconds))
        await tick(backup_poller, "bkp-1")
        status = await status_of(store, BACKUP, "bkp-1")
        assert status["state"] == "aborting"
        assert status["response"][ABORT_MARKER_KEY] == format_timestamp(abort_at)

    assert len(agent.abort_calls) == 1
    assert locks.releases == []


@pytest.mark.asyncio
async def test_forced_abort_after_abort_timeout(backup_poller, store, locks, agent, clock, audit):
    await create_backup(store, locks)
    clock.set(T0 + timedelta(seconds=LEASE_TTL_S + 1))
    await tick(backup_poller, "bkp-1")

    clock.set(T0 + timedelta(seconds=LEASE_TTL_S + 1 + ABORT_TIMEOUT_S + 1))
    await tick(backup_poller, "bkp-1")

    status = await status_of(store, BACKUP, "bkp-1")
    assert status["state"] == "aborted"
    assert locks.releases == ["inst-1"]
    assert backup_poller.registry.get("bkp-1") is None
    assert [e.payload["state"] for e in audit.recent()] == ["aborted"]


@pytest.mark.asyncio
async def test_agent_confirms_abort(backup_poller, store, locks, agent, clock):
    await create_backup(store, locks)
    clock.set(T0 + timedelta(seconds=LEASE_TTL_S + 1))
    await tick(backup_poller, "bkp-1")

    agent.state = "aborted"
    clock.advance(30)
    await tick(backup_poller, "bkp-1")

    status = await status_of(store, BACKUP, "bkp-1")
    assert status["state"] == "aborted"
    assert locks.releases == ["inst-1"]


@pytest.mark.asyncio
async def test_unreachable_agent_still_escalates(backup_poller, store, locks, agent, clock):
    await create_backup(store, locks)
    agent.error = AgentUnreachableError("connection refused")
    agent.abort_error = AgentUnreachableError("connection refused")

    clock.set(T0 + timedelta(seconds=LEASE_TTL_S + 1))
    await tick(backup_poller, "bkp-1")
    assert (await status_of(store, BACKUP, "bkp-1"))["state"] == "aborting"

    clock.advance(ABORT_TIMEOUT_S + 1)
    await tick(backup_poller, "bkp-1")
    assert (await status_of(store, BACKUP, "bkp-1"))["state"] == "aborted"
    assert locks.releases == ["inst-1"]


@pytest.mark.asyncio
async def test_deployment_gone_marks_failed(backup_poller, store, locks, agent):
    await create_backup(store, locks)
    agent.error = DependencyNotFoundError("no such deployment")

    await tick(backup_poller, "bkp-1")

    status = await status_of(store, BACKUP, "bkp-1")
    assert status["state"] == "failed"
    assert status["error"]["code"] == "ERR_SERVICE_INSTANCE_NOT_FOUND"
    assert locks.releases == ["inst-1"]


@pytest.mark.asyncio
async def test_missing_required_field_fails_subject(backup_poller, store, locks, agent, audit):
    await create_backup(store, locks, agent_ip=None)

    await tick(backup_poller, "bkp-1")

    status = await status_of(store, BACKUP, "bkp-1")
    assert status["state"] == "failed"
    assert status["error"]["kind"] == "validation"
    assert "agent_ip" in status["error"]["message"]
    assert agent.calls == []
    assert locks.releases == ["inst-1"]
    assert backup_poller.registry.get("bkp-1") is None
    assert len(audit.recent()) == 1


@pytest.mark.asyncio
async def test_scheduled_failure_is_requeued_once(backup_poller, store, locks, agent, scheduler, clock):
    await create_backup(store, locks, trigger="scheduled")
    agent.state = "failed"

    await tick(backup_poller, "bkp-1")

    assert (await status_of(store, BACKUP, "bkp-1"))["state"] == "failed"
    assert len(scheduler.calls) == 1
    call = scheduler.calls[0]
    assert call["subject_id"] == "inst-1"
    assert call["job_type"] == SCHEDULED_BACKUP_JOB
    # daily interval, 3 minutes after 10:00
    assert call["interval"] == "3 10 * * *"


@pytest.mark.asyncio
async def test_requeue_retries_transient_scheduler_errors(backup_poller, store, locks, agent, scheduler):
    await create_backup(store, locks, trigger="scheduled")
    agent.state = "failed"
    scheduler.failures = [SchedulerError("busy"), SchedulerError("busy")]

    await tick(backup_poller, "bkp-1")

    assert len(scheduler.calls) == 3
    assert (await status_of(store, BACKUP, "bkp-1"))["state"] == "failed"


@pytest.mark.asyncio
async def test_requeue_failure_is_not_propagated(backup_poller, store, locks, agent, scheduler):
    await create_backup(store, locks, trigger="scheduled")
    agent.state = "failed"
    scheduler.failures = [SchedulerError("down")] * 5

    await tick(backup_poller, "bkp-1")

    assert len(scheduler.calls) == 3
    assert (await status_of(store, BACKUP, "bkp-1"))["state"] == "failed"
    assert locks.releases == ["inst-1"]


@pytest.mark.asyncio
async def test_on_demand_failure_is_not_requeued(backup_poller, store, locks, agent, scheduler):
    await create_backup(store, locks)
    agent.state = "failed"

    await tick(backup_poller, "bkp-1")

    assert scheduler.calls == []


@pytest.mark.asyncio
async def test_scheduled_success_is_not_requeued(backup_poller, store, locks, agent, scheduler):
    await create_backup(store, locks, trigger="scheduled")
    agent.state = "succeeded"

    await tick(backup_poller, "bkp-1")

    assert scheduler.calls == []


@pytest.mark.asyncio
async def test_lease_released_when_final_patch_fails(backup_poller, store, locks, agent, monkeypatch):
    await create_backup(store, locks)
    agent.state = "succeeded"
    original_patch = store.patch

    async def failing_patch(kind, name, **kwargs):
        status = kwargs.get("status") or {}
        if status.get("state") == "succeeded":
            raise RuntimeError("store went away")
        return await original_patch(kind, name, **kwargs)

    monkeypatch.setattr(store, "patch", failing_patch)

    await tick(backup_poller, "bkp-1")

    assert locks.releases == ["inst-1"]
    assert backup_poller.registry.get("bkp-1") is None


def _conflict_on_next_status_patch(store, monkeypatch):
    """The next versioned status patch loses the race once."""
    original_patch = store.patch
    conflicts = [VersionConflictError("Backup 'bkp-1' was modified")]

    async def racing_patch(kind, name, **kwargs):
        if conflicts and kwargs.get("status") is not None and kwargs.get("version") is not None:
            raise conflicts.pop()
        return await original_patch(kind, name, **kwargs)

    monkeypatch.setattr(store, "patch", racing_patch)
    return conflicts


@pytest.mark.asyncio
async def test_progress_patch_conflict_waits_for_next_tick(backup_poller, store, locks, agent, clock, monkeypatch):
    await create_backup(store, locks)
    conflicts = _conflict_on_next_status_patch(store, monkeypatch)
    clock.advance(60)

    await tick(backup_poller, "bkp-1")

    assert conflicts == []
    status = await status_of(store, BACKUP, "bkp-1")
    assert status["state"] == "in_progress"
    assert status.get("error") is None
    assert "stage" not in status["response"]
    assert backup_poller.registry.active_count() == 1
    assert locks.releases == []

    await tick(backup_poller, "bkp-1")
    assert (await status_of(store, BACKUP, "bkp-1"))["response"]["stage"] == "uploading"


@pytest.mark.asyncio
async def test_abort_start_conflict_sends_abort_once(backup_poller, store, locks, agent, clock, monkeypatch):
    await create_backup(store, locks)
    conflicts = _conflict_on_next_status_patch(store, monkeypatch)
    first_try = T0 + timedelta(seconds=LEASE_TTL_S + 1)
    clock.set(first_try)

    await tick(backup_poller, "bkp-1")

    assert conflicts == []
    status = await status_of(store, BACKUP, "bkp-1")
    assert status["state"] == "in_progress"
    assert ABORT_MARKER_KEY not in status["response"]
    assert agent.abort_calls == []
    assert backup_poller.registry.active_count() == 1

    clock.advance(60)
    await tick(backup_poller, "bkp-1")

    status = await status_of(store, BACKUP, "bkp-1")
    assert status["state"] == "aborting"
    assert status["response"][ABORT_MARKER_KEY] == format_timestamp(first_try + timedelta(seconds=60))
    assert agent.abort_calls == ["10.11.0.2"]
    assert locks.releases == []


@pytest.mark.asyncio
async def test_forced_abort_leaves_lease_taken_by_next_operation(backup_poller, store, locks, agent, clock):
    await create_backup(store, locks)
    clock.set(T0 + timedelta(seconds=LEASE_TTL_S + 1))
    await tick(backup_poller, "bkp-1")
    assert (await status_of(store, BACKUP, "bkp-1"))["state"] == "aborting"

    # the backup's lease has expired by now, a restore takes the instance
    await locks.acquire("inst-1", "restore", locked_resource={"resourceId": "rst-1"})

    clock.advance(ABORT_TIMEOUT_S + 1)
    await tick(backup_poller, "bkp-1")

    assert (await status_of(store, BACKUP, "bkp-1"))["state"] == "aborted"
    assert locks.releases == ["inst-1"]
    lease = await locks.status("inst-1")
    assert lease.locked is True
    assert lease.details.operation == "restore"
    assert lease.details.resource_id == "rst-1"
