"""
Pure domain rules: timeout escalation, retry cron, subject decoding, errors.
"""

from datetime import datetime, timedelta, timezone

import pytest

from domain.operations.cron import cron_with_interval_after_minutes, parse_reschedule_delay
from domain.operations.errors import (
    AlreadyLockedError,
    ErrorKind,
    SubjectValidationError,
    build_error_json,
    error_kind,
)
from domain.operations.policy import OperationTimeoutPolicy
from domain.operations.states import is_finished, state_filter
from domain.operations.subject import BackupDetails, DeploymentDetails, Subject, lock_subject_id
from domain.operations.timeout import TimeoutPhase, evaluate_timeout

T = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
POLICY = OperationTimeoutPolicy(max_duration_seconds=100.0, abort_timeout_seconds=30.0)


# ---------------------------------------------------------------------------
# Timeout
# ---------------------------------------------------------------------------

def _phase(now_offset, abort_offset=None):
    return evaluate_timeout(
        now=T + timedelta(seconds=now_offset),
        started_at=T,
        abort_started_at=None if abort_offset is None else T + timedelta(seconds=abort_offset),
        policy=POLICY,
    ).phase


def test_timeout_phases():
    assert _phase(50) is TimeoutPhase.WITHIN_LIMIT
    assert _phase(100) is TimeoutPhase.WITHIN_LIMIT
    assert _phase(101) is TimeoutPhase.START_ABORT
    assert _phase(120, abort_offset=101) is TimeoutPhase.ABORTING
    assert _phase(131, abort_offset=101) is TimeoutPhase.FORCE_ABORTED


def test_abort_marker_decides_even_within_limit():
    # marker set by an earlier, shorter policy
    assert _phase(10, abort_offset=5) is TimeoutPhase.ABORTING


# ---------------------------------------------------------------------------
# Cron
# ---------------------------------------------------------------------------

NOW = datetime(2026, 1, 1, 10, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "value,expected",
    [("3 minutes", 3), ("10 Minutes", 10), ("2 hours", 0), ("", 0), (None, 0)],
)
def test_parse_reschedule_delay(value, expected):
    assert parse_reschedule_delay(value) == expected


def test_daily_cron():
    assert cron_with_interval_after_minutes("daily", 3, now=NOW) == "3 10 * * *"


def test_hourly_cron_steps_both_ways():
    assert cron_with_interval_after_minutes("4 hours", 3, now=NOW) == "3 2,6,10,14,18,22 * * *"


def test_uneven_hours_include_midnight():
    assert cron_with_interval_after_minutes("7 hours", 0, now=NOW) == "0 0,3,10,17 * * *"


def test_24_hours_is_daily():
    assert cron_with_interval_after_minutes("24 hours", 0, now=NOW) == "0 10 * * *"


@pytest.mark.parametrize("interval", ["weekly", "30 hours", "0 hours"])
def test_bad_intervals_raise(interval):
    with pytest.raises(SubjectValidationError):
        cron_with_interval_after_minutes(interval, 0, now=NOW)


def test_delay_wraps_past_midnight():
    late = datetime(2026, 1, 1, 23, 58, tzinfo=timezone.utc)
    assert cron_with_interval_after_minutes("daily", 3, now=late) == "1 0 * * *"


# ---------------------------------------------------------------------------
# Subjects
# ---------------------------------------------------------------------------

def test_subject_decodes_json_string_payloads():
    subject = Subject.from_resource(
        {
            "kind": "Backup",
            "metadata": {"name": "bkp-1", "version": "7"},
            "spec": {"options": '{"instance_guid": "inst-1", "plan_id": "p"}'},
            "status": {"state": "in_progress", "response": '{"agent_ip": "10.0.0.5"}'},
        }
    )
    assert subject.options == {"instance_guid": "inst-1", "plan_id": "p"}
    assert subject.merged_options()["agent_ip"] == "10.0.0.5"
    assert lock_subject_id(subject) == "inst-1"


def test_backup_details_report_every_missing_field():
    subject = Subject(id="bkp-1", kind="Backup", state="in_progress", version="1", options={"instance_guid": "i"})
    with pytest.raises(SubjectValidationError) as exc:
        BackupDetails.from_subject(subject)
    assert set(exc.value.details["missing"]) == {"backup_guid", "plan_id", "started_at", "deployment", "agent_ip"}


def test_deployment_details_reject_backup_type():
    subject = Subject(id="d", kind="Deployment", state="in_progress", version="1", options={"type": "backup", "task_id": "t"})
    with pytest.raises(SubjectValidationError):
        DeploymentDetails.from_subject(subject)


# ---------------------------------------------------------------------------
# States and errors
# ---------------------------------------------------------------------------

def test_state_helpers():
    assert state_filter(["in_progress", "aborting"]) == "state in (in_progress,aborting)"
    assert is_finished("delete_failed")
    assert not is_finished("aborting")
    assert not is_finished(None)


def test_error_payloads():
    err = AlreadyLockedError("inst-1", "backup", "2026-01-01T00:00:00+00:00")
    payload = build_error_json(err)
    assert payload["code"] == "ERR_DEPLOYMENT_LOCKED"
    assert payload["kind"] == "already_locked"
    assert payload["details"]["operation"] == "backup"

    foreign = build_error_json(ValueError("bad"))
    assert foreign["kind"] == "unexpected"
    assert error_kind(ValueError()) is ErrorKind.UNEXPECTED
