# domain/operations/timeout.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from .policy import OperationTimeoutPolicy


class TimeoutPhase(str, Enum):
    WITHIN_LIMIT = "within_limit"
    START_ABORT = "start_abort"
    ABORTING = "aborting"
    FORCE_ABORTED = "force_aborted"


@dataclass(frozen=True)
class TimeoutDecision:
    phase: TimeoutPhase
    elapsed_seconds: float
    abort_elapsed_seconds: Optional[float] = None


def evaluate_timeout(
    *,
    now: datetime,
    started_at: datetime,
    abort_started_at: Optional[datetime],
    policy: OperationTimeoutPolicy,
) -> TimeoutDecision:
    """
    Pure domain logic for a non-terminal operation. No I/O.

    Rules:
      - An abort marker, once present, decides alone: the operation stays
        ABORTING until abort_timeout_seconds have passed, then FORCE_ABORTED.
      - Without a marker: elapsed <= max_duration => WITHIN_LIMIT,
        otherwise START_ABORT (caller sets the marker to `now`).
    """
    elapsed = (now - started_at).total_seconds()

    if abort_started_at is not None:
        abort_elapsed = (now - abort_started_at).total_seconds()
        if abort_elapsed < policy.abort_timeout_seconds:
            return TimeoutDecision(TimeoutPhase.ABORTING, elapsed, abort_elapsed)
        return TimeoutDecision(TimeoutPhase.FORCE_ABORTED, elapsed, abort_elapsed)

    if elapsed <= policy.max_duration_seconds:
        return TimeoutDecision(TimeoutPhase.WITHIN_LIMIT, elapsed)

    return TimeoutDecision(TimeoutPhase.START_ABORT, elapsed)
