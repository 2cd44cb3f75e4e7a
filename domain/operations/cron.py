# domain/operations/cron.py
from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from croniter import croniter

from .errors import SubjectValidationError

DAILY = "daily"

_LEADING_INT = re.compile(r"^\s*([0-9]+)")


def parse_reschedule_delay(value: Optional[str]) -> int:
    """
    "3 minutes" -> 3. Anything not expressed in minutes means no extra delay.
    """
    s = (value or "").strip().lower()
    if "minute" not in s:
        return 0
    m = _LEADING_INT.match(s)
    if not m:
        return 0
    return int(m.group(1))


def _hours_list(start_hour: int, every: int) -> List[int]:
    hours = [start_hour]
    h = start_hour
    while h + every < 24:
        h += every
        hours.append(h)
    h = start_hour
    while h - every >= 0:
        h -= every
        hours.append(h)
    # "7 hours" does not divide the day; still run at midnight
    if 24 % every != 0 and 0 not in hours:
        hours.append(0)
    return sorted(hours)


def cron_with_interval_after_minutes(
    interval: str,
    after_minutes: int = 0,
    now: Optional[datetime] = None,
) -> str:
    """
    Cron expression that repeats at `interval` ("daily" or "<n> hours"),
    anchored `after_minutes` from now.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    anchor = now + timedelta(minutes=int(after_minutes or 0))
    hr, mn = anchor.hour, anchor.minute

    spec = (interval or "").strip().lower()
    if spec == DAILY:
        expr = f"{mn} {hr} * * *"
    elif "hour" in spec:
        m = _LEADING_INT.match(spec)
        every = int(m.group(1)) if m else 0
        if not 0 < every <= 24:
            raise SubjectValidationError(
                "Input hours can be any number between 1 to 24 only",
                details={"interval": interval},
            )
        if every == 24:
            expr = f"{mn} {hr} * * *"
        else:
            hours = ",".join(str(h) for h in _hours_list(hr, every))
            expr = f"{mn} {hours} * * *"
    else:
        raise SubjectValidationError(
            "interval should be 'daily' or in 'x hours' format",
            details={"interval": interval},
        )

    if not croniter.is_valid(expr):
        raise SubjectValidationError(f"Computed invalid cron expression {expr!r}", details={"interval": interval})
    return expr
