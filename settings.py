# settings.py
#
# Central tunables for the operations broker.
# Everything is read from the environment once, at import time, and bundled
# into BrokerSettings so the pollers never reach for os.getenv themselves.

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Dict, Optional


# -----------------------------
# Tunables (seconds unless noted)
# -----------------------------
POLL_INTERVAL_S = float(os.getenv("POLL_INTERVAL_S", "60"))
DEPLOYMENT_POLL_INTERVAL_S = float(os.getenv("DEPLOYMENT_POLL_INTERVAL_S", "30"))

# Watch connections are recycled after this long. Keep it larger than the poll interval.
WATCH_REFRESH_INTERVAL_S = float(os.getenv("WATCH_REFRESH_INTERVAL_S", "300"))
WATCH_ERROR_DELAY_S = float(os.getenv("WATCH_ERROR_DELAY_S", "5"))

ABORT_TIMEOUT_S = float(os.getenv("ABORT_TIMEOUT_S", "300"))

# Same format the scheduler config uses: "<n> minutes"
RESCHEDULE_DELAY = os.getenv("RESCHEDULE_DELAY", "3 minutes")

LOCK_TTL_BACKUP_S = float(os.getenv("LOCK_TTL_BACKUP_S", "86400"))
LOCK_TTL_RESTORE_S = float(os.getenv("LOCK_TTL_RESTORE_S", "86400"))
LOCK_TTL_DEFAULT_S = float(os.getenv("LOCK_TTL_DEFAULT_S", "86400"))

REQUEUE_MAX_ATTEMPTS = int(os.getenv("REQUEUE_MAX_ATTEMPTS", "3"))
REQUEUE_MIN_DELAY_S = float(os.getenv("REQUEUE_MIN_DELAY_S", "0.5"))

UNLOCK_MAX_ATTEMPTS = int(os.getenv("UNLOCK_MAX_ATTEMPTS", "5"))
UNLOCK_RETRY_DELAY_S = float(os.getenv("UNLOCK_RETRY_DELAY_S", "1"))

# Grace added on top of the poll interval before another broker may steal a subject.
POLLER_RELAXATION_S = float(os.getenv("POLLER_RELAXATION_S", "5"))

BROKER_IP = os.getenv("BROKER_IP", "127.0.0.1")

AGENT_PORT = int(os.getenv("AGENT_PORT", "2718"))
AGENT_USERNAME = os.getenv("AGENT_USERNAME", "admin")
AGENT_PASSWORD = os.getenv("AGENT_PASSWORD", "admin")
AGENT_TIMEOUT_S = float(os.getenv("AGENT_TIMEOUT_S", "30"))

SCHEDULER_URL = os.getenv("SCHEDULER_URL", "http://127.0.0.1:9293")
DIRECTOR_URL = os.getenv("DIRECTOR_URL", "http://127.0.0.1:25555")


def _plan_backup_intervals(raw: Optional[str]) -> Dict[str, str]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {}
    if not isinstance(parsed, dict):
        return {}
    return {str(k): str(v) for k, v in parsed.items() if v}


PLAN_BACKUP_INTERVALS = _plan_backup_intervals(os.getenv("PLAN_BACKUP_INTERVALS"))


@dataclass(frozen=True)
class BrokerSettings:
    poll_interval_s: float = 60.0
    deployment_poll_interval_s: float = 30.0
    watch_refresh_interval_s: float = 300.0
    watch_error_delay_s: float = 5.0
    abort_timeout_s: float = 300.0
    reschedule_delay: str = "3 minutes"
    lock_ttl_s: Dict[str, float] = field(
        default_factory=lambda: {"backup": 86400.0, "restore": 86400.0}
    )
    lock_ttl_default_s: float = 86400.0
    requeue_max_attempts: int = 3
    requeue_min_delay_s: float = 0.5
    unlock_max_attempts: int = 5
    unlock_retry_delay_s: float = 1.0
    poller_relaxation_s: float = 5.0
    broker_ip: str = "127.0.0.1"
    agent_port: int = 2718
    agent_username: str = "admin"
    agent_password: str = "admin"
    agent_timeout_s: float = 30.0
    scheduler_url: str = "http://127.0.0.1:9293"
    director_url: str = "http://127.0.0.1:25555"
    plan_backup_intervals: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "BrokerSettings":
        return cls(
            poll_interval_s=POLL_INTERVAL_S,
            deployment_poll_interval_s=DEPLOYMENT_POLL_INTERVAL_S,
            watch_refresh_interval_s=WATCH_REFRESH_INTERVAL_S,
            watch_error_delay_s=WATCH_ERROR_DELAY_S,
            abort_timeout_s=ABORT_TIMEOUT_S,
            reschedule_delay=RESCHEDULE_DELAY,
            lock_ttl_s={"backup": LOCK_TTL_BACKUP_S, "restore": LOCK_TTL_RESTORE_S},
            lock_ttl_default_s=LOCK_TTL_DEFAULT_S,
            requeue_max_attempts=REQUEUE_MAX_ATTEMPTS,
            requeue_min_delay_s=REQUEUE_MIN_DELAY_S,
            unlock_max_attempts=UNLOCK_MAX_ATTEMPTS,
            unlock_retry_delay_s=UNLOCK_RETRY_DELAY_S,
            poller_relaxation_s=POLLER_RELAXATION_S,
            broker_ip=BROKER_IP,
            agent_port=AGENT_PORT,
            agent_username=AGENT_USERNAME,
            agent_password=AGENT_PASSWORD,
            agent_timeout_s=AGENT_TIMEOUT_S,
            scheduler_url=SCHEDULER_URL,
            director_url=DIRECTOR_URL,
            plan_backup_intervals=dict(PLAN_BACKUP_INTERVALS),
        )

    def lock_ttl_for(self, operation: str) -> float:
        """
        Lease TTL for an operation type. Doubles as the operation's max duration:
        an operation still running after its lease would have expired is stuck.
        """
        return float(self.lock_ttl_s.get(str(operation or ""), self.lock_ttl_default_s))

    def backup_interval_for(self, plan_id: Optional[str]) -> str:
        if plan_id and plan_id in self.plan_backup_intervals:
            return self.plan_backup_intervals[plan_id]
        return "daily"
