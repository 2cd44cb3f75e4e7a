# lifecycle/backup_poller.py
from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from connectors.scheduler_http import SCHEDULED_BACKUP_JOB, SchedulerClient
from domain.operations.cron import cron_with_interval_after_minutes, parse_reschedule_delay
from domain.operations.errors import OperationError
from domain.operations.states import OperationType, ResourceState, SubjectKind, Trigger
from domain.operations.subject import AgentOperationDetails, BackupDetails, Subject
from lifecycle.agent_operation import AgentOperationPoller, Outcome
from lifecycle.log import emit
from lifecycle.retry import RetryConfig, retry_async

log = logging.getLogger(__name__)


class BackupStatusPoller(AgentOperationPoller):
    """
    Backup subjects. On top of the shared state machine, a scheduled backup
    that ends up `failed` is requeued with the scheduler.
    """

    kind = SubjectKind.BACKUP.value
    operation = OperationType.BACKUP.value

    def __init__(
        self,
        *,
        scheduler: Optional[SchedulerClient] = None,
        backup_interval_for: Callable[[Optional[str]], str] = lambda plan_id: "daily",
        reschedule_delay: str = "3 minutes",
        requeue_retry: Optional[RetryConfig] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._scheduler = scheduler
        self._backup_interval_for = backup_interval_for
        self.reschedule_delay = reschedule_delay
        self._requeue_retry = requeue_retry or RetryConfig(max_attempts=3, min_delay_s=0.5)

    def parse_details(self, subject: Subject) -> BackupDetails:
        return BackupDetails.from_subject(subject)

    async def after_finalize(self, subject: Subject, details: AgentOperationDetails, outcome: Outcome) -> None:
        if outcome.state != ResourceState.FAILED.value or details.trigger is not Trigger.SCHEDULED:
            return
        await self.reschedule(details)

    async def reschedule(self, details: AgentOperationDetails) -> bool:
        """
        Enqueue a new scheduled backup for the instance. Best effort: failures
        are logged and swallowed, the finalized outcome stands.
        """
        if self._scheduler is None:
            log.warning(f"No scheduler configured; scheduled backup of {details.instance_guid} is not requeued")
            return False

        interval = self._backup_interval_for(details.plan_id)
        try:
            cron = cron_with_interval_after_minutes(
                interval,
                parse_reschedule_delay(self.reschedule_delay),
                now=self._clock(),
            )
        except OperationError as e:
            log.error(f"Cannot derive retry schedule for {details.instance_guid} from interval {interval!r}: {e}")
            return False

        data = {
            "instance_id": details.instance_guid,
            "plan_id": details.plan_id,
            "type": "online",
            "trigger": Trigger.SCHEDULED.value,
        }

        async def _schedule(attempt: int) -> Any:
            return await self._scheduler.schedule(details.instance_guid, SCHEDULED_BACKUP_JOB, cron, data)

        try:
            await retry_async(
                _schedule,
                config=self._requeue_retry,
                description=f"backup reschedule for {details.instance_guid}",
            )
        except Exception as e:
            log.error(
                f"Failed to reschedule backup for {details.instance_guid}: {e}",
                extra={"subject_id": details.subject_id, "instance_guid": details.instance_guid},
            )
            return False

        log.info(
            f"Scheduled backup retry for {details.instance_guid} at '{cron}'",
            extra={"subject_id": details.subject_id, "interval": interval},
        )
        emit("BACKUP_RESCHEDULED", component=self.name, subject_id=details.subject_id, cron=cron)
        return True
