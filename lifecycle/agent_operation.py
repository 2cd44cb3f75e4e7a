# lifecycle/agent_operation.py
#
# State machine shared by agent-driven operations (backup, restore).
#
#   in_progress --agent terminal-----------------------> succeeded | failed | aborted
#   in_progress --elapsed > lease TTL--> aborting --agent terminal--> succeeded | failed | aborted
#                                        aborting --abort timeout---> aborted (forced)
#
# Every terminal exit goes through finalize() or _fail_invalid(): both release
# the lease exactly once, emit audit and clear the poller.

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from connectors.agent_http import AgentClient, LastOperation
from domain.operations.audit import operation_finished
from domain.operations.errors import ErrorKind, OperationError, build_error_json, error_kind
from domain.operations.policy import OperationTimeoutPolicy
from domain.operations.states import ResourceState, is_agent_finished
from domain.operations.subject import (
    ABORT_MARKER_KEY,
    AgentOperationDetails,
    Subject,
    format_timestamp,
    lock_subject_id,
)
from domain.operations.timeout import TimeoutPhase, evaluate_timeout
from lifecycle.audit import AuditEmitter
from lifecycle.locks import LockManager
from lifecycle.log import emit
from lifecycle.poller import StatusPoller

log = logging.getLogger(__name__)

_AGENT_TO_RESOURCE_STATE = {
    "succeeded": ResourceState.SUCCEEDED.value,
    "failed": ResourceState.FAILED.value,
    "aborted": ResourceState.ABORTED.value,
}


@dataclass(frozen=True)
class Outcome:
    state: str
    response: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    timed_out: bool = False


class AgentOperationPoller(StatusPoller):
    """
    Template for backup/restore pollers.

    Subclasses provide:
      - kind / operation
      - parse_details(subject) -> AgentOperationDetails (raises SubjectValidationError)
      - after_finalize(subject, details, outcome) for post-terminal side effects
    """

    operation: str = ""
    valid_states = (ResourceState.IN_PROGRESS.value, ResourceState.ABORTING.value)

    def __init__(
        self,
        *,
        agent: AgentClient,
        locks: LockManager,
        audit: AuditEmitter,
        abort_timeout_s: float = 300.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if not self.operation:
            raise ValueError(f"{type(self).__name__} must define 'operation'")
        self._agent = agent
        self._locks = locks
        self._audit = audit
        self.abort_timeout_s = float(abort_timeout_s)

    @property
    def timeout_policy(self) -> OperationTimeoutPolicy:
        # Max duration is the lease TTL: past it, the lease could be taken by someone else.
        return OperationTimeoutPolicy(
            max_duration_seconds=self._locks.lock_ttl(self.operation),
            abort_timeout_seconds=self.abort_timeout_s,
        )

    def parse_details(self, subject: Subject) -> AgentOperationDetails:
        raise NotImplementedError(f"{self.name}.parse_details")

    async def after_finalize(self, subject: Subject, details: AgentOperationDetails, outcome: Outcome) -> None:
        return None

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    async def get_status(self, subject: Subject, token: str) -> None:
        try:
            details = self.parse_details(subject)
        except OperationError as e:
            if error_kind(e) is not ErrorKind.VALIDATION:
                raise
            await self._fail_invalid(subject, token, e)
            return

        outcome = await self.check_operation(subject, details)
        if outcome is not None:
            await self.finalize(subject, details, outcome, token)

    async def check_operation(self, subject: Subject, details: AgentOperationDetails) -> Optional[Outcome]:
        """
        Query the agent and run timeout escalation.
        Returns an Outcome when the operation reached a terminal state, None otherwise.
        """
        now = self._clock()
        last: Optional[LastOperation] = None
        try:
            last = await self._agent.get_last_operation(details.agent_ip, self.operation)
        except OperationError as e:
            kind = error_kind(e)
            if kind is ErrorKind.NOT_FOUND:
                log.error(
                    f"Deployment {details.deployment} is gone, marking {self.operation} {subject.id} as failed",
                    extra={"subject_id": subject.id, "operation": self.operation},
                )
                return Outcome(
                    state=ResourceState.FAILED.value,
                    response={"description": f"Deployment {details.deployment} not found"},
                    error=build_error_json(e),
                )
            if kind is not ErrorKind.AGENT_UNREACHABLE:
                raise
            log.warning(
                f"Agent {details.agent_ip} unreachable while polling {self.operation} {subject.id}: {e}",
                extra={"subject_id": subject.id, "operation": self.operation},
            )

        if last is not None and is_agent_finished(last.state):
            return Outcome(
                state=_AGENT_TO_RESOURCE_STATE[last.state],
                response=await self._final_response(details, last),
            )

        progress: Dict[str, Any] = last.as_response() if last is not None else {}
        if last is not None:
            log.info(
                f"Instance {details.instance_guid} {self.operation} {subject.id} still in progress",
                extra={"subject_id": subject.id, "operation": self.operation, "stage": last.stage},
            )

        decision = evaluate_timeout(
            now=now,
            started_at=details.started_at,
            abort_started_at=details.abort_started_at,
            policy=self.timeout_policy,
        )

        if decision.phase is TimeoutPhase.WITHIN_LIMIT:
            if progress:
                await self._patch_progress(subject, progress)
            return None

        if decision.phase is TimeoutPhase.START_ABORT:
            # Marker first: on a version conflict nothing was sent, the next tick starts over.
            progress[ABORT_MARKER_KEY] = format_timestamp(now)
            if not await self._patch_progress(subject, progress, state=ResourceState.ABORTING.value):
                return None
            log.warning(
                f"{self.operation} {subject.id} on {details.deployment} exceeded "
                f"{self.timeout_policy.max_duration_seconds}s, aborting",
                extra={"subject_id": subject.id, "operation": self.operation, "elapsed_s": decision.elapsed_seconds},
            )
            try:
                await self._agent.abort(details.agent_ip, self.operation)
            except OperationError as e:
                if error_kind(e) not in (ErrorKind.AGENT_UNREACHABLE, ErrorKind.NOT_FOUND):
                    raise
                # the abort timeout takes it from here
                log.warning(f"Abort command for {self.operation} {subject.id} failed: {e}")
            emit("ABORT_STARTED", component=self.name, subject_id=subject.id, elapsed_s=decision.elapsed_seconds)
            return None

        if decision.phase is TimeoutPhase.ABORTING:
            log.info(f"{self.operation} abort is still in progress on {details.deployment} for {subject.id}")
            if progress or subject.state != ResourceState.ABORTING.value:
                await self._patch_progress(
                    subject,
                    progress,
                    state=ResourceState.ABORTING.value if subject.state != ResourceState.ABORTING.value else None,
                )
            return None

        log.error(
            f"Abort {self.operation} timed out on {details.deployment} for {subject.id}, "
            f"flagging {self.operation} operation as complete",
            extra={"subject_id": subject.id, "operation": self.operation},
        )
        progress["description"] = (
            f"{self.operation.capitalize()} aborted after abort timeout of {self.abort_timeout_s:g}s"
        )
        return Outcome(state=ResourceState.ABORTED.value, response=progress, timed_out=True)

    async def _final_response(self, details: AgentOperationDetails, last: LastOperation) -> Dict[str, Any]:
        response = last.as_response()
        response["description"] = (
            f"{self.operation.capitalize()} deployment {details.deployment} {last.state}"
            + (f" at {last.updated_at}" if last.updated_at else "")
        )
        try:
            response["logs"] = await self._agent.get_logs(details.agent_ip, self.operation)
        except OperationError as e:
            log.warning(f"Could not fetch {self.operation} logs from agent {details.agent_ip}: {e}")
        return response

    async def _patch_progress(self, subject: Subject, response: Dict[str, Any], state: Optional[str] = None) -> bool:
        """
        Versioned patch of status.response (and optionally state).
        A version conflict is not an error: the next tick re-reads.
        The abort marker is only ever written here when absent, so merging keeps it.
        """
        status: Dict[str, Any] = {"response": response}
        if state:
            status["state"] = state
        try:
            await self._store.patch(self.kind, subject.id, status=status, version=subject.version)
        except OperationError as e:
            if error_kind(e) is not ErrorKind.CONFLICT:
                raise
            log.info(f"{self.kind} {subject.id} changed under us, next tick re-reads it")
            return False
        return True

    # -------------------------------------------------------------------------
    # Terminal exits
    # -------------------------------------------------------------------------

    async def _release_lease(self, lease_id: Optional[str], subject_id: str) -> None:
        if not lease_id:
            log.warning(f"No lease target known for {self.kind} {subject_id}; nothing to release")
            return
        try:
            await self._locks.release(lease_id, resource_id=subject_id)
        except Exception:
            log.error(f"Failed to release lease {lease_id} for {self.kind} {subject_id}", exc_info=True)

    def _audit_outcome(self, subject: Subject, state: str, response: Dict[str, Any]) -> None:
        self._audit.publish(
            operation_finished(
                kind=self.kind,
                subject_id=subject.id,
                operation=self.operation,
                state=state,
                response=response,
            )
        )

    async def finalize(self, subject: Subject, details: AgentOperationDetails, outcome: Outcome, token: str) -> None:
        status: Dict[str, Any] = {"state": outcome.state, "response": outcome.response}
        if outcome.error is not None:
            status["error"] = outcome.error
        try:
            # unconditional: a terminal outcome wins over whatever landed meanwhile
            await self._store.patch(self.kind, subject.id, status=status)
        finally:
            await self._release_lease(details.instance_guid, subject.id)
            self._audit_outcome(subject, outcome.state, outcome.response)
            self.clear_poller(subject.id, token)

        if outcome.timed_out:
            log.error(
                f"Deployment {details.instance_guid} {self.operation} {subject.id} exceeded timeout. Stopping status check",
                extra={"subject_id": subject.id, "operation": self.operation, "state": outcome.state},
            )
        else:
            log.info(
                f"Instance {details.instance_guid} {self.operation} {subject.id} completed",
                extra={"subject_id": subject.id, "operation": self.operation, "state": outcome.state},
            )
        emit("OPERATION_FINALIZED", component=self.name, subject_id=subject.id, state=outcome.state)

        await self.after_finalize(subject, details, outcome)

    async def _fail_invalid(self, subject: Subject, token: str, exc: OperationError) -> None:
        log.error(
            f"Error occurred while polling for {self.operation}, marking {subject.id} as failed: {exc}",
            extra={"subject_id": subject.id, "operation": self.operation},
        )
        error = build_error_json(exc)
        response = {"description": f"{self.operation.capitalize()} failed: {exc.message}"}
        try:
            await self._store.patch(
                self.kind,
                subject.id,
                status={"state": ResourceState.FAILED.value, "error": error, "response": response},
            )
        finally:
            await self._release_lease(lock_subject_id(subject), subject.id)
            self._audit_outcome(subject, ResourceState.FAILED.value, response)
            self.clear_poller(subject.id, token)
        emit("OPERATION_FINALIZED", component=self.name, subject_id=subject.id, state=ResourceState.FAILED.value)

