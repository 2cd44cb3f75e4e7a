# lifecycle/deployment_poller.py
#
# Deployment subjects (create / update / delete of a service instance's
# deployment) tracked against the director's task.
#
# A delete whose deployment is already gone is a success: the subject
# resource itself is removed instead of being patched.

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from connectors.director_http import DirectorClient
from domain.operations.audit import operation_finished
from domain.operations.errors import ErrorKind, OperationError, build_error_json, error_kind
from domain.operations.states import OperationType, ResourceState, SubjectKind, is_finished
from domain.operations.subject import DeploymentDetails, Subject, lock_subject_id
from lifecycle.audit import AuditEmitter
from lifecycle.locks import LockManager
from lifecycle.log import emit
from lifecycle.poller import StatusPoller

log = logging.getLogger(__name__)


class DeploymentStatusPoller(StatusPoller):
    kind = SubjectKind.DEPLOYMENT.value
    valid_states = (ResourceState.IN_PROGRESS.value,)

    def __init__(
        self,
        *,
        director: DirectorClient,
        locks: LockManager,
        audit: AuditEmitter,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._director = director
        self._locks = locks
        self._audit = audit

    async def get_status(self, subject: Subject, token: str) -> None:
        try:
            details = DeploymentDetails.from_subject(subject)
        except OperationError as e:
            if error_kind(e) is not ErrorKind.VALIDATION:
                raise
            log.error(f"Deployment {subject.id} cannot be polled, marking as failed: {e}")
            await self._finish(
                subject,
                token,
                lease_id=lock_subject_id(subject),
                operation=str(subject.merged_options().get("type") or "deployment"),
                state=ResourceState.FAILED.value,
                response={"description": f"Deployment failed: {e.message}"},
                error=build_error_json(e),
            )
            return

        operation = details.operation.value
        try:
            last = await self._director.get_last_operation(details.instance_id, details.task_id)
        except OperationError as e:
            kind = error_kind(e)
            if kind is ErrorKind.NOT_FOUND:
                await self._on_not_found(subject, details, token, e)
                return
            if kind is ErrorKind.AGENT_UNREACHABLE:
                log.warning(f"Director unreachable while polling deployment {subject.id}: {e}")
                return
            raise

        state = str(last.get("state") or ResourceState.IN_PROGRESS.value)
        if not is_finished(state):
            log.info(
                f"{operation} of deployment {details.instance_id} still in progress",
                extra={"subject_id": subject.id, "operation": operation, "task_id": details.task_id},
            )
            return

        response: Dict[str, Any] = {"lastOperation": last, "description": last.get("description")}
        if state == ResourceState.SUCCEEDED.value:
            if details.operation is OperationType.DELETE:
                await self._finish(subject, token, lease_id=details.instance_id, operation=operation,
                                   state=state, response=response, remove=True)
            else:
                await self._finish(subject, token, lease_id=details.instance_id, operation=operation,
                                   state=state, response=response)
            return

        failed = ResourceState.DELETE_FAILED.value if details.operation is OperationType.DELETE else ResourceState.FAILED.value
        await self._finish(
            subject,
            token,
            lease_id=details.instance_id,
            operation=operation,
            state=failed,
            response=response,
            error={"code": "ERR_DEPLOYMENT_TASK", "kind": "task_failed", "message": str(last.get("description")), "details": {"task_id": details.task_id}},
        )

    async def _on_not_found(self, subject: Subject, details: DeploymentDetails, token: str, exc: OperationError) -> None:
        operation = details.operation.value
        if details.operation is OperationType.DELETE:
            log.info(f"Deployment of {details.instance_id} already gone, delete counts as done")
            await self._finish(
                subject,
                token,
                lease_id=details.instance_id,
                operation=operation,
                state=ResourceState.SUCCEEDED.value,
                response={"description": f"Deployment {details.instance_id} already deleted"},
                remove=True,
            )
            return
        log.error(f"Deployment of {details.instance_id} not found during {operation}, marking {subject.id} as failed")
        await self._finish(
            subject,
            token,
            lease_id=details.instance_id,
            operation=operation,
            state=ResourceState.FAILED.value,
            response={"description": f"Deployment {details.instance_id} not found"},
            error=build_error_json(exc),
        )

    async def _finish(
        self,
        subject: Subject,
        token: str,
        *,
        lease_id: Optional[str],
        operation: str,
        state: str,
        response: Dict[str, Any],
        error: Optional[Dict[str, Any]] = None,
        remove: bool = False,
    ) -> None:
        try:
            if remove:
                try:
                    await self._store.delete(self.kind, subject.id)
                except OperationError as e:
                    if error_kind(e) is not ErrorKind.NOT_FOUND:
                        raise
            else:
                status: Dict[str, Any] = {"state": state, "response": response}
                if error is not None:
                    status["error"] = error
                await self._store.patch(self.kind, subject.id, status=status)
        finally:
            if lease_id:
                try:
                    await self._locks.release(lease_id, resource_id=subject.id)
                except Exception:
                    log.error(f"Failed to release lease {lease_id} for deployment {subject.id}", exc_info=True)
            else:
                log.warning(f"No lease target known for deployment {subject.id}; nothing to release")
            self._audit.publish(
                operation_finished(
                    kind=self.kind,
                    subject_id=subject.id,
                    operation=operation,
                    state=state,
                    response=response,
                )
            )
            self.clear_poller(subject.id, token)

        log.info(
            f"Deployment {subject.id} {operation} finished: {state}",
            extra={"subject_id": subject.id, "operation": operation, "state": state, "removed": remove},
        )
        emit("OPERATION_FINALIZED", component=self.name, subject_id=subject.id, state=state, removed=remove)
