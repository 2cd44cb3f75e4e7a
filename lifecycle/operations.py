# lifecycle/operations.py
#
# Entry point for new operations: take the lease, then create the subject in
# in_progress so the matching poller's watch picks it up.

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from connectors.resource_store import ResourceStore
from domain.operations.errors import ErrorKind, OperationError, SubjectValidationError, error_kind
from domain.operations.states import OperationType, ResourceState, SubjectKind, Trigger
from domain.operations.subject import Subject, format_timestamp
from lifecycle.locks import LockManager
from lifecycle.log import emit

log = logging.getLogger(__name__)

# URL segment -> subject kind
KINDS: Dict[str, SubjectKind] = {
    "backup": SubjectKind.BACKUP,
    "restore": SubjectKind.RESTORE,
    "deployment": SubjectKind.DEPLOYMENT,
}

_DEPLOYMENT_OPERATIONS = (OperationType.CREATE, OperationType.UPDATE, OperationType.DELETE)


def resolve_kind(name: str) -> SubjectKind:
    kind = KINDS.get(str(name or "").strip().lower())
    if kind is None:
        raise SubjectValidationError(
            f"Unknown operation kind {name!r}", details={"supported": sorted(KINDS)}
        )
    return kind


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OperationStarter:
    def __init__(
        self,
        store: ResourceStore,
        locks: LockManager,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._locks = locks
        self._clock = clock

    @staticmethod
    def _operation_for(kind: SubjectKind, options: Dict[str, Any], operation: Optional[str]) -> OperationType:
        if kind is SubjectKind.BACKUP:
            return OperationType.BACKUP
        if kind is SubjectKind.RESTORE:
            return OperationType.RESTORE
        raw = operation or options.get("type")
        try:
            op = OperationType(str(raw or "").lower())
        except ValueError:
            op = None
        if op not in _DEPLOYMENT_OPERATIONS:
            raise SubjectValidationError(
                f"Deployment operation must be one of create, update, delete (got {raw!r})",
                details={"operation": raw},
            )
        return op

    @staticmethod
    def _lease_target(kind: SubjectKind, subject_id: str, options: Dict[str, Any]) -> str:
        target = options.get("instance_guid") or options.get("instance_id")
        if target:
            return str(target)
        if kind is SubjectKind.DEPLOYMENT:
            return subject_id
        raise SubjectValidationError(
            f"{kind.value} requires 'instance_guid' to lock the target instance",
            details={"subject_id": subject_id},
        )

    async def start(
        self,
        kind: SubjectKind,
        subject_id: str,
        options: Dict[str, Any],
        *,
        operation: Optional[str] = None,
        trigger: Trigger = Trigger.ON_DEMAND,
    ) -> Subject:
        """
        Raises AlreadyLockedError when the target instance is busy with another
        operation. If the subject cannot be created the lease is given back.
        """
        opts = dict(options or {})
        op = self._operation_for(kind, opts, operation)
        lease_target = self._lease_target(kind, subject_id, opts)
        now = self._clock()

        if kind is SubjectKind.DEPLOYMENT:
            opts["type"] = op.value
            opts.setdefault("instance_id", lease_target)

        await self._locks.acquire(
            lease_target,
            op.value,
            locked_resource={"resourceId": subject_id, "kind": kind.value},
        )

        response = {
            "started_at": format_timestamp(now),
            "trigger": trigger.value,
            "description": f"{op.value.capitalize()} of {lease_target} in progress",
        }
        try:
            created = await self._store.create(
                kind.value,
                subject_id,
                options=opts,
                status={"state": ResourceState.IN_PROGRESS.value, "response": response},
            )
        except Exception:
            log.error(f"Could not create {kind.value} {subject_id}; releasing lease on {lease_target}", exc_info=True)
            try:
                await self._locks.release(lease_target, resource_id=subject_id)
            except Exception:
                log.error(f"Failed to release lease {lease_target}", exc_info=True)
            raise

        emit(
            "OPERATION_STARTED",
            component="operations",
            subject_id=subject_id,
            kind=kind.value,
            operation=op.value,
            trigger=trigger.value,
            lease=lease_target,
        )
        return Subject.from_resource(created)

    async def get(self, kind: SubjectKind, subject_id: str) -> Optional[Subject]:
        try:
            res = await self._store.get(kind.value, subject_id)
        except OperationError as e:
            if error_kind(e) is ErrorKind.NOT_FOUND:
                return None
            raise
        return Subject.from_resource(res)
