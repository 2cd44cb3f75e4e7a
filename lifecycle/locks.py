# lifecycle/locks.py
#
# Deployment leases ("locks").
#
# A lease is its own resource (kind DeploymentLock) named after the locked
# target, usually the service instance id:
#
#   spec.options = {
#       "lockedResourceDetails": {"operation": "backup", "resourceId": "<backup guid>", ...},
#       "lockTime": "<ISO-8601 UTC>",
#       "lockTTL": <seconds>,
#   }
#
# Acquire at operation start, release once at every terminal exit.

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from connectors.resource_store import ResourceStore
from domain.operations.errors import (
    AlreadyLockedError,
    ErrorKind,
    OperationError,
    error_kind,
)
from domain.operations.states import SubjectKind
from domain.operations.subject import format_timestamp, parse_timestamp
from lifecycle.log import emit
from lifecycle.retry import RetryConfig, retry_async

log = logging.getLogger(__name__)

LOCK_KIND = SubjectKind.LOCK.value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LockLease:
    subject_id: str
    operation: str
    acquired_at: datetime
    ttl_s: float
    locked_resource: Dict[str, Any] = field(default_factory=dict)

    @property
    def expires_at(self) -> Optional[datetime]:
        if math.isinf(self.ttl_s):
            return None
        return self.acquired_at + timedelta(seconds=self.ttl_s)

    def is_expired(self, now: datetime) -> bool:
        expires = self.expires_at
        return expires is not None and now >= expires

    @property
    def resource_id(self) -> Optional[str]:
        rid = self.locked_resource.get("resourceId")
        return str(rid) if rid else None

    def held_by(self, resource_id: Optional[str], operation: str) -> bool:
        return resource_id is not None and resource_id == self.resource_id and operation == self.operation

    def to_options(self) -> Dict[str, Any]:
        details = dict(self.locked_resource)
        details["operation"] = self.operation
        return {
            "lockedResourceDetails": details,
            "lockTime": format_timestamp(self.acquired_at),
            "lockTTL": self.ttl_s,
        }

    @classmethod
    def from_resource(cls, resource: Dict[str, Any]) -> "LockLease":
        options = ((resource.get("spec") or {}).get("options")) or {}
        details = dict(options.get("lockedResourceDetails") or {})
        operation = str(details.pop("operation", None) or "unknown")
        acquired = parse_timestamp(options.get("lockTime")) or datetime.fromtimestamp(0, tz=timezone.utc)
        try:
            ttl = float(options.get("lockTTL"))
        except (TypeError, ValueError):
            # A lease without TTL never expires on its own.
            ttl = float("inf")
        return cls(
            subject_id=str((resource.get("metadata") or {}).get("name") or ""),
            operation=operation,
            acquired_at=acquired,
            ttl_s=ttl,
            locked_resource=details,
        )

    def as_dict(self) -> Dict[str, Any]:
        out = self.to_options()
        if math.isinf(self.ttl_s):
            out["lockTTL"] = None
        out["subjectId"] = self.subject_id
        return out


@dataclass(frozen=True)
class LockStatus:
    locked: bool
    details: Optional[LockLease] = None


class LockManager:
    def __init__(
        self,
        store: ResourceStore,
        *,
        ttl_for: Callable[[str], float],
        unlock_retry: Optional[RetryConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._ttl_for = ttl_for
        self._unlock_retry = unlock_retry or RetryConfig(max_attempts=5, min_delay_s=1.0)
        self._clock = clock

    def lock_ttl(self, operation: str) -> float:
        """Lease TTL for `operation`; also the operation's max allowed duration."""
        return float(self._ttl_for(operation))

    async def _read(self, subject_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._store.get(LOCK_KIND, subject_id)
        except OperationError as e:
            if error_kind(e) is ErrorKind.NOT_FOUND:
                return None
            raise

    async def acquire(
        self,
        subject_id: str,
        operation: str,
        *,
        locked_resource: Optional[Dict[str, Any]] = None,
        ttl_s: Optional[float] = None,
    ) -> LockLease:
        """
        Take the lease on `subject_id` for `operation`.

        Rules:
          - no lease, or an expired one => (re)write it
          - unexpired lease held by the same resourceId and operation => refreshed
          - any other unexpired lease => AlreadyLockedError
        """
        now = self._clock()
        lease = LockLease(
            subject_id=subject_id,
            operation=str(operation),
            acquired_at=now,
            ttl_s=float(ttl_s) if ttl_s is not None else self.lock_ttl(operation),
            locked_resource=dict(locked_resource or {}),
        )

        log.info(f"Attempting to acquire lock on {subject_id} for {operation}")
        current_res = await self._read(subject_id)

        if current_res is None:
            try:
                await self._store.create(LOCK_KIND, subject_id, options=lease.to_options())
            except OperationError as e:
                if error_kind(e) is not ErrorKind.CONFLICT:
                    raise
                # Someone else created it between our read and create
                raced = await self._read(subject_id)
                holder = LockLease.from_resource(raced) if raced else None
                raise AlreadyLockedError(
                    subject_id,
                    holder.operation if holder else None,
                    format_timestamp(holder.acquired_at) if holder else None,
                ) from e
        else:
            current = LockLease.from_resource(current_res)
            if not current.is_expired(now) and not current.held_by(lease.resource_id, lease.operation):
                log.error(
                    f"Resource {subject_id} was locked for {current.operation} operation at "
                    f"{format_timestamp(current.acquired_at)}"
                )
                raise AlreadyLockedError(subject_id, current.operation, format_timestamp(current.acquired_at))
            try:
                await self._store.patch(
                    LOCK_KIND,
                    subject_id,
                    options=lease.to_options(),
                    version=(current_res.get("metadata") or {}).get("version"),
                )
            except OperationError as e:
                if error_kind(e) is not ErrorKind.CONFLICT:
                    raise
                raise AlreadyLockedError(subject_id, current.operation, format_timestamp(current.acquired_at)) from e

        emit("LOCK_ACQUIRED", component="locks", subject_id=subject_id, operation=lease.operation, ttl_s=lease.ttl_s)
        return lease

    async def status(self, subject_id: str) -> LockStatus:
        res = await self._read(subject_id)
        if res is None:
            return LockStatus(locked=False)
        lease = LockLease.from_resource(res)
        if lease.is_expired(self._clock()):
            return LockStatus(locked=False)
        return LockStatus(locked=True, details=lease)

    async def release(self, subject_id: str, resource_id: Optional[str] = None) -> bool:
        """
        Delete the lease. Idempotent: a missing lease is success.
        With `resource_id`, only a lease owned by that resource (or one with no
        recorded owner) is deleted; a lease owned by someone else is left alone.
        Returns True if a lease was actually removed.
        """
        async def _delete(attempt: int) -> bool:
            log.info(f"Attempt {attempt + 1} to unlock resource {subject_id}")
            if resource_id is not None:
                current_res = await self._read(subject_id)
                if current_res is None:
                    return False
                owner = LockLease.from_resource(current_res).resource_id
                if owner is not None and owner != str(resource_id):
                    log.warning(
                        f"Lease on {subject_id} now belongs to {owner}, not {resource_id}; leaving it",
                        extra={"subject_id": subject_id, "owner": owner, "resource_id": resource_id},
                    )
                    return False
            try:
                await self._store.delete(LOCK_KIND, subject_id)
            except OperationError as e:
                if error_kind(e) is ErrorKind.NOT_FOUND:
                    return False
                raise
            return True

        removed = await retry_async(
            _delete,
            config=self._unlock_retry,
            should_retry=lambda e: error_kind(e) is not ErrorKind.NOT_FOUND,
            description=f"unlock of {subject_id}",
        )
        emit("LOCK_RELEASED", component="locks", subject_id=subject_id, removed=removed)
        return removed
