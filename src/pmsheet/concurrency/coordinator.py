"""Lock, validate, provision, persist, release.

``ResourceOperationCoordinator`` runs one logical "edit a shared entity"
request as a small state machine:

1. Acquire the entity's granular lock. Failing it ends the request as
   ``aborted-busy``.
2. Acquire the global lock, when enabled, then every table-wide lock the
   plan names, in ``ResourceKind`` order. All of them are held before the
   first read or write; failing any ends the request as ``aborted-busy``
   with nothing written.
3. Validate (updates only): compare the persisted last-modified timestamp
   with the one the client loaded; a mismatch ends as ``aborted-conflict``.
4. Check referential integrity, if the plan has a check.
5. Provision (creates only): external side effects through the file-store
   retry policy. Failure is recorded as a sentinel, not raised.
6. Persist: the plan's writes.
7. Release every lock taken, whatever happened above.

Busy and conflict are returned as results. Any other failure is raised as
``OperationAbortedError`` carrying the cause and the provisioning outcome.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pmsheet.concurrency.guard import OptimisticConcurrencyGuard, to_epoch_ms
from pmsheet.concurrency.retry import (
    FILE_STORE_RETRY_POLICY,
    TABLE_STORE_RETRY_POLICY,
    RetryExecutor,
    RetryPolicy,
)
from pmsheet.core.constants import TABLE_LOCK_ID
from pmsheet.core.exceptions import (
    ConflictError,
    OperationAbortedError,
    PMSheetError,
    ResourceBusyError,
)
from pmsheet.core.locks.global_lock import GlobalLock
from pmsheet.core.locks.manager import LockManager
from pmsheet.core.locks.records import LockKey, ResourceKind
from pmsheet.core.logging import with_log_context


class OperationStatus(Enum):
    """Terminal states of one coordinated request."""

    COMMITTED = "committed"
    ABORTED_BUSY = "aborted-busy"
    ABORTED_CONFLICT = "aborted-conflict"
    ABORTED_ERROR = "aborted-error"


@dataclass
class ProvisioningOutcome:
    """Result of the external side-effect step.

    Attributes:
        ok: Provisioning completed
        value: Whatever the provisioning step returned
        sentinel: Marker the persist step records when ``ok`` is False
        error: Message of the failure that downgraded provisioning
    """

    ok: bool
    value: Any = None
    sentinel: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "sentinel": self.sentinel, "error": self.error}


@dataclass
class OperationResult:
    """Outcome of :meth:`ResourceOperationCoordinator.execute`."""

    status: OperationStatus
    resource: str
    data: Any = None
    error_kind: str | None = None
    message: str | None = None
    provisioning: ProvisioningOutcome | None = None

    @property
    def success(self) -> bool:
        return self.status is OperationStatus.COMMITTED

    @property
    def partially_provisioned(self) -> bool:
        return self.provisioning is not None and not self.provisioning.ok

    @classmethod
    def from_error(cls, error: BaseException, resource: str = "") -> OperationResult:
        """Build the ``aborted-*`` result matching ``error``."""
        if isinstance(error, ResourceBusyError):
            status = OperationStatus.ABORTED_BUSY
        elif isinstance(error, ConflictError):
            status = OperationStatus.ABORTED_CONFLICT
        else:
            status = OperationStatus.ABORTED_ERROR
        provisioning = getattr(error, "provisioning", None)
        return cls(
            status=status,
            resource=getattr(error, "resource", resource) or resource,
            error_kind=getattr(error, "error_kind", "internal"),
            message=str(error),
            provisioning=provisioning if isinstance(provisioning, ProvisioningOutcome) else None,
        )

    def to_response(self) -> dict[str, Any]:
        """Wire shape handed to the UI glue: ``{success, data?, error?}``."""
        response: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            response["data"] = self.data
        if not self.success:
            response["error"] = {"kind": self.error_kind or "internal", "message": self.message or ""}
        if self.partially_provisioned:
            response["provisioning"] = self.provisioning.to_dict()
        return response


@dataclass
class WritePlan:
    """Everything the coordinator needs to run one request.

    Attributes:
        key: Granular lock guarding the entity
        persist: Performs the writes; receives the provisioning outcome (None
            when provisioning did not run) and returns the response data
        is_create: Creates skip validation and run provisioning
        client_modified_at: Last-modified value the client based its edit on
        read_persisted_modified_at: Returns the stored last-modified value
        check_integrity: Raises ``IntegrityError`` when the write would break
            a parent/child relationship
        provision: External side effects, retried under the file-store policy
        provisioning_sentinel: Recorded by ``persist`` when provisioning fails
        use_global_lock: Override the coordinator's global-lock setting
        table_locks: Tables whose table-wide lock (``TABLE_LOCK_ID``) the
            writes need; all are acquired before validation
    """

    key: LockKey
    persist: Callable[[ProvisioningOutcome | None], Any]
    is_create: bool = False
    client_modified_at: object = None
    read_persisted_modified_at: Callable[[], object] | None = None
    check_integrity: Callable[[], None] | None = None
    provision: Callable[[], Any] | None = None
    provisioning_sentinel: str | None = None
    use_global_lock: bool | None = None
    table_locks: tuple[ResourceKind, ...] = ()
    lock_timeout_ms: int | None = None
    context: dict[str, Any] = field(default_factory=dict)


class ResourceOperationCoordinator:
    """Runs :class:`WritePlan` requests under the lock/validate/persist protocol.

    Args:
        lock_manager: Granular lock manager
        guard: Timestamp conflict detector
        executor: Retry executor for store calls made by the coordinator
        global_lock: Coarse host-wide lock, required when ``use_global_lock``
        use_global_lock: Also hold the global lock around every write
        global_timeout_ms: Wait for the global lock
        file_policy: Retry policy for provisioning
        table_policy: Retry policy for reading the persisted timestamp
    """

    def __init__(
        self,
        lock_manager: LockManager,
        *,
        guard: OptimisticConcurrencyGuard | None = None,
        executor: RetryExecutor | None = None,
        global_lock: GlobalLock | None = None,
        use_global_lock: bool = False,
        global_timeout_ms: int = 30_000,
        file_policy: RetryPolicy = FILE_STORE_RETRY_POLICY,
        table_policy: RetryPolicy = TABLE_STORE_RETRY_POLICY,
        logger: logging.Logger | None = None,
    ):
        if use_global_lock and global_lock is None:
            raise ValueError("use_global_lock requires a global_lock")
        self.locks = lock_manager
        self.guard = guard or OptimisticConcurrencyGuard()
        self.executor = executor or RetryExecutor()
        self.global_lock = global_lock
        self.use_global_lock = use_global_lock
        self.global_timeout_ms = global_timeout_ms
        self.file_policy = file_policy
        self.table_policy = table_policy
        self.logger = logger or logging.getLogger(__name__)

    def execute(self, plan: WritePlan) -> OperationResult:
        """Run ``plan``; see the module docstring for the protocol.

        Raises:
            OperationAbortedError: Any failure other than busy or conflict
        """
        resource = str(plan.key)
        log = with_log_context(self.logger, resource=resource, request_id=uuid.uuid4().hex[:8], **plan.context)
        timeout = self.locks.default_timeout_ms if plan.lock_timeout_ms is None else plan.lock_timeout_ms

        if not self.locks.try_acquire(plan.key.kind, plan.key.resource_id, timeout):
            log.info("Rejected write: resource busy")
            return OperationResult.from_error(ResourceBusyError(resource, timeout), resource)

        try:
            return self._run_locked(plan, resource, timeout, log)
        finally:
            self._release(plan.key, log)

    def _run_locked(
        self, plan: WritePlan, resource: str, timeout: int, log: logging.LoggerAdapter
    ) -> OperationResult:
        use_global = self.use_global_lock if plan.use_global_lock is None else plan.use_global_lock
        global_held = False
        if use_global:
            if self.global_lock is None:
                raise ValueError("use_global_lock requires a global_lock")
            if not self.global_lock.try_acquire(self.global_timeout_ms):
                log.info("Rejected write: global lock busy")
                return OperationResult.from_error(ResourceBusyError("global", self.global_timeout_ms), resource)
            global_held = True

        held_tables: list[LockKey] = []
        provisioning: ProvisioningOutcome | None = None
        try:
            for table_key in self.table_lock_keys(plan):
                if not self.locks.try_acquire(table_key.kind, table_key.resource_id, timeout):
                    log.info(f"Rejected write: table lock {table_key} busy")
                    return OperationResult.from_error(ResourceBusyError(str(table_key), timeout), resource)
                held_tables.append(table_key)

            if not plan.is_create and plan.read_persisted_modified_at is not None:
                persisted = self.executor.execute(
                    plan.read_persisted_modified_at,
                    self.table_policy,
                    operation_name=f"read version of {resource}",
                )
                if self.guard.check_conflict(persisted, plan.client_modified_at):
                    error = ConflictError(resource, to_epoch_ms(persisted), to_epoch_ms(plan.client_modified_at))
                    log.info(f"Rejected write: {error}")
                    return OperationResult.from_error(error, resource)

            if plan.check_integrity is not None:
                plan.check_integrity()

            if plan.is_create and plan.provision is not None:
                provisioning = self._provision(plan, resource, log)

            data = plan.persist(provisioning)
        except Exception as e:
            if isinstance(e, PMSheetError):
                log.error(f"Write aborted: {e}")
            else:
                log.exception("Write aborted by unexpected error")
            raise OperationAbortedError(resource, e, provisioning) from e
        finally:
            for table_key in reversed(held_tables):
                self._release(table_key, log)
            if global_held:
                self.global_lock.release()

        if provisioning is not None and not provisioning.ok:
            log.warning(f"Committed with incomplete provisioning ({provisioning.sentinel}): {provisioning.error}")
        else:
            log.info("Committed")
        return OperationResult(
            status=OperationStatus.COMMITTED,
            resource=resource,
            data=data,
            provisioning=provisioning,
        )

    @staticmethod
    def table_lock_keys(plan: WritePlan) -> list[LockKey]:
        """Table-wide locks of ``plan``, deduplicated, in acquisition order."""
        kinds = {ResourceKind.parse(kind) for kind in plan.table_locks}
        keys = [LockKey(kind, TABLE_LOCK_ID) for kind in ResourceKind if kind in kinds]
        return [key for key in keys if key != plan.key]

    def _provision(self, plan: WritePlan, resource: str, log: logging.LoggerAdapter) -> ProvisioningOutcome:
        try:
            value = self.executor.execute(plan.provision, self.file_policy, operation_name=f"provision {resource}")
        except Exception as e:
            log.warning(f"Provisioning failed, recording {plan.provisioning_sentinel!r}: {e}")
            return ProvisioningOutcome(ok=False, sentinel=plan.provisioning_sentinel, error=str(e))
        return ProvisioningOutcome(ok=True, value=value)

    def _release(self, key: LockKey, log: logging.LoggerAdapter) -> None:
        try:
            self.locks.release(key.kind, key.resource_id)
        except Exception:
            # The record still expires after the stale threshold.
            log.exception(f"Failed to release lock {key}; it will be reclaimable after expiry")
