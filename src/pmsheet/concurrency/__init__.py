"""Concurrency module - retry, conflict detection and write coordination."""

from pmsheet.concurrency.coordinator import (
    OperationResult,
    OperationStatus,
    ProvisioningOutcome,
    ResourceOperationCoordinator,
    WritePlan,
)
from pmsheet.concurrency.guard import OptimisticConcurrencyGuard, check_conflict, to_epoch_ms
from pmsheet.concurrency.retry import (
    FILE_STORE_RETRY_POLICY,
    TABLE_STORE_RETRY_POLICY,
    ErrorMessageHelper,
    RetryExecutor,
    RetryPolicy,
    effective_policy,
    make_message_classifier,
    retry_with_backoff,
)

__all__ = [
    "FILE_STORE_RETRY_POLICY",
    "TABLE_STORE_RETRY_POLICY",
    "ErrorMessageHelper",
    "OperationResult",
    "OperationStatus",
    "OptimisticConcurrencyGuard",
    "ProvisioningOutcome",
    "ResourceOperationCoordinator",
    "RetryExecutor",
    "RetryPolicy",
    "WritePlan",
    "check_conflict",
    "effective_policy",
    "make_message_classifier",
    "retry_with_backoff",
    "to_epoch_ms",
]
