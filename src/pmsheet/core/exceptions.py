"""Custom exceptions for pmsheet.

All exception classes are designed to provide clear, actionable error messages
with context about what went wrong and how to fix it. Each class carries an
``error_kind`` tag that the coordinator copies into request responses so
callers can branch on the failure category.
"""


class PMSheetError(Exception):
    """Base exception for all pmsheet errors."""

    error_kind = "internal"

    def __init__(self, message: str, details: str | None = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ConfigurationError(PMSheetError):
    """Exception raised for configuration-related errors.

    Examples:
        - Invalid PMSHEET_* environment value
        - Retry policy with a non-positive attempt budget
    """

    def __init__(self, message: str, field: str | None = None, details: str | None = None):
        self.field = field
        super().__init__(message, details)


class StoreError(PMSheetError):
    """Base exception for failures reported by an external store."""

    error_kind = "external"

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        details: str | None = None,
        original_error: Exception | None = None,
    ):
        self.operation = operation
        self.original_error = original_error
        super().__init__(message, details)

    def __str__(self) -> str:
        parts = [self.message]
        if self.operation:
            parts.append(f"during {self.operation}")
        if self.details:
            parts.append(self.details)
        return " - ".join(parts)


class PropertyStoreError(StoreError):
    """Raised when the shared property store cannot be read or written."""


class TableStoreError(StoreError):
    """Raised when the tabular store fails for a non-structural reason."""


class FileStoreError(StoreError):
    """Raised when the hierarchical file store fails.

    The message keeps the wording of the underlying failure so that retry
    classification by message substring still works after wrapping.
    """


class StructuralError(PMSheetError):
    """Raised when an expected table or column is missing.

    Structural errors are always fatal and never retried.
    """

    error_kind = "structural"

    def __init__(self, message: str, table: str | None = None, column: str | None = None, details: str | None = None):
        self.table = table
        self.column = column
        super().__init__(message, details)


class ResourceBusyError(PMSheetError):
    """Raised when a granular lock could not be acquired within its timeout.

    Recoverable: the caller should wait and retry later.
    """

    error_kind = "busy"

    def __init__(self, resource: str, timeout_ms: int | None = None):
        self.resource = resource
        self.timeout_ms = timeout_ms
        details = f"waited {timeout_ms}ms" if timeout_ms is not None else None
        super().__init__(f"Resource '{resource}' is being modified by someone else, try again shortly", details)


class ConflictError(PMSheetError):
    """Raised when an optimistic-concurrency check rejects a write.

    Recoverable: the caller should reload the record and reapply the edit.

    Attributes:
        persisted_ms: Last-modified timestamp currently stored
        client_ms: Last-modified timestamp the client based its edit on
    """

    error_kind = "conflict"

    def __init__(self, resource: str, persisted_ms: int | None = None, client_ms: int | None = None):
        self.resource = resource
        self.persisted_ms = persisted_ms
        self.client_ms = client_ms
        super().__init__(
            f"'{resource}' was changed by someone else since you loaded it, reload and retry",
            f"stored={persisted_ms} yours={client_ms}",
        )


class TransientExternalError(StoreError):
    """Raised for rate-limit, quota, timeout, or availability failures."""

    error_kind = "transient_external"


class IntegrityError(PMSheetError):
    """Raised when a write would break a parent/child table relationship."""

    error_kind = "integrity"

    def __init__(self, message: str, table: str | None = None, reference: str | None = None, details: str | None = None):
        self.table = table
        self.reference = reference
        super().__init__(message, details)


class InvalidTimestampError(PMSheetError, ValueError):
    """Raised when a last-modified value cannot be normalized to epoch milliseconds."""

    error_kind = "structural"

    def __init__(self, value: object):
        self.value = value
        super().__init__("Unrecognized timestamp value", repr(value))


class OperationAbortedError(PMSheetError):
    """Raised by the coordinator when a write ends in the aborted-error state.

    Attributes:
        resource: Lock key of the entity being written
        error_kind: Category copied from the underlying cause
        provisioning: ProvisioningOutcome when provisioning ran before the failure
    """

    def __init__(
        self,
        resource: str,
        cause: BaseException,
        provisioning: object | None = None,
    ):
        self.resource = resource
        self.cause = cause
        self.provisioning = provisioning
        self.error_kind = getattr(cause, "error_kind", "internal")
        details = str(cause)
        if provisioning is not None and not getattr(provisioning, "ok", True):
            details = f"{details} (provisioning incomplete: {getattr(provisioning, 'error', '')})"
        super().__init__(f"Write to '{resource}' failed", details)
