"""Retry-with-backoff for operations against unreliable external stores.

The file store is rate limited and eventually consistent; the table store
times out now and then. Both are wrapped in a ``RetryExecutor`` with a
``RetryPolicy`` that decides, per error, whether another attempt is worth it.

The executor does not make operations idempotent. Callers that create
things must check for an existing result first (see the folder provisioner).
"""

from __future__ import annotations

import functools
import logging
import math
import os
import random
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, replace
from typing import Any, TypeVar

from pmsheet.core.constants import (
    FILE_STORE_RETRYABLE_TERMS,
    RETRY_JITTER_MS,
    TABLE_STORE_RETRYABLE_TERMS,
)
from pmsheet.core.exceptions import (
    ConfigurationError,
    ConflictError,
    IntegrityError,
    ResourceBusyError,
    StructuralError,
    TransientExternalError,
)

T = TypeVar("T")

# Never retried regardless of their message
NON_RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    StructuralError,
    ConflictError,
    ResourceBusyError,
    IntegrityError,
)


def make_message_classifier(
    terms: Iterable[str],
    retryable_types: tuple[type[BaseException], ...] = (TimeoutError, ConnectionError, TransientExternalError),
) -> Callable[[BaseException], bool]:
    """Build a retry-eligibility predicate.

    An error is retryable when it is one of ``retryable_types`` or its
    message contains one of ``terms`` (case-insensitive), unless it belongs
    to ``NON_RETRYABLE_EXCEPTIONS``.
    """
    lowered = tuple(term.lower() for term in terms)

    def is_retryable(error: BaseException) -> bool:
        if isinstance(error, NON_RETRYABLE_EXCEPTIONS):
            return False
        if isinstance(error, retryable_types):
            return True
        message = str(error).lower()
        return any(term in message for term in lowered)

    return is_retryable


def _never_retry(error: BaseException) -> bool:
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try, how long to wait, and which errors qualify.

    Attributes:
        max_attempts: Total attempts including the first (>= 1)
        base_delay_ms: Delay before the second attempt, doubled each time
        max_delay_ms: Cap on any single delay
        is_retryable: Predicate deciding whether an error deserves another attempt
        jitter_ms: Upper bound of the uniform random delay added to each wait
        name: Label used in log messages
    """

    max_attempts: int = 3
    base_delay_ms: int = 500
    max_delay_ms: int = 4000
    is_retryable: Callable[[BaseException], bool] = _never_retry
    jitter_ms: int = RETRY_JITTER_MS
    name: str = "default"

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1", field="max_attempts")
        if self.base_delay_ms < 0 or self.jitter_ms < 0:
            raise ConfigurationError("retry delays must not be negative", field="base_delay_ms")
        if self.max_delay_ms < self.base_delay_ms:
            raise ConfigurationError(
                f"max_delay_ms ({self.max_delay_ms}) is below base_delay_ms ({self.base_delay_ms})",
                field="max_delay_ms",
            )

    def delay_ms(self, attempt: int, jitter: float = 0.0) -> float:
        """Wait after failed attempt ``attempt`` (1-based)."""
        return min(self.base_delay_ms * (2 ** (attempt - 1)) + jitter, self.max_delay_ms)

    def with_overrides(self, **changes: Any) -> RetryPolicy:
        return replace(self, **changes)


FILE_STORE_RETRY_POLICY = RetryPolicy(
    max_attempts=5,
    base_delay_ms=1000,
    max_delay_ms=16_000,
    is_retryable=make_message_classifier(FILE_STORE_RETRYABLE_TERMS),
    name="file-store",
)

TABLE_STORE_RETRY_POLICY = RetryPolicy(
    max_attempts=3,
    base_delay_ms=500,
    max_delay_ms=4000,
    is_retryable=make_message_classifier(TABLE_STORE_RETRYABLE_TERMS, retryable_types=(TimeoutError, TransientExternalError)),
    name="table-store",
)


def _parse_env_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(parsed) or parsed < 0:
        return None
    return int(parsed)


def effective_policy(
    policy: RetryPolicy,
    environ: Mapping[str, str] | None = None,
    logger: logging.Logger | None = None,
) -> RetryPolicy:
    """Return ``policy`` with ``PMSHEET_<NAME>_RETRY_*`` overrides applied.

    ``<NAME>`` is the policy name upper-cased with ``-`` replaced by ``_``,
    e.g. ``PMSHEET_FILE_STORE_RETRY_MAX_ATTEMPTS``. Invalid values are
    logged and ignored.
    """
    env = os.environ if environ is None else environ
    log = logger or logging.getLogger(__name__)
    prefix = f"PMSHEET_{policy.name.upper().replace('-', '_')}_RETRY_"
    changes: dict[str, int] = {}
    for suffix, attr in (
        ("MAX_ATTEMPTS", "max_attempts"),
        ("BASE_DELAY_MS", "base_delay_ms"),
        ("MAX_DELAY_MS", "max_delay_ms"),
    ):
        raw = env.get(prefix + suffix)
        if raw is None:
            continue
        parsed = _parse_env_int(raw)
        if parsed is None:
            log.warning(f"Ignoring invalid {prefix}{suffix}={raw!r}; using default {getattr(policy, attr)}")
            continue
        changes[attr] = parsed
    if not changes:
        return policy
    try:
        return policy.with_overrides(**changes)
    except ConfigurationError as e:
        log.warning(f"Ignoring retry overrides for {policy.name}: {e}")
        return policy


class ErrorMessageHelper:
    """Provides contextual error messages with actionable suggestions."""

    _SUGGESTIONS: tuple[tuple[tuple[str, ...], str, tuple[str, ...]], ...] = (
        (
            ("rate limit", "ratelimit", "quota", "too many"),
            "The storage service is throttling requests",
            (
                "Wait a few minutes before retrying",
                "Avoid bulk edits while other users are saving",
                "Raise PMSHEET_<STORE>_RETRY_MAX_DELAY_MS to back off longer",
            ),
        ),
        (
            ("timeout", "timed out"),
            "The storage service took too long to answer",
            (
                "Retry the operation; it is usually transient",
                "Check network connectivity to the storage host",
            ),
        ),
        (
            ("unavailable", "backend error", "internal error", "connection"),
            "The storage service is temporarily unavailable",
            (
                "Wait a few minutes and retry",
                "Check the provider's status page",
            ),
        ),
    )

    @classmethod
    def get_store_error_message(cls, error: BaseException, operation: str, attempts: int) -> str:
        """Explain a terminal store failure after retries were exhausted."""
        message = str(error)
        lowered = message.lower()
        reason = "An unexpected storage error occurred"
        suggestions: tuple[str, ...] = ("Review logs for more details", "Retry the operation later")
        for terms, candidate_reason, candidate_suggestions in cls._SUGGESTIONS:
            if any(term in lowered for term in terms):
                reason, suggestions = candidate_reason, candidate_suggestions
                break

        output = [
            f"{'=' * 60}",
            f"{operation} failed after {attempts} attempt(s)",
            f"{'=' * 60}",
            f"Error details: {type(error).__name__}: {message}",
            "",
            "Why this happened:",
            f"  {reason}",
            "",
            "How to fix it:",
        ]
        for i, suggestion in enumerate(suggestions, 1):
            output.append(f"  {i}. {suggestion}")
        return "\n".join(output)


class RetryExecutor:
    """Invoke an operation up to ``policy.max_attempts`` times.

    Non-retryable errors are rethrown at once. Retryable ones are followed by
    a sleep of ``min(base * 2**(attempt-1) + jitter, max)`` where jitter is
    uniform in ``[0, policy.jitter_ms)``, to spread out concurrent retries.
    Once the budget is exhausted the last error is rethrown unchanged.

    There is no way to cancel an execution early; it runs until success or
    until the attempt budget is spent.

    Example:
        executor = RetryExecutor()
        folder = executor.execute(
            lambda: store.create_folder(root, "Apollo"),
            FILE_STORE_RETRY_POLICY,
            operation_name="create_folder",
        )
    """

    def __init__(
        self,
        *,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self._sleep = sleep
        self._rng = rng or random.Random()
        self.logger = logger or logging.getLogger(__name__)

    def execute(
        self,
        operation: Callable[[], T],
        policy: RetryPolicy,
        *,
        operation_name: str | None = None,
    ) -> T:
        name = operation_name or getattr(operation, "__name__", "operation")

        for attempt in range(1, policy.max_attempts + 1):
            try:
                result = operation()
            except Exception as e:
                if not policy.is_retryable(e):
                    self.logger.error(f"{name} failed with non-retryable error: {e!s}")
                    raise
                if attempt == policy.max_attempts:
                    self.logger.error(f"All {policy.max_attempts} attempts failed for {name}")
                    self.logger.error("\n" + ErrorMessageHelper.get_store_error_message(e, name, attempt))
                    raise

                jitter = self._rng.uniform(0, policy.jitter_ms) if policy.jitter_ms else 0.0
                delay_ms = policy.delay_ms(attempt, jitter)
                self.logger.warning(
                    f"{name} attempt {attempt}/{policy.max_attempts} failed: {e!s}. "
                    f"Retrying in {delay_ms / 1000:.1f}s..."
                )
                self._sleep(delay_ms / 1000)
                continue

            if attempt > 1:
                self.logger.info(f"{name} succeeded on attempt {attempt}/{policy.max_attempts}")
            return result

        # Unreachable: the last attempt always returns or raises.
        raise RuntimeError(f"Retry loop exited unexpectedly for {name}")


def retry_with_backoff(
    policy: RetryPolicy,
    *,
    executor: RetryExecutor | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Decorator form of :meth:`RetryExecutor.execute`.

    Example:
        @retry_with_backoff(TABLE_STORE_RETRY_POLICY)
        def load_projects():
            return store.read_table("Projects")
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            runner = executor or RetryExecutor()
            return runner.execute(lambda: func(*args, **kwargs), policy, operation_name=func.__name__)

        return wrapper

    return decorator
