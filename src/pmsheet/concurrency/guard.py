"""Optimistic-concurrency check on last-modified timestamps.

The store has no compare-and-swap, so a writer compares the timestamp the
client loaded against the one currently persisted and refuses the write if
they differ by more than a small tolerance. The comparison and the write
that follows are not atomic with each other; the granular lock held around
both is what keeps that window small.
"""

from __future__ import annotations

import math
import re
from datetime import UTC, date, datetime

from pmsheet.core.constants import CONFLICT_TOLERANCE_MS
from pmsheet.core.exceptions import ConflictError, InvalidTimestampError

_NUMERIC_PATTERN = re.compile(r"^[+-]?\d+(\.\d+)?$")


def to_epoch_ms(value: object) -> int | None:
    """Normalize a timestamp in any supported shape to epoch milliseconds.

    Accepts None or blank (returns None), int/float epoch milliseconds,
    numeric strings, ``datetime`` (naive values are taken as UTC), ``date``
    (midnight UTC) and ISO-8601 strings with an optional ``Z`` suffix.

    Raises:
        InvalidTimestampError: The value has none of those shapes
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidTimestampError(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidTimestampError(value)
        return round(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return round(value.timestamp() * 1000)
    if isinstance(value, date):
        return to_epoch_ms(datetime(value.year, value.month, value.day, tzinfo=UTC))
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if _NUMERIC_PATTERN.match(text):
            return round(float(text))
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidTimestampError(value) from None
        return to_epoch_ms(parsed)
    raise InvalidTimestampError(value)


def check_conflict(
    persisted_timestamp: object,
    client_known_timestamp: object,
    tolerance_ms: int = CONFLICT_TOLERANCE_MS,
) -> bool:
    """True when the write must be rejected.

    A missing timestamp on either side means there is no prior version to
    conflict with, so the write is allowed.
    """
    persisted = to_epoch_ms(persisted_timestamp)
    client = to_epoch_ms(client_known_timestamp)
    if persisted is None or client is None:
        return False
    return abs(persisted - client) > tolerance_ms


class OptimisticConcurrencyGuard:
    """Pure timestamp comparison; never touches a store."""

    def __init__(self, tolerance_ms: int = CONFLICT_TOLERANCE_MS):
        if tolerance_ms < 0:
            raise ValueError("tolerance_ms must not be negative")
        self.tolerance_ms = tolerance_ms

    def check_conflict(self, persisted_timestamp: object, client_known_timestamp: object) -> bool:
        return check_conflict(persisted_timestamp, client_known_timestamp, self.tolerance_ms)

    def ensure_no_conflict(self, resource: str, persisted_timestamp: object, client_known_timestamp: object) -> None:
        """Raise ``ConflictError`` if the write must be rejected."""
        if self.check_conflict(persisted_timestamp, client_known_timestamp):
            raise ConflictError(
                resource,
                persisted_ms=to_epoch_ms(persisted_timestamp),
                client_ms=to_epoch_ms(client_known_timestamp),
            )
