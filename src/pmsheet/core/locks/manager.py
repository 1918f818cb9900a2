"""Granular advisory locks over the shared property store."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from enum import Enum

from pmsheet.core.clock import now_ms
from pmsheet.core.constants import (
    DEFAULT_LOCK_TIMEOUT_MS,
    DEFAULT_STALE_THRESHOLD_MS,
    LOCK_BACKOFF_BASE_MS,
    LOCK_BACKOFF_MAX_MS,
    LOCK_BACKOFF_MULTIPLIER,
    LOCK_KEY_PREFIX,
)
from pmsheet.core.exceptions import ResourceBusyError
from pmsheet.core.locks.records import LockKey, LockRecord, ResourceKind
from pmsheet.store.properties import PropertyStore

# Immediate re-attempts after reclaiming stale records before falling back to backoff
_MAX_RECLAIMS_PER_ATTEMPT = 3


class AcquireStatus(Enum):
    ACQUIRED = "acquired"
    CONTENDED = "contended"
    RECLAIMED = "reclaimed"


def lock_backoff_ms(attempt: int) -> float:
    """Polling delay before re-attempt ``attempt`` (0-based)."""
    return min(LOCK_BACKOFF_BASE_MS * (LOCK_BACKOFF_MULTIPLIER**attempt), LOCK_BACKOFF_MAX_MS)


class LockManager:
    """Named, scoped advisory locks keyed by (resource kind, resource id).

    Acquisition polls the store with exponential backoff. When the store has
    a native conditional write (``set_if_absent``) it is used; otherwise the
    manager writes its record and re-reads the key to confirm the value is
    still its own. That re-read narrows but does not close the window in
    which two callers can both believe they hold the lock.

    Args:
        store: Shared property store holding the lock records
        owner: Identity recorded on every lock this manager takes
        stale_threshold_ms: Age after which any caller may reclaim a lock
        default_timeout_ms: Timeout used when ``try_acquire`` gets none
        use_conditional_writes: Prefer ``set_if_absent`` when the store has it
        clock: Returns current epoch milliseconds
        sleep: Suspends the caller for the given number of seconds
    """

    def __init__(
        self,
        store: PropertyStore,
        owner: str,
        *,
        stale_threshold_ms: int = DEFAULT_STALE_THRESHOLD_MS,
        default_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
        use_conditional_writes: bool = True,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        if not owner:
            raise ValueError("owner identity is required")
        self.store = store
        self.owner = owner
        self.stale_threshold_ms = max(1, stale_threshold_ms)
        self.default_timeout_ms = max(0, default_timeout_ms)
        self.use_conditional_writes = use_conditional_writes
        self._clock = clock
        self._sleep = sleep
        self.logger = logger or logging.getLogger(__name__)
        # storage key -> token of each record this manager wrote and still holds
        self._tokens: dict[str, str] = {}

    @staticmethod
    def key_for(kind: ResourceKind | str, resource_id: str) -> LockKey:
        return LockKey(ResourceKind.parse(kind), resource_id)

    def try_acquire(self, kind: ResourceKind | str, resource_id: str, timeout_ms: int | None = None) -> bool:
        """Poll for the lock until acquired or ``timeout_ms`` elapses.

        Returns False on timeout; never raises for contention. Failures of
        the store itself propagate.
        """
        key = self.key_for(kind, resource_id)
        timeout = self.default_timeout_ms if timeout_ms is None else max(0, timeout_ms)
        deadline = self._clock() + timeout
        attempt = 0
        reclaims = 0

        while True:
            status = self._attempt(key)
            if status is AcquireStatus.ACQUIRED:
                if attempt:
                    self.logger.debug("Acquired lock %s after %d waits", key, attempt)
                return True
            if status is AcquireStatus.RECLAIMED and reclaims < _MAX_RECLAIMS_PER_ATTEMPT:
                reclaims += 1
                continue

            remaining = deadline - self._clock()
            if remaining <= 0:
                self.logger.info("Timed out after %dms waiting for lock %s", timeout, key)
                return False
            delay_ms = min(lock_backoff_ms(attempt), remaining)
            self._sleep(delay_ms / 1000)
            attempt += 1
            reclaims = 0

    def release(self, kind: ResourceKind | str, resource_id: str) -> bool:
        """Delete the lock if this manager holds it.

        A record carrying a token is only removed when the token is the one
        this manager wrote, so a caller whose lock went stale and was
        reclaimed cannot delete the new holder's record even when both share
        an owner identity. Records without a token fall back to an owner
        match.

        Returns True when a record was removed.
        """
        key = self.key_for(kind, resource_id)
        storage_key = key.storage_key
        expected_token = self._tokens.pop(storage_key, None)
        raw = self.store.get(storage_key)
        if raw is None:
            self.logger.debug("Lock %s already released", key)
            return False

        record = LockRecord.parse(raw)
        if record is None:
            # Unreadable record cannot be attributed to anyone; removing it is the last resort.
            self.logger.warning("Removing unreadable lock record for %s during release", key)
            self.store.delete(storage_key)
            return True

        if record.owner != self.owner:
            self.logger.warning(
                "Not releasing lock %s: held by '%s', not '%s'",
                key,
                record.owner,
                self.owner,
            )
            return False
        if record.token and record.token != expected_token:
            self.logger.warning("Not releasing lock %s: it was reclaimed and is now held by another caller", key)
            return False

        if not self._delete_if_unchanged(storage_key, raw):
            self.logger.debug("Lock %s changed hands during release", key)
            return False
        self.logger.debug("Released lock %s", key)
        return True

    def is_locked(self, kind: ResourceKind | str, resource_id: str) -> bool:
        """True iff a readable, unexpired lock record exists."""
        record = self.read_record(kind, resource_id)
        return record is not None and not record.is_stale(self._clock(), self.stale_threshold_ms)

    def read_record(self, kind: ResourceKind | str, resource_id: str) -> LockRecord | None:
        """Read lock metadata for diagnostics."""
        key = self.key_for(kind, resource_id)
        return LockRecord.parse(self.store.get(key.storage_key))

    def list_locks(self) -> list[tuple[str, LockRecord | None]]:
        """Every key in the lock namespace with its parsed record (None if unreadable)."""
        return [
            (storage_key, LockRecord.parse(self.store.get(storage_key)))
            for storage_key in self.store.list_keys(LOCK_KEY_PREFIX)
        ]

    def clean_expired_locks(self) -> int:
        """Delete stale or unreadable lock records; returns how many were removed."""
        now = self._clock()
        removed = 0
        for storage_key in self.store.list_keys(LOCK_KEY_PREFIX):
            raw = self.store.get(storage_key)
            if raw is None:
                continue
            record = LockRecord.parse(raw)
            if record is not None and not record.is_stale(now, self.stale_threshold_ms):
                continue
            if self._delete_if_unchanged(storage_key, raw):
                removed += 1
        if removed:
            self.logger.info("Removed %d expired lock(s)", removed)
        return removed

    @contextmanager
    def hold(
        self, kind: ResourceKind | str, resource_id: str, timeout_ms: int | None = None
    ) -> Iterator[LockKey]:
        """Hold a lock for the duration of a ``with`` block.

        Raises:
            ResourceBusyError: The lock was not acquired within the timeout
        """
        key = self.key_for(kind, resource_id)
        timeout = self.default_timeout_ms if timeout_ms is None else timeout_ms
        if not self.try_acquire(key.kind, key.resource_id, timeout):
            raise ResourceBusyError(str(key), timeout)
        try:
            yield key
        finally:
            self.release(key.kind, key.resource_id)

    def _attempt(self, key: LockKey) -> AcquireStatus:
        storage_key = key.storage_key
        raw = self.store.get(storage_key)
        if raw is not None:
            existing = LockRecord.parse(raw)
            if existing is None:
                self.logger.warning("Reclaiming unreadable lock record for %s", key)
                self._delete_if_unchanged(storage_key, raw)
                return AcquireStatus.RECLAIMED
            if existing.is_stale(self._clock(), self.stale_threshold_ms):
                self.logger.info(
                    "Reclaiming stale lock %s held by '%s' (age %dms)",
                    key,
                    existing.owner,
                    existing.age_ms(self._clock()),
                )
                self._delete_if_unchanged(storage_key, raw)
                return AcquireStatus.RECLAIMED
            return AcquireStatus.CONTENDED

        record = LockRecord(
            resource_kind=key.kind.value,
            resource_id=key.resource_id,
            owner=self.owner,
            acquired_at_ms=self._clock(),
            token=uuid.uuid4().hex,
        )
        value = record.serialize()

        set_if_absent = getattr(self.store, "set_if_absent", None)
        if self.use_conditional_writes and callable(set_if_absent):
            if not set_if_absent(storage_key, value):
                return AcquireStatus.CONTENDED
            self._tokens[storage_key] = record.token
            return AcquireStatus.ACQUIRED

        # Check-then-set: another caller may have written between our read and
        # write. Re-reading catches the writer that landed last, not one that
        # lands after this re-read.
        self.store.set(storage_key, value)
        if self.store.get(storage_key) != value:
            self.logger.debug("Lost write race for lock %s", key)
            return AcquireStatus.CONTENDED
        self._tokens[storage_key] = record.token
        return AcquireStatus.ACQUIRED

    def _delete_if_unchanged(self, storage_key: str, expected_raw: str) -> bool:
        """Delete ``storage_key`` only if it still holds ``expected_raw``.

        Narrows the window where a reclaimer deletes a lock someone else has
        just taken over; the read and delete are still two operations.
        """
        if self.store.get(storage_key) != expected_raw:
            return False
        self.store.delete(storage_key)
        return True
