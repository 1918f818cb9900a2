"""Locking subsystem for cross-caller coordination.

Granular locks live in the shared property store and are addressed by a
typed (kind, id) key; the global lock is a single host-wide file lock used
only as an explicit fallback.
"""

from pmsheet.core.locks.global_lock import FileGlobalLock, GlobalLock
from pmsheet.core.locks.manager import AcquireStatus, LockManager, lock_backoff_ms
from pmsheet.core.locks.records import LockKey, LockRecord, ResourceKind

__all__ = [
    "AcquireStatus",
    "FileGlobalLock",
    "GlobalLock",
    "LockKey",
    "LockManager",
    "LockRecord",
    "ResourceKind",
    "lock_backoff_ms",
]
