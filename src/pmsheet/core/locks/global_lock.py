"""Coarse, process-wide fallback lock.

This is the blunt instrument: one lock for every writer on the host. It is
only taken when ``use_global_lock`` is configured, as an explicit
degradation path around the granular lock's check-then-set race.

Ownership is defined by the OS lock (``fcntl.flock``) where available, and
by an exclusive-create lease file elsewhere. A lease older than the maximum
hold duration is presumed abandoned and reclaimed.
"""

from __future__ import annotations

import contextlib
import errno
import json
import logging
import os
import socket
import time
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from pmsheet.core.clock import now_ms

try:
    import fcntl
except ImportError:  # pragma: no cover - exercised on non-POSIX only
    fcntl = None

_FLOCK_UNSUPPORTED_ERRNOS = {
    err_no
    for err_no in (
        getattr(errno, "ENOTSUP", None),
        getattr(errno, "EOPNOTSUPP", None),
        getattr(errno, "ENOSYS", None),
    )
    if err_no is not None
}

_POLL_INTERVAL_MS = 100


class GlobalLock(Protocol):
    """Single host-wide lock with a bounded wait."""

    def try_acquire(self, timeout_ms: int) -> bool:
        """Wait up to ``timeout_ms`` for the lock."""

    def release(self) -> None:
        """Release the lock if held."""


class FileGlobalLock:
    """Global lock backed by a lock file shared by every process on the host.

    Args:
        lock_path: Path of the lock file
        max_hold_ms: Lease age after which another process may reclaim it
        backend_name: "auto" (flock, lease if unsupported), "fcntl" or "lease"
    """

    def __init__(
        self,
        lock_path: Path,
        *,
        max_hold_ms: int = 30_000,
        backend_name: str = "auto",
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ):
        self.lock_path = Path(lock_path)
        self.max_hold_ms = max(1, max_hold_ms)
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._sleep = sleep
        requested = (backend_name or "auto").strip().lower()
        if requested not in ("auto", "fcntl", "lease"):
            self.logger.warning("Unknown global lock backend '%s'; falling back to auto selection", requested)
            requested = "auto"
        if requested != "lease" and fcntl is None:
            if requested == "fcntl":
                self.logger.warning("Requested fcntl backend is unavailable; falling back to lease backend")
            requested = "lease"
        self.backend = "fcntl" if requested in ("auto", "fcntl") else "lease"
        self._fd: int | None = None
        self._lease_id: str | None = None

    @property
    def acquired(self) -> bool:
        return self._fd is not None

    def try_acquire(self, timeout_ms: int) -> bool:
        if self._fd is not None:
            return True
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        deadline = self._clock() + max(0, timeout_ms)
        while True:
            if self._attempt():
                return True
            remaining = deadline - self._clock()
            if remaining <= 0:
                self.logger.warning("Could not obtain global lock %s within %dms", self.lock_path, timeout_ms)
                return False
            self._sleep(min(_POLL_INTERVAL_MS, remaining) / 1000)

    def release(self) -> None:
        fd = self._fd
        if fd is None:
            return
        self._fd = None
        try:
            if self.backend == "fcntl":
                with contextlib.suppress(OSError):
                    fcntl.flock(fd, fcntl.LOCK_UN)
            elif self._read_lease_id() == self._lease_id:
                with contextlib.suppress(FileNotFoundError):
                    self.lock_path.unlink()
        finally:
            with contextlib.suppress(OSError):
                os.close(fd)
            self._lease_id = None

    def _attempt(self) -> bool:
        if self.backend == "fcntl":
            try:
                return self._attempt_flock()
            except OSError as e:
                if e.errno not in _FLOCK_UNSUPPORTED_ERRNOS:
                    raise
                self.logger.warning("flock unsupported for '%s'; falling back to lease backend", self.lock_path)
                self.backend = "lease"
                self._discard_empty_lock_file()
        return self._attempt_lease()

    def _discard_empty_lock_file(self) -> None:
        # The failed flock attempt leaves an empty file that would block the lease.
        with contextlib.suppress(OSError):
            if self.lock_path.stat().st_size == 0:
                self.lock_path.unlink()

    def _attempt_flock(self) -> bool:
        fd = os.open(str(self.lock_path), os.O_CREAT | os.O_RDWR, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return False
        except OSError as e:
            os.close(fd)
            if e.errno in (errno.EAGAIN, errno.EWOULDBLOCK):
                return False
            raise
        self._fd = fd
        return True

    def _attempt_lease(self) -> bool:
        lease_id = uuid.uuid4().hex
        try:
            fd = os.open(str(self.lock_path), os.O_CREAT | os.O_EXCL | os.O_RDWR, 0o600)
        except FileExistsError:
            if self._lease_is_stale():
                self.logger.info("Reclaiming abandoned global lease %s", self.lock_path)
                with contextlib.suppress(FileNotFoundError):
                    self.lock_path.unlink()
            return False
        payload = {
            "lease_id": lease_id,
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "acquired_at_ms": self._clock(),
        }
        try:
            os.write(fd, json.dumps(payload).encode("utf-8"))
        except OSError:
            os.close(fd)
            with contextlib.suppress(OSError):
                self.lock_path.unlink()
            raise
        self._fd = fd
        self._lease_id = lease_id
        return True

    def _read_lease(self) -> dict | None:
        try:
            data = json.loads(self.lock_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        return data if isinstance(data, dict) else None

    def _read_lease_id(self) -> str | None:
        data = self._read_lease()
        return None if data is None else str(data.get("lease_id", ""))

    def _lease_is_stale(self) -> bool:
        data = self._read_lease()
        if data is None:
            # Unreadable or half-written: judge by file age instead
            try:
                acquired_at = int(self.lock_path.stat().st_mtime * 1000)
            except OSError:
                return False
        else:
            try:
                acquired_at = int(data.get("acquired_at_ms", 0))
            except (TypeError, ValueError):
                return True
        return self._clock() - acquired_at > self.max_hold_ms
