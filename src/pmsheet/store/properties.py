"""Shared string-to-string property stores.

Locks live here. Every execution context on the host sees the same store,
but nothing is transactional: a read followed by a write can interleave
with another caller's read and write. Stores that can do better expose
``set_if_absent``, a native conditional write the lock manager prefers.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import quote, unquote

from pmsheet.core.exceptions import PropertyStoreError


def _require_str(key: object, value: object = "") -> None:
    if not isinstance(key, str) or not isinstance(value, str):
        raise TypeError("property store keys and values must be str; serialize before storing")


@runtime_checkable
class PropertyStore(Protocol):
    """Minimal contract of the hosted property service."""

    def get(self, key: str) -> str | None:
        """Return the stored value or None."""

    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    def delete(self, key: str) -> None:
        """Remove ``key``; removing a missing key is not an error."""

    def list_keys(self, prefix: str = "") -> list[str]:
        """Return every key starting with ``prefix``."""


class InMemoryPropertyStore:
    """Process-local store, shared by reference between simulated callers.

    Args:
        conditional_writes: Expose ``set_if_absent``. Pass False to model a
            host that only offers plain get/set.
    """

    def __init__(self, initial: dict[str, str] | None = None, *, conditional_writes: bool = True):
        self._data: dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()
        if not conditional_writes:
            # Instance attribute shadows the method so getattr() finds nothing callable
            self.set_if_absent = None

    def get(self, key: str) -> str | None:
        _require_str(key)
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        _require_str(key, value)
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        _require_str(key)
        with self._lock:
            self._data.pop(key, None)

    def list_keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def set_if_absent(self, key: str, value: str) -> bool:
        _require_str(key, value)
        with self._lock:
            if key in self._data:
                return False
            self._data[key] = value
            return True

    def snapshot(self) -> dict[str, str]:
        with self._lock:
            return dict(self._data)


def _write_all(fd: int, payload: bytes) -> None:
    """Write complete payload to fd, handling short writes."""
    total_written = 0
    while total_written < len(payload):
        written = os.write(fd, payload[total_written:])
        if written <= 0:
            raise OSError("short write while persisting property")
        total_written += written


class FilePropertyStore:
    """Property store shared by every process on the host via a directory.

    Each key is one file whose name is the percent-encoded key. Replacing a
    value goes through a temp file and ``os.replace`` so readers never see a
    half-written value. ``set_if_absent`` hard-links a temp file into place,
    which fails when the key already exists.
    """

    _TMP_PREFIX = ".tmp-"

    def __init__(self, root: Path):
        self.root = Path(root)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PropertyStoreError("Cannot create property directory", "init", str(self.root), e) from e

    def _path(self, key: str) -> Path:
        return self.root / quote(key, safe="")

    def get(self, key: str) -> str | None:
        _require_str(key)
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PropertyStoreError("Cannot read property", "get", key, e) from e

    def _write_temp(self, value: str) -> str:
        fd, tmp_name = tempfile.mkstemp(prefix=self._TMP_PREFIX, dir=self.root)
        try:
            _write_all(fd, value.encode("utf-8"))
            os.fsync(fd)
        except OSError:
            os.close(fd)
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise
        os.close(fd)
        return tmp_name

    def set(self, key: str, value: str) -> None:
        _require_str(key, value)
        try:
            tmp_name = self._write_temp(value)
        except OSError as e:
            raise PropertyStoreError("Cannot write property", "set", key, e) from e
        try:
            os.replace(tmp_name, self._path(key))
        except OSError as e:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise PropertyStoreError("Cannot write property", "set", key, e) from e

    def set_if_absent(self, key: str, value: str) -> bool:
        """Publish a fully written temp file under ``key`` unless one exists.

        ``os.link`` fails with FileExistsError when the target exists, so
        readers see either nothing or the complete value.
        """
        _require_str(key, value)
        try:
            tmp_name = self._write_temp(value)
        except OSError as e:
            raise PropertyStoreError("Cannot write property", "set_if_absent", key, e) from e
        try:
            os.link(tmp_name, self._path(key))
            return True
        except FileExistsError:
            return False
        except OSError as e:
            raise PropertyStoreError("Cannot create property", "set_if_absent", key, e) from e
        finally:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)

    def delete(self, key: str) -> None:
        _require_str(key)
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise PropertyStoreError("Cannot delete property", "delete", key, e) from e

    def list_keys(self, prefix: str = "") -> list[str]:
        try:
            names = os.listdir(self.root)
        except OSError as e:
            raise PropertyStoreError("Cannot list properties", "list_keys", str(self.root), e) from e
        keys = (unquote(name) for name in names if not name.startswith(self._TMP_PREFIX))
        return sorted(k for k in keys if k.startswith(prefix))
