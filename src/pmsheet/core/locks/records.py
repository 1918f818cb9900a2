"""Lock keys and the serialized lock record.

Design principles:
- A lock is addressed by a typed ``LockKey``, never by a hand-built string.
- Kind values contain no ``_``, so ``LOCK_<kind>_<id>`` parses back
  unambiguously even when the id itself contains underscores.
- The record is the only lock truth; there is no in-process ownership state.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from pmsheet.core.constants import LOCK_KEY_PREFIX


class ResourceKind(Enum):
    """Kinds of shared entities that can be locked."""

    PROJECT = "PROJECT"
    TASKS = "TASKS"
    ASSIGNMENTS = "ASSIGNMENTS"
    FOLDER = "FOLDER"

    @classmethod
    def parse(cls, value: ResourceKind | str) -> ResourceKind:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            valid = ", ".join(kind.value for kind in cls)
            raise ValueError(f"Unknown resource kind {value!r} (expected one of: {valid})") from None


@dataclass(frozen=True)
class LockKey:
    """Composite (kind, id) address of one granular lock."""

    kind: ResourceKind
    resource_id: str

    def __post_init__(self) -> None:
        if not isinstance(self.kind, ResourceKind):
            object.__setattr__(self, "kind", ResourceKind.parse(self.kind))
        if not str(self.resource_id).strip():
            raise ValueError("resource_id must be a non-empty string")
        object.__setattr__(self, "resource_id", str(self.resource_id))

    @property
    def storage_key(self) -> str:
        return f"{LOCK_KEY_PREFIX}{self.kind.value}_{self.resource_id}"

    @classmethod
    def from_storage_key(cls, key: str) -> LockKey | None:
        if not key.startswith(LOCK_KEY_PREFIX):
            return None
        kind_value, sep, resource_id = key[len(LOCK_KEY_PREFIX) :].partition("_")
        if not sep or not resource_id:
            return None
        try:
            return cls(ResourceKind(kind_value), resource_id)
        except ValueError:
            return None

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.resource_id}"


@dataclass(frozen=True)
class LockRecord:
    """One held advisory lock as stored in the property store.

    ``token`` is unique per acquisition, so a re-read that returns the exact
    serialized value proves no other writer has replaced it since.
    """

    resource_kind: str
    resource_id: str
    owner: str
    acquired_at_ms: int
    token: str

    @property
    def key(self) -> LockKey:
        return LockKey(ResourceKind.parse(self.resource_kind), self.resource_id)

    def age_ms(self, now_ms: int) -> int:
        return now_ms - self.acquired_at_ms

    def is_stale(self, now_ms: int, stale_threshold_ms: int) -> bool:
        return self.age_ms(now_ms) > stale_threshold_ms

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def serialize(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def parse(cls, raw: str | None) -> LockRecord | None:
        """Return the record encoded in ``raw``, or None if it is unusable."""
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None
        if not isinstance(data, dict):
            return None
        try:
            return cls(
                resource_kind=str(data["resource_kind"]),
                resource_id=str(data["resource_id"]),
                owner=str(data["owner"]),
                acquired_at_ms=int(data["acquired_at_ms"]),
                token=str(data.get("token", "")),
            )
        except (KeyError, TypeError, ValueError):
            return None
