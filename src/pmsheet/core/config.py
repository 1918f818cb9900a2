"""Configuration dataclasses for pmsheet.

These dataclasses centralize all configuration options for type safety
and easy testing. They can be created from environment variables (with
``.env`` support via python-dotenv) or used directly in code.
"""

from __future__ import annotations

import getpass
import logging
import math
import os
import socket
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

ENV_PREFIX = "PMSHEET_"


def _parse_env_numeric(value: str | None, cast: Callable[[str], Any]) -> Any | None:
    """Parse an environment value, returning None when invalid."""
    if value is None:
        return None
    try:
        parsed = cast(value)
    except (TypeError, ValueError):
        return None
    if isinstance(parsed, float) and not math.isfinite(parsed):
        return None
    return parsed


def _parse_env_bool(value: str | None) -> bool | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off"):
        return False
    return None


def default_owner_identity() -> str:
    """Identity recorded on locks when none is configured: ``user@host``."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}"


@dataclass
class LockConfig:
    """Configuration for granular and global locks.

    Attributes:
        stale_threshold_ms: Age after which a lock is presumed abandoned (default: 120000)
        acquire_timeout_ms: How long a writer polls for a granular lock (default: 10000)
        use_global_lock: Also hold the coarse process-wide lock around writes (default: False)
        global_timeout_ms: How long a writer waits for the global lock (default: 30000)
        global_max_hold_ms: Age after which a global lease is reclaimable (default: 30000)
    """

    stale_threshold_ms: int = 120_000
    acquire_timeout_ms: int = 10_000
    use_global_lock: bool = False
    global_timeout_ms: int = 30_000
    global_max_hold_ms: int = 30_000


@dataclass
class StorageConfig:
    """Where the local stand-ins for the hosted stores keep their data.

    Attributes:
        data_dir: Root directory (default: ./pmsheet_data)
    """

    data_dir: Path = field(default_factory=lambda: Path("pmsheet_data"))

    @property
    def properties_dir(self) -> Path:
        return self.data_dir / "properties"

    @property
    def tables_dir(self) -> Path:
        return self.data_dir / "tables"

    @property
    def files_dir(self) -> Path:
        return self.data_dir / "files"

    @property
    def global_lock_path(self) -> Path:
        return self.data_dir / "locks" / "global.lock"


@dataclass
class LogConfig:
    """Configuration for logging behavior.

    Attributes:
        level: Logging level string (default: "INFO")
        log_format: "text" or "json" (default: "text")
        log_dir: Directory for rotating log files, None for console only
    """

    level: str = "INFO"
    log_format: str = "text"
    log_dir: Path | None = None


@dataclass
class AppConfig:
    """Master configuration for the service and CLI."""

    owner: str = field(default_factory=default_owner_identity)
    locks: LockConfig = field(default_factory=LockConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    log: LogConfig = field(default_factory=LogConfig)

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        dotenv_path: str | Path | None = None,
        logger: logging.Logger | None = None,
    ) -> AppConfig:
        """Build configuration from ``PMSHEET_*`` variables.

        A ``.env`` file is loaded first when reading the real process
        environment; existing variables are not overridden. Invalid values
        are logged and the default is kept.
        """
        log = logger or logging.getLogger(__name__)
        if environ is None:
            if load_dotenv(dotenv_path=dotenv_path):
                log.debug(".env file found and loaded")
            environ = os.environ

        config = cls()

        owner = environ.get(f"{ENV_PREFIX}OWNER", "").strip()
        if owner:
            config.owner = owner

        data_dir = environ.get(f"{ENV_PREFIX}DATA_DIR", "").strip()
        if data_dir:
            config.storage.data_dir = Path(data_dir)

        for attr in ("stale_threshold_ms", "acquire_timeout_ms", "global_timeout_ms", "global_max_hold_ms"):
            env_name = f"{ENV_PREFIX}{attr.upper()}"
            raw = environ.get(env_name)
            if raw is None:
                continue
            parsed = _parse_env_numeric(raw, int)
            if parsed is not None and parsed > 0:
                setattr(config.locks, attr, parsed)
            else:
                log.warning(
                    f"Ignoring invalid {env_name}={raw!r}; using default {getattr(config.locks, attr)}"
                )

        raw_global = environ.get(f"{ENV_PREFIX}USE_GLOBAL_LOCK")
        parsed_global = _parse_env_bool(raw_global)
        if parsed_global is not None:
            config.locks.use_global_lock = parsed_global
        elif raw_global is not None:
            log.warning(f"Ignoring invalid {ENV_PREFIX}USE_GLOBAL_LOCK={raw_global!r}")

        level = environ.get(f"{ENV_PREFIX}LOG_LEVEL", environ.get("LOG_LEVEL", "")).strip()
        if level:
            config.log.level = level.upper()
        log_format = environ.get(f"{ENV_PREFIX}LOG_FORMAT", "").strip().lower()
        if log_format in ("text", "json"):
            config.log.log_format = log_format
        elif log_format:
            log.warning(f"Ignoring invalid {ENV_PREFIX}LOG_FORMAT={log_format!r}; using text")
        log_dir = environ.get(f"{ENV_PREFIX}LOG_DIR", "").strip()
        if log_dir:
            config.log.log_dir = Path(log_dir)

        return config
