"""Logging setup for pmsheet.

Coordinated writes log through :func:`with_log_context`, which pins the lock
key, request id and operation name onto every record. The text formatter
prints those as a trailing ``[key=value ...]`` block, the JSON formatter as
top-level fields. Credentials in messages or fields are masked on the way out.
"""

import contextlib
import json
import logging
import re
import sys
from collections.abc import Iterator
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FILE_MAX_BYTES: int = 10 * 1024 * 1024
LOG_FILE_BACKUP_COUNT: int = 5
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
TEXT_LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"

MASK = "[REDACTED]"

# Attributes every LogRecord has; anything else arrived through ``extra``.
_STANDARD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}

_CREDENTIAL_WORDS = ("password", "secret", "token", "authorization", "apikey")
_CREDENTIAL_ASSIGNMENT = re.compile(
    r"""\b(?P<name>password|secret|token|authorization|api[_-]?key)\b
        (?P<sep>\s*[:=]\s*)
        (?:"[^"]*"|'[^']*'|[^\s,;\]}]+)""",
    re.IGNORECASE | re.VERBOSE,
)


def is_credential_name(name: str) -> bool:
    """True for field names such as ``api_token`` or ``client-secret``."""
    words = re.split(r"[^a-z0-9]+", name.lower())
    return "apikey" in "".join(words) or any(word in _CREDENTIAL_WORDS for word in words)


def mask_credentials(text: str) -> str:
    """Replace the value of every ``password=...``-style pair in ``text``."""
    return _CREDENTIAL_ASSIGNMENT.sub(lambda m: f"{m.group('name')}{m.group('sep')}{MASK}", text)


def _render_message(record: logging.LogRecord) -> str:
    try:
        return record.getMessage()
    except Exception:
        # Mismatched %-args must not take the caller down.
        return f"{record.msg} [unformattable args: {record.args!r}]"


def _extra_items(record: logging.LogRecord) -> Iterator[tuple[str, object]]:
    for name, value in record.__dict__.items():
        if name in _STANDARD_ATTRS or name.startswith("_"):
            continue
        yield name, MASK if is_credential_name(name) else value


class SensitiveDataFilter(logging.Filter):
    """Masks credentials in the message and in ``extra`` fields, in place.

    The message is rendered first so values hidden in ``args`` are masked
    too; ``args`` is cleared afterwards.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = mask_credentials(_render_message(record))
        record.args = ()
        for name, value in list(_extra_items(record)):
            record.__dict__[name] = value
        return True


class ContextFormatter(logging.Formatter):
    """Plain-text lines with the record's context fields appended."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = sorted(_extra_items(record))
        if context:
            line += " [" + " ".join(f"{name}={value}" for name, value in context) + "]"
        return line


class JSONFormatter(logging.Formatter):
    """One JSON object per line; context fields become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": mask_credentials(_render_message(record)),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
            "process": record.process,
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(_extra_items(record))
        return json.dumps(entry, default=str)


class ContextLoggerAdapter(logging.LoggerAdapter):
    """Adapter whose fixed context is combined with per-call ``extra``."""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def with_log_context(
    logger: logging.Logger | logging.LoggerAdapter, **context: object
) -> logging.Logger | logging.LoggerAdapter:
    """Wrap ``logger`` so every record carries ``context``.

    Wrapping an adapter again merges its fields into one flat adapter over the
    underlying logger. Fields whose value is None are skipped. Objects that are
    not loggers are returned as they are.
    """
    if not isinstance(logger, (logging.Logger, logging.LoggerAdapter)):
        return logger

    fields: dict[str, object] = {}
    while isinstance(logger, logging.LoggerAdapter):
        fields = {**(logger.extra or {}), **fields}
        logger = logger.logger
    fields.update((name, value) for name, value in context.items() if value is not None)
    return ContextLoggerAdapter(logger, fields)


def flush_logging_handlers() -> None:
    """Flush the root handlers, for instance before the CLI exits."""
    for handler in logging.root.handlers:
        with contextlib.suppress(Exception):
            handler.flush()


def _log_file_path(log_dir: Path) -> Path | None:
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(f"Warning: cannot create log directory {log_dir}: {e}; logging to console only", file=sys.stderr)
        return None
    return log_dir / f"pmsheet_{datetime.now(UTC):%Y%m%d_%H%M%S}.log"


def setup_logging(
    log_level: str | None = None,
    log_format: str = "text",
    log_dir: Path | None = None,
) -> logging.Logger:
    """Configure the root logger for a pmsheet process.

    Replaces any existing root handlers with a stdout handler and, when
    ``log_dir`` is given, a size-rotated file. Every handler masks
    credentials.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL; anything else
            falls back to INFO with a warning on stderr
        log_format: ``"text"`` or ``"json"``
        log_dir: Directory for the log file

    Returns:
        The ``pmsheet`` package logger
    """
    level_name = (log_level or "INFO").upper()
    if level_name not in LOG_LEVELS:
        print(f"Warning: Invalid log level '{log_level}', using INFO", file=sys.stderr)
        level_name = "INFO"
    level = logging.getLevelName(level_name)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file = _log_file_path(log_dir) if log_dir is not None else None
    if log_file is not None:
        handlers.append(RotatingFileHandler(log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUP_COUNT))

    formatter = JSONFormatter() if log_format.lower() == "json" else ContextFormatter(TEXT_LOG_FORMAT)

    root = logging.getLogger()
    for old in root.handlers[:]:
        old.close()
        root.removeHandler(old)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(level)
        handler.addFilter(SensitiveDataFilter())
        root.addHandler(handler)
    root.setLevel(level)

    logger = logging.getLogger("pmsheet")
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
    if log_file is not None:
        logger.info(f"Logging to {log_file}")
    return logger
