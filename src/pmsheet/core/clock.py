"""Wall-clock helpers shared by locks, the guard and the stores."""

import time
from datetime import UTC, datetime


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return time.time_ns() // 1_000_000


def ms_to_datetime(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, UTC)
