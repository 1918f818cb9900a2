"""Constants and default values for pmsheet.

This module centralizes all magic numbers, table schemas and retry terms
used throughout the application.
"""

# ==================== LOCK DEFAULTS ====================

LOCK_KEY_PREFIX: str = "LOCK_"
DEFAULT_STALE_THRESHOLD_MS: int = 120_000  # Lock presumed abandoned after 2 minutes
DEFAULT_LOCK_TIMEOUT_MS: int = 10_000

# Polling backoff while a granular lock is held by someone else
LOCK_BACKOFF_BASE_MS: int = 200
LOCK_BACKOFF_MULTIPLIER: float = 1.5
LOCK_BACKOFF_MAX_MS: int = 1000

# Resource id of the lock guarding whole-table rewrites of one table
TABLE_LOCK_ID: str = "*"

# ==================== OPTIMISTIC CONCURRENCY ====================

# Absorbs clock and serialization rounding between client and store
CONFLICT_TOLERANCE_MS: int = 1000

# ==================== RETRY DEFAULTS ====================

RETRY_JITTER_MS: int = 200

# Error message fragments that mark a file-store failure as transient
FILE_STORE_RETRYABLE_TERMS: tuple[str, ...] = (
    "rate limit",
    "ratelimit",
    "quota",
    "too many",
    "timeout",
    "timed out",
    "unavailable",
    "backend error",
    "internal error",
    "connection",
    "try again",
)

# The tabular store only retries the narrow set of availability failures
TABLE_STORE_RETRYABLE_TERMS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "unavailable",
    "rate limit",
    "try again",
)

# ==================== PROVISIONING ====================

# Recorded in folder_id when folder creation failed and needs manual remediation
FOLDER_ERROR_SENTINEL: str = "ERROR_DRIVE"
PROJECT_SUBFOLDERS: tuple[str, ...] = ("Documents", "Deliverables")

# ==================== TABLE SCHEMAS ====================

PROJECTS_TABLE: str = "Projects"
TASKS_TABLE: str = "Tasks"
ASSIGNMENTS_TABLE: str = "Assignments"

TABLE_SCHEMAS: dict[str, list[str]] = {
    PROJECTS_TABLE: [
        "id",
        "name",
        "owner",
        "status",
        "phases",
        "start_date",
        "folder_id",
        "folder_url",
        "created_at",
        "last_modified_at",
    ],
    TASKS_TABLE: [
        "id",
        "project_id",
        "sequence",
        "name",
        "phase",
        "due_date",
        "completed",
        "created_at",
    ],
    ASSIGNMENTS_TABLE: [
        "id",
        "project_id",
        "assignee",
        "role",
        "created_at",
    ],
}

# Phase name -> (task names, days after project start the phase is due)
DEFAULT_TASK_TEMPLATE: dict[str, tuple[tuple[str, ...], int]] = {
    "Planning": (("Define scope", "Identify stakeholders"), 7),
    "Execution": (("Kick-off meeting", "Status review"), 30),
    "Closure": (("Final report", "Archive documents"), 45),
}
DEFAULT_PHASE_OFFSET_DAYS: int = 14

PROJECT_STATUSES: tuple[str, ...] = ("Planned", "Active", "On Hold", "Completed", "Cancelled")
