"""Row models for the project tables."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any

from pmsheet.core.constants import FOLDER_ERROR_SENTINEL, PROJECTS_TABLE, TASKS_TABLE
from pmsheet.core.exceptions import StructuralError
from pmsheet.store.tables import Row, normalize_bool, serialize_cell

PHASE_SEPARATOR = ";"


def _parse_date(value: str, table: str, column: str) -> date | None:
    text = (value or "").strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError as e:
        raise StructuralError(f"Invalid {column} {text!r}", table=table, column=column, details=str(e)) from e


@dataclass
class Project:
    """One row of the Projects table."""
    id: str
    name: str
    owner: str = ""
    status: str = "Planned"
    phases: list[str] = field(default_factory=list)
    start_date: date | None = None
    folder_id: str = ""
    folder_url: str = ""
    created_at: str = ""
    last_modified_at: str = ""

    @property
    def needs_remediation(self) -> bool:
        """Folder provisioning failed and was recorded with the sentinel."""
        return self.folder_id == FOLDER_ERROR_SENTINEL

    @classmethod
    def from_row(cls, row: Row) -> Project:
        phases = [p.strip() for p in row.get("phases", "").split(PHASE_SEPARATOR) if p.strip()]
        return cls(
            id=row["id"],
            name=row.get("name", ""),
            owner=row.get("owner", ""),
            status=row.get("status", "") or "Planned",
            phases=phases,
            start_date=_parse_date(row.get("start_date", ""), PROJECTS_TABLE, "start_date"),
            folder_id=row.get("folder_id", ""),
            folder_url=row.get("folder_url", ""),
            created_at=row.get("created_at", ""),
            last_modified_at=row.get("last_modified_at", ""),
        )

    def to_row(self) -> Row:
        return {
            "id": self.id,
            "name": self.name,
            "owner": self.owner,
            "status": self.status,
            "phases": PHASE_SEPARATOR.join(self.phases),
            "start_date": serialize_cell(self.start_date),
            "folder_id": self.folder_id,
            "folder_url": self.folder_url,
            "created_at": self.created_at,
            "last_modified_at": self.last_modified_at,
        }

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = self.to_row()
        data["phases"] = list(self.phases)
        return data


@dataclass
class Task:
    """One row of the Tasks table, owned by a project."""
    id: str
    project_id: str
    sequence: int
    name: str
    phase: str = ""
    due_date: date | None = None
    completed: bool = False
    created_at: str = ""

    @classmethod
    def from_row(cls, row: Row) -> Task:
        sequence = row.get("sequence", "").strip()
        return cls(
            id=row["id"],
            project_id=row.get("project_id", ""),
            sequence=int(sequence) if sequence else 0,
            name=row.get("name", ""),
            phase=row.get("phase", ""),
            due_date=_parse_date(row.get("due_date", ""), TASKS_TABLE, "due_date"),
            completed=normalize_bool(row.get("completed", "")),
            created_at=row.get("created_at", ""),
        )

    def to_row(self) -> Row:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "sequence": str(self.sequence),
            "name": self.name,
            "phase": self.phase,
            "due_date": serialize_cell(self.due_date),
            "completed": serialize_cell(self.completed),
            "created_at": self.created_at,
        }


@dataclass
class Assignment:
    """A team member attached to a project."""
    id: str
    project_id: str
    assignee: str
    role: str = ""
    created_at: str = ""

    @classmethod
    def from_row(cls, row: Row) -> Assignment:
        return cls(
            id=row["id"],
            project_id=row.get("project_id", ""),
            assignee=row.get("assignee", ""),
            role=row.get("role", ""),
            created_at=row.get("created_at", ""),
        )

    def to_row(self) -> Row:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "assignee": self.assignee,
            "role": self.role,
            "created_at": self.created_at,
        }
