"""Dependent task generation.

A project's task list is derived entirely from its phases and start date.
Whenever those change the list is rebuilt: read the whole Tasks table, drop
the project's rows, add the fresh set and write the table back in a single
batched call. The rebuild is idempotent apart from generated ids and
timestamps, so retrying it after a transient failure is safe.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta

from pmsheet.core.constants import DEFAULT_PHASE_OFFSET_DAYS, DEFAULT_TASK_TEMPLATE, TASKS_TABLE
from pmsheet.projects.models import Project, Task
from pmsheet.store.tables import TabularStore, replace_table_rows, serialize_cell

TaskTemplate = Mapping[str, tuple[tuple[str, ...], int]]


def new_task_id() -> str:
    return f"T-{uuid.uuid4().hex[:12]}"


def build_task_rows(
    project: Project,
    now: datetime,
    *,
    template: TaskTemplate = DEFAULT_TASK_TEMPLATE,
    id_factory: Callable[[], str] = new_task_id,
) -> list[Task]:
    """Compute the task list for ``project``.

    Phases missing from ``template`` get a single review task due
    ``DEFAULT_PHASE_OFFSET_DAYS`` after the start date. A project without
    phases uses every phase of the template in order.
    """
    phases = project.phases or list(template)
    created_at = serialize_cell(now)
    tasks: list[Task] = []
    sequence = 1
    for phase in phases:
        names, offset_days = template.get(phase, ((f"{phase} review",), DEFAULT_PHASE_OFFSET_DAYS))
        due = project.start_date + timedelta(days=offset_days) if project.start_date else None
        for name in names:
            tasks.append(
                Task(
                    id=id_factory(),
                    project_id=project.id,
                    sequence=sequence,
                    name=name,
                    phase=phase,
                    due_date=due,
                    completed=False,
                    created_at=created_at,
                )
            )
            sequence += 1
    return tasks


def regenerate_tasks(
    store: TabularStore,
    project: Project,
    now: datetime,
    *,
    template: TaskTemplate = DEFAULT_TASK_TEMPLATE,
) -> list[Task]:
    """Replace the project's rows in the Tasks table with a fresh set."""
    kept = [row for row in store.read_table(TASKS_TABLE) if row.get("project_id") != project.id]
    tasks = build_task_rows(project, now, template=template)
    replace_table_rows(store, TASKS_TABLE, kept + [task.to_row() for task in tasks])
    return tasks


def project_tasks(store: TabularStore, project_id: str) -> list[Task]:
    """Tasks of one project, ordered by sequence."""
    tasks = [Task.from_row(row) for row in store.read_table(TASKS_TABLE) if row.get("project_id") == project_id]
    return sorted(tasks, key=lambda task: task.sequence)
