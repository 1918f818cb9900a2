"""Projects module - the business operations built on the concurrency layer.

- Row models for projects, tasks and assignments
- Generated task lists
- Referential integrity between the tables
- Folder provisioning
- ``ProjectService``, the entry point used by the UI glue and the CLI
"""

from pmsheet.projects.integrity import Dependency, DependencyMap, OnDelete, Orphan, ReferentialIntegrityValidator
from pmsheet.projects.models import Assignment, Project, Task
from pmsheet.projects.provisioning import FolderProvisioner
from pmsheet.projects.service import EDITABLE_FIELDS, ProjectService, build_service
from pmsheet.projects.tasks import build_task_rows, project_tasks, regenerate_tasks

__all__ = [
    "EDITABLE_FIELDS",
    "Assignment",
    "Dependency",
    "DependencyMap",
    "FolderProvisioner",
    "OnDelete",
    "Orphan",
    "Project",
    "ProjectService",
    "ReferentialIntegrityValidator",
    "Task",
    "build_service",
    "build_task_rows",
    "project_tasks",
    "regenerate_tasks",
]
