"""Project operations exposed to the UI glue.

Every public method runs one coordinated write and returns the response
dict produced by :meth:`OperationResult.to_response`. Nothing here raises
for an expected failure; callers branch on ``response["success"]`` and
``response["error"]["kind"]``.

Every write is keyed on the project's granular lock, so edits of one
project and of its tasks and team are serialized. The store only offers
whole-table reads and writes, so each plan also names the tables it
rewrites; the coordinator takes their table locks (``TABLE_LOCK_ID``)
before the first write and holds them until the request ends.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from datetime import date, datetime
from typing import Any

from pmsheet.concurrency.coordinator import (
    OperationResult,
    ProvisioningOutcome,
    ResourceOperationCoordinator,
    WritePlan,
)
from pmsheet.concurrency.retry import (
    FILE_STORE_RETRY_POLICY,
    TABLE_STORE_RETRY_POLICY,
    RetryExecutor,
    RetryPolicy,
    effective_policy,
)
from pmsheet.core.clock import ms_to_datetime, now_ms
from pmsheet.core.config import AppConfig
from pmsheet.core.constants import (
    ASSIGNMENTS_TABLE,
    FOLDER_ERROR_SENTINEL,
    PROJECT_STATUSES,
    PROJECTS_TABLE,
    TABLE_LOCK_ID,
    TABLE_SCHEMAS,
)
from pmsheet.core.exceptions import IntegrityError, OperationAbortedError, StructuralError
from pmsheet.core.locks import FileGlobalLock, LockKey, LockManager, ResourceKind
from pmsheet.projects.integrity import ReferentialIntegrityValidator
from pmsheet.projects.models import Assignment, Project
from pmsheet.projects.provisioning import FolderProvisioner
from pmsheet.projects.tasks import regenerate_tasks
from pmsheet.store.files import FileStore, FolderHandle, LocalFileStore
from pmsheet.store.properties import FilePropertyStore
from pmsheet.store.tables import CsvTabularStore, TabularStore, serialize_cell

EDITABLE_FIELDS: tuple[str, ...] = ("name", "owner", "status", "phases", "start_date")

# Changes to these fields invalidate the generated task list
_TASK_SHAPING_FIELDS = frozenset({"phases", "start_date"})


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _coerce_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise StructuralError(f"Invalid start_date {value!r}", table=PROJECTS_TABLE, column="start_date") from None


def _coerce_phases(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [phase.strip() for phase in value.split(";") if phase.strip()]
    return [str(phase).strip() for phase in value if str(phase).strip()]


class ProjectService:
    """Create, edit and delete projects and their dependent rows.

    Args:
        tables: Table-of-record store
        files: Hierarchical file store for project folders
        coordinator: Runs each write under lock and conflict checks
        executor: Retry executor used for individual store calls
        table_policy: Retry policy for tabular store calls
        file_policy: Retry policy for file store calls
        clock: Returns current epoch milliseconds
    """

    def __init__(
        self,
        tables: TabularStore,
        files: FileStore,
        coordinator: ResourceOperationCoordinator,
        *,
        executor: RetryExecutor | None = None,
        table_policy: RetryPolicy = TABLE_STORE_RETRY_POLICY,
        file_policy: RetryPolicy = FILE_STORE_RETRY_POLICY,
        validator: ReferentialIntegrityValidator | None = None,
        provisioner: FolderProvisioner | None = None,
        clock: Callable[[], int] = now_ms,
        logger: logging.Logger | None = None,
    ):
        self.tables = tables
        self.files = files
        self.coordinator = coordinator
        self.executor = executor or coordinator.executor
        self.table_policy = table_policy
        self.file_policy = file_policy
        self.logger = logger or logging.getLogger(__name__)
        self.validator = validator or ReferentialIntegrityValidator(tables, logger=self.logger)
        self.provisioner = provisioner or FolderProvisioner(files, logger=self.logger)
        self._clock = clock

    @property
    def locks(self) -> LockManager:
        return self.coordinator.locks

    # ==================== STORE ACCESS ====================

    def _now(self) -> datetime:
        return ms_to_datetime(self._clock())

    def _table_call(self, operation: Callable[[], Any], name: str) -> Any:
        return self.executor.execute(operation, self.table_policy, operation_name=name)

    def list_projects(self) -> list[Project]:
        rows = self._table_call(lambda: self.tables.read_table(PROJECTS_TABLE), f"read {PROJECTS_TABLE}")
        return [Project.from_row(row) for row in rows]

    def get_project(self, project_id: str) -> Project | None:
        return next((p for p in self.list_projects() if p.id == project_id), None)

    def _require_project(self, project_id: str) -> Project:
        project = self.get_project(project_id)
        if project is None:
            raise IntegrityError(f"Project '{project_id}' does not exist", table=PROJECTS_TABLE, reference=project_id)
        return project

    def _upsert_project_row(self, project: Project) -> None:
        rows = self.tables.read_table(PROJECTS_TABLE)
        index = next((i for i, row in enumerate(rows) if row.get("id") == project.id), None)
        if index is None:
            self.tables.append_row(PROJECTS_TABLE, project.to_row())
        else:
            self.tables.overwrite_range(PROJECTS_TABLE, index, [project.to_row()])

    def _delete_project_row(self, project_id: str) -> bool:
        rows = self.tables.read_table(PROJECTS_TABLE)
        index = next((i for i, row in enumerate(rows) if row.get("id") == project_id), None)
        if index is None:
            return False
        self.tables.delete_row(PROJECTS_TABLE, index)
        return True

    def _save_project(self, project: Project) -> None:
        self._table_call(lambda: self._upsert_project_row(project), f"save {PROJECTS_TABLE}")

    def _regenerate(self, project: Project, now: datetime) -> int:
        tasks = self._table_call(
            lambda: regenerate_tasks(self.tables, project, now),
            f"regenerate tasks for {project.id}",
        )
        return len(tasks)

    def _run(self, plan: WritePlan) -> dict[str, Any]:
        try:
            result = self.coordinator.execute(plan)
        except OperationAbortedError as e:
            return OperationResult.from_error(e).to_response()
        return result.to_response()

    # ==================== OPERATIONS ====================

    def create_project(
        self,
        name: str,
        *,
        owner: str | None = None,
        phases: Any = None,
        start_date: Any = None,
        status: str = "Planned",
        project_id: str | None = None,
    ) -> dict[str, Any]:
        """Create a project, its folder and its generated tasks.

        A folder that cannot be provisioned does not fail the request: the
        project is saved with ``folder_id`` set to ``ERROR_DRIVE`` and can be
        fixed later with :meth:`remediate_provisioning`.
        """
        try:
            if not str(name).strip():
                raise StructuralError("Project name is required", table=PROJECTS_TABLE, column="name")
            if status not in PROJECT_STATUSES:
                raise StructuralError(f"Unknown status {status!r}", table=PROJECTS_TABLE, column="status")
            if project_id == TABLE_LOCK_ID:
                raise StructuralError(f"Project id {project_id!r} is reserved", table=PROJECTS_TABLE, column="id")
            now = serialize_cell(self._now())
            project = Project(
                id=project_id or _new_id("P"),
                name=str(name).strip(),
                owner=owner or self.locks.owner,
                status=status,
                phases=_coerce_phases(phases),
                start_date=_coerce_date(start_date),
                created_at=now,
                last_modified_at=now,
            )
        except StructuralError as e:
            return OperationResult.from_error(e).to_response()

        def check_unique() -> None:
            if self.get_project(project.id) is not None:
                raise IntegrityError(
                    f"Project '{project.id}' already exists", table=PROJECTS_TABLE, reference=project.id
                )

        def persist(provisioning: ProvisioningOutcome | None) -> dict[str, Any]:
            if provisioning is not None and provisioning.ok:
                project.folder_id = provisioning.value.id
                project.folder_url = provisioning.value.url
            elif provisioning is not None:
                project.folder_id = provisioning.sentinel or FOLDER_ERROR_SENTINEL
                project.folder_url = ""
            self._save_project(project)
            task_count = self._regenerate(project, self._now())
            return {**project.to_dict(), "task_count": task_count}

        plan = WritePlan(
            key=LockKey(ResourceKind.PROJECT, project.id),
            persist=persist,
            is_create=True,
            check_integrity=check_unique,
            provision=lambda: self.provisioner.provision(project),
            provisioning_sentinel=FOLDER_ERROR_SENTINEL,
            table_locks=(ResourceKind.PROJECT, ResourceKind.TASKS),
            context={"operation": "create_project"},
        )
        return self._run(plan)

    def update_project(
        self,
        project_id: str,
        changes: Mapping[str, Any],
        client_modified_at: Any,
    ) -> dict[str, Any]:
        """Apply ``changes`` if nobody saved the project since the client loaded it.

        ``client_modified_at`` is the ``last_modified_at`` value the client
        read. Changing phases or the start date regenerates the task list.
        """
        unknown = [name for name in changes if name not in EDITABLE_FIELDS]
        if unknown:
            error = StructuralError(f"Field '{unknown[0]}' cannot be edited", table=PROJECTS_TABLE, column=unknown[0])
            return OperationResult.from_error(error, project_id).to_response()
        if "status" in changes and changes["status"] not in PROJECT_STATUSES:
            error = StructuralError(f"Unknown status {changes['status']!r}", table=PROJECTS_TABLE, column="status")
            return OperationResult.from_error(error, project_id).to_response()

        def persist(provisioning: ProvisioningOutcome | None) -> dict[str, Any]:
            project = self._require_project(project_id)
            for name, value in changes.items():
                if name == "phases":
                    value = _coerce_phases(value)
                elif name == "start_date":
                    value = _coerce_date(value)
                setattr(project, name, value)
            now = self._now()
            project.last_modified_at = serialize_cell(now)
            self._save_project(project)
            data = project.to_dict()
            if _TASK_SHAPING_FIELDS & set(changes):
                data["task_count"] = self._regenerate(project, now)
            return data

        table_locks = (ResourceKind.PROJECT,)
        if _TASK_SHAPING_FIELDS & set(changes):
            table_locks += (ResourceKind.TASKS,)

        plan = WritePlan(
            key=LockKey(ResourceKind.PROJECT, project_id),
            persist=persist,
            client_modified_at=client_modified_at,
            read_persisted_modified_at=lambda: self._require_project(project_id).last_modified_at,
            table_locks=table_locks,
            context={"operation": "update_project"},
        )
        return self._run(plan)

    def delete_project(self, project_id: str, client_modified_at: Any = None) -> dict[str, Any]:
        """Delete a project with its tasks and assignments, and trash its folder."""
        cascades: list = []

        def check_delete() -> None:
            cascades.extend(self.validator.check_can_delete(PROJECTS_TABLE, project_id))

        def persist(provisioning: ProvisioningOutcome | None) -> dict[str, Any]:
            project = self._require_project(project_id)
            removed = 0
            for dep in cascades:
                removed += self._table_call(
                    lambda dep=dep: self.validator.remove_children([dep], project_id),
                    f"remove {dep.child_table} rows of {project_id}",
                )
            self._table_call(
                lambda: self._delete_project_row(project_id),
                f"delete project {project_id}",
            )
            return {
                "id": project_id,
                "removed_rows": removed,
                "folder_trashed": self._trash_folder(project),
            }

        plan = WritePlan(
            key=LockKey(ResourceKind.PROJECT, project_id),
            persist=persist,
            client_modified_at=client_modified_at,
            read_persisted_modified_at=lambda: self._require_project(project_id).last_modified_at,
            check_integrity=check_delete,
            table_locks=(ResourceKind.PROJECT, ResourceKind.TASKS, ResourceKind.ASSIGNMENTS),
            context={"operation": "delete_project"},
        )
        return self._run(plan)

    def _trash_folder(self, project: Project) -> bool:
        if not project.folder_id or project.needs_remediation:
            return False
        handle = FolderHandle(id=project.folder_id, name=self.provisioner.folder_name(project), url=project.folder_url)
        try:
            self.executor.execute(lambda: self.files.trash(handle), self.file_policy, operation_name="trash folder")
        except Exception as e:
            # Rows are already gone; the folder is left for manual cleanup.
            self.logger.warning(f"Could not trash folder {project.folder_id} of deleted project {project.id}: {e}")
            return False
        return True

    def assign_member(self, project_id: str, assignee: str, role: str = "") -> dict[str, Any]:
        """Add ``assignee`` to the project's team, or update their role."""
        if not str(assignee).strip():
            error = StructuralError("Assignee is required", table=ASSIGNMENTS_TABLE, column="assignee")
            return OperationResult.from_error(error, project_id).to_response()
        assignment = Assignment(
            id=_new_id("A"),
            project_id=project_id,
            assignee=str(assignee).strip(),
            role=role,
            created_at=serialize_cell(self._now()),
        )

        def upsert() -> Assignment:
            rows = self.tables.read_table(ASSIGNMENTS_TABLE)
            for index, row in enumerate(rows):
                if row.get("project_id") == project_id and row.get("assignee") == assignment.assignee:
                    existing = Assignment.from_row(row)
                    existing.role = role
                    self.tables.overwrite_range(ASSIGNMENTS_TABLE, index, [existing.to_row()])
                    return existing
            self.tables.append_row(ASSIGNMENTS_TABLE, assignment.to_row())
            return assignment

        def persist(provisioning: ProvisioningOutcome | None) -> dict[str, Any]:
            saved = self._table_call(upsert, f"assign {assignment.assignee}")
            return saved.to_row()

        plan = WritePlan(
            key=LockKey(ResourceKind.PROJECT, project_id),
            persist=persist,
            check_integrity=lambda: self.validator.check_parents_exist(ASSIGNMENTS_TABLE, assignment.to_row()),
            table_locks=(ResourceKind.ASSIGNMENTS,),
            context={"operation": "assign_member"},
        )
        return self._run(plan)

    def projects_needing_remediation(self) -> list[Project]:
        """Projects saved with the folder provisioning sentinel."""
        return [project for project in self.list_projects() if project.needs_remediation]

    def remediate_provisioning(self, project_id: str) -> dict[str, Any]:
        """Retry folder provisioning for a project recorded with ``ERROR_DRIVE``.

        Projects that already have a folder are returned unchanged.
        """

        def persist(provisioning: ProvisioningOutcome | None) -> dict[str, Any]:
            project = self._require_project(project_id)
            if not project.needs_remediation:
                return project.to_dict()
            folder = self.executor.execute(
                lambda: self.provisioner.provision(project),
                self.file_policy,
                operation_name=f"provision folder for {project_id}",
            )
            project.folder_id = folder.id
            project.folder_url = folder.url
            project.last_modified_at = serialize_cell(self._now())
            self._save_project(project)
            self.logger.info(f"Provisioned folder {folder.id} for project {project_id}")
            return project.to_dict()

        plan = WritePlan(
            key=LockKey(ResourceKind.PROJECT, project_id),
            persist=persist,
            table_locks=(ResourceKind.PROJECT,),
            context={"operation": "remediate_provisioning"},
        )
        return self._run(plan)


def build_service(config: AppConfig, *, logger: logging.Logger | None = None) -> ProjectService:
    """Wire the file-backed stores and the concurrency layer from ``config``."""
    log = logger or logging.getLogger("pmsheet")
    storage = config.storage
    properties = FilePropertyStore(storage.properties_dir)
    tables = CsvTabularStore(storage.tables_dir, TABLE_SCHEMAS)
    files = LocalFileStore(storage.files_dir)

    locks = LockManager(
        properties,
        config.owner,
        stale_threshold_ms=config.locks.stale_threshold_ms,
        default_timeout_ms=config.locks.acquire_timeout_ms,
        logger=log.getChild("locks"),
    )
    global_lock = None
    if config.locks.use_global_lock:
        global_lock = FileGlobalLock(
            storage.global_lock_path,
            max_hold_ms=config.locks.global_max_hold_ms,
            logger=log.getChild("locks"),
        )
    executor = RetryExecutor(logger=log.getChild("retry"))
    file_policy = effective_policy(FILE_STORE_RETRY_POLICY, logger=log)
    table_policy = effective_policy(TABLE_STORE_RETRY_POLICY, logger=log)
    coordinator = ResourceOperationCoordinator(
        locks,
        executor=executor,
        global_lock=global_lock,
        use_global_lock=config.locks.use_global_lock,
        global_timeout_ms=config.locks.global_timeout_ms,
        file_policy=file_policy,
        table_policy=table_policy,
        logger=log.getChild("coordinator"),
    )
    return ProjectService(
        tables,
        files,
        coordinator,
        executor=executor,
        table_policy=table_policy,
        file_policy=file_policy,
        logger=log.getChild("projects"),
    )
