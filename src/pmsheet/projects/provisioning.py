"""Project folder provisioning in the file store."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from pmsheet.core.constants import PROJECT_SUBFOLDERS
from pmsheet.projects.models import Project
from pmsheet.store.files import FileStore, FolderHandle


class FolderProvisioner:
    """Find-or-create a project's folder and its standard subfolders.

    Each folder is looked up by name before it is created, so re-running
    after a partial failure reuses what already exists. The lookup and the
    create are separate calls; two concurrent runs for the same project can
    still both create a folder. Callers hold the project lock to keep that
    from happening within this system.
    """

    def __init__(
        self,
        store: FileStore,
        *,
        subfolders: Sequence[str] = PROJECT_SUBFOLDERS,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.subfolders = tuple(subfolders)
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def folder_name(project: Project) -> str:
        return f"{project.name} ({project.id})"

    def find_or_create(self, parent: FolderHandle, name: str) -> FolderHandle:
        existing = next(iter(self.store.list_folders_by_name(parent, name)), None)
        if existing is not None:
            self.logger.debug(f"Reusing folder '{name}' ({existing.id})")
            return existing
        created = self.store.create_folder(parent, name)
        self.logger.debug(f"Created folder '{name}' ({created.id})")
        return created

    def provision(self, project: Project) -> FolderHandle:
        """Return the project folder, creating whatever is missing."""
        folder = self.find_or_create(self.store.root_folder(), self.folder_name(project))
        for subfolder in self.subfolders:
            self.find_or_create(folder, subfolder)
        return folder
