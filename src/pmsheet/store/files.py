"""Hierarchical file store.

Folder and file operations against the hosted drive are slow, rate limited
and eventually consistent; callers wrap them in the file-store retry policy.
``LocalFileStore`` maps the same contract onto a directory tree.
"""

from __future__ import annotations

import shutil
import uuid
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from pmsheet.core.exceptions import FileStoreError


@dataclass(frozen=True)
class FolderHandle:
    id: str
    name: str
    url: str


@dataclass(frozen=True)
class FileHandle:
    id: str
    name: str
    url: str
    mime_type: str


@runtime_checkable
class FileStore(Protocol):
    """Contract of the hosted drive service."""

    def root_folder(self) -> FolderHandle:
        """Return the folder under which project folders are created."""

    def create_folder(self, parent: FolderHandle, name: str) -> FolderHandle:
        """Create a child folder; duplicates by name are allowed."""

    def list_folders_by_name(self, parent: FolderHandle, name: str) -> Iterator[FolderHandle]:
        """Yield child folders of ``parent`` called ``name``."""

    def create_file(self, folder: FolderHandle, data: bytes, mime_type: str, name: str) -> FileHandle:
        """Create a file inside ``folder``."""

    def trash(self, handle: FolderHandle | FileHandle) -> None:
        """Move a folder or file to the trash."""


class LocalFileStore:
    """Directory-tree implementation of :class:`FileStore`.

    Folders are directories named ``<name>__<id>`` so that, as on the hosted
    drive, two folders may share a display name. Trashed entries move under
    ``.trash`` at the root.
    """

    _SEPARATOR = "__"
    TRASH_DIR = ".trash"

    def __init__(self, root: Path):
        self.root = Path(root)
        self._call("init", lambda: self.root.mkdir(parents=True, exist_ok=True))
        self._base = self.root.resolve()

    @staticmethod
    def _call(operation: str, func):
        try:
            return func()
        except OSError as e:
            # Keep the OS wording; the retry classifier matches on it.
            raise FileStoreError(str(e) or type(e).__name__, operation, original_error=e) from e

    def _resolve(self, handle_id: str) -> Path:
        path = (self._base / handle_id).resolve()
        if self._base not in path.parents and path != self._base:
            raise FileStoreError("Handle points outside the store", "resolve", handle_id)
        return path

    def _folder_handle(self, path: Path) -> FolderHandle:
        name = path.name.rsplit(self._SEPARATOR, 1)[0]
        handle_id = path.relative_to(self._base).as_posix()
        return FolderHandle(id=handle_id, name=name, url=path.as_uri())

    def root_folder(self) -> FolderHandle:
        return FolderHandle(id=".", name=self.root.name, url=self._base.as_uri())

    def create_folder(self, parent: FolderHandle, name: str) -> FolderHandle:
        parent_path = self._resolve(parent.id)
        path = parent_path / f"{name}{self._SEPARATOR}{uuid.uuid4().hex[:12]}"
        self._call("create_folder", lambda: path.mkdir())
        return self._folder_handle(path.resolve())

    def list_folders_by_name(self, parent: FolderHandle, name: str) -> Iterator[FolderHandle]:
        parent_path = self._resolve(parent.id)
        children = self._call("list_folders_by_name", lambda: sorted(parent_path.iterdir()))
        for child in children:
            if child.name == self.TRASH_DIR or not child.is_dir():
                continue
            if child.name.rsplit(self._SEPARATOR, 1)[0] == name:
                yield self._folder_handle(child.resolve())

    def create_file(self, folder: FolderHandle, data: bytes, mime_type: str, name: str) -> FileHandle:
        path = self._resolve(folder.id) / name
        self._call("create_file", lambda: path.write_bytes(data))
        resolved = path.resolve()
        return FileHandle(
            id=resolved.relative_to(self._base).as_posix(),
            name=name,
            url=resolved.as_uri(),
            mime_type=mime_type,
        )

    def trash(self, handle: FolderHandle | FileHandle) -> None:
        source = self._resolve(handle.id)
        trash_dir = self._base / self.TRASH_DIR
        target = trash_dir / f"{source.name}{self._SEPARATOR}{uuid.uuid4().hex[:8]}"

        def _move() -> None:
            trash_dir.mkdir(exist_ok=True)
            shutil.move(str(source), str(target))

        self._call("trash", _move)
