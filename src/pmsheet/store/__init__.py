"""Store module - local stand-ins for the hosted services.

- Shared property store (locks)
- Table-of-record (projects, tasks, assignments)
- Hierarchical file store (project folders)
"""

from pmsheet.store.files import FileHandle, FileStore, FolderHandle, LocalFileStore
from pmsheet.store.properties import FilePropertyStore, InMemoryPropertyStore, PropertyStore
from pmsheet.store.tables import (
    CsvTabularStore,
    InMemoryTabularStore,
    TabularStore,
    normalize_bool,
    replace_table_rows,
    serialize_cell,
)

__all__ = [
    "CsvTabularStore",
    "FileHandle",
    "FilePropertyStore",
    "FileStore",
    "FolderHandle",
    "InMemoryPropertyStore",
    "InMemoryTabularStore",
    "LocalFileStore",
    "PropertyStore",
    "TabularStore",
    "normalize_bool",
    "replace_table_rows",
    "serialize_cell",
]
