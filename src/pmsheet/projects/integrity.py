"""Referential integrity between the project tables.

The tabular store has no foreign keys. ``DependencyMap`` declares which
child-table column points at which parent-table column, and
``ReferentialIntegrityValidator`` checks a pending write against it before
anything is persisted. This runs inside the coordinator's locked section but
is independent of locking: it reads the tables as they are now.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pmsheet.core.constants import ASSIGNMENTS_TABLE, PROJECTS_TABLE, TASKS_TABLE
from pmsheet.core.exceptions import IntegrityError
from pmsheet.store.tables import TabularStore, replace_table_rows


class OnDelete(Enum):
    CASCADE = "cascade"
    RESTRICT = "restrict"


@dataclass(frozen=True)
class Dependency:
    """``child_table.child_column`` references ``parent_table.parent_column``."""
    child_table: str
    child_column: str
    parent_table: str
    parent_column: str = "id"
    on_delete: OnDelete = OnDelete.CASCADE


class DependencyMap:
    """Declared parent/child relationships between tables."""

    def __init__(self, dependencies: Iterable[Dependency] = ()):
        self._dependencies = list(dependencies)

    def __iter__(self):
        return iter(self._dependencies)

    def __len__(self) -> int:
        return len(self._dependencies)

    def parents_of(self, table: str) -> list[Dependency]:
        return [dep for dep in self._dependencies if dep.child_table == table]

    def children_of(self, table: str) -> list[Dependency]:
        return [dep for dep in self._dependencies if dep.parent_table == table]

    @classmethod
    def default(cls) -> DependencyMap:
        return cls(
            [
                Dependency(TASKS_TABLE, "project_id", PROJECTS_TABLE),
                Dependency(ASSIGNMENTS_TABLE, "project_id", PROJECTS_TABLE),
            ]
        )


@dataclass(frozen=True)
class Orphan:
    table: str
    row_id: str
    column: str
    reference: str


class ReferentialIntegrityValidator:
    """Checks writes against a :class:`DependencyMap`."""

    def __init__(
        self,
        store: TabularStore,
        dependencies: DependencyMap | None = None,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.dependencies = dependencies or DependencyMap.default()
        self.logger = logger or logging.getLogger(__name__)

    def _parent_values(self, dep: Dependency) -> set[str]:
        return {row.get(dep.parent_column, "") for row in self.store.read_table(dep.parent_table)}

    def check_parents_exist(self, table: str, row: Mapping[str, Any]) -> None:
        """Raise ``IntegrityError`` if ``row`` points at a parent that does not exist.

        Empty reference cells are not checked.
        """
        for dep in self.dependencies.parents_of(table):
            reference = str(row.get(dep.child_column, "") or "")
            if not reference:
                continue
            if reference not in self._parent_values(dep):
                raise IntegrityError(
                    f"{table}.{dep.child_column} references missing {dep.parent_table} '{reference}'",
                    table=table,
                    reference=reference,
                )

    def check_can_delete(self, table: str, key: str) -> list[Dependency]:
        """Validate deleting the ``table`` row identified by ``key``.

        Returns the cascading dependencies whose child rows must be removed
        along with it.

        Raises:
            IntegrityError: A restricting child table still references the row
        """
        cascades: list[Dependency] = []
        for dep in self.dependencies.children_of(table):
            if dep.on_delete is OnDelete.CASCADE:
                cascades.append(dep)
                continue
            referencing = [
                row for row in self.store.read_table(dep.child_table) if row.get(dep.child_column) == key
            ]
            if referencing:
                raise IntegrityError(
                    f"Cannot delete {table} '{key}': {len(referencing)} row(s) in {dep.child_table} reference it",
                    table=dep.child_table,
                    reference=key,
                )
        return cascades

    def remove_children(self, dependencies: Iterable[Dependency], key: str) -> int:
        """Delete child rows referencing ``key``; one batched write per table."""
        removed = 0
        for dep in dependencies:
            rows = self.store.read_table(dep.child_table)
            kept = [row for row in rows if row.get(dep.child_column) != key]
            if len(kept) == len(rows):
                continue
            replace_table_rows(self.store, dep.child_table, kept)
            removed += len(rows) - len(kept)
            self.logger.debug(f"Removed {len(rows) - len(kept)} row(s) from {dep.child_table} for '{key}'")
        return removed

    def find_orphans(self) -> list[Orphan]:
        """Rows whose references point at missing parents."""
        orphans: list[Orphan] = []
        for dep in self.dependencies:
            parents = self._parent_values(dep)
            for row in self.store.read_table(dep.child_table):
                reference = row.get(dep.child_column, "")
                if reference and reference not in parents:
                    orphans.append(Orphan(dep.child_table, row.get("id", ""), dep.child_column, reference))
        return orphans
