"""Table-of-record stores.

Rows are plain ``dict[str, str]`` keyed by column header, returned in
insertion order. There is no query language and no row-level locking:
callers read whole tables, filter in memory and write back.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
import threading
from collections.abc import Mapping, Sequence
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import pandas as pd

from pmsheet.core.exceptions import StructuralError, TableStoreError

Row = dict[str, str]


def normalize_bool(value: Any) -> bool:
    """Normalize the boolean shapes the store hands back.

    Native booleans pass through; strings compare case-insensitively
    against ``TRUE``. Empty cells and anything else are False.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().upper() == "TRUE"
    return False


def serialize_cell(value: Any) -> str:
    """Render a Python value into the stable text form stored in a cell."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def serialize_row(row: Mapping[str, Any]) -> Row:
    return {str(key): serialize_cell(value) for key, value in row.items()}


@runtime_checkable
class TabularStore(Protocol):
    """Contract of the hosted spreadsheet service."""

    def headers(self, table: str) -> list[str]:
        """Return the column headers of ``table``."""

    def read_table(self, table: str) -> list[Row]:
        """Return every row of ``table`` in row order."""

    def append_row(self, table: str, row: Mapping[str, Any]) -> None:
        """Append one row at the bottom of ``table``."""

    def overwrite_range(self, table: str, start_row: int, rows: Sequence[Mapping[str, Any]]) -> None:
        """Overwrite rows starting at zero-based ``start_row``, extending the table if needed."""

    def delete_row(self, table: str, index: int) -> None:
        """Delete the zero-based row ``index``."""


def replace_table_rows(store: TabularStore, table: str, rows: Sequence[Mapping[str, Any]]) -> None:
    """Replace the whole body of ``table`` with ``rows`` in as few writes as possible.

    Uses the store's ``replace_rows`` when it has one (a single write).
    Otherwise overwrites from the top in one call and trims leftover rows
    from the bottom up.
    """
    replace_rows = getattr(store, "replace_rows", None)
    if callable(replace_rows):
        replace_rows(table, rows)
        return

    existing_count = len(store.read_table(table))
    if rows:
        store.overwrite_range(table, 0, rows)
    for index in range(existing_count - 1, len(rows) - 1, -1):
        store.delete_row(table, index)


class _SchemaMixin:
    _schemas: dict[str, list[str]]

    def headers(self, table: str) -> list[str]:
        try:
            return list(self._schemas[table])
        except KeyError:
            raise StructuralError(f"Table '{table}' does not exist", table=table) from None

    def _coerce_row(self, table: str, row: Mapping[str, Any]) -> Row:
        headers = self.headers(table)
        unknown = [key for key in row if key not in headers]
        if unknown:
            raise StructuralError(
                f"Table '{table}' has no column '{unknown[0]}'",
                table=table,
                column=unknown[0],
            )
        serialized = serialize_row(row)
        return {column: serialized.get(column, "") for column in headers}


class InMemoryTabularStore(_SchemaMixin):
    """Tables held in process memory; used by tests and dry runs."""

    def __init__(self, schemas: Mapping[str, Sequence[str]]):
        self._schemas = {name: list(columns) for name, columns in schemas.items()}
        self._rows: dict[str, list[Row]] = {name: [] for name in self._schemas}
        self._lock = threading.Lock()
        self.write_calls = 0

    def read_table(self, table: str) -> list[Row]:
        self.headers(table)
        with self._lock:
            return [dict(row) for row in self._rows[table]]

    def append_row(self, table: str, row: Mapping[str, Any]) -> None:
        coerced = self._coerce_row(table, row)
        with self._lock:
            self._rows[table].append(coerced)
            self.write_calls += 1

    def overwrite_range(self, table: str, start_row: int, rows: Sequence[Mapping[str, Any]]) -> None:
        coerced = [self._coerce_row(table, row) for row in rows]
        with self._lock:
            body = self._rows[table]
            if start_row < 0 or start_row > len(body):
                raise TableStoreError(f"Start row {start_row} is out of range", "overwrite_range", table)
            body[start_row : start_row + len(coerced)] = coerced
            self.write_calls += 1

    def delete_row(self, table: str, index: int) -> None:
        self.headers(table)
        with self._lock:
            body = self._rows[table]
            if not 0 <= index < len(body):
                raise TableStoreError(f"Row {index} does not exist", "delete_row", table)
            del body[index]
            self.write_calls += 1

    def replace_rows(self, table: str, rows: Sequence[Mapping[str, Any]]) -> None:
        coerced = [self._coerce_row(table, row) for row in rows]
        with self._lock:
            self._rows[table] = coerced
            self.write_calls += 1


class CsvTabularStore(_SchemaMixin):
    """One CSV file per table, shared across processes through the filesystem.

    Every write produces a complete new file in a staging location and swaps
    it in with ``os.replace``, so readers always see a whole snapshot of the
    table: either the old body or the new one.
    """

    def __init__(self, directory: Path, schemas: Mapping[str, Sequence[str]]):
        self.directory = Path(directory)
        self._schemas = {name: list(columns) for name, columns in schemas.items()}
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise TableStoreError("Cannot create table directory", "init", str(self.directory), e) from e
        for table in self._schemas:
            if not self._path(table).exists():
                self._write_frame(table, pd.DataFrame(columns=self._schemas[table]))

    def _path(self, table: str) -> Path:
        return self.directory / f"{table}.csv"

    def _read_frame(self, table: str) -> pd.DataFrame:
        headers = self.headers(table)
        path = self._path(table)
        try:
            frame = pd.read_csv(path, dtype=str, keep_default_na=False)
        except FileNotFoundError:
            raise StructuralError(f"Table '{table}' does not exist", table=table) from None
        except (OSError, pd.errors.ParserError) as e:
            raise TableStoreError("Cannot read table", "read_table", table, e) from e
        missing = [column for column in headers if column not in frame.columns]
        if missing:
            raise StructuralError(f"Table '{table}' is missing column '{missing[0]}'", table=table, column=missing[0])
        return frame[headers]

    def _write_frame(self, table: str, frame: pd.DataFrame) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{table}-", suffix=".csv", dir=self.directory)
        os.close(fd)
        try:
            frame.to_csv(tmp_name, index=False)
            os.replace(tmp_name, self._path(table))
        except OSError as e:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise TableStoreError("Cannot write table", "write", table, e) from e

    def read_table(self, table: str) -> list[Row]:
        return self._read_frame(table).to_dict(orient="records")

    def append_row(self, table: str, row: Mapping[str, Any]) -> None:
        coerced = self._coerce_row(table, row)
        body = self.read_table(table)
        body.append(coerced)
        self._write_frame(table, pd.DataFrame(body, columns=self.headers(table)))

    def overwrite_range(self, table: str, start_row: int, rows: Sequence[Mapping[str, Any]]) -> None:
        coerced = [self._coerce_row(table, row) for row in rows]
        body = self.read_table(table)
        if start_row < 0 or start_row > len(body):
            raise TableStoreError(f"Start row {start_row} is out of range", "overwrite_range", table)
        body[start_row : start_row + len(coerced)] = coerced
        self._write_frame(table, pd.DataFrame(body, columns=self.headers(table)))

    def delete_row(self, table: str, index: int) -> None:
        frame = self._read_frame(table)
        if not 0 <= index < len(frame):
            raise TableStoreError(f"Row {index} does not exist", "delete_row", table)
        self._write_frame(table, frame.drop(index=frame.index[index]).reset_index(drop=True))

    def replace_rows(self, table: str, rows: Sequence[Mapping[str, Any]]) -> None:
        coerced = [self._coerce_row(table, row) for row in rows]
        self._write_frame(table, pd.DataFrame(coerced, columns=self.headers(table)))
