"""Tests for the maintenance command-line interface"""

from __future__ import annotations

import json
import os

import pytest

from pmsheet.cli.main import EXIT_FAILURE, EXIT_SUCCESS, EXIT_USAGE, build_parser, main
from pmsheet.core.constants import FOLDER_ERROR_SENTINEL, PROJECTS_TABLE, TABLE_SCHEMAS
from pmsheet.core.locks import LockManager, LockRecord, ResourceKind
from pmsheet.projects.models import Project
from pmsheet.store.properties import FilePropertyStore
from pmsheet.store.tables import CsvTabularStore


@pytest.fixture
def data_dir(tmp_path, monkeypatch, restore_root_logging):
    for name in list(os.environ):
        if name.startswith("PMSHEET_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    return tmp_path / "data"


def run(data_dir, *args):
    return main(["--data-dir", str(data_dir), "--log-level", "WARNING", *args])


def _properties(data_dir):
    return FilePropertyStore(data_dir / "properties")


class TestParser:
    def test_locks_status_arguments(self):
        args = build_parser().parse_args(["locks", "status", "project", "P-1"])
        assert args.kind is ResourceKind.PROJECT
        assert args.resource_id == "P-1"

    def test_unknown_kind_is_a_usage_error(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["locks", "status", "WIDGET", "x"])
        assert exc_info.value.code == EXIT_USAGE
        assert "Unknown resource kind" in capsys.readouterr().err

    @pytest.mark.parametrize("argv", [[], ["locks"], ["projects", "remediate"]])
    def test_missing_command(self, argv):
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(argv)
        assert exc_info.value.code == EXIT_USAGE

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["--version"])
        assert exc_info.value.code == 0
        assert capsys.readouterr().out.startswith("pmsheet ")


class TestLockCommands:
    def test_list_empty(self, data_dir, capsys):
        assert run(data_dir, "locks", "list") == EXIT_SUCCESS
        assert "No locks held" in capsys.readouterr().out

    def test_list_as_json(self, data_dir, capsys):
        store = _properties(data_dir)
        LockManager(store, "bob@host").try_acquire("PROJECT", "P-1", 0)
        store.set("LOCK_TASKS_P-2", "garbage")

        assert run(data_dir, "--json", "locks", "list") == EXIT_SUCCESS

        payload = json.loads(capsys.readouterr().out)
        assert payload["count"] == 2
        by_key = {entry["key"]: entry for entry in payload["locks"]}
        assert by_key["LOCK_PROJECT_P-1"]["owner"] == "bob@host"
        assert by_key["LOCK_PROJECT_P-1"]["stale"] is False
        assert by_key["LOCK_TASKS_P-2"]["readable"] is False

    def test_status(self, data_dir, capsys):
        LockManager(_properties(data_dir), "bob@host").try_acquire("PROJECT", "P-1", 0)

        assert run(data_dir, "locks", "status", "PROJECT", "P-1") == EXIT_SUCCESS
        assert "PROJECT:P-1 locked by bob@host" in capsys.readouterr().out

        assert run(data_dir, "locks", "status", "PROJECT", "P-2") == EXIT_SUCCESS
        assert "PROJECT:P-2 is free" in capsys.readouterr().out

    def test_clean_removes_stale_and_unreadable(self, data_dir, capsys):
        store = _properties(data_dir)
        LockManager(store, "bob@host").try_acquire("PROJECT", "P-1", 0)
        stale = LockRecord("PROJECT", "P-2", "carol@host", 0, "t-old")
        store.set("LOCK_PROJECT_P-2", stale.serialize())
        store.set("LOCK_FOLDER_P-3", "{")

        assert run(data_dir, "--json", "locks", "clean") == EXIT_SUCCESS

        assert json.loads(capsys.readouterr().out) == {"removed": 2}
        assert store.list_keys() == ["LOCK_PROJECT_P-1"]


class TestProjectCommands:
    def _seed(self, data_dir, *projects):
        tables = CsvTabularStore(data_dir / "tables", TABLE_SCHEMAS)
        for project in projects:
            tables.append_row(PROJECTS_TABLE, project.to_row())
        return tables

    def test_remediation_list(self, data_dir, capsys):
        self._seed(
            data_dir,
            Project(id="P-1", name="Apollo", owner="alice", folder_id=FOLDER_ERROR_SENTINEL),
            Project(id="P-2", name="Gemini", folder_id="Gemini__x"),
        )
        assert run(data_dir, "--json", "projects", "remediation") == EXIT_SUCCESS
        payload = json.loads(capsys.readouterr().out)
        assert payload["count"] == 1
        assert payload["projects"][0]["id"] == "P-1"

    def test_remediate_provisions_folder(self, data_dir, capsys):
        tables = self._seed(data_dir, Project(id="P-1", name="Apollo", folder_id=FOLDER_ERROR_SENTINEL))

        assert run(data_dir, "projects", "remediate", "P-1") == EXIT_SUCCESS

        row = tables.read_table(PROJECTS_TABLE)[0]
        assert row["folder_id"] not in ("", FOLDER_ERROR_SENTINEL)
        assert (data_dir / "files" / row["folder_id"]).is_dir()
        assert f"Project P-1 folder: {row['folder_id']}" in capsys.readouterr().out

    def test_remediate_missing_project_fails(self, data_dir, capsys):
        self._seed(data_dir)
        assert run(data_dir, "projects", "remediate", "P-404") == EXIT_FAILURE
        assert "ERROR: [integrity]" in capsys.readouterr().err
