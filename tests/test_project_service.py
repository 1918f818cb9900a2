"""Tests for project operations built on the coordinator."""

from __future__ import annotations

from datetime import date

import pytest

from pmsheet.core.constants import ASSIGNMENTS_TABLE, FOLDER_ERROR_SENTINEL, PROJECTS_TABLE, TASKS_TABLE
from pmsheet.projects.tasks import project_tasks


def _create(service, name="Apollo", **kwargs):
    kwargs.setdefault("phases", ["Planning", "Execution"])
    kwargs.setdefault("start_date", "2026-04-01")
    response = service.create_project(name, **kwargs)
    assert response["success"], response
    return response["data"]


class TestCreateProject:
    def test_creates_row_folder_and_tasks(self, service, tables, file_store):
        data = _create(service, project_id="P-1")

        assert data["id"] == "P-1"
        assert data["owner"] == "alice@host"
        assert data["task_count"] == 4
        rows = tables.read_table(PROJECTS_TABLE)
        assert [row["id"] for row in rows] == ["P-1"]
        assert rows[0]["phases"] == "Planning;Execution"
        assert rows[0]["last_modified_at"] == "2026-03-02T09:00:00.000Z"

        folder = next(file_store.list_folders_by_name(file_store.root_folder(), "Apollo (P-1)"))
        assert rows[0]["folder_id"] == folder.id
        assert [f.name for f in file_store.list_folders_by_name(folder, "Documents")] == ["Documents"]

        tasks = project_tasks(tables, "P-1")
        assert [t.name for t in tasks] == ["Define scope", "Identify stakeholders", "Kick-off meeting", "Status review"]
        assert [t.sequence for t in tasks] == [1, 2, 3, 4]
        assert tasks[0].due_date == date(2026, 4, 8)
        assert tasks[2].due_date == date(2026, 5, 1)

    def test_no_lock_left_behind(self, service, property_store):
        _create(service)
        assert property_store.list_keys() == []

    def test_provisioning_failure_records_sentinel(self, make_flaky_files, make_service, tables, file_store, clock):
        flaky = make_flaky_files(None)
        response = make_service(files=flaky).create_project("Apollo", project_id="P-1")

        assert response["success"] is True
        assert response["data"]["folder_id"] == FOLDER_ERROR_SENTINEL
        assert response["provisioning"]["ok"] is False
        assert flaky.create_calls == 5
        assert tables.read_table(PROJECTS_TABLE)[0]["folder_id"] == FOLDER_ERROR_SENTINEL

    def test_transient_provisioning_failure_is_retried(self, make_flaky_files, make_service, file_store):
        flaky = make_flaky_files(2)
        data = _create(make_service(files=flaky), project_id="P-1")
        assert data["folder_id"] != FOLDER_ERROR_SENTINEL
        # Only one project folder despite the retries
        assert len(list(file_store.list_folders_by_name(file_store.root_folder(), "Apollo (P-1)"))) == 1

    def test_duplicate_id_is_an_integrity_error(self, service):
        _create(service, project_id="P-1")
        response = service.create_project("Other", project_id="P-1")
        assert response["success"] is False
        assert response["error"]["kind"] == "integrity"

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"name": "   "},
            {"name": "X", "status": "Dormant"},
            {"name": "X", "start_date": "April"},
            {"name": "X", "project_id": "*"},
        ],
    )
    def test_invalid_input(self, service, tables, kwargs):
        name = kwargs.pop("name")
        response = service.create_project(name, **kwargs)
        assert response["success"] is False
        assert response["error"]["kind"] == "structural"
        assert tables.read_table(PROJECTS_TABLE) == []

    def test_default_template_when_no_phases(self, service, tables):
        data = _create(service, phases=None, project_id="P-1")
        assert data["task_count"] == 6
        assert {t.phase for t in project_tasks(tables, "P-1")} == {"Planning", "Execution", "Closure"}


class TestUpdateProject:
    def test_update_with_fresh_timestamp(self, service, clock, tables):
        data = _create(service, project_id="P-1")
        clock.advance(60_000)

        response = service.update_project("P-1", {"status": "Active"}, data["last_modified_at"])

        assert response["success"] is True
        row = tables.read_table(PROJECTS_TABLE)[0]
        assert row["status"] == "Active"
        assert row["last_modified_at"] == "2026-03-02T09:01:00.000Z"

    def test_stale_timestamp_conflicts_and_leaves_row(self, make_service, clock, tables):
        alice = make_service("alice@host")
        bob = make_service("bob@host")
        loaded = _create(alice, project_id="P-1")["last_modified_at"]

        clock.advance(5000)
        assert alice.update_project("P-1", {"name": "Apollo II"}, loaded)["success"]
        before = tables.read_table(PROJECTS_TABLE)

        clock.advance(5000)
        response = bob.update_project("P-1", {"name": "Artemis"}, loaded)

        assert response["success"] is False
        assert response["error"]["kind"] == "conflict"
        assert tables.read_table(PROJECTS_TABLE) == before

    def test_busy_project_is_reported(self, make_service, make_lock_manager):
        service = make_service()
        data = _create(service, project_id="P-1")
        make_lock_manager("bob@host").try_acquire("PROJECT", "P-1", 0)

        response = service.update_project("P-1", {"status": "Active"}, data["last_modified_at"])
        assert response["error"]["kind"] == "busy"

    def test_busy_tasks_table_aborts_before_any_write(self, make_service, make_lock_manager, tables):
        service = make_service()
        data = _create(service, project_id="P-1")
        projects_before = tables.read_table(PROJECTS_TABLE)
        tasks_before = tables.read_table(TASKS_TABLE)
        writes = tables.write_calls
        make_lock_manager("bob@host").try_acquire("TASKS", "*", 0)

        response = service.update_project("P-1", {"phases": "Closure"}, data["last_modified_at"])

        assert response["error"]["kind"] == "busy"
        assert tables.write_calls == writes
        assert tables.read_table(PROJECTS_TABLE) == projects_before
        assert tables.read_table(TASKS_TABLE) == tasks_before

    def test_status_change_does_not_need_tasks_table(self, make_service, make_lock_manager):
        service = make_service()
        data = _create(service, project_id="P-1")
        make_lock_manager("bob@host").try_acquire("TASKS", "*", 0)

        response = service.update_project("P-1", {"status": "Active"}, data["last_modified_at"])
        assert response["success"] is True

    def test_phase_change_regenerates_tasks_only_for_that_project(self, service, tables):
        first = _create(service, project_id="P-1")
        _create(service, name="Gemini", project_id="P-2")

        response = service.update_project("P-1", {"phases": "Closure"}, first["last_modified_at"])

        assert response["data"]["task_count"] == 2
        assert [t.name for t in project_tasks(tables, "P-1")] == ["Final report", "Archive documents"]
        assert len(project_tasks(tables, "P-2")) == 4

    def test_regeneration_is_idempotent_apart_from_ids(self, service, tables, clock):
        data = _create(service, project_id="P-1")

        def snapshot():
            return [(t.sequence, t.name, t.phase, t.due_date, t.completed) for t in project_tasks(tables, "P-1")]

        first = snapshot()
        response = service.update_project("P-1", {"start_date": "2026-04-01"}, data["last_modified_at"])
        assert response["success"]
        assert snapshot() == first
        assert len(tables.read_table(TASKS_TABLE)) == 4

    def test_status_only_change_keeps_tasks(self, service, tables):
        data = _create(service, project_id="P-1")
        ids = [t.id for t in project_tasks(tables, "P-1")]
        service.update_project("P-1", {"status": "On Hold"}, data["last_modified_at"])
        assert [t.id for t in project_tasks(tables, "P-1")] == ids

    def test_non_editable_field_rejected(self, service):
        data = _create(service, project_id="P-1")
        response = service.update_project("P-1", {"folder_id": "x"}, data["last_modified_at"])
        assert response["error"]["kind"] == "structural"

    def test_missing_project(self, service):
        response = service.update_project("P-404", {"status": "Active"}, None)
        assert response["success"] is False
        assert response["error"]["kind"] == "integrity"

    def test_corrupt_stored_date_is_structural(self, service, tables, property_store):
        data = _create(service, project_id="P-1")
        row = tables.read_table(PROJECTS_TABLE)[0]
        tables.overwrite_range(PROJECTS_TABLE, 0, [{**row, "start_date": "someday"}])

        response = service.update_project("P-1", {"status": "Active"}, data["last_modified_at"])

        assert response["success"] is False
        assert response["error"]["kind"] == "structural"
        assert "start_date" in response["error"]["message"]
        assert property_store.list_keys() == []


class TestDeleteProject:
    def test_cascades_to_children_and_trashes_folder(self, service, tables, file_store):
        _create(service, project_id="P-1")
        _create(service, name="Gemini", project_id="P-2")
        service.assign_member("P-1", "carol", "Lead")

        response = service.delete_project("P-1")

        assert response["success"] is True
        assert response["data"]["removed_rows"] == 5
        assert response["data"]["folder_trashed"] is True
        assert [row["id"] for row in tables.read_table(PROJECTS_TABLE)] == ["P-2"]
        assert project_tasks(tables, "P-1") == []
        assert tables.read_table(ASSIGNMENTS_TABLE) == []
        assert list(file_store.list_folders_by_name(file_store.root_folder(), "Apollo (P-1)")) == []

    def test_delete_with_stale_timestamp_conflicts(self, service, clock, tables):
        data = _create(service, project_id="P-1")
        clock.advance(5000)
        service.update_project("P-1", {"status": "Active"}, data["last_modified_at"])

        response = service.delete_project("P-1", client_modified_at=data["last_modified_at"])
        assert response["error"]["kind"] == "conflict"
        assert len(tables.read_table(PROJECTS_TABLE)) == 1

    def test_delete_unprovisioned_project_skips_trash(self, make_flaky_files, make_service, file_store):
        service = make_service(files=make_flaky_files(None))
        service.create_project("Apollo", project_id="P-1")
        response = service.delete_project("P-1")
        assert response["success"] is True
        assert response["data"]["folder_trashed"] is False

    def test_busy_assignments_table_aborts_before_any_write(self, make_service, make_lock_manager, tables):
        service = make_service()
        _create(service, project_id="P-1")
        service.assign_member("P-1", "carol", "Lead")
        writes = tables.write_calls
        make_lock_manager("bob@host").try_acquire("ASSIGNMENTS", "*", 0)

        response = service.delete_project("P-1")

        assert response["error"]["kind"] == "busy"
        assert tables.write_calls == writes
        assert [row["id"] for row in tables.read_table(PROJECTS_TABLE)] == ["P-1"]
        assert len(project_tasks(tables, "P-1")) == 4
        assert len(tables.read_table(ASSIGNMENTS_TABLE)) == 1


class TestAssignMember:
    def test_assign_and_update_role(self, service, tables):
        _create(service, project_id="P-1")
        first = service.assign_member("P-1", "carol", "Member")
        second = service.assign_member("P-1", "carol", "Lead")

        assert first["success"] and second["success"]
        rows = tables.read_table(ASSIGNMENTS_TABLE)
        assert len(rows) == 1
        assert rows[0]["role"] == "Lead"
        assert rows[0]["id"] == first["data"]["id"]

    def test_assign_to_missing_project_is_integrity_error(self, service, tables):
        response = service.assign_member("P-404", "carol")
        assert response["error"]["kind"] == "integrity"
        assert tables.read_table(ASSIGNMENTS_TABLE) == []

    def test_blank_assignee_rejected(self, service):
        assert service.assign_member("P-1", " ")["error"]["kind"] == "structural"

    def test_busy_project_blocks_assignment(self, make_service, make_lock_manager, tables):
        service = make_service()
        _create(service, project_id="P-1")
        make_lock_manager("bob@host").try_acquire("PROJECT", "P-1", 0)

        response = service.assign_member("P-1", "carol", "Lead")

        assert response["error"]["kind"] == "busy"
        assert tables.read_table(ASSIGNMENTS_TABLE) == []

    def test_project_and_assignment_locks_released(self, service, property_store):
        _create(service, project_id="P-1")
        assert service.assign_member("P-1", "carol")["success"] is True
        assert property_store.list_keys() == []


class TestRemediation:
    def test_lists_and_remediates_sentinel_projects(self, make_flaky_files, make_service, file_store, tables):
        broken = make_service(files=make_flaky_files(None))
        broken.create_project("Apollo", project_id="P-1")
        healthy = make_service()
        _create(healthy, name="Gemini", project_id="P-2")

        assert [p.id for p in healthy.projects_needing_remediation()] == ["P-1"]

        response = healthy.remediate_provisioning("P-1")

        assert response["success"] is True
        assert response["data"]["folder_id"] not in ("", FOLDER_ERROR_SENTINEL)
        assert healthy.projects_needing_remediation() == []

    def test_remediating_healthy_project_is_a_no_op(self, service, tables):
        data = _create(service, project_id="P-1")
        response = service.remediate_provisioning("P-1")
        assert response["data"]["folder_id"] == data["folder_id"]
        assert response["data"]["last_modified_at"] == data["last_modified_at"]

    def test_remediation_failure_is_reported(self, make_flaky_files, make_service, file_store):
        service = make_service(files=make_flaky_files(None))
        service.create_project("Apollo", project_id="P-1")
        response = service.remediate_provisioning("P-1")
        assert response["success"] is False
        assert response["error"]["kind"] == "external"
