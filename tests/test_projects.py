"""Tests for project management operations."""

import tempfile
from pathlib import Path

import pytest

from productivity_agent.core import projects as projects_mod
from productivity_agent.core import tasks as tasks_mod
from productivity_agent.db.engine import init_db


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db", "alice")
        yield conn
        conn.close()


class TestProjects:
    def test_create_project(self, db):
        project = projects_mod.create_project(db, "alice", "Website", description="Relaunch")
        assert project.name == "Website"
        assert project.status == "active"
        assert project.task_ids == []
        assert project.created_at == project.updated_at

    def test_name_required(self, db):
        with pytest.raises(ValueError, match="name is required"):
            projects_mod.create_project(db, "alice", "")

    def test_list_by_status(self, db):
        active = projects_mod.create_project(db, "alice", "Active")
        done = projects_mod.create_project(db, "alice", "Done", status="completed")
        assert [p.id for p in projects_mod.list_projects(db, "alice", status="active")] == [active.id]
        assert {p.id for p in projects_mod.list_projects(db, "alice")} == {active.id, done.id}

    def test_update_project(self, db):
        project = projects_mod.create_project(db, "alice", "Old")
        updated = projects_mod.update_project(db, "alice", project.id, name="New")
        assert updated.name == "New"
        assert updated.updated_at > project.updated_at

    def test_update_unknown_project(self, db):
        assert projects_mod.update_project(db, "alice", "missing", name="x") is None

    def test_invalid_status(self, db):
        project = projects_mod.create_project(db, "alice", "P")
        with pytest.raises(ValueError, match="Invalid status"):
            projects_mod.update_project(db, "alice", project.id, status="paused")

    def test_delete_archives(self, db):
        project = projects_mod.create_project(db, "alice", "Keep history")
        tasks_mod.create_task(db, "alice", "Member", project_id=project.id)
        archived = projects_mod.delete_project(db, "alice", project.id)
        assert archived.status == "archived"
        assert projects_mod.get_project(db, "alice", project.id) is not None
        assert len(archived.task_ids) == 1

    def test_membership_helpers_are_idempotent(self, db):
        project = projects_mod.create_project(db, "alice", "P")
        projects_mod.add_task_to_project(db, "alice", project.id, "t1")
        projects_mod.add_task_to_project(db, "alice", project.id, "t1")
        assert projects_mod.get_project(db, "alice", project.id).task_ids == ["t1"]
        projects_mod.remove_task_from_project(db, "alice", project.id, "t1")
        projects_mod.remove_task_from_project(db, "alice", project.id, "t1")
        assert projects_mod.get_project(db, "alice", project.id).task_ids == []

    def test_count_projects(self, db):
        projects_mod.create_project(db, "alice", "A")
        projects_mod.create_project(db, "alice", "B", status="archived")
        assert projects_mod.count_projects(db, "alice", status="active") == 1
