"""Project management operations."""

import json
import sqlite3
import uuid
from datetime import datetime

from productivity_agent.db.models import (
    PROJECT_STATUSES,
    Project,
    advance,
    format_dt,
    parse_dt,
    utcnow,
)

UPDATABLE_FIELDS = {"name", "description", "status", "deadline"}


def create_project(
    db: sqlite3.Connection,
    user_id: str,
    name: str,
    description: str | None = None,
    status: str | None = "active",
    deadline: datetime | str | None = None,
    task_ids: list[str] | None = None,
) -> Project:
    """Create a new project."""
    name = _clean_name(name)
    status = _check_status(status or "active")
    project_id = uuid.uuid4().hex
    now = format_dt(utcnow())

    db.execute(
        """INSERT INTO projects (id, user_id, name, description, status, task_ids,
                                 deadline, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            project_id, user_id, name, description, status,
            json.dumps(_unique(task_ids or [])), format_dt(parse_dt(deadline)), now, now,
        ),
    )
    db.commit()
    return get_project(db, user_id, project_id)


def get_project(db: sqlite3.Connection, user_id: str, project_id: str) -> Project | None:
    """Get a project by ID."""
    row = db.execute(
        "SELECT * FROM projects WHERE id = ? AND user_id = ?", (project_id, user_id)
    ).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def list_projects(
    db: sqlite3.Connection,
    user_id: str,
    status: str | None = None,
) -> list[Project]:
    """List a user's projects, newest first."""
    query = "SELECT * FROM projects WHERE user_id = ?"
    params: list = [user_id]
    if status:
        query += " AND status = ?"
        params.append(_check_status(status))
    query += " ORDER BY created_at DESC, rowid DESC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_project(r) for r in rows]


def count_projects(db: sqlite3.Connection, user_id: str, status: str | None = None) -> int:
    query = "SELECT COUNT(*) AS n FROM projects WHERE user_id = ?"
    params: list = [user_id]
    if status:
        query += " AND status = ?"
        params.append(status)
    return db.execute(query, params).fetchone()["n"]


def update_project(
    db: sqlite3.Connection,
    user_id: str,
    project_id: str,
    **fields,
) -> Project | None:
    """Merge the supplied fields into a project."""
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown project fields: {', '.join(sorted(unknown))}")

    project = get_project(db, user_id, project_id)
    if not project:
        return None

    updates: dict = {}
    if "name" in fields:
        updates["name"] = _clean_name(fields["name"])
    if "description" in fields:
        updates["description"] = fields["description"]
    if "status" in fields:
        updates["status"] = _check_status(fields["status"])
    if "deadline" in fields:
        updates["deadline"] = format_dt(parse_dt(fields["deadline"]))
    updates["updated_at"] = format_dt(advance(project.updated_at))

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    db.execute(
        f"UPDATE projects SET {set_clause} WHERE id = ? AND user_id = ?",
        list(updates.values()) + [project_id, user_id],
    )
    db.commit()
    return get_project(db, user_id, project_id)


def archive_project(db: sqlite3.Connection, user_id: str, project_id: str) -> Project | None:
    """Archive a project. Projects are never hard-deleted so their history survives."""
    return update_project(db, user_id, project_id, status="archived")


delete_project = archive_project


def add_task_to_project(
    db: sqlite3.Connection,
    user_id: str,
    project_id: str,
    task_id: str,
    commit: bool = True,
) -> Project | None:
    """Append a task id to a project's member list (no-op if already present)."""
    project = get_project(db, user_id, project_id)
    if not project:
        return None
    if task_id not in project.task_ids:
        _write_members(db, user_id, project, project.task_ids + [task_id])
    if commit:
        db.commit()
    return get_project(db, user_id, project_id)


def remove_task_from_project(
    db: sqlite3.Connection,
    user_id: str,
    project_id: str,
    task_id: str,
    commit: bool = True,
) -> Project | None:
    """Drop a task id from a project's member list."""
    project = get_project(db, user_id, project_id)
    if not project:
        return None
    if task_id in project.task_ids:
        _write_members(db, user_id, project, [t for t in project.task_ids if t != task_id])
    if commit:
        db.commit()
    return get_project(db, user_id, project_id)


def _write_members(db: sqlite3.Connection, user_id: str, project: Project, members: list[str]):
    db.execute(
        "UPDATE projects SET task_ids = ?, updated_at = ? WHERE id = ? AND user_id = ?",
        (json.dumps(members), format_dt(advance(project.updated_at)), project.id, user_id),
    )


def _check_status(status) -> str:
    if status not in PROJECT_STATUSES:
        raise ValueError(
            f"Invalid status: {status!r} (expected one of {', '.join(PROJECT_STATUSES)})"
        )
    return status


def _clean_name(name) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValueError("name is required")
    return name.strip()


def _unique(ids: list[str]) -> list[str]:
    seen: list[str] = []
    for i in ids:
        if i not in seen:
            seen.append(i)
    return seen


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        description=row["description"],
        status=row["status"],
        task_ids=json.loads(row["task_ids"]) if row["task_ids"] else [],
        deadline=parse_dt(row["deadline"]),
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
