"""Task management operations."""

import json
import sqlite3
import uuid
from datetime import datetime

from productivity_agent.core import projects as projects_mod
from productivity_agent.db.models import (
    TASK_PRIORITIES,
    TASK_STATUSES,
    Task,
    advance,
    format_dt,
    parse_dt,
    utcnow,
)

UPDATABLE_FIELDS = {
    "title",
    "description",
    "priority",
    "status",
    "due_date",
    "project_id",
    "tags",
    "estimated_duration",
}


def create_task(
    db: sqlite3.Connection,
    user_id: str,
    title: str,
    description: str | None = None,
    priority: str | None = "medium",
    status: str | None = "todo",
    due_date: datetime | str | None = None,
    project_id: str | None = None,
    tags: list[str] | None = None,
    estimated_duration: int | None = None,
    indexer=None,
) -> Task:
    """Create a new task owned by user_id.

    If the task names a project, the project must belong to the same user and
    the new id is appended to its member list. The semantic index entry is
    submitted best-effort after the row is committed.
    """
    title = _clean_title(title)
    priority = _check_choice(priority or "medium", TASK_PRIORITIES, "priority")
    status = _check_choice(status or "todo", TASK_STATUSES, "status")
    due = parse_dt(due_date)
    tags = _clean_tags(tags)
    estimated_duration = _clean_duration(estimated_duration)
    if project_id:
        _require_project(db, user_id, project_id)

    task_id = uuid.uuid4().hex
    now = format_dt(utcnow())

    db.execute(
        """INSERT INTO tasks (id, user_id, title, description, priority, status, due_date,
                              project_id, tags, estimated_duration, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            task_id, user_id, title, description, priority, status, format_dt(due),
            project_id or None, json.dumps(tags), estimated_duration, now, now,
        ),
    )
    if project_id:
        projects_mod.add_task_to_project(db, user_id, project_id, task_id, commit=False)
    db.commit()

    task = get_task(db, user_id, task_id)
    if indexer is not None:
        indexer.index_task(task)
    return task


def get_task(db: sqlite3.Connection, user_id: str, task_id: str) -> Task | None:
    """Get a task by ID."""
    row = db.execute(
        "SELECT * FROM tasks WHERE id = ? AND user_id = ?", (task_id, user_id)
    ).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def list_tasks(
    db: sqlite3.Connection,
    user_id: str,
    status: str | list[str] | None = None,
    project_id: str | None = None,
    due_before: datetime | str | None = None,
) -> list[Task]:
    """List a user's tasks, newest first. Filters are combined with AND; statuses with OR."""
    query = "SELECT * FROM tasks WHERE user_id = ?"
    params: list = [user_id]

    statuses = _status_list(status)
    if statuses:
        query += f" AND status IN ({', '.join('?' for _ in statuses)})"
        params.extend(statuses)

    if project_id:
        query += " AND project_id = ?"
        params.append(project_id)

    if due_before is not None:
        query += " AND due_date IS NOT NULL AND due_date <= ?"
        params.append(format_dt(parse_dt(due_before)))

    query += " ORDER BY created_at DESC, rowid DESC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def count_tasks(
    db: sqlite3.Connection,
    user_id: str,
    status: str | list[str] | None = None,
) -> int:
    query = "SELECT COUNT(*) AS n FROM tasks WHERE user_id = ?"
    params: list = [user_id]
    statuses = _status_list(status)
    if statuses:
        query += f" AND status IN ({', '.join('?' for _ in statuses)})"
        params.extend(statuses)
    return db.execute(query, params).fetchone()["n"]


def update_task(
    db: sqlite3.Connection,
    user_id: str,
    task_id: str,
    indexer=None,
    **fields,
) -> Task | None:
    """Merge the supplied fields into a task. Returns None if the task doesn't exist.

    Only keys present in ``fields`` change; passing None clears a nullable
    field. updated_at always moves forward.
    """
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")

    task = get_task(db, user_id, task_id)
    if not task:
        return None

    updates: dict = {}
    if "title" in fields:
        updates["title"] = _clean_title(fields["title"])
    if "description" in fields:
        updates["description"] = fields["description"]
    if "priority" in fields:
        updates["priority"] = _check_choice(fields["priority"], TASK_PRIORITIES, "priority")
    if "status" in fields:
        updates["status"] = _check_choice(fields["status"], TASK_STATUSES, "status")
    if "due_date" in fields:
        updates["due_date"] = format_dt(parse_dt(fields["due_date"]))
    if "tags" in fields:
        updates["tags"] = json.dumps(_clean_tags(fields["tags"]))
    if "estimated_duration" in fields:
        updates["estimated_duration"] = _clean_duration(fields["estimated_duration"])

    new_project = task.project_id
    if "project_id" in fields:
        new_project = fields["project_id"] or None
        if new_project and new_project != task.project_id:
            _require_project(db, user_id, new_project)
        updates["project_id"] = new_project

    updates["updated_at"] = format_dt(advance(task.updated_at))
    set_clause = ", ".join(f"{k} = ?" for k in updates)
    db.execute(
        f"UPDATE tasks SET {set_clause} WHERE id = ? AND user_id = ?",
        list(updates.values()) + [task_id, user_id],
    )

    if new_project != task.project_id:
        if task.project_id:
            projects_mod.remove_task_from_project(
                db, user_id, task.project_id, task_id, commit=False
            )
        if new_project:
            projects_mod.add_task_to_project(db, user_id, new_project, task_id, commit=False)
    db.commit()

    updated = get_task(db, user_id, task_id)
    if indexer is not None and ("title" in fields or "description" in fields):
        indexer.index_task(updated)
    return updated


def delete_task(db: sqlite3.Connection, user_id: str, task_id: str, indexer=None) -> bool:
    """Hard-delete a task and drop it from its project. Returns False if it doesn't exist."""
    task = get_task(db, user_id, task_id)
    if not task:
        return False

    db.execute("DELETE FROM tasks WHERE id = ? AND user_id = ?", (task_id, user_id))
    if task.project_id:
        projects_mod.remove_task_from_project(
            db, user_id, task.project_id, task_id, commit=False
        )
    db.commit()

    if indexer is not None:
        indexer.retract_task(task_id)
    return True


# ── Helpers ───────────────────────────────────────────────────────────────────


def _require_project(db: sqlite3.Connection, user_id: str, project_id: str):
    if not projects_mod.get_project(db, user_id, project_id):
        raise ValueError(f"Project not found: {project_id}")


def _check_choice(value, choices: tuple, label: str) -> str:
    if value not in choices:
        raise ValueError(f"Invalid {label}: {value!r} (expected one of {', '.join(choices)})")
    return value


def _clean_title(title) -> str:
    if not isinstance(title, str) or not title.strip():
        raise ValueError("title is required")
    return title.strip()


def _clean_tags(tags) -> list[str]:
    if tags is None:
        return []
    if isinstance(tags, str):
        tags = [tags]
    cleaned: list[str] = []
    for tag in tags:
        tag = str(tag).strip()
        if tag and tag not in cleaned:
            cleaned.append(tag)
    return cleaned


def _clean_duration(value) -> int | None:
    if value is None or value == "":
        return None
    try:
        minutes = int(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid estimated duration: {value!r}") from e
    if minutes < 0:
        raise ValueError("estimated duration must not be negative")
    return minutes


def _status_list(status) -> list[str]:
    if not status:
        return []
    statuses = [status] if isinstance(status, str) else list(status)
    return [_check_choice(s, TASK_STATUSES, "status") for s in statuses]


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        description=row["description"],
        priority=row["priority"],
        status=row["status"],
        due_date=parse_dt(row["due_date"]),
        project_id=row["project_id"],
        tags=json.loads(row["tags"]) if row["tags"] else [],
        estimated_duration=row["estimated_duration"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
