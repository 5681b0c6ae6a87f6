"""MCP server exposing the productivity agent as tools."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from productivity_agent.core import profiles as profiles_mod
from productivity_agent.core import projects as projects_mod
from productivity_agent.core import tasks as tasks_mod
from productivity_agent.runtime import Runtime, build_runtime
from productivity_agent.serialization import (
    message_dict,
    profile_dict,
    project_dict,
    task_dict,
)


@dataclass
class AppContext:
    runtime: Runtime


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Build the runtime and start the workflow scheduler; tear both down on exit."""
    runtime = build_runtime()
    runtime.start_scheduler()
    try:
        yield AppContext(runtime=runtime)
    finally:
        runtime.close()


mcp = FastMCP("productivity-agent", lifespan=app_lifespan)


def _rt(ctx: Context) -> Runtime:
    return ctx.request_context.lifespan_context.runtime


# ── Conversation Tools ────────────────────────────────────────────────────────


@mcp.tool()
def chat(ctx: Context, user_id: str, message: str) -> dict:
    """Send a chat message to the user's assistant and return its reply.

    The assistant may create tasks or projects and start workflows as a side
    effect; created ids are listed in the reply's metadata.
    """
    reply = _rt(ctx).session(user_id).handle_chat(message)
    return message_dict(reply)


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    user_id: str,
    title: str,
    description: str | None = None,
    priority: str = "medium",
    due_date: str | None = None,
    project_id: str | None = None,
    tags: list[str] | None = None,
    estimated_duration: int | None = None,
) -> dict:
    """Create a task. Priority: low, medium, high or urgent. due_date is ISO-8601."""
    runtime = _rt(ctx)
    try:
        with runtime.shards.connect(user_id) as db:
            task = tasks_mod.create_task(
                db, user_id, title,
                description=description,
                priority=priority,
                due_date=due_date,
                project_id=project_id,
                tags=tags,
                estimated_duration=estimated_duration,
                indexer=runtime.indexer,
            )
    except ValueError as e:
        return {"error": str(e)}
    return task_dict(task)


@mcp.tool()
def list_tasks(
    ctx: Context,
    user_id: str,
    status: str | None = None,
    project_id: str | None = None,
    due_before: str | None = None,
) -> list[dict]:
    """List a user's tasks. status may be comma-separated (e.g. "todo,in-progress")."""
    statuses = [s.strip() for s in status.split(",") if s.strip()] if status else None
    with _rt(ctx).shards.connect(user_id) as db:
        tasks = tasks_mod.list_tasks(
            db, user_id, status=statuses, project_id=project_id, due_before=due_before
        )
    return [task_dict(t) for t in tasks]


@mcp.tool()
def update_task(
    ctx: Context,
    user_id: str,
    task_id: str,
    title: str | None = None,
    description: str | None = None,
    priority: str | None = None,
    status: str | None = None,
    due_date: str | None = None,
    project_id: str | None = None,
) -> dict:
    """Update the given fields of a task. Omitted fields are left unchanged."""
    fields = {
        k: v
        for k, v in {
            "title": title,
            "description": description,
            "priority": priority,
            "status": status,
            "due_date": due_date,
            "project_id": project_id,
        }.items()
        if v is not None
    }
    runtime = _rt(ctx)
    try:
        with runtime.shards.connect(user_id) as db:
            task = tasks_mod.update_task(db, user_id, task_id, indexer=runtime.indexer, **fields)
    except ValueError as e:
        return {"error": str(e)}
    if not task:
        return {"error": f"Task not found: {task_id}"}
    return task_dict(task)


@mcp.tool()
def delete_task(ctx: Context, user_id: str, task_id: str) -> dict:
    """Permanently delete a task."""
    runtime = _rt(ctx)
    with runtime.shards.connect(user_id) as db:
        deleted = tasks_mod.delete_task(db, user_id, task_id, indexer=runtime.indexer)
    if not deleted:
        return {"error": f"Task not found: {task_id}"}
    return {"deleted": task_id}


@mcp.tool()
def search_tasks(ctx: Context, user_id: str, query: str) -> dict:
    """Semantic search over the user's tasks. Empty when no index is configured."""
    try:
        return {"results": _rt(ctx).indexer.search(user_id, query)}
    except Exception as e:
        return {"error": f"Search failed: {e}"}


# ── Project Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def create_project(
    ctx: Context,
    user_id: str,
    name: str,
    description: str | None = None,
    deadline: str | None = None,
) -> dict:
    """Create a project."""
    try:
        with _rt(ctx).shards.connect(user_id) as db:
            project = projects_mod.create_project(
                db, user_id, name, description=description, deadline=deadline
            )
    except ValueError as e:
        return {"error": str(e)}
    return project_dict(project)


@mcp.tool()
def list_projects(ctx: Context, user_id: str, status: str | None = None) -> list[dict]:
    """List a user's projects, optionally filtered by status (active, completed, archived)."""
    with _rt(ctx).shards.connect(user_id) as db:
        projects = projects_mod.list_projects(db, user_id, status=status)
    return [project_dict(p) for p in projects]


# ── Profile & Workflow Tools ──────────────────────────────────────────────────


@mcp.tool()
def get_profile(ctx: Context, user_id: str) -> dict:
    """Get a user's preferences and latest schedule suggestion."""
    with _rt(ctx).shards.connect(user_id) as db:
        profile = profiles_mod.get_profile(db, user_id)
    return profile_dict(profile)


@mcp.tool()
def run_workflow(ctx: Context, user_id: str, workflow: str) -> dict:
    """Run a workflow now: priority_optimization, deadline_scan or schedule_optimization."""
    try:
        _rt(ctx).orchestrator.run(workflow, user_id)
    except ValueError as e:
        return {"error": str(e)}
    return {"success": True, "message": f"{workflow} completed"}
