"""CLI entry point for the productivity agent."""

import json
import logging
import sys
import threading
from contextlib import contextmanager

import click

from productivity_agent.config import get_config
from productivity_agent.core import profiles as profiles_mod
from productivity_agent.core import projects as projects_mod
from productivity_agent.core import tasks as tasks_mod
from productivity_agent.core.notifications import list_notifications
from productivity_agent.core.workflows import WORKFLOWS
from productivity_agent.db.models import (
    AI_PERSONALITIES,
    PROJECT_STATUSES,
    TASK_PRIORITIES,
    TASK_STATUSES,
)
from productivity_agent.runtime import build_runtime
from productivity_agent.serialization import profile_dict, task_dict

USER_OPTION = click.option(
    "--user", "-u", "user_id", envvar="PA_USER", required=True, help="User ID (or set PA_USER)"
)


@contextmanager
def _runtime():
    runtime = build_runtime(background=False)
    try:
        yield runtime
    finally:
        runtime.close()


@contextmanager
def _store(user_id: str):
    with _runtime() as runtime, runtime.shards.connect(user_id) as db:
        yield runtime, db


def _fail(message: str):
    click.echo(message, err=True)
    sys.exit(1)


@click.group()
def main():
    """pa - Productivity Agent CLI"""
    pass


# ── Server Commands ───────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve(host, port):
    """Run the HTTP/WebSocket API and the workflow scheduler."""
    from productivity_agent.web.app import run_server

    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    click.echo(f"Serving on http://{host}:{port} (data: {config.data_dir})")
    run_server(host=host, port=port, runtime=build_runtime(config))


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@USER_OPTION
@click.option("--description", "-d", default=None, help="Task description")
@click.option("--priority", "-p", default="medium", type=click.Choice(TASK_PRIORITIES))
@click.option("--due", default=None, help="Due date (ISO-8601)")
@click.option("--project", default=None, help="Project ID")
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--estimate", default=None, type=int, help="Estimated duration in minutes")
def task_add(title, user_id, description, priority, due, project, tags, estimate):
    """Create a new task."""
    try:
        with _store(user_id) as (runtime, db):
            task = tasks_mod.create_task(
                db, user_id, title,
                description=description,
                priority=priority,
                due_date=due,
                project_id=project,
                tags=list(tags),
                estimated_duration=estimate,
                indexer=runtime.indexer,
            )
    except ValueError as e:
        _fail(str(e))
    click.echo(f"Created task: {task.id}")
    click.echo(f"  Title: {task.title}")
    click.echo(f"  Priority: {task.priority}")
    click.echo(f"  Status: {task.status}")
    if task.due_date:
        click.echo(f"  Due: {task.due_date.isoformat()}")


@task_group.command("list")
@USER_OPTION
@click.option("--status", default=None, help="Filter by status (comma-separated)")
@click.option("--project", default=None, help="Filter by project ID")
@click.option("--due-before", default=None, help="Only tasks due on or before this time")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(user_id, status, project, due_before, json_output):
    """List tasks."""
    statuses = [s.strip() for s in status.split(",")] if status else None
    try:
        with _store(user_id) as (_, db):
            tasks = tasks_mod.list_tasks(
                db, user_id, status=statuses, project_id=project, due_before=due_before
            )
    except ValueError as e:
        _fail(str(e))

    if json_output:
        click.echo(json.dumps([task_dict(t) for t in tasks], indent=2))
        return

    if not tasks:
        click.echo("No tasks found.")
        return

    status_icons = {
        "todo": "○",
        "in-progress": "●",
        "completed": "✓",
        "cancelled": "✗",
    }
    for task in tasks:
        icon = status_icons.get(task.status, "?")
        due = f" due {task.due_date:%Y-%m-%d %H:%M}" if task.due_date else ""
        click.echo(f"  {icon} [{task.priority}] {task.id}: {task.title} ({task.status}){due}")


@task_group.command("update")
@click.argument("task_id")
@USER_OPTION
@click.option("--title", default=None)
@click.option("--description", "-d", default=None)
@click.option("--priority", "-p", default=None, type=click.Choice(TASK_PRIORITIES))
@click.option("--status", "-s", default=None, type=click.Choice(TASK_STATUSES))
@click.option("--due", default=None, help="Due date (ISO-8601)")
@click.option("--project", default=None, help="Project ID")
def task_update(task_id, user_id, **options):
    """Update fields of a task."""
    names = {"due": "due_date", "project": "project_id"}
    fields = {names.get(k, k): v for k, v in options.items() if v is not None}
    try:
        with _store(user_id) as (runtime, db):
            task = tasks_mod.update_task(db, user_id, task_id, indexer=runtime.indexer, **fields)
    except ValueError as e:
        _fail(str(e))
    if not task:
        _fail(f"Task not found: {task_id}")
    click.echo(f"Updated task: {task.id} [{task.priority}] {task.title} ({task.status})")


@task_group.command("done")
@click.argument("task_id")
@USER_OPTION
def task_done(task_id, user_id):
    """Mark a task as completed."""
    with _store(user_id) as (_, db):
        task = tasks_mod.update_task(db, user_id, task_id, status="completed")
    if not task:
        _fail(f"Task not found: {task_id}")
    click.echo(f"Task '{task.title}' completed")


@task_group.command("delete")
@click.argument("task_id")
@USER_OPTION
def task_delete(task_id, user_id):
    """Delete a task."""
    with _store(user_id) as (runtime, db):
        deleted = tasks_mod.delete_task(db, user_id, task_id, indexer=runtime.indexer)
    if not deleted:
        _fail(f"Task not found: {task_id}")
    click.echo(f"Deleted task: {task_id}")


# ── Project Commands ──────────────────────────────────────────────────────────


@main.group("project")
def project_group():
    """Manage projects."""
    pass


@project_group.command("add")
@click.argument("name")
@USER_OPTION
@click.option("--description", "-d", default=None)
@click.option("--deadline", default=None, help="Deadline (ISO-8601)")
def project_add(name, user_id, description, deadline):
    """Create a new project."""
    try:
        with _store(user_id) as (_, db):
            project = projects_mod.create_project(
                db, user_id, name, description=description, deadline=deadline
            )
    except ValueError as e:
        _fail(str(e))
    click.echo(f"Created project: {project.id} ({project.name})")


@project_group.command("list")
@USER_OPTION
@click.option("--status", default=None, type=click.Choice(PROJECT_STATUSES))
def project_list(user_id, status):
    """List projects."""
    with _store(user_id) as (_, db):
        projects = projects_mod.list_projects(db, user_id, status=status)
    if not projects:
        click.echo("No projects found.")
        return
    for project in projects:
        click.echo(f"  {project.id}: {project.name} ({project.status}, {len(project.task_ids)} tasks)")


@project_group.command("archive")
@click.argument("project_id")
@USER_OPTION
def project_archive(project_id, user_id):
    """Archive a project."""
    with _store(user_id) as (_, db):
        project = projects_mod.archive_project(db, user_id, project_id)
    if not project:
        _fail(f"Project not found: {project_id}")
    click.echo(f"Archived project: {project.name}")


# ── Conversation Commands ─────────────────────────────────────────────────────


@main.command("chat")
@click.argument("user_id")
@click.argument("message")
def chat(user_id, message):
    """Send one chat message as USER_ID and print the reply."""
    with _runtime() as runtime:
        reply = runtime.session(user_id).handle_chat(message)
    click.echo(reply.content)
    if reply.metadata and (reply.metadata.get("taskIds") or reply.metadata.get("projectIds")):
        click.echo(
            f"  tasks: {', '.join(reply.metadata.get('taskIds') or []) or '-'}"
            f"  projects: {', '.join(reply.metadata.get('projectIds') or []) or '-'}"
        )


@main.command("connect")
@click.argument("user_id")
@click.option("--url", default="http://127.0.0.1:8787", help="Server base URL")
@click.option("--retries", default=None, type=int, help="Give up after this many failed connects")
def connect(user_id, url, retries):
    """Open a live channel: type messages, see replies and notifications."""
    from productivity_agent.channel import ChatChannel, RetryPolicy

    config = get_config()

    def show(message: dict):
        kind = message.get("type")
        if kind == "chat_response":
            click.echo(f"assistant> {message['data']['content']}")
        elif kind == "notification":
            click.echo(f"[{message['data']['kind']}] {message['data']['message']}")
        elif kind == "error":
            click.echo(f"error: {message.get('message')}", err=True)

    channel = ChatChannel(
        url, user_id,
        policy=RetryPolicy(delay=config.reconnect_delay, max_attempts=retries),
        on_message=show,
    )

    def read_input():
        for line in sys.stdin:
            if line.strip():
                channel.chat(line.strip())
        channel.close()

    threading.Thread(target=read_input, name="pa-connect-input", daemon=True).start()
    click.echo(f"Connecting to {channel.url} (Ctrl-C to quit)")
    try:
        failures = channel.run()
    except KeyboardInterrupt:
        channel.close()
        return
    if failures:
        sys.exit(1)


# ── Workflow Commands ─────────────────────────────────────────────────────────


@main.group("workflow")
def workflow_group():
    """Run background workflows on demand."""
    pass


@workflow_group.command("run")
@click.argument("name", type=click.Choice(WORKFLOWS))
@USER_OPTION
def workflow_run(name, user_id):
    """Run a workflow for a user and wait for it."""
    with _runtime() as runtime:
        runtime.orchestrator.run(name, user_id)
        with runtime.shards.connect(user_id) as db:
            latest = list_notifications(db, user_id, limit=5)
    click.echo(f"Ran {name} for {user_id}")
    for n in reversed(latest):
        click.echo(f"  [{n.kind}] {n.message}")


# ── Profile Commands ──────────────────────────────────────────────────────────


@main.group("profile")
def profile_group():
    """View and change user preferences."""
    pass


@profile_group.command("show")
@USER_OPTION
def profile_show(user_id):
    """Show a user's profile as JSON."""
    with _store(user_id) as (_, db):
        profile = profiles_mod.get_profile(db, user_id)
    click.echo(json.dumps(profile_dict(profile), indent=2))


@profile_group.command("set")
@USER_OPTION
@click.option("--start", default=None, help="Working hours start (HH:MM)")
@click.option("--end", default=None, help="Working hours end (HH:MM)")
@click.option("--timezone", "tz", default=None, help="IANA timezone name")
@click.option("--personality", default=None, type=click.Choice(AI_PERSONALITIES))
def profile_set(user_id, start, end, tz, personality):
    """Update preferences."""
    changes: dict = {}
    hours = {k: v for k, v in (("start", start), ("end", end)) if v is not None}
    if hours:
        changes["working_hours"] = hours
    if tz:
        changes["timezone"] = tz
    if personality:
        changes["ai_personality"] = personality
    if not changes:
        _fail("Nothing to update.")
    try:
        with _store(user_id) as (_, db):
            profile = profiles_mod.update_preferences(db, user_id, changes)
    except ValueError as e:
        _fail(str(e))
    prefs = profile.preferences
    click.echo(
        f"Updated profile for {user_id}: {prefs.working_hours.start}-{prefs.working_hours.end} "
        f"{prefs.timezone}, {prefs.ai_personality}"
    )


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from productivity_agent.mcp.server import mcp
    from productivity_agent.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
