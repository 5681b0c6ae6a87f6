"""MCP prompt templates for common planning sessions."""

from productivity_agent.mcp.server import mcp


@mcp.prompt()
def daily_briefing(user_id: str) -> str:
    """Generate a prompt for a start-of-day briefing."""
    return (
        f"Give user '{user_id}' a short start-of-day briefing.\n\n"
        f"Use list_tasks with status='todo,in-progress' to see open work, "
        f"get_profile to learn their working hours and timezone, and "
        f"run_workflow with workflow='deadline_scan' to refresh deadline reminders.\n\n"
        f"Then provide:\n"
        f"1. Anything due within 24 hours\n"
        f"2. The three tasks to focus on first, and why\n"
        f"3. One concrete suggestion to protect focus time today\n\n"
        f"Keep it under 150 words and match the user's preferred tone."
    )


@mcp.prompt()
def plan_week(user_id: str, goal: str = "") -> str:
    """Generate a prompt to plan the user's week."""
    focus = f"This week's goal: {goal}\n\n" if goal else ""
    return (
        f"Plan the coming week for user '{user_id}'.\n\n"
        f"{focus}"
        f"Use list_projects and list_tasks to review current commitments, then "
        f"run_workflow with workflow='priority_optimization' and "
        f"workflow='schedule_optimization'. Use get_profile to read the resulting "
        f"schedule suggestion.\n\n"
        f"Then provide:\n"
        f"1. A day-by-day outline of focus blocks\n"
        f"2. Tasks to drop, defer or delegate\n"
        f"3. Any missing tasks that the goal implies; create them with create_task"
    )
