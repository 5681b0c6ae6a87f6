"""camelCase JSON shapes shared by the HTTP API, the WebSocket channel and MCP tools."""

from dataclasses import asdict

from productivity_agent.db.models import (
    ChatMessage,
    Notification,
    Project,
    Task,
    UserProfile,
    format_dt,
)

TASK_FIELDS = {
    "title": "title",
    "description": "description",
    "priority": "priority",
    "status": "status",
    "dueDate": "due_date",
    "projectId": "project_id",
    "tags": "tags",
    "estimatedDuration": "estimated_duration",
}

PROJECT_FIELDS = {
    "name": "name",
    "description": "description",
    "status": "status",
    "deadline": "deadline",
}


def task_dict(t: Task) -> dict:
    return {
        "id": t.id,
        "userId": t.user_id,
        "title": t.title,
        "description": t.description,
        "priority": t.priority,
        "status": t.status,
        "dueDate": format_dt(t.due_date),
        "projectId": t.project_id,
        "tags": list(t.tags),
        "estimatedDuration": t.estimated_duration,
        "createdAt": format_dt(t.created_at),
        "updatedAt": format_dt(t.updated_at),
    }


def project_dict(p: Project) -> dict:
    return {
        "id": p.id,
        "userId": p.user_id,
        "name": p.name,
        "description": p.description,
        "status": p.status,
        "tasks": list(p.task_ids),
        "deadline": format_dt(p.deadline),
        "createdAt": format_dt(p.created_at),
        "updatedAt": format_dt(p.updated_at),
    }


def message_dict(m: ChatMessage) -> dict:
    data = {
        "id": m.id,
        "userId": m.user_id,
        "content": m.content,
        "timestamp": format_dt(m.timestamp),
        "type": m.type,
    }
    if m.metadata is not None:
        data["metadata"] = m.metadata
    return data


def profile_dict(p: UserProfile) -> dict:
    prefs = p.preferences
    return {
        "userId": p.user_id,
        "preferences": {
            "workingHours": asdict(prefs.working_hours),
            "timezone": prefs.timezone,
            "priorityWeights": asdict(prefs.priority_weights),
            "aiPersonality": prefs.ai_personality,
        },
        "latestSchedule": p.latest_schedule,
        "createdAt": format_dt(p.created_at),
        "updatedAt": format_dt(p.updated_at),
    }


def notification_dict(n: Notification) -> dict:
    return {
        "id": n.id,
        "userId": n.user_id,
        "kind": n.kind,
        "message": n.message,
        "data": n.data,
        "createdAt": format_dt(n.created_at),
    }


def task_fields(body: dict) -> dict:
    """Store keyword arguments for the task fields present in a request body."""
    return {snake: body[camel] for camel, snake in TASK_FIELDS.items() if camel in body}


def project_fields(body: dict) -> dict:
    return {snake: body[camel] for camel, snake in PROJECT_FIELDS.items() if camel in body}


def preference_changes(body: dict) -> dict:
    """Translate camelCase preference keys into the profile store's nested names."""
    mapping = {
        "workingHours": "working_hours",
        "timezone": "timezone",
        "priorityWeights": "priority_weights",
        "aiPersonality": "ai_personality",
    }
    if not isinstance(body, dict):
        raise ValueError("preferences must be an object")
    changes = {}
    for key, value in body.items():
        if key == "userId":
            continue
        changes[mapping.get(key, key)] = value
    return changes
