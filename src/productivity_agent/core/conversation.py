"""Append-only chat history used to build rolling model context."""

import json
import sqlite3
import uuid

from productivity_agent.db.models import MESSAGE_TYPES, ChatMessage, format_dt, parse_dt, utcnow


def new_message(
    user_id: str,
    content: str,
    type: str,
    metadata: dict | None = None,
) -> ChatMessage:
    """Build an unsaved message stamped with the current time."""
    return ChatMessage(
        id=uuid.uuid4().hex,
        user_id=user_id,
        content=content,
        timestamp=utcnow(),
        type=type,
        metadata=metadata,
    )


def append_message(db: sqlite3.Connection, message: ChatMessage) -> ChatMessage:
    """Persist a message. Messages are never updated afterwards."""
    if message.type not in MESSAGE_TYPES:
        raise ValueError(f"Invalid message type: {message.type!r}")
    db.execute(
        """INSERT INTO messages (id, user_id, content, timestamp, type, metadata)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (
            message.id,
            message.user_id,
            message.content,
            format_dt(message.timestamp),
            message.type,
            json.dumps(message.metadata) if message.metadata is not None else None,
        ),
    )
    db.commit()
    return message


def recent_messages(db: sqlite3.Connection, user_id: str, limit: int = 5) -> list[ChatMessage]:
    """Return the last ``limit`` messages for a user, oldest first."""
    if limit <= 0:
        return []
    rows = db.execute(
        """SELECT * FROM messages WHERE user_id = ?
           ORDER BY timestamp DESC, seq DESC LIMIT ?""",
        (user_id, limit),
    ).fetchall()
    return [_row_to_message(r) for r in reversed(rows)]


def _row_to_message(row: sqlite3.Row) -> ChatMessage:
    return ChatMessage(
        id=row["id"],
        user_id=row["user_id"],
        content=row["content"],
        timestamp=parse_dt(row["timestamp"]),
        type=row["type"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else None,
    )
