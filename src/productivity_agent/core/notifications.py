"""User notifications: persisted, pushed to live channels, optionally mirrored to Slack."""

import json
import logging
import sqlite3
import threading
import uuid
from collections.abc import Callable

from productivity_agent.db.models import Notification, format_dt, parse_dt, utcnow
from productivity_agent.integrations import slack as slack_mod

logger = logging.getLogger(__name__)


def record_notification(
    db: sqlite3.Connection,
    user_id: str,
    kind: str,
    message: str,
    data: dict | None = None,
) -> Notification:
    notification = Notification(
        id=uuid.uuid4().hex,
        user_id=user_id,
        kind=kind,
        message=message,
        data=data,
        created_at=utcnow(),
    )
    db.execute(
        """INSERT INTO notifications (id, user_id, kind, message, data, created_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (
            notification.id, user_id, kind, message,
            json.dumps(data) if data is not None else None,
            format_dt(notification.created_at),
        ),
    )
    db.commit()
    return notification


def list_notifications(db: sqlite3.Connection, user_id: str, limit: int = 20) -> list[Notification]:
    """Most recent notifications first."""
    rows = db.execute(
        """SELECT * FROM notifications WHERE user_id = ?
           ORDER BY created_at DESC, rowid DESC LIMIT ?""",
        (user_id, limit),
    ).fetchall()
    return [
        Notification(
            id=r["id"],
            user_id=r["user_id"],
            kind=r["kind"],
            message=r["message"],
            data=json.loads(r["data"]) if r["data"] else None,
            created_at=parse_dt(r["created_at"]),
        )
        for r in rows
    ]


class NotificationHub:
    """In-process fan-out of notifications to connected real-time channels."""

    def __init__(self):
        self._subscribers: dict[str, list[Callable[[Notification], None]]] = {}
        self._lock = threading.Lock()

    def subscribe(self, user_id: str, callback: Callable[[Notification], None]) -> Callable[[], None]:
        """Register a callback; returns a function that removes it."""
        with self._lock:
            self._subscribers.setdefault(user_id, []).append(callback)

        def unsubscribe():
            with self._lock:
                callbacks = self._subscribers.get(user_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._subscribers.pop(user_id, None)

        return unsubscribe

    def publish(self, notification: Notification) -> int:
        """Deliver to every subscriber of the user. Returns the number reached."""
        with self._lock:
            callbacks = list(self._subscribers.get(notification.user_id, []))
        delivered = 0
        for callback in callbacks:
            try:
                callback(notification)
                delivered += 1
            except Exception:
                logger.exception("Failed to push notification to a live channel")
        return delivered


class Notifier:
    """Delivers workflow notifications to a user through every configured leg."""

    def __init__(
        self,
        shards,
        hub: NotificationHub | None = None,
        slack_token: str | None = None,
        slack_channel: str | None = None,
    ):
        self.shards = shards
        self.hub = hub
        self.slack_token = slack_token
        self.slack_channel = slack_channel

    def notify(self, user_id: str, kind: str, message: str, data: dict | None = None) -> Notification:
        with self.shards.connect(user_id) as db:
            notification = record_notification(db, user_id, kind, message, data)

        if self.hub is not None:
            self.hub.publish(notification)

        if self.slack_token and self.slack_channel:
            try:
                slack_mod.post_notification(self.slack_token, self.slack_channel, notification)
            except Exception:
                logger.exception("Failed to send Slack notification for %s", user_id)

        logger.info("Notified %s (%s): %s", user_id, kind, message)
        return notification
