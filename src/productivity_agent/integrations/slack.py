"""Slack mirror for assistant notifications."""

from dataclasses import dataclass

from productivity_agent.db.models import Notification

KIND_EMOJI = {
    "deadline_urgent": ":rotating_light:",
    "deadline_upcoming": ":calendar:",
    "strategic_optimization": ":compass:",
    "schedule_optimization": ":spiral_calendar_pad:",
    "workflow_error": ":warning:",
}


class SlackError(Exception):
    """Raised when a notification can't be posted to Slack."""


@dataclass
class SlackPost:
    channel: str
    ts: str
    kind: str


def get_client(token: str | None):
    """Slack WebClient for the bot token, or None when Slack isn't configured."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def post_notification(token: str | None, channel: str, notification: Notification) -> SlackPost:
    """Post a notification to a channel, with the message as fallback text."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(
        channel=channel,
        text=notification.message,
        blocks=format_notification(notification),
        unfurl_links=False,
    )
    return SlackPost(channel=response["channel"], ts=response["ts"], kind=notification.kind)


def format_notification(notification: Notification) -> list[dict]:
    """Block Kit layout: a headline section plus a context line when tasks are attached."""
    emoji = KIND_EMOJI.get(notification.kind, ":bell:")
    title = notification.kind.replace("_", " ").title()
    blocks = [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"{emoji} *{title}* for `{notification.user_id}`\n{notification.message}",
            },
        }
    ]
    task_ids = (notification.data or {}).get("taskIds") or []
    if task_ids:
        blocks.append({
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": f"{len(task_ids)} task(s) involved"}],
        })
    return blocks
