"""Reply generation with a context window assembled from the user's stores."""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime

from productivity_agent.core import conversation as conversation_mod
from productivity_agent.core import profiles as profiles_mod
from productivity_agent.core import projects as projects_mod
from productivity_agent.core import tasks as tasks_mod
from productivity_agent.core.intent import Intent, PrimaryAction
from productivity_agent.db.models import OPEN_TASK_STATUSES, ChatMessage, Preferences, utcnow

logger = logging.getLogger(__name__)

EMPTY_REPLY = "I understand, let me help you with that."
FALLBACK_REPLY = "I understand your request and I'm working on it."

INSIGHT_PRIME_FOCUS = "Prime focus window - ideal for high-impact strategic planning"
INSIGHT_ENERGY = "Energy-conservation window - favour communication and lighter tasks"
INSIGHT_CONSOLIDATE = "High task volume detected - recommend consolidating related work"
INSIGHT_PRIORITY_MATRIX = "Multi-project complexity - suggest a priority matrix review"
INSIGHT_NEUTRAL = "Optimal execution conditions"


@dataclass
class UserContext:
    open_tasks: int = 0
    active_projects: int = 0
    working_hours_start: str = "09:00"
    working_hours_end: str = "17:00"
    timezone: str = "UTC"
    personality: str = "professional"
    insight: str = INSIGHT_NEUTRAL
    recent: list[ChatMessage] = field(default_factory=list)


def strategic_insight(hour: int, open_tasks: int, active_projects: int) -> str:
    """Deterministic one-line guidance from the time of day and workload."""
    insights = []
    if hour < 10:
        insights.append(INSIGHT_PRIME_FOCUS)
    elif hour > 15:
        insights.append(INSIGHT_ENERGY)
    if open_tasks > 10:
        insights.append(INSIGHT_CONSOLIDATE)
    if active_projects > 3:
        insights.append(INSIGHT_PRIORITY_MATRIX)
    return "; ".join(insights) or INSIGHT_NEUTRAL


def build_context(
    db: sqlite3.Connection,
    user_id: str,
    history_limit: int = 5,
    now: datetime | None = None,
) -> UserContext:
    """Gather counts, preferences and recent turns. Each read degrades independently."""
    context = UserContext()

    try:
        context.open_tasks = tasks_mod.count_tasks(db, user_id, status=list(OPEN_TASK_STATUSES))
        context.active_projects = projects_mod.count_projects(db, user_id, status="active")
    except Exception:
        logger.exception("Error counting tasks for %s", user_id)

    preferences = Preferences()
    tz = None
    try:
        profile = profiles_mod.get_profile(db, user_id)
        preferences = profile.preferences
        tz = profiles_mod.user_timezone(profile)
    except Exception:
        logger.exception("Error loading profile for %s", user_id)
    context.working_hours_start = preferences.working_hours.start
    context.working_hours_end = preferences.working_hours.end
    context.timezone = preferences.timezone
    context.personality = preferences.ai_personality

    try:
        context.recent = conversation_mod.recent_messages(db, user_id, history_limit)
    except Exception:
        logger.exception("Error loading recent messages for %s", user_id)

    local_now = now or utcnow()
    if tz is not None:
        local_now = local_now.astimezone(tz)
    context.insight = strategic_insight(
        local_now.hour, context.open_tasks, context.active_projects
    )
    return context


def build_system_prompt(context: UserContext) -> str:
    thread = "\n".join(f"{m.type}: {m.content}" for m in context.recent) or "(no prior messages)"
    return f"""You are an elite AI Chief of Staff. You think strategically, anticipate needs, and protect the user's time.

Your core traits:
- Strategic thinking: consider the bigger picture and long-term impact
- Proactive intelligence: anticipate needs before they're expressed
- Clear communication: concise, with context for every recommendation
- Time sovereignty: treat time as the most precious resource

Tone: {context.personality}

Current context:
- Core hours: {context.working_hours_start} - {context.working_hours_end}
- Time zone: {context.timezone}
- Active initiatives: {context.open_tasks} open tasks across {context.active_projects} active projects
- Strategic insight: {context.insight}

Conversation thread:
{thread}

When you take an action, explain the rationale briefly."""


class ResponseGenerator:
    def __init__(self, delegate=None, model: str = "@cf/meta/llama-3.3-70b-instruct"):
        self.delegate = delegate
        self.model = model

    def generate(self, message: str, intent: Intent, context: UserContext) -> str:
        """Produce the assistant reply. Never raises."""
        if self.delegate is None:
            return FALLBACK_REPLY
        prompt = build_system_prompt(context)
        if intent.primary_action is not PrimaryAction.GENERAL_CHAT:
            prompt += f"\n\nDetected intent: {intent.primary_action.value}"
        try:
            result = self.delegate.run(self.model, {
                "messages": [
                    {"role": "system", "content": prompt},
                    {"role": "user", "content": message},
                ],
                "max_tokens": 300,
                "temperature": 0.7,
            })
        except Exception:
            logger.exception("Error generating response")
            return FALLBACK_REPLY
        response = (result or {}).get("response") if isinstance(result, dict) else None
        if not isinstance(response, str) or not response.strip():
            return EMPTY_REPLY
        return response.strip()
