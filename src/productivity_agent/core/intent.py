"""Intent extraction from free-text chat messages.

The model is asked for strict JSON, but its output is treated as untrusted
text: anything that doesn't parse into the expected shape falls back to a
neutral ``general_chat`` intent. ``extract`` never raises.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from productivity_agent.db.models import TASK_PRIORITIES

logger = logging.getLogger(__name__)

INTENT_PROMPT = """You are a productivity assistant AI. Analyze the user message and determine:
1. Primary intent (create_task, schedule, query, update, general_chat)
2. Any tasks mentioned or to be created
3. Any projects referenced
4. Priority level if mentioned
5. Due dates or time references
6. Actions to take (create_task, create_project, schedule_optimization, priority_update, deadline_check)

Respond with JSON only, no prose, using exactly this structure:
{
  "primaryAction": "create_task|schedule|query|update|general_chat",
  "confidence": 0.0-1.0,
  "extractedTasks": [{"title": "...", "description": "...", "priority": "low|medium|high|urgent", "dueDate": "ISO-8601 or null"}],
  "extractedProjects": [{"name": "...", "description": "..."}],
  "timeReferences": ["..."],
  "actions": ["action1", "action2"]
}"""

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class PrimaryAction(str, Enum):
    CREATE_TASK = "create_task"
    SCHEDULE = "schedule"
    QUERY = "query"
    UPDATE = "update"
    GENERAL_CHAT = "general_chat"


class IntentParseError(ValueError):
    """Raised when model output cannot be read as an intent."""


@dataclass
class ExtractedTask:
    title: str
    description: str | None = None
    priority: str | None = None
    due_date: str | None = None
    id: str | None = None


@dataclass
class ExtractedProject:
    name: str
    description: str | None = None
    id: str | None = None


@dataclass
class Intent:
    primary_action: PrimaryAction = PrimaryAction.GENERAL_CHAT
    confidence: float = 0.5
    extracted_tasks: list[ExtractedTask] = field(default_factory=list)
    extracted_projects: list[ExtractedProject] = field(default_factory=list)
    time_references: list[str] = field(default_factory=list)
    actions: list[str] = field(default_factory=list)

    @classmethod
    def default(cls) -> "Intent":
        return cls()

    def to_dict(self) -> dict:
        return {
            "primaryAction": self.primary_action.value,
            "confidence": self.confidence,
            "extractedTasks": [
                {k: v for k, v in (
                    ("id", t.id), ("title", t.title), ("description", t.description),
                    ("priority", t.priority), ("dueDate", t.due_date),
                ) if v is not None}
                for t in self.extracted_tasks
            ],
            "extractedProjects": [
                {k: v for k, v in (
                    ("id", p.id), ("name", p.name), ("description", p.description),
                ) if v is not None}
                for p in self.extracted_projects
            ],
            "timeReferences": list(self.time_references),
            "actions": list(self.actions),
        }


class IntentExtractor:
    """Classifies a message through the language-model delegate.

    ``delegate`` is anything with ``run(model, payload) -> {"response": str}``;
    ``None`` means no model is configured and every message is general chat.
    """

    def __init__(self, delegate=None, model: str = "@cf/meta/llama-3.3-70b-instruct"):
        self.delegate = delegate
        self.model = model

    def extract(self, message: str) -> Intent:
        if self.delegate is None:
            return Intent.default()
        try:
            result = self.delegate.run(self.model, {
                "messages": [
                    {"role": "system", "content": INTENT_PROMPT},
                    {"role": "user", "content": message},
                ],
                "max_tokens": 512,
                "temperature": 0.1,
            })
            return parse_intent((result or {}).get("response") or "")
        except IntentParseError as e:
            logger.warning("Unparseable intent response: %s", e)
        except Exception:
            logger.exception("Error analyzing intent")
        return Intent.default()


def parse_intent(raw: str) -> Intent:
    """Parse model output into an Intent, dropping malformed parts.

    Raises IntentParseError when no JSON object can be recovered at all.
    """
    data = load_json_object(raw)

    try:
        action = PrimaryAction(str(data.get("primaryAction", "")).strip().lower())
    except ValueError:
        action = PrimaryAction.GENERAL_CHAT

    try:
        confidence = float(data.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5
    confidence = min(1.0, max(0.0, confidence))

    return Intent(
        primary_action=action,
        confidence=confidence,
        extracted_tasks=[t for t in map(_parse_task, _as_list(data.get("extractedTasks"))) if t],
        extracted_projects=[
            p for p in map(_parse_project, _as_list(data.get("extractedProjects"))) if p
        ],
        time_references=[str(r) for r in _as_list(data.get("timeReferences")) if r],
        actions=_parse_actions(data.get("actions")),
    )


def load_json_object(raw: str) -> dict:
    text = _FENCE_RE.sub("", (raw or "").strip())
    if not text:
        raise IntentParseError("empty response")
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise IntentParseError("no JSON object in response")
        try:
            data = json.loads(text[start:end + 1])
        except json.JSONDecodeError as e:
            raise IntentParseError(str(e)) from e
    if not isinstance(data, dict):
        raise IntentParseError(f"expected an object, got {type(data).__name__}")
    return data


def _as_list(value) -> list:
    return value if isinstance(value, list) else []


def _optional_str(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_task(item) -> ExtractedTask | None:
    if isinstance(item, str):
        item = {"title": item}
    if not isinstance(item, dict):
        return None
    title = _optional_str(item.get("title"))
    if not title:
        return None
    priority = _optional_str(item.get("priority"))
    if priority:
        priority = priority.lower()
    return ExtractedTask(
        title=title,
        description=_optional_str(item.get("description")),
        priority=priority if priority in TASK_PRIORITIES else None,
        due_date=_optional_str(item.get("dueDate") or item.get("due_date")),
        id=_optional_str(item.get("id")),
    )


def _parse_project(item) -> ExtractedProject | None:
    if isinstance(item, str):
        item = {"name": item}
    if not isinstance(item, dict):
        return None
    name = _optional_str(item.get("name"))
    if not name:
        return None
    return ExtractedProject(
        name=name,
        description=_optional_str(item.get("description")),
        id=_optional_str(item.get("id")),
    )


def _parse_actions(value) -> list[str]:
    actions: list[str] = []
    for item in _as_list(value):
        if isinstance(item, str) and item.strip():
            name = item.strip().lower()
            if name not in actions:
                actions.append(name)
    return actions
