"""Per-user conversational agent.

A session owns nothing but references: state lives in the user's shard, so a
session can be rebuilt at any time from the shard and the shared delegates.
"""

import logging
from enum import Enum

from productivity_agent.core import conversation as conversation_mod
from productivity_agent.core import projects as projects_mod
from productivity_agent.core import tasks as tasks_mod
from productivity_agent.core.intent import Intent, IntentExtractor, PrimaryAction
from productivity_agent.core.responses import ResponseGenerator, build_context
from productivity_agent.db.models import ChatMessage, Task, parse_dt

logger = logging.getLogger(__name__)

DEGRADED_REPLY = (
    "I apologize, but I encountered an error processing your request. Please try again."
)

# Chat action name -> orchestrator workflow name
WORKFLOW_ACTIONS = {
    "schedule_optimization": "schedule_optimization",
    "priority_update": "priority_optimization",
    "deadline_check": "deadline_scan",
    "deadline_reminder": "deadline_scan",
}


class TurnState(str, Enum):
    RECEIVED = "received"
    INTENT_EXTRACTED = "intent_extracted"
    ACTIONS_DISPATCHED = "actions_dispatched"
    RESPONSE_GENERATED = "response_generated"
    PERSISTED = "persisted"


class AgentSession:
    def __init__(
        self,
        shard,
        extractor: IntentExtractor,
        generator: ResponseGenerator,
        orchestrator=None,
        indexer=None,
        history_limit: int = 5,
    ):
        self.shard = shard
        self.user_id = shard.user_id
        self.extractor = extractor
        self.generator = generator
        self.orchestrator = orchestrator
        self.indexer = indexer
        self.history_limit = history_limit
        self.state: TurnState | None = None

    def handle_chat(self, content: str) -> ChatMessage:
        """Run one chat turn and return the assistant message.

        Turns for the same user are serialized. Any fault yields an unpersisted
        apology instead of an exception.
        """
        with self.shard.turn():
            try:
                return self._turn(content)
            except Exception:
                logger.exception("Error processing message for %s", self.user_id)
                return conversation_mod.new_message(self.user_id, DEGRADED_REPLY, "assistant")

    def list_tasks(self) -> list[Task]:
        with self.shard.connect() as db:
            return tasks_mod.list_tasks(db, self.user_id)

    def _turn(self, content: str) -> ChatMessage:
        inbound = conversation_mod.new_message(self.user_id, content, "user")
        with self.shard.connect() as db:
            conversation_mod.append_message(db, inbound)
        self.state = TurnState.RECEIVED

        intent = self.extractor.extract(content)
        self.state = TurnState.INTENT_EXTRACTED

        task_ids, project_ids = self._dispatch(intent)
        self.state = TurnState.ACTIONS_DISPATCHED

        with self.shard.connect() as db:
            context = build_context(db, self.user_id, self.history_limit)
        reply = self.generator.generate(content, intent, context)
        self.state = TurnState.RESPONSE_GENERATED

        outbound = conversation_mod.new_message(
            self.user_id,
            reply,
            "assistant",
            metadata={
                "actionType": intent.primary_action.value,
                "taskIds": task_ids,
                "projectIds": project_ids,
            },
        )
        with self.shard.connect() as db:
            conversation_mod.append_message(db, outbound)
        self.state = TurnState.PERSISTED
        return outbound

    # ── Action dispatch ──────────────────────────────────────────────────────

    def _dispatch(self, intent: Intent) -> tuple[list[str], list[str]]:
        task_ids = [t.id for t in intent.extracted_tasks if t.id]
        project_ids = [p.id for p in intent.extracted_projects if p.id]

        actions = list(intent.actions)
        if (
            intent.primary_action is PrimaryAction.CREATE_TASK
            and intent.extracted_tasks
            and "create_task" not in actions
        ):
            actions.insert(0, "create_task")

        for action in actions:
            try:
                if action == "create_task":
                    task_ids.extend(self._create_tasks(intent))
                elif action == "create_project":
                    project_ids.extend(self._create_projects(intent))
                elif action in WORKFLOW_ACTIONS:
                    self._trigger(WORKFLOW_ACTIONS[action])
                else:
                    logger.info("Skipping unknown action %r for %s", action, self.user_id)
            except Exception:
                logger.exception("Error executing action %s for %s", action, self.user_id)

        return _unique(task_ids), _unique(project_ids)

    def _create_tasks(self, intent: Intent) -> list[str]:
        created = []
        for extracted in intent.extracted_tasks:
            if extracted.id:
                continue
            try:
                with self.shard.connect() as db:
                    task = tasks_mod.create_task(
                        db,
                        self.user_id,
                        extracted.title,
                        description=extracted.description,
                        priority=extracted.priority or "medium",
                        due_date=_due_date(extracted.due_date),
                        indexer=self.indexer,
                    )
                created.append(task.id)
            except Exception:
                logger.exception("Error creating task %r for %s", extracted.title, self.user_id)
        return created

    def _create_projects(self, intent: Intent) -> list[str]:
        created = []
        for extracted in intent.extracted_projects:
            if extracted.id:
                continue
            try:
                with self.shard.connect() as db:
                    project = projects_mod.create_project(
                        db, self.user_id, extracted.name, description=extracted.description
                    )
                created.append(project.id)
            except Exception:
                logger.exception("Error creating project %r for %s", extracted.name, self.user_id)
        return created

    def _trigger(self, workflow: str):
        if self.orchestrator is None:
            logger.info("No orchestrator configured; skipping %s for %s", workflow, self.user_id)
            return
        self.orchestrator.trigger(workflow, self.user_id)


def _due_date(value: str | None):
    try:
        return parse_dt(value)
    except ValueError:
        logger.warning("Ignoring unparseable due date %r", value)
        return None


def _unique(ids: list[str]) -> list[str]:
    seen: set[str] = set()
    return [i for i in ids if not (i in seen or seen.add(i))]
