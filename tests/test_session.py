"""Tests for the per-user agent session."""

import json
import tempfile
import threading
from unittest.mock import MagicMock, patch

import pytest

from productivity_agent.core import conversation as conversation_mod
from productivity_agent.core import projects as projects_mod
from productivity_agent.core import tasks as tasks_mod
from productivity_agent.core.intent import IntentExtractor
from productivity_agent.core.responses import FALLBACK_REPLY, ResponseGenerator
from productivity_agent.core.session import DEGRADED_REPLY, AgentSession, TurnState
from productivity_agent.db.shards import ShardRegistry


@pytest.fixture
def shards():
    with tempfile.TemporaryDirectory() as tmp:
        yield ShardRegistry(tmp)


def _scripted_delegate(intent: dict, reply: str = "On it."):
    """Delegate that answers the intent request, then the reply request."""
    delegate = MagicMock()
    delegate.run.side_effect = [{"response": json.dumps(intent)}, {"response": reply}]
    return delegate


def _session(shards, delegate=None, orchestrator=None, indexer=None, user_id="alice"):
    return AgentSession(
        shards.get(user_id),
        IntentExtractor(delegate),
        ResponseGenerator(delegate),
        orchestrator=orchestrator,
        indexer=indexer,
    )


class TestChatTurn:
    def test_create_task_end_to_end(self, shards):
        delegate = _scripted_delegate({
            "primaryAction": "create_task",
            "confidence": 0.9,
            "extractedTasks": [
                {"title": "Write Q3 report", "priority": "high", "dueDate": "2030-06-07T17:00:00Z"}
            ],
            "actions": ["create_task"],
        }, reply="Added 'Write Q3 report' for Friday.")
        session = _session(shards, delegate)

        reply = session.handle_chat("Add a task: write Q3 report by Friday, high priority")

        assert reply.type == "assistant"
        assert reply.content == "Added 'Write Q3 report' for Friday."
        assert reply.metadata["actionType"] == "create_task"
        assert len(reply.metadata["taskIds"]) == 1
        assert reply.metadata["projectIds"] == []
        assert session.state is TurnState.PERSISTED

        with shards.connect("alice") as db:
            task = tasks_mod.get_task(db, "alice", reply.metadata["taskIds"][0])
            history = conversation_mod.recent_messages(db, "alice", 10)
        assert task.title == "Write Q3 report"
        assert task.priority == "high"
        assert task.due_date.isoformat() == "2030-06-07T17:00:00+00:00"
        assert [m.type for m in history] == ["user", "assistant"]
        assert history[1].id == reply.id

    def test_implicit_create_task_without_action(self, shards):
        delegate = _scripted_delegate({
            "primaryAction": "create_task",
            "extractedTasks": [{"title": "Call the bank"}],
            "actions": [],
        })
        reply = _session(shards, delegate).handle_chat("remind me to call the bank")
        assert len(reply.metadata["taskIds"]) == 1

    def test_creates_projects(self, shards):
        delegate = _scripted_delegate({
            "primaryAction": "update",
            "extractedProjects": [{"name": "Website relaunch"}],
            "actions": ["create_project"],
        })
        reply = _session(shards, delegate).handle_chat("start a website relaunch project")
        with shards.connect("alice") as db:
            [project] = projects_mod.list_projects(db, "alice")
        assert reply.metadata["projectIds"] == [project.id]
        assert project.name == "Website relaunch"

    def test_unparseable_due_date_is_dropped(self, shards):
        delegate = _scripted_delegate({
            "primaryAction": "create_task",
            "extractedTasks": [{"title": "Dentist", "dueDate": "next Tuesday-ish"}],
            "actions": ["create_task"],
        })
        reply = _session(shards, delegate).handle_chat("dentist next tuesday")
        with shards.connect("alice") as db:
            task = tasks_mod.get_task(db, "alice", reply.metadata["taskIds"][0])
        assert task.due_date is None

    def test_workflow_actions_trigger_orchestrator(self, shards):
        orchestrator = MagicMock()
        delegate = _scripted_delegate({
            "primaryAction": "schedule",
            "actions": ["priority_update", "deadline_check", "schedule_optimization"],
        })
        _session(shards, delegate, orchestrator=orchestrator).handle_chat("organise my week")
        triggered = [c.args for c in orchestrator.trigger.call_args_list]
        assert triggered == [
            ("priority_optimization", "alice"),
            ("deadline_scan", "alice"),
            ("schedule_optimization", "alice"),
        ]

    def test_failing_action_does_not_stop_others(self, shards):
        orchestrator = MagicMock()
        orchestrator.trigger.side_effect = RuntimeError("queue full")
        delegate = _scripted_delegate({
            "primaryAction": "create_task",
            "extractedTasks": [{"title": "Book flights"}],
            "actions": ["schedule_optimization", "teleport", "create_task"],
        })
        reply = _session(shards, delegate, orchestrator=orchestrator).handle_chat("book flights")
        assert reply.content == "On it."
        assert len(reply.metadata["taskIds"]) == 1

    def test_indexer_receives_created_tasks(self, shards):
        indexer = MagicMock()
        delegate = _scripted_delegate({
            "primaryAction": "create_task",
            "extractedTasks": [{"title": "Indexed task"}],
        })
        _session(shards, delegate, indexer=indexer).handle_chat("add indexed task")
        assert indexer.index_task.call_args[0][0].title == "Indexed task"

    def test_without_model_replies_with_fallback(self, shards):
        reply = _session(shards).handle_chat("hello")
        assert reply.content == FALLBACK_REPLY
        assert reply.metadata == {"actionType": "general_chat", "taskIds": [], "projectIds": []}


class TestDegradedTurn:
    def test_store_failure_returns_unpersisted_apology(self, shards):
        session = _session(shards)
        with patch(
            "productivity_agent.core.session.conversation_mod.append_message",
            side_effect=RuntimeError("disk full"),
        ):
            reply = session.handle_chat("hello")
        assert reply.content == DEGRADED_REPLY
        assert reply.type == "assistant"
        with shards.connect("alice") as db:
            assert conversation_mod.recent_messages(db, "alice", 10) == []

    def test_extractor_crash_returns_apology(self, shards):
        extractor = MagicMock()
        extractor.extract.side_effect = RuntimeError("bug")
        session = AgentSession(shards.get("alice"), extractor, ResponseGenerator(None))
        assert session.handle_chat("hello").content == DEGRADED_REPLY


class TestTurnSerialization:
    def test_turns_for_one_user_do_not_interleave(self, shards):
        session = _session(shards)
        threads = [
            threading.Thread(target=session.handle_chat, args=(f"message {i}",)) for i in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        with shards.connect("alice") as db:
            history = conversation_mod.recent_messages(db, "alice", 20)
        assert [m.type for m in history] == ["user", "assistant"] * 4

    def test_list_tasks_is_owner_scoped(self, shards):
        with shards.connect("alice") as db:
            tasks_mod.create_task(db, "alice", "Mine")
        with shards.connect("bob") as db:
            tasks_mod.create_task(db, "bob", "Not mine")
        assert [t.title for t in _session(shards).list_tasks()] == ["Mine"]
