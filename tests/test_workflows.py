"""Tests for the workflow orchestrator and scheduler."""

import json
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from productivity_agent.core import profiles as profiles_mod
from productivity_agent.core import tasks as tasks_mod
from productivity_agent.core.notifications import Notifier, list_notifications
from productivity_agent.core.workflows import (
    WorkflowOrchestrator,
    WorkflowScheduler,
    calculate_cognitive_load,
    fallback_matrix,
    greedy_schedule,
)
from productivity_agent.db.models import Preferences, Task, utcnow
from productivity_agent.db.shards import ShardRegistry

NOW = datetime(2030, 3, 4, 10, 0, tzinfo=timezone.utc)  # a Monday


@pytest.fixture
def shards():
    with tempfile.TemporaryDirectory() as tmp:
        yield ShardRegistry(tmp)


@pytest.fixture
def orchestrator(shards):
    return WorkflowOrchestrator(shards, notifier=Notifier(shards))


def _task(priority="medium", duration=None, project_id=None, due=None, id="t"):
    return Task(
        id=id, user_id="alice", title=id, priority=priority,
        estimated_duration=duration, project_id=project_id, due_date=due,
    )


def _add(shards, title, **fields):
    with shards.connect("alice") as db:
        return tasks_mod.create_task(db, "alice", title, **fields)


def _notifications(shards, user_id="alice"):
    with shards.connect(user_id) as db:
        return list(reversed(list_notifications(db, user_id)))


class TestCognitiveLoad:
    def test_single_heavy_orphan_task(self):
        load = calculate_cognitive_load([_task("urgent", duration=180)])
        assert load.total == pytest.approx(7.2)
        assert load.level == "optimal"
        assert load.recommendations == []

    def test_project_task_has_no_penalty(self):
        assert calculate_cognitive_load([_task("high", project_id="p")]).total == pytest.approx(3.0)

    def test_monotonic_in_added_tasks(self):
        tasks = []
        previous = 0.0
        for i, priority in enumerate(["low", "medium", "high", "urgent"] * 3):
            tasks.append(_task(priority, duration=30 * i, id=f"t{i}"))
            total = calculate_cognitive_load(tasks).total
            assert total >= previous
            previous = total

    def test_levels(self):
        assert calculate_cognitive_load([_task("high", project_id="p")] * 7).level == "high"
        overloaded = calculate_cognitive_load([_task("urgent", project_id="p")] * 10)
        assert overloaded.level == "overloaded"
        assert overloaded.recommendations == ["Consider delegation", "Block focus time"]


class TestDeadlineScan:
    def test_task_due_in_two_hours_is_urgent(self, shards, orchestrator):
        task = _add(shards, "Send invoice", due_date=NOW + timedelta(hours=2))
        scan = orchestrator.check_deadlines("alice", now=NOW)
        assert [t.id for t in scan.urgent] == [task.id]
        assert [t.id for t in scan.upcoming] == [task.id]

        urgent, upcoming = _notifications(shards)
        assert urgent.kind == "deadline_urgent"
        assert urgent.message == "🚨 You have 1 task(s) due within 24 hours: Send invoice"
        assert upcoming.message.startswith("📅 You have 1 task(s) due this week.")

    def test_task_due_in_ten_days_is_neither(self, shards, orchestrator):
        _add(shards, "Far away", due_date=NOW + timedelta(days=10))
        scan = orchestrator.check_deadlines("alice", now=NOW)
        assert scan.urgent == []
        assert scan.upcoming == []
        assert _notifications(shards) == []

    def test_upcoming_names_first_three(self, shards, orchestrator):
        for i in range(5):
            _add(shards, f"Task {i}", due_date=NOW + timedelta(days=3, hours=i))
        orchestrator.check_deadlines("alice", now=NOW)
        [note] = _notifications(shards)
        assert note.message.startswith("📅 You have 5 task(s) due this week. Consider prioritizing: ")
        assert note.message.count(",") == 2

    def test_completed_tasks_ignored(self, shards, orchestrator):
        _add(shards, "Done already", due_date=NOW + timedelta(hours=1), status="completed")
        assert orchestrator.check_deadlines("alice", now=NOW).urgent == []

    def test_repeated_scans_notify_again(self, shards, orchestrator):
        _add(shards, "Soon", due_date=NOW + timedelta(hours=3))
        orchestrator.check_deadlines("alice", now=NOW)
        orchestrator.check_deadlines("alice", now=NOW)
        assert len(_notifications(shards)) == 4


class TestPriorityOptimization:
    def test_fallback_matrix(self):
        tasks = [
            _task("urgent", id="a"),
            _task("high", id="b"),
            _task("low", due=NOW + timedelta(hours=12), id="c"),
            _task("medium", id="d"),
        ]
        matrix = fallback_matrix(tasks, NOW)
        assert matrix.do_first == ["a"]
        assert matrix.schedule == ["b"]
        assert matrix.delegate == ["c"]
        assert matrix.eliminate == ["d"]

    def test_without_model_uses_fallback_and_keeps_priorities(self, shards, orchestrator):
        task = _add(shards, "Plain", priority="medium")
        plan = orchestrator.optimize_priorities("alice", now=NOW)
        assert plan.matrix.source == "heuristic"
        assert plan.priority_changes == []
        with shards.connect("alice") as db:
            assert tasks_mod.get_task(db, "alice", task.id).priority == "medium"
        [note] = _notifications(shards)
        assert note.kind == "strategic_optimization"
        assert "Plain" in note.message

    def test_model_classification_is_written_back(self, shards):
        a = _add(shards, "Fire drill", priority="low")
        b = _add(shards, "Tidy inbox", priority="high")
        delegate = MagicMock()
        delegate.run.return_value = {
            "response": json.dumps({"doFirst": [a.id], "schedule": [], "delegate": [], "eliminate": [b.id]})
        }
        orchestrator = WorkflowOrchestrator(shards, delegate=delegate, notifier=Notifier(shards))

        plan = orchestrator.optimize_priorities("alice", now=NOW)

        assert plan.matrix.source == "model"
        assert plan.focus[0]["taskId"] == a.id
        with shards.connect("alice") as db:
            assert tasks_mod.get_task(db, "alice", a.id).priority == "urgent"
            assert tasks_mod.get_task(db, "alice", b.id).priority == "low"
        assert delegate.run.call_args[0][1]["max_tokens"] == 2000

    def test_bad_model_output_falls_back(self, shards):
        _add(shards, "Something", priority="high")
        delegate = MagicMock()
        delegate.run.return_value = {"response": "I'd prioritise carefully."}
        orchestrator = WorkflowOrchestrator(shards, delegate=delegate)
        assert orchestrator.optimize_priorities("alice", now=NOW).matrix.source == "heuristic"

    def test_failure_escalates_once(self, shards, orchestrator, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr("productivity_agent.core.workflows.build_strategic_plan", explode)
        assert orchestrator.optimize_priorities("alice", now=NOW) is None
        [note] = _notifications(shards)
        assert note.kind == "workflow_error"

    def test_plan_ranking_follows_weights(self, shards):
        _add(shards, "Important", priority="urgent")
        _add(shards, "Due soon", priority="low", due_date=NOW + timedelta(hours=1))
        with shards.connect("alice") as db:
            profiles_mod.update_preferences(
                db, "alice", {"priority_weights": {"urgency": 0.0, "importance": 0.0, "deadline": 1.0}}
            )
        plan = WorkflowOrchestrator(shards).optimize_priorities("alice", now=NOW)
        assert plan.focus[0]["title"] == "Due soon"


class TestScheduleOptimization:
    def test_greedy_packs_into_working_hours(self):
        tasks = [
            _task("low", duration=60, id="low"),
            _task("urgent", duration=120, id="urgent"),
            _task("high", duration=400, id="big"),
        ]
        blocks = greedy_schedule(tasks, Preferences(), timezone.utc, NOW)
        assert [b["taskId"] for b in blocks] == ["urgent", "big", "low"]
        assert blocks[0]["start"] == "2030-03-04T10:00:00+00:00"
        assert blocks[0]["end"] == "2030-03-04T12:00:00+00:00"
        # 400 minutes no longer fit today, so they start the next morning
        assert blocks[1]["start"] == "2030-03-05T09:00:00+00:00"
        assert blocks[2]["start"] == "2030-03-05T15:40:00+00:00"

    def test_after_hours_starts_next_day(self):
        late = datetime(2030, 3, 4, 18, 5, tzinfo=timezone.utc)
        [block] = greedy_schedule([_task(id="x")], Preferences(), timezone.utc, late)
        assert block["start"] == "2030-03-05T09:00:00+00:00"
        assert block["end"] == "2030-03-05T09:30:00+00:00"

    def test_fallback_schedule_is_saved_and_notified(self, shards, orchestrator):
        _add(shards, "Write", estimated_duration=45)
        _add(shards, "Review")
        suggestion = orchestrator.optimize_schedule("alice", now=NOW)
        assert suggestion["source"] == "heuristic"
        assert len(suggestion["blocks"]) == 2
        with shards.connect("alice") as db:
            saved = profiles_mod.get_profile(db, "alice").latest_schedule
        assert saved["blocks"] == suggestion["blocks"]
        [note] = _notifications(shards)
        assert note.message == "I've optimized your schedule for 2 tasks"

    def test_model_blocks_are_validated(self, shards):
        task = _add(shards, "Deep work")
        delegate = MagicMock()
        delegate.run.return_value = {"response": json.dumps({"blocks": [
            {"taskId": task.id, "start": "2030-03-04T13:00:00Z", "end": "2030-03-04T14:00:00Z"},
            {"taskId": "unknown", "start": "2030-03-04T14:00:00Z", "end": "2030-03-04T15:00:00Z"},
            {"taskId": task.id, "start": "2030-03-04T16:00:00Z", "end": "2030-03-04T15:00:00Z"},
        ]})}
        suggestion = WorkflowOrchestrator(shards, delegate=delegate).optimize_schedule("alice", now=NOW)
        assert suggestion["source"] == "model"
        assert len(suggestion["blocks"]) == 1
        assert suggestion["blocks"][0]["title"] == "Deep work"


class TestRunAndTrigger:
    def test_unknown_workflow(self, orchestrator):
        with pytest.raises(ValueError):
            orchestrator.run("make_coffee", "alice")
        with pytest.raises(ValueError):
            orchestrator.trigger("make_coffee", "alice")

    def test_trigger_uses_executor(self, shards):
        executor = MagicMock()
        orchestrator = WorkflowOrchestrator(shards, executor=executor)
        orchestrator.trigger("deadline_scan", "alice")
        executor.submit.assert_called_once_with(orchestrator.run, "deadline_scan", "alice")

    def test_trigger_runs_inline_without_executor(self, shards, orchestrator):
        _add(shards, "Now", due_date=utcnow() + timedelta(hours=1))
        orchestrator.trigger("deadline_scan", "alice")
        assert len(_notifications(shards)) == 2


class TestScheduler:
    def test_run_once_covers_every_known_user(self, shards):
        _add(shards, "Alice's")
        with shards.connect("bob") as db:
            tasks_mod.create_task(db, "bob", "Bob's")
        orchestrator = MagicMock()
        scheduler = WorkflowScheduler(
            orchestrator, shards, workflows=["deadline_scan", "priority_optimization"]
        )
        assert scheduler.run_once() == 4
        assert ("deadline_scan", "bob") in [c.args for c in orchestrator.run.call_args_list]

    def test_failing_workflow_does_not_stop_the_pass(self, shards):
        _add(shards, "Alice's")
        with shards.connect("bob") as db:
            tasks_mod.create_task(db, "bob", "Bob's")
        orchestrator = MagicMock()
        orchestrator.run.side_effect = [RuntimeError("boom"), None]
        assert WorkflowScheduler(orchestrator, shards).run_once() == 2
        assert orchestrator.run.call_count == 2

    def test_rejects_unknown_workflow(self, shards):
        with pytest.raises(ValueError):
            WorkflowScheduler(MagicMock(), shards, workflows=["nap"])

    def test_start_and_stop(self, shards):
        scheduler = WorkflowScheduler(MagicMock(), shards, interval=0.01)
        scheduler.start()
        scheduler.stop()
        assert not scheduler._thread.is_alive()
