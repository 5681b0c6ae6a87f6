"""Tests for the conversation store and user profiles."""

import tempfile
from datetime import timezone
from pathlib import Path

import pytest

from productivity_agent.core import conversation as conversation_mod
from productivity_agent.core import profiles as profiles_mod
from productivity_agent.db.engine import init_db


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db", "alice")
        yield conn
        conn.close()


def _say(db, content, type="user", user_id="alice"):
    return conversation_mod.append_message(
        db, conversation_mod.new_message(user_id, content, type)
    )


class TestConversation:
    def test_recent_is_bounded_and_oldest_first(self, db):
        for i in range(8):
            _say(db, f"m{i}", "user" if i % 2 == 0 else "assistant")
        recent = conversation_mod.recent_messages(db, "alice", 5)
        assert [m.content for m in recent] == ["m3", "m4", "m5", "m6", "m7"]

    def test_recent_returns_all_when_fewer(self, db):
        _say(db, "only")
        assert [m.content for m in conversation_mod.recent_messages(db, "alice", 5)] == ["only"]

    def test_zero_limit_returns_nothing(self, db):
        _say(db, "hello")
        assert conversation_mod.recent_messages(db, "alice", 0) == []

    def test_metadata_round_trip(self, db):
        message = conversation_mod.new_message(
            "alice", "Done", "assistant",
            metadata={"actionType": "create_task", "taskIds": ["t1"], "projectIds": []},
        )
        conversation_mod.append_message(db, message)
        [stored] = conversation_mod.recent_messages(db, "alice", 1)
        assert stored.metadata == {"actionType": "create_task", "taskIds": ["t1"], "projectIds": []}
        assert stored.timestamp == message.timestamp

    def test_invalid_type_rejected(self, db):
        with pytest.raises(ValueError):
            _say(db, "hi", type="system")

    def test_history_is_per_user(self, db):
        _say(db, "alice's")
        _say(db, "bob's", user_id="bob")
        assert [m.content for m in conversation_mod.recent_messages(db, "alice", 5)] == ["alice's"]


class TestProfiles:
    def test_created_lazily_with_defaults(self, db):
        profile = profiles_mod.get_profile(db, "alice")
        prefs = profile.preferences
        assert prefs.working_hours.start == "09:00"
        assert prefs.working_hours.end == "17:00"
        assert prefs.timezone == "UTC"
        assert prefs.priority_weights.urgency == 0.4
        assert prefs.priority_weights.importance == 0.3
        assert prefs.priority_weights.deadline == 0.3
        assert prefs.ai_personality == "professional"
        assert profile.latest_schedule is None

    def test_partial_merge_of_nested_preferences(self, db):
        profile = profiles_mod.update_preferences(
            db, "alice", {"working_hours": {"start": "08:30"}, "timezone": "Europe/Berlin"}
        )
        assert profile.preferences.working_hours.start == "08:30"
        assert profile.preferences.working_hours.end == "17:00"
        assert profile.preferences.timezone == "Europe/Berlin"

    def test_rejects_bad_values(self, db):
        with pytest.raises(ValueError):
            profiles_mod.update_preferences(db, "alice", {"working_hours": {"start": "9am"}})
        with pytest.raises(ValueError):
            profiles_mod.update_preferences(db, "alice", {"timezone": "Mars/Olympus"})
        with pytest.raises(ValueError):
            profiles_mod.update_preferences(db, "alice", {"ai_personality": "grumpy"})
        with pytest.raises(ValueError, match="Unknown preference"):
            profiles_mod.update_preferences(db, "alice", {"theme": "dark"})

    def test_rejects_non_string_values(self, db):
        with pytest.raises(ValueError, match="Unknown timezone"):
            profiles_mod.update_preferences(db, "alice", {"timezone": 5})
        with pytest.raises(ValueError, match="Invalid working hours start"):
            profiles_mod.update_preferences(db, "alice", {"working_hours": {"start": 900}})
        with pytest.raises(ValueError, match="Invalid ai_personality"):
            profiles_mod.update_preferences(db, "alice", {"ai_personality": ["casual"]})
        assert profiles_mod.get_profile(db, "alice").preferences.timezone == "UTC"

    def test_schedule_suggestion_slot(self, db):
        before = profiles_mod.get_profile(db, "alice")
        after = profiles_mod.save_schedule_suggestion(db, "alice", {"blocks": []})
        assert after.latest_schedule["blocks"] == []
        assert "createdAt" in after.latest_schedule
        assert after.updated_at > before.updated_at
        assert after.preferences == before.preferences

    def test_user_timezone(self, db):
        profile = profiles_mod.update_preferences(db, "alice", {"timezone": "America/New_York"})
        assert str(profiles_mod.user_timezone(profile)) == "America/New_York"
        profile.preferences.timezone = "Not/AZone"
        assert profiles_mod.user_timezone(profile) is timezone.utc

    def test_minutes_of_day(self):
        assert profiles_mod.minutes_of_day("09:30") == 570
        assert profiles_mod.minutes_of_day("24:00") is None
        assert profiles_mod.minutes_of_day("noon") is None
