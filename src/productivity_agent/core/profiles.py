"""User profile and preference storage."""

import json
import sqlite3
from dataclasses import asdict
from datetime import timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from productivity_agent.db.models import (
    AI_PERSONALITIES,
    Preferences,
    PriorityWeights,
    UserProfile,
    WorkingHours,
    advance,
    format_dt,
    parse_dt,
    utcnow,
)


def get_profile(db: sqlite3.Connection, user_id: str) -> UserProfile:
    """Get a user's profile, creating it with default preferences on first access."""
    row = db.execute("SELECT * FROM profiles WHERE user_id = ?", (user_id,)).fetchone()
    if row:
        return _row_to_profile(row)

    now = format_dt(utcnow())
    db.execute(
        """INSERT OR IGNORE INTO profiles (user_id, preferences, created_at, updated_at)
           VALUES (?, ?, ?, ?)""",
        (user_id, json.dumps(asdict(Preferences())), now, now),
    )
    db.commit()
    row = db.execute("SELECT * FROM profiles WHERE user_id = ?", (user_id,)).fetchone()
    return _row_to_profile(row)


def update_preferences(db: sqlite3.Connection, user_id: str, changes: dict) -> UserProfile:
    """Merge preference changes into the profile.

    ``changes`` uses the nested preference shape (``working_hours``,
    ``timezone``, ``priority_weights``, ``ai_personality``); nested dicts are
    merged key by key.
    """
    profile = get_profile(db, user_id)
    merged = asdict(profile.preferences)
    for key, value in changes.items():
        if key not in merged:
            raise ValueError(f"Unknown preference: {key}")
        if isinstance(merged[key], dict):
            if not isinstance(value, dict):
                raise ValueError(f"Preference {key} must be an object")
            unknown = set(value) - set(merged[key])
            if unknown:
                raise ValueError(f"Unknown {key} fields: {', '.join(sorted(unknown))}")
            merged[key].update(value)
        else:
            merged[key] = value

    preferences = _preferences_from_dict(merged)
    _validate(preferences)
    db.execute(
        "UPDATE profiles SET preferences = ?, updated_at = ? WHERE user_id = ?",
        (json.dumps(asdict(preferences)), format_dt(advance(profile.updated_at)), user_id),
    )
    db.commit()
    return get_profile(db, user_id)


def save_schedule_suggestion(db: sqlite3.Connection, user_id: str, suggestion: dict) -> UserProfile:
    """Store the latest schedule proposal in the profile's suggestion slot."""
    profile = get_profile(db, user_id)
    suggestion = {**suggestion, "createdAt": format_dt(utcnow())}
    db.execute(
        "UPDATE profiles SET latest_schedule = ?, updated_at = ? WHERE user_id = ?",
        (json.dumps(suggestion), format_dt(advance(profile.updated_at)), user_id),
    )
    db.commit()
    return get_profile(db, user_id)


def user_timezone(profile: UserProfile) -> tzinfo:
    """The profile's timezone, falling back to UTC for unknown names."""
    try:
        return ZoneInfo(profile.preferences.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def _validate(preferences: Preferences):
    for label in ("start", "end"):
        value = getattr(preferences.working_hours, label)
        if not isinstance(value, str) or minutes_of_day(value) is None:
            raise ValueError(f"Invalid working hours {label}: {value!r} (expected HH:MM)")
    if not isinstance(preferences.timezone, str):
        raise ValueError(f"Unknown timezone: {preferences.timezone!r}")
    try:
        ZoneInfo(preferences.timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {preferences.timezone!r}") from e
    if preferences.ai_personality not in AI_PERSONALITIES:
        raise ValueError(f"Invalid ai_personality: {preferences.ai_personality!r}")
    weights = preferences.priority_weights
    for value in (weights.urgency, weights.importance, weights.deadline):
        if not isinstance(value, (int, float)) or value < 0:
            raise ValueError("priority weights must be non-negative numbers")


def minutes_of_day(hhmm) -> int | None:
    """Minutes after midnight for an HH:MM string, or None if malformed."""
    try:
        hours, minutes = str(hhmm).split(":")
        h, m = int(hours), int(minutes)
    except ValueError:
        return None
    if not (0 <= h <= 23 and 0 <= m <= 59):
        return None
    return h * 60 + m


def _preferences_from_dict(data: dict) -> Preferences:
    return Preferences(
        working_hours=WorkingHours(**data.get("working_hours", {})),
        timezone=data.get("timezone", "UTC"),
        priority_weights=PriorityWeights(**data.get("priority_weights", {})),
        ai_personality=data.get("ai_personality", "professional"),
    )


def _row_to_profile(row: sqlite3.Row) -> UserProfile:
    return UserProfile(
        user_id=row["user_id"],
        preferences=_preferences_from_dict(json.loads(row["preferences"])),
        latest_schedule=json.loads(row["latest_schedule"]) if row["latest_schedule"] else None,
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
