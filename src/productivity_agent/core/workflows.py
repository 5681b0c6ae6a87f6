"""Background workflows: priority optimization, deadline scans, schedule optimization.

Workflows run outside chat turns. They take the user's store lock per store
call only, so they interleave with chat at store-call granularity, and a failure
part-way through leaves earlier writes in place. Every workflow catches its own
faults; ``run`` never raises for a workflow failure.
"""

import json
import logging
import threading
from concurrent.futures import Executor, Future
from dataclasses import asdict, dataclass, field
from datetime import datetime, time, timedelta, tzinfo

from productivity_agent.core import profiles as profiles_mod
from productivity_agent.core import projects as projects_mod
from productivity_agent.core import tasks as tasks_mod
from productivity_agent.core.intent import load_json_object
from productivity_agent.db.models import (
    OPEN_TASK_STATUSES,
    Preferences,
    Project,
    Task,
    UserProfile,
    format_dt,
    parse_dt,
    utcnow,
)

logger = logging.getLogger(__name__)

PRIORITY_OPTIMIZATION = "priority_optimization"
DEADLINE_SCAN = "deadline_scan"
SCHEDULE_OPTIMIZATION = "schedule_optimization"
WORKFLOWS = (PRIORITY_OPTIMIZATION, DEADLINE_SCAN, SCHEDULE_OPTIMIZATION)

PRIORITY_WEIGHTS = {"urgent": 4, "high": 3, "medium": 2, "low": 1}
IMPORTANCE_SCORES = {"urgent": 1.0, "high": 0.75, "medium": 0.5, "low": 0.25}

BUCKETS = ("do_first", "schedule", "delegate", "eliminate")
BUCKET_KEYS = {"do_first": "doFirst", "schedule": "schedule", "delegate": "delegate", "eliminate": "eliminate"}
BUCKET_PRIORITY = {"do_first": "urgent", "schedule": "high", "delegate": "medium", "eliminate": "low"}

URGENT_WINDOW = timedelta(hours=48)
DEFAULT_BLOCK_MINUTES = 30
SLOT_MINUTES = 15

MATRIX_PROMPT = """You are a strategic consultant applying the Eisenhower Decision Matrix.

For each task, classify into:
- URGENT + IMPORTANT: crisis management, deadline-driven critical tasks
- IMPORTANT + NOT URGENT: strategic planning, skill development, prevention
- URGENT + NOT IMPORTANT: interruptions that can be delegated
- NOT URGENT + NOT IMPORTANT: time wasters to eliminate

Consider business impact, strategic value, and opportunity cost.

Respond with JSON only, listing task ids:
{"doFirst": [], "schedule": [], "delegate": [], "eliminate": []}"""

SCHEDULE_PROMPT = """You are a scheduling assistant. Place each task in a focused time block
inside the user's working hours, most important and most time-critical work first.
Never overlap blocks. Use ISO-8601 timestamps with a UTC offset.

Respond with JSON only:
{"blocks": [{"taskId": "...", "title": "...", "start": "...", "end": "..."}]}"""


# ── Cognitive load ────────────────────────────────────────────────────────────


@dataclass
class CognitiveLoad:
    total: float
    level: str
    recommendations: list[str] = field(default_factory=list)


def calculate_cognitive_load(tasks: list[Task]) -> CognitiveLoad:
    """Weighted workload: priority x complexity x context-switching penalty."""
    total = 0.0
    for task in tasks:
        weight = PRIORITY_WEIGHTS.get(task.priority, 2)
        complexity = 1.5 if (task.estimated_duration or 0) > 120 else 1.0
        penalty = 1.0 if task.project_id else 1.2
        total += weight * complexity * penalty
    total = round(total, 4)

    if total < 20:
        level = "optimal"
    elif total < 40:
        level = "high"
    else:
        level = "overloaded"
    recommendations = ["Consider delegation", "Block focus time"] if level == "overloaded" else []
    return CognitiveLoad(total=total, level=level, recommendations=recommendations)


# ── Eisenhower matrix ─────────────────────────────────────────────────────────


@dataclass
class EisenhowerMatrix:
    do_first: list[str] = field(default_factory=list)
    schedule: list[str] = field(default_factory=list)
    delegate: list[str] = field(default_factory=list)
    eliminate: list[str] = field(default_factory=list)
    source: str = "heuristic"

    def bucket_of(self, task_id: str) -> str | None:
        for bucket in BUCKETS:
            if task_id in getattr(self, bucket):
                return bucket
        return None

    def to_dict(self) -> dict:
        data = {BUCKET_KEYS[b]: list(getattr(self, b)) for b in BUCKETS}
        data["source"] = self.source
        return data


def heuristic_bucket(task: Task, now: datetime) -> str:
    urgent = task.priority == "urgent" or (
        task.due_date is not None and task.due_date <= now + URGENT_WINDOW
    )
    important = task.priority in ("high", "urgent")
    if urgent and important:
        return "do_first"
    if important:
        return "schedule"
    if urgent:
        return "delegate"
    return "eliminate"


def fallback_matrix(tasks: list[Task], now: datetime | None = None) -> EisenhowerMatrix:
    """Deterministic classification from priority and due date alone."""
    now = now or utcnow()
    matrix = EisenhowerMatrix(source="heuristic")
    for task in tasks:
        getattr(matrix, heuristic_bucket(task, now)).append(task.id)
    return matrix


def parse_matrix(raw: str, tasks: list[Task], now: datetime) -> EisenhowerMatrix:
    """Read the model's classification. Tasks it leaves out get the heuristic bucket.

    Raises ValueError when the output names none of the given tasks.
    """
    data = load_json_object(raw)
    by_id = {t.id: t for t in tasks}
    by_title = {t.title.strip().lower(): t.id for t in tasks}

    matrix = EisenhowerMatrix(source="model")
    placed: set[str] = set()
    for bucket in BUCKETS:
        entries = data.get(BUCKET_KEYS[bucket], data.get(bucket))
        if not isinstance(entries, list):
            continue
        for entry in entries:
            task_id = _match_task(entry, by_id, by_title)
            if task_id and task_id not in placed:
                getattr(matrix, bucket).append(task_id)
                placed.add(task_id)

    if tasks and not placed:
        raise ValueError("classification names none of the tasks")
    for task in tasks:
        if task.id not in placed:
            getattr(matrix, heuristic_bucket(task, now)).append(task.id)
    return matrix


def _match_task(entry, by_id: dict, by_title: dict) -> str | None:
    if isinstance(entry, dict):
        entry = entry.get("id") or entry.get("taskId") or entry.get("title")
    if not isinstance(entry, str):
        return None
    key = entry.strip()
    if key in by_id:
        return key
    return by_title.get(key.lower())


# ── Strategic plan ────────────────────────────────────────────────────────────


@dataclass
class ExecutiveContext:
    open_tasks: list[Task] = field(default_factory=list)
    active_projects: list[Project] = field(default_factory=list)
    profile: UserProfile | None = None
    completion_rate: float = 0.0
    overdue_count: int = 0
    total_tasks: int = 0

    @property
    def preferences(self) -> Preferences:
        return self.profile.preferences if self.profile else Preferences()


@dataclass
class StrategicPlan:
    workload: CognitiveLoad
    matrix: EisenhowerMatrix
    focus: list[dict] = field(default_factory=list)
    key_insights: list[str] = field(default_factory=list)
    recommended_actions: list[str] = field(default_factory=list)
    priority_changes: list[dict] = field(default_factory=list)

    @property
    def message(self) -> str:
        text = (
            f"Strategic review: {len(self.focus)} open task(s), "
            f"cognitive load {self.workload.total:g} ({self.workload.level})."
        )
        if self.focus:
            text += " Focus next on: " + ", ".join(f["title"] for f in self.focus[:3]) + "."
        if self.priority_changes:
            text += f" Reprioritized {len(self.priority_changes)} task(s)."
        return text

    def to_dict(self) -> dict:
        return {
            "workload": asdict(self.workload),
            "matrix": self.matrix.to_dict(),
            "focus": self.focus,
            "keyInsights": self.key_insights,
            "recommendedActions": self.recommended_actions,
            "priorityChanges": self.priority_changes,
        }


def priority_score(task: Task, bucket: str | None, preferences: Preferences, now: datetime) -> float:
    """Blend urgency, importance and deadline pressure with the user's weights."""
    weights = preferences.priority_weights
    urgency = 1.0 if bucket in ("do_first", "delegate") else 0.0
    importance = IMPORTANCE_SCORES.get(task.priority, 0.5)
    if task.due_date is None:
        deadline = 0.0
    else:
        hours_left = (task.due_date - now).total_seconds() / 3600
        deadline = 1.0 if hours_left <= 0 else max(0.0, 1.0 - hours_left / (7 * 24))
    return weights.urgency * urgency + weights.importance * importance + weights.deadline * deadline


def build_strategic_plan(
    context: ExecutiveContext,
    matrix: EisenhowerMatrix,
    changes: list[dict],
    now: datetime,
) -> StrategicPlan:
    workload = calculate_cognitive_load(context.open_tasks)
    ranked = sorted(
        context.open_tasks,
        key=lambda t: priority_score(t, matrix.bucket_of(t.id), context.preferences, now),
        reverse=True,
    )
    focus = [
        {
            "taskId": t.id,
            "title": t.title,
            "priority": t.priority,
            "bucket": matrix.bucket_of(t.id),
            "score": round(priority_score(t, matrix.bucket_of(t.id), context.preferences, now), 4),
        }
        for t in ranked
    ]

    insights = []
    if context.overdue_count:
        insights.append(f"{context.overdue_count} overdue task(s) need attention")
    if context.total_tasks and context.completion_rate < 0.5:
        insights.append(f"Completion rate is {context.completion_rate:.0%}; consider trimming scope")
    if len(matrix.do_first) > 3:
        insights.append("More than three do-first items; protect uninterrupted focus time")
    if len(context.active_projects) > 3:
        insights.append(f"{len(context.active_projects)} active projects compete for attention")
    if matrix.eliminate:
        insights.append(f"{len(matrix.eliminate)} task(s) are candidates to drop or defer")

    actions = list(workload.recommendations)
    if focus:
        actions.append(f"Start with: {focus[0]['title']}")

    return StrategicPlan(
        workload=workload,
        matrix=matrix,
        focus=focus,
        key_insights=insights,
        recommended_actions=actions,
        priority_changes=changes,
    )


@dataclass
class DeadlineScan:
    urgent: list[Task] = field(default_factory=list)
    upcoming: list[Task] = field(default_factory=list)


# ── Orchestrator ──────────────────────────────────────────────────────────────


class WorkflowOrchestrator:
    def __init__(
        self,
        shards,
        delegate=None,
        model: str = "@cf/meta/llama-3.3-70b-instruct",
        notifier=None,
        executor: Executor | None = None,
    ):
        self.shards = shards
        self.delegate = delegate
        self.model = model
        self.notifier = notifier
        self.executor = executor

    def run(self, workflow: str, user_id: str):
        """Run a workflow by name in the calling thread."""
        if workflow == PRIORITY_OPTIMIZATION:
            return self.optimize_priorities(user_id)
        if workflow == DEADLINE_SCAN:
            return self.check_deadlines(user_id)
        if workflow == SCHEDULE_OPTIMIZATION:
            return self.optimize_schedule(user_id)
        raise ValueError(f"Unknown workflow: {workflow!r}")

    def trigger(self, workflow: str, user_id: str) -> Future | None:
        """Start a workflow without waiting for it when an executor is configured."""
        if workflow not in WORKFLOWS:
            raise ValueError(f"Unknown workflow: {workflow!r}")
        if self.executor is None:
            self.run(workflow, user_id)
            return None
        logger.info("Queued %s for %s", workflow, user_id)
        return self.executor.submit(self.run, workflow, user_id)

    # ── Priority optimization ────────────────────────────────────────────────

    def optimize_priorities(self, user_id: str, now: datetime | None = None) -> StrategicPlan | None:
        now = now or utcnow()
        try:
            context = self.executive_context(user_id, now)
            matrix = self.classify(context.open_tasks, now)
            changes = self._write_back_priorities(user_id, context.open_tasks, matrix)
            plan = build_strategic_plan(context, matrix, changes, now)
            self._notify(user_id, "strategic_optimization", plan.message, plan.to_dict())
            return plan
        except Exception as e:
            logger.exception("Error in priority optimization for %s", user_id)
            self._escalate(user_id, PRIORITY_OPTIMIZATION, e)
            return None

    def executive_context(self, user_id: str, now: datetime | None = None) -> ExecutiveContext:
        """Collect what the priority review needs. Each read degrades on its own."""
        now = now or utcnow()
        context = ExecutiveContext()

        try:
            with self.shards.connect(user_id) as db:
                all_tasks = tasks_mod.list_tasks(db, user_id)
            context.total_tasks = len(all_tasks)
            context.open_tasks = [t for t in all_tasks if t.status in OPEN_TASK_STATUSES]
            completed = sum(1 for t in all_tasks if t.status == "completed")
            context.completion_rate = completed / len(all_tasks) if all_tasks else 0.0
            context.overdue_count = sum(
                1 for t in context.open_tasks if t.due_date is not None and t.due_date < now
            )
        except Exception:
            logger.exception("Error loading tasks for %s", user_id)

        try:
            with self.shards.connect(user_id) as db:
                context.active_projects = projects_mod.list_projects(db, user_id, status="active")
        except Exception:
            logger.exception("Error loading projects for %s", user_id)

        try:
            with self.shards.connect(user_id) as db:
                context.profile = profiles_mod.get_profile(db, user_id)
        except Exception:
            logger.exception("Error loading profile for %s", user_id)

        return context

    def classify(self, tasks: list[Task], now: datetime | None = None) -> EisenhowerMatrix:
        """Eisenhower classification through the delegate, with a deterministic fallback."""
        now = now or utcnow()
        if self.delegate is None or not tasks:
            return fallback_matrix(tasks, now)
        try:
            result = self.delegate.run(self.model, {
                "messages": [
                    {"role": "system", "content": MATRIX_PROMPT},
                    {"role": "user", "content": "Tasks: " + json.dumps([_task_brief(t) for t in tasks])},
                ],
                "max_tokens": 2000,
                "temperature": 0.1,
            })
            return parse_matrix((result or {}).get("response") or "", tasks, now)
        except Exception:
            logger.exception("Eisenhower classification failed; using fallback matrix")
            return fallback_matrix(tasks, now)

    def _write_back_priorities(
        self, user_id: str, tasks: list[Task], matrix: EisenhowerMatrix
    ) -> list[dict]:
        # Heuristic buckets come from the stored priorities; only model buckets
        # are written back.
        if matrix.source != "model":
            return []
        changes = []
        for task in tasks:
            bucket = matrix.bucket_of(task.id)
            new_priority = BUCKET_PRIORITY.get(bucket)
            if not new_priority or new_priority == task.priority:
                continue
            with self.shards.connect(user_id) as db:
                updated = tasks_mod.update_task(db, user_id, task.id, priority=new_priority)
            if updated is None:
                continue
            changes.append({"taskId": task.id, "from": task.priority, "to": new_priority})
            task.priority = new_priority
        return changes

    # ── Deadline scan ────────────────────────────────────────────────────────

    def check_deadlines(self, user_id: str, now: datetime | None = None) -> DeadlineScan:
        now = now or utcnow()
        scan = DeadlineScan()
        try:
            tomorrow = now + timedelta(hours=24)
            next_week = now + timedelta(days=7)
            statuses = list(OPEN_TASK_STATUSES)

            try:
                with self.shards.connect(user_id) as db:
                    scan.urgent = tasks_mod.list_tasks(db, user_id, status=statuses, due_before=tomorrow)
            except Exception:
                logger.exception("Error loading urgent tasks for %s", user_id)
            try:
                with self.shards.connect(user_id) as db:
                    scan.upcoming = tasks_mod.list_tasks(db, user_id, status=statuses, due_before=next_week)
            except Exception:
                logger.exception("Error loading upcoming tasks for %s", user_id)

            if scan.urgent:
                self._notify(
                    user_id,
                    "deadline_urgent",
                    f"🚨 You have {len(scan.urgent)} task(s) due within 24 hours: "
                    + ", ".join(t.title for t in scan.urgent),
                    {"taskIds": [t.id for t in scan.urgent]},
                )
            if scan.upcoming:
                self._notify(
                    user_id,
                    "deadline_upcoming",
                    f"📅 You have {len(scan.upcoming)} task(s) due this week. Consider prioritizing: "
                    + ", ".join(t.title for t in scan.upcoming[:3]),
                    {"taskIds": [t.id for t in scan.upcoming]},
                )
        except Exception as e:
            logger.exception("Error in deadline scan for %s", user_id)
            self._escalate(user_id, DEADLINE_SCAN, e)
        return scan

    # ── Schedule optimization ────────────────────────────────────────────────

    def optimize_schedule(self, user_id: str, now: datetime | None = None) -> dict | None:
        now = now or utcnow()
        try:
            with self.shards.connect(user_id) as db:
                tasks = tasks_mod.list_tasks(db, user_id, status=list(OPEN_TASK_STATUSES))
            try:
                with self.shards.connect(user_id) as db:
                    profile = profiles_mod.get_profile(db, user_id)
            except Exception:
                logger.exception("Error loading profile for %s", user_id)
                profile = UserProfile(user_id=user_id)

            suggestion = self.propose_schedule(tasks, profile, now)
            with self.shards.connect(user_id) as db:
                profiles_mod.save_schedule_suggestion(db, user_id, suggestion)

            self._notify(
                user_id,
                "schedule_optimization",
                f"I've optimized your schedule for {len(suggestion['blocks'])} tasks",
                suggestion,
            )
            return suggestion
        except Exception as e:
            logger.exception("Error in schedule optimization for %s", user_id)
            self._escalate(user_id, SCHEDULE_OPTIMIZATION, e)
            return None

    def propose_schedule(self, tasks: list[Task], profile: UserProfile, now: datetime) -> dict:
        tz = profiles_mod.user_timezone(profile)
        if self.delegate is not None and tasks:
            try:
                result = self.delegate.run(self.model, {
                    "messages": [
                        {"role": "system", "content": SCHEDULE_PROMPT},
                        {"role": "user", "content": json.dumps({
                            "now": now.astimezone(tz).isoformat(),
                            "workingHours": asdict(profile.preferences.working_hours),
                            "timezone": profile.preferences.timezone,
                            "tasks": [_task_brief(t) for t in tasks],
                        })},
                    ],
                    "max_tokens": 2000,
                    "temperature": 0.1,
                })
                blocks = parse_schedule((result or {}).get("response") or "", tasks)
                return {"blocks": blocks, "source": "model"}
            except Exception:
                logger.exception("Schedule proposal failed; packing working hours instead")
        return {"blocks": greedy_schedule(tasks, profile.preferences, tz, now), "source": "heuristic"}

    # ── Delivery ─────────────────────────────────────────────────────────────

    def _notify(self, user_id: str, kind: str, message: str, data: dict | None = None):
        if self.notifier is None:
            logger.info("Notification for %s (%s): %s", user_id, kind, message)
            return
        try:
            self.notifier.notify(user_id, kind, message, data)
        except Exception:
            logger.exception("Error notifying %s", user_id)

    def _escalate(self, user_id: str, workflow: str, error: Exception):
        self._notify(
            user_id,
            "workflow_error",
            f"I couldn't finish {workflow.replace('_', ' ')}; I'll try again on the next run.",
            {"workflow": workflow, "error": str(error)},
        )


def parse_schedule(raw: str, tasks: list[Task]) -> list[dict]:
    """Keep well-formed blocks for known tasks. Raises ValueError if none survive."""
    data = load_json_object(raw)
    by_id = {t.id: t for t in tasks}
    blocks = []
    for item in data.get("blocks") or []:
        if not isinstance(item, dict):
            continue
        task = by_id.get(str(item.get("taskId", "")))
        if task is None:
            continue
        try:
            start, end = parse_dt(item.get("start")), parse_dt(item.get("end"))
        except ValueError:
            continue
        if start is None or end is None or end <= start:
            continue
        blocks.append({
            "taskId": task.id,
            "title": task.title,
            "start": format_dt(start),
            "end": format_dt(end),
        })
    if tasks and not blocks:
        raise ValueError("no usable schedule blocks")
    return blocks


def greedy_schedule(
    tasks: list[Task],
    preferences: Preferences,
    tz: tzinfo,
    now: datetime,
) -> list[dict]:
    """Pack tasks back to back into working hours, most pressing first."""
    start_min = profiles_mod.minutes_of_day(preferences.working_hours.start)
    end_min = profiles_mod.minutes_of_day(preferences.working_hours.end)
    if start_min is None:
        start_min = 9 * 60
    if end_min is None or end_min <= start_min:
        end_min = 24 * 60
    day_length = end_min - start_min

    def day_bounds(day):
        midnight = datetime.combine(day, time(), tzinfo=tz)
        return midnight + timedelta(minutes=start_min), midnight + timedelta(minutes=end_min)

    local_now = now.astimezone(tz)
    day = local_now.date()
    day_start, day_end = day_bounds(day)
    cursor = max(_round_up(local_now, SLOT_MINUTES), day_start)
    if cursor >= day_end:
        day += timedelta(days=1)
        cursor, day_end = day_bounds(day)

    ordered = sorted(
        tasks,
        key=lambda t: (
            -PRIORITY_WEIGHTS.get(t.priority, 2),
            t.due_date is None,
            t.due_date or now,
        ),
    )

    blocks = []
    for task in ordered:
        minutes = min(task.estimated_duration or DEFAULT_BLOCK_MINUTES, day_length)
        if cursor + timedelta(minutes=minutes) > day_end:
            day += timedelta(days=1)
            cursor, day_end = day_bounds(day)
        end = cursor + timedelta(minutes=minutes)
        blocks.append({
            "taskId": task.id,
            "title": task.title,
            "start": cursor.isoformat(),
            "end": end.isoformat(),
        })
        cursor = end
    return blocks


def _round_up(moment: datetime, minutes: int) -> datetime:
    base = moment.replace(second=0, microsecond=0)
    if base < moment:
        base += timedelta(minutes=1)
    remainder = base.minute % minutes
    if remainder:
        base += timedelta(minutes=minutes - remainder)
    return base


def _task_brief(task: Task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "priority": task.priority,
        "status": task.status,
        "dueDate": format_dt(task.due_date),
        "estimatedDuration": task.estimated_duration,
        "projectId": task.project_id,
    }


# ── Scheduler ─────────────────────────────────────────────────────────────────


class WorkflowScheduler:
    """Background thread that runs workflows for every known user on an interval."""

    def __init__(
        self,
        orchestrator: WorkflowOrchestrator,
        shards,
        interval: float = 3600.0,
        workflows: list[str] | None = None,
    ):
        self.orchestrator = orchestrator
        self.shards = shards
        self.interval = interval
        self.workflows = list(workflows) if workflows is not None else [DEADLINE_SCAN]
        for name in self.workflows:
            if name not in WORKFLOWS:
                raise ValueError(f"Unknown workflow: {name!r}")
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="workflow-scheduler", daemon=True
        )
        self._thread.start()
        logger.info("Workflow scheduler started (every %ss: %s)", self.interval, ", ".join(self.workflows))

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Workflow scheduler stopped")

    def run_once(self) -> int:
        """Run every configured workflow for every known user. Returns runs attempted."""
        runs = 0
        for user_id in self.shards.known_users():
            for workflow in self.workflows:
                runs += 1
                try:
                    self.orchestrator.run(workflow, user_id)
                except Exception:
                    logger.exception("Scheduled %s failed for %s", workflow, user_id)
        return runs

    def _run(self):
        # The first pass runs one interval after start.
        while not self._stop_event.wait(self.interval):
            try:
                self.run_once()
            except Exception:
                logger.exception("Error in workflow scheduler loop")
