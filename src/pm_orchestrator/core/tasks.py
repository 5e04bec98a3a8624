"""Task plans: parsing, validation and the per-project task document."""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from pm_orchestrator.store.documents import JsonDocument, now_iso
from pm_orchestrator.store.markers import (
    APPROVED,
    COMPLETED,
    CONFLICT_RETRIES,
    MERGED,
    NEEDS_HUMAN_REVIEW,
    RUNNING,
    STUCK,
    MarkerStore,
)
from pm_orchestrator.store.models import TASK_TYPES, Task

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("id", "type", "branch", "agent", "description", "depends_on")
TERMINAL_STATUSES = ("completed", "failed", "needs_human_review")

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
# Task ids name marker files and log files, so they stay a single path component.
_TASK_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class PlanError(ValueError):
    """Raised when a task plan cannot be parsed or is structurally invalid."""


@dataclass
class Plan:
    project_name: str
    tasks: list[Task] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "project_name": self.project_name,
            "tasks": [t.to_dict() for t in self.tasks],
        }

    def get(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None


# ── Tolerant JSON extraction ────────────────────────────────────────────────


def _first_json_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` span, respecting string literals."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : i + 1]
        start = text.find("{", start + 1)
    return None


def extract_json(text: str) -> dict | None:
    """Pull a JSON object out of free-form model output. Returns None if there is none."""
    if not text:
        return None
    candidates = [m.group(1) for m in _FENCE_RE.finditer(text)] + [text]
    for candidate in candidates:
        candidate = candidate.strip()
        try:
            data = json.loads(candidate)
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass
        span = _first_json_object(candidate)
        if span:
            try:
                data = json.loads(span)
            except json.JSONDecodeError:
                continue
            if isinstance(data, dict):
                return data
    return None


# ── Plan loading ────────────────────────────────────────────────────────────


def load_plan(raw: str | dict) -> Plan:
    """Parse and validate a task plan document.

    Every task must carry ``id``, ``type``, ``branch``, ``agent``,
    ``description`` and an explicit ``depends_on`` list. Dependency ids are
    not checked here; unknown ids and cycles are reported by the scheduler.
    """
    if isinstance(raw, str):
        data = extract_json(raw)
        if data is None:
            raise PlanError("Task plan is not valid JSON")
    elif isinstance(raw, dict):
        data = raw
    else:
        raise PlanError(f"Unsupported plan type: {type(raw).__name__}")

    project_name = data.get("project_name")
    if not project_name or not isinstance(project_name, str):
        raise PlanError("Task plan is missing 'project_name'")

    raw_tasks = data.get("tasks")
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise PlanError("Task plan must contain a non-empty 'tasks' list")

    tasks: list[Task] = []
    seen: set[str] = set()
    for index, entry in enumerate(raw_tasks):
        if not isinstance(entry, dict):
            raise PlanError(f"Task #{index} is not an object")
        missing = [f for f in REQUIRED_FIELDS if f not in entry]
        if missing:
            label = entry.get("id", f"#{index}")
            raise PlanError(f"Task {label} is missing fields: {', '.join(missing)}")
        if not isinstance(entry["depends_on"], list):
            raise PlanError(f"Task {entry['id']}: 'depends_on' must be a list")
        if entry["type"] not in TASK_TYPES:
            raise PlanError(
                f"Task {entry['id']}: unknown type '{entry['type']}' "
                f"(expected one of {', '.join(TASK_TYPES)})"
            )
        task = Task.from_dict(entry)
        if not task.id or not task.branch:
            raise PlanError(f"Task #{index}: 'id' and 'branch' must be non-empty")
        if not _TASK_ID_RE.match(task.id):
            raise PlanError(
                f"Task id '{task.id}' may only contain letters, digits, '.', '_' and '-'"
            )
        if task.id in seen:
            raise PlanError(f"Duplicate task id: {task.id}")
        seen.add(task.id)
        tasks.append(task)

    return Plan(project_name=project_name, tasks=tasks)


def load_plan_file(path: str | Path) -> Plan:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise PlanError(f"Cannot read plan file {path}: {e}") from e
    return load_plan(text)


# ── Task document ───────────────────────────────────────────────────────────


class TaskBook:
    """The project's ``tasks.json``: the plan plus terminal task statuses."""

    def __init__(self, tasks_file: str | Path):
        self.doc = JsonDocument(tasks_file, {})

    def exists(self) -> bool:
        return bool(self.doc.read().get("tasks"))

    def save_plan(self, plan: Plan) -> None:
        data = plan.to_dict()
        data["created"] = now_iso()
        self.doc.write(data)

    def load(self) -> Plan:
        """Load the stored plan. Raises PlanError if there is none or it is invalid."""
        data = self.doc.read()
        if not data:
            raise PlanError(f"No task plan at {self.doc.path}")
        plan = load_plan(data)
        # Terminal statuses are not part of plan validation, reattach them.
        by_id = {t.get("id"): t for t in data.get("tasks", []) if isinstance(t, dict)}
        for task in plan.tasks:
            stored = by_id.get(task.id, {})
            task.status = stored.get("status")
            task.reason = stored.get("reason")
        return plan

    def tasks(self) -> list[Task]:
        return self.load().tasks

    def get(self, task_id: str) -> Task | None:
        return self.load().get(task_id)

    def set_status(self, task_id: str, status: str, reason: str | None = None) -> Task:
        """Record a terminal status (completed, failed, needs_human_review)."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Invalid task status: {status}")
        with self.doc.update() as data:
            for entry in data.get("tasks", []):
                if isinstance(entry, dict) and entry.get("id") == task_id:
                    entry["status"] = status
                    entry["statusAt"] = now_iso()
                    if reason:
                        entry["reason"] = reason
                    else:
                        entry.pop("reason", None)
                    break
            else:
                raise ValueError(f"Task not found: {task_id}")
        logger.info("Task %s -> %s%s", task_id, status, f" ({reason})" if reason else "")
        return self.get(task_id)


def current_status(task: Task, markers: MarkerStore) -> str:
    """Human-facing status derived from the task document and its markers."""
    if task.status == "failed":
        return "failed"
    if task.status == "needs_human_review" or markers.exists(task.id, NEEDS_HUMAN_REVIEW):
        return "needs_human_review"
    if task.status == "completed" or markers.exists(task.id, MERGED):
        return "merged"
    if markers.exists(task.id, CONFLICT_RETRIES):
        return "conflict-retry"
    if markers.exists(task.id, APPROVED):
        return "approved"
    if markers.exists(task.id, COMPLETED):
        return "completed"
    if markers.exists(task.id, RUNNING):
        return "running"
    if markers.exists(task.id, STUCK):
        return "stuck"
    return "pending"
