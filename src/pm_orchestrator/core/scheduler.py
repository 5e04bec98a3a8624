"""Dependency-graph scheduling.

``compute_schedule`` is a pure projection of the task list and the on-disk
markers: it keeps no state between calls, so the orchestrator can recompute it
every cycle and always get the same partition for the same inputs.
"""

from dataclasses import dataclass, field

from pm_orchestrator.store.markers import (
    APPROVED,
    COMPLETED,
    MERGED,
    NEEDS_HUMAN_REVIEW,
    RUNNING,
    MarkerStore,
)
from pm_orchestrator.store.models import Task

STATES = (
    "ready",
    "blocked",
    "running",
    "awaiting_review",
    "approved",
    "merged",
    "failed",
    "needs_human_review",
    "unreachable",
    "invalid",
)

SATISFIED = ("merged", "approved")
DEAD = ("failed", "needs_human_review", "unreachable", "invalid")


@dataclass
class Schedule:
    states: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)

    def ids(self, state: str) -> list[str]:
        return [tid for tid in self.order if self.states[tid] == state]

    @property
    def ready(self) -> list[str]:
        return self.ids("ready")

    @property
    def blocked(self) -> list[str]:
        return self.ids("blocked")

    @property
    def running(self) -> list[str]:
        return self.ids("running")

    @property
    def invalid(self) -> list[str]:
        return self.ids("invalid")

    def counts(self) -> dict[str, int]:
        return {state: len(self.ids(state)) for state in STATES}

    @property
    def settled(self) -> bool:
        """True when no task can make further progress on its own."""
        active = ("ready", "blocked", "running", "awaiting_review", "approved")
        return not any(self.states[tid] in active for tid in self.order)

    @property
    def all_merged(self) -> bool:
        return bool(self.order) and all(s == "merged" for s in self.states.values())

    def to_dict(self) -> dict:
        return {
            "partition": {state: self.ids(state) for state in STATES},
            "counts": self.counts(),
            "errors": dict(self.errors),
        }


def detect_cycles(tasks: list[Task]) -> list[list[str]]:
    """Return each dependency cycle as a list of task ids (first id repeated at the end)."""
    graph = {t.id: [d for d in t.depends_on] for t in tasks}
    white, grey, black = 0, 1, 2
    color = {tid: white for tid in graph}
    cycles: list[list[str]] = []

    for root in graph:
        if color[root] != white:
            continue
        stack: list[tuple[str, int]] = [(root, 0)]
        path: list[str] = [root]
        color[root] = grey
        while stack:
            node, idx = stack[-1]
            deps = [d for d in graph[node] if d in graph]
            if idx < len(deps):
                stack[-1] = (node, idx + 1)
                dep = deps[idx]
                if color[dep] == white:
                    color[dep] = grey
                    stack.append((dep, 0))
                    path.append(dep)
                elif color[dep] == grey:
                    cycles.append(path[path.index(dep):] + [dep])
            else:
                color[node] = black
                stack.pop()
                path.pop()
    return cycles


def _marker_state(task: Task, markers: MarkerStore) -> str | None:
    if task.status == "completed" or markers.exists(task.id, MERGED):
        return "merged"
    if task.status == "failed":
        return "failed"
    if task.status == "needs_human_review" or markers.exists(task.id, NEEDS_HUMAN_REVIEW):
        return "needs_human_review"
    if markers.exists(task.id, APPROVED):
        return "approved"
    if markers.exists(task.id, COMPLETED):
        return "awaiting_review"
    if markers.exists(task.id, RUNNING):
        return "running"
    return None


def compute_schedule(tasks: list[Task], markers: MarkerStore) -> Schedule:
    """Classify every task into exactly one scheduling state."""
    by_id = {t.id: t for t in tasks}
    schedule = Schedule(order=[t.id for t in tasks])

    # Structural problems first: unknown ids and cycles are never dispatchable.
    for task in tasks:
        unknown = [d for d in task.depends_on if d not in by_id]
        if unknown:
            schedule.states[task.id] = "invalid"
            schedule.errors[task.id] = f"unknown dependency: {', '.join(unknown)}"
    for cycle in detect_cycles(tasks):
        for tid in cycle[:-1]:
            if tid not in schedule.states:
                schedule.states[tid] = "invalid"
                schedule.errors[tid] = f"dependency cycle: {' -> '.join(cycle)}"

    visiting: set[str] = set()

    def classify(tid: str) -> str:
        if tid in schedule.states:
            return schedule.states[tid]
        if tid in visiting:
            schedule.errors[tid] = "dependency cycle"
            return "invalid"
        task = by_id[tid]
        state = _marker_state(task, markers)
        if state is None:
            visiting.add(tid)
            dep_states = {d: classify(d) for d in task.depends_on}
            visiting.discard(tid)
            dead = [d for d, s in dep_states.items() if s in DEAD]
            invalid = [d for d, s in dep_states.items() if s == "invalid"]
            if invalid:
                state = "invalid"
                schedule.errors[tid] = f"depends on invalid task: {', '.join(invalid)}"
            elif dead:
                state = "unreachable"
                schedule.errors[tid] = f"depends on unfinishable task: {', '.join(dead)}"
            elif all(s in SATISFIED for s in dep_states.values()):
                state = "ready"
            else:
                state = "blocked"
        schedule.states[tid] = state
        return state

    for task in tasks:
        classify(task.id)
    return schedule
