"""Tests for dependency scheduling."""

import tempfile

import pytest

from conftest import plan_dict, task_dict
from pm_orchestrator.core.scheduler import compute_schedule, detect_cycles
from pm_orchestrator.core.tasks import load_plan
from pm_orchestrator.store.markers import APPROVED, COMPLETED, MERGED, RUNNING, MarkerStore


@pytest.fixture
def markers():
    with tempfile.TemporaryDirectory() as tmp:
        yield MarkerStore(tmp)


def _tasks(*tasks):
    return load_plan(plan_dict(*tasks)).tasks


@pytest.fixture
def diamond():
    return _tasks(
        task_dict("a"),
        task_dict("b", ["a"]),
        task_dict("c", ["a"]),
        task_dict("d", ["b", "c"]),
    )


class TestPartition:
    def test_fresh_plan(self, diamond, markers):
        schedule = compute_schedule(diamond, markers)
        assert schedule.ready == ["a"]
        assert schedule.blocked == ["b", "c", "d"]
        assert not schedule.settled

    def test_merged_dependency_unblocks(self, diamond, markers):
        markers.write("a", MERGED)
        schedule = compute_schedule(diamond, markers)
        assert schedule.ready == ["b", "c"]
        assert schedule.blocked == ["d"]

    def test_approved_counts_as_satisfied(self, diamond, markers):
        markers.write("a", APPROVED)
        schedule = compute_schedule(diamond, markers)
        assert schedule.states["a"] == "approved"
        assert schedule.ready == ["b", "c"]

    def test_in_flight_states(self, diamond, markers):
        markers.write("a", MERGED)
        markers.write("b", RUNNING)
        markers.write("c", COMPLETED)
        schedule = compute_schedule(diamond, markers)
        assert schedule.states["b"] == "running"
        assert schedule.states["c"] == "awaiting_review"
        assert schedule.states["d"] == "blocked"
        assert schedule.ready == []

    def test_failed_dependency_makes_dependents_unreachable(self, diamond, markers):
        diamond[0].status = "failed"
        schedule = compute_schedule(diamond, markers)
        assert schedule.states["a"] == "failed"
        assert schedule.ids("unreachable") == ["b", "c", "d"]
        assert "a" in schedule.errors["b"]
        assert schedule.settled
        assert not schedule.all_merged

    def test_all_merged(self, diamond, markers):
        for t in "abcd":
            markers.write(t, MERGED)
        schedule = compute_schedule(diamond, markers)
        assert schedule.settled
        assert schedule.all_merged
        assert schedule.counts()["merged"] == 4

    def test_recomputation_is_stable(self, diamond, markers):
        markers.write("a", MERGED)
        first = compute_schedule(diamond, markers).to_dict()
        second = compute_schedule(diamond, markers).to_dict()
        assert first == second


class TestInvalidGraphs:
    def test_unknown_dependency(self, markers):
        tasks = _tasks(task_dict("a", ["ghost"]), task_dict("b", ["a"]), task_dict("c"))
        schedule = compute_schedule(tasks, markers)
        assert schedule.invalid == ["a", "b"]
        assert "ghost" in schedule.errors["a"]
        assert schedule.ready == ["c"]

    def test_cycle(self, markers):
        tasks = _tasks(task_dict("a", ["b"]), task_dict("b", ["a"]), task_dict("c", ["a"]))
        schedule = compute_schedule(tasks, markers)
        assert schedule.invalid == ["a", "b", "c"]
        assert "cycle" in schedule.errors["a"]
        assert schedule.settled

    def test_self_dependency(self, markers):
        schedule = compute_schedule(_tasks(task_dict("a", ["a"])), markers)
        assert schedule.invalid == ["a"]

    def test_detect_cycles(self):
        tasks = _tasks(task_dict("a", ["c"]), task_dict("b", ["a"]), task_dict("c", ["b"]))
        cycles = detect_cycles(tasks)
        assert len(cycles) == 1
        assert set(cycles[0]) == {"a", "b", "c"}
        assert cycles[0][0] == cycles[0][-1]

    def test_no_cycles(self, markers):
        assert detect_cycles(_tasks(task_dict("a"), task_dict("b", ["a"]))) == []
