"""Tests for stuck detection and bounded requeueing."""

from unittest.mock import MagicMock

import pytest

from conftest import make_config, plan_dict, task_dict
from pm_orchestrator.core.agents import AgentPool
from pm_orchestrator.core.monitor import StuckDetector, requeue_task
from pm_orchestrator.core.tasks import TaskBook, load_plan
from pm_orchestrator.store.documents import now_iso, parse_iso
from pm_orchestrator.store.markers import COMPLETED, RUNNING, STUCK, MarkerStore
from pm_orchestrator.store.models import Agent


@pytest.fixture
def book(paths):
    book = TaskBook(paths.tasks_file)
    book.save_plan(load_plan(plan_dict(task_dict("a"), task_dict("b"))))
    return book


@pytest.fixture
def markers(paths):
    return MarkerStore(paths.status_dir)


class TestRequeue:
    def test_requeue_counts_attempts(self, markers, book):
        markers.write("a", RUNNING, {"agent": "sh-a", "branch": "task/a"})
        assert requeue_task(markers, book, "a", "timed out", 2) == "requeued"
        assert not markers.exists("a", RUNNING)
        stuck = markers.read("a", STUCK)
        assert stuck["count"] == 1
        assert stuck["agent"] == "sh-a"
        assert stuck["reason"] == "timed out"

        assert requeue_task(markers, book, "a", "timed out", 2) == "requeued"
        assert book.get("a").status is None

    def test_exceeding_max_fails_task(self, markers, book):
        for _ in range(2):
            requeue_task(markers, book, "a", "timed out", 1)
        task = book.get("a")
        assert task.status == "failed"
        assert "stuck 2 times" in task.reason


class TestStuckDetector:
    def _detector(self, paths, runtime_dir, markers, book, clock, **overrides):
        config = make_config(runtime_dir, agent_timeout=60, **overrides)
        pool = AgentPool(paths.messages_dir)
        supervisor = MagicMock()
        return StuckDetector(config, markers, book, pool, supervisor, clock=clock)

    def _started(self, markers, task_id, agent_id):
        markers.write(task_id, RUNNING, {"agent": agent_id, "startedAt": now_iso()})
        return parse_iso(markers.read(task_id, RUNNING)["startedAt"]).timestamp()

    def test_recent_tasks_left_alone(self, paths, runtime_dir, markers, book):
        started = self._started(markers, "a", "sh-a")
        detector = self._detector(paths, runtime_dir, markers, book, lambda: started + 30)
        assert detector.check() == {}
        assert markers.exists("a", RUNNING)

    def test_timed_out_task_is_terminated_and_requeued(self, paths, runtime_dir, markers, book):
        started = self._started(markers, "a", "sh-a")
        detector = self._detector(paths, runtime_dir, markers, book, lambda: started + 120)
        detector.pool.register(Agent(id="sh-a", role="implement", type="sh",
                                     status="active", persistent=False))

        assert detector.check() == {"a": "requeued"}
        detector.supervisor.terminate.assert_called_once_with("sh-a")
        assert not markers.exists("a", RUNNING)
        assert markers.read("a", STUCK)["count"] == 1

    def test_pooled_agents_manage_their_own_time(self, paths, runtime_dir, markers, book):
        started = self._started(markers, "a", "dev-sh-1")
        detector = self._detector(paths, runtime_dir, markers, book, lambda: started + 3600)
        detector.pool.register(Agent(id="dev-sh-1", role="dev", type="sh", status="active"))
        assert detector.check() == {}
        detector.supervisor.terminate.assert_not_called()

    def test_terminated_pooled_agent_is_not_exempt(self, paths, runtime_dir, markers, book):
        started = self._started(markers, "a", "dev-sh-1")
        detector = self._detector(paths, runtime_dir, markers, book, lambda: started + 3600)
        detector.pool.register(Agent(id="dev-sh-1", role="dev", type="sh", status="terminated"))
        assert detector.check() == {"a": "requeued"}
        detector.supervisor.terminate.assert_not_called()

    def test_completed_task_clears_running_marker(self, paths, runtime_dir, markers, book):
        started = self._started(markers, "a", "sh-a")
        markers.write("a", COMPLETED, {"agent": "sh-a"})
        detector = self._detector(paths, runtime_dir, markers, book, lambda: started + 3600)
        assert detector.check() == {}
        assert not markers.exists("a", RUNNING)

    def test_repeatedly_stuck_task_fails(self, paths, runtime_dir, markers, book):
        started = self._started(markers, "a", "ghost")
        detector = self._detector(paths, runtime_dir, markers, book, lambda: started + 3600,
                                  max_stuck_retries=0)
        assert detector.check() == {"a": "failed"}
        assert book.get("a").status == "failed"
