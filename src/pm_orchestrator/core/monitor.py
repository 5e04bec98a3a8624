"""Stuck-agent detection and the bounded requeue shared with the dispatcher."""

import logging
import time
from collections.abc import Callable

from pm_orchestrator.config import Config
from pm_orchestrator.core.agents import AgentError, AgentPool, AgentSupervisor
from pm_orchestrator.core.tasks import TaskBook
from pm_orchestrator.store.documents import now_iso, parse_iso
from pm_orchestrator.store.markers import COMPLETED, RUNNING, STUCK, MarkerStore

logger = logging.getLogger(__name__)

# Pooled agents in these states manage their own time and are never timed out.
# "completed" covers the gap between task_complete and the PM routing it.
SELF_MANAGED = ("active", "standby", "assigned", "completed")


def requeue_task(
    markers: MarkerStore,
    book: TaskBook,
    task_id: str,
    reason: str,
    max_retries: int,
) -> str:
    """Drop a task's running marker and make it dispatchable again.

    Each requeue is counted in the ``stuck`` marker. Once the count exceeds
    ``max_retries`` the task is failed instead. Returns "requeued" or "failed".
    """
    previous = markers.read(task_id, STUCK) or {}
    count = int(previous.get("count", 0)) + 1
    running = markers.read(task_id, RUNNING) or {}
    markers.write(task_id, STUCK, {
        **running,
        "count": count,
        "reason": reason,
        "stuckAt": now_iso(),
    })
    markers.remove(task_id, RUNNING)

    if count > max_retries:
        logger.error("Task %s stuck %s times (%s), marking failed", task_id, count, reason)
        book.set_status(task_id, "failed", reason=f"stuck {count} times: {reason}")
        return "failed"
    logger.warning("Task %s requeued (%s, attempt %s/%s)", task_id, reason, count, max_retries)
    return "requeued"


class StuckDetector:
    def __init__(
        self,
        config: Config,
        markers: MarkerStore,
        book: TaskBook,
        pool: AgentPool,
        supervisor: AgentSupervisor,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.markers = markers
        self.book = book
        self.pool = pool
        self.supervisor = supervisor
        self._clock = clock

    def _started_at(self, task_id: str, marker: dict) -> float:
        started = parse_iso(marker.get("startedAt"))
        if started is not None:
            return started.timestamp()
        return self.markers.path(task_id, RUNNING).stat().st_mtime

    def check(self) -> dict[str, str]:
        """Evict timed-out running tasks. Returns task id -> outcome."""
        outcomes: dict[str, str] = {}
        now = self._clock()
        for task_id in self.markers.task_ids(RUNNING):
            if self.markers.exists(task_id, COMPLETED):
                self.markers.remove(task_id, RUNNING)
                continue

            marker = self.markers.read(task_id, RUNNING) or {}
            agent_id = marker.get("agent")
            agent = self.pool.get(agent_id) if agent_id else None
            if agent is not None and agent.persistent and agent.status in SELF_MANAGED:
                continue

            try:
                elapsed = now - self._started_at(task_id, marker)
            except FileNotFoundError:
                continue  # Finished while we were looking
            if elapsed <= self.config.agent_timeout:
                continue

            if agent is not None and agent.status != "terminated":
                try:
                    self.supervisor.terminate(agent.id)
                except AgentError:
                    logger.warning("Could not terminate %s for stuck task %s", agent.id, task_id)

            outcomes[task_id] = requeue_task(
                self.markers, self.book, task_id,
                f"no completion after {int(elapsed)}s",
                self.config.max_stuck_retries,
            )
        return outcomes
