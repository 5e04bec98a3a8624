"""Binding ready tasks to agents under the parallelism cap, and recording completions."""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from pm_orchestrator.config import Config
from pm_orchestrator.core.agents import AgentError, AgentPool, AgentSupervisor
from pm_orchestrator.core.monitor import requeue_task
from pm_orchestrator.core.projects import ProjectPaths
from pm_orchestrator.core.scheduler import Schedule
from pm_orchestrator.core.tasks import TaskBook
from pm_orchestrator.integrations import git
from pm_orchestrator.store.documents import now_iso
from pm_orchestrator.store.markers import COMPLETED, RUNNING, MarkerStore
from pm_orchestrator.store.models import Agent, Message, Task

logger = logging.getLogger(__name__)


@dataclass
class DispatchReport:
    dispatched: list[tuple[str, str, str]] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)


def match_agent(task: Task, agents: list[Agent]) -> Agent | None:
    """Pick a standby agent whose capabilities mention the task's preferred one.

    Matching is a case-insensitive substring test in either direction; with no
    match, any available agent is returned.
    """
    if not agents:
        return None
    wanted = task.preferred_capability.lower()
    for agent in agents:
        for cap in agent.capabilities:
            cap = cap.lower()
            if cap and (cap in wanted or wanted in cap):
                return agent
    return agents[0]


class Dispatcher:
    def __init__(
        self,
        paths: ProjectPaths,
        config: Config,
        markers: MarkerStore,
        book: TaskBook,
        supervisor: AgentSupervisor,
        pool: AgentPool | None = None,
    ):
        self.paths = paths
        self.config = config
        self.markers = markers
        self.book = book
        self.supervisor = supervisor
        self.pool = pool or supervisor.pool

    def active_count(self) -> int:
        return len(self.markers.task_ids(RUNNING))

    def dispatch(self, schedule: Schedule) -> DispatchReport:
        """Start ready tasks in plan order until the parallelism cap is reached."""
        report = DispatchReport()
        tasks = {t.id: t for t in self.book.tasks()}
        active = self.active_count()

        for task_id in schedule.ready:
            if self.markers.exists(task_id, RUNNING):
                continue  # Already bound to an agent
            if active >= self.config.max_parallel_agents:
                report.deferred.append(task_id)
                continue

            task = tasks[task_id]
            self.markers.write(task_id, RUNNING, {
                "branch": task.branch,
                "agent": None,
                "startedAt": now_iso(),
            })
            try:
                agent_id, mode = self._bind(task)
            except (AgentError, git.GitError, OSError) as e:
                logger.error("Could not dispatch task %s: %s", task_id, e)
                requeue_task(
                    self.markers, self.book, task_id,
                    f"dispatch failed: {e}", self.config.max_stuck_retries,
                )
                report.failed.append((task_id, str(e)))
                continue

            marker = self.markers.read(task_id, RUNNING) or {}
            marker.update(agent=agent_id, mode=mode)
            self.markers.write(task_id, RUNNING, marker)
            report.dispatched.append((task_id, agent_id, mode))
            active += 1

        if report.deferred:
            logger.info(
                "Parallel cap %s reached, %s ready task(s) wait for the next cycle",
                self.config.max_parallel_agents, len(report.deferred),
            )
        return report

    def _bind(self, task: Task) -> tuple[str, str]:
        agent = match_agent(task, self.pool.available())
        if agent is not None:
            try:
                self.supervisor.assign(agent.id, task.id, task.branch, task.description)
                return agent.id, "pooled"
            except AgentError as e:
                logger.info("Pooled agent %s unavailable (%s), launching ephemeral", agent.id, e)
        agent = self.supervisor.launch_ephemeral(task)
        return agent.id, "ephemeral"

    # ── Completions ──

    def finalize(self, agent: Agent, exit_code: int | None) -> str | None:
        """Record an ephemeral agent's exit. Returns the completion result, if any."""
        if agent.persistent or not agent.current_task:
            return None
        return self._record_completion(
            agent.current_task, agent, summary=f"agent exited with code {exit_code}"
        )

    def record_pooled_completion(self, message: Message) -> str | None:
        """Record a ``task_complete`` message from a pooled agent."""
        agent = self.pool.get(message.sender)
        if agent is None:
            logger.warning("task_complete from unknown agent %s", message.sender)
            return None
        if not agent.persistent:
            # Ephemeral work is collected when the process exits.
            return None
        task_id = message.task or agent.current_task
        if not task_id:
            logger.warning("task_complete from %s names no task", agent.id)
            return None
        return self._record_completion(task_id, agent, summary=message.payload)

    def _record_completion(self, task_id: str, agent: Agent, summary: str = "") -> str | None:
        marker = self.markers.read(task_id, RUNNING)
        if marker is None:
            logger.info("Ignoring completion of %s by %s: task is not running", task_id, agent.id)
            return None
        if marker.get("agent") not in (None, agent.id):
            logger.info(
                "Ignoring completion of %s by %s: task is bound to %s",
                task_id, agent.id, marker.get("agent"),
            )
            return None

        task = self.book.get(task_id)
        if task is None:
            logger.warning("Completion for unknown task %s", task_id)
            self.markers.remove(task_id, RUNNING)
            return None

        try:
            result = self._collect_branch(task, Path(agent.workspace or ""))
        except (git.GitError, OSError) as e:
            logger.error("Could not collect work for %s from %s: %s", task_id, agent.id, e)
            requeue_task(
                self.markers, self.book, task_id,
                f"work could not be collected: {e}", self.config.max_stuck_retries,
            )
            return None

        self.markers.write(task_id, COMPLETED, {
            "branch": task.branch,
            "agent": agent.id,
            "result": result,
            "summary": summary,
            "completedAt": now_iso(),
        })
        self.markers.remove(task_id, RUNNING)
        logger.info("Task %s completed by %s (%s)", task_id, agent.id, result)
        return result

    def _collect_branch(self, task: Task, workspace: Path) -> str:
        """Commit leftovers in the agent clone and fetch its HEAD as the task branch."""
        if not git.is_repo(workspace):
            raise git.GitError(f"agent workspace {workspace} is not a git repository")
        git.commit_all(workspace, f"{task.id}: {task.description[:60]}")
        git.fetch(self.paths.workspace, workspace, f"+HEAD:refs/heads/{task.branch}")
        ahead = git.commits_ahead(self.paths.workspace, self.config.main_branch, task.branch)
        return "changes" if ahead else "no_changes"
