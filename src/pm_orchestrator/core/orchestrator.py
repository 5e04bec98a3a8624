"""The main orchestration loop.

Each cycle runs the same steps in the same order:

    reap -> review -> merge -> schedule -> dispatch -> settled? -> stuck -> messages

Everything the loop knows lives on disk (markers, ``tasks.json``, the agent
pool, the mailbox), so a killed orchestrator can be resumed by starting a new
one on the same project directory.
"""

import logging
import signal
import threading
from dataclasses import dataclass, field

from pm_orchestrator.config import Config
from pm_orchestrator.core.activity import start_session_log, stop_session_log
from pm_orchestrator.core.agents import AgentError, AgentPool, AgentSupervisor
from pm_orchestrator.core.dispatcher import Dispatcher, DispatchReport
from pm_orchestrator.core.messaging import Mailbox
from pm_orchestrator.core.monitor import StuckDetector
from pm_orchestrator.core.pm import MessageRouter, ProjectManager
from pm_orchestrator.core.projects import ProjectPaths, write_project_status
from pm_orchestrator.core.review import MergeResult, ReviewEngine
from pm_orchestrator.core.scheduler import Schedule, compute_schedule
from pm_orchestrator.core.tasks import Plan, PlanError, TaskBook, current_status
from pm_orchestrator.integrations import git
from pm_orchestrator.integrations.slack import Notifier
from pm_orchestrator.store.documents import now_iso, read_json, write_json_atomic
from pm_orchestrator.store.markers import RUNNING, MarkerStore

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    cycle: int
    finished: list[tuple[str, str | None]] = field(default_factory=list)
    reviews: dict[str, str] = field(default_factory=dict)
    merges: list[MergeResult] = field(default_factory=list)
    schedule: Schedule | None = None
    dispatch: DispatchReport | None = None
    stuck: dict[str, str] = field(default_factory=dict)
    messages: dict[str, int] = field(default_factory=dict)
    settled: bool = False
    errors: list[str] = field(default_factory=list)


@dataclass
class ProjectOutcome:
    status: str  # completed, partial, interrupted
    merged: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    needs_human_review: list[str] = field(default_factory=list)
    unreachable: list[str] = field(default_factory=list)
    invalid: list[str] = field(default_factory=list)
    summary: str = ""

    @classmethod
    def from_schedule(cls, status: str, schedule: Schedule, summary: str = "") -> "ProjectOutcome":
        return cls(
            status=status,
            merged=schedule.ids("merged"),
            failed=schedule.ids("failed"),
            needs_human_review=schedule.ids("needs_human_review"),
            unreachable=schedule.ids("unreachable"),
            invalid=schedule.invalid,
            summary=summary,
        )


class Orchestrator:
    def __init__(
        self,
        config: Config,
        paths: ProjectPaths,
        pm: ProjectManager | None = None,
        notifier: Notifier | None = None,
        stop_event: threading.Event | None = None,
    ):
        self.config = config
        self.paths = paths
        self.name = paths.root.name
        self.description = read_json(paths.project_file, {}).get("description", "")

        self.markers = MarkerStore(paths.status_dir)
        self.book = TaskBook(paths.tasks_file)
        self.mailbox = Mailbox(paths.messages_dir)
        self.pool = AgentPool(paths.messages_dir)
        self.notifier = notifier or Notifier(
            config.slack_bot_token, config.slack_channel, project=self.name
        )
        self.pm = pm or ProjectManager(config, paths, self.description)
        self.supervisor = AgentSupervisor(
            paths, config, pool=self.pool, project_description=self.description
        )
        self.dispatcher = Dispatcher(
            paths, config, self.markers, self.book, self.supervisor, pool=self.pool
        )
        self.review = ReviewEngine(
            paths, config, self.markers, self.book, self.pm, self.supervisor, self.notifier
        )
        self.detector = StuckDetector(config, self.markers, self.book, self.pool, self.supervisor)
        self.router = MessageRouter(self.mailbox, self.pm, self.dispatcher, config, self.notifier)

        self.cycle = 0
        self._stop = stop_event or threading.Event()

    # ── Setup ──

    def prepare(self) -> None:
        """Bring the project directory into a runnable state (start and resume)."""
        self.paths.create()
        workspace = self.paths.workspace
        if not git.is_repo(workspace):
            logger.info("Initialising workspace repository at %s", workspace)
            git.init_repo(workspace, self.config.main_branch)
        else:
            git.ensure_identity(workspace)
            git.merge_abort(workspace)
        self.mailbox.init()

        # Agents that exited while no orchestrator was watching.
        self._reap()

        for task_id in self.markers.task_ids(RUNNING):
            marker = self.markers.read(task_id, RUNNING) or {}
            agent_id = marker.get("agent")
            agent = self.pool.get(agent_id) if agent_id else None
            if agent is None or agent.status == "terminated":
                logger.warning("Clearing stale running marker for %s (agent %s)", task_id, agent_id)
                self.markers.remove(task_id, RUNNING)

    def plan(self, description: str | None = None, plan: Plan | None = None) -> Plan:
        """Store ``plan``, or ask the PM for one. Raises PlanError if it is unusable."""
        if plan is None:
            logger.info("Asking the PM for a task plan")
            plan = self.pm.plan_project(description or self.description)
        self.book.save_plan(plan)
        logger.info("Plan saved: %s task(s) for %s", len(plan.tasks), plan.project_name)

        schedule = compute_schedule(plan.tasks, self.markers)
        for task_id in schedule.invalid:
            logger.error("Task %s will never run: %s", task_id, schedule.errors.get(task_id))
        return plan

    # ── Cycle ──

    def _step(self, report: CycleReport, name: str, fn):
        try:
            return fn()
        except PlanError:
            raise
        except Exception:
            logger.exception("Cycle %s: %s step failed", report.cycle, name)
            report.errors.append(name)
            return None

    def _reap(self) -> list[tuple[str, str | None]]:
        finished = []
        for agent, exit_code in self.supervisor.reap():
            finished.append((agent.id, self.dispatcher.finalize(agent, exit_code)))
        return finished

    def run_cycle(self) -> CycleReport:
        self.cycle += 1
        report = CycleReport(cycle=self.cycle)

        report.finished = self._step(report, "reap", self._reap) or []
        report.reviews = self._step(report, "review", self.review.review_completed) or {}
        report.merges = self._step(report, "merge", self.review.merge_approved) or []

        # An unreadable plan is fatal, so this step is not guarded.
        report.schedule = compute_schedule(self.book.tasks(), self.markers)

        report.dispatch = self._step(
            report, "dispatch", lambda: self.dispatcher.dispatch(report.schedule)
        )
        report.settled = report.schedule.settled
        if not report.settled:
            report.stuck = self._step(report, "stuck", self.detector.check) or {}
        report.messages = self._step(report, "messages", self.router.drain) or {}

        counts = {k: v for k, v in report.schedule.counts().items() if v}
        logger.info("Cycle %s: %s", self.cycle, counts)
        return report

    # ── Loop ──

    def run(self, max_cycles: int | None = None) -> ProjectOutcome:
        """Run cycles until the project settles, shutdown is requested, or ``max_cycles``."""
        handlers = start_session_log(self.paths)
        try:
            self.prepare()
            logger.info("Orchestrating %s", self.name)
            try:
                while not self._stop.is_set():
                    report = self.run_cycle()
                    if report.settled:
                        self.save_state(report.schedule)
                        return self.finish(report.schedule)
                    self.save_state(report.schedule)
                    if max_cycles and self.cycle >= max_cycles:
                        logger.info("Stopping after %s cycle(s)", self.cycle)
                        break
                    self._stop.wait(self.config.poll_interval)
            except KeyboardInterrupt:
                logger.warning("Aborted during cycle %s", self.cycle)

            schedule = self.save_state(interrupted=True)
            logger.warning("Orchestrator stopped, resume with `pmo resume %s`", self.name)
            return ProjectOutcome.from_schedule("interrupted", schedule)
        finally:
            stop_session_log(handlers)

    def request_shutdown(self) -> None:
        self._stop.set()

    def install_signal_handlers(self) -> None:
        """First SIGINT/SIGTERM stops after the current cycle; a second one aborts."""

        def handler(signum, frame):
            if self._stop.is_set():
                raise KeyboardInterrupt
            logger.warning("Received signal %s, shutting down after this cycle", signum)
            self.request_shutdown()

        signal.signal(signal.SIGINT, handler)
        signal.signal(signal.SIGTERM, handler)

    def save_state(self, schedule: Schedule | None = None, interrupted: bool = False) -> Schedule:
        """Write ``orchestrator_state.json``. Returns the schedule that was recorded."""
        try:
            tasks = self.book.tasks()
        except PlanError:
            tasks = []
        if schedule is None:
            schedule = compute_schedule(tasks, self.markers)

        state = {
            "project": self.name,
            "timestamp": now_iso(),
            "cycle": self.cycle,
            "interrupted": interrupted,
            **schedule.to_dict(),
            "tasks": {t.id: current_status(t, self.markers) for t in tasks},
            "activeAgents": [
                a.id for a in self.pool.list_agents() if a.status != "terminated"
            ],
        }
        write_json_atomic(self.paths.state_file, state)
        return schedule

    # ── Completion ──

    def finish(self, schedule: Schedule) -> ProjectOutcome:
        try:
            self.supervisor.terminate_all()
        except AgentError:
            logger.exception("Could not terminate all agents")

        counts = {k: v for k, v in schedule.counts().items() if v}
        if schedule.all_merged:
            logger.info("All %s task(s) merged, writing final summary", len(schedule.order))
            if self.paths.project_file.exists():
                write_project_status(self.paths, "completed")
            summary = self.pm.final_summary() or "All tasks merged."
            self.paths.summary_file.write_text(summary + "\n")
            self.notifier.project_finished("completed", counts, summary)
            return ProjectOutcome.from_schedule("completed", schedule, summary)

        summary = self._partial_report(schedule)
        self.paths.summary_file.write_text(summary)
        logger.warning("Project settled with unfinished tasks: %s", counts)
        self.notifier.project_finished("partial", counts, summary)
        return ProjectOutcome.from_schedule("partial", schedule, summary)

    def _partial_report(self, schedule: Schedule) -> str:
        reasons = {}
        try:
            reasons = {t.id: t.reason for t in self.book.tasks() if t.reason}
        except PlanError:
            pass

        lines = [f"# {self.name}: partially complete", ""]
        for state in ("merged", "failed", "needs_human_review", "unreachable", "invalid"):
            ids = schedule.ids(state)
            if not ids:
                continue
            lines.append(f"## {state} ({len(ids)})")
            for task_id in ids:
                why = reasons.get(task_id) or schedule.errors.get(task_id)
                lines.append(f"- {task_id}" + (f": {why}" if why else ""))
            lines.append("")
        return "\n".join(lines)
