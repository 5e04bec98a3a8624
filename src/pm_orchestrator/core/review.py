"""PM review of completed work and merging approved branches into the main line."""

import logging
import shutil
from dataclasses import dataclass

from pm_orchestrator.config import Config
from pm_orchestrator.core import prompts
from pm_orchestrator.core.agents import AgentSupervisor
from pm_orchestrator.core.pm import ProjectManager, parse_review_decision
from pm_orchestrator.core.projects import ProjectPaths
from pm_orchestrator.core.tasks import TaskBook
from pm_orchestrator.integrations import git
from pm_orchestrator.integrations.slack import Notifier
from pm_orchestrator.store.documents import now_iso
from pm_orchestrator.store.markers import (
    APPROVED,
    COMPLETED,
    CONFLICT_RETRIES,
    MERGED,
    NEEDS_HUMAN_REVIEW,
    REVIEW,
    MarkerStore,
)
from pm_orchestrator.store.models import Task

logger = logging.getLogger(__name__)

DIFF_LINES = 200


@dataclass
class MergeResult:
    task_id: str
    outcome: str  # merged, conflict-retry, needs_human_review, failed, skipped
    detail: str = ""


class ReviewEngine:
    def __init__(
        self,
        paths: ProjectPaths,
        config: Config,
        markers: MarkerStore,
        book: TaskBook,
        pm: ProjectManager,
        supervisor: AgentSupervisor,
        notifier: Notifier | None = None,
    ):
        self.paths = paths
        self.config = config
        self.markers = markers
        self.book = book
        self.pm = pm
        self.supervisor = supervisor
        self.notifier = notifier or Notifier(None, None)

    @property
    def main(self) -> str:
        return self.config.main_branch

    # ── Review ──

    def review_completed(self) -> dict[str, str]:
        """Ask the PM about every completed task. Returns task id -> decision."""
        decisions: dict[str, str] = {}
        for task_id in self.markers.task_ids(COMPLETED):
            task = self.book.get(task_id)
            if task is None:
                logger.warning("Dropping completion marker for unknown task %s", task_id)
                self.markers.remove(task_id, COMPLETED)
                continue
            decisions[task_id] = self.review_task(task)
        return decisions

    def review_task(self, task: Task) -> str:
        workspace = self.paths.workspace
        try:
            diff = git.diff_range(workspace, self.main, task.branch, max_lines=DIFF_LINES)
            files = git.changed_files(workspace, self.main, task.branch)
        except git.GitError as e:
            diff, files = f"(diff unavailable: {e})", []

        logger.info("Reviewing %s on branch %s", task.id, task.branch)
        raw = self.pm.review(task, diff, files)
        decision = parse_review_decision(raw)
        self.markers.write(task.id, REVIEW, {
            "decision": decision.decision,
            "reason": decision.reason,
            "parsed": decision.parsed,
            "raw": raw,
            "reviewedAt": now_iso(),
        })

        if decision.approved:
            if not decision.parsed:
                logger.warning("PM decision for %s unclear, defaulting to approve", task.id)
            else:
                logger.info("PM approved %s: %s", task.id, decision.reason)
            self.markers.move(task.id, COMPLETED, APPROVED, {"approvedAt": now_iso()})
            return "APPROVE"

        logger.error("PM rejected %s: %s", task.id, decision.reason)
        self.markers.remove(task.id, COMPLETED)
        self.book.set_status(task.id, "failed", reason=f"rejected: {decision.reason}")
        return "REJECT"

    # ── Merge ──

    def merge_approved(self) -> list[MergeResult]:
        """Merge every approved branch into the main line, one at a time."""
        results: list[MergeResult] = []
        approved = self.markers.task_ids(APPROVED)
        if not approved:
            return results

        git.merge_abort(self.paths.workspace)
        git.checkout(self.paths.workspace, self.main)

        for task_id in approved:
            marker = self.markers.read(task_id, APPROVED) or {}
            task = self.book.get(task_id)
            if task is None or not marker.get("branch"):
                logger.warning("Skipping malformed approval marker for %s", task_id)
                self.markers.remove(task_id, APPROVED)
                results.append(MergeResult(task_id, "skipped", "malformed approval marker"))
                continue
            results.append(self.merge_task(task))
        return results

    def merge_task(self, task: Task) -> MergeResult:
        workspace = self.paths.workspace
        logger.info("Merging %s into %s", task.branch, self.main)
        try:
            git.merge(workspace, task.branch, f"Merge {task.branch} (task {task.id})")
        except git.GitError as e:
            conflicts = git.conflicted_files(workspace) if git.merge_in_progress(workspace) else []
            git.merge_abort(workspace)
            if not conflicts:
                logger.error("Merge of %s failed without conflicts: %s", task.branch, e)
                self.markers.remove(task.id, APPROVED)
                self.book.set_status(task.id, "failed", reason=f"merge failed: {e}")
                return MergeResult(task.id, "failed", str(e))
            return self._handle_conflict(task, conflicts)

        self._mark_merged(task)
        return MergeResult(task.id, "merged")

    def _handle_conflict(self, task: Task, conflicts: list[str]) -> MergeResult:
        max_retries = self.config.max_conflict_retries
        counter = self.markers.read(task.id, CONFLICT_RETRIES) or {}
        retries = int(counter.get("retries", 0)) + 1

        if retries > max_retries:
            return self._needs_human_review(task, retries - 1)

        self.markers.write(task.id, CONFLICT_RETRIES, {"retries": retries, "max": max_retries})
        logger.warning(
            "Merge conflict on %s (%s), resolution attempt %s/%s",
            task.branch, ", ".join(conflicts), retries, max_retries,
        )
        if self.resolve_conflict(task):
            self._mark_merged(task)
            return MergeResult(task.id, "merged", f"resolved after {retries} attempt(s)")

        if retries >= max_retries:
            return self._needs_human_review(task, retries)
        return MergeResult(task.id, "conflict-retry", f"attempt {retries}/{max_retries} failed")

    def resolve_conflict(self, task: Task) -> bool:
        """Resolve in a fresh clone with a dedicated agent, then fast-forward the main line."""
        clone = self.paths.agents_dir / f"conflict-{task.id}"
        try:
            if clone.exists():
                shutil.rmtree(clone)
            git.clone(self.paths.workspace, clone)
            git.checkout(clone, self.main)
            try:
                git.merge_no_commit(clone, f"origin/{task.branch}")
            except git.GitError:
                pass  # Expected: this is the conflict the agent resolves
            conflicts = git.conflicted_files(clone)

            backend = task.agent if task.agent in self.config.backends else self.config.pm_backend
            exit_code = self.supervisor.run_to_completion(
                backend,
                prompts.conflict_prompt(task, conflicts, self.main),
                clone,
                log_name=f"conflict-{task.id}",
            )
            remaining = git.conflicted_files(clone)
            if remaining:
                logger.warning(
                    "Conflict resolution for %s incomplete (exit %s): %s",
                    task.id, exit_code, ", ".join(remaining),
                )
                return False

            if git.merge_in_progress(clone) or git.get_status(clone):
                git.run_git(["add", "-A"], cwd=clone)
                git.run_git(["commit", "-m", f"Resolve merge conflict for {task.branch}"], cwd=clone)

            if not git.is_ancestor(clone, f"origin/{task.branch}", "HEAD"):
                logger.warning("Resolution for %s does not contain %s", task.id, task.branch)
                return False

            git.pull_ff(self.paths.workspace, clone, self.main)
        except git.GitError as e:
            logger.error("Conflict resolution for %s failed: %s", task.id, e)
            return False

        logger.info("Conflict resolved for %s", task.branch)
        return True

    def _mark_merged(self, task: Task) -> None:
        self.markers.write(task.id, MERGED, {"branch": task.branch, "mergedAt": now_iso()})
        self.markers.remove(task.id, APPROVED)
        self.markers.remove(task.id, CONFLICT_RETRIES)
        self.book.set_status(task.id, "completed")
        logger.info("Merged %s (task %s)", task.branch, task.id)

    def _needs_human_review(self, task: Task, retries: int) -> MergeResult:
        self.markers.write(task.id, NEEDS_HUMAN_REVIEW, {
            "branch": task.branch,
            "retries": retries,
            "flaggedAt": now_iso(),
        })
        self.markers.remove(task.id, APPROVED)
        self.markers.remove(task.id, CONFLICT_RETRIES)
        self.book.set_status(
            task.id, "needs_human_review",
            reason=f"merge conflict unresolved after {retries} attempt(s)",
        )
        self.notifier.needs_human_review(task.id, task.branch, retries)
        logger.error("Task %s needs human review (branch %s)", task.id, task.branch)
        return MergeResult(task.id, "needs_human_review", f"{retries} attempt(s)")
