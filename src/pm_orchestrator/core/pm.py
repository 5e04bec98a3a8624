"""The Project Manager role: a PM backend subprocess plus tolerant output parsing.

PM output is free text from a language model, so every parser here has a
fallback instead of raising: an unreadable review decision approves, and an
unreadable answer/escalate decision answers with the raw output.
"""

import logging
import re
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass

from pm_orchestrator.config import Config
from pm_orchestrator.core import prompts
from pm_orchestrator.core.agents import build_command, get_backend, write_mcp_config
from pm_orchestrator.core.messaging import Mailbox, MessageStateError
from pm_orchestrator.core.projects import ProjectPaths
from pm_orchestrator.core.tasks import Plan, PlanError, extract_json, load_plan
from pm_orchestrator.integrations import git
from pm_orchestrator.integrations.slack import Notifier
from pm_orchestrator.store.models import Message, Task

logger = logging.getLogger(__name__)

NO_ANSWER = "The PM could not produce an answer right now. Proceed with best judgment."

_DECISION_RE = re.compile(r'"?decision"?\s*[:=]\s*"?([A-Za-z]+)', re.IGNORECASE)
_ACTION_RE = re.compile(r"^\s*\**ACTION\**\s*:\s*(.*)$", re.IGNORECASE)
_RESPONSE_RE = re.compile(r"^\s*\**RESPONSE\**\s*:\s*(.*)$", re.IGNORECASE)


@dataclass
class ReviewDecision:
    decision: str
    reason: str = ""
    parsed: bool = True

    @property
    def approved(self) -> bool:
        return self.decision == "APPROVE"


@dataclass
class PMAction:
    action: str
    response: str
    parsed: bool = True


def parse_review_decision(text: str) -> ReviewDecision:
    """APPROVE or REJECT from review output. Anything unreadable approves."""
    raw = ""
    reason = ""
    data = extract_json(text or "")
    if data:
        raw = str(data.get("decision") or "")
        reason = str(data.get("reason") or "")
    if not raw and (match := _DECISION_RE.search(text or "")):
        raw = match.group(1)

    raw = raw.strip().upper()
    if raw.startswith("APPROV"):
        return ReviewDecision("APPROVE", reason)
    if raw.startswith("REJECT"):
        return ReviewDecision("REJECT", reason)
    return ReviewDecision(
        "APPROVE", reason or "Decision unclear, approved by default", parsed=False
    )


def parse_pm_action(text: str) -> PMAction:
    """Parse ``ACTION: ANSWER|ESCALATE`` / ``RESPONSE: ...`` output."""
    text = (text or "").strip()
    action = None
    response_lines: list[str] | None = None
    for line in text.splitlines():
        if response_lines is not None:
            response_lines.append(line)
            continue
        if action is None and (match := _ACTION_RE.match(line)):
            action = match.group(1).strip().upper()
        elif match := _RESPONSE_RE.match(line):
            response_lines = [match.group(1)]

    if not action:
        return PMAction("ANSWER", text, parsed=False)
    if response_lines is None:
        response = "\n".join(
            line for line in text.splitlines() if not _ACTION_RE.match(line)
        ).strip()
    else:
        response = "\n".join(response_lines).strip()
    return PMAction("ESCALATE" if "ESCALATE" in action else "ANSWER", response)


class ProjectManager:
    """Runs the PM backend once per decision and returns its text output."""

    def __init__(
        self,
        config: Config,
        paths: ProjectPaths,
        project_description: str = "",
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.config = config
        self.paths = paths
        self.project_description = project_description
        self._run = runner

    def complete(self, prompt: str) -> str:
        """Run the PM on ``prompt``. Returns "" if the PM fails or times out."""
        backend = get_backend(self.config, self.config.pm_backend)
        mcp_config = None
        if backend.mcp_flag:
            mcp_config = write_mcp_config(
                self.paths.status_dir / "mcp" / "pm.json",
                "orchestrator-control",
                self.config.mcp_command + ["control"],
                {"ORCHESTRATOR_PROJECT_DIR": str(self.paths.root)},
            )
        cmd = build_command(backend, prompt, self.paths.workspace, mcp_config)
        try:
            result = self._run(
                cmd,
                cwd=self.paths.workspace,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=self.config.pm_timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning("PM timed out after %ss", self.config.pm_timeout)
            return ""
        except OSError as e:
            logger.error("Could not run PM backend %s: %s", backend.name, e)
            return ""
        if result.returncode != 0:
            logger.warning(
                "PM exited with code %s: %s", result.returncode, (result.stderr or "")[:500]
            )
        return (result.stdout or "").strip()

    def plan_project(self, description: str) -> Plan:
        output = self.complete(prompts.planning_prompt(description, sorted(self.config.backends)))
        self.paths.logs_dir.mkdir(parents=True, exist_ok=True)
        (self.paths.logs_dir / "pm_plan_raw.log").write_text(output)
        if not output:
            raise PlanError("PM produced no plan")
        return load_plan(output)

    def review(self, task: Task, diff: str, files: list[str]) -> str:
        return self.complete(prompts.review_prompt(task, diff, files))

    def answer_or_escalate(self, message: Message) -> PMAction:
        output = self.complete(prompts.question_prompt(
            message.sender, message.task, message.priority, message.payload, message.context,
        ))
        return parse_pm_action(output)

    def synthesize(self, question: str, user_answer: str) -> str:
        return self.complete(prompts.synthesis_prompt(question, user_answer))

    def final_summary(self) -> str:
        workspace = self.paths.workspace
        try:
            log = git.log_oneline(workspace, 20)
            files = git.list_files(workspace)
        except git.GitError as e:
            logger.warning("Could not read workspace for summary: %s", e)
            log, files = "", []
        return self.complete(prompts.summary_prompt(self.project_description, log, files))


# ── Routing ─────────────────────────────────────────────────────────────────


def escalation_placeholder(timeout: float) -> str:
    return f"(no response from user within {timeout:g}s - proceed with best judgment)"


class MessageRouter:
    """Routes pending outbox traffic. Agents may only address the PM."""

    def __init__(
        self,
        mailbox: Mailbox,
        pm: ProjectManager,
        dispatcher,
        config: Config,
        notifier: Notifier | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.mailbox = mailbox
        self.pm = pm
        self.dispatcher = dispatcher
        self.config = config
        self.notifier = notifier or Notifier(None, None)
        self._sleep = sleep
        self._clock = clock

    def drain(self) -> dict[str, int]:
        """Route every pending message once. Returns outcome counts."""
        outcomes: dict[str, int] = {}
        for message in self.mailbox.pending():
            if message.sender in ("pm", "user"):
                continue  # PM-originated traffic waits for its addressee
            try:
                outcome = self.route(message)
            except MessageStateError as e:
                logger.warning("Message %s changed underneath the router: %s", message.id, e)
                outcome = "skipped"
            except Exception:
                logger.exception("Failed to route message %s", message.id)
                outcome = "error"
            outcomes[outcome] = outcomes.get(outcome, 0) + 1
        return outcomes

    def route(self, message: Message) -> str:
        if message.to != "pm":
            self.mailbox.set_status(
                message.id, "rejected",
                reason=f"agents may only address the PM, not '{message.to}'",
            )
            logger.warning("Rejected message %s from %s to %s", message.id, message.sender, message.to)
            return "rejected"

        self.mailbox.set_status(message.id, "processing")
        if message.kind == "notification":
            level = message.data.get("notificationType", "info")
            logger.info("[%s] %s: %s", level, message.sender, message.payload)
            self.mailbox.set_status(message.id, "delivered")
            return "delivered"
        if message.kind == "task_complete":
            self.dispatcher.record_pooled_completion(message)
            self.mailbox.set_status(message.id, "handled")
            return "handled"
        if message.kind == "question":
            return self._answer(message)

        logger.warning("Unknown message type '%s' in %s", message.kind, message.id)
        self.mailbox.set_status(message.id, "handled", reason="unknown message type")
        return "handled"

    def _answer(self, message: Message) -> str:
        logger.info("PM received question from %s (task %s)", message.sender, message.task)
        action = self.pm.answer_or_escalate(message)
        if action.action == "ESCALATE":
            answer = self._escalate(message, action.response or message.payload)
            outcome = "escalated"
        else:
            answer = action.response
            outcome = "responded"
        self.mailbox.respond(message.id, "pm", answer or NO_ANSWER)
        logger.info("PM responded to %s", message.sender)
        return outcome

    def _escalate(self, message: Message, question: str) -> str:
        """Ask the user, wait a bounded time, then let the PM write the final answer."""
        self.mailbox.annotate(message.id, escalatedToUser=True)
        escalation = self.mailbox.post(
            "pm", "user", "question", question,
            priority=message.priority, task=message.task,
            context=message.payload, escalated_from=message.id,
        )
        logger.warning("PM escalated %s to the user as %s", message.id, escalation.id)
        self.notifier.escalation(escalation.id, message.sender, question)

        reply = self.mailbox.wait_for_reply(
            escalation.id,
            self.config.escalation_timeout,
            self.config.ask_poll_interval,
            sleep=self._sleep,
            clock=self._clock,
        )
        if reply is None:
            user_answer = escalation_placeholder(self.config.escalation_timeout)
            try:
                self.mailbox.set_status(escalation.id, "processing")
                self.mailbox.set_status(escalation.id, "handled", reason="user timeout")
            except MessageStateError:
                # Answered between the last poll and now.
                reply = self.mailbox.find_reply(escalation.id)
                if reply is not None:
                    user_answer = reply.body
            if reply is None:
                logger.warning("No user response to %s, proceeding without it", escalation.id)
        else:
            user_answer = reply.body

        return self.pm.synthesize(message.payload, user_answer) or user_answer
