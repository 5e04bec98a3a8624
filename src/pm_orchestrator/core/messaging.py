"""File-backed messaging between agents, the PM and the user.

Agents post to the outbox; the PM's replies and deliveries go to the inbox.
Outbox entries are never deleted, only moved forward through their status
machine::

    pending -> processing -> delivered | responded | handled
    pending -> rejected
"""

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from pm_orchestrator.config import Config
from pm_orchestrator.core.agents import AgentError, AgentPool, AssignmentBook
from pm_orchestrator.store.documents import JsonDocument, now_iso
from pm_orchestrator.store.models import PRIORITIES, Assignment, InboxEntry, Message

logger = logging.getLogger(__name__)

TRANSITIONS = {
    "pending": ("processing", "rejected"),
    "processing": ("delivered", "responded", "handled"),
}
TERMINAL = ("delivered", "responded", "handled", "rejected")

ASK_TIMEOUT_NOTICE = "No response received from PM within timeout. Proceeding with best judgment."
ASSIGNMENT_TIMEOUT_NOTICE = "No new assignment received within timeout. You may now exit gracefully."


class MessageStateError(ValueError):
    """Raised for illegal status transitions and duplicate responses."""


def new_message_id() -> str:
    return f"msg-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


class Mailbox:
    def __init__(self, messages_dir: str | Path):
        self.messages_dir = Path(messages_dir)
        self.outbox = JsonDocument(self.messages_dir / "outbox.json", [])
        self.inbox = JsonDocument(self.messages_dir / "inbox.json", [])
        self.status = JsonDocument(self.messages_dir / "status.json", {})

    def init(self) -> None:
        for doc in (self.outbox, self.inbox, self.status):
            doc.ensure()

    # ── Outbox ──

    def post(
        self,
        sender: str,
        to: str,
        kind: str,
        payload: str,
        priority: str = "normal",
        task: str | None = None,
        context: str | None = None,
        escalated_from: str | None = None,
        data: dict | None = None,
    ) -> Message:
        if priority not in PRIORITIES:
            priority = "normal"
        message = Message(
            id=new_message_id(),
            sender=sender,
            to=to,
            kind=kind,
            payload=payload,
            priority=priority,
            timestamp=now_iso(),
            task=task,
            context=context,
            escalated_from=escalated_from,
            data=data or {},
        )
        with self.outbox.update() as outbox:
            outbox.append(message.to_dict())
        return message

    def messages(self, status: str | None = None, to: str | None = None) -> list[Message]:
        out = []
        for entry in self.outbox.read():
            if not isinstance(entry, dict) or not entry.get("id"):
                continue
            message = Message.from_dict(entry)
            if status and message.status != status:
                continue
            if to and message.to != to:
                continue
            out.append(message)
        return out

    def get(self, message_id: str) -> Message | None:
        for message in self.messages():
            if message.id == message_id:
                return message
        return None

    def pending(self) -> list[Message]:
        return self.messages(status="pending")

    def set_status(self, message_id: str, status: str, **fields) -> Message:
        """Advance one message along the status machine."""
        with self.outbox.update() as outbox:
            entry = _find(outbox, message_id)
            current = entry.get("status", "pending")
            if status not in TRANSITIONS.get(current, ()):
                raise MessageStateError(
                    f"Message {message_id}: illegal transition {current} -> {status}"
                )
            entry["status"] = status
            entry[f"{status}At"] = now_iso()
            entry.update(fields)
            return Message.from_dict(entry)

    def annotate(self, message_id: str, **fields) -> Message:
        """Attach extra fields without touching the status."""
        with self.outbox.update() as outbox:
            entry = _find(outbox, message_id)
            entry.update(fields)
            return Message.from_dict(entry)

    def respond(self, message_id: str, sender: str, answer: str) -> InboxEntry:
        """Answer a message exactly once: append the reply, mark the message responded."""
        with self.outbox.update() as outbox:
            entry = _find(outbox, message_id)
            current = entry.get("status", "pending")
            if current in TERMINAL:
                raise MessageStateError(f"Message {message_id} is already {current}")
            if self.find_reply(message_id) is not None:
                raise MessageStateError(f"Message {message_id} already has a response")

            reply = InboxEntry(
                id=new_message_id(),
                sender=sender,
                body=answer,
                timestamp=now_iso(),
                reply_to=message_id,
                to=entry.get("from"),
            )
            with self.inbox.update() as inbox:
                inbox.append(reply.to_dict())

            now = now_iso()
            if current == "pending":
                entry["processingAt"] = now
            entry["status"] = "responded"
            entry["respondedAt"] = now
        return reply

    # ── Inbox ──

    def inbox_entries(self) -> list[InboxEntry]:
        return [
            InboxEntry.from_dict(e)
            for e in self.inbox.read()
            if isinstance(e, dict) and e.get("id")
        ]

    def find_reply(self, message_id: str) -> InboxEntry | None:
        for entry in self.inbox_entries():
            if entry.reply_to == message_id:
                return entry
        return None

    def wait_for_reply(
        self,
        message_id: str,
        timeout: float,
        poll_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> InboxEntry | None:
        """Poll the inbox for a reply until ``timeout`` seconds have passed."""
        deadline = clock() + timeout
        while True:
            reply = self.find_reply(message_id)
            if reply is not None:
                return reply
            remaining = deadline - clock()
            if remaining <= 0:
                return None
            sleep(min(poll_interval, remaining))

    def deliver(self, to: str, message: str, kind: str = "info", sender: str = "pm",
                broadcast_id: str | None = None) -> InboxEntry:
        entry = InboxEntry(
            id=new_message_id(),
            sender=sender,
            body=message,
            timestamp=now_iso(),
            to=to,
            kind=kind,
            broadcast_id=broadcast_id,
        )
        with self.inbox.update() as inbox:
            inbox.append(entry.to_dict())
        return entry

    def broadcast(self, message: str, recipients: list[str], kind: str = "info") -> list[InboxEntry]:
        broadcast_id = f"broadcast-{uuid.uuid4().hex[:8]}"
        return [
            self.deliver(agent_id, message, kind=kind, broadcast_id=broadcast_id)
            for agent_id in recipients
        ]

    def inbox_for(self, agent_id: str, unread_only: bool = True) -> list[InboxEntry]:
        """Messages addressed to ``agent_id`` (or ``all``); returned ones are marked read."""
        found: list[InboxEntry] = []
        with self.inbox.update() as inbox:
            for raw in inbox:
                if not isinstance(raw, dict) or not raw.get("id"):
                    continue
                if raw.get("to") not in (agent_id, "all"):
                    continue
                if unread_only and raw.get("read"):
                    continue
                raw["read"] = True
                found.append(InboxEntry.from_dict(raw))
        return found

    # ── Heartbeats ──

    def update_agent_status(self, agent_id: str, status: str, **details) -> dict:
        record = {"status": status, "lastUpdate": now_iso()}
        record.update({k: v for k, v in details.items() if v is not None})
        with self.status.update() as statuses:
            statuses[agent_id] = record
        return record

    def agent_statuses(self) -> dict:
        return self.status.read()


def _find(outbox: list, message_id: str) -> dict:
    for entry in outbox:
        if isinstance(entry, dict) and entry.get("id") == message_id:
            return entry
    raise MessageStateError(f"Message not found: {message_id}")


# ── Agent-facing API ────────────────────────────────────────────────────────


@dataclass
class AskResult:
    message_id: str
    answer: str
    timed_out: bool = False


class AgentChannel:
    """What an agent process can do: talk to the PM and wait for work."""

    def __init__(
        self,
        mailbox: Mailbox,
        pool: AgentPool,
        assignments: AssignmentBook,
        agent_id: str,
        config: Config,
        task_id: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.mailbox = mailbox
        self.pool = pool
        self.assignments = assignments
        self.agent_id = agent_id
        self.config = config
        self.task_id = task_id or None
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def for_messages_dir(cls, messages_dir: str | Path, agent_id: str, config: Config,
                         task_id: str | None = None) -> "AgentChannel":
        return cls(
            Mailbox(messages_dir),
            AgentPool(messages_dir),
            AssignmentBook(messages_dir),
            agent_id,
            config,
            task_id=task_id,
        )

    @property
    def current_task(self) -> str | None:
        agent = self.pool.get(self.agent_id)
        if agent and agent.current_task:
            return agent.current_task
        return self.task_id

    def ask_pm(self, question: str, context: str | None = None, priority: str = "normal") -> AskResult:
        """Ask the PM and block until it answers or ``ask_timeout`` elapses."""
        self.mailbox.update_agent_status(self.agent_id, "blocked", waitingFor="pm", question=question)
        message = self.mailbox.post(
            self.agent_id, "pm", "question", question,
            priority=priority, task=self.current_task, context=context,
        )
        reply = self.mailbox.wait_for_reply(
            message.id,
            self.config.ask_timeout,
            self.config.ask_poll_interval,
            sleep=self._sleep,
            clock=self._clock,
        )
        if reply is None:
            self.mailbox.update_agent_status(self.agent_id, "in_progress", note="pm_timeout")
            logger.warning("ask_pm %s from %s timed out", message.id, self.agent_id)
            return AskResult(message.id, ASK_TIMEOUT_NOTICE, timed_out=True)
        self.mailbox.update_agent_status(self.agent_id, "in_progress", resumedAfter="pm_response")
        return AskResult(message.id, reply.body)

    def send_status(self, status: str, message: str, progress: float | None = None) -> dict:
        return self.mailbox.update_agent_status(
            self.agent_id, status, message=message, progress=progress, task=self.current_task
        )

    def notify_pm(self, message: str, type: str = "info") -> Message:
        return self.mailbox.post(
            self.agent_id, "pm", "notification", message,
            task=self.current_task, data={"notificationType": type},
        )

    def get_messages(self, unread_only: bool = True) -> list[InboxEntry]:
        return self.mailbox.inbox_for(self.agent_id, unread_only=unread_only)

    def task_complete(self, summary: str, files_changed: list[str] | None = None) -> Message:
        task = self.current_task
        message = self.mailbox.post(
            self.agent_id, "pm", "task_complete", summary,
            task=task, data={"filesChanged": list(files_changed or [])},
        )
        self.mailbox.update_agent_status(self.agent_id, "completed", summary=summary, task=task)
        try:
            self.pool.update(self.agent_id, status="completed")
        except AgentError:
            logger.debug("Agent %s is not in the pool", self.agent_id)
        return message

    def await_assignment(self, capabilities: list[str] | None = None) -> Assignment | None:
        """Enter standby and wait for an assignment, up to ``assignment_timeout``.

        On timeout the pool entry is marked ``terminated`` and None is returned;
        the agent is expected to exit.
        """
        self.pool.enter_standby(self.agent_id, capabilities, pid=None)
        deadline = self._clock() + self.config.assignment_timeout
        while True:
            pending = self.assignments.pending_for(self.agent_id)
            if pending:
                assignment = self.assignments.accept(pending[0].id)
                self.pool.update(self.agent_id, status="active", current_task=assignment.task_id)
                self.mailbox.update_agent_status(
                    self.agent_id, "in_progress", task=assignment.task_id
                )
                logger.info("%s accepted assignment %s", self.agent_id, assignment.id)
                return assignment

            agent = self.pool.get(self.agent_id)
            if agent is not None and agent.status == "terminated":
                return None

            remaining = deadline - self._clock()
            if remaining <= 0:
                if not self._retire_if_unassigned():
                    continue
                logger.info("%s saw no assignment within %ss", self.agent_id,
                            self.config.assignment_timeout)
                return None
            self._sleep(min(self.config.assignment_poll_interval, remaining))

    def _retire_if_unassigned(self) -> bool:
        """Mark the agent terminated unless an assignment landed since the last poll.

        Assignments are created under the pool lock, so checking for one inside
        the same lock closes the gap between the final poll and the timeout.
        """
        with self.pool.doc.update() as data:
            if self.assignments.pending_for(self.agent_id):
                return False
            entry = data.get(self.agent_id)
            if isinstance(entry, dict):
                entry.update(
                    status="terminated",
                    terminatedAt=now_iso(),
                    currentTask=None,
                    lastSeen=now_iso(),
                )
        return True
