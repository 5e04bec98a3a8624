"""Tests for the mailbox and the agent-facing messaging API."""

import itertools
import tempfile
from pathlib import Path

import pytest

from conftest import make_config
from pm_orchestrator.core.agents import AgentPool, AgentSupervisor, AssignmentBook
from pm_orchestrator.core.messaging import (
    ASK_TIMEOUT_NOTICE,
    AgentChannel,
    Mailbox,
    MessageStateError,
)
from pm_orchestrator.core.projects import ProjectPaths
from pm_orchestrator.store.models import Agent


@pytest.fixture
def messages_dir():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp) / "messages"


@pytest.fixture
def mailbox(messages_dir):
    box = Mailbox(messages_dir)
    box.init()
    return box


def _ticking_clock(step: float = 0.5):
    counter = itertools.count(0, step)
    return lambda: next(counter)


class TestMailbox:
    def test_init_creates_documents(self, mailbox, messages_dir):
        assert (messages_dir / "outbox.json").exists()
        assert (messages_dir / "inbox.json").exists()
        assert (messages_dir / "status.json").exists()

    def test_post_and_filter(self, mailbox):
        q = mailbox.post("dev-1", "pm", "question", "Which DB?", priority="high", task="t1")
        mailbox.post("dev-1", "pm", "notification", "halfway")
        assert [m.id for m in mailbox.pending()] == [m.id for m in mailbox.messages()]
        assert mailbox.get(q.id).priority == "high"
        assert mailbox.get(q.id).task == "t1"
        assert len(mailbox.messages(to="pm")) == 2

    def test_unknown_priority_becomes_normal(self, mailbox):
        msg = mailbox.post("dev-1", "pm", "question", "?", priority="urgent!!")
        assert msg.priority == "normal"

    def test_status_machine(self, mailbox):
        msg = mailbox.post("dev-1", "pm", "notification", "hi")
        mailbox.set_status(msg.id, "processing")
        done = mailbox.set_status(msg.id, "delivered")
        assert done.status == "delivered"
        with pytest.raises(MessageStateError, match="illegal transition"):
            mailbox.set_status(msg.id, "processing")

    def test_pending_cannot_skip_processing(self, mailbox):
        msg = mailbox.post("dev-1", "pm", "notification", "hi")
        with pytest.raises(MessageStateError):
            mailbox.set_status(msg.id, "delivered")

    def test_respond_exactly_once(self, mailbox):
        msg = mailbox.post("dev-1", "pm", "question", "Which DB?")
        reply = mailbox.respond(msg.id, "pm", "Postgres")
        assert reply.reply_to == msg.id
        assert reply.to == "dev-1"
        assert mailbox.get(msg.id).status == "responded"
        with pytest.raises(MessageStateError, match="already responded"):
            mailbox.respond(msg.id, "user", "MySQL")
        assert mailbox.find_reply(msg.id).body == "Postgres"

    def test_respond_unknown_message(self, mailbox):
        with pytest.raises(MessageStateError, match="not found"):
            mailbox.respond("msg-nope", "user", "hi")

    def test_wait_for_reply_times_out(self, mailbox):
        msg = mailbox.post("dev-1", "pm", "question", "?")
        sleeps = []
        reply = mailbox.wait_for_reply(
            msg.id, timeout=2, poll_interval=0.5, sleep=sleeps.append, clock=_ticking_clock()
        )
        assert reply is None
        assert sleeps

    def test_broadcast_and_inbox_marks_read(self, mailbox):
        entries = mailbox.broadcast("Freeze main", ["dev-1", "dev-2"])
        assert len({e.broadcast_id for e in entries}) == 1
        mailbox.deliver("all", "Standup in 5")

        first = mailbox.inbox_for("dev-1")
        assert [e.body for e in first] == ["Freeze main", "Standup in 5"]
        assert mailbox.inbox_for("dev-1") == []
        assert len(mailbox.inbox_for("dev-1", unread_only=False)) == 2

    def test_agent_status_heartbeat(self, mailbox):
        mailbox.update_agent_status("dev-1", "in_progress", progress=0.5, note=None)
        status = mailbox.agent_statuses()["dev-1"]
        assert status["status"] == "in_progress"
        assert status["progress"] == 0.5
        assert "note" not in status


class TestAgentChannel:
    @pytest.fixture
    def channel(self, messages_dir):
        config = make_config(messages_dir.parent)
        channel = AgentChannel.for_messages_dir(messages_dir, "dev-1", config, task_id="t1")
        channel.mailbox.init()
        return channel

    def test_ask_pm_gets_answer(self, channel):
        mailbox = channel.mailbox

        def answer_while_waiting(_):
            for msg in mailbox.pending():
                mailbox.respond(msg.id, "pm", "Use SQLite")

        channel._sleep = answer_while_waiting
        result = channel.ask_pm("Which DB?", context="building models")
        assert result.answer == "Use SQLite"
        assert not result.timed_out

        question = mailbox.get(result.message_id)
        assert question.task == "t1"
        assert question.context == "building models"
        assert mailbox.agent_statuses()["dev-1"]["status"] == "in_progress"

    def test_ask_pm_times_out_with_notice(self, channel):
        channel._sleep = lambda _: None
        channel._clock = _ticking_clock()
        result = channel.ask_pm("Anyone there?")
        assert result.timed_out
        assert result.answer == ASK_TIMEOUT_NOTICE
        # The question stays pending; a late answer can still be recorded.
        assert channel.mailbox.get(result.message_id).status == "pending"

    def test_notify_pm(self, channel):
        msg = channel.notify_pm("tests are flaky", type="warning")
        assert msg.kind == "notification"
        assert msg.data["notificationType"] == "warning"

    def test_send_status_and_get_messages(self, channel):
        channel.send_status("in_progress", "writing models", progress=0.25)
        status = channel.mailbox.agent_statuses()["dev-1"]
        assert status["message"] == "writing models"
        assert status["progress"] == 0.25
        assert status["task"] == "t1"

        channel.mailbox.deliver("dev-1", "Rebase on main")
        assert [e.body for e in channel.get_messages()] == ["Rebase on main"]
        assert channel.get_messages() == []
        assert len(channel.get_messages(unread_only=False)) == 1

    def test_task_complete_updates_pool(self, channel):
        channel.pool.register(Agent(id="dev-1", role="dev", type="sh", status="active"))
        msg = channel.task_complete("built it", ["app.py"])
        assert msg.kind == "task_complete"
        assert msg.data["filesChanged"] == ["app.py"]
        assert channel.pool.get("dev-1").status == "completed"

    def test_task_complete_without_pool_entry(self, channel):
        msg = channel.task_complete("built it")
        assert msg.task == "t1"


class TestAwaitAssignment:
    @pytest.fixture
    def channel(self, messages_dir):
        config = make_config(messages_dir.parent)
        channel = AgentChannel(
            Mailbox(messages_dir),
            AgentPool(messages_dir),
            AssignmentBook(messages_dir),
            "dev-sh-1",
            config,
            sleep=lambda _: None,
            clock=_ticking_clock(0.25),
        )
        channel.mailbox.init()
        return channel

    def test_accepts_pending_assignment(self, channel):
        channel.assignments.create("dev-sh-1", "t1", "task/t1", "Do t1")
        assignment = channel.await_assignment(["backend"])
        assert assignment.task_id == "t1"
        assert assignment.status == "accepted"

        agent = channel.pool.get("dev-sh-1")
        assert agent.status == "active"
        assert agent.current_task == "t1"
        assert agent.capabilities == ["backend"]
        assert channel.current_task == "t1"

    def test_timeout_terminates(self, channel):
        assert channel.await_assignment() is None
        assert channel.pool.get("dev-sh-1").status == "terminated"

    def test_returns_when_terminated_externally(self, channel):
        channel.pool.register(Agent(id="dev-sh-1", role="dev", type="sh", status="standby"))

        def terminate(_):
            channel.pool.update("dev-sh-1", status="terminated")

        channel._sleep = terminate
        channel._clock = lambda: 0
        assert channel.await_assignment() is None

    def test_assignment_landing_at_timeout_is_accepted(self, channel, messages_dir):
        supervisor = AgentSupervisor(
            ProjectPaths(messages_dir.parent), channel.config,
            pool=channel.pool, assignments=channel.assignments,
        )
        ticks = itertools.count()

        def clock():
            now = next(ticks) * 10.0
            # The PM binds a task after the last poll but before the timeout check.
            if now > 0 and not channel.assignments.for_agent("dev-sh-1"):
                supervisor.assign("dev-sh-1", "t1", "task/t1", "Do t1")
            return now

        channel._clock = clock
        assignment = channel.await_assignment()
        assert assignment is not None
        assert assignment.task_id == "t1"
        assert channel.pool.get("dev-sh-1").status == "active"
        assert channel.assignments.pending_for("dev-sh-1") == []
