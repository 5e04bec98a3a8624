"""Tests for the MCP server helpers (the tool bodies, without a transport)."""

import os

import pytest

from conftest import make_config, plan_dict, task_dict
from pm_orchestrator.core.tasks import load_plan
from pm_orchestrator.mcp.control_server import (
    agent_status_impl,
    assign_task_impl,
    broadcast_impl,
    context_for,
    spawn_agent_impl,
)
from pm_orchestrator.mcp.messaging_server import channel_from_env
from pm_orchestrator.store.markers import RUNNING
from pm_orchestrator.store.models import Agent


@pytest.fixture
def app(paths, runtime_dir):
    app = context_for(paths, make_config(runtime_dir, script="sleep 30"))
    app.book.save_plan(load_plan(plan_dict(task_dict("a"), task_dict("b"))))
    yield app
    app.supervisor.terminate_all()


class TestControlTools:
    def test_spawn_agent(self, app):
        data = spawn_agent_impl(app, "dev", "sh", ["backend"])
        assert data["id"].startswith("dev-sh-")
        assert data["capabilities"] == ["backend"]
        assert data["persistent"] is True

    def test_spawn_unknown_backend(self, app):
        assert "Unknown agent backend" in spawn_agent_impl(app, "dev", "gpt-99")["error"]

    def test_assign_task_writes_running_marker(self, app):
        app.supervisor.pool.register(Agent(id="dev-sh-1", role="dev", type="sh", status="standby"))
        data = assign_task_impl(app, "dev-sh-1", "a")
        assert data["taskId"] == "a"
        assert data["status"] == "pending"

        marker = app.markers.read("a", RUNNING)
        assert marker["agent"] == "dev-sh-1"
        assert marker["mode"] == "pooled"
        assert marker["branch"] == "task/a"

    def test_assign_errors(self, app):
        app.supervisor.pool.register(Agent(id="dev-sh-1", role="dev", type="sh", status="standby"))
        assert assign_task_impl(app, "dev-sh-1", "zzz") == {"error": "Task not found: zzz"}
        assert "Agent not found" in assign_task_impl(app, "ghost", "a")["error"]
        assert not app.markers.exists("a", RUNNING)

        assign_task_impl(app, "dev-sh-1", "a")
        assert "already running on dev-sh-1" in assign_task_impl(app, "dev-sh-1", "a")["error"]

    def test_busy_agent_cannot_take_second_task(self, app):
        app.supervisor.pool.register(Agent(id="dev-sh-1", role="dev", type="sh", status="standby"))
        assign_task_impl(app, "dev-sh-1", "a")
        assert "error" in assign_task_impl(app, "dev-sh-1", "b")
        assert not app.markers.exists("b", RUNNING)

    def test_blocked_task_is_refused(self, app):
        app.book.save_plan(load_plan(plan_dict(task_dict("a"), task_dict("b", ["a"]))))
        app.supervisor.pool.register(Agent(id="dev-sh-1", role="dev", type="sh", status="standby"))
        assert assign_task_impl(app, "dev-sh-1", "b") == {"error": "Task b is blocked, not ready"}
        assert not app.markers.exists("b", RUNNING)
        assert app.supervisor.assignments.for_agent("dev-sh-1") == []

    def test_finished_task_is_refused(self, app):
        app.book.set_status("a", "completed")
        app.book.set_status("b", "failed")
        app.supervisor.pool.register(Agent(id="dev-sh-1", role="dev", type="sh", status="standby"))
        assert assign_task_impl(app, "dev-sh-1", "a") == {"error": "Task a is merged, not ready"}
        assert assign_task_impl(app, "dev-sh-1", "b") == {"error": "Task b is failed, not ready"}
        assert app.supervisor.pool.get("dev-sh-1").status == "standby"

    def test_assign_with_branch_and_description(self, app):
        app.supervisor.pool.register(Agent(id="dev-sh-1", role="dev", type="sh", status="standby"))
        data = assign_task_impl(app, "dev-sh-1", "a", branch="task/a-v2", description="Redo a")
        assert data["branch"] == "task/a-v2"
        assert data["description"] == "Redo a"
        assert app.markers.read("a", RUNNING)["branch"] == "task/a-v2"

    def test_agent_status(self, app):
        agent = spawn_agent_impl(app, "qa", "sh")
        app.mailbox.update_agent_status(agent["id"], "standby")
        data = agent_status_impl(app, agent["id"])
        assert data["alive"] is True
        assert data["assignments"] == []
        assert data["heartbeat"]["status"] == "standby"
        assert agent_status_impl(app, "ghost") == {"error": "Agent not found: ghost"}

    def test_broadcast_reaches_live_agents_only(self, app):
        app.supervisor.pool.register(Agent(id="live", role="dev", type="sh", status="standby"))
        app.supervisor.pool.register(Agent(id="gone", role="dev", type="sh", status="terminated"))
        data = broadcast_impl(app, "Freeze main", "warning")
        assert data["recipients"] == ["live"]
        assert data["broadcastId"].startswith("broadcast-")
        assert [e.body for e in app.mailbox.inbox_for("live")] == ["Freeze main"]
        assert app.mailbox.inbox_for("gone") == []

    def test_broadcast_without_agents(self, app):
        assert broadcast_impl(app, "anyone?") == {"recipients": [], "broadcastId": None}


class TestMessagingChannel:
    @pytest.fixture
    def agent_env(self, paths):
        env = {
            "ORCHESTRATOR_MESSAGES_DIR": str(paths.messages_dir),
            "ORCHESTRATOR_AGENT_ID": "sh-a",
            "ORCHESTRATOR_TASK_ID": "a",
        }
        old_env = {k: os.environ.get(k) for k in env}
        os.environ.update(env)
        yield paths
        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v

    def test_channel_from_env(self, agent_env, config):
        channel = channel_from_env(config)
        assert channel.agent_id == "sh-a"
        assert channel.current_task == "a"
        assert (agent_env.messages_dir / "outbox.json").exists()

        sent = channel.notify_pm("started")
        assert sent.sender == "sh-a"
        assert sent.task == "a"

    def test_missing_messages_dir(self, config):
        old = os.environ.pop("ORCHESTRATOR_MESSAGES_DIR", None)
        try:
            with pytest.raises(RuntimeError, match="ORCHESTRATOR_MESSAGES_DIR"):
                channel_from_env(config)
        finally:
            if old is not None:
                os.environ["ORCHESTRATOR_MESSAGES_DIR"] = old
