"""MCP server the PM uses to manage the agent pool.

Started by the PM backend through ``status/mcp/pm.json``; the project is
taken from ``ORCHESTRATOR_PROJECT_DIR``.
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from mcp.server.fastmcp import Context, FastMCP

from pm_orchestrator.config import Config, get_config
from pm_orchestrator.core.agents import LIVE_STATUSES, AgentError, AgentSupervisor
from pm_orchestrator.core.messaging import Mailbox
from pm_orchestrator.core.projects import ProjectPaths
from pm_orchestrator.core.scheduler import compute_schedule
from pm_orchestrator.core.tasks import PlanError, TaskBook
from pm_orchestrator.store.documents import now_iso, read_json
from pm_orchestrator.store.markers import RUNNING, MarkerStore


@dataclass
class AppContext:
    paths: ProjectPaths
    config: Config
    supervisor: AgentSupervisor
    mailbox: Mailbox
    markers: MarkerStore
    book: TaskBook


def context_for(paths: ProjectPaths, config: Config) -> AppContext:
    description = read_json(paths.project_file, {}).get("description", "")
    mailbox = Mailbox(paths.messages_dir)
    mailbox.init()
    return AppContext(
        paths=paths,
        config=config,
        supervisor=AgentSupervisor(paths, config, project_description=description),
        mailbox=mailbox,
        markers=MarkerStore(paths.status_dir),
        book=TaskBook(paths.tasks_file),
    )


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    project_dir = os.environ.get("ORCHESTRATOR_PROJECT_DIR")
    if not project_dir:
        raise RuntimeError("ORCHESTRATOR_PROJECT_DIR is not set")
    yield context_for(ProjectPaths(Path(project_dir)), get_config())


mcp = FastMCP("pm-orchestrator-control", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Agent Tools ─────────────────────────────────────────────────────────────


def spawn_agent_impl(app: AppContext, role: str, agent_type: str,
                     capabilities: list[str] | None = None) -> dict:
    try:
        agent = app.supervisor.spawn(role, agent_type, capabilities)
    except AgentError as e:
        return {"error": str(e)}
    return agent.to_dict()


def assign_task_impl(app: AppContext, agent_id: str, task_id: str,
                     branch: str | None = None, description: str | None = None) -> dict:
    """Bind a ready task to a pooled agent. Only tasks the scheduler calls ready qualify."""
    try:
        tasks = app.book.tasks()
    except PlanError as e:
        return {"error": str(e)}
    task = next((t for t in tasks if t.id == task_id), None)
    if task is None:
        return {"error": f"Task not found: {task_id}"}

    state = compute_schedule(tasks, app.markers).states[task_id]
    if state == "running":
        marker = app.markers.read(task_id, RUNNING) or {}
        return {"error": f"Task {task_id} is already running on {marker.get('agent')}"}
    if state != "ready":
        return {"error": f"Task {task_id} is {state}, not ready"}

    branch = branch or task.branch
    try:
        assignment = app.supervisor.assign(agent_id, task.id, branch, description or task.description)
    except AgentError as e:
        return {"error": str(e)}
    app.markers.write(task_id, RUNNING, {
        "branch": branch,
        "agent": agent_id,
        "mode": "pooled",
        "startedAt": now_iso(),
    })
    return assignment.to_dict()


def agent_status_impl(app: AppContext, agent_id: str) -> dict:
    agent = app.supervisor.pool.get(agent_id)
    if agent is None:
        return {"error": f"Agent not found: {agent_id}"}
    data = agent.to_dict()
    data["alive"] = app.supervisor.is_alive(agent)
    data["assignments"] = [a.to_dict() for a in app.supervisor.assignments.for_agent(agent_id)]
    data["heartbeat"] = app.mailbox.agent_statuses().get(agent_id)
    return data


def broadcast_impl(app: AppContext, message: str, type: str = "info") -> dict:
    recipients = [
        a.id for a in app.supervisor.list_agents() if a.status in LIVE_STATUSES
    ]
    entries = app.mailbox.broadcast(message, recipients, kind=type)
    return {
        "recipients": recipients,
        "broadcastId": entries[0].broadcast_id if entries else None,
    }


@mcp.tool()
def spawn_agent(ctx: Context, role: str, agent_type: str = "claude",
                capabilities: list[str] | None = None) -> dict:
    """Start a persistent agent that waits on standby for assignments.

    agent_type is a configured backend (claude, codex, gemini). Capabilities
    are matched against task types when the orchestrator dispatches work.
    """
    return spawn_agent_impl(_ctx(ctx), role, agent_type, capabilities)


@mcp.tool()
def assign_task(ctx: Context, agent_id: str, task_id: str,
                branch: str | None = None, description: str | None = None) -> dict:
    """Assign a ready task to a standby agent.

    branch and description default to the plan's values. Tasks still waiting
    on dependencies, or already finished, are refused.
    """
    return assign_task_impl(_ctx(ctx), agent_id, task_id, branch, description)


@mcp.tool()
def list_agents(ctx: Context, status: str | None = None) -> list[dict]:
    """List agents in the pool, optionally filtered by status."""
    return [a.to_dict() for a in _ctx(ctx).supervisor.list_agents(status)]


@mcp.tool()
def get_agent_status(ctx: Context, agent_id: str) -> dict:
    """Pool entry, liveness, assignments and last heartbeat for one agent."""
    return agent_status_impl(_ctx(ctx), agent_id)


@mcp.tool()
def terminate_agent(ctx: Context, agent_id: str) -> dict:
    """Stop one agent."""
    try:
        return _ctx(ctx).supervisor.terminate(agent_id).to_dict()
    except AgentError as e:
        return {"error": str(e)}


@mcp.tool()
def broadcast_message(ctx: Context, message: str, type: str = "info") -> dict:
    """Deliver a message to every live agent's inbox."""
    return broadcast_impl(_ctx(ctx), message, type)


@mcp.tool()
def terminate_all(ctx: Context, confirm: bool = False) -> dict:
    """Stop every agent. Requires confirm=true."""
    if not confirm:
        return {"error": "Refusing to terminate all agents without confirm=true"}
    terminated = _ctx(ctx).supervisor.terminate_all()
    return {"terminated": [a.id for a in terminated]}
