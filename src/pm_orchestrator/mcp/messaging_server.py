"""MCP server an agent process uses to talk to the PM.

Started by the agent CLI through the MCP config written at launch; it learns
who it is from ``ORCHESTRATOR_MESSAGES_DIR``, ``ORCHESTRATOR_AGENT_ID`` and
``ORCHESTRATOR_TASK_ID``.
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from pm_orchestrator.config import Config, get_config
from pm_orchestrator.core.messaging import ASSIGNMENT_TIMEOUT_NOTICE, AgentChannel


@dataclass
class AppContext:
    channel: AgentChannel
    config: Config


def channel_from_env(config: Config | None = None) -> AgentChannel:
    messages_dir = os.environ.get("ORCHESTRATOR_MESSAGES_DIR")
    if not messages_dir:
        raise RuntimeError("ORCHESTRATOR_MESSAGES_DIR is not set")
    agent_id = os.environ.get("ORCHESTRATOR_AGENT_ID") or f"agent-{os.getpid()}"
    channel = AgentChannel.for_messages_dir(
        messages_dir,
        agent_id,
        config or get_config(),
        task_id=os.environ.get("ORCHESTRATOR_TASK_ID") or None,
    )
    channel.mailbox.init()
    return channel


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    config = get_config()
    yield AppContext(channel=channel_from_env(config), config=config)


mcp = FastMCP("pm-orchestrator-messaging", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _channel(ctx: Context) -> AgentChannel:
    return _ctx(ctx).channel


# ── Tools ───────────────────────────────────────────────────────────────────


@mcp.tool()
def ask_pm(ctx: Context, question: str, context: str = "", priority: str = "normal") -> dict:
    """Ask the project manager a question and wait for the answer.

    Use this when requirements are unclear or a decision affects other agents.
    Priority: low, normal, high or blocking. If the PM does not answer in time
    you get a notice telling you to proceed with your best judgment.
    """
    result = _channel(ctx).ask_pm(question, context=context or None, priority=priority)
    return {
        "messageId": result.message_id,
        "answer": result.answer,
        "timedOut": result.timed_out,
    }


@mcp.tool()
def send_status(ctx: Context, status: str, message: str, progress: float | None = None) -> dict:
    """Report progress on your task (for example status "in_progress", progress 0.5)."""
    return _channel(ctx).send_status(status, message, progress)


@mcp.tool()
def notify_pm(ctx: Context, message: str, type: str = "info") -> dict:
    """Tell the PM something without waiting for a reply. Type: info, warning, error."""
    sent = _channel(ctx).notify_pm(message, type)
    return {"messageId": sent.id, "status": sent.status}


@mcp.tool()
def get_messages(ctx: Context, unread_only: bool = True) -> list[dict]:
    """Read messages the PM delivered or broadcast to you."""
    return [entry.to_dict() for entry in _channel(ctx).get_messages(unread_only)]


@mcp.tool()
def task_complete(ctx: Context, summary: str, files_changed: list[str] | None = None) -> dict:
    """Report that your current task is finished. Commit your work first."""
    sent = _channel(ctx).task_complete(summary, files_changed)
    return {"messageId": sent.id, "task": sent.task}


@mcp.tool()
def await_assignment(ctx: Context, capabilities: list[str] | None = None) -> dict:
    """Wait on standby for the next task assignment.

    Returns the assignment, or ``{"assignment": null}`` with a message when
    none arrives in time; in that case finish up and exit.
    """
    assignment = _channel(ctx).await_assignment(capabilities)
    if assignment is None:
        return {"assignment": None, "message": ASSIGNMENT_TIMEOUT_NOTICE}
    return {"assignment": assignment.to_dict()}
