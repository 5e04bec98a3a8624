"""CLI entry point for the PM orchestrator."""

import json
import logging
import sys
import tempfile

import click

from pm_orchestrator.config import get_config
from pm_orchestrator.core import projects as projects_mod
from pm_orchestrator.core import views
from pm_orchestrator.core.activity import DATE_FORMAT, LOG_FORMAT
from pm_orchestrator.core.messaging import MessageStateError
from pm_orchestrator.core.scheduler import compute_schedule
from pm_orchestrator.core.tasks import PlanError, load_plan_file
from pm_orchestrator.store.markers import MarkerStore


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stderr,
    )


def _resolve_project(name: str | None):
    """Paths for ``name`` or the newest project; exits if there is none."""
    config = get_config()
    if name is None:
        latest = projects_mod.latest_project(config.runtime_dir)
        if not latest:
            click.echo("No projects found. Start one with `pmo start`.", err=True)
            sys.exit(1)
        name = latest.name
    if not projects_mod.get_project(config.runtime_dir, name):
        click.echo(f"Project not found: {name}", err=True)
        sys.exit(1)
    return projects_mod.project_paths(config.runtime_dir, name)


@click.group()
def main():
    """pmo - PM-led multi-agent orchestrator"""
    pass


# ── Run Commands ──────────────────────────────────────────────────────────────


def _run(orchestrator, max_cycles):
    orchestrator.install_signal_handlers()
    try:
        outcome = orchestrator.run(max_cycles=max_cycles)
    except PlanError as e:
        click.echo(f"Task plan unusable: {e}", err=True)
        sys.exit(1)

    click.echo(f"Project {orchestrator.name}: {outcome.status}")
    for label in ("merged", "failed", "needs_human_review", "unreachable", "invalid"):
        ids = getattr(outcome, label)
        if ids:
            click.echo(f"  {label}: {', '.join(ids)}")
    if outcome.status == "completed":
        click.echo(f"  Summary: {orchestrator.paths.summary_file}")
    elif outcome.status == "interrupted":
        click.echo(f"  Resume with: pmo resume {orchestrator.name}")
    if outcome.status != "completed":
        sys.exit(2)


@main.command("start")
@click.argument("description")
@click.option("--title", default=None, help="Short name used for the project directory")
@click.option("--plan-file", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Use this task plan instead of asking the PM for one")
@click.option("--max-cycles", default=None, type=int, help="Stop after this many cycles")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def start(description, title, plan_file, max_cycles, verbose):
    """Plan and run a new project."""
    from pm_orchestrator.core.orchestrator import Orchestrator

    _setup_logging(verbose)
    config = get_config()

    plan = None
    if plan_file:
        try:
            plan = load_plan_file(plan_file)
        except PlanError as e:
            click.echo(f"Invalid plan: {e}", err=True)
            sys.exit(1)

    project = projects_mod.create_project(config.runtime_dir, description, title=title)
    paths = projects_mod.project_paths(config.runtime_dir, project.name)
    click.echo(f"Project created: {project.name}")
    click.echo(f"  Directory: {paths.root}")

    orchestrator = Orchestrator(config, paths)
    orchestrator.prepare()
    try:
        plan = orchestrator.plan(description, plan=plan)
    except PlanError as e:
        click.echo(f"Planning failed: {e}", err=True)
        click.echo(f"  Raw PM output: {paths.logs_dir / 'pm_plan_raw.log'}", err=True)
        sys.exit(1)
    click.echo(f"  Tasks: {len(plan.tasks)}")
    _run(orchestrator, max_cycles)


@main.command("resume")
@click.argument("project", required=False)
@click.option("--max-cycles", default=None, type=int, help="Stop after this many cycles")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def resume(project, max_cycles, verbose):
    """Continue an interrupted project (defaults to the newest)."""
    from pm_orchestrator.core.orchestrator import Orchestrator

    _setup_logging(verbose)
    paths = _resolve_project(project)
    orchestrator = Orchestrator(get_config(), paths)
    if not orchestrator.book.exists():
        click.echo(f"Project {paths.root.name} has no task plan.", err=True)
        sys.exit(1)
    click.echo(f"Resuming {paths.root.name}")
    _run(orchestrator, max_cycles)


@main.command("validate")
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False))
def validate(plan_file):
    """Check a task plan file without running it."""
    try:
        plan = load_plan_file(plan_file)
    except PlanError as e:
        click.echo(f"Invalid plan: {e}", err=True)
        sys.exit(1)

    with tempfile.TemporaryDirectory() as tmp:
        schedule = compute_schedule(plan.tasks, MarkerStore(tmp))

    click.echo(f"Plan '{plan.project_name}': {len(plan.tasks)} task(s)")
    click.echo(f"  Ready first: {', '.join(schedule.ready) or '-'}")
    if schedule.invalid:
        for task_id in schedule.invalid:
            click.echo(f"  ✗ {task_id}: {schedule.errors.get(task_id)}", err=True)
        sys.exit(1)
    click.echo("  ✓ Valid")


# ── Project Commands ──────────────────────────────────────────────────────────


@main.command("list")
def list_projects():
    """List projects, newest first."""
    projects = projects_mod.list_projects(get_config().runtime_dir)
    if not projects:
        click.echo("No projects found.")
        return
    for p in projects:
        click.echo(f"  [{p.status}] {p.name}: {p.description[:70]}")


@main.command("status")
@click.argument("project", required=False)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def status(project, json_output):
    """Show task status for a project."""
    paths = _resolve_project(project)
    tasks = views.task_views(paths)

    if json_output:
        click.echo(json.dumps({
            "project": paths.root.name,
            "tasks": tasks,
            "orchestrator": views.orchestrator_status(paths),
        }, indent=2))
        return

    if not tasks:
        click.echo("No task plan yet.")
        return

    status_icons = {
        "merged": "✓",
        "approved": "◎",
        "conflict-retry": "↻",
        "completed": "◉",
        "running": "●",
        "pending": "○",
        "stuck": "!",
        "failed": "✗",
        "needs_human_review": "?",
    }
    click.echo(f"Project: {paths.root.name}")
    for task in tasks:
        icon = status_icons.get(task["currentStatus"], "·")
        deps = f" [depends: {', '.join(task['depends_on'])}]" if task["depends_on"] else ""
        line = f"  {icon} {task['id']} ({task['currentStatus']}, {task['schedule']}){deps}"
        click.echo(line)
        reason = task.get("reason") or task.get("error")
        if reason:
            click.echo(f"      {reason}")


@main.command("agents")
@click.argument("project", required=False)
def agents(project):
    """List the agent pool of a project."""
    paths = _resolve_project(project)
    data = views.agent_views(paths)
    if not data["pool"]:
        click.echo("No agents.")
        return
    for agent in data["pool"]:
        task = f" task={agent['currentTask']}" if agent.get("currentTask") else ""
        kind = "persistent" if agent.get("persistent") else "ephemeral"
        click.echo(f"  [{agent['status'].upper()}] {agent['id']} ({agent['type']}, {kind}){task}")


@main.command("logs")
@click.argument("project", required=False)
@click.option("--limit", "-n", default=50, type=int, help="Number of entries")
def logs(project, limit):
    """Show recent orchestrator activity."""
    paths = _resolve_project(project)
    for entry in views.activity_views(paths, limit):
        click.echo(f"[{entry['timestamp']}] [{entry['level']}] {entry['message']}")


# ── Message Commands ──────────────────────────────────────────────────────────


@main.command("messages")
@click.option("--project", default=None, help="Project name (defaults to the newest)")
@click.option("--pending", is_flag=True, help="Only unanswered questions")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def messages(project, pending, json_output):
    """Show questions escalated to you."""
    paths = _resolve_project(project)
    found = views.message_views(paths, pending_only=pending)
    if json_output:
        click.echo(json.dumps(found, indent=2))
        return
    if not found:
        click.echo("No messages.")
        return
    for msg in found:
        state = "answered" if msg["hasResponse"] else msg["status"]
        click.echo(f"  {msg['id']} [{state}] from {msg['from']}")
        click.echo(f"    {msg.get('question') or msg.get('message')}")
        if msg["response"]:
            click.echo(f"    → {msg['response']}")


@main.command("respond")
@click.argument("message_id")
@click.argument("answer")
@click.option("--project", default=None, help="Project name (defaults to the newest)")
def respond(message_id, answer, project):
    """Answer a question escalated to you."""
    if not answer.strip():
        click.echo("Answer must not be empty.", err=True)
        sys.exit(1)
    paths = _resolve_project(project)
    try:
        views.respond_to_message(paths, message_id, answer)
    except MessageStateError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Response recorded for {message_id}")


# ── Dashboard Command ────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def ui_command(host, port):
    """Serve the JSON API for watching projects and answering questions."""
    from pm_orchestrator.web.app import run_server

    click.echo(f"Serving API at http://{host}:{port}/api/projects")
    run_server(host=host, port=port)


# ── MCP Server Commands ──────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("messaging")
def mcp_messaging():
    """Agent-facing messaging server (stdio transport)."""
    from pm_orchestrator.mcp.messaging_server import mcp

    mcp.run(transport="stdio")


@mcp_group.command("control")
def mcp_control():
    """PM-facing agent control server (stdio transport)."""
    from pm_orchestrator.mcp.control_server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
