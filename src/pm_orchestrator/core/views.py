"""Read-only projections of on-disk project state for the CLI and web view.

The one write path is ``respond_to_message``, which answers an escalated
question on the user's behalf.
"""

from pm_orchestrator.core.activity import read_activity
from pm_orchestrator.core.agents import AgentPool
from pm_orchestrator.core.messaging import Mailbox
from pm_orchestrator.core.projects import ProjectPaths
from pm_orchestrator.core.scheduler import compute_schedule
from pm_orchestrator.core.tasks import PlanError, TaskBook, current_status
from pm_orchestrator.store.documents import read_json
from pm_orchestrator.store.markers import CONFLICT_RETRIES, STUCK, MarkerStore
from pm_orchestrator.store.models import InboxEntry


def task_views(paths: ProjectPaths) -> list[dict]:
    """Tasks with their derived ``currentStatus`` and scheduling state."""
    book = TaskBook(paths.tasks_file)
    markers = MarkerStore(paths.status_dir)
    try:
        tasks = book.tasks()
    except PlanError:
        return []
    schedule = compute_schedule(tasks, markers)
    views = []
    for task in tasks:
        view = task.to_dict()
        view["currentStatus"] = current_status(task, markers)
        view["schedule"] = schedule.states.get(task.id)
        if error := schedule.errors.get(task.id):
            view["error"] = error
        if retries := markers.read(task.id, CONFLICT_RETRIES):
            view["conflictRetries"] = retries.get("retries", 0)
        if stuck := markers.read(task.id, STUCK):
            view["stuckCount"] = stuck.get("count", 0)
        views.append(view)
    return views


def agent_views(paths: ProjectPaths) -> dict:
    pool = AgentPool(paths.messages_dir)
    mailbox = Mailbox(paths.messages_dir)
    return {
        "pool": [a.to_dict() for a in pool.list_agents()],
        "status": mailbox.agent_statuses(),
    }


def message_views(paths: ProjectPaths, pending_only: bool = False) -> list[dict]:
    """Messages that concern the user: addressed to them, or escalated on their behalf."""
    mailbox = Mailbox(paths.messages_dir)
    replies: dict[str, InboxEntry] = {}
    for entry in mailbox.inbox_entries():
        if entry.reply_to and entry.reply_to not in replies:
            replies[entry.reply_to] = entry

    views = []
    for message in mailbox.messages():
        if message.to != "user" and not message.escalated_to_user:
            continue
        reply = replies.get(message.id)
        if pending_only and (reply is not None or message.status != "pending"):
            continue
        view = message.to_dict()
        view["hasResponse"] = reply is not None
        view["response"] = reply.body if reply else None
        views.append(view)
    views.sort(key=lambda v: v.get("timestamp") or "", reverse=True)
    return views


def respond_to_message(paths: ProjectPaths, message_id: str, answer: str) -> dict:
    """Answer a message as the user. Raises MessageStateError if it cannot be answered."""
    reply = Mailbox(paths.messages_dir).respond(message_id, "user", answer)
    return reply.to_dict()


def orchestrator_status(paths: ProjectPaths) -> dict:
    return read_json(paths.state_file, {})


def activity_views(paths: ProjectPaths, limit: int = 100) -> list[dict]:
    return read_activity(paths, limit)
