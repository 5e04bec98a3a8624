"""Slack Web API integration."""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(
        channel=channel,
        text=text,
        blocks=blocks,
    )

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def _section(text: str) -> list[dict]:
    return [{"type": "section", "text": {"type": "mrkdwn", "text": text}}]


def format_escalation(project: str, message_id: str, sender: str, question: str) -> list[dict]:
    """Format a PM-to-user question as Slack blocks."""
    return _section(
        f":raising_hand: *PM needs your input* ({project})\n"
        f"Regarding a question from `{sender}`:\n>{question}\n"
        f"Answer with `pmo respond {message_id} \"...\"` or from the web view."
    )


def format_needs_review(project: str, task_id: str, branch: str, retries: int) -> list[dict]:
    return _section(
        f":warning: *Merge needs human review* ({project})\n"
        f"Task `{task_id}` on branch `{branch}` still conflicts after {retries} "
        f"automated resolution attempt(s)."
    )


def format_project_summary(project: str, status: str, counts: dict[str, int], summary: str = "") -> list[dict]:
    """Format the end-of-run project report as Slack blocks."""
    emoji = ":white_check_mark:" if status == "completed" else ":large_orange_diamond:"
    line = " | ".join(f"{state}: {n}" for state, n in counts.items() if n)
    text = f"{emoji} *Project {status}: {project}*\n{line}"
    if summary:
        text += f"\n{summary[:1500]}"
    return _section(text)


class Notifier:
    """Best-effort Slack notifications. Never raises."""

    def __init__(self, token: str | None, channel: str | None, project: str = ""):
        self.token = token
        self.channel = channel
        self.project = project

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.channel)

    def _send(self, text: str, blocks: list[dict]) -> None:
        if not self.enabled:
            return
        try:
            send_message(self.token, self.channel, text, blocks)
        except Exception:
            logger.exception("Failed to send Slack notification")

    def escalation(self, message_id: str, sender: str, question: str) -> None:
        self._send(
            f"PM needs your input: {question}",
            format_escalation(self.project, message_id, sender, question),
        )

    def needs_human_review(self, task_id: str, branch: str, retries: int) -> None:
        self._send(
            f"Task {task_id} needs human review",
            format_needs_review(self.project, task_id, branch, retries),
        )

    def project_finished(self, status: str, counts: dict[str, int], summary: str = "") -> None:
        self._send(
            f"Project {self.project} {status}",
            format_project_summary(self.project, status, counts, summary),
        )
