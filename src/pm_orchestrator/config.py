"""Configuration loading from environment variables."""

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Backend:
    """How to launch one agent CLI. The prompt is always the last argument."""

    name: str
    command: list[str]
    mcp_flag: str | None = None
    cwd_flag: str | None = None


DEFAULT_BACKEND_COMMANDS = {
    "claude": "claude -p --dangerously-skip-permissions",
    "codex": "codex exec --skip-git-repo-check --full-auto",
    "gemini": "gemini -y",
}

_MCP_FLAGS = {"claude": "--mcp-config"}
_CWD_FLAGS = {"codex": "-C"}


def _default_backends() -> dict[str, Backend]:
    return {
        name: Backend(name, shlex.split(cmd), _MCP_FLAGS.get(name), _CWD_FLAGS.get(name))
        for name, cmd in DEFAULT_BACKEND_COMMANDS.items()
    }


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass
class Config:
    runtime_dir: Path = field(default_factory=lambda: Path.home() / ".pm_orchestrator")
    poll_interval: float = 10.0
    agent_timeout: float = 300.0
    max_parallel_agents: int = 20
    max_conflict_retries: int = 2
    max_stuck_retries: int = 2
    ask_timeout: float = 300.0
    ask_poll_interval: float = 1.0
    assignment_timeout: float = 600.0
    assignment_poll_interval: float = 2.0
    escalation_timeout: float = 120.0
    pm_timeout: float = 600.0
    main_branch: str = "main"
    pm_backend: str = "claude"
    default_backend: str = "claude"
    backends: dict[str, Backend] = field(default_factory=_default_backends)
    mcp_command: list[str] = field(default_factory=lambda: ["pmo", "mcp"])
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if runtime := os.environ.get("PMO_RUNTIME_DIR"):
            config.runtime_dir = Path(runtime)

        config.poll_interval = _env_float("PMO_POLL_INTERVAL", config.poll_interval)
        config.agent_timeout = _env_float("PMO_AGENT_TIMEOUT", config.agent_timeout, minimum=1)
        config.max_parallel_agents = _env_int(
            "PMO_MAX_PARALLEL_AGENTS", config.max_parallel_agents, minimum=1
        )
        config.max_conflict_retries = _env_int(
            "PMO_MAX_CONFLICT_RETRIES", config.max_conflict_retries
        )
        config.max_stuck_retries = _env_int("PMO_MAX_STUCK_RETRIES", config.max_stuck_retries)
        config.ask_timeout = _env_float("PMO_ASK_TIMEOUT", config.ask_timeout)
        config.assignment_timeout = _env_float(
            "PMO_ASSIGNMENT_TIMEOUT", config.assignment_timeout
        )
        config.escalation_timeout = _env_float(
            "PMO_ESCALATION_TIMEOUT", config.escalation_timeout
        )
        config.pm_timeout = _env_float("PMO_PM_TIMEOUT", config.pm_timeout, minimum=1)

        if branch := os.environ.get("PMO_MAIN_BRANCH"):
            config.main_branch = branch

        if pm_backend := os.environ.get("PMO_PM_BACKEND"):
            config.pm_backend = pm_backend

        if default_backend := os.environ.get("PMO_DEFAULT_BACKEND"):
            config.default_backend = default_backend

        for name, backend in config.backends.items():
            if cmd := os.environ.get(f"PMO_{name.upper()}_CMD"):
                backend.command = shlex.split(cmd)

        if mcp_cmd := os.environ.get("PMO_MCP_COMMAND"):
            config.mcp_command = shlex.split(mcp_cmd)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("PMO_SLACK_CHANNEL")

        return config


def get_config() -> Config:
    return Config.from_env()
