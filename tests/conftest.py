"""Shared fixtures: a temp runtime dir, a git-backed project and a shell agent backend."""

import tempfile
from pathlib import Path

import pytest

from pm_orchestrator.config import Backend, Config
from pm_orchestrator.core import projects as projects_mod
from pm_orchestrator.integrations import git

# Agent stand-in: writes a file named after its task into its clone and exits.
# The prompt ends up as $0 and is ignored.
WRITE_TASK_FILE = 'echo "done by $ORCHESTRATOR_AGENT_ID" > "$ORCHESTRATOR_TASK_ID.txt"'


def make_config(runtime_dir, script: str = WRITE_TASK_FILE, **overrides) -> Config:
    config = Config(
        runtime_dir=Path(runtime_dir),
        poll_interval=0.05,
        agent_timeout=30,
        ask_timeout=1,
        ask_poll_interval=0.01,
        assignment_timeout=1,
        assignment_poll_interval=0.01,
        escalation_timeout=0.05,
        pm_timeout=5,
        pm_backend="sh",
        default_backend="sh",
        backends={"sh": Backend("sh", ["sh", "-c", script])},
        slack_bot_token=None,
        slack_channel=None,
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def commit_file(repo, name: str, content: str, message: str | None = None) -> None:
    (Path(repo) / name).write_text(content)
    git.run_git(["add", name], cwd=repo)
    git.run_git(["commit", "-m", message or f"Update {name}"], cwd=repo)


@pytest.fixture
def runtime_dir():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def config(runtime_dir):
    return make_config(runtime_dir)


@pytest.fixture
def paths(runtime_dir):
    """A created project whose workspace is a git repo with one commit on main."""
    project = projects_mod.create_project(runtime_dir, "Build a tiny demo app")
    project_paths = projects_mod.project_paths(runtime_dir, project.name)
    git.init_repo(project_paths.workspace, "main")
    commit_file(project_paths.workspace, "README.md", "# demo\n", "Add readme")
    return project_paths


def plan_dict(*tasks: dict, name: str = "demo") -> dict:
    return {"project_name": name, "tasks": list(tasks)}


def task_dict(task_id: str, depends_on=(), type: str = "implement", agent: str = "sh", **extra) -> dict:
    return {
        "id": task_id,
        "type": type,
        "branch": f"task/{task_id}",
        "agent": agent,
        "description": f"Do {task_id}",
        "depends_on": list(depends_on),
        **extra,
    }
