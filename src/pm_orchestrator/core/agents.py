"""Agent lifecycle: the shared agent pool, assignments, and process supervision."""

import json
import logging
import os
import re
import shutil
import signal
import subprocess
import uuid
from pathlib import Path

from pm_orchestrator.config import Backend, Config
from pm_orchestrator.core.projects import ProjectPaths
from pm_orchestrator.core.prompts import persistent_agent_prompt, task_prompt
from pm_orchestrator.integrations import git
from pm_orchestrator.store.documents import JsonDocument, now_iso
from pm_orchestrator.store.models import Agent, Assignment, Task

logger = logging.getLogger(__name__)

LIVE_STATUSES = ("starting", "standby", "assigned", "active", "completed")
ASSIGNABLE_STATUSES = ("standby", "starting")

_FIELD_NAMES = set(Agent.__dataclass_fields__)


class AgentError(ValueError):
    """Raised for unknown agents, unknown backends, or illegal lifecycle requests."""


# ── Agent pool ──────────────────────────────────────────────────────────────


class AgentPool:
    """``agent_pool.json``: agent id -> pool entry."""

    def __init__(self, messages_dir: str | Path):
        self.doc = JsonDocument(Path(messages_dir) / "agent_pool.json", {})

    def _entries(self, data: dict) -> dict[str, Agent]:
        agents = {}
        for agent_id, entry in data.items():
            if isinstance(entry, dict):
                agents[agent_id] = Agent.from_dict({**entry, "id": agent_id})
        return agents

    def get(self, agent_id: str) -> Agent | None:
        return self._entries(self.doc.read()).get(agent_id)

    def list_agents(self, status: str | None = None) -> list[Agent]:
        agents = list(self._entries(self.doc.read()).values())
        if status:
            agents = [a for a in agents if a.status == status]
        agents.sort(key=lambda a: (a.registered_at or "", a.id))
        return agents

    def register(self, agent: Agent) -> Agent:
        agent.registered_at = agent.registered_at or now_iso()
        agent.last_seen = now_iso()
        if agent.status == "standby":
            agent.current_task = None
        with self.doc.update() as data:
            data[agent.id] = agent.to_dict()
        return agent

    def update(self, agent_id: str, **changes) -> Agent:
        """Apply field changes to one entry. Entering standby always clears the task."""
        unknown = set(changes) - _FIELD_NAMES
        if unknown:
            raise AgentError(f"Unknown agent fields: {', '.join(sorted(unknown))}")
        with self.doc.update() as data:
            entry = data.get(agent_id)
            if not isinstance(entry, dict):
                raise AgentError(f"Agent not found: {agent_id}")
            agent = Agent.from_dict({**entry, "id": agent_id})
            for key, value in changes.items():
                setattr(agent, key, value)
            if agent.status == "standby":
                agent.current_task = None
            agent.last_seen = now_iso()
            data[agent_id] = agent.to_dict()
        return agent

    def enter_standby(
        self,
        agent_id: str,
        capabilities: list[str] | None = None,
        pid: int | None = None,
    ) -> Agent:
        """Put an agent on standby, registering it if it is not in the pool yet.

        An agent that was already handed an assignment stays ``assigned`` so the
        dispatcher cannot bind a second task to it.
        """
        with self.doc.update() as data:
            entry = data.get(agent_id)
            if isinstance(entry, dict):
                agent = Agent.from_dict({**entry, "id": agent_id})
            else:
                role, _, rest = agent_id.partition("-")
                agent = Agent(
                    id=agent_id,
                    role=role or "agent",
                    type=rest.split("-")[0] if rest else "",
                    registered_at=now_iso(),
                    pid=pid,
                )
            if capabilities:
                agent.capabilities = list(capabilities)
            if agent.status != "assigned":
                agent.status = "standby"
                agent.current_task = None
            agent.last_seen = now_iso()
            data[agent_id] = agent.to_dict()
        return agent

    def available(self) -> list[Agent]:
        """Persistent agents that can take an assignment right now."""
        return [
            a for a in self.list_agents()
            if a.persistent and a.status in ASSIGNABLE_STATUSES
        ]


# ── Assignments ─────────────────────────────────────────────────────────────


class AssignmentBook:
    """``assignments.json``: an append-only list of task-to-agent bindings."""

    def __init__(self, messages_dir: str | Path):
        self.doc = JsonDocument(Path(messages_dir) / "assignments.json", [])

    def _load(self, data: list) -> list[Assignment]:
        return [Assignment.from_dict(e) for e in data if isinstance(e, dict) and e.get("id")]

    def create(self, agent_id: str, task_id: str, branch: str, description: str) -> Assignment:
        assignment = Assignment(
            id=f"assign-{uuid.uuid4().hex[:8]}",
            agent_id=agent_id,
            task_id=task_id,
            branch=branch,
            description=description,
            assigned_at=now_iso(),
        )
        with self.doc.update() as data:
            data.append(assignment.to_dict())
        return assignment

    def for_agent(self, agent_id: str) -> list[Assignment]:
        return [a for a in self._load(self.doc.read()) if a.agent_id == agent_id]

    def pending_for(self, agent_id: str) -> list[Assignment]:
        return [a for a in self.for_agent(agent_id) if a.status == "pending"]

    def accept(self, assignment_id: str) -> Assignment:
        with self.doc.update() as data:
            for entry in data:
                if isinstance(entry, dict) and entry.get("id") == assignment_id:
                    if entry.get("status") != "pending":
                        raise AgentError(f"Assignment {assignment_id} is not pending")
                    entry["status"] = "accepted"
                    entry["acceptedAt"] = now_iso()
                    return Assignment.from_dict(entry)
        raise AgentError(f"Assignment not found: {assignment_id}")


# ── Launch helpers ──────────────────────────────────────────────────────────


def get_backend(config: Config, name: str | None) -> Backend:
    backend = config.backends.get(name or config.default_backend)
    if backend is None:
        raise AgentError(
            f"Unknown agent backend: {name} (known: {', '.join(sorted(config.backends))})"
        )
    return backend


def agent_env(messages_dir: str | Path, agent_id: str, task_id: str | None) -> dict[str, str]:
    return {
        "ORCHESTRATOR_MESSAGES_DIR": str(messages_dir),
        "ORCHESTRATOR_AGENT_ID": agent_id,
        "ORCHESTRATOR_TASK_ID": task_id or "",
    }


def write_mcp_config(
    path: Path,
    server_name: str,
    command: list[str],
    env: dict[str, str],
) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    config = {
        "mcpServers": {
            server_name: {"command": command[0], "args": command[1:], "env": env},
        }
    }
    path.write_text(json.dumps(config, indent=2))
    return path


def build_command(
    backend: Backend,
    prompt: str,
    workspace: str | Path,
    mcp_config: Path | None = None,
) -> list[str]:
    cmd = list(backend.command)
    if mcp_config and backend.mcp_flag:
        cmd += [backend.mcp_flag, str(mcp_config)]
    if backend.cwd_flag:
        cmd += [backend.cwd_flag, str(workspace)]
    cmd.append(prompt)
    return cmd


def _is_pid_alive(pid: int | None) -> bool:
    """Check if a process is still running."""
    if not pid:
        return False
    try:
        # A child that already exited stays a zombie until collected.
        if os.waitpid(pid, os.WNOHANG)[0] == pid:
            return False
    except ChildProcessError:
        pass  # Not our child
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Process exists but we can't signal it


def _signal_group(pid: int) -> None:
    """SIGTERM an agent's process group (agents run in their own session)."""
    try:
        os.killpg(pid, signal.SIGTERM)
    except ProcessLookupError:
        pass  # Already exited
    except PermissionError:
        logger.warning("Not permitted to signal agent process %s", pid)


def _safe_id(text: str) -> str:
    return re.sub(r"[^\w.-]+", "-", text).strip("-")


# ── Supervisor ──────────────────────────────────────────────────────────────


class AgentSupervisor:
    """Owns the process table for every agent launched by this process."""

    def __init__(
        self,
        paths: ProjectPaths,
        config: Config,
        pool: AgentPool | None = None,
        assignments: AssignmentBook | None = None,
        project_description: str = "",
    ):
        self.paths = paths
        self.config = config
        self.pool = pool or AgentPool(paths.messages_dir)
        self.assignments = assignments or AssignmentBook(paths.messages_dir)
        self.project_description = project_description
        self._processes: dict[str, subprocess.Popen] = {}

    # ── Spawning ──

    def spawn(self, role: str, backend_type: str, capabilities: list[str] | None = None) -> Agent:
        """Start a persistent agent in its own clone and register it as ``starting``."""
        backend = get_backend(self.config, backend_type)
        agent_id = _safe_id(f"{role}-{backend.name}-{uuid.uuid4().hex[:8]}")
        workspace = self.paths.agents_dir / agent_id
        self._prepare_clone(workspace)

        agent = Agent(
            id=agent_id,
            role=role,
            type=backend.name,
            capabilities=list(capabilities or []),
            status="starting",
            workspace=str(workspace),
            persistent=True,
        )
        self.pool.register(agent)
        prompt = persistent_agent_prompt(agent, str(workspace))
        proc = self._launch(agent, prompt, backend, task_id=None)
        logger.info("Spawned persistent agent %s (pid %s)", agent_id, proc.pid)
        return self.pool.update(agent_id, pid=proc.pid)

    def launch_ephemeral(self, task: Task) -> Agent:
        """Start a one-shot agent for ``task`` on the task branch of a fresh clone."""
        try:
            backend = get_backend(self.config, task.agent)
        except AgentError:
            logger.warning(
                "Task %s asks for unknown agent '%s', using %s",
                task.id, task.agent, self.config.default_backend,
            )
            backend = get_backend(self.config, self.config.default_backend)

        agent_id = self._unique_id(_safe_id(f"{backend.name}-{task.id}"))
        workspace = self.paths.agents_dir / agent_id
        self._prepare_clone(workspace)
        git.checkout_task_branch(workspace, task.branch)

        agent = Agent(
            id=agent_id,
            role=task.type,
            type=backend.name,
            capabilities=[task.type],
            status="active",
            current_task=task.id,
            workspace=str(workspace),
            persistent=False,
        )
        self.pool.register(agent)
        prompt = task_prompt(task, str(workspace), self.project_description)
        proc = self._launch(agent, prompt, backend, task_id=task.id)
        logger.info("Launched %s for task %s (pid %s)", agent_id, task.id, proc.pid)
        return self.pool.update(agent_id, pid=proc.pid)

    def _unique_id(self, base: str) -> str:
        if self.pool.get(base) is None:
            return base
        i = 2
        while self.pool.get(f"{base}-{i}") is not None:
            i += 1
        return f"{base}-{i}"

    def _prepare_clone(self, workspace: Path) -> None:
        if workspace.exists():
            shutil.rmtree(workspace)
        try:
            git.clone(self.paths.workspace, workspace)
        except git.GitError as e:
            raise AgentError(f"Could not prepare workspace {workspace}: {e}") from e

    def _launch(
        self,
        agent: Agent,
        prompt: str,
        backend: Backend,
        task_id: str | None,
    ) -> subprocess.Popen:
        env = agent_env(self.paths.messages_dir, agent.id, task_id)
        mcp_config = None
        if backend.mcp_flag:
            mcp_config = write_mcp_config(
                self.paths.status_dir / "mcp" / f"{agent.id}.json",
                "orchestrator-messaging",
                self.config.mcp_command + ["messaging"],
                env,
            )
        cmd = build_command(backend, prompt, agent.workspace, mcp_config)

        self.paths.logs_dir.mkdir(parents=True, exist_ok=True)
        log_file = self.paths.logs_dir / f"agent_{agent.id}.log"
        try:
            with open(log_file, "a") as f:
                proc = subprocess.Popen(
                    cmd,
                    cwd=agent.workspace,
                    stdin=subprocess.DEVNULL,
                    stdout=f,
                    stderr=subprocess.STDOUT,
                    env={**os.environ, **env},
                    start_new_session=True,
                )
        except OSError as e:
            self.pool.update(
                agent.id, status="terminated", terminated_at=now_iso(), current_task=None
            )
            raise AgentError(f"Could not launch {backend.name} for {agent.id}: {e}") from e

        self._processes[agent.id] = proc
        return proc

    def run_to_completion(
        self,
        backend_type: str | None,
        prompt: str,
        cwd: str | Path,
        log_name: str,
        timeout: float | None = None,
    ) -> int | None:
        """Run a backend synchronously (conflict resolution). None on timeout or launch failure."""
        backend = get_backend(self.config, backend_type)
        cmd = build_command(backend, prompt, cwd)
        self.paths.logs_dir.mkdir(parents=True, exist_ok=True)
        log_file = self.paths.logs_dir / f"{log_name}.log"
        try:
            with open(log_file, "a") as f:
                result = subprocess.run(
                    cmd,
                    cwd=cwd,
                    stdin=subprocess.DEVNULL,
                    stdout=f,
                    stderr=subprocess.STDOUT,
                    timeout=timeout or self.config.agent_timeout,
                )
        except subprocess.TimeoutExpired:
            logger.warning("%s timed out after %ss", log_name, timeout or self.config.agent_timeout)
            return None
        except OSError as e:
            logger.error("Could not run %s: %s", backend.name, e)
            return None
        return result.returncode

    # ── Assignment ──

    def assign(self, agent_id: str, task_id: str, branch: str, description: str) -> Assignment:
        """Bind a task to a pooled agent. The agent must be ``standby`` or ``starting``."""
        with self.pool.doc.update() as data:
            entry = data.get(agent_id)
            if not isinstance(entry, dict):
                raise AgentError(f"Agent not found: {agent_id}")
            status = entry.get("status")
            if status not in ASSIGNABLE_STATUSES:
                raise AgentError(f"Agent {agent_id} is {status}, cannot take an assignment")
            assignment = self.assignments.create(agent_id, task_id, branch, description)
            entry.update(status="assigned", currentTask=task_id, lastSeen=now_iso())
        logger.info("Assigned task %s to %s", task_id, agent_id)
        return assignment

    # ── Queries ──

    def is_alive(self, agent: Agent) -> bool:
        proc = self._processes.get(agent.id)
        if proc is not None:
            return proc.poll() is None
        return _is_pid_alive(agent.pid)

    def list_agents(self, status: str | None = None) -> list[Agent]:
        return self.pool.list_agents(status)

    # ── Termination ──

    def terminate(self, agent_id: str) -> Agent:
        """Best-effort SIGTERM. The pool entry ends up ``terminated`` either way."""
        agent = self.pool.get(agent_id)
        if agent is None:
            raise AgentError(f"Agent not found: {agent_id}")

        proc = self._processes.pop(agent_id, None)
        if proc is not None:
            if proc.poll() is None:
                _signal_group(proc.pid)
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait()
        elif agent.pid and agent.status != "terminated" and _is_pid_alive(agent.pid):
            _signal_group(agent.pid)

        if agent.status == "terminated":
            return agent
        logger.info("Terminated agent %s", agent_id)
        return self.pool.update(agent_id, status="terminated", terminated_at=now_iso())

    def terminate_all(self) -> list[Agent]:
        terminated = []
        for agent in self.pool.list_agents():
            if agent.status != "terminated" or agent.id in self._processes:
                terminated.append(self.terminate(agent.id))
        return terminated

    # ── Reaping ──

    def reap(self) -> list[tuple[Agent, int | None]]:
        """Collect agents whose process has exited since the last call.

        Processes started by this supervisor are polled directly. Pool entries
        started elsewhere (an earlier orchestrator run, the PM's control server)
        are checked by pid. Exited agents are marked ``terminated``; their
        ``currentTask`` is kept so the caller can finalize the work.
        """
        finished: list[tuple[Agent, int | None]] = []

        for agent_id, proc in list(self._processes.items()):
            exit_code = proc.poll()
            if exit_code is None:
                continue  # Still running
            self._processes.pop(agent_id, None)
            agent = self._mark_exited(agent_id, exit_code)
            if agent:
                finished.append((agent, exit_code))

        for agent in self.pool.list_agents():
            if agent.id in self._processes or agent.status not in LIVE_STATUSES:
                continue
            if not agent.pid or _is_pid_alive(agent.pid):
                continue
            exited = self._mark_exited(agent.id, None)
            if exited:
                finished.append((exited, None))

        return finished

    def _mark_exited(self, agent_id: str, exit_code: int | None) -> Agent | None:
        try:
            agent = self.pool.update(
                agent_id, status="terminated", exit_code=exit_code, terminated_at=now_iso()
            )
        except AgentError:
            logger.warning("Exited process for unknown agent %s", agent_id)
            return None
        logger.info("Agent %s exited (exit_code=%s)", agent_id, exit_code)
        return agent
