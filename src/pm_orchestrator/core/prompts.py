"""Prompt builders for the PM and the worker agents."""

from pm_orchestrator.store.models import TASK_TYPES, Agent, Task

AGENT_PROFILES = {
    "claude": "research, architecture, complex logic and API integrations (web search: yes)",
    "codex": "fast code generation, refactoring and boilerplate when specs are clear (web search: no)",
    "gemini": "visual reasoning, UI testing and end-to-end QA (web search: yes)",
}

_MESSAGING_HELP = (
    "\n## Communication with the Project Manager\n"
    "You report to the Project Manager (PM). You cannot contact the user or other agents directly.\n"
    "- `ask_pm(question, context?, priority?)`: ask the PM. Blocks until the PM answers or times out.\n"
    "- `send_status(status, message, progress?)`: report progress (non-blocking).\n"
    "- `notify_pm(message, type?)`: send a notification (info, warning, error, success).\n"
    "- `get_messages()`: check for messages from the PM.\n"
    "Use `ask_pm` when requirements are unclear, you hit a blocker, or you need approval for "
    "something risky. The PM escalates to the user when needed."
)


def planning_prompt(description: str, backends: list[str]) -> str:
    parts = [
        "You are a Project Manager AI coordinating multiple AI coding agents.",
        f"\nPROJECT: {description}",
        "\n## Available agents",
    ]
    for name in backends:
        parts.append(f"- {name}: {AGENT_PROFILES.get(name, 'general purpose coding agent')}")
    parts.append(
        "\n## Planning rules\n"
        "Create a task graph where each task lists its dependencies. Tasks whose "
        "dependencies are complete run in parallel, so only add dependencies that are "
        "real requirements.\n"
        f"Task types: {', '.join(TASK_TYPES)}.\n"
        "Every task MUST have \"depends_on\" (use [] for none) and a unique branch name.\n"
        "Be specific in descriptions: agents work independently."
    )
    parts.append(
        "\n## Output format (JSON only, no other text)\n"
        "{\n"
        '  "project_name": "short-name",\n'
        '  "tasks": [\n'
        '    {"id": "task-1", "type": "setup", "branch": "setup/project", "agent": "claude",\n'
        '     "description": "Initialize the project structure.", "depends_on": []},\n'
        '    {"id": "task-2", "type": "implement", "branch": "feature/api", "agent": "codex",\n'
        '     "description": "Implement the API.", "depends_on": ["task-1"]}\n'
        "  ]\n"
        "}"
    )
    return "\n".join(parts)


def task_prompt(task: Task, workspace: str, project_description: str = "") -> str:
    """Briefing for an ephemeral agent that runs one task and exits."""
    parts = [
        "You are working on a software project.",
        f"\nYOUR TASK ({task.id}, {task.type}): {task.description}",
        f"\nWORKING DIRECTORY: {workspace}",
        f"BRANCH: {task.branch} (already checked out)",
    ]
    if project_description:
        parts.append(f"\nPROJECT: {project_description}")
    parts.append(_MESSAGING_HELP)
    parts.append(
        "\n## Completion\n"
        "Create the files needed to complete this task and make sure the code works. "
        "Commit your work on the current branch when finished. Uncommitted changes are "
        "committed for you when you exit."
    )
    return "\n".join(parts)


def persistent_agent_prompt(agent: Agent, workspace: str) -> str:
    """Briefing for a pooled agent that loops on assignments."""
    caps = ", ".join(agent.capabilities) or "general"
    parts = [
        f"You are a persistent {agent.role} agent ({agent.id}) on a software project.",
        f"\nWORKING DIRECTORY: {workspace}",
        f"CAPABILITIES: {caps}",
        _MESSAGING_HELP,
        "\n## Lifecycle\n"
        "1. Call `await_assignment(capabilities)` to enter standby and receive work.\n"
        "2. For each assignment, check out the assignment's branch "
        "(`git checkout -B <branch> origin/main` if it does not exist yet) and do the work.\n"
        "3. Commit your changes, then call `task_complete(summary, files_changed)`.\n"
        "4. Go back to step 1. Exit when `await_assignment` reports a timeout.",
    ]
    return "\n".join(parts)


def review_prompt(task: Task, diff: str, files: list[str]) -> str:
    return "\n".join([
        "You are a Project Manager reviewing completed work from an AI agent.",
        f"\nTASK ID: {task.id}",
        f"TASK: {task.description}",
        f"BRANCH: {task.branch}",
        "\nFILES CHANGED:",
        "\n".join(files) or "(none)",
        "\nDIFF (truncated):",
        diff or "(empty)",
        "\nQuick review, decide:",
        "- APPROVE: work looks reasonable, has code, accomplishes the task",
        "- REJECT: no meaningful work done, empty, or a completely wrong approach",
        "Be lenient: approve if there is genuine effort and code. Minor issues can be fixed later.",
        "\nOUTPUT FORMAT (JSON only):",
        '{"decision": "APPROVE|REJECT", "reason": "one sentence"}',
    ])


def question_prompt(sender: str, task: str | None, priority: str, question: str,
                    context: str | None = None) -> str:
    parts = [
        "You are a Project Manager. An agent on your team has a question.",
        f"\nAGENT: {sender}",
        f"TASK: {task or '(none)'}",
        f"PRIORITY: {priority}",
        f"\nQUESTION FROM AGENT:\n{question}",
    ]
    if context:
        parts.append(f"\nCONTEXT:\n{context}")
    parts.append(
        "\nYou have two options:\n"
        "1. ANSWER directly if you can answer from project context and your judgment.\n"
        "2. ESCALATE to the user if this needs a human decision "
        "(preferences, business logic, approval for significant changes).\n"
        "\nRespond in this exact format:\n"
        "ACTION: ANSWER or ESCALATE\n"
        "RESPONSE: your answer to the agent, OR the question to ask the user\n"
        "\nBe decisive. Most technical questions you should answer yourself."
    )
    return "\n".join(parts)


def synthesis_prompt(question: str, user_answer: str) -> str:
    return "\n".join([
        "You are a Project Manager. You asked the user for input and received their response.",
        f"\nORIGINAL AGENT QUESTION:\n{question}",
        f"\nUSER'S RESPONSE:\n{user_answer}",
        "\nNow give the agent a clear, actionable answer that incorporates the user's input. "
        "Just give the answer, no preamble.",
    ])


def conflict_prompt(task: Task, files: list[str], main_branch: str) -> str:
    return "\n".join([
        "You are resolving a git merge conflict.",
        f"BRANCH being merged into {main_branch}: {task.branch} (task {task.id})",
        f"CONFLICTING FILES: {' '.join(files) or '(unknown)'}",
        "\nInstructions:",
        "1. Read each conflicting file to understand both versions.",
        "2. Resolve the conflicts by combining both versions sensibly.",
        "3. Remove ALL conflict markers (<<<<<<<, =======, >>>>>>>).",
        "4. Stage the resolved files with git add.",
        f"5. Commit the merge: git commit -m 'Resolve merge conflict for {task.branch}'",
    ])


def summary_prompt(description: str, git_log: str, files: list[str]) -> str:
    shown = "\n".join(files[:50]) or "(no files)"
    return "\n".join([
        "You are a Project Manager. The project is complete.",
        f"\nPROJECT: {description}",
        "\nGenerate a brief summary of what was accomplished.",
        f"\nGIT LOG:\n{git_log}",
        f"\nFILES IN PROJECT:\n{shown}",
        "\nProvide a concise summary of the completed project.",
    ])
