"""Git subprocess wrappers for workspaces, clones, branches and merges."""

import subprocess
from pathlib import Path

IDENTITY_NAME = "pm-orchestrator"
IDENTITY_EMAIL = "pm-orchestrator@localhost"


class GitError(Exception):
    """Raised when a git command fails."""


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        detail = (e.stderr or e.stdout or "").strip()
        raise GitError(f"git {' '.join(args)} failed: {detail}") from e


# ── Repositories ────────────────────────────────────────────────────────────


def is_repo(path: str | Path) -> bool:
    if not Path(path).is_dir():
        return False
    try:
        run_git(["rev-parse", "--git-dir"], cwd=path)
        return True
    except GitError:
        return False


def ensure_identity(cwd: str | Path) -> None:
    """Give the repo a local committer identity if none is configured."""
    try:
        run_git(["config", "user.email"], cwd=cwd)
    except GitError:
        run_git(["config", "user.email", IDENTITY_EMAIL], cwd=cwd)
        run_git(["config", "user.name", IDENTITY_NAME], cwd=cwd)


def init_repo(path: str | Path, branch: str = "main") -> None:
    """Create a repository with one empty commit on ``branch``."""
    Path(path).mkdir(parents=True, exist_ok=True)
    run_git(["init"], cwd=path)
    run_git(["checkout", "-b", branch], cwd=path)
    ensure_identity(path)
    run_git(["commit", "--allow-empty", "-m", "Initial commit"], cwd=path)


def clone(source: str | Path, dest: str | Path) -> None:
    run_git(["clone", "--quiet", str(source), str(dest)])
    ensure_identity(dest)


# ── Branches ────────────────────────────────────────────────────────────────


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a branch exists."""
    try:
        run_git(["rev-parse", "--verify", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def remote_branch_exists(repo_path: str | Path, branch: str, remote: str = "origin") -> bool:
    try:
        run_git(["rev-parse", "--verify", f"refs/remotes/{remote}/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def get_current_branch(cwd: str | Path) -> str:
    """Get the current branch name."""
    return run_git(["branch", "--show-current"], cwd=cwd)


def checkout(cwd: str | Path, branch: str) -> str:
    return run_git(["checkout", branch], cwd=cwd)


def checkout_task_branch(cwd: str | Path, branch: str) -> str:
    """Check out ``branch`` in a clone, continuing the remote copy if one exists."""
    if remote_branch_exists(cwd, branch):
        return run_git(["checkout", "-B", branch, f"origin/{branch}"], cwd=cwd)
    return run_git(["checkout", "-B", branch], cwd=cwd)


def commits_ahead(cwd: str | Path, base: str, branch: str) -> int:
    return int(run_git(["rev-list", "--count", f"{base}..{branch}"], cwd=cwd) or 0)


def is_ancestor(cwd: str | Path, ancestor: str, descendant: str) -> bool:
    try:
        run_git(["merge-base", "--is-ancestor", ancestor, descendant], cwd=cwd)
        return True
    except GitError:
        return False


# ── Changes ─────────────────────────────────────────────────────────────────


def get_status(cwd: str | Path) -> str:
    """Get git status of a working directory."""
    return run_git(["status", "--porcelain"], cwd=cwd)


def commit_all(cwd: str | Path, message: str) -> bool:
    """Stage and commit everything. Returns False when there was nothing to commit."""
    if not get_status(cwd):
        return False
    run_git(["add", "-A"], cwd=cwd)
    run_git(["commit", "-m", message], cwd=cwd)
    return True


def fetch(cwd: str | Path, remote: str | Path, refspec: str) -> str:
    return run_git(["fetch", "--quiet", str(remote), refspec], cwd=cwd)


def pull_ff(cwd: str | Path, remote: str | Path, ref: str = "HEAD") -> str:
    return run_git(["pull", "--quiet", "--ff-only", str(remote), ref], cwd=cwd)


def diff_range(cwd: str | Path, base: str, branch: str, max_lines: int | None = None) -> str:
    """Diff of ``branch`` against its merge base with ``base``."""
    output = run_git(["diff", f"{base}...{branch}"], cwd=cwd)
    if max_lines is None:
        return output
    lines = output.splitlines()
    if len(lines) <= max_lines:
        return output
    return "\n".join(lines[:max_lines]) + f"\n... ({len(lines) - max_lines} more lines)"


def changed_files(cwd: str | Path, base: str, branch: str) -> list[str]:
    output = run_git(["diff", "--name-only", f"{base}...{branch}"], cwd=cwd)
    return [line for line in output.splitlines() if line]


def log_oneline(cwd: str | Path, count: int = 20) -> str:
    return run_git(["log", "--oneline", f"-{count}"], cwd=cwd)


def list_files(cwd: str | Path) -> list[str]:
    return [line for line in run_git(["ls-files"], cwd=cwd).splitlines() if line]


# ── Merging ─────────────────────────────────────────────────────────────────


def merge(cwd: str | Path, branch: str, message: str) -> str:
    return run_git(["merge", "--no-edit", branch, "-m", message], cwd=cwd)


def merge_no_commit(cwd: str | Path, branch: str) -> str:
    return run_git(["merge", "--no-commit", "--no-ff", branch], cwd=cwd)


def merge_in_progress(cwd: str | Path) -> bool:
    try:
        run_git(["rev-parse", "--verify", "--quiet", "MERGE_HEAD"], cwd=cwd)
        return True
    except GitError:
        return False


def merge_abort(cwd: str | Path) -> None:
    """Abort an in-progress merge. No-op if there is none."""
    if merge_in_progress(cwd):
        run_git(["merge", "--abort"], cwd=cwd)


def conflicted_files(cwd: str | Path) -> list[str]:
    output = run_git(["diff", "--name-only", "--diff-filter=U"], cwd=cwd)
    return [line for line in output.splitlines() if line]
