"""Project management operations."""

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from pm_orchestrator.store.documents import now_iso, read_json, write_json_atomic
from pm_orchestrator.store.models import Project


@dataclass(frozen=True)
class ProjectPaths:
    """Filesystem layout of one project directory."""

    root: Path

    @property
    def project_file(self) -> Path:
        return self.root / "project.json"

    @property
    def workspace(self) -> Path:
        return self.root / "workspace"

    @property
    def agents_dir(self) -> Path:
        return self.root / "agents"

    @property
    def status_dir(self) -> Path:
        return self.root / "status"

    @property
    def messages_dir(self) -> Path:
        return self.status_dir / "messages"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def tasks_file(self) -> Path:
        return self.status_dir / "tasks.json"

    @property
    def state_file(self) -> Path:
        return self.status_dir / "orchestrator_state.json"

    @property
    def summary_file(self) -> Path:
        return self.status_dir / "summary.md"

    def create(self) -> None:
        for d in (self.workspace, self.agents_dir, self.messages_dir, self.logs_dir):
            d.mkdir(parents=True, exist_ok=True)


def slugify(text: str, max_length: int = 40) -> str:
    """Convert free text to a directory-friendly slug."""
    slug = text.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_-]+", "-", slug)
    slug = slug.strip("-")[:max_length].strip("-")
    return slug or "project"


def projects_dir(runtime_dir: str | Path) -> Path:
    return Path(runtime_dir) / "projects"


def project_paths(runtime_dir: str | Path, name: str) -> ProjectPaths:
    return ProjectPaths(projects_dir(runtime_dir) / name)


def create_project(
    runtime_dir: str | Path,
    description: str,
    title: str | None = None,
) -> Project:
    """Create a new project directory named ``<slug>_<timestamp>``."""
    base = f"{slugify(title or description)}_{datetime.now().strftime('%Y%m%d_%H%M%S')}"
    name = base
    i = 2
    while project_paths(runtime_dir, name).root.exists():
        name = f"{base}-{i}"
        i += 1

    paths = project_paths(runtime_dir, name)
    paths.create()
    project = Project(name=name, description=description, created=now_iso())
    write_json_atomic(paths.project_file, project.to_dict())
    return project


def get_project(runtime_dir: str | Path, name: str) -> Project | None:
    """Get a project by directory name."""
    paths = project_paths(runtime_dir, name)
    if not paths.project_file.exists():
        return None
    data = read_json(paths.project_file, {})
    data.setdefault("name", name)
    return Project.from_dict(data)


def list_projects(runtime_dir: str | Path) -> list[Project]:
    """List all projects, newest first."""
    root = projects_dir(runtime_dir)
    if not root.exists():
        return []
    projects = []
    for entry in root.iterdir():
        if entry.is_dir() and (project := get_project(runtime_dir, entry.name)):
            projects.append(project)
    projects.sort(key=lambda p: (p.created or "", p.name), reverse=True)
    return projects


def latest_project(runtime_dir: str | Path) -> Project | None:
    projects = list_projects(runtime_dir)
    return projects[0] if projects else None


def set_project_status(runtime_dir: str | Path, name: str, status: str) -> Project:
    """Update a project's status (active or completed)."""
    return write_project_status(project_paths(runtime_dir, name), status)


def write_project_status(paths: ProjectPaths, status: str) -> Project:
    if status not in ("active", "completed"):
        raise ValueError(f"Invalid project status: {status}")
    if not paths.project_file.exists():
        raise ValueError(f"Project not found: {paths.root.name}")
    data = read_json(paths.project_file, {})
    data.setdefault("name", paths.root.name)
    project = Project.from_dict(data)
    project.status = status
    write_json_atomic(paths.project_file, project.to_dict())
    return project
