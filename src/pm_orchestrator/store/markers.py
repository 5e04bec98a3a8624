"""Per-task marker files in a project's status directory."""

import logging
from pathlib import Path

from pm_orchestrator.store.documents import now_iso, read_json, write_json_atomic

logger = logging.getLogger(__name__)

RUNNING = "status"
COMPLETED = "completed"
APPROVED = "approved"
MERGED = "merged"
STUCK = "stuck"
NEEDS_HUMAN_REVIEW = "needs_human_review"
CONFLICT_RETRIES = "conflict_retries"
REVIEW = "review"

KINDS = (
    RUNNING,
    COMPLETED,
    APPROVED,
    MERGED,
    STUCK,
    NEEDS_HUMAN_REVIEW,
    CONFLICT_RETRIES,
    REVIEW,
)


class MarkerStore:
    """Markers are named ``<task_id>.<kind>`` and hold a small JSON object."""

    def __init__(self, status_dir: str | Path):
        self.status_dir = Path(status_dir)

    def path(self, task_id: str, kind: str) -> Path:
        if kind not in KINDS:
            raise ValueError(f"Unknown marker kind: {kind}")
        return self.status_dir / f"{task_id}.{kind}"

    def exists(self, task_id: str, kind: str) -> bool:
        return self.path(task_id, kind).exists()

    def read(self, task_id: str, kind: str) -> dict | None:
        """Return the marker's data, ``{}`` if unreadable, ``None`` if absent."""
        path = self.path(task_id, kind)
        if not path.exists():
            return None
        return read_json(path, {})

    def write(self, task_id: str, kind: str, data: dict | None = None) -> dict:
        payload = {"task": task_id, "updatedAt": now_iso(), **(data or {})}
        write_json_atomic(self.path(task_id, kind), payload)
        return payload

    def remove(self, task_id: str, kind: str) -> bool:
        try:
            self.path(task_id, kind).unlink()
            return True
        except FileNotFoundError:
            return False

    def move(self, task_id: str, src: str, dst: str, extra: dict | None = None) -> dict:
        """Replace the ``src`` marker with a ``dst`` marker carrying its data."""
        data = self.read(task_id, src) or {}
        data.update(extra or {})
        written = self.write(task_id, dst, data)
        self.remove(task_id, src)
        return written

    def task_ids(self, kind: str) -> list[str]:
        suffix = f".{kind}"
        if kind not in KINDS:
            raise ValueError(f"Unknown marker kind: {kind}")
        if not self.status_dir.exists():
            return []
        return sorted(
            p.name[: -len(suffix)]
            for p in self.status_dir.glob(f"*{suffix}")
            if p.is_file() and not p.name.startswith(".")
        )

    def kinds_for(self, task_id: str) -> set[str]:
        return {kind for kind in KINDS if self.exists(task_id, kind)}
