"""Durable JSON documents shared between the orchestrator and agent processes.

Every read is total: a missing, empty or malformed file yields the document's
default value. Every write goes to a temp file in the same directory and is
moved into place with ``os.replace`` so readers never see a partial document.
Read-modify-write updates additionally hold a per-document ``FileLock``.
"""

import json
import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from copy import deepcopy
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from filelock import FileLock

logger = logging.getLogger(__name__)

LOCK_TIMEOUT = 30


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_iso(val: str | None) -> datetime | None:
    if not val:
        return None
    try:
        parsed = datetime.fromisoformat(val)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def read_json(path: str | Path, default: Any = None) -> Any:
    """Read a JSON file, falling back to ``default`` on any problem."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return deepcopy(default)
    if not text.strip():
        return deepcopy(default)
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("Malformed JSON document %s, using default", path)
        return deepcopy(default)
    if default is not None and not isinstance(data, type(default)):
        logger.warning(
            "Unexpected %s in %s (wanted %s), using default",
            type(data).__name__, path, type(default).__name__,
        )
        return deepcopy(default)
    return data


def write_json_atomic(path: str | Path, data: Any) -> None:
    """Write JSON via a sibling temp file and an atomic rename."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
            f.write("\n")
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise


class JsonDocument:
    """One mailbox document (outbox, inbox, agent pool, ...)."""

    def __init__(self, path: str | Path, default: Any):
        self.path = Path(path)
        self.default = default
        self._lock = FileLock(f"{self.path}.lock", timeout=LOCK_TIMEOUT)

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> Any:
        return read_json(self.path, self.default)

    def write(self, data: Any) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            write_json_atomic(self.path, data)

    def ensure(self) -> None:
        """Create the document with its default value if it is missing."""
        if not self.exists():
            self.write(deepcopy(self.default))

    @contextmanager
    def update(self) -> Iterator[Any]:
        """Locked read-modify-write. Mutate the yielded value in place."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            data = self.read()
            yield data
            write_json_atomic(self.path, data)
