"""Session log files and the recent-activity feed read back from them."""

import logging
import re
from datetime import datetime
from pathlib import Path

from pm_orchestrator.core.projects import ProjectPaths

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LINE_RE = re.compile(r"^\[(?P<timestamp>[^\]]+)\] \[(?P<level>[A-Z]+)\] (?P<message>.*)$")

_PACKAGE_LOGGER = "pm_orchestrator"


def start_session_log(paths: ProjectPaths) -> list[logging.Handler]:
    """Attach a per-session log file and the shared error log to the package logger."""
    paths.logs_dir.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)

    session = logging.FileHandler(
        paths.logs_dir / f"session_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    )
    session.setLevel(logging.INFO)
    session.setFormatter(formatter)

    errors = logging.FileHandler(paths.logs_dir / "errors.log")
    errors.setLevel(logging.ERROR)
    errors.setFormatter(formatter)

    logger = logging.getLogger(_PACKAGE_LOGGER)
    if logger.level == logging.NOTSET or logger.level > logging.INFO:
        logger.setLevel(logging.INFO)
    logger.addHandler(session)
    logger.addHandler(errors)
    return [session, errors]


def stop_session_log(handlers: list[logging.Handler]) -> None:
    logger = logging.getLogger(_PACKAGE_LOGGER)
    for handler in handlers:
        logger.removeHandler(handler)
        handler.close()


def parse_log_line(line: str) -> dict | None:
    match = _LINE_RE.match(line.rstrip("\n"))
    if not match:
        return None
    return match.groupdict()


def read_activity(paths: ProjectPaths, limit: int = 100) -> list[dict]:
    """The last ``limit`` entries across all session logs, oldest first."""
    entries: list[dict] = []
    for log_file in sorted(Path(paths.logs_dir).glob("session_*.log")):
        try:
            lines = log_file.read_text(errors="replace").splitlines()
        except OSError:
            continue
        for line in lines:
            entry = parse_log_line(line)
            if entry is not None:
                entry["file"] = log_file.name
                entries.append(entry)
            elif entries and line.strip():
                # Continuation of a multi-line message (e.g. a traceback).
                entries[-1]["message"] += "\n" + line
    return entries[-limit:] if limit else entries
