"""Centralized logging configuration for taskd.

Sets up Python's logging system to write to both stdout and rotating
log files in the configured log directory. Also provides dedicated
JSONL loggers for host traffic, child traffic and task lifecycle events.

Log directory structure::

    ~/.taskd/.logs/
    ├── taskd.log                 # All Python logger output (rotating)
    ├── host-calls.log            # Every host request/response pair (JSONL)
    ├── child-calls.log           # Every agent command outcome (JSONL)
    ├── task-events.log           # Task lifecycle transitions (JSONL)
    └── tasks/
        └── {task_id}/
            └── agent.log         # Agent stderr for this task
"""
from __future__ import annotations

import glob
import json
import logging
import logging.handlers
import os
import shutil
import time
from pathlib import Path
from typing import Any, Optional

# Module-level log directory, set by setup_logging()
_log_dir: Optional[str] = None

host_call_logger = logging.getLogger("taskd._host_calls")
child_call_logger = logging.getLogger("taskd._child_calls")
task_event_logger = logging.getLogger("taskd._task_events")


def get_log_dir() -> str:
    """Return the configured log directory, falling back to default."""
    if _log_dir:
        return _log_dir
    default = str(Path(os.path.expanduser("~")) / ".taskd" / ".logs")
    return os.getenv("TASKD_LOG_DIR", default)


def clear_logs(log_dir: str) -> None:
    """Remove ``*.log`` files and the ``tasks/`` sub-tree from the log directory.

    Called **before** any handlers are attached so there are no open-file
    conflicts.
    """
    if not os.path.isdir(log_dir):
        return
    for path in glob.glob(os.path.join(log_dir, "*.log")):
        try:
            os.remove(path)
        except OSError:
            pass
    tasks_dir = os.path.join(log_dir, "tasks")
    if os.path.isdir(tasks_dir):
        shutil.rmtree(tasks_dir, ignore_errors=True)


def setup_logging(log_dir: str, log_level: str = "info", *, clear_on_launch: bool = False) -> None:
    """Configure the logging system with both stdout and file handlers.

    This should be called once at application startup.
    """
    global _log_dir
    _log_dir = log_dir

    if clear_on_launch:
        clear_logs(log_dir)

    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    fmt = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    stdout_handler = logging.StreamHandler()
    stdout_handler.setLevel(level)
    stdout_handler.setFormatter(fmt)
    root.addHandler(stdout_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, "taskd.log"),
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    _setup_jsonl_logger(host_call_logger, os.path.join(log_dir, "host-calls.log"))
    _setup_jsonl_logger(child_call_logger, os.path.join(log_dir, "child-calls.log"))
    _setup_jsonl_logger(task_event_logger, os.path.join(log_dir, "task-events.log"))

    logging.getLogger("taskd").info(
        "Logging initialized: log_dir=%s, level=%s", log_dir, log_level
    )


def _setup_jsonl_logger(logger_instance: logging.Logger, path: str) -> None:
    """Configure a logger to write raw JSONL messages to a rotating file."""
    logger_instance.setLevel(logging.INFO)
    logger_instance.propagate = False
    logger_instance.handlers.clear()

    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    # Raw formatter: message is already JSON
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger_instance.addHandler(handler)


def _utc_stamp() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


# ── Structured logging helpers ───────────────────────────────


def log_host_call(record: dict[str, Any]) -> None:
    """Log one host request/response pair to the host calls log."""
    try:
        host_call_logger.info(json.dumps({"ts": _utc_stamp(), **record}, default=str))
    except Exception:  # noqa: BLE001
        pass


def log_child_call(record: dict[str, Any]) -> None:
    """Log one agent command outcome to the child calls log."""
    try:
        child_call_logger.info(json.dumps({"ts": _utc_stamp(), **record}, default=str))
    except Exception:  # noqa: BLE001
        pass


def log_task_event(task_id: str, event: str, detail: str = "", **extra: Any) -> None:
    """Log a task lifecycle transition to the task events log."""
    record: dict[str, Any] = {
        "ts": _utc_stamp(),
        "task_id": task_id,
        "event": event,
    }
    if detail:
        record["detail"] = detail[:2000]
    record.update(extra)
    try:
        task_event_logger.info(json.dumps(record, default=str))
    except Exception:  # noqa: BLE001
        pass


def get_task_log_dir(task_id: str) -> str:
    """Return the directory for per-task agent logs."""
    d = os.path.join(get_log_dir(), "tasks", task_id)
    os.makedirs(d, exist_ok=True)
    return d


def append_to_file(path: str, line: str) -> None:
    """Append a timestamped line to a log file, flushing immediately."""
    try:
        ts = time.strftime("%Y-%m-%dT%H:%M:%S")
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(f"{ts} {line}\n")
            f.flush()
    except Exception:  # noqa: BLE001
        pass
