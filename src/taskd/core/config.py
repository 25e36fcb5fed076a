from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _env_get(*names: str) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if value is not None and value.strip():
            return value
    return None


def _env_bool(*names: str, default: bool) -> bool:
    value = _env_get(*names)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _default_agent_command() -> list[str]:
    node_bin = os.getenv("PIWORK_NODE_BIN", "/usr/bin/node")
    pi_cli = os.getenv("PIWORK_PI_CLI", "/opt/pi/dist/cli.js")
    return [node_bin, pi_cli]


@dataclass
class Settings:
    log_level: str
    log_dir: str
    host: str
    port: int
    control_port: int
    sessions_root: str
    tasks_root: str
    workspace_root: str | None
    agent_command: list[str]
    default_provider: str
    default_model: str
    default_thinking_level: str
    initial_task_id: str | None
    child_command_timeout: float
    stop_grace_period: float
    trace_capacity: int
    exec_timeout: float
    clear_logs_on_launch: bool

    @staticmethod
    def from_env() -> "Settings":
        default_home = str(Path(os.path.expanduser("~")) / ".taskd")
        default_log_dir = str(Path(default_home) / ".logs")
        agent_raw = _env_get("TASKD_AGENT_COMMAND")
        return Settings(
            log_level=os.getenv("TASKD_LOG_LEVEL", "info"),
            log_dir=os.getenv("TASKD_LOG_DIR") or default_log_dir,
            host=os.getenv("TASKD_HOST", "127.0.0.1"),
            port=int(_env_get("TASKD_RPC_PORT", "PIWORK_RPC_PORT") or "19384"),
            control_port=int(os.getenv("TASKD_CONTROL_PORT", "19385")),
            sessions_root=_env_get("TASKD_SESSIONS_ROOT", "PIWORK_TASKD_SESSIONS_ROOT")
            or str(Path(default_home) / "sessions"),
            tasks_root=os.getenv("TASKD_TASKS_ROOT") or str(Path(default_home) / "tasks"),
            workspace_root=_env_get("TASKD_WORKSPACE_ROOT", "PIWORK_WORKSPACE_ROOT"),
            agent_command=shlex.split(agent_raw) if agent_raw else _default_agent_command(),
            default_provider=_env_get("TASKD_DEFAULT_PROVIDER", "PIWORK_DEFAULT_PROVIDER") or "anthropic",
            default_model=_env_get("TASKD_DEFAULT_MODEL", "PIWORK_DEFAULT_MODEL") or "claude-opus-4-5",
            default_thinking_level=_env_get("TASKD_DEFAULT_THINKING", "PIWORK_DEFAULT_THINKING") or "high",
            initial_task_id=_env_get("TASKD_INITIAL_TASK_ID", "PIWORK_INITIAL_TASK_ID"),
            child_command_timeout=float(os.getenv("TASKD_CHILD_COMMAND_TIMEOUT", "10")),
            stop_grace_period=float(os.getenv("TASKD_STOP_GRACE_PERIOD", "1.2")),
            trace_capacity=int(os.getenv("TASKD_TRACE_CAPACITY", "200")),
            exec_timeout=float(os.getenv("TASKD_EXEC_TIMEOUT", "300")),
            clear_logs_on_launch=_env_bool("TASKD_CLEAR_LOGS_ON_LAUNCH", default=False),
        )
