"""Task registry — task records, the lifecycle state machine and the active-task pointer.

Each task owns at most one agent process (see ``integrations.agent_rpc``).
Registry operations return ``Result`` values; agent transport failures are
converted to error codes here, at the seam.

State machine::

    missing ──open──▶ ready ──switch──▶ active ◀──switch──▶ idle
       ▲                │                 │                   │
       └────reopen──────┴──── stop ───────┴───────────────────┴──▶ stopped
                        any live state ── agent crash ──▶ errored ──reopen──▶ ready
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import asyncio
import os
import logging
from typing import Any, Dict, List, Optional

from taskd.core.config import Settings
from taskd.core.diagnostics import Diagnostics
from taskd.core.errors import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    PI_PROCESS_DEAD,
    TASK_NOT_FOUND,
    TASK_NOT_READY,
    WORKSPACE_POLICY_VIOLATION,
    Result,
)
from taskd.core.logging_config import get_task_log_dir, log_task_event
from taskd.core.policy import ExecutionPolicy, run_command
from taskd.core.workspace import (
    check_folder_format,
    relative_to_root,
    resolve_workspace_root,
    resolve_working_folder,
)
from taskd.integrations.agent_rpc import (
    AgentProcess,
    AgentProcessError,
    extract_stream_chunk,
    new_id,
)

logger = logging.getLogger("taskd.tasks")

TASK_STATES = {"missing", "ready", "idle", "active", "stopped", "errored"}
LIVE_STATES = {"ready", "idle", "active"}
REOPENABLE_STATES = {"missing", "stopped", "errored"}

LEGACY_TASK_ID = "__legacy__"

FALLBACK_MODELS = [
    {"id": "claude-opus-4-5", "name": "Opus 4.5", "provider": "anthropic"},
    {"id": "gpt-5.2-codex", "name": "GPT 5.2", "provider": "openai-codex"},
    {"id": "gemini-3-pro-preview", "name": "Gemini 3 Pro", "provider": "google-gemini-cli"},
]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def validate_task_id(task_id: Any) -> bool:
    """Non-empty string usable as a single path segment."""
    if not isinstance(task_id, str) or not task_id.strip():
        return False
    return "/" not in task_id and "\\" not in task_id and ".." not in task_id


# ── Data models ──────────────────────────────────────────────

@dataclass
class Task:
    task_id: str
    provider: str
    model: str
    thinking_level: str
    session_file: str
    task_dir: str
    outputs_dir: str
    uploads_dir: str
    state: str = "missing"          # missing | ready | idle | active | stopped | errored
    working_folder: Optional[str] = None     # workspace-relative binding
    working_directory: Optional[str] = None  # resolved cwd of the current process
    process: Optional[AgentProcess] = None
    starting: bool = False
    stopping: bool = False
    prompt_in_flight: bool = False
    prompt_command_id: Optional[str] = None
    prompt_id: Optional[str] = None
    spawn_count: int = 0
    last_exit_reason: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def touch(self) -> None:
        self.updated_at = _now()

    @property
    def is_live(self) -> bool:
        return self.process is not None and self.process.is_alive

    def to_dict(self) -> dict:
        process = self.process
        return {
            "taskId": self.task_id,
            "state": self.state,
            "provider": self.provider,
            "model": self.model,
            "thinkingLevel": self.thinking_level,
            "sessionFile": self.session_file,
            "workDir": self.working_directory,
            "workingFolder": self.working_folder,
            "outputsDir": self.outputs_dir,
            "promptInFlight": self.prompt_in_flight,
            "pid": process.pid if process and process.is_alive else None,
            "pendingRequests": process.pending_count if process else 0,
            "spawnCount": self.spawn_count,
            "lastExitReason": self.last_exit_reason,
            "lastStdoutAt": process.last_stdout_at if process else None,
            "lastStderrAt": process.last_stderr_at if process else None,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass
class PromptTicket:
    """An accepted prompt whose delivery to the agent is still outstanding."""
    task_id: str
    prompt_id: str
    command_id: str
    message: str

    def to_dict(self) -> dict:
        return {"accepted": True, "taskId": self.task_id, "promptId": self.prompt_id}


class NullEventSink:
    """Discards events; the gateway replaces it once it is attached."""

    def emit_event(self, event: str, task_id: Optional[str], payload: Dict[str, Any]) -> None:
        pass

    def forward_raw(self, payload: Dict[str, Any]) -> None:
        pass


# ── Registry ─────────────────────────────────────────────────

class TaskRegistry:
    """Owns every task and the active-task pointer. Loop-thread only."""

    def __init__(
        self,
        settings: Settings,
        diagnostics: Optional[Diagnostics] = None,
        policy: Optional[ExecutionPolicy] = None,
    ) -> None:
        self.settings = settings
        self.diagnostics = diagnostics or Diagnostics(settings.trace_capacity)
        self.policy = policy or ExecutionPolicy(allow_all=True)
        self.event_sink: Any = NullEventSink()
        self.workspace_root = resolve_workspace_root(settings.workspace_root)
        self.defaults: Dict[str, str] = {
            "provider": settings.default_provider,
            "model": settings.default_model,
            "thinkingLevel": settings.default_thinking_level,
        }
        self.active_task_id: Optional[str] = None
        self._tasks: Dict[str, Task] = {}
        self._background: set[asyncio.Task] = set()

    # ── lookup ───────────────────────────────────────────────

    def get(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def list(self) -> List[Task]:
        return list(self._tasks.values())

    @property
    def active_task(self) -> Optional[Task]:
        if self.active_task_id is None:
            return None
        return self._tasks.get(self.active_task_id)

    def _emit(self, event: str, task_id: Optional[str], payload: Optional[Dict[str, Any]] = None) -> None:
        self.event_sink.emit_event(event, task_id, payload or {})

    def _spawn_background(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _new_task(self, task_id: str) -> Task:
        task_dir = os.path.join(self.settings.tasks_root, task_id)
        return Task(
            task_id=task_id,
            provider=self.defaults["provider"],
            model=self.defaults["model"],
            thinking_level=self.defaults["thinkingLevel"],
            session_file=os.path.join(self.settings.sessions_root, task_id, "session.json"),
            task_dir=task_dir,
            outputs_dir=os.path.join(task_dir, "outputs"),
            uploads_dir=os.path.join(task_dir, "uploads"),
        )

    # ── create / open ────────────────────────────────────────

    async def create_or_open_task(self, task_id: Any, options: Optional[Dict[str, Any]] = None) -> Result:
        """Create a task or reopen a stopped/errored one and spawn its agent.

        The working folder is validated before anything is created or
        reconfigured, so a rejected request leaves no trace.
        """
        options = options or {}
        if not validate_task_id(task_id):
            return Result.failure(INVALID_REQUEST, "taskId is required", field="taskId")

        existing = self._tasks.get(task_id)
        if existing is not None:
            if existing.starting:
                return Result.failure(TASK_NOT_READY, "task is starting", taskId=task_id)
            if existing.state in LIVE_STATES:
                return Result.failure(TASK_NOT_READY, "task already open", taskId=task_id, state=existing.state)

        requested_folder = options.get("workingFolder")
        if requested_folder is not None and not isinstance(requested_folder, str):
            return Result.failure(INVALID_REQUEST, "workingFolder must be a string", field="workingFolder")
        folder = requested_folder if requested_folder is not None else (existing.working_folder if existing else None)

        warnings: List[Dict[str, str]] = []
        cwd: Optional[str] = None
        if folder is not None:
            if self.workspace_root is None:
                violation = check_folder_format(folder)
                if violation is not None:
                    logger.info("Task %s: working folder rejected: %s", task_id, violation.error.details)
                    return violation
                logger.warning("Task %s: workspace root unavailable; using outputs dir", task_id)
                warnings.append({
                    "code": "workspace_unavailable",
                    "message": "workspace root unavailable; using the task outputs directory",
                })
            else:
                folder = relative_to_root(self.workspace_root, folder)
                resolved = resolve_working_folder(self.workspace_root, folder)
                if not resolved.ok:
                    logger.info("Task %s: working folder rejected: %s", task_id, resolved.error.details)
                    return resolved
                cwd = resolved.value

        task = existing or self._new_task(task_id)
        previous_state = task.state
        for key, attr in (("provider", "provider"), ("model", "model"), ("thinkingLevel", "thinking_level")):
            if isinstance(options.get(key), str) and options[key].strip():
                setattr(task, attr, options[key])
        if requested_folder is not None:
            task.working_folder = folder
        self._tasks[task_id] = task

        task.starting = True
        try:
            await self._spawn_process(task, cwd)
        except (AgentProcessError, OSError) as exc:
            logger.error("Task %s: spawn failed: %s", task_id, exc)
            log_task_event(task_id, "spawn_failed", str(exc))
            if existing is None and task.spawn_count == 0:
                del self._tasks[task_id]
            return Result.failure(INTERNAL_ERROR, f"failed to start task: {exc}", reason="spawn_failed")
        finally:
            task.starting = False

        if previous_state == "errored":
            mode = "recovered"
        elif task.spawn_count == 1:
            mode = "created"
        else:
            mode = "resumed"
        task.state = "ready"
        task.touch()
        log_task_event(task_id, "opened", mode, working_directory=task.working_directory)
        return Result.success({
            "taskId": task_id,
            "state": task.state,
            "mode": mode,
            "workingDirectory": task.working_directory,
            "warnings": warnings,
        })

    async def _spawn_process(self, task: Task, cwd: Optional[str]) -> None:
        os.makedirs(os.path.dirname(task.session_file), exist_ok=True)
        os.makedirs(task.outputs_dir, mode=0o755, exist_ok=True)
        os.makedirs(task.uploads_dir, exist_ok=True)
        os.chmod(task.uploads_dir, 0o555)
        working_directory = cwd or task.outputs_dir

        env = dict(os.environ)
        env["PI_WORKING_DIR"] = working_directory
        env["TASKD_TASK_ID"] = task.task_id

        process = AgentProcess(
            task.task_id,
            [*self.settings.agent_command, "--mode", "rpc", "--session", task.session_file],
            working_directory,
            env=env,
            command_timeout=self.settings.child_command_timeout,
            stop_grace_period=self.settings.stop_grace_period,
            diagnostics=self.diagnostics,
            stderr_log_path=os.path.join(get_task_log_dir(task.task_id), "agent.log"),
        )
        process.on_event = lambda payload: self._on_agent_event(task, process, payload)
        process.on_exit = lambda proc, reason: self._on_agent_exit(task, proc, reason)
        await process.start()

        task.process = process
        task.working_directory = working_directory
        task.spawn_count += 1
        task.prompt_in_flight = False
        task.prompt_command_id = None
        task.prompt_id = None
        task.last_exit_reason = None
        log_task_event(task.task_id, "spawned", f"pid={process.pid}", cwd=working_directory)
        self._spawn_background(self._configure_model(task, process))

    async def _configure_model(self, task: Task, process: AgentProcess) -> None:
        try:
            response = await process.send({"type": "set_model", "provider": task.provider, "modelId": task.model})
        except AgentProcessError as exc:
            logger.warning("Task %s: initial set_model failed: %s", task.task_id, exc)
            return
        if not response.get("success"):
            logger.warning("Task %s: initial set_model rejected: %s", task.task_id, response.get("error"))

    # ── switch / stop ────────────────────────────────────────

    def ensure_switchable(self, task_id: Any) -> Result:
        if not validate_task_id(task_id):
            return Result.failure(INVALID_REQUEST, "taskId is required", field="taskId")
        task = self._tasks.get(task_id)
        if task is None:
            return Result.failure(TASK_NOT_FOUND, "task not found", taskId=task_id)
        if task.state not in LIVE_STATES:
            return Result.failure(TASK_NOT_READY, "task is not ready", taskId=task_id, state=task.state)
        return Result.success({"status": "switching", "taskId": task_id})

    def switch_task(self, task_id: str, emit_events: bool = True) -> Result:
        """Make *task_id* active, demoting the previous active task to idle."""
        checked = self.ensure_switchable(task_id)
        if not checked.ok:
            return checked
        if emit_events:
            self._emit("task_switch_started", task_id)

        previous = self.active_task
        if previous is not None and previous.task_id != task_id and previous.state == "active":
            previous.state = "idle"
            previous.touch()

        target = self._tasks[task_id]
        self.active_task_id = task_id
        target.state = "active"
        target.touch()
        log_task_event(task_id, "activated", f"previous={previous.task_id if previous else None}")

        if emit_events:
            self._emit("task_ready", task_id)
        return checked

    async def stop_task(self, task_id: Any) -> Result:
        if not validate_task_id(task_id):
            return Result.failure(INVALID_REQUEST, "taskId is required", field="taskId")
        task = self._tasks.get(task_id)
        if task is None:
            return Result.failure(TASK_NOT_FOUND, "task not found", taskId=task_id)
        if task.starting:
            return Result.failure(TASK_NOT_READY, "task is starting", taskId=task_id)
        if task.state == "missing":
            return Result.failure(TASK_NOT_READY, "task cannot be stopped", taskId=task_id)

        await self._stop_process(task)
        if self.active_task_id == task_id:
            self.active_task_id = None
        task.state = "stopped"
        task.touch()
        log_task_event(task_id, "stopped")
        self._emit("task_stopped", task_id)
        return Result.success({"taskId": task_id, "state": "stopped"})

    async def _stop_process(self, task: Task) -> None:
        process = task.process
        if process is None:
            return
        task.stopping = True
        try:
            await process.stop()
        finally:
            task.stopping = False
        task.prompt_in_flight = False
        task.prompt_command_id = None

    # ── agent callbacks ──────────────────────────────────────

    def _on_agent_event(self, task: Task, process: AgentProcess, payload: Dict[str, Any]) -> None:
        if task.process is not process:
            return

        if task.task_id == self.active_task_id:
            self.event_sink.forward_raw(payload)

        chunk = extract_stream_chunk(payload)
        if chunk and chunk["chunk"]:
            self._emit("agent_output", task.task_id, {**chunk, "promptId": task.prompt_id})

        if payload.get("type") == "agent_end":
            result: Dict[str, Any] = {"promptId": task.prompt_id}
            if isinstance(payload.get("usage"), dict):
                result["usage"] = payload["usage"]
            task.prompt_in_flight = False
            task.prompt_command_id = None
            task.prompt_id = None
            task.touch()
            self._emit("agent_end", task.task_id, result)

    def _on_agent_exit(self, task: Task, process: AgentProcess, reason: str) -> None:
        if task.process is not process:
            logger.debug("Task %s: ignoring exit of replaced process %s", task.task_id, process.pid)
            return

        task.last_exit_reason = reason
        task.prompt_in_flight = False
        task.prompt_command_id = None
        task.prompt_id = None
        task.touch()

        if process.stop_requested or task.stopping:
            task.state = "stopped"
            log_task_event(task.task_id, "exited", reason)
            return

        task.state = "errored"
        if self.active_task_id == task.task_id:
            self.active_task_id = None
        log_task_event(task.task_id, "crashed", reason)
        self._emit("task_error", task.task_id, {"code": PI_PROCESS_DEAD, "message": reason})

    # ── prompts ──────────────────────────────────────────────

    def begin_prompt(self, message: Any, prompt_id: Optional[str] = None) -> Result:
        """Check and mark the active task's single prompt slot.

        Delivery happens separately in ``deliver_prompt`` so the host can be
        answered before the agent starts streaming.
        """
        if not isinstance(message, str) or not message.strip():
            return Result.failure(INVALID_REQUEST, "message is required", field="message")
        task = self.active_task
        if task is None or task.state != "active":
            return Result.failure(TASK_NOT_READY, "no active task")
        if not task.is_live:
            return Result.failure(TASK_NOT_READY, "active task process unavailable", taskId=task.task_id)
        if task.prompt_in_flight:
            return Result.failure(TASK_NOT_READY, "prompt already running for active task", taskId=task.task_id)

        ticket = PromptTicket(
            task_id=task.task_id,
            prompt_id=prompt_id if isinstance(prompt_id, str) and prompt_id else new_id("prompt"),
            command_id=new_id("prompt"),
            message=message,
        )
        task.prompt_in_flight = True
        task.prompt_command_id = ticket.command_id
        task.prompt_id = ticket.prompt_id
        task.touch()
        return Result.success(ticket)

    async def deliver_prompt(self, ticket: PromptTicket) -> Result:
        task = self._tasks[ticket.task_id]
        process = task.process
        if process is None:
            return self._prompt_rejected(task, ticket, "unavailable", "task process unavailable")
        try:
            response = await process.send({"id": ticket.command_id, "type": "prompt", "message": ticket.message})
        except AgentProcessError as exc:
            return self._prompt_rejected(task, ticket, exc.reason, str(exc))
        if not response.get("success"):
            error = response.get("error")
            return self._prompt_rejected(task, ticket, "rejected", error if isinstance(error, str) else "prompt rejected")
        return Result.success(ticket.to_dict())

    def _prompt_rejected(self, task: Task, ticket: PromptTicket, reason: str, message: str) -> Result:
        logger.warning("Task %s: prompt %s failed (%s): %s", task.task_id, ticket.prompt_id, reason, message)
        if task.prompt_command_id == ticket.command_id:
            task.prompt_in_flight = False
            task.prompt_command_id = None
            task.prompt_id = None
            # A crash already produced its own task_error.
            if reason != "process_exited":
                self._emit("task_error", task.task_id, {
                    "code": INTERNAL_ERROR,
                    "message": message,
                    "promptId": ticket.prompt_id,
                })
        return Result.failure(INTERNAL_ERROR, message, reason=reason, taskId=task.task_id)

    async def ensure_legacy_active_task(self) -> Result:
        """Open and silently activate the initial task (or ``__legacy__``)."""
        initial = self.settings.initial_task_id
        task_id = initial if validate_task_id(initial) else LEGACY_TASK_ID
        task = self._tasks.get(task_id)
        if task is None or task.state in REOPENABLE_STATES:
            opened = await self.create_or_open_task(task_id, {})
            if not opened.ok:
                return opened
        return self.switch_task(task_id, emit_events=False)

    async def prompt_active_task(self, message: Any, prompt_id: Optional[str] = None) -> Result:
        """Legacy prompt: bootstrap an active task if needed and wait for the agent's ack."""
        if not isinstance(message, str) or not message.strip():
            return Result.failure(INVALID_REQUEST, "message is required", field="message")
        if self.active_task is None:
            ensured = await self.ensure_legacy_active_task()
            if not ensured.ok:
                return ensured
        begun = self.begin_prompt(message, prompt_id)
        if not begun.ok:
            return begun
        return await self.deliver_prompt(begun.value)

    # ── model proxying ───────────────────────────────────────

    async def get_available_models(self, fallback: bool = False) -> Result:
        task = self.active_task
        if task is None or not task.is_live:
            if fallback:
                return Result.success({"models": list(FALLBACK_MODELS)})
            return Result.failure(TASK_NOT_READY, "no active task")
        try:
            response = await task.process.send({"type": "get_available_models"})  # type: ignore[union-attr]
        except AgentProcessError as exc:
            if fallback:
                logger.info("get_available_models via task %s failed (%s); using fallback list", task.task_id, exc)
                return Result.success({"models": list(FALLBACK_MODELS)})
            return Result.failure(INTERNAL_ERROR, str(exc), reason=exc.reason)
        if not response.get("success"):
            if fallback:
                return Result.success({"models": list(FALLBACK_MODELS)})
            return Result.failure(INTERNAL_ERROR, str(response.get("error") or "get_available_models rejected"), reason="rejected")
        data = response.get("data")
        return Result.success(data if isinstance(data, dict) else {"models": data or []})

    async def set_model(
        self,
        provider: Optional[str],
        model: Optional[str],
        thinking_level: Optional[str] = None,
        *,
        wait: bool = True,
    ) -> Result:
        """Update the daemon defaults and the active task, then tell its agent.

        With ``wait=False`` the agent call is fire-and-forget.
        """
        provider = provider if isinstance(provider, str) and provider.strip() else self.defaults["provider"]
        model = model if isinstance(model, str) and model.strip() else self.defaults["model"]
        self.defaults["provider"] = provider
        self.defaults["model"] = model
        if isinstance(thinking_level, str) and thinking_level.strip():
            self.defaults["thinkingLevel"] = thinking_level

        result = {"id": model, "name": model, "provider": provider}
        task = self.active_task
        if task is None:
            return Result.success(result)
        task.provider = provider
        task.model = model
        if isinstance(thinking_level, str) and thinking_level.strip():
            task.thinking_level = thinking_level
        task.touch()
        if not task.is_live:
            return Result.success(result)

        if not wait:
            self._spawn_background(self._configure_model(task, task.process))  # type: ignore[arg-type]
            return Result.success(result)

        try:
            response = await task.process.send(  # type: ignore[union-attr]
                {"type": "set_model", "provider": provider, "modelId": model}
            )
        except AgentProcessError as exc:
            return Result.failure(INTERNAL_ERROR, str(exc), reason=exc.reason, taskId=task.task_id)
        if not response.get("success"):
            return Result.failure(
                INTERNAL_ERROR, str(response.get("error") or "set_model rejected"),
                reason="rejected", taskId=task.task_id,
            )
        return Result.success(result)

    def forward_extension_ui_response(self, payload: Dict[str, Any]) -> Result:
        task = self.active_task
        if task is None:
            return Result.failure(TASK_NOT_READY, "No active task")
        if not task.is_live:
            return Result.failure(TASK_NOT_READY, "No active task process", taskId=task.task_id)
        message = dict(payload)
        message.setdefault("type", "extension_ui_response")
        try:
            task.process.notify(message)  # type: ignore[union-attr]
        except AgentProcessError as exc:
            return Result.failure(INTERNAL_ERROR, str(exc), reason=exc.reason, taskId=task.task_id)
        return Result.success({})

    # ── host shell ───────────────────────────────────────────

    async def run_shell(self, command: Any, directory: Any = None) -> Result:
        if not isinstance(command, str) or not command.strip():
            return Result.failure(INVALID_REQUEST, "command is required", field="command")

        cwd: Optional[str] = None
        if directory is not None and directory != "":
            if not isinstance(directory, str):
                return Result.failure(INVALID_REQUEST, "directory must be a string", field="directory")
            if self.workspace_root is None:
                return Result.failure(
                    WORKSPACE_POLICY_VIOLATION, "workspace root unavailable",
                    reason="workspace_unavailable", path=directory,
                )
            resolved = resolve_working_folder(self.workspace_root, relative_to_root(self.workspace_root, directory))
            if not resolved.ok:
                return resolved
            cwd = resolved.value
        elif self.active_task is not None:
            cwd = self.active_task.working_directory

        try:
            outcome = await run_command(command, self.policy, timeout=self.settings.exec_timeout, cwd=cwd)
        except PermissionError as exc:
            return Result.failure(INVALID_REQUEST, str(exc), reason="command_denied")
        return Result.success(outcome.to_dict())

    # ── state / lifecycle ────────────────────────────────────

    def snapshot(self) -> Dict[str, Any]:
        return {
            "activeTaskId": self.active_task_id,
            "defaults": dict(self.defaults),
            "workspaceRoot": self.workspace_root,
            "tasks": [t.to_dict() for t in self._tasks.values()],
        }

    def legacy_state(self) -> Dict[str, Any]:
        task = self.active_task
        model = task.model if task else self.defaults["model"]
        return {
            "model": {
                "id": model,
                "name": model,
                "provider": task.provider if task else self.defaults["provider"],
            },
            "thinkingLevel": task.thinking_level if task else self.defaults["thinkingLevel"],
            "sessionName": self.active_task_id,
            "sessionId": self.active_task_id,
            "isStreaming": bool(task and task.prompt_in_flight),
            "activeTaskId": self.active_task_id,
            "tasks": [t.to_dict() for t in self._tasks.values()],
        }

    def runtime_diagnostics(self) -> Dict[str, Any]:
        tasks = []
        for task in self._tasks.values():
            entry = task.to_dict()
            entry["pending"] = task.process.pending_snapshot() if task.process else []
            tasks.append(entry)
        return {
            "activeTaskId": self.active_task_id,
            "workspaceRoot": self.workspace_root,
            "tasks": tasks,
            **self.diagnostics.snapshot(),
        }

    async def bootstrap_initial_task(self) -> None:
        task_id = self.settings.initial_task_id
        if not task_id:
            return
        if not validate_task_id(task_id):
            logger.warning("Ignoring invalid initial task id %r", task_id)
            return
        opened = await self.create_or_open_task(task_id, {})
        if not opened.ok:
            logger.error("Initial task %s failed to open: %s", task_id, opened.error.message)
            return
        self.switch_task(task_id, emit_events=False)
        logger.info("Initial task %s opened and activated", task_id)

    async def shutdown(self) -> None:
        live = [t for t in self._tasks.values() if t.process is not None and t.state != "stopped"]
        if live:
            logger.info("Stopping %d task process(es)", len(live))
        await asyncio.gather(*(self._stop_process(t) for t in live), return_exceptions=True)
        for task in live:
            task.state = "stopped"
        self.active_task_id = None
        for pending in list(self._background):
            pending.cancel()
