"""Adapter that supervises one coding-agent process speaking line-JSON RPC.

The agent is launched once per task and kept alive. Commands are written
to its stdin as single JSON lines carrying an ``id``; the agent answers
with ``{"type": "response", "id": ..., "success": ...}`` and, in between,
emits unsolicited streaming events (``agent_start``, ``message_update``,
``tool_execution_update``, ``agent_end`` ...).

Everything that happens to the process is funnelled through one lifecycle
queue consumed by a single pump coroutine, so the order in which a stop
request and the actual exit are observed is fixed by the queue rather than
by callback interleaving::

    stdout/stderr readers ──┐
    exit watcher ───────────┼──▶ lifecycle queue ──▶ pump ──▶ on_line_received
    stop() ─────────────────┘                              ├─▶ on_stop_requested
                                                           └─▶ on_exit
"""
from __future__ import annotations

import asyncio
import json
import logging
import signal
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from taskd.core.diagnostics import Diagnostics
from taskd.core.logging_config import append_to_file

logger = logging.getLogger("taskd.agent_rpc")

DEFAULT_COMMAND_TIMEOUT = 10.0  # seconds
DEFAULT_STOP_GRACE_PERIOD = 1.2  # seconds
# Agent events carry whole messages; lines far above asyncio's 64 KiB default are normal.
STREAM_LIMIT = 16 * 1024 * 1024
READER_DRAIN_TIMEOUT = 1.0

STREAM_DELTA_KINDS = {
    "text_delta": "text",
    "thinking_delta": "thinking",
    "toolcall_delta": "toolcall",
}


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class AgentProcessError(RuntimeError):
    """A command could not be completed by the agent process."""

    reason = "failed"

    def __init__(self, message: str, reason: Optional[str] = None) -> None:
        super().__init__(message)
        if reason:
            self.reason = reason


class AgentCommandTimeout(AgentProcessError):
    reason = "timeout"


def extract_stream_chunk(payload: Any) -> Optional[dict[str, str]]:
    """Unwrap incremental output from an agent event, if it carries any."""
    if not isinstance(payload, dict):
        return None

    if payload.get("type") == "tool_execution_update" and isinstance(payload.get("output"), str):
        return {"chunk": payload["output"], "kind": "tool"}

    if payload.get("type") != "message_update":
        return None

    event = payload.get("assistantMessageEvent")
    if not isinstance(event, dict):
        return None
    kind = STREAM_DELTA_KINDS.get(event.get("type"))  # type: ignore[arg-type]
    if kind and isinstance(event.get("delta"), str):
        return {"chunk": event["delta"], "kind": kind}
    return None


def describe_exit(returncode: Optional[int]) -> str:
    code: Any = returncode
    sig: Any = None
    if returncode is not None and returncode < 0:
        code = None
        try:
            sig = signal.Signals(-returncode).name
        except ValueError:
            sig = -returncode
    return f"agent exited (code={code}, signal={sig})"


@dataclass
class PendingRequest:
    """One outstanding command, settled exactly once."""
    command_id: str
    command_type: str
    started_at: float
    deadline: float
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None
    outcome: str = "pending"    # pending | resolved | failed | timed_out | cancelled


class AgentProcess:
    """A single long-lived agent process and its correlation table."""

    def __init__(
        self,
        task_id: str,
        command: list[str],
        cwd: str,
        *,
        env: Optional[dict[str, str]] = None,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        stop_grace_period: float = DEFAULT_STOP_GRACE_PERIOD,
        on_event: Optional[Callable[[dict[str, Any]], None]] = None,
        on_exit: Optional[Callable[["AgentProcess", str], None]] = None,
        diagnostics: Optional[Diagnostics] = None,
        stderr_log_path: Optional[str] = None,
    ) -> None:
        self.task_id = task_id
        self.command = command
        self.cwd = cwd
        self.env = env
        self.command_timeout = command_timeout
        self.stop_grace_period = stop_grace_period
        self.on_event = on_event      # callback(payload) for unsolicited events
        self.on_exit = on_exit        # callback(process, reason) once the process is gone
        self.diagnostics = diagnostics
        self.stderr_log_path = stderr_log_path

        self.state = "new"            # new | running | exited
        self.stop_requested = False
        self.returncode: Optional[int] = None
        self.exit_reason: Optional[str] = None
        self.last_stdout_at: Optional[float] = None
        self.last_stderr_at: Optional[float] = None

        self._process: Optional[asyncio.subprocess.Process] = None
        self._pending: dict[str, PendingRequest] = {}
        self._lifecycle: asyncio.Queue = asyncio.Queue()
        self._exited = asyncio.Event()
        self._background: set[asyncio.Task] = set()

    # ── properties ───────────────────────────────────────────

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def is_alive(self) -> bool:
        return (
            self._process is not None
            and self.state == "running"
            and self._process.stdin is not None
            and not self._process.stdin.is_closing()
        )

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending_snapshot(self) -> list[dict[str, Any]]:
        now = asyncio.get_running_loop().time()
        return [
            {
                "id": p.command_id,
                "type": p.command_type,
                "ageMs": round((now - p.started_at) * 1000, 1),
            }
            for p in self._pending.values()
        ]

    # ── lifecycle ────────────────────────────────────────────

    async def start(self) -> None:
        """Launch the process and the reader/watcher/pump coroutines."""
        if self._process is not None:
            raise AgentProcessError("agent process already started", reason="unavailable")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=self.cwd,
                env=self.env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except (OSError, ValueError) as exc:
            raise AgentProcessError(f"failed to spawn agent: {exc}", reason="spawn_failed") from exc

        self.on_spawned()
        assert self._process.stdout is not None and self._process.stderr is not None
        readers = [
            self._spawn(self._read_stream(self._process.stdout, "stdout")),
            self._spawn(self._read_stream(self._process.stderr, "stderr")),
        ]
        self._spawn(self._watch_exit(readers))
        self._spawn(self._run_pump())

    async def stop(self) -> None:
        """Terminate gracefully, force-kill after the grace period, wait for exit."""
        if self._process is None or self._exited.is_set():
            return

        self._lifecycle.put_nowait(("stop_requested", None, None))
        logger.info("Stopping agent for task %s (pid=%s)", self.task_id, self.pid)
        try:
            self._process.terminate()
        except ProcessLookupError:
            pass

        try:
            await asyncio.wait_for(self._exited.wait(), timeout=self.stop_grace_period)
        except asyncio.TimeoutError:
            logger.warning(
                "Agent for task %s ignored SIGTERM for %.1fs; killing",
                self.task_id, self.stop_grace_period,
            )
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
            await self._exited.wait()

    async def wait_exited(self) -> None:
        await self._exited.wait()

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _read_stream(self, stream: asyncio.StreamReader, name: str) -> None:
        while True:
            try:
                raw = await stream.readline()
            except ValueError as exc:
                # Line over STREAM_LIMIT; asyncio has already discarded it.
                logger.warning("task %s %s line dropped: %s", self.task_id, name, exc)
                continue
            if not raw:
                return
            text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            self._lifecycle.put_nowait(("line", name, text))

    async def _watch_exit(self, readers: list[asyncio.Task]) -> None:
        assert self._process is not None
        returncode = await self._process.wait()
        # Let buffered output reach the queue before the exit does.
        _, still_reading = await asyncio.wait(readers, timeout=READER_DRAIN_TIMEOUT)
        for reader in still_reading:
            reader.cancel()
        self._lifecycle.put_nowait(("exit", returncode, None))

    async def _run_pump(self) -> None:
        while True:
            kind, first, second = await self._lifecycle.get()
            try:
                if kind == "line":
                    self.on_line_received(first, second)
                elif kind == "stop_requested":
                    self.on_stop_requested()
                elif kind == "exit":
                    self.on_exit_observed(first)
                    return
            except Exception:  # noqa: BLE001
                logger.exception("task %s: error handling %s lifecycle event", self.task_id, kind)
                if kind == "exit":
                    self._exited.set()
                    return

    # ── transitions ──────────────────────────────────────────

    def on_spawned(self) -> None:
        self.state = "running"
        logger.info("Agent started for task %s (pid=%s, cwd=%s)", self.task_id, self.pid, self.cwd)

    def on_line_received(self, stream: str, line: str) -> None:
        if stream == "stderr":
            self.last_stderr_at = time.time()
            text = line.strip()
            if text:
                logger.info("task %s stderr: %s", self.task_id, text[:500])
                if self.stderr_log_path:
                    append_to_file(self.stderr_log_path, text)
            return

        self.last_stdout_at = time.time()
        trimmed = line.strip()
        if not trimmed:
            return
        try:
            payload = json.loads(trimmed)
        except ValueError:
            logger.warning("task %s emitted non-JSON line: %s", self.task_id, trimmed[:300])
            return
        if not isinstance(payload, dict):
            logger.warning("task %s emitted non-object JSON: %s", self.task_id, trimmed[:300])
            return

        if payload.get("type") == "response" and isinstance(payload.get("id"), str):
            if not self._settle(payload["id"], "resolved", response=payload):
                logger.debug("task %s: discarding response for settled id %s", self.task_id, payload["id"])
            return

        if self.on_event:
            self.on_event(payload)

    def on_stop_requested(self) -> None:
        self.stop_requested = True

    def on_exit_observed(self, returncode: Optional[int]) -> None:
        self.returncode = returncode
        self.exit_reason = describe_exit(returncode)
        self.state = "exited"
        level = logging.INFO if self.stop_requested else logging.WARNING
        logger.log(level, "task %s: %s", self.task_id, self.exit_reason)
        try:
            for command_id in list(self._pending):
                self._settle(
                    command_id,
                    "failed",
                    error=AgentProcessError(self.exit_reason, reason="process_exited"),
                )
            if self.on_exit:
                self.on_exit(self, self.exit_reason)
        finally:
            self._exited.set()

    # ── commands ─────────────────────────────────────────────

    async def send(self, command: dict[str, Any], timeout: Optional[float] = None) -> dict[str, Any]:
        """Write *command* and wait for the response carrying the same id.

        Raises ``AgentCommandTimeout`` if no response arrives in time and
        ``AgentProcessError`` if the write fails or the process exits first.
        """
        if not self.is_alive:
            raise AgentProcessError("task process unavailable", reason="unavailable")
        assert self._process is not None and self._process.stdin is not None

        command_id = command["id"] if isinstance(command.get("id"), str) else new_id("child")
        payload = {**command, "id": command_id}
        loop = asyncio.get_running_loop()
        effective_timeout = self.command_timeout if timeout is None else timeout
        now = loop.time()
        pending = PendingRequest(
            command_id=command_id,
            command_type=str(payload.get("type", "")),
            started_at=now,
            deadline=now + effective_timeout,
            future=loop.create_future(),
        )
        pending.timer = loop.call_later(effective_timeout, self._expire, command_id)
        self._pending[command_id] = pending

        try:
            self._process.stdin.write((json.dumps(payload) + "\n").encode("utf-8"))
        except OSError as exc:
            self._settle(command_id, "failed", error=AgentProcessError(f"write failed: {exc}", reason="write_failed"))
        else:
            self._spawn(self._flush(command_id))

        try:
            return await pending.future
        except asyncio.CancelledError:
            self._settle(command_id, "cancelled")
            raise

    def notify(self, payload: dict[str, Any]) -> None:
        """Write *payload* without expecting a response."""
        if not self.is_alive:
            raise AgentProcessError("task process unavailable", reason="unavailable")
        assert self._process is not None and self._process.stdin is not None
        try:
            self._process.stdin.write((json.dumps(payload) + "\n").encode("utf-8"))
        except OSError as exc:
            raise AgentProcessError(f"write failed: {exc}", reason="write_failed") from exc
        self._spawn(self._flush(None))

    async def _flush(self, command_id: Optional[str]) -> None:
        assert self._process is not None and self._process.stdin is not None
        try:
            await self._process.stdin.drain()
        except OSError as exc:
            if command_id is None:
                logger.warning("task %s: write failed: %s", self.task_id, exc)
                return
            self._settle(command_id, "failed", error=AgentProcessError(f"write failed: {exc}", reason="write_failed"))

    def _expire(self, command_id: str) -> None:
        pending = self._pending.get(command_id)
        if pending is None:
            return
        self._settle(
            command_id,
            "timed_out",
            error=AgentCommandTimeout(f"Task command timed out: {pending.command_type}"),
        )

    def _settle(
        self,
        command_id: str,
        outcome: str,
        response: Optional[dict[str, Any]] = None,
        error: Optional[BaseException] = None,
    ) -> bool:
        """Remove and complete a pending entry. False if it was already settled."""
        pending = self._pending.pop(command_id, None)
        if pending is None:
            return False
        if pending.timer is not None:
            pending.timer.cancel()
        pending.outcome = outcome
        if not pending.future.done():
            if error is not None:
                pending.future.set_exception(error)
            else:
                pending.future.set_result(response or {})
        if self.diagnostics is not None:
            elapsed = asyncio.get_running_loop().time() - pending.started_at
            self.diagnostics.record_child(
                self.task_id,
                command_id,
                pending.command_type,
                outcome=outcome,
                duration_ms=elapsed * 1000,
                error=str(error) if error else None,
            )
        return True
