"""Host protocol gateway — the single upstream TCP connection.

The host speaks newline-delimited JSON in one of two generations:

* **v2** — ``{"id", "type", "payload"}`` answered with
  ``{"id", "ok": true, "result"}`` or ``{"id", "ok": false, "error": {...}}``.
* **legacy** — flat fields, answered with
  ``{"type": "response", "command", "success", "data" | "error", "id"?}``.

Events ``{"type": "event", "event", "timestamp", "taskId", "payload"}`` and
raw agent events of the active task are written to the current connection.

Every host line is handled in its own task, so a slow agent never blocks
reading the next request. ``create_or_open_task``, ``switch_task`` and
``stop_task`` are idempotent by request id.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError

from taskd.core.diagnostics import Diagnostics
from taskd.core.errors import INTERNAL_ERROR, INVALID_REQUEST, Result
from taskd.core.tasks import TaskRegistry

logger = logging.getLogger("taskd.gateway")

IDEMPOTENT_TYPES = {"create_or_open_task", "switch_task", "stop_task"}
V2_TYPES = IDEMPOTENT_TYPES | {"get_runtime_diagnostics"}
HOST_STREAM_LIMIT = 16 * 1024 * 1024

# Flat legacy fields lifted into a payload when none is given
_FLAT_FIELDS = ("taskId", "message", "promptId", "provider", "model", "thinkingLevel",
                "workingFolder", "command", "directory")


class HostRequest(BaseModel):
    """A v2 request envelope."""
    model_config = ConfigDict(extra="allow")

    id: StrictStr = Field(min_length=1)
    type: StrictStr = Field(min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class Reply:
    """A handler outcome plus work to run once the response is on the wire."""
    result: Result
    then: Optional[Callable[[], Any]] = None


def normalize_payload(raw: Dict[str, Any]) -> Dict[str, Any]:
    if isinstance(raw.get("payload"), dict):
        return dict(raw["payload"])
    payload = {name: raw[name] for name in _FLAT_FIELDS if isinstance(raw.get(name), str)}
    if "model" not in payload and isinstance(raw.get("modelId"), str):
        payload["model"] = raw["modelId"]
    return payload


def is_v2_request(raw: Dict[str, Any]) -> bool:
    return "payload" in raw or raw.get("type") in V2_TYPES


def request_fingerprint(request_type: str, payload: Dict[str, Any]) -> str:
    return json.dumps({"type": request_type, "payload": payload}, sort_keys=True, default=str)


def v2_envelope(request_id: Optional[str], result: Result) -> Dict[str, Any]:
    if result.ok:
        return {"id": request_id, "ok": True, "result": result.value}
    return {"id": request_id, "ok": False, "error": result.error.to_dict()}  # type: ignore[union-attr]


def legacy_envelope(command: str, result: Result, request_id: Optional[str]) -> Dict[str, Any]:
    response: Dict[str, Any] = {"type": "response", "command": command, "success": result.ok}
    if result.ok:
        response["data"] = result.value
    else:
        response["error"] = result.error.message  # type: ignore[union-attr]
    if request_id:
        response["id"] = request_id
    return response


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class HostConnection:
    """One accepted host socket. Writes after close are dropped."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.peer = writer.get_extra_info("peername")
        self.closed = False

    def send(self, message: Dict[str, Any]) -> bool:
        if self.closed or self.writer.is_closing():
            return False
        try:
            self.writer.write((json.dumps(message, default=str) + "\n").encode("utf-8"))
        except (OSError, RuntimeError) as exc:
            logger.warning("Write to host %s failed: %s", self.peer, exc)
            self.close()
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.writer.close()


class HostGateway:
    def __init__(self, registry: TaskRegistry, diagnostics: Optional[Diagnostics] = None) -> None:
        self.registry = registry
        self.diagnostics = diagnostics or registry.diagnostics
        registry.event_sink = self
        self.connection: Optional[HostConnection] = None
        self.connections_accepted = 0
        self.port: Optional[int] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._responses: Dict[str, Tuple[str, Dict[str, Any]]] = {}
        self._in_flight: Dict[str, Tuple[str, asyncio.Future]] = {}
        self._handlers: set[asyncio.Task] = set()

    # ── transport ────────────────────────────────────────────

    async def start(self, host: str, port: int) -> int:
        """Listen on host:port; returns the bound port."""
        self._server = await asyncio.start_server(self._on_connect, host, port, limit=HOST_STREAM_LIMIT)
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info("Listening for host connections on %s:%s", host, self.port)
        return self.port

    async def stop(self) -> None:
        if self.connection is not None:
            self.connection.close()
            self.connection = None
        for handler in list(self._handlers):
            handler.cancel()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    def attach(self, conn: HostConnection) -> None:
        """Make *conn* authoritative, closing whichever connection it preempts."""
        previous = self.connection
        if previous is not None and previous is not conn:
            logger.info("Host %s preempted by %s", previous.peer, conn.peer)
            previous.close()
        self.connection = conn
        self.connections_accepted += 1

    async def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        conn = HostConnection(reader, writer)
        logger.info("Host connected: %s", conn.peer)
        self.attach(conn)
        try:
            while not conn.closed:
                try:
                    raw = await reader.readline()
                except ValueError as exc:
                    logger.warning("Host line dropped: %s", exc)
                    continue
                except ConnectionError:
                    break
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").strip()
                if line:
                    self._spawn(self.handle_line(line, conn))
        finally:
            logger.info("Host disconnected: %s", conn.peer)
            if self.connection is conn:
                self.connection = None
            conn.close()

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._handlers.add(task)
        task.add_done_callback(self._handlers.discard)

    def _respond(self, conn: Optional[HostConnection], message: Dict[str, Any]) -> None:
        if conn is None:
            return
        if conn is not self.connection or conn.closed:
            logger.debug("Dropping response for closed connection: %s", message.get("id"))
            return
        conn.send(message)

    # ── event sink ───────────────────────────────────────────

    def emit_event(self, event: str, task_id: Optional[str], payload: Dict[str, Any]) -> None:
        if self.connection is None:
            return
        self.connection.send({
            "type": "event",
            "event": event,
            "timestamp": _timestamp(),
            "taskId": task_id,
            "payload": payload,
        })

    def forward_raw(self, payload: Dict[str, Any]) -> None:
        if self.connection is not None:
            self.connection.send(payload)

    # ── request handling ─────────────────────────────────────

    async def handle_line(self, line: str, conn: Optional[HostConnection]) -> None:
        try:
            await self._handle_line(line, conn)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to handle host line: %s", line[:300])

    async def _handle_line(self, line: str, conn: Optional[HostConnection]) -> None:
        started = asyncio.get_running_loop().time()
        try:
            raw = json.loads(line)
        except ValueError:
            self._reject(conn, None, "invalid JSON", started)
            return
        if not isinstance(raw, dict) or not isinstance(raw.get("type"), str):
            request_id = raw.get("id") if isinstance(raw, dict) and isinstance(raw.get("id"), str) else None
            self._reject(conn, request_id, "request must be an object with a string type", started)
            return

        if is_v2_request(raw):
            await self._handle_v2(raw, conn, started)
        else:
            await self._handle_legacy(raw, conn, started)

    def _reject(self, conn: Optional[HostConnection], request_id: Optional[str], message: str, started: float) -> None:
        result = Result.failure(INVALID_REQUEST, message)
        self._respond(conn, v2_envelope(request_id, result))
        self._record(request_id, "<invalid>", result, started)

    def _record(self, request_id: Optional[str], request_type: str, result: Result, started: float,
                *, replayed: bool = False, generation: str = "v2") -> None:
        self.diagnostics.record_host(
            request_id,
            request_type,
            ok=result.ok,
            code=result.error.code if result.error else None,
            duration_ms=(asyncio.get_running_loop().time() - started) * 1000,
            replayed=replayed,
            generation=generation,
        )

    async def _run_then(self, reply: Reply) -> None:
        if reply.then is None:
            return
        outcome = reply.then()
        if asyncio.iscoroutine(outcome):
            await outcome

    async def _handle_v2(self, raw: Dict[str, Any], conn: Optional[HostConnection], started: float) -> None:
        raw_id = raw.get("id") if isinstance(raw.get("id"), str) else None
        candidate = dict(raw)
        if "payload" not in candidate:
            candidate["payload"] = normalize_payload(raw)
        try:
            request = HostRequest.model_validate(candidate)
        except ValidationError as exc:
            errors = [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]
            result = Result.failure(INVALID_REQUEST, "invalid request envelope", errors=errors)
            self._respond(conn, v2_envelope(raw_id, result))
            self._record(raw_id, str(raw.get("type")), result, started)
            return

        if request.type not in IDEMPOTENT_TYPES:
            reply = await self._execute_v2(request)
            self._respond(conn, v2_envelope(request.id, reply.result))
            self._record(request.id, request.type, reply.result, started)
            await self._run_then(reply)
            return

        fingerprint = request_fingerprint(request.type, request.payload)
        cached = self._responses.get(request.id)
        in_flight = self._in_flight.get(request.id)
        if cached is not None or in_flight is not None:
            known_fingerprint = cached[0] if cached is not None else in_flight[0]  # type: ignore[index]
            if known_fingerprint != fingerprint:
                result = Result.failure(INVALID_REQUEST, "Duplicate request id with different payload")
                self._respond(conn, v2_envelope(request.id, result))
                self._record(request.id, request.type, result, started)
                return
            if cached is not None:
                envelope = cached[1]
            else:
                envelope = await asyncio.shield(in_flight[1])  # type: ignore[index]
            logger.info("Replaying response for %s %s", request.type, request.id)
            self._respond(conn, envelope)
            self.diagnostics.record_host(
                request.id, request.type, ok=bool(envelope.get("ok")),
                code=(envelope.get("error") or {}).get("code"),
                duration_ms=(asyncio.get_running_loop().time() - started) * 1000,
                replayed=True,
            )
            return

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._in_flight[request.id] = (fingerprint, future)
        try:
            reply = await self._execute_v2(request)
            envelope = v2_envelope(request.id, reply.result)
            if reply.result.ok or not reply.result.error.retryable:  # type: ignore[union-attr]
                self._responses[request.id] = (fingerprint, envelope)
            future.set_result(envelope)
        finally:
            self._in_flight.pop(request.id, None)
            if not future.done():
                future.cancel()

        self._respond(conn, envelope)
        self._record(request.id, request.type, reply.result, started)
        await self._run_then(reply)

    async def _execute_v2(self, request: HostRequest) -> Reply:
        try:
            return await self._dispatch_v2(request)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unhandled error in %s %s", request.type, request.id)
            return Reply(Result.failure(INTERNAL_ERROR, str(exc) or exc.__class__.__name__))

    async def _dispatch_v2(self, request: HostRequest) -> Reply:
        registry = self.registry
        payload = request.payload
        kind = request.type

        if kind == "create_or_open_task":
            return Reply(await registry.create_or_open_task(payload.get("taskId"), payload))
        if kind == "switch_task":
            checked = registry.ensure_switchable(payload.get("taskId"))
            if not checked.ok:
                return Reply(checked)
            task_id = payload["taskId"]
            return Reply(checked, then=lambda: registry.switch_task(task_id))
        if kind == "prompt":
            begun = registry.begin_prompt(payload.get("message"), payload.get("promptId"))
            if not begun.ok:
                return Reply(begun)
            ticket = begun.value
            return Reply(Result.success(ticket.to_dict()), then=lambda: registry.deliver_prompt(ticket))
        if kind == "stop_task":
            return Reply(await registry.stop_task(payload.get("taskId")))
        if kind == "get_state":
            return Reply(Result.success(registry.snapshot()))
        if kind == "get_runtime_diagnostics":
            return Reply(Result.success({**registry.runtime_diagnostics(), "gateway": self.status()}))
        if kind == "get_available_models":
            return Reply(await registry.get_available_models(fallback=False))
        if kind == "set_model":
            return Reply(await registry.set_model(
                payload.get("provider"),
                payload.get("model") or payload.get("modelId"),
                payload.get("thinkingLevel"),
            ))
        if kind == "extension_ui_response":
            return Reply(registry.forward_extension_ui_response(payload))
        if kind == "bash":
            return Reply(await registry.run_shell(payload.get("command"), payload.get("directory")))
        return Reply(Result.failure(INVALID_REQUEST, f"Unknown request type: {kind}", type=kind))

    async def _handle_legacy(self, raw: Dict[str, Any], conn: Optional[HostConnection], started: float) -> None:
        command = raw["type"]
        request_id = raw.get("id") if isinstance(raw.get("id"), str) else None
        try:
            result = await self._dispatch_legacy(command, raw, normalize_payload(raw))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unhandled error in legacy %s", command)
            result = Result.failure(INTERNAL_ERROR, str(exc) or exc.__class__.__name__)
        self._respond(conn, legacy_envelope(command, result, request_id))
        self._record(request_id, command, result, started, generation="legacy")

    async def _dispatch_legacy(self, command: str, raw: Dict[str, Any], fields: Dict[str, Any]) -> Result:
        registry = self.registry
        if command == "get_state":
            return Result.success(registry.legacy_state())
        if command == "get_available_models":
            return await registry.get_available_models(fallback=True)
        if command == "set_model":
            return await registry.set_model(
                fields.get("provider"), fields.get("model"), fields.get("thinkingLevel"), wait=False,
            )
        if command == "prompt":
            return await registry.prompt_active_task(fields.get("message"), fields.get("promptId"))
        if command == "extension_ui_response":
            return registry.forward_extension_ui_response(raw)
        if command == "bash":
            return await registry.run_shell(fields.get("command"), fields.get("directory"))
        if command == "switch_session":
            return Result.failure(INVALID_REQUEST, "switch_session is unsupported in taskd mode")
        return Result.failure(INVALID_REQUEST, f"Unknown command: {command}")

    # ── status ───────────────────────────────────────────────

    def status(self) -> Dict[str, Any]:
        return {
            "connected": self.connection is not None and not self.connection.closed,
            "peer": str(self.connection.peer) if self.connection else None,
            "port": self.port,
            "connectionsAccepted": self.connections_accepted,
            "cachedResponses": len(self._responses),
            "inFlight": len(self._in_flight),
            "handlers": len(self._handlers),
        }
