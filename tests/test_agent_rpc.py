"""Tests for the agent process supervisor, driven against tests/fake_agent.py."""
from __future__ import annotations

import asyncio
import os
import sys

import pytest

from conftest import FAKE_AGENT, wait_until
from taskd.core.diagnostics import Diagnostics
from taskd.integrations.agent_rpc import (
    AgentCommandTimeout,
    AgentProcess,
    AgentProcessError,
    describe_exit,
    extract_stream_chunk,
)


def _make(tmp_path, **kwargs) -> tuple[AgentProcess, list, list]:
    events: list = []
    exits: list = []
    env = dict(os.environ)
    env.update(kwargs.pop("env", {}))
    proc = AgentProcess(
        "t1",
        [sys.executable, FAKE_AGENT],
        str(tmp_path),
        env=env,
        command_timeout=kwargs.pop("command_timeout", 3.0),
        stop_grace_period=kwargs.pop("stop_grace_period", 0.5),
        on_event=events.append,
        on_exit=lambda p, reason: exits.append(reason),
        **kwargs,
    )
    return proc, events, exits


# ── Stream chunk extraction ──────────────────────────────────

def test_extract_text_thinking_and_toolcall_deltas() -> None:
    for kind in ("text", "thinking", "toolcall"):
        payload = {"type": "message_update", "assistantMessageEvent": {"type": f"{kind}_delta", "delta": "x"}}
        assert extract_stream_chunk(payload) == {"chunk": "x", "kind": kind}


def test_extract_tool_output() -> None:
    assert extract_stream_chunk({"type": "tool_execution_update", "output": "out"}) == {"chunk": "out", "kind": "tool"}


def test_extract_ignores_other_events() -> None:
    assert extract_stream_chunk({"type": "agent_start"}) is None
    assert extract_stream_chunk({"type": "message_update", "assistantMessageEvent": {"type": "text_start"}}) is None
    assert extract_stream_chunk({"type": "message_update", "assistantMessageEvent": "bogus"}) is None
    assert extract_stream_chunk({"type": "tool_execution_update", "output": 3}) is None
    assert extract_stream_chunk("nope") is None


def test_describe_exit() -> None:
    assert describe_exit(3) == "agent exited (code=3, signal=None)"
    assert describe_exit(-9) == "agent exited (code=None, signal=SIGKILL)"


# ── Correlation ──────────────────────────────────────────────

def test_send_resolves_matching_response(tmp_path) -> None:
    async def scenario():
        diagnostics = Diagnostics(10)
        proc, events, _ = _make(tmp_path, diagnostics=diagnostics)
        await proc.start()
        try:
            response = await proc.send({"type": "get_available_models"})
            assert response["success"] is True
            assert response["data"]["models"][0]["id"] == "fake-1"
            assert proc.pending_count == 0
            trace = diagnostics.child.snapshot()
            assert trace[-1]["type"] == "get_available_models"
            assert trace[-1]["outcome"] == "resolved"
        finally:
            await proc.stop()
        return events

    events = asyncio.run(scenario())
    # Non-JSON, non-object and unmatched response lines never surface as events
    assert all(isinstance(e, dict) and e.get("type") != "response" for e in events)


def test_send_uses_caller_supplied_id(tmp_path) -> None:
    async def scenario():
        proc, _, _ = _make(tmp_path)
        await proc.start()
        try:
            response = await proc.send({"id": "fixed-1", "type": "whoami"})
            assert response["id"] == "fixed-1"
            assert response["data"]["cwd"] == os.path.realpath(str(tmp_path))
        finally:
            await proc.stop()

    asyncio.run(scenario())


def test_timeout_settles_pending_entry(tmp_path) -> None:
    async def scenario():
        diagnostics = Diagnostics(10)
        proc, _, _ = _make(tmp_path, diagnostics=diagnostics)
        await proc.start()
        try:
            with pytest.raises(AgentCommandTimeout) as excinfo:
                await proc.send({"type": "ignore"}, timeout=0.2)
            assert excinfo.value.reason == "timeout"
            assert proc.pending_count == 0
            assert diagnostics.child.snapshot()[-1]["outcome"] == "timed_out"
        finally:
            await proc.stop()

    asyncio.run(scenario())


def test_late_response_is_discarded(tmp_path) -> None:
    async def scenario():
        proc, events, _ = _make(tmp_path)
        await proc.start()
        try:
            with pytest.raises(AgentCommandTimeout):
                await proc.send({"type": "late", "delay": 0.4}, timeout=0.1)
            # The agent is single-threaded; this answer comes after the late one.
            response = await proc.send({"type": "whoami"})
            assert response["success"] is True
        finally:
            await proc.stop()
        return events

    events = asyncio.run(scenario())
    assert not any(e.get("type") == "response" for e in events)


def test_send_when_not_started_raises(tmp_path) -> None:
    async def scenario():
        proc, _, _ = _make(tmp_path)
        with pytest.raises(AgentProcessError) as excinfo:
            await proc.send({"type": "whoami"})
        assert excinfo.value.reason == "unavailable"

    asyncio.run(scenario())


# ── Events and output ────────────────────────────────────────

def test_events_are_delivered_in_order(tmp_path) -> None:
    async def scenario():
        proc, events, _ = _make(tmp_path)
        await proc.start()
        try:
            await proc.send({"type": "prompt", "message": "hi"})
            await wait_until(lambda: any(e.get("type") == "agent_end" for e in events))
        finally:
            await proc.stop()
        return [e["type"] for e in events]

    types = asyncio.run(scenario())
    assert types == ["agent_start", "message_update", "tool_execution_update", "agent_end"]


def test_notify_writes_without_correlation(tmp_path) -> None:
    async def scenario():
        proc, events, _ = _make(tmp_path)
        await proc.start()
        try:
            proc.notify({"type": "extension_ui_response", "id": "ui-1", "value": "yes"})
            await wait_until(lambda: any(e.get("type") == "extension_ack" for e in events))
            assert proc.pending_count == 0
        finally:
            await proc.stop()
        return events

    events = asyncio.run(scenario())
    ack = [e for e in events if e.get("type") == "extension_ack"][0]
    assert ack["payload"]["value"] == "yes"


def test_stderr_goes_to_agent_log(tmp_path) -> None:
    log_path = tmp_path / "logs" / "agent.log"

    async def scenario():
        proc, _, _ = _make(tmp_path, stderr_log_path=str(log_path))
        await proc.start()
        try:
            await wait_until(lambda: proc.last_stderr_at is not None)
        finally:
            await proc.stop()

    asyncio.run(scenario())
    assert "fake agent ready" in log_path.read_text()


# ── Exit and stop ────────────────────────────────────────────

def test_exit_fails_pending_requests(tmp_path) -> None:
    async def scenario():
        proc, _, exits = _make(tmp_path)
        await proc.start()
        with pytest.raises(AgentProcessError) as excinfo:
            await proc.send({"type": "prompt", "message": "crash"})
        assert excinfo.value.reason == "process_exited"
        await proc.wait_exited()
        assert proc.is_alive is False
        assert proc.stop_requested is False
        return exits

    exits = asyncio.run(scenario())
    assert exits == ["agent exited (code=3, signal=None)"]


def test_stop_terminates_gracefully(tmp_path) -> None:
    async def scenario():
        proc, _, exits = _make(tmp_path)
        await proc.start()
        await proc.stop()
        assert proc.stop_requested is True
        assert proc.state == "exited"
        # Stopping again is a no-op
        await proc.stop()
        return exits

    exits = asyncio.run(scenario())
    assert exits == ["agent exited (code=None, signal=SIGTERM)"]


def test_stop_kills_after_grace_period(tmp_path) -> None:
    async def scenario():
        proc, _, _ = _make(tmp_path, env={"FAKE_AGENT_IGNORE_SIGTERM": "1"}, stop_grace_period=0.3)
        await proc.start()
        await proc.send({"type": "whoami"})
        await proc.stop()
        return proc.returncode

    assert asyncio.run(scenario()) == -9


def test_spawn_failure_raises(tmp_path) -> None:
    async def scenario():
        proc = AgentProcess("t1", [str(tmp_path / "does-not-exist")], str(tmp_path))
        with pytest.raises(AgentProcessError) as excinfo:
            await proc.start()
        assert excinfo.value.reason == "spawn_failed"

    asyncio.run(scenario())
