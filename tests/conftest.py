from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Callable

import pytest

from taskd.core import logging_config
from taskd.core.config import Settings

FAKE_AGENT = str(Path(__file__).with_name("fake_agent.py"))


def make_settings(tmp_path: Path, workspace: Path | None, **overrides: Any) -> Settings:
    values: dict[str, Any] = dict(
        log_level="debug",
        log_dir=str(tmp_path / "logs"),
        host="127.0.0.1",
        port=0,
        control_port=0,
        sessions_root=str(tmp_path / "sessions"),
        tasks_root=str(tmp_path / "tasks"),
        workspace_root=str(workspace) if workspace is not None else None,
        agent_command=[sys.executable, FAKE_AGENT],
        default_provider="anthropic",
        default_model="claude-opus-4-5",
        default_thinking_level="high",
        initial_task_id=None,
        child_command_timeout=3.0,
        stop_grace_period=0.5,
        trace_capacity=50,
        exec_timeout=10,
        clear_logs_on_launch=False,
    )
    values.update(overrides)
    return Settings(**values)


class RecordingSink:
    """Collects what the registry would send to the host."""

    def __init__(self) -> None:
        self.events: list[tuple[str, Any, dict]] = []
        self.raw: list[dict] = []

    def emit_event(self, event: str, task_id: Any, payload: dict) -> None:
        self.events.append((event, task_id, payload))

    def forward_raw(self, payload: dict) -> None:
        self.raw.append(payload)

    def names(self) -> list[str]:
        return [e[0] for e in self.events]

    def of(self, event: str) -> list[tuple[str, Any, dict]]:
        return [e for e in self.events if e[0] == event]


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


@pytest.fixture(autouse=True)
def _isolated_log_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(logging_config, "_log_dir", str(tmp_path / "logs"))


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    (root / "project" / "src").mkdir(parents=True)
    return root


@pytest.fixture
def settings(tmp_path: Path, workspace: Path) -> Settings:
    return make_settings(tmp_path, workspace)
