"""In-memory traces of recent host and agent traffic.

Two fixed-capacity ring buffers keep the most recent request/response
pairs for postmortem inspection through ``get_runtime_diagnostics``.
Every entry is also mirrored to the JSONL call logs. Nothing in the
protocol depends on these buffers.
"""
from __future__ import annotations

import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from taskd.core.logging_config import log_child_call, log_host_call

DEFAULT_CAPACITY = 200


class TraceBuffer:
    """Ring buffer; the oldest entry is evicted once capacity is reached."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self.capacity = max(1, capacity)
        self._entries: Deque[Dict[str, Any]] = deque(maxlen=self.capacity)
        self._total = 0

    def append(self, entry: Dict[str, Any]) -> None:
        self._entries.append(entry)
        self._total += 1

    def snapshot(self) -> List[Dict[str, Any]]:
        return [dict(e) for e in self._entries]

    @property
    def total(self) -> int:
        """Entries ever recorded, including evicted ones."""
        return self._total

    def __len__(self) -> int:
        return len(self._entries)


class Diagnostics:
    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self.host = TraceBuffer(capacity)
        self.child = TraceBuffer(capacity)

    def record_host(
        self,
        request_id: Optional[str],
        request_type: str,
        *,
        ok: bool,
        code: Optional[str] = None,
        duration_ms: float = 0.0,
        replayed: bool = False,
        generation: str = "v2",
    ) -> None:
        entry: Dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "id": request_id,
            "type": request_type,
            "generation": generation,
            "ok": ok,
            "durationMs": round(duration_ms, 1),
        }
        if code:
            entry["code"] = code
        if replayed:
            entry["replayed"] = True
        self.host.append(entry)
        log_host_call(entry)

    def record_child(
        self,
        task_id: str,
        command_id: str,
        command_type: str,
        *,
        outcome: str,
        duration_ms: float,
        error: Optional[str] = None,
    ) -> None:
        entry: Dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "taskId": task_id,
            "id": command_id,
            "type": command_type,
            "outcome": outcome,
            "durationMs": round(duration_ms, 1),
        }
        if error:
            entry["error"] = error[:500]
        self.child.append(entry)
        log_child_call(entry)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "hostTrace": self.host.snapshot(),
            "childTrace": self.child.snapshot(),
            "hostTraceTotal": self.host.total,
            "childTraceTotal": self.child.total,
            "capacity": self.host.capacity,
        }
