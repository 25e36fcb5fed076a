from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException

from taskd import __version__
from taskd.core.gateway import HostGateway
from taskd.core.tasks import TASK_STATES


def create_app(gateway: HostGateway) -> FastAPI:
    """Read-only HTTP view of a running daemon."""
    registry = gateway.registry
    app = FastAPI(title="taskd", version=__version__)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/control/status")
    def control_status() -> dict[str, Any]:
        tasks = registry.list()
        states = {state: 0 for state in sorted(TASK_STATES)}
        for task in tasks:
            states[task.state] += 1
        return {
            "version": __version__,
            "host": gateway.status(),
            "active_task_id": registry.active_task_id,
            "workspace_root": registry.workspace_root,
            "defaults": dict(registry.defaults),
            "tasks_total": len(tasks),
            "tasks_by_state": states,
            "tasks_live": len([t for t in tasks if t.is_live]),
        }

    @app.get("/control/tasks/{task_id}")
    def control_task(task_id: str) -> dict[str, Any]:
        task = registry.get(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="task not found")
        return task.to_dict()

    return app
