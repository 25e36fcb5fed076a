from fastapi.testclient import TestClient

from taskd import __version__
from taskd.control.server import create_app
from taskd.core.gateway import HostGateway
from taskd.core.tasks import TASK_STATES, TaskRegistry


def _client(settings) -> TestClient:
    gateway = HostGateway(TaskRegistry(settings))
    return TestClient(create_app(gateway))


def test_health(settings) -> None:
    response = _client(settings).get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_control_status(settings) -> None:
    response = _client(settings).get("/control/status")
    assert response.status_code == 200
    data = response.json()
    assert data["version"] == __version__
    assert data["active_task_id"] is None
    assert data["tasks_total"] == 0
    assert data["tasks_by_state"] == dict.fromkeys(sorted(TASK_STATES), 0)
    assert data["host"]["connected"] is False
    assert data["defaults"]["model"] == "claude-opus-4-5"


def test_control_task_not_found(settings) -> None:
    response = _client(settings).get("/control/tasks/ghost")
    assert response.status_code == 404
