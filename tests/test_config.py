import os
from unittest.mock import patch

from taskd.core.config import Settings


def _clean_env() -> dict:
    return {k: v for k, v in os.environ.items() if not k.startswith(("TASKD_", "PIWORK_"))}


def test_defaults() -> None:
    with patch.dict(os.environ, _clean_env(), clear=True):
        settings = Settings.from_env()
    assert settings.host == "127.0.0.1"
    assert settings.port == 19384
    assert settings.control_port == 19385
    assert settings.workspace_root is None
    assert settings.default_provider == "anthropic"
    assert settings.default_model == "claude-opus-4-5"
    assert settings.default_thinking_level == "high"
    assert settings.child_command_timeout == 10.0
    assert settings.stop_grace_period == 1.2
    assert settings.trace_capacity == 200
    assert settings.clear_logs_on_launch is False
    assert settings.sessions_root.endswith(os.path.join(".taskd", "sessions"))


def test_piwork_aliases() -> None:
    env = _clean_env()
    env.update({
        "PIWORK_RPC_PORT": "20000",
        "PIWORK_WORKSPACE_ROOT": "/srv/ws",
        "PIWORK_TASKD_SESSIONS_ROOT": "/srv/sessions",
        "PIWORK_DEFAULT_MODEL": "gpt-5.2-codex",
        "PIWORK_INITIAL_TASK_ID": "main",
        "PIWORK_NODE_BIN": "/opt/node",
        "PIWORK_PI_CLI": "/opt/pi/cli.js",
    })
    with patch.dict(os.environ, env, clear=True):
        settings = Settings.from_env()
    assert settings.port == 20000
    assert settings.workspace_root == "/srv/ws"
    assert settings.sessions_root == "/srv/sessions"
    assert settings.default_model == "gpt-5.2-codex"
    assert settings.initial_task_id == "main"
    assert settings.agent_command == ["/opt/node", "/opt/pi/cli.js"]


def test_taskd_names_win_over_aliases() -> None:
    env = _clean_env()
    env.update({
        "TASKD_RPC_PORT": "1",
        "PIWORK_RPC_PORT": "2",
        "TASKD_AGENT_COMMAND": "python3 -u 'agent main.py'",
        "TASKD_CLEAR_LOGS_ON_LAUNCH": "yes",
        "TASKD_EXEC_TIMEOUT": "0.5",
        "TASKD_WORKSPACE_ROOT": "   ",
    })
    with patch.dict(os.environ, env, clear=True):
        settings = Settings.from_env()
    assert settings.port == 1
    assert settings.agent_command == ["python3", "-u", "agent main.py"]
    assert settings.clear_logs_on_launch is True
    assert settings.exec_timeout == 0.5
    # Blank values count as unset
    assert settings.workspace_root is None
