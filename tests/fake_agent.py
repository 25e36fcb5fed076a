"""Scripted stand-in for the coding agent, speaking the line-JSON RPC protocol.

Command types it understands:

    set_model, get_available_models   answered with success
    whoami                            answers with cwd, env and argv
    ignore                            never answered
    late                              answered after ``delay`` seconds
    prompt                            ack, then a short event stream ending in agent_end;
                                      message "crash" exits, "reject" fails the ack,
                                      "hang" acks but never ends
    extension_ui_response             echoed back as an ``extension_ack`` event

Set FAKE_AGENT_IGNORE_SIGTERM=1 to make it ignore SIGTERM.
"""
import json
import os
import signal
import sys
import time


def emit(message):
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def respond(command, success=True, data=None, error=None):
    message = {"type": "response", "id": command.get("id"), "command": command.get("type"), "success": success}
    if success:
        message["data"] = data if data is not None else {}
    else:
        message["error"] = error or "failed"
    emit(message)


def handle(command):
    kind = command.get("type")
    if kind == "set_model":
        respond(command, data={"provider": command.get("provider"), "modelId": command.get("modelId")})
    elif kind == "get_available_models":
        respond(command, data={"models": [{"id": "fake-1", "name": "Fake One", "provider": "fake"}]})
    elif kind == "whoami":
        respond(command, data={
            "cwd": os.getcwd(),
            "workingDir": os.environ.get("PI_WORKING_DIR"),
            "taskId": os.environ.get("TASKD_TASK_ID"),
            "argv": sys.argv[1:],
        })
    elif kind == "ignore":
        pass
    elif kind == "late":
        time.sleep(float(command.get("delay", 0.5)))
        respond(command, data={"late": True})
    elif kind == "prompt":
        message = command.get("message", "")
        if message == "crash":
            sys.exit(3)
        if message == "reject":
            respond(command, success=False, error="rejected by agent")
            return
        respond(command)
        if message == "hang":
            return
        emit({"type": "agent_start"})
        emit({
            "type": "message_update",
            "assistantMessageEvent": {"type": "text_delta", "delta": "echo: " + message},
        })
        emit({"type": "tool_execution_update", "toolCallId": "t1", "output": "tool-out"})
        emit({"type": "agent_end", "usage": {"input": 1, "output": 2}})
    elif kind == "extension_ui_response":
        emit({"type": "extension_ack", "payload": command})
    else:
        respond(command, success=False, error="unknown command: %s" % kind)


def main():
    if os.environ.get("FAKE_AGENT_IGNORE_SIGTERM"):
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    sys.stdout.write("fake agent booting\n")
    sys.stdout.flush()
    emit([1, 2, 3])
    emit({"type": "response", "id": "nobody", "success": True})
    sys.stderr.write("fake agent ready\n")
    sys.stderr.flush()

    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        try:
            command = json.loads(line)
        except ValueError:
            continue
        handle(command)


if __name__ == "__main__":
    main()
