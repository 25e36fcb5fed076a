"""Execution policy — controls which host shell commands ``bash`` may run.

Three modes:
  1. allow_all=True  → everything allowed except denied commands (default)
  2. allowed_commands non-empty → only those base commands allowed
  3. Both empty → nothing allowed

Matching is by **base command** (the first whitespace-delimited token),
not the full command string. For example, allowing "git" permits
"git status", "git log --oneline", etc.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass, field
from typing import Optional, Set

logger = logging.getLogger("taskd.policy")

# Dangerous patterns matched as substrings in the full command
DEFAULT_DENIED_PATTERNS = {
    "rm -rf /",
    ":(){:|:&};:",  # fork bomb
}

# Matched only against the extracted base command, never as substrings
DEFAULT_DENIED_BASE_COMMANDS = {
    "dd",
    "shutdown",
    "reboot",
}

DEFAULT_DENIED_BASE_PREFIXES = {
    "mkfs",
}

# Exit code reported when a command is killed by the exec timeout
TIMEOUT_EXIT_CODE = 124

# How long to wait for output to drain once a timed-out command is killed
KILL_DRAIN_TIMEOUT = 2.0


@dataclass
class ExecutionPolicy:
    allowed_commands: Set[str] = field(default_factory=set)
    denied_commands: Set[str] = field(default_factory=set)
    allow_all: bool = False

    def _extract_base_command(self, command: str) -> str:
        """Extract the base command (first token) from a command string."""
        command = command.strip()
        if not command:
            return ""
        parts = command.split()
        for part in parts:
            if "=" in part and not part.startswith("-"):
                continue  # skip VAR=value prefixes
            return part.lower()
        return parts[0].lower()

    def is_allowed(self, command: str) -> bool:
        if not command or not command.strip():
            logger.debug("Policy: empty command → denied")
            return False

        cmd_lower = command.strip().lower()
        for pattern in DEFAULT_DENIED_PATTERNS:
            if pattern in cmd_lower:
                logger.warning("Policy: command matches denied pattern '%s' → denied", pattern)
                return False

        base = self._extract_base_command(command)
        if base in DEFAULT_DENIED_BASE_COMMANDS:
            logger.warning("Policy: base command '%s' is always denied", base)
            return False
        for prefix in DEFAULT_DENIED_BASE_PREFIXES:
            if base.startswith(prefix):
                logger.warning("Policy: base command '%s' matches denied prefix '%s'", base, prefix)
                return False
        if base in self.denied_commands:
            logger.info("Policy: base command '%s' in denied_commands → denied", base)
            return False

        if self.allow_all:
            return True

        allowed = base in self.allowed_commands
        if not allowed:
            logger.info("Policy: base='%s' NOT in allowed_commands=%s → denied", base, self.allowed_commands)
        return allowed


def load_execution_policy() -> ExecutionPolicy:
    allow_all_raw = os.getenv("TASKD_ALLOW_ALL_COMMANDS", "true")
    allow_all = allow_all_raw.lower() in {"1", "true", "yes"}
    allowed = os.getenv("TASKD_ALLOWED_COMMANDS", "")
    allowed_set = {c.strip().lower() for c in allowed.split(",") if c.strip()}
    denied = os.getenv("TASKD_DENIED_COMMANDS", "")
    denied_set = {c.strip().lower() for c in denied.split(",") if c.strip()}

    logger.info(
        "Loaded execution policy: allow_all=%s, allowed=%s, denied=%s",
        allow_all, allowed_set or "(empty)", denied_set or "(empty)",
    )
    return ExecutionPolicy(allowed_commands=allowed_set, denied_commands=denied_set, allow_all=allow_all)


@dataclass
class CommandResult:
    output: str
    exit_code: int
    timed_out: bool = False

    def to_dict(self) -> dict:
        return {"output": self.output, "exitCode": self.exit_code, "timedOut": self.timed_out}


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    """Kill the shell and everything it started; the shell leads its own session."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except OSError as exc:
        logger.debug("killpg(%s) failed: %s", process.pid, exc)
    try:
        process.kill()
    except ProcessLookupError:
        pass


async def run_command(
    command: str,
    policy: ExecutionPolicy,
    timeout: float = 300,
    cwd: Optional[str] = None,
) -> CommandResult:
    """Run *command* through ``/bin/sh -lc`` subject to *policy*.

    stdout and stderr are merged. A non-zero exit is a normal result, not an
    error; a timeout kills the shell and reports ``TIMEOUT_EXIT_CODE``.
    """
    if not policy.is_allowed(command):
        raise PermissionError("command not allowed by policy")

    logger.info("Executing command (timeout=%ss, cwd=%s): %s", timeout, cwd, command[:200])
    try:
        process = await asyncio.create_subprocess_exec(
            "/bin/sh",
            "-lc",
            command,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
    except OSError as exc:
        logger.warning("Command failed to start: %s", exc)
        return CommandResult(output=str(exc), exit_code=1)

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        _kill_process_group(process)
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=KILL_DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Output of timed-out command did not drain: %s", command[:200])
            stdout = b""
        logger.warning("Command timed out after %ss: %s", timeout, command[:200])
        return CommandResult(
            output=stdout.decode("utf-8", errors="replace"),
            exit_code=TIMEOUT_EXIT_CODE,
            timed_out=True,
        )

    output = stdout.decode("utf-8", errors="replace")
    exit_code = process.returncode if process.returncode is not None else 1
    if exit_code != 0:
        logger.info("Command exited %d: %s", exit_code, output[-300:])
    return CommandResult(output=output, exit_code=exit_code)
