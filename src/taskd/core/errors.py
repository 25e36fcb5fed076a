"""Error taxonomy and the ``Result`` value returned by registry operations.

Codes, not exception types, travel to the host. Every registry operation
returns a ``Result`` so call sites handle the taxonomy explicitly.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

INVALID_REQUEST = "INVALID_REQUEST"
TASK_NOT_FOUND = "TASK_NOT_FOUND"
TASK_NOT_READY = "TASK_NOT_READY"
WORKSPACE_POLICY_VIOLATION = "WORKSPACE_POLICY_VIOLATION"
PI_PROCESS_DEAD = "PI_PROCESS_DEAD"
INTERNAL_ERROR = "INTERNAL_ERROR"

ERROR_CODES = {
    INVALID_REQUEST,
    TASK_NOT_FOUND,
    TASK_NOT_READY,
    WORKSPACE_POLICY_VIOLATION,
    PI_PROCESS_DEAD,
    INTERNAL_ERROR,
}

# Codes that represent transient unavailability
RETRYABLE_CODES = {TASK_NOT_READY}


@dataclass(frozen=True)
class TaskdError:
    code: str
    message: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": dict(self.details),
        }


def make_error(code: str, message: str, **details: Any) -> TaskdError:
    if code not in ERROR_CODES:
        raise ValueError(f"unknown error code: {code}")
    return TaskdError(code=code, message=message, retryable=code in RETRYABLE_CODES, details=details)


@dataclass(frozen=True)
class Result:
    value: Any = None
    error: Optional[TaskdError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(value=value)

    @classmethod
    def failure(cls, code: str, message: str, **details: Any) -> "Result":
        return cls(error=make_error(code, message, **details))
