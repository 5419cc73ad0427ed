"""Application-level exception types for termloop."""

from __future__ import annotations

import traceback
from typing import Any


class TermloopError(Exception):
    """Base exception for termloop."""


class ConfigurationError(TermloopError):
    """Base exception for configuration and startup validation errors."""


class ModelNotConfiguredError(ConfigurationError):
    """Raised when no model is configured for a run."""


class RunCancelledError(TermloopError):
    """Raised when a run's cancellation token fires."""

    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


class ToolArgumentsError(TermloopError):
    """Raised when model-supplied tool arguments fail validation."""

    def __init__(self, tool_name: str, detail: str) -> None:
        super().__init__(f"Parameter validation error for {tool_name}: {detail}")
        self.tool_name = tool_name
        self.detail = detail


class ModelInvocationError(TermloopError):
    """Raised when a model call keeps failing after every retry."""

    def __init__(self, message: str, *, attempts: int, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.cause = cause


class ModelStreamError(TermloopError):
    """Raised when a provider stream reports an error or ends without a result."""


class StructuredDecodingError(TermloopError):
    """Raised when a model reply cannot be decoded into the expected schema."""


class ToolExecutionError(TermloopError):
    """Raised by a tool executor; rendered into the conversation as a tool result."""


class TerminalBusyError(ToolExecutionError):
    """Raised when a foreground command is requested on a busy terminal."""


class PersistenceError(TermloopError):
    """Raised when the session store cannot read or write a session."""


class RecursionLimitError(TermloopError):
    """Raised when a run exceeds its node-visit budget."""


def extract_error_details(exc: BaseException) -> str:
    """Render provider details (status, body) and the stack trace of an exception."""

    parts: list[str] = []
    status = _first_attr(exc, "status_code", "status")
    if status is not None:
        parts.append(f"status: {status}")
    body = _first_attr(exc, "body", "response_body")
    if body is not None:
        parts.append(f"body: {body}")
    cause = getattr(exc, "cause", None) or exc.__cause__
    if cause is not None and cause is not exc:
        parts.append(f"cause: {type(cause).__name__}: {cause}")
    parts.append("".join(traceback.format_exception(exc)).rstrip())
    return "\n".join(parts)


def _first_attr(obj: Any, *names: str) -> Any:
    for name in names:
        value = getattr(obj, name, None)
        if value is not None:
            return value
    return None
