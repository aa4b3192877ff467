"""Error taxonomy for the session engine."""

from __future__ import annotations

from typing import Any

# JSON-RPC code the ACP agents use for unknown resources (e.g. session/load).
RESOURCE_NOT_FOUND = -32002
OPERATOR_ERROR = -1


class ThreadError(RuntimeError):
    """Base class carrying a JSON-RPC style code and message."""

    def __init__(self, message: str, *, code: int | None = None, data: Any | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class TransportError(ThreadError):
    """The connection to the agent was lost or the agent process exited."""


class RequestFailed(ThreadError):
    """A single request/response round-trip came back with an error."""

    @classmethod
    def from_exception(cls, exc: BaseException) -> "RequestFailed":
        if isinstance(exc, RequestFailed):
            return exc
        code = getattr(exc, "code", None)
        data = getattr(exc, "data", None)
        message = str(exc) or type(exc).__name__
        target = SessionNotFound if _looks_like_not_found(code, message) else cls
        return target(message, code=code, data=data)


class SessionNotFound(RequestFailed):
    """session/load referenced a session the agent no longer knows."""


class OperatorError(ThreadError):
    """The caller asked for something the engine cannot do in its current state."""

    def __init__(self, message: str, *, data: Any | None = None) -> None:
        super().__init__(message, code=OPERATOR_ERROR, data=data)


def _looks_like_not_found(code: Any, message: str) -> bool:
    if code == RESOURCE_NOT_FOUND:
        return True
    lowered = message.lower()
    return "session" in lowered and "not found" in lowered
