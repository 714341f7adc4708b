from __future__ import annotations

from typing import Any, Optional


class AgentError(Exception):
    """Base class for conversational agent failures."""


class _HttpFailure(AgentError):
    def __init__(self, message: str, *, status: Optional[int] = None, body: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is None:
            return base
        return f"{base} (status={self.status})"


class SessionCreationError(_HttpFailure):
    """Creating a session failed or the response carried no usable identifier."""


class TransportError(_HttpFailure):
    """Network or stream failure while talking to the relay."""


class UserCancelled(AgentError):
    """The caller aborted an in-flight turn."""

    def __init__(self, message: str = "Aborted") -> None:
        super().__init__(message)
