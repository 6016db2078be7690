from __future__ import annotations

from typing import Any


class TutorError(Exception):
    """
    Base class for every failure raised by the tutor service.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ConfigurationError(TutorError):
    pass


class RemoteError(TutorError):
    """
    A call to Gemini (or the follow-up video download) failed: network, auth, quota, service.
    """


class OperationTimeout(RemoteError):
    pass


class OperationCancelled(RemoteError):
    pass


class SchemaViolation(TutorError):
    """
    A structured response did not parse into the declared shape.
    """


class MalformedInput(TutorError):
    pass


class FlowInProgress(TutorError):
    def __init__(self, flow: str) -> None:
        super().__init__("Flow already in progress", {"flow": flow})
        self.flow = flow


class SessionClosed(TutorError):
    pass
