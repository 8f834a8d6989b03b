"""Exception hierarchy shared by every agentloop component."""

from __future__ import annotations


class AgentLoopError(Exception):
    """Base class for all agentloop errors."""


class ConfigError(AgentLoopError):
    """Raised for an invalid configuration request, e.g. an unknown agent name."""


class SessionBusyError(AgentLoopError):
    """Raised synchronously when a session already has an active request."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session is currently processing another request: {session_id!r}")
        self.session_id = session_id


class AgentBusyError(AgentLoopError):
    """Raised when an operation requires the agent to be idle (e.g. switching models)."""

    def __init__(self, message: str = "cannot change model while processing requests") -> None:
        super().__init__(message)


class RequestCancelledError(AgentLoopError):
    """A run was stopped by the user. Distinct from generic failures."""

    def __init__(self, session_id: str = "") -> None:
        super().__init__("request cancelled by user")
        self.session_id = session_id


class AgentRunError(AgentLoopError):
    """Wraps an unexpected failure caught at the run task boundary."""


class CompactionError(AgentLoopError):
    """Raised when summarising a session fails, including an empty summary."""
