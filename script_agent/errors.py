"""Failure taxonomy for the agent runtime.

None of these are fatal to the agent process: each is caught at the boundary
of the component that raises it and logged.
"""

from __future__ import annotations


class AgentError(Exception):
    """Base class for agent runtime errors."""


class TransportFailure(AgentError):
    """The connection dropped or could not be established."""


class MalformedMessage(AgentError):
    """An inbound frame could not be parsed or failed field validation."""

    def __init__(self, reason: str, raw: object = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.raw = raw


class AuthenticationFailure(AgentError):
    """The authentication endpoint rejected the device or returned garbage."""


class ScriptFault(AgentError):
    """An uncaught error escaped a running script."""

    def __init__(self, script_id: str, message: str) -> None:
        super().__init__(f"{script_id}: {message}")
        self.script_id = script_id
        self.message = message


class RetryExhausted(AgentError):
    """Automatic reconnection reached its attempt ceiling."""
