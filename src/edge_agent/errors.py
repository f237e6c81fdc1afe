"""Failure taxonomy for the agent pipeline and the client session.

Only :class:`ValidationError` and :class:`ConnectionNotReady` are reported to
the immediate caller. The remaining classes are raised at a collaborator
boundary and caught by the component that owns it, which logs them and
degrades to a substitute value (empty context, fallback reply, no-op).

The message of a client-side error doubles as the system notice shown in the
chat log.
"""

from __future__ import annotations

from typing import Any


class EdgeAgentError(Exception):
    """Base class for every error raised by :mod:`edge_agent`.

    Attributes:
        message: Human-readable description (also used as a visible notice).
        context: Arbitrary key/value pairs for log lines.
    """

    default_message = ""

    def __init__(self, message: str = "", **context: Any) -> None:
        self.message = message or self.default_message or self.__class__.__name__
        self.context = context
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


class ValidationError(EdgeAgentError):
    """Inbound message is empty after trimming. Fatal to the request only."""

    default_message = "Missing message"


class MemoryUnavailable(EdgeAgentError):
    """Embedding or vector index call failed; context falls back to empty."""

    default_message = "Memory pipeline unavailable"


class ModelUnavailable(EdgeAgentError):
    """Model invocation failed; the fallback reply is used instead."""

    default_message = "Model response unavailable"


class SchedulingFailure(EdgeAgentError):
    """Deferred task registration failed; logged only."""

    default_message = "Task scheduling failed"


class ConnectionNotReady(EdgeAgentError):
    """Client action blocked because the identity handshake did not complete."""

    default_message = "Connection is not ready. Check the server and try again."


class SendTimeout(EdgeAgentError):
    """No reply arrived before the send watchdog fired."""

    default_message = "No response yet. The server may still be processing or failed silently."
