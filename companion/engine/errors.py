"""Exception hierarchy for the session core.

Specific exceptions for each failure mode. Logic errors are raised to
the direct caller; transport errors are retried before they surface.
Nothing here is meant to terminate the process.
"""
from __future__ import annotations


class CompanionError(Exception):
    """Base exception for all session core errors."""


class TransportError(CompanionError):
    """The transport to the agent host failed."""


class TransportConnectError(TransportError):
    """Could not establish the transport after bounded retries."""
    def __init__(self, session_id: str, attempts: int, reason: str):
        self.session_id = session_id
        self.attempts = attempts
        self.reason = reason
        super().__init__(
            f"Failed to connect session {session_id} "
            f"after {attempts} attempt(s): {reason}"
        )


class NotConnectedError(TransportError):
    """An outbound event was sent on a session with no open transport."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} is not connected")


class LogicError(CompanionError):
    """Caller asked for something that does not exist or is out of order."""


class SessionNotFoundError(LogicError):
    """Mutation targeted an unknown or already removed session."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Unknown session: {session_id}")


class UnknownPermissionError(LogicError):
    """Resolve targeted a permission request that is not pending."""
    def __init__(self, session_id: str, request_id: str):
        self.session_id = session_id
        self.request_id = request_id
        super().__init__(
            f"No pending permission request {request_id} "
            f"in session {session_id}"
        )


class StreamStateError(LogicError):
    """Stream delta or block arrived with no stream in flight."""
    def __init__(self, session_id: str, operation: str):
        self.session_id = session_id
        self.operation = operation
        super().__init__(
            f"Cannot {operation} in session {session_id}: no active stream"
        )


class MalformedEventError(CompanionError):
    """Inbound event could not be decoded."""
    def __init__(self, reason: str, data: object = None):
        self.reason = reason
        self.data = data
        super().__init__(f"Malformed event: {reason}")
