"""Companion engine — configuration, enums, and the error hierarchy."""
from .models import (
    ConnectionStatus,
    PermissionDecision,
    Remedy,
    RunStatus,
)
from .config import CompanionConfig
from .errors import (
    CompanionError,
    LogicError,
    MalformedEventError,
    NotConnectedError,
    SessionNotFoundError,
    StreamStateError,
    TransportConnectError,
    TransportError,
    UnknownPermissionError,
)

__all__ = [
    # Models
    "ConnectionStatus",
    "PermissionDecision",
    "Remedy",
    "RunStatus",
    # Config
    "CompanionConfig",
    # Errors
    "CompanionError",
    "LogicError",
    "MalformedEventError",
    "NotConnectedError",
    "SessionNotFoundError",
    "StreamStateError",
    "TransportConnectError",
    "TransportError",
    "UnknownPermissionError",
]
