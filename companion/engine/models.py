"""Core enums shared by the session core.

Single source of truth for connection, run, and permission states so the
registry, ingestion pipeline, and supervisor never disagree on spelling.
"""
from __future__ import annotations

from enum import Enum


class ConnectionStatus(str, Enum):
    """Transport state of a session. See supervisor.py for transitions."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class RunStatus(str, Enum):
    """What the remote agent is doing for this session."""
    IDLE = "idle"
    RUNNING = "running"
    COMPACTING = "compacting"


class PermissionDecision(str, Enum):
    """Human decision routed back for a permission request."""
    ALLOW = "allow"
    DENY = "deny"


class Remedy(str, Enum):
    """User-facing fix for a session that is not fully reachable."""
    RECONNECT = "reconnect"
    RELAUNCH = "relaunch"
