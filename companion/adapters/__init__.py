"""Adapters package - session state, event ingestion, and transports.

This package contains the session registry, the per-session event
pipeline, the permission broker and the connection supervisor that
link an agent host to a frontend.
"""
from __future__ import annotations

__all__ = [
    "CompanionClient",
    "ConnectionSupervisor",
    "EventBus",
    "EventIngestor",
    "HttpLivenessProbe",
    "PermissionBroker",
    "SessionRegistry",
    "WebSocketTransport",
]

from companion.adapters.client import CompanionClient
from companion.adapters.event_bus import EventBus
from companion.adapters.ingestion import EventIngestor
from companion.adapters.permission_broker import PermissionBroker
from companion.adapters.registry import SessionRegistry
from companion.adapters.supervisor import ConnectionSupervisor
from companion.adapters.transport import HttpLivenessProbe, WebSocketTransport
