"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via COMPANION_* env vars,
or with a companion.yaml file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


# Optional async callback for outbound protocol events.
# Signature: async def callback(session_id, event_dict) -> None
OutboundCallback = Callable[[str, dict[str, Any]], Awaitable[None]]

_TRUTHY = {"1", "true", "yes"}


@dataclass
class CompanionConfig:
    """Session core configuration."""

    # Agent host endpoints. {session_id} is substituted per session.
    server_url: str = "http://127.0.0.1:3456"
    ws_path_template: str = "/ws/browser/{session_id}"
    probe_path_template: str = "/api/sessions/{session_id}"

    # Connect policy: bounded attempts with exponential backoff
    # (initial → ×2 ... capped at max).
    connect_attempts: int = 5
    connect_timeout_seconds: float = 10.0
    connect_backoff_initial: float = 0.2
    connect_backoff_max: float = 2.0
    # Reconnect automatically when an established transport drops.
    auto_reconnect: bool = True

    # Liveness probe of the remote agent process.
    # Set interval to 0 (or a negative value) to disable probing.
    probe_interval_seconds: float = 5.0
    probe_attempts: int = 3
    probe_timeout_seconds: float = 2.0

    # Per-session inbound event queue size
    event_queue_size: int = 5000

    # Name of the tool whose invocations spawn nested sub-agents
    task_tool_name: str = "Task"

    # Logging
    log_level: str = "INFO"

    # Optional async callback receiving every outbound event.
    outbound_callback: OutboundCallback | None = field(
        default=None, repr=False,
    )

    def ws_url(self, session_id: str) -> str:
        base = self.server_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return base + self.ws_path_template.format(session_id=session_id)

    def probe_url(self, session_id: str) -> str:
        base = self.server_url.rstrip("/")
        return base + self.probe_path_template.format(session_id=session_id)

    @classmethod
    def from_env(cls) -> CompanionConfig:
        """Load configuration from COMPANION_* environment variables."""
        env_vars = {
            k: v for k, v in os.environ.items() if k.startswith("COMPANION_")
        }
        if env_vars:
            logger.info(
                "CompanionConfig.from_env: COMPANION_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(env_vars.items())),
            )
        else:
            logger.debug("CompanionConfig.from_env: no COMPANION_* env vars set, using defaults")

        config = cls(
            server_url=os.getenv("COMPANION_SERVER_URL", cls.server_url),
            connect_attempts=int(os.getenv(
                "COMPANION_CONNECT_ATTEMPTS", str(cls.connect_attempts)
            )),
            connect_timeout_seconds=float(os.getenv(
                "COMPANION_CONNECT_TIMEOUT", str(cls.connect_timeout_seconds)
            )),
            connect_backoff_initial=float(os.getenv(
                "COMPANION_CONNECT_BACKOFF", str(cls.connect_backoff_initial)
            )),
            connect_backoff_max=float(os.getenv(
                "COMPANION_CONNECT_BACKOFF_MAX", str(cls.connect_backoff_max)
            )),
            auto_reconnect=(
                os.getenv("COMPANION_AUTO_RECONNECT", "1").lower() in _TRUTHY
            ),
            probe_interval_seconds=float(os.getenv(
                "COMPANION_PROBE_INTERVAL", str(cls.probe_interval_seconds)
            )),
            probe_attempts=int(os.getenv(
                "COMPANION_PROBE_ATTEMPTS", str(cls.probe_attempts)
            )),
            probe_timeout_seconds=float(os.getenv(
                "COMPANION_PROBE_TIMEOUT", str(cls.probe_timeout_seconds)
            )),
            event_queue_size=int(os.getenv(
                "COMPANION_QUEUE_SIZE", str(cls.event_queue_size)
            )),
            task_tool_name=os.getenv(
                "COMPANION_TASK_TOOL", cls.task_tool_name
            ),
            log_level=os.getenv("COMPANION_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "CompanionConfig.from_env: server=%s attempts=%d probe_interval=%.1fs log_level=%s",
            config.server_url, config.connect_attempts,
            config.probe_interval_seconds, config.log_level,
        )
        return config
