"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via FLOWLINK_* env vars,
or load a YAML file with yaml_config.load_yaml_config().
"""
from __future__ import annotations

import inspect
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


# Async observer for session-changed signals.
# Signature: async def listener(session_id: str) -> None
SessionListener = Callable[[str], Awaitable[None]]

# Receives non-fatal errors (decode failures, unresolved events).
ErrorCallback = Callable[[Exception], Any]


async def fire_callback(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Invoke a sync or async callback, logging and swallowing its errors."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        # Never let observer errors break event ingestion
        logger.exception("Callback %r raised", callback)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes"}


@dataclass
class WorkflowConfig:
    """Workflow session manager configuration."""

    # Model identifier forwarded as selectedModelIdentifier
    model: str | None = None
    # Project identity. Explicit values win over the identity provider.
    project_id: str | None = None
    namespace_id: str | None = None
    workflow_type: str = "chat"
    # Append " (file: name)" to goals that reference the current file.
    enhance_goal_with_file: bool = True

    # Overall per-session timeout enforced by the host via reap_expired().
    # Set to 0 (or a negative value) to disable.
    session_timeout_seconds: float = 0.0

    event_queue_size: int = 5000

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None

    # Real-time channel
    socketio_path: str = "/socket.io/"
    reconnect_attempts: int = 5
    reconnect_delay_seconds: float = 1.0

    # Local command execution requested by the backend.
    # Set to 0 (or a negative value) to disable timeout.
    command_timeout_seconds: float = 0.0

    @classmethod
    def from_env(cls) -> WorkflowConfig:
        """Load configuration from FLOWLINK_* environment variables."""
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith("FLOWLINK_")
        }
        if overrides:
            logger.info(
                "WorkflowConfig.from_env: FLOWLINK_* env overrides: %s",
                ", ".join(sorted(overrides)),
            )
        else:
            logger.debug("WorkflowConfig.from_env: no FLOWLINK_* env vars set, using defaults")

        config = cls(
            model=os.getenv("FLOWLINK_MODEL") or None,
            project_id=os.getenv("FLOWLINK_PROJECT_ID") or None,
            namespace_id=os.getenv("FLOWLINK_NAMESPACE_ID") or None,
            workflow_type=os.getenv("FLOWLINK_WORKFLOW_TYPE", cls.workflow_type),
            enhance_goal_with_file=_env_bool(
                "FLOWLINK_ENHANCE_GOAL", cls.enhance_goal_with_file,
            ),
            session_timeout_seconds=float(os.getenv(
                "FLOWLINK_SESSION_TIMEOUT", str(cls.session_timeout_seconds),
            )),
            event_queue_size=int(os.getenv(
                "FLOWLINK_QUEUE_SIZE", str(cls.event_queue_size),
            )),
            log_level=os.getenv("FLOWLINK_LOG_LEVEL", cls.log_level),
            log_file=os.getenv("FLOWLINK_LOG_FILE") or None,
            socketio_path=os.getenv("FLOWLINK_SOCKETIO_PATH", cls.socketio_path),
            reconnect_attempts=int(os.getenv(
                "FLOWLINK_RECONNECT_ATTEMPTS", str(cls.reconnect_attempts),
            )),
            reconnect_delay_seconds=float(os.getenv(
                "FLOWLINK_RECONNECT_DELAY", str(cls.reconnect_delay_seconds),
            )),
            command_timeout_seconds=float(os.getenv(
                "FLOWLINK_COMMAND_TIMEOUT", str(cls.command_timeout_seconds),
            )),
        )
        logger.info(
            "WorkflowConfig.from_env: model=%s project=%s namespace=%s log_level=%s",
            config.model, config.project_id, config.namespace_id, config.log_level,
        )
        return config
