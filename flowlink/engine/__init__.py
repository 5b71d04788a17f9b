"""Workflow session engine: decoding, routing, streaming and prompts."""
from .models import (
    ApprovalDecision,
    ChatEvent,
    EventKind,
    PendingPrompt,
    PromptKind,
    Session,
    StopInfo,
    StopReason,
    WorkflowStatus,
)
from .config import WorkflowConfig
from .errors import (
    CheckpointDecodeError,
    PromptDeliveryError,
    SessionNotFoundError,
    TransportUnavailableError,
    UnresolvedSessionError,
    WorkflowError,
)

__all__ = [
    # Session manager (lazy import to avoid circular deps)
    "WorkflowSessionManager",
    # Components (lazy import)
    "CheckpointDecoder",
    "SessionStore",
    "SessionResolver",
    "EventRouter",
    "ResponseStreamer",
    "StreamConsumer",
    "InteractionController",
    # Models
    "ApprovalDecision",
    "ChatEvent",
    "EventKind",
    "PendingPrompt",
    "PromptKind",
    "Session",
    "StopInfo",
    "StopReason",
    "WorkflowStatus",
    # Config
    "WorkflowConfig",
    "FlowlinkConfig",
    "load_yaml_config",
    # Errors
    "CheckpointDecodeError",
    "PromptDeliveryError",
    "SessionNotFoundError",
    "TransportUnavailableError",
    "UnresolvedSessionError",
    "WorkflowError",
]


def __getattr__(name: str):
    if name == "WorkflowSessionManager":
        from .manager import WorkflowSessionManager
        return WorkflowSessionManager
    if name == "CheckpointDecoder":
        from .checkpoint import CheckpointDecoder
        return CheckpointDecoder
    if name == "SessionStore":
        from .session_store import SessionStore
        return SessionStore
    if name == "SessionResolver":
        from .resolver import SessionResolver
        return SessionResolver
    if name == "EventRouter":
        from .router import EventRouter
        return EventRouter
    if name == "ResponseStreamer":
        from .streamer import ResponseStreamer
        return ResponseStreamer
    if name == "StreamConsumer":
        from .streamer import StreamConsumer
        return StreamConsumer
    if name == "InteractionController":
        from .interaction import InteractionController
        return InteractionController
    if name == "FlowlinkConfig":
        from .yaml_config import FlowlinkConfig
        return FlowlinkConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
