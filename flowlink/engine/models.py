"""Core data models for the workflow session manager.

All dataclasses and enums shared by the router, streamer and interaction
controller. Single source of truth to avoid circular imports.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


PLACEHOLDER_PREFIX = "local-"


class WorkflowStatus(str, Enum):
    """Workflow lifecycle states. See lifecycle.py for transition rules."""
    CREATED = "CREATED"
    RUNNING = "RUNNING"
    TOOL_CALL_APPROVAL_REQUIRED = "TOOL_CALL_APPROVAL_REQUIRED"
    INPUT_REQUIRED = "INPUT_REQUIRED"
    PLAN_APPROVAL_REQUIRED = "PLAN_APPROVAL_REQUIRED"
    FINISHED = "FINISHED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_awaiting(self) -> bool:
        return self in AWAITING_STATUSES

    @classmethod
    def parse(cls, value: Any) -> WorkflowStatus | None:
        """Map a raw status value onto the enum, or None if unknown."""
        if isinstance(value, WorkflowStatus):
            return value
        if not isinstance(value, str):
            return None
        normalized = value.strip().upper()
        if normalized == "STARTING":
            return cls.CREATED
        try:
            return cls(normalized)
        except ValueError:
            return None


TERMINAL_STATUSES = frozenset({
    WorkflowStatus.FINISHED,
    WorkflowStatus.FAILED,
    WorkflowStatus.STOPPED,
})

AWAITING_STATUSES = frozenset({
    WorkflowStatus.TOOL_CALL_APPROVAL_REQUIRED,
    WorkflowStatus.INPUT_REQUIRED,
    WorkflowStatus.PLAN_APPROVAL_REQUIRED,
})

STATUS_ICONS: dict[WorkflowStatus, str] = {
    WorkflowStatus.CREATED: "🔵",
    WorkflowStatus.RUNNING: "⏳",
    WorkflowStatus.FINISHED: "✅",
    WorkflowStatus.FAILED: "❌",
    WorkflowStatus.STOPPED: "⏹️",
    WorkflowStatus.INPUT_REQUIRED: "❓",
    WorkflowStatus.PLAN_APPROVAL_REQUIRED: "📋",
    WorkflowStatus.TOOL_CALL_APPROVAL_REQUIRED: "🔧",
}


class EventKind(str, Enum):
    """Tag of a chat log entry."""
    USER = "user"
    AGENT = "agent"
    TOOL = "tool"
    REQUEST = "request"
    # Kept so log positions stay aligned with the backend's list.
    UNKNOWN = "unknown"


class ApprovalDecision(str, Enum):
    """User decision on a tool call approval request.

    Values are the wire strings the backend expects.
    """
    APPROVE_ONCE = "approve_once"
    APPROVE_FOR_SESSION = "approve-for-session"
    REJECT = "reject"


class PromptKind(str, Enum):
    TOOL_APPROVAL = "tool_approval"
    INPUT = "input"
    PLAN_APPROVAL = "plan_approval"


class StopReason(str, Enum):
    COMPLETE = "complete"
    ERROR = "error"
    STOPPED = "stopped"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_placeholder_id() -> str:
    return f"{PLACEHOLDER_PREFIX}{uuid.uuid4()}"


@dataclass
class ChatEvent:
    """One entry in a session's event log."""
    kind: EventKind
    content: str = ""
    tool_name: str | None = None
    tool_args: dict[str, Any] = field(default_factory=dict)
    correlation_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def has_tool(self) -> bool:
        return bool(self.tool_name)


@dataclass
class PendingPrompt:
    """The single outstanding interaction for a session."""
    key: str
    kind: PromptKind
    correlation_id: str | None = None
    tool_name: str | None = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class StopInfo:
    """Terminal signal delivered to the consumer's on_stop."""
    reason: StopReason
    error: str | None = None


@dataclass
class Session:
    """Holds all state for one workflow instance."""

    session_id: str = field(default_factory=make_placeholder_id)
    goal: str = ""
    status: WorkflowStatus = WorkflowStatus.CREATED
    event_log: list[ChatEvent] = field(default_factory=list)
    cursor: int = 0
    errors: list[str] = field(default_factory=list)
    pending_prompt: PendingPrompt | None = None
    is_placeholder: bool = True
    plan: list[Any] = field(default_factory=list)
    answered_prompts: set[str] = field(default_factory=set)
    stop_emitted: bool = False
    start_request: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def last_entry(self, *kinds: EventKind) -> tuple[int, ChatEvent] | None:
        """Return (index, entry) of the most recent entry of any given kind."""
        for index in range(len(self.event_log) - 1, -1, -1):
            entry = self.event_log[index]
            if entry.kind in kinds:
                return index, entry
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "goal": self.goal,
            "status": self.status.value,
            "event_count": len(self.event_log),
            "cursor": self.cursor,
            "errors": list(self.errors),
            "pending_prompt": self.pending_prompt.kind.value if self.pending_prompt else None,
            "is_placeholder": self.is_placeholder,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
