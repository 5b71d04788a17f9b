"""Transport bridge interface shared by both channel adapters.

Each adapter translates its native event shape into a NormalizedEvent
and hands it to a single handler (the EventRouter). Outgoing control
actions use the payload builders below so both channels speak the
same wire shapes.
"""
from __future__ import annotations

import abc
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from flowlink.engine.errors import TransportUnavailableError
from flowlink.engine.models import ApprovalDecision

logger = logging.getLogger(__name__)

WORKFLOW_EVENT_TYPES = frozenset({"pause", "resume", "stop", "message"})


class NormalizedKind(str, Enum):
    CHECKPOINT = "checkpoint"
    STATUS = "status"
    STARTED = "started"
    ERROR = "error"
    GOAL = "goal"


@dataclass
class NormalizedEvent:
    """One inbound event, independent of the channel that carried it."""
    kind: NormalizedKind
    envelope: dict[str, Any] = field(default_factory=dict)
    # Id known to the channel itself (e.g. the workflow a socket subscribed to).
    session_id: str | None = None
    # For STARTED: the placeholder id being replaced.
    previous_id: str | None = None
    source: str = ""


EventHandler = Callable[[NormalizedEvent], Awaitable[Any]]


@dataclass
class ProjectIdentity:
    project_id: str | None = None
    namespace_id: str | None = None


class ProjectIdentityProvider(Protocol):
    """Opaque source of project/namespace identifiers."""

    async def project_ids(self) -> ProjectIdentity: ...


def build_workflow_event_params(
    session_id: str,
    event_type: str,
    message: dict[str, Any] | None = None,
) -> dict[str, Any]:
    if event_type not in WORKFLOW_EVENT_TYPES:
        raise ValueError(
            f"Unknown workflow event type {event_type!r}; "
            f"expected one of {', '.join(sorted(WORKFLOW_EVENT_TYPES))}"
        )
    params: dict[str, Any] = {
        "workflowID": session_id,
        "eventType": event_type,
    }
    if message is not None:
        params["message"] = message
    return params


def build_tool_approval_params(
    session_id: str,
    tool_name: str,
    decision: ApprovalDecision,
) -> dict[str, Any]:
    """Tool approvals ride on a start request for the existing workflow."""
    if decision == ApprovalDecision.REJECT:
        approval: dict[str, Any] = {
            "userApproved": False,
            "message": "User rejected the tool call",
        }
    else:
        approval = {
            "userApproved": True,
            "toolName": tool_name,
            "type": decision.value,
        }
    return {
        "goal": "",
        "existingWorkflowId": session_id,
        "toolApproval": approval,
    }


class TransportBridge(abc.ABC):
    """Channel between the session manager and the intermediary process."""

    name: str = "transport"

    def __init__(self) -> None:
        self._handler: EventHandler | None = None

    def set_event_handler(self, handler: EventHandler | None) -> None:
        self._handler = handler

    @property
    @abc.abstractmethod
    def is_open(self) -> bool:
        """True while outgoing actions can be dispatched."""

    @abc.abstractmethod
    async def start_workflow(self, session_id: str, params: dict[str, Any]) -> None:
        """Ask the intermediary to start a workflow.

        ``session_id`` is the local placeholder the caller tracks the
        session under until the backend assigns a real id.
        """

    @abc.abstractmethod
    async def send_workflow_event(
        self,
        session_id: str,
        event_type: str,
        message: dict[str, Any] | None = None,
    ) -> None:
        """Send pause/resume/stop/message for a workflow."""

    @abc.abstractmethod
    async def send_tool_approval(
        self,
        session_id: str,
        tool_name: str,
        decision: ApprovalDecision,
    ) -> None:
        """Send a tool approval decision for a workflow."""

    async def send_user_message(
        self,
        session_id: str,
        text: str,
        correlation_id: str | None = None,
    ) -> None:
        await self.send_workflow_event(session_id, "message", {
            "correlation_id": correlation_id or "",
            "message": text,
        })

    async def close(self) -> None:
        """Release the channel. Default is a no-op."""

    def _require_open(self, action: str) -> None:
        if not self.is_open:
            raise TransportUnavailableError(action, f"{self.name} channel is not open")

    async def _dispatch(self, event: NormalizedEvent) -> None:
        """Hand a normalized event to the router."""
        if self._handler is None:
            logger.debug("%s: no handler, dropping %s event", self.name, event.kind.value)
            return
        try:
            await self._handler(event)
        except Exception:
            logger.exception("%s: handler failed for %s event", self.name, event.kind.value)
