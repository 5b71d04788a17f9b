"""Exception hierarchy for the workflow session manager.

Specific exceptions for each failure mode. Decode and resolution
failures are reported and the single event is dropped; transport
failures surface to the caller immediately.
"""
from __future__ import annotations

from typing import Any

# Error status codes reported by the workflow service.
ERROR_CODES: dict[int, str] = {
    1: "Your request was valid but Workflow failed to complete it. Please try again.",
    2: "Workflow failed to start.",
    3: "Workflow could not use your token to connect to your GitLab instance.",
    6: "Workflow could not connect to the Workflow service.",
    50: "An error occurred while fetching an authentication token for this workflow.",
    51: "GitLab API configuration details are unavailable. Restart your editor and try again.",
    52: "Unsupported connection type for Workflow.",
}

DEFAULT_ERROR_MESSAGE = "An unknown error occurred with the workflow."


class WorkflowError(Exception):
    """Base exception for all workflow session errors."""


class TransportUnavailableError(WorkflowError):
    """No active channel to dispatch a start or control action."""
    def __init__(self, action: str, reason: str = "no active channel"):
        self.action = action
        self.reason = reason
        super().__init__(f"Cannot dispatch {action}: {reason}")


class CheckpointDecodeError(WorkflowError):
    """A checkpoint blob could not be decoded."""
    def __init__(self, reason: str, session_id: str | None = None):
        self.reason = reason
        self.session_id = session_id
        super().__init__(f"Failed to decode workflow checkpoint: {reason}")


class UnresolvedSessionError(WorkflowError):
    """An inbound event matched no tracked session."""
    def __init__(self, event_kind: str, candidates: list[str]):
        self.event_kind = event_kind
        self.candidates = candidates
        super().__init__(
            f"Could not determine session for {event_kind} event "
            f"(tracked sessions: {', '.join(candidates) or 'none'})"
        )


class PromptDeliveryError(WorkflowError):
    """A user decision could not be sent back to the workflow."""
    def __init__(self, session_id: str, prompt_kind: str, reason: str):
        self.session_id = session_id
        self.prompt_kind = prompt_kind
        self.reason = reason
        super().__init__(
            f"Could not deliver {prompt_kind} response for session "
            f"{session_id}: {reason}"
        )


class SessionNotFoundError(WorkflowError):
    """Requested session is not tracked."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


def get_error_message(error_code: int | None, default_message: str | None = None) -> str:
    """Map a service error code to its user-facing message."""
    if error_code is not None and error_code in ERROR_CODES:
        return ERROR_CODES[error_code]
    return default_message or DEFAULT_ERROR_MESSAGE


def describe_error_payload(payload: Any) -> str:
    """Build a readable message from an error payload of any shape.

    Accepts a plain string, or a dict with ``message``/``error`` and
    an optional ``error_code``/``errorCode``/``code``.
    """
    if payload is None:
        return DEFAULT_ERROR_MESSAGE
    if isinstance(payload, str):
        return payload or DEFAULT_ERROR_MESSAGE
    if not isinstance(payload, dict):
        return str(payload)

    message = payload.get("message") or payload.get("error") or "Workflow failed"
    if not isinstance(message, str):
        message = str(message)
    raw_code = payload.get("error_code", payload.get("errorCode", payload.get("code")))
    code: int | None
    try:
        code = int(raw_code) if raw_code is not None else None
    except (TypeError, ValueError):
        code = None
    if code is None:
        return message
    return f"[Error {code}] {get_error_message(code, message)}"
