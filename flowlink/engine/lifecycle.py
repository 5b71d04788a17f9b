"""Workflow status state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    CREATED ──> RUNNING ──┬──> FINISHED
                          │
                          ├──> TOOL_CALL_APPROVAL_REQUIRED ──> RUNNING
                          │
                          ├──> INPUT_REQUIRED ──> RUNNING
                          │
                          ├──> PLAN_APPROVAL_REQUIRED ──> RUNNING
                          │
                          └──> FAILED

    Any non-terminal state ──> FINISHED | FAILED | STOPPED
"""
from __future__ import annotations

from .models import AWAITING_STATUSES, TERMINAL_STATUSES, WorkflowStatus

_TERMINAL = set(TERMINAL_STATUSES)
_AWAITING = set(AWAITING_STATUSES)

VALID_TRANSITIONS: dict[WorkflowStatus, set[WorkflowStatus]] = {
    # The backend may report an awaiting state in its very first checkpoint.
    WorkflowStatus.CREATED: {WorkflowStatus.RUNNING} | _AWAITING | _TERMINAL,
    WorkflowStatus.RUNNING: _AWAITING | _TERMINAL,
    WorkflowStatus.TOOL_CALL_APPROVAL_REQUIRED: (
        {WorkflowStatus.RUNNING} | (_AWAITING - {WorkflowStatus.TOOL_CALL_APPROVAL_REQUIRED}) | _TERMINAL
    ),
    WorkflowStatus.INPUT_REQUIRED: (
        {WorkflowStatus.RUNNING} | (_AWAITING - {WorkflowStatus.INPUT_REQUIRED}) | _TERMINAL
    ),
    WorkflowStatus.PLAN_APPROVAL_REQUIRED: (
        {WorkflowStatus.RUNNING} | (_AWAITING - {WorkflowStatus.PLAN_APPROVAL_REQUIRED}) | _TERMINAL
    ),
    WorkflowStatus.FINISHED: set(),
    WorkflowStatus.FAILED: set(),
    WorkflowStatus.STOPPED: set(),
}


def validate_transition(current: WorkflowStatus, target: WorkflowStatus) -> None:
    """Validate a status transition. Raises ValueError if invalid.

    Re-entering the current state is always allowed for non-terminal
    states (repeated checkpoints carry the same status).
    """
    if current == target and not current.is_terminal:
        return
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none (terminal)"
        raise ValueError(
            f"Invalid status transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
