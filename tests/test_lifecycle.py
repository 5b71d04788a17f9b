from __future__ import annotations

import pytest

from flowlink.engine.errors import (
    DEFAULT_ERROR_MESSAGE,
    TransportUnavailableError,
    UnresolvedSessionError,
    describe_error_payload,
    get_error_message,
)
from flowlink.engine.lifecycle import VALID_TRANSITIONS, validate_transition
from flowlink.engine.models import WorkflowStatus


def test_every_status_has_transition_rules() -> None:
    assert set(VALID_TRANSITIONS) == set(WorkflowStatus)


@pytest.mark.parametrize("status", [
    WorkflowStatus.FINISHED,
    WorkflowStatus.FAILED,
    WorkflowStatus.STOPPED,
])
def test_terminal_states_are_final(status) -> None:
    for target in WorkflowStatus:
        with pytest.raises(ValueError, match="none \\(terminal\\)"):
            validate_transition(status, target)


def test_awaiting_states_return_to_running() -> None:
    validate_transition(WorkflowStatus.CREATED, WorkflowStatus.RUNNING)
    validate_transition(WorkflowStatus.RUNNING, WorkflowStatus.TOOL_CALL_APPROVAL_REQUIRED)
    validate_transition(WorkflowStatus.TOOL_CALL_APPROVAL_REQUIRED, WorkflowStatus.RUNNING)
    validate_transition(WorkflowStatus.INPUT_REQUIRED, WorkflowStatus.PLAN_APPROVAL_REQUIRED)
    validate_transition(WorkflowStatus.RUNNING, WorkflowStatus.RUNNING)
    validate_transition(WorkflowStatus.PLAN_APPROVAL_REQUIRED, WorkflowStatus.STOPPED)


def test_running_cannot_go_back_to_created() -> None:
    with pytest.raises(ValueError, match="RUNNING -> CREATED"):
        validate_transition(WorkflowStatus.RUNNING, WorkflowStatus.CREATED)


def test_status_parse() -> None:
    assert WorkflowStatus.parse("finished") is WorkflowStatus.FINISHED
    assert WorkflowStatus.parse(" Running ") is WorkflowStatus.RUNNING
    assert WorkflowStatus.parse("STARTING") is WorkflowStatus.CREATED
    assert WorkflowStatus.parse("PAUSED") is None
    assert WorkflowStatus.parse(3) is None
    assert WorkflowStatus.INPUT_REQUIRED.is_awaiting
    assert not WorkflowStatus.RUNNING.is_terminal


def test_error_code_messages() -> None:
    assert get_error_message(2) == "Workflow failed to start."
    assert get_error_message(999, "custom") == "custom"
    assert get_error_message(None) == DEFAULT_ERROR_MESSAGE


@pytest.mark.parametrize("payload,expected", [
    (None, DEFAULT_ERROR_MESSAGE),
    ("", DEFAULT_ERROR_MESSAGE),
    ("socket closed", "socket closed"),
    ({"message": "boom"}, "boom"),
    ({"message": "boom", "errorCode": 6}, "[Error 6] Workflow could not connect to the Workflow service."),
    ({"error": "bad", "code": "x"}, "bad"),
    ({"message": "odd", "error_code": 77}, "[Error 77] odd"),
    (42, "42"),
])
def test_describe_error_payload(payload, expected) -> None:
    assert describe_error_payload(payload) == expected


def test_error_messages_carry_context() -> None:
    assert str(TransportUnavailableError("stop")) == "Cannot dispatch stop: no active channel"
    unresolved = UnresolvedSessionError("checkpoint", [])
    assert "tracked sessions: none" in str(unresolved)
    assert unresolved.event_kind == "checkpoint"
