from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from flowlink.adapters.transport import NormalizedEvent, NormalizedKind
from flowlink.engine.errors import CheckpointDecodeError, UnresolvedSessionError
from flowlink.engine.models import PendingPrompt, PromptKind, WorkflowStatus
from flowlink.engine.router import EventRouter
from flowlink.engine.session_store import SessionStore


def _agent(text: str) -> dict:
    return {"message_type": "agent", "content": text}


def _checkpoint_event(entries: list[dict], status: str = "RUNNING", **envelope) -> NormalizedEvent:
    blob = json.dumps({"channel_values": {"ui_chat_log": entries}})
    return NormalizedEvent(
        NormalizedKind.CHECKPOINT,
        {"checkpoint": blob, "workflowStatus": status, **envelope},
        source="test",
    )


def _make_router() -> tuple[SessionStore, EventRouter, list[Exception], AsyncMock]:
    store = SessionStore()
    reported: list[Exception] = []
    router = EventRouter(store, error_callback=reported.append)
    listener = AsyncMock()
    router.subscribe(listener)
    return store, router, reported, listener


@pytest.mark.asyncio
async def test_checkpoint_updates_status_log_and_errors() -> None:
    store, router, reported, listener = _make_router()
    session = store.create("explain foo.py")

    updated = await router.handle(_checkpoint_event(
        [_agent("one"), _agent("two")], errors=["minor"],
    ))

    assert updated == session.session_id
    assert session.status == WorkflowStatus.RUNNING
    assert [e.content for e in session.event_log] == ["one", "two"]
    assert session.errors == ["minor"]
    listener.assert_awaited_once_with(session.session_id)
    assert reported == []


@pytest.mark.asyncio
async def test_duplicate_envelope_does_not_double_append() -> None:
    store, router, _, _ = _make_router()
    session = store.create("goal")
    event = _checkpoint_event([_agent("one")], errors=["e"])

    await router.handle(event)
    await router.handle(event)

    assert len(session.event_log) == 1
    assert session.errors == ["e"]


@pytest.mark.asyncio
async def test_malformed_checkpoint_leaves_session_untouched() -> None:
    store, router, reported, listener = _make_router()
    session = store.create("goal")
    await router.handle(_checkpoint_event([_agent("kept")]))
    listener.reset_mock()

    result = await router.handle(NormalizedEvent(
        NormalizedKind.CHECKPOINT,
        {"checkpoint": "{broken", "workflowStatus": "FAILED"},
    ))

    assert result is None
    assert session.status == WorkflowStatus.RUNNING
    assert [e.content for e in session.event_log] == ["kept"]
    assert len(reported) == 1
    assert isinstance(reported[0], CheckpointDecodeError)
    listener.assert_not_awaited()


@pytest.mark.asyncio
async def test_unresolved_event_is_dropped_and_reported() -> None:
    store, router, reported, listener = _make_router()
    store.create("A")
    store.create("B")

    result = await router.handle(_checkpoint_event([_agent("x")], goal="C"))

    assert result is None
    assert router.dropped_events == 1
    assert isinstance(reported[0], UnresolvedSessionError)
    assert all(not s.event_log for s in store)
    listener.assert_not_awaited()


@pytest.mark.asyncio
async def test_terminal_session_ignores_late_events() -> None:
    store, router, _, listener = _make_router()
    session = store.create("goal")
    await router.handle(_checkpoint_event([_agent("done")], status="FINISHED"))
    listener.reset_mock()

    result = await router.handle(_checkpoint_event(
        [_agent("done"), _agent("late")], status="RUNNING", workflowId=session.session_id,
    ))

    assert result is None
    assert session.status == WorkflowStatus.FINISHED
    assert len(session.event_log) == 1
    listener.assert_not_awaited()


@pytest.mark.asyncio
async def test_claimed_id_rekeys_the_placeholder() -> None:
    store, router, _, listener = _make_router()
    session = store.create("goal")
    placeholder_id = session.session_id

    result = await router.handle(_checkpoint_event([_agent("hi")], workflowId="wf-7"))

    assert result == "wf-7"
    assert placeholder_id not in store
    assert store.get("wf-7") is session
    assert not session.is_placeholder
    listener.assert_awaited_once_with("wf-7")


@pytest.mark.asyncio
async def test_failed_placeholder_keeps_its_id_on_late_events() -> None:
    store, router, _, listener = _make_router()
    session = store.create("goal A")
    placeholder_id = session.session_id
    await router.fail_session(placeholder_id, "could not start")
    listener.reset_mock()

    late = await router.handle(_checkpoint_event(
        [_agent("late")], workflowId="wf-late", goal="goal A",
    ))
    started = await router.handle(NormalizedEvent(
        NormalizedKind.STARTED, {"workflowId": "wf-late"}, previous_id=placeholder_id,
    ))

    assert late is None
    assert started is None
    assert session.session_id == placeholder_id
    assert store.get(placeholder_id) is session
    assert "wf-late" not in store
    assert session.status == WorkflowStatus.FAILED
    assert session.event_log == []
    listener.assert_not_awaited()


@pytest.mark.asyncio
async def test_started_event_rekeys_named_placeholder() -> None:
    store, router, _, _ = _make_router()
    store.create("other")
    session = store.create("goal")
    placeholder_id = session.session_id

    result = await router.handle(NormalizedEvent(
        NormalizedKind.STARTED, {"workflowId": "wf-1"}, previous_id=placeholder_id,
    ))

    assert result == "wf-1"
    assert store.get("wf-1") is session


@pytest.mark.asyncio
async def test_started_event_without_placeholder_is_dropped() -> None:
    store, router, _, _ = _make_router()
    store.create("goal", session_id="wf-1")

    result = await router.handle(NormalizedEvent(NormalizedKind.STARTED, {"workflowId": "wf-2"}))

    assert result is None
    assert router.dropped_events == 1


@pytest.mark.asyncio
async def test_status_event_and_unknown_status() -> None:
    store, router, _, _ = _make_router()
    session = store.create("goal", session_id="wf-1")

    await router.handle(NormalizedEvent(
        NormalizedKind.STATUS, {"workflowId": "wf-1", "status": "input_required"},
    ))
    assert session.status == WorkflowStatus.INPUT_REQUIRED

    await router.handle(NormalizedEvent(
        NormalizedKind.STATUS, {"workflowId": "wf-1", "status": "SOMETHING_NEW"},
    ))
    assert session.status == WorkflowStatus.INPUT_REQUIRED


@pytest.mark.asyncio
async def test_error_event_fails_session_with_coded_message() -> None:
    store, router, _, _ = _make_router()
    session = store.create("goal", session_id="wf-1")

    await router.handle(NormalizedEvent(
        NormalizedKind.ERROR,
        {"workflowId": "wf-1", "error": {"message": "x", "error_code": 2}},
    ))

    assert session.status == WorkflowStatus.FAILED
    assert session.errors == ["[Error 2] Workflow failed to start."]


@pytest.mark.asyncio
async def test_terminal_status_discards_pending_prompt() -> None:
    store, router, _, _ = _make_router()
    session = store.create("goal")
    session.status = WorkflowStatus.TOOL_CALL_APPROVAL_REQUIRED
    session.pending_prompt = PendingPrompt(key="index:0", kind=PromptKind.TOOL_APPROVAL)

    await router.handle(_checkpoint_event([], status="FINISHED"))

    assert session.status == WorkflowStatus.FINISHED
    assert session.pending_prompt is None


@pytest.mark.asyncio
async def test_goal_notice_changes_nothing() -> None:
    store, router, _, listener = _make_router()
    store.create("goal")
    assert await router.handle(NormalizedEvent(NormalizedKind.GOAL, {"goal": "goal"})) is None
    listener.assert_not_awaited()


@pytest.mark.asyncio
async def test_fail_session_and_mark_stopped() -> None:
    store, router, _, listener = _make_router()
    failing = store.create("a", session_id="wf-a")
    stopping = store.create("b", session_id="wf-b")

    assert await router.fail_session("wf-a", "no channel")
    assert failing.status == WorkflowStatus.FAILED
    assert failing.errors == ["no channel"]
    listener.assert_awaited_once_with("wf-a")
    assert not await router.fail_session("wf-a", "again")

    assert await router.mark_stopped("wf-b") is stopping
    assert stopping.status == WorkflowStatus.STOPPED
    assert await router.mark_stopped("missing") is None


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_ingestion() -> None:
    store, router, _, _ = _make_router()
    router.subscribe(AsyncMock(side_effect=RuntimeError("observer bug")))
    session = store.create("goal")

    await router.handle(_checkpoint_event([_agent("a")]))
    await router.handle(_checkpoint_event([_agent("a"), _agent("b")]))

    assert len(session.event_log) == 2
