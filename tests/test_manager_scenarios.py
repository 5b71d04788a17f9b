from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest

from flowlink.adapters.event_bus import EventBus
from flowlink.adapters.events import EventDropped, SessionCreated, SessionRekeyed, SessionStopped
from flowlink.adapters.transport import (
    NormalizedEvent,
    NormalizedKind,
    ProjectIdentity,
    TransportBridge,
)
from flowlink.engine.config import WorkflowConfig
from flowlink.engine.errors import SessionNotFoundError, TransportUnavailableError
from flowlink.engine.interaction import APPROVE_ONCE
from flowlink.engine.manager import WorkflowSessionManager
from flowlink.engine.models import ApprovalDecision, StopReason, WorkflowStatus
from flowlink.engine.streamer import StreamConsumer
from flowlink.shared.context import ContextFile


class _FakePrompter:
    def __init__(self, choice: str | None = APPROVE_ONCE, text: str | None = None) -> None:
        self.choice = choice
        self.text = text
        self.gate: asyncio.Event | None = None
        self.selects: list[str] = []
        self.notices: list[tuple[str, str]] = []

    async def select(self, prompt: str, choices: list[str]) -> str | None:
        self.selects.append(prompt)
        if self.gate is not None:
            await self.gate.wait()
        return self.choice

    async def input(self, prompt: str) -> str | None:
        return self.text

    def notify(self, message: str, level: str = "info") -> None:
        self.notices.append((level, message))


class _FakeTransport(TransportBridge):
    name = "fake"

    def __init__(self) -> None:
        super().__init__()
        self.open = True
        self.calls: list[tuple[Any, ...]] = []
        self.closed = False

    @property
    def is_open(self) -> bool:
        return self.open

    async def start_workflow(self, session_id: str, params: dict[str, Any]) -> None:
        self._require_open("startWorkflow")
        self.calls.append(("start", session_id, params))

    async def send_workflow_event(self, session_id, event_type, message=None) -> None:
        self._require_open(event_type)
        self.calls.append(("event", session_id, event_type, message))

    async def send_tool_approval(self, session_id, tool_name, decision) -> None:
        self._require_open("toolApproval")
        self.calls.append(("approval", session_id, tool_name, decision))

    async def close(self) -> None:
        self.closed = True

    async def push(self, kind: NormalizedKind, envelope: dict, **kwargs) -> None:
        await self._dispatch(NormalizedEvent(kind, envelope, source="fake", **kwargs))


class _Output:
    def __init__(self) -> None:
        self.chunks: list[str] = []
        self.messages = []
        self.stops = []

    def consumer(self) -> StreamConsumer:
        return StreamConsumer(
            on_chunk=self.chunks.append,
            on_message_add=self.messages.append,
            on_stop=self.stops.append,
        )


def _checkpoint(entries: list[dict], status: str = "RUNNING", **envelope) -> dict:
    blob = json.dumps({"channel_values": {"ui_chat_log": entries}})
    return {"checkpoint": blob, "workflowStatus": status, **envelope}


def _agent(text: str) -> dict:
    return {"message_type": "agent", "content": text}


def _tool_request(correlation_id: str = "c-1") -> dict:
    return {
        "message_type": "request",
        "content": "May I run the tests?",
        "correlation_id": correlation_id,
        "tool_info": {"name": "run_command", "args": {"cmd": "pytest"}},
    }


def _make_manager(**kwargs) -> tuple[WorkflowSessionManager, _FakeTransport, _FakePrompter]:
    transport = kwargs.pop("transport", _FakeTransport())
    prompter = kwargs.pop("prompter", _FakePrompter())
    config = kwargs.pop("config", WorkflowConfig(project_id="1000", model="claude-sonnet"))
    manager = WorkflowSessionManager(prompter, transport=transport, config=config, **kwargs)
    return manager, transport, prompter


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


def _drain_bus(manager: WorkflowSessionManager) -> list:
    events = []
    while (event := manager.bus.get_nowait()) is not None:
        events.append(event)
    return events


@pytest.mark.asyncio
async def test_explain_scenario_completes_exactly_once() -> None:
    manager, transport, _ = _make_manager()
    output = _Output()

    session = await manager.start_session("explain foo.py", output.consumer())
    assert transport.calls[0][0] == "start"
    assert transport.calls[0][2]["goal"] == "explain foo.py"

    # No id on the event; the only active session takes it.
    await transport.push(NormalizedKind.CHECKPOINT, _checkpoint([_agent("foo.py")]))
    log = [_agent("foo.py"), _agent("defines"), _agent("a parser")]
    await transport.push(NormalizedKind.CHECKPOINT, _checkpoint(log, status="FINISHED"))
    await transport.push(NormalizedKind.CHECKPOINT, _checkpoint(log, status="FINISHED"))
    await transport.push(NormalizedKind.STATUS, {"status": "FINISHED", "goal": "explain foo.py"})

    assert session.status == WorkflowStatus.FINISHED
    assert len(session.event_log) == 3
    assert output.chunks == ["foo.py", "defines", "a parser"]
    assert len(output.messages) == 3
    assert len(output.stops) == 1
    assert output.stops[0].reason == StopReason.COMPLETE


@pytest.mark.asyncio
async def test_full_unconsumed_bus_never_blocks_ingestion() -> None:
    bus = EventBus(maxsize=2)
    manager, transport, _ = _make_manager(bus=bus)
    output = _Output()
    session = await manager.start_session("goal", output.consumer())

    await transport.push(NormalizedKind.CHECKPOINT, _checkpoint([_agent("one")]))
    await transport.push(NormalizedKind.CHECKPOINT, _checkpoint([_agent("one"), _agent("two")]))
    await asyncio.wait_for(
        manager.handle_event(NormalizedEvent(
            NormalizedKind.CHECKPOINT,
            _checkpoint([_agent("one"), _agent("two")], status="FINISHED"),
        )),
        timeout=2.0,
    )

    assert session.status == WorkflowStatus.FINISHED
    assert output.stops[0].reason == StopReason.COMPLETE
    assert bus.qsize() == 2
    assert bus.dropped == 2
    latest = _drain_bus(manager)
    assert [e.status for e in latest] == ["RUNNING", "FINISHED"]


@pytest.mark.asyncio
async def test_goal_routes_between_two_concurrent_sessions() -> None:
    manager, transport, _ = _make_manager()
    out_a, out_b = _Output(), _Output()
    session_a = await manager.start_session("A", out_a.consumer())
    session_b = await manager.start_session("B", out_b.consumer())

    await transport.push(NormalizedKind.CHECKPOINT, _checkpoint([_agent("for B")], goal="B"))

    assert session_a.event_log == []
    assert [e.content for e in session_b.event_log] == ["for B"]
    assert out_a.chunks == []
    assert out_b.chunks == ["for B"]


@pytest.mark.asyncio
async def test_malformed_checkpoint_keeps_state_and_reports_once() -> None:
    manager, transport, prompter = _make_manager()
    session = await manager.start_session("goal", _Output().consumer())
    await transport.push(NormalizedKind.CHECKPOINT, _checkpoint([_agent("kept")]))
    before = (session.status, len(session.event_log), list(session.errors))
    _drain_bus(manager)

    await transport.push(NormalizedKind.CHECKPOINT, {"checkpoint": "{not json", "status": "FAILED"})

    assert (session.status, len(session.event_log), list(session.errors)) == before
    dropped = [e for e in _drain_bus(manager) if isinstance(e, EventDropped)]
    assert len(dropped) == 1
    assert dropped[0].error_type == "CheckpointDecodeError"
    assert len([n for n in prompter.notices if n[0] == "error"]) == 1


@pytest.mark.asyncio
async def test_repeated_tool_approval_request_shows_one_prompt() -> None:
    prompter = _FakePrompter(choice=APPROVE_ONCE)
    prompter.gate = asyncio.Event()
    manager, transport, _ = _make_manager(prompter=prompter)
    session = await manager.start_session("goal", _Output().consumer())
    await transport.push(NormalizedKind.STARTED, {"workflowId": "wf-1"}, previous_id=session.session_id)

    awaiting = _checkpoint([_agent("checking"), _tool_request()], status="TOOL_CALL_APPROVAL_REQUIRED")
    await transport.push(NormalizedKind.CHECKPOINT, {**awaiting, "workflowId": "wf-1"})
    await _settle()
    await transport.push(NormalizedKind.CHECKPOINT, {**awaiting, "workflowId": "wf-1"})
    await _settle()

    assert len(prompter.selects) == 1
    assert session.pending_prompt is not None

    prompter.gate.set()
    await _settle()
    await transport.push(NormalizedKind.CHECKPOINT, {**awaiting, "workflowId": "wf-1"})
    await _settle()

    approvals = [c for c in transport.calls if c[0] == "approval"]
    assert approvals == [("approval", "wf-1", "run_command", ApprovalDecision.APPROVE_ONCE)]
    assert len(prompter.selects) == 1


@pytest.mark.asyncio
async def test_ingestion_continues_while_prompt_is_open() -> None:
    prompter = _FakePrompter()
    prompter.gate = asyncio.Event()
    manager, transport, _ = _make_manager(prompter=prompter)
    output = _Output()
    session = await manager.start_session("goal", output.consumer())

    await transport.push(
        NormalizedKind.CHECKPOINT,
        _checkpoint([_tool_request()], status="TOOL_CALL_APPROVAL_REQUIRED"),
    )
    await _settle()
    await transport.push(NormalizedKind.CHECKPOINT, _checkpoint([_tool_request()], status="FINISHED"))
    prompter.gate.set()
    await _settle()

    assert session.status == WorkflowStatus.FINISHED
    assert session.pending_prompt is None
    assert [c for c in transport.calls if c[0] == "approval"] == []
    assert output.stops[0].reason == StopReason.COMPLETE


@pytest.mark.asyncio
async def test_start_without_channel_fails_session_and_raises() -> None:
    transport = _FakeTransport()
    transport.open = False
    manager, _, _ = _make_manager(transport=transport)
    output = _Output()

    with pytest.raises(TransportUnavailableError):
        await manager.start_session("goal", output.consumer())

    (session,) = list(manager.store)
    assert session.status == WorkflowStatus.FAILED
    assert len(output.stops) == 1
    assert output.stops[0].reason == StopReason.ERROR
    assert "fake channel is not open" in output.stops[0].error


@pytest.mark.asyncio
async def test_start_without_any_transport_raises() -> None:
    manager = WorkflowSessionManager(_FakePrompter(), config=WorkflowConfig())
    with pytest.raises(TransportUnavailableError):
        await manager.start_session("goal")


@pytest.mark.asyncio
async def test_empty_goal_is_rejected() -> None:
    manager, _, _ = _make_manager()
    with pytest.raises(ValueError):
        await manager.start_session("   ")


@pytest.mark.asyncio
async def test_started_event_rekeys_and_is_published() -> None:
    manager, transport, _ = _make_manager()
    session = await manager.start_session("goal", _Output().consumer())
    placeholder = session.session_id

    await transport.push(NormalizedKind.STARTED, {"workflowId": "wf-5"}, previous_id=placeholder)

    assert manager.store.get("wf-5") is session
    events = _drain_bus(manager)
    assert isinstance(events[0], SessionCreated)
    rekeyed = [e for e in events if isinstance(e, SessionRekeyed)]
    assert rekeyed == [SessionRekeyed(session_id="wf-5", previous_id=placeholder)]


@pytest.mark.asyncio
async def test_stop_tears_down_and_notifies_transport() -> None:
    prompter = _FakePrompter()
    prompter.gate = asyncio.Event()
    manager, transport, _ = _make_manager(prompter=prompter)
    output = _Output()
    session = await manager.start_session("goal", output.consumer())
    await transport.push(
        NormalizedKind.CHECKPOINT,
        _checkpoint([_tool_request()], status="TOOL_CALL_APPROVAL_REQUIRED", workflowId="wf-1"),
    )
    await _settle()
    assert session.pending_prompt is not None

    await manager.stop_session("wf-1")
    prompter.gate.set()
    await _settle()

    assert "wf-1" not in manager.store
    assert session.status == WorkflowStatus.STOPPED
    assert output.stops[0].reason == StopReason.STOPPED
    assert ("event", "wf-1", "stop", None) in transport.calls
    assert [c for c in transport.calls if c[0] == "approval"] == []
    assert any(isinstance(e, SessionStopped) for e in _drain_bus(manager))


@pytest.mark.asyncio
async def test_stop_completes_locally_even_when_channel_is_down() -> None:
    manager, transport, _ = _make_manager()
    await manager.start_session("goal", _Output().consumer())
    await transport.push(NormalizedKind.STARTED, {"workflowId": "wf-1"})
    transport.open = False

    with pytest.raises(TransportUnavailableError):
        await manager.stop_session("wf-1")
    assert "wf-1" not in manager.store


@pytest.mark.asyncio
async def test_control_events_need_a_backend_id() -> None:
    manager, transport, _ = _make_manager()
    session = await manager.start_session("goal")

    with pytest.raises(TransportUnavailableError):
        await manager.pause_session(session.session_id)

    await transport.push(NormalizedKind.STARTED, {"workflowId": "wf-1"}, previous_id=session.session_id)
    await manager.pause_session("wf-1")
    await manager.resume_session("wf-1")
    await manager.send_message("wf-1", "also check bar.py")

    assert transport.calls[1:] == [
        ("event", "wf-1", "pause", None),
        ("event", "wf-1", "resume", None),
        ("event", "wf-1", "message", {"correlation_id": "", "message": "also check bar.py"}),
    ]
    with pytest.raises(SessionNotFoundError):
        await manager.pause_session("missing")


@pytest.mark.asyncio
async def test_acknowledge_releases_only_terminal_sessions() -> None:
    manager, transport, _ = _make_manager()
    session = await manager.start_session("goal")

    assert not await manager.acknowledge(session.session_id)
    await transport.push(NormalizedKind.STATUS, {"status": "FAILED"})
    assert await manager.acknowledge(session.session_id)
    assert len(manager.store) == 0


@pytest.mark.asyncio
async def test_build_start_request_uses_context_and_identity() -> None:
    provider = AsyncMock()
    provider.project_ids.return_value = ProjectIdentity(project_id="999", namespace_id="77")
    manager, _, _ = _make_manager(identity_provider=provider)
    current = ContextFile(content="print('hi')", file_path="/src/foo.py")
    selected = [
        ContextFile(content="print('hi')", file_path="/src/foo.py"),
        ContextFile(content="x = 1", file_path="/src/bar.py"),
    ]

    params = await manager.build_start_request("explain this", current, selected)

    assert params["goal"] == "explain this (file: foo.py)"
    assert params["type"] == "chat"
    # Configured project wins over the provider; namespace comes from it.
    assert params["metadata"] == {
        "selectedModelIdentifier": "claude-sonnet",
        "projectId": "1000",
        "namespaceId": "77",
    }
    assert [c["metadata"]["file_name"] for c in params["additionalContext"]] == ["foo.py", "bar.py"]


@pytest.mark.asyncio
async def test_start_from_chat_history_messages() -> None:
    manager, transport, _ = _make_manager()
    messages = [
        {"role": "user", "content": "earlier question"},
        {
            "role": "user",
            "is_context": True,
            "content": '<file path="/src/util.py" language="python">def f(): pass</file>',
        },
        {"role": "user", "content": [{"type": "text", "text": "refactor util"}]},
    ]

    session = await manager.start_session("", messages=messages)

    assert session.goal == "refactor util"
    params = transport.calls[0][2]
    assert params["goal"] == "refactor util"
    assert params["additionalContext"] == [{
        "category": "file",
        "content": "def f(): pass",
        "metadata": {"file_name": "util.py", "file_path": "/src/util.py"},
    }]
    with pytest.raises(ValueError):
        await manager.start_session("  ", messages=[{"role": "assistant", "content": "hi"}])


@pytest.mark.asyncio
async def test_expired_sessions_are_reaped() -> None:
    config = WorkflowConfig(project_id="1", session_timeout_seconds=60)
    manager, transport, _ = _make_manager(config=config)
    output = _Output()
    session = await manager.start_session("goal", output.consumer())
    await transport.push(NormalizedKind.STARTED, {"workflowId": "wf-1"})

    assert manager.expired_sessions() == []
    later = session.updated_at + timedelta(seconds=61)
    assert manager.expired_sessions(later) == [session]

    assert await manager.reap_expired(later) == ["wf-1"]
    assert session.status == WorkflowStatus.FAILED
    assert output.stops[0].reason == StopReason.ERROR
    assert ("event", "wf-1", "stop", None) in transport.calls


@pytest.mark.asyncio
async def test_run_command_status_icon_and_close() -> None:
    runner = AsyncMock()
    runner.run.return_value = {"exitCode": 0, "output": "ok"}
    manager, transport, _ = _make_manager(command_runner=runner)

    assert await manager.run_command("ls", ["-la"]) == {"exitCode": 0, "output": "ok"}
    runner.run.assert_awaited_once_with("ls", ["-la"])
    assert manager.status_icon("FINISHED") == "✅"
    assert manager.status_icon("bogus") == "❔"

    await manager.close()
    assert transport.closed
