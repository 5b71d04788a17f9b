"""Top-level workflow session manager.

Wires together SessionStore, EventRouter, ResponseStreamer and
InteractionController behind one façade, and connects them to a
TransportBridge and the host-facing EventBus.

Usage:
    manager = WorkflowSessionManager(prompter, transport=channel)
    session = await manager.start_session("Explain this file", consumer)
    ...
    await manager.close()
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

from flowlink.adapters.command_runner import CommandRunner
from flowlink.adapters.event_bus import EventBus
from flowlink.adapters.events import (
    EventDropped,
    SessionChanged,
    SessionCreated,
    SessionRekeyed,
    SessionStopped,
)
from flowlink.adapters.transport import (
    NormalizedEvent,
    ProjectIdentityProvider,
    TransportBridge,
)
from flowlink.shared.context import (
    ContextFile,
    build_additional_context,
    enhance_goal,
    extract_goal,
    selected_files,
)

from .config import WorkflowConfig
from .errors import CheckpointDecodeError, TransportUnavailableError
from .interaction import InteractionController, Prompter
from .models import STATUS_ICONS, Session, WorkflowStatus
from .router import EventRouter
from .session_store import SessionStore
from .streamer import ResponseStreamer, StreamConsumer, stop_info_for

logger = logging.getLogger(__name__)


class WorkflowSessionManager:
    """Tracks workflow sessions from start to terminal status."""

    def __init__(
        self,
        prompter: Prompter,
        transport: TransportBridge | None = None,
        config: WorkflowConfig | None = None,
        identity_provider: ProjectIdentityProvider | None = None,
        bus: EventBus | None = None,
        command_runner: CommandRunner | None = None,
    ) -> None:
        self._config = config or WorkflowConfig.from_env()
        self._prompter = prompter
        self._identity_provider = identity_provider
        self._store = SessionStore()
        self._bus = bus or EventBus(maxsize=self._config.event_queue_size)
        self._router = EventRouter(self._store, error_callback=self._on_router_error)
        self._streamer = ResponseStreamer(self._store)
        self._interaction = InteractionController(self._store, prompter)
        self._command_runner = command_runner or CommandRunner(
            timeout_seconds=self._config.command_timeout_seconds,
        )
        self._transport: TransportBridge | None = None
        self._pending_rekeys: list[tuple[str, str]] = []

        self._store.add_rekey_listener(self._on_rekey)
        self._router.subscribe(self._on_session_changed)
        if transport is not None:
            self.set_transport(transport)

    # ── Accessors ──

    @property
    def config(self) -> WorkflowConfig:
        return self._config

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def router(self) -> EventRouter:
        return self._router

    @property
    def streamer(self) -> ResponseStreamer:
        return self._streamer

    @property
    def interaction(self) -> InteractionController:
        return self._interaction

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def command_runner(self) -> CommandRunner:
        return self._command_runner

    @property
    def transport(self) -> TransportBridge | None:
        return self._transport

    def set_transport(self, transport: TransportBridge | None) -> None:
        if self._transport is not None and self._transport is not transport:
            self._transport.set_event_handler(None)
        self._transport = transport
        if transport is not None:
            transport.set_event_handler(self.handle_event)
            logger.info("Using %s transport", transport.name)
        self._interaction.set_transport(transport)

    # ── Inbound ──

    async def handle_event(self, event: NormalizedEvent) -> str | None:
        """Entry point for transports. Returns the updated session id."""
        return await self._router.handle(event)

    async def _on_session_changed(self, session_id: str) -> None:
        while self._pending_rekeys:
            old_id, new_id = self._pending_rekeys.pop(0)
            self._bus.emit_nowait(SessionRekeyed(session_id=new_id, previous_id=old_id))

        self._streamer.drain(session_id)
        self._interaction.evaluate(session_id)

        session = self._store.get(session_id)
        if session is None:
            return
        self._bus.emit_nowait(SessionChanged(
            session_id=session_id,
            status=session.status.value,
            event_count=len(session.event_log),
            awaiting_input=session.pending_prompt is not None,
        ))

    def _on_rekey(self, old_id: str, new_id: str) -> None:
        self._pending_rekeys.append((old_id, new_id))

    async def _on_router_error(self, exc: Exception) -> None:
        self._bus.emit_nowait(EventDropped(
            session_id=getattr(exc, "session_id", None) or "",
            error_type=type(exc).__name__,
            message=str(exc),
        ))
        if isinstance(exc, CheckpointDecodeError):
            self._prompter.notify(str(exc), "error")

    # ── Session lifecycle ──

    async def build_start_request(
        self,
        goal: str,
        current_file: ContextFile | None = None,
        selected: Iterable[ContextFile] = (),
        messages: Iterable[Mapping[str, Any]] = (),
    ) -> dict[str, Any]:
        """Assemble {goal, type, metadata, additionalContext} for a new workflow.

        Files rendered into context *messages* are attached after *selected*.
        """
        selected = [*selected, *selected_files(messages)]
        file_name = current_file.file_name if current_file and current_file.content else None
        if self._config.enhance_goal_with_file:
            goal = enhance_goal(goal, file_name)

        project_id = self._config.project_id
        namespace_id = self._config.namespace_id
        if (not project_id or not namespace_id) and self._identity_provider is not None:
            try:
                identity = await self._identity_provider.project_ids()
            except Exception:
                logger.warning("Project identity lookup failed", exc_info=True)
            else:
                project_id = project_id or identity.project_id
                namespace_id = namespace_id or identity.namespace_id

        metadata: dict[str, Any] = {}
        if self._config.model:
            metadata["selectedModelIdentifier"] = self._config.model
        if project_id:
            metadata["projectId"] = project_id
        else:
            logger.warning(
                "No project configured or detected. Workflow may fail; "
                "set project_id or FLOWLINK_PROJECT_ID.",
            )
        if namespace_id:
            metadata["namespaceId"] = namespace_id

        return {
            "goal": goal,
            "type": self._config.workflow_type,
            "metadata": metadata,
            "additionalContext": build_additional_context(current_file, selected),
        }

    async def start_session(
        self,
        goal: str,
        consumer: StreamConsumer | None = None,
        *,
        current_file: ContextFile | None = None,
        selected: Iterable[ContextFile] = (),
        messages: Iterable[Mapping[str, Any]] = (),
    ) -> Session:
        """Create a session and ask the transport to start its workflow.

        The session is tracked under a placeholder id until the backend
        reports the real one. If no transport can take the request the
        session is failed, its consumer receives on_stop(error) and
        TransportUnavailableError is raised. An empty *goal* falls back to
        the last user message in *messages*.
        """
        messages = list(messages)
        if not (goal and goal.strip()) and messages:
            goal = extract_goal(messages)
        if not goal or not goal.strip():
            raise ValueError("No goal given to start workflow")

        params = await self.build_start_request(goal, current_file, selected, messages)
        session = self._store.create(params["goal"], start_request=params)
        if consumer is not None:
            self._streamer.attach(session.session_id, consumer)
        self._bus.emit_nowait(SessionCreated(session_id=session.session_id, goal=session.goal))

        transport = self._transport
        try:
            if transport is None:
                raise TransportUnavailableError("startWorkflow")
            await transport.start_workflow(session.session_id, params)
        except TransportUnavailableError as exc:
            logger.error("Could not start session %s: %s", session.session_id, exc)
            await self._router.fail_session(session.session_id, str(exc))
            raise
        logger.info("Started session %s via %s", session.session_id, transport.name)
        return session

    async def stop_session(self, session_id: str) -> None:
        """Stop a session, tear it down locally and tell the backend.

        Local teardown always completes; TransportUnavailableError is
        raised afterwards if the backend could not be told.
        """
        session = self._store.require(session_id)
        was_terminal = session.is_terminal
        await self._router.mark_stopped(session_id)
        self._interaction.discard(session_id)
        self._streamer.drain(session_id)
        self._streamer.detach(session_id)
        self._store.remove(session_id)
        self._bus.emit_nowait(SessionStopped(
            session_id=session_id, reason=stop_info_for(session).reason.value,
        ))

        if was_terminal:
            return
        if session.is_placeholder:
            logger.info("Session %s never received a backend id; nothing to stop remotely", session_id)
            return
        transport = self._require_transport("stop")
        await transport.send_workflow_event(session_id, "stop")

    async def pause_session(self, session_id: str) -> None:
        await self._send_event(session_id, "pause")

    async def resume_session(self, session_id: str) -> None:
        await self._send_event(session_id, "resume")

    async def send_message(
        self,
        session_id: str,
        text: str,
        correlation_id: str | None = None,
    ) -> None:
        """Send free text to a workflow, answering any open input request."""
        if not text or not text.strip():
            raise ValueError("Message text is empty")
        session = self._active_session(session_id, "message")
        transport = self._require_transport("message")
        self._interaction.mark_answered(session.session_id)
        await transport.send_user_message(session.session_id, text, correlation_id)

    def reprompt(self, session_id: str) -> bool:
        """Ask the user again for the session's current request."""
        self._store.require(session_id)
        return self._interaction.reprompt(session_id)

    async def acknowledge(self, session_id: str) -> bool:
        """Release a terminal session. Active sessions are left alone."""
        session = self._store.require(session_id)
        if not session.is_terminal:
            logger.warning(
                "Not releasing session %s: still %s", session_id, session.status.value,
            )
            return False
        self._streamer.drain(session_id)
        self._streamer.detach(session_id)
        self._interaction.discard(session_id)
        self._store.remove(session_id)
        return True

    def expired_sessions(self, now: datetime | None = None) -> list[Session]:
        """Active sessions with no update within session_timeout_seconds."""
        timeout = self._config.session_timeout_seconds
        if timeout <= 0:
            return []
        now = now or datetime.now(timezone.utc)
        return [
            s for s in self._store.active()
            if (now - s.updated_at).total_seconds() > timeout
        ]

    async def reap_expired(self, now: datetime | None = None) -> list[str]:
        """Fail every expired session. Returns their ids."""
        reaped = []
        timeout = self._config.session_timeout_seconds
        for session in self.expired_sessions(now):
            session_id = session.session_id
            logger.warning("Session %s timed out after %.0fs without updates", session_id, timeout)
            self._interaction.discard(session_id)
            await self._router.fail_session(
                session_id, f"Session timed out after {timeout:.0f}s without updates",
            )
            reaped.append(session_id)
            transport = self._transport
            if session.is_placeholder or transport is None or not transport.is_open:
                continue
            try:
                await transport.send_workflow_event(session_id, "stop")
            except TransportUnavailableError as exc:
                logger.warning("Could not stop timed-out session %s: %s", session_id, exc)
        return reaped

    # ── Misc ──

    async def run_command(self, command: str, args: list[Any] | None = None) -> dict[str, Any]:
        return await self._command_runner.run(command, args)

    def status_icon(self, status: WorkflowStatus | str) -> str:
        parsed = WorkflowStatus.parse(status)
        return STATUS_ICONS.get(parsed, "❔") if parsed is not None else "❔"

    def list_sessions(self) -> list[dict[str, Any]]:
        return [s.to_dict() for s in self._store]

    async def close(self) -> None:
        await self._interaction.close()
        if self._transport is not None:
            await self._transport.close()
        self._bus.close()
        logger.info("Session manager closed (%d sessions tracked)", len(self._store))

    # ── Helpers ──

    def _require_transport(self, action: str) -> TransportBridge:
        transport = self._transport
        if transport is None:
            raise TransportUnavailableError(action)
        if not transport.is_open:
            raise TransportUnavailableError(action, f"{transport.name} channel is not open")
        return transport

    def _active_session(self, session_id: str, action: str) -> Session:
        session = self._store.require(session_id)
        if session.is_terminal:
            raise ValueError(f"Session {session_id} is {session.status.value}; cannot {action}")
        if session.is_placeholder:
            raise TransportUnavailableError(action, f"session {session_id} has no backend id yet")
        return session

    async def _send_event(self, session_id: str, event_type: str) -> None:
        session = self._active_session(session_id, event_type)
        transport = self._require_transport(event_type)
        await transport.send_workflow_event(session.session_id, event_type)
        logger.info("Sent %s to session %s", event_type, session_id)
