"""Inbound event routing.

Every normalized event from either transport funnels through
EventRouter.handle(). The router decodes the checkpoint, resolves the
owning session, applies the update inside a single critical section and
then publishes a session-changed signal to subscribers.

The router is the only component that changes a session's status,
event log or errors.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from flowlink.adapters.transport import NormalizedEvent, NormalizedKind

from .checkpoint import CheckpointDecoder, DecodedCheckpoint
from .config import ErrorCallback, SessionListener, fire_callback
from .errors import (
    CheckpointDecodeError,
    UnresolvedSessionError,
    describe_error_payload,
)
from .lifecycle import validate_transition
from .models import ChatEvent, Session, WorkflowStatus
from .resolver import SessionResolver, explicit_id
from .session_store import SessionStore

logger = logging.getLogger(__name__)

_STATUS_UPDATE_FIELDS = ("status", "workflowStatus", "workflow_status")


class EventRouter:
    """Decode, resolve and apply inbound events to the SessionStore."""

    def __init__(
        self,
        store: SessionStore,
        decoder: CheckpointDecoder | None = None,
        resolver: SessionResolver | None = None,
        error_callback: ErrorCallback | None = None,
    ) -> None:
        self._store = store
        self._decoder = decoder or CheckpointDecoder()
        self._resolver = resolver or SessionResolver(store)
        self._error_callback = error_callback
        self._listeners: list[SessionListener] = []
        self._lock = asyncio.Lock()
        self.dropped_events = 0

    # ── Subscription ──

    def subscribe(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def publish(self, session_id: str) -> None:
        """Notify subscribers that *session_id* changed."""
        for listener in list(self._listeners):
            await fire_callback(listener, session_id)

    # ── Inbound events ──

    async def handle(self, event: NormalizedEvent) -> str | None:
        """Apply one inbound event. Returns the updated session id, if any.

        Never raises for protocol problems: decode and resolution
        failures are reported and the single event is dropped.
        """
        logger.debug(
            "Router: %s event from %s (channel_id=%s)",
            event.kind.value, event.source or "?", event.session_id,
        )
        if event.kind == NormalizedKind.GOAL:
            logger.debug("Router: workflow goal notice: %r", event.envelope.get("goal"))
            return None

        decoded: DecodedCheckpoint | None = None
        if event.kind == NormalizedKind.CHECKPOINT:
            try:
                decoded = self._decoder.decode(event.envelope.get("checkpoint"), event.envelope)
            except CheckpointDecodeError as exc:
                exc.session_id = explicit_id(event.envelope, event.session_id)
                logger.warning("Router: dropping event with bad checkpoint: %s", exc.reason)
                await self._report(exc)
                return None

        async with self._lock:
            if event.kind == NormalizedKind.STARTED:
                session = self._apply_started(event)
            else:
                session = await self._resolve(event)
                if session is not None:
                    session = self._apply(event, session, decoded)
            session_id = session.session_id if session is not None else None

        if session_id is not None:
            await self.publish(session_id)
        return session_id

    async def _resolve(self, event: NormalizedEvent) -> Session | None:
        resolution = self._resolver.resolve(event.envelope, event.session_id)
        if resolution is None:
            self.dropped_events += 1
            exc = UnresolvedSessionError(event.kind.value, self._store.ids())
            logger.warning("Router: %s", exc)
            await self._report(exc)
            return None

        session = resolution.session
        claimed = resolution.claimed_id
        if (
            resolution.method != "explicit"
            and claimed
            and session.is_placeholder
            and not session.is_terminal
        ):
            try:
                self._store.rekey(session.session_id, claimed)
            except ValueError as exc:
                logger.warning("Router: re-key failed: %s", exc)
        return session

    def _apply_started(self, event: NormalizedEvent) -> Session | None:
        real_id = explicit_id(event.envelope, event.session_id)
        if not real_id:
            logger.warning("Router: workflow started event without an id, ignoring")
            return None

        existing = self._store.get(real_id)
        if existing is not None:
            return existing

        placeholder = self._store.get(event.previous_id) if event.previous_id else None
        if placeholder is None:
            resolution = self._resolver.resolve(event.envelope)
            placeholder = resolution.session if resolution else None
        if placeholder is None or not placeholder.is_placeholder:
            logger.warning("Router: no placeholder session to attach %s to", real_id)
            self.dropped_events += 1
            return None
        if placeholder.is_terminal:
            logger.info(
                "Router: not attaching %s to %s session %s",
                real_id, placeholder.status.value, placeholder.session_id,
            )
            return None

        try:
            return self._store.rekey(placeholder.session_id, real_id)
        except ValueError as exc:
            logger.warning("Router: re-key failed: %s", exc)
            return None

    def _apply(
        self,
        event: NormalizedEvent,
        session: Session,
        decoded: DecodedCheckpoint | None,
    ) -> Session | None:
        if session.is_terminal:
            logger.info(
                "Router: ignoring late %s event for %s session %s",
                event.kind.value, session.status.value, session.session_id,
            )
            return None

        if decoded is not None:
            self._set_status(session, decoded.status)
            self._append_entries(session, decoded.event_log)
            self._merge_errors(session, decoded.errors)
            if decoded.plan:
                session.plan = decoded.plan
        elif event.kind == NormalizedKind.STATUS:
            status = _status_update_value(event.envelope)
            if status is None:
                logger.debug("Router: status event without a status field")
            else:
                self._set_status(session, status)
        elif event.kind == NormalizedKind.ERROR:
            payload = event.envelope.get("error", event.envelope)
            self._merge_errors(session, [describe_error_payload(payload)])
            self._set_status(session, WorkflowStatus.FAILED)

        session.touch()
        return session

    # ── Mutations used by the session manager ──

    async def fail_session(self, session_id: str, message: str) -> bool:
        """Record *message* and move a session to FAILED."""
        async with self._lock:
            session = self._store.get(session_id)
            if session is None or session.is_terminal:
                return False
            self._merge_errors(session, [message])
            self._set_status(session, WorkflowStatus.FAILED)
            session.touch()
        await self.publish(session_id)
        return True

    async def mark_stopped(self, session_id: str) -> Session | None:
        """Move a session to STOPPED, dropping any pending prompt."""
        async with self._lock:
            session = self._store.get(session_id)
            if session is None:
                return None
            if not session.is_terminal:
                self._set_status(session, WorkflowStatus.STOPPED)
                session.touch()
            return session

    # ── Helpers ──

    def _set_status(self, session: Session, raw_status: Any) -> None:
        target = WorkflowStatus.parse(raw_status)
        if target is None:
            logger.warning(
                "Router: unknown status %r for session %s, keeping %s",
                raw_status, session.session_id, session.status.value,
            )
            return
        if target == session.status:
            return
        try:
            validate_transition(session.status, target)
        except ValueError as exc:
            logger.warning("Router: session %s: %s", session.session_id, exc)
            return
        logger.info(
            "Session %s status %s -> %s",
            session.session_id, session.status.value, target.value,
        )
        session.status = target
        if target.is_terminal and session.pending_prompt is not None:
            logger.debug(
                "Router: discarding pending %s prompt for %s",
                session.pending_prompt.kind.value, session.session_id,
            )
            session.pending_prompt = None

    @staticmethod
    def _append_entries(session: Session, entries: list[ChatEvent]) -> None:
        # Checkpoints carry the whole log; only positions past the end are new.
        known = len(session.event_log)
        if len(entries) <= known:
            return
        session.event_log.extend(entries[known:])
        logger.debug(
            "Session %s event log %d -> %d",
            session.session_id, known, len(session.event_log),
        )

    @staticmethod
    def _merge_errors(session: Session, errors: list[str]) -> None:
        for error in errors:
            if error not in session.errors:
                session.errors.append(error)

    async def _report(self, exc: Exception) -> None:
        await fire_callback(self._error_callback, exc)


def _status_update_value(envelope: Mapping[str, Any]) -> Any:
    for name in _STATUS_UPDATE_FIELDS:
        value = envelope.get(name)
        if value not in (None, ""):
            return value
    return None
