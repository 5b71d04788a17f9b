"""Incremental delivery of a session's event log to its consumer.

Each session has a cursor into its event log. drain() emits every
entry past the cursor exactly once, advances the cursor, and emits the
terminal signal once when the session has finished.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from flowlink.shared.formatters.notices import (
    format_approval_notice,
    format_input_notice,
    format_tool_notice,
)
from flowlink.shared.models.message import Message, MessageRole

from .models import ChatEvent, EventKind, Session, StopInfo, StopReason, WorkflowStatus
from .session_store import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class StreamConsumer:
    """Output callbacks for one session. Any of them may be omitted."""
    on_chunk: Callable[[str], Any] | None = None
    on_message_add: Callable[[Message], Any] | None = None
    on_stop: Callable[[StopInfo], Any] | None = None
    turn_id: str | None = None


def _call(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.exception("Stream consumer callback %r raised", callback)


def stop_info_for(session: Session) -> StopInfo:
    if session.status == WorkflowStatus.FINISHED:
        return StopInfo(reason=StopReason.COMPLETE)
    if session.status == WorkflowStatus.FAILED:
        return StopInfo(
            reason=StopReason.ERROR,
            error="\n".join(session.errors) or "Workflow failed",
        )
    return StopInfo(reason=StopReason.STOPPED)


class ResponseStreamer:
    """Drains session event logs into StreamConsumers."""

    def __init__(self, store: SessionStore) -> None:
        self._store = store
        self._consumers: dict[str, StreamConsumer] = {}
        store.add_rekey_listener(self._on_rekey)

    def attach(self, session_id: str, consumer: StreamConsumer) -> None:
        self._consumers[session_id] = consumer

    def detach(self, session_id: str) -> StreamConsumer | None:
        return self._consumers.pop(session_id, None)

    def consumer_for(self, session_id: str) -> StreamConsumer | None:
        return self._consumers.get(session_id)

    def _on_rekey(self, old_id: str, new_id: str) -> None:
        consumer = self._consumers.pop(old_id, None)
        if consumer is not None:
            self._consumers[new_id] = consumer

    def drain(self, session_id: str) -> int:
        """Emit entries past the cursor. Returns how many were processed."""
        session = self._store.get(session_id)
        if session is None:
            logger.debug("drain: unknown session %s", session_id)
            return 0
        consumer = self._consumers.get(session_id)
        if consumer is None:
            logger.debug("drain: no consumer attached to %s yet", session_id)
            return 0

        start = session.cursor
        end = len(session.event_log)
        if end > start:
            logger.debug("drain: %s processing %d new entries", session_id, end - start)
        for index in range(start, end):
            # Advance first so a failing callback can never cause a re-emit.
            session.cursor = index + 1
            self._emit(session, index, session.event_log[index], consumer)
        session.cursor = end

        if session.is_terminal and not session.stop_emitted:
            session.stop_emitted = True
            info = stop_info_for(session)
            logger.info(
                "Session %s stopped: reason=%s", session_id, info.reason.value,
            )
            _call(consumer.on_stop, info)
        return end - start

    @staticmethod
    def _emit(
        session: Session,
        index: int,
        entry: ChatEvent,
        consumer: StreamConsumer,
    ) -> None:
        if entry.kind == EventKind.AGENT:
            _call(consumer.on_chunk, entry.content)
            _call(consumer.on_message_add, Message(
                role=MessageRole.ASSISTANT,
                content=entry.content,
                session_id=session.session_id,
                turn_id=consumer.turn_id,
                log_index=index,
            ))
        elif entry.kind == EventKind.TOOL:
            _call(consumer.on_chunk, format_tool_notice(entry.tool_name, entry.content))
        elif entry.kind == EventKind.REQUEST:
            if entry.has_tool:
                _call(consumer.on_chunk, format_approval_notice(entry.tool_name or "", entry.content))
            else:
                _call(consumer.on_chunk, format_input_notice(entry.content))
        else:
            logger.debug(
                "drain: %s skipping %s entry %d",
                session.session_id, entry.kind.value, index,
            )
