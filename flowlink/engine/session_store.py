"""In-memory registry of workflow sessions.

One SessionStore instance is owned by the session manager and passed
to the router, streamer and interaction controller. It never deletes
a session on its own.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from typing import Any

from .errors import SessionNotFoundError
from .models import Session, WorkflowStatus, make_placeholder_id

logger = logging.getLogger(__name__)


class SessionStore:
    """Maps session id → Session."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._rekey_listeners: list[Callable[[str, str], None]] = []

    def add_rekey_listener(self, listener: Callable[[str, str], None]) -> None:
        """Register a sync callback(old_id, new_id) run after each re-key."""
        self._rekey_listeners.append(listener)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def create(
        self,
        goal: str,
        session_id: str | None = None,
        start_request: dict[str, Any] | None = None,
    ) -> Session:
        """Track a new session. Without an id a placeholder is assigned."""
        is_placeholder = session_id is None
        sid = session_id or make_placeholder_id()
        if sid in self._sessions:
            raise ValueError(f"Session already tracked: {sid}")
        session = Session(
            session_id=sid,
            goal=goal,
            status=WorkflowStatus.CREATED,
            is_placeholder=is_placeholder,
            start_request=dict(start_request or {}),
        )
        self._sessions[sid] = session
        logger.info(
            "Created session %s (placeholder=%s) goal=%r",
            sid, is_placeholder, goal[:80],
        )
        return session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def ids(self) -> list[str]:
        return list(self._sessions)

    def active(self) -> list[Session]:
        """Sessions that have not reached a terminal status."""
        return [s for s in self._sessions.values() if not s.is_terminal]

    def find_by_goal(self, goal: str) -> Session | None:
        """First tracked session whose goal equals *goal*.

        Active sessions are preferred over terminal ones with the same goal.
        """
        match: Session | None = None
        for session in self._sessions.values():
            if session.goal != goal:
                continue
            if not session.is_terminal:
                return session
            if match is None:
                match = session
        return match

    def rekey(self, old_id: str, new_id: str) -> Session:
        """Move a placeholder session to its backend-assigned id.

        All state travels with the Session object; the old key is removed.
        Identity may change only once.
        """
        if old_id == new_id:
            return self.require(old_id)
        session = self.require(old_id)
        if not session.is_placeholder:
            raise ValueError(
                f"Session {old_id} already has a backend id; cannot re-key to {new_id}"
            )
        if new_id in self._sessions:
            raise ValueError(f"Cannot re-key {old_id}: {new_id} is already tracked")
        del self._sessions[old_id]
        session.session_id = new_id
        session.is_placeholder = False
        self._sessions[new_id] = session
        logger.info("Re-keyed session %s -> %s", old_id, new_id)
        for listener in list(self._rekey_listeners):
            try:
                listener(old_id, new_id)
            except Exception:
                logger.exception("Re-key listener %r raised", listener)
        return session

    def remove(self, session_id: str) -> Session | None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            logger.info("Removed session %s (status=%s)", session_id, session.status.value)
        return session
