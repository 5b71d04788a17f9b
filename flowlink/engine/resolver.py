"""Routing of inbound events to sessions.

The upstream protocol does not guarantee that events name their
workflow, and field names vary between service versions. Resolution
tries, in order: an explicit tracked id, goal equality, then the sole
active session.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .models import Session
from .session_store import SessionStore

logger = logging.getLogger(__name__)

ID_FIELDS: tuple[str, ...] = (
    "workflowId",
    "workflow_id",
    "workflowID",
    "sessionId",
    "session_id",
    "id",
)

GOAL_FIELDS: tuple[str, ...] = (
    "workflowGoal",
    "workflow_goal",
    "goal",
)


def _first_field(envelope: Mapping[str, Any], fields: tuple[str, ...]) -> str | None:
    for name in fields:
        value = envelope.get(name)
        if value not in (None, ""):
            return str(value)
    return None


def explicit_id(envelope: Mapping[str, Any], channel_id: str | None = None) -> str | None:
    """Identifier carried by the event, if any (channel id first)."""
    if channel_id:
        return channel_id
    return _first_field(envelope, ID_FIELDS)


def envelope_goal(envelope: Mapping[str, Any]) -> str | None:
    return _first_field(envelope, GOAL_FIELDS)


def _compatible(session: Session, claimed: str | None) -> bool:
    # An event naming another backend id never belongs to a session that
    # already has its own backend id.
    return claimed is None or session.is_placeholder


@dataclass
class Resolution:
    session: Session
    # "explicit", "goal" or "single_active"
    method: str
    # Id named by the event, even if it did not match a tracked session.
    claimed_id: str | None = None


class SessionResolver:
    """Determine which tracked session an inbound event belongs to."""

    def __init__(self, store: SessionStore) -> None:
        self._store = store

    def resolve(
        self,
        envelope: Mapping[str, Any],
        channel_id: str | None = None,
    ) -> Resolution | None:
        claimed = explicit_id(envelope, channel_id)

        if claimed is not None:
            session = self._store.get(claimed)
            if session is not None:
                return Resolution(session, "explicit", claimed)
            logger.debug("Event names untracked id %s, falling back", claimed)

        goal = envelope_goal(envelope)
        if goal is not None:
            session = self._store.find_by_goal(goal)
            if session is not None and _compatible(session, claimed):
                logger.debug("Matched session %s by goal", session.session_id)
                return Resolution(session, "goal", claimed)

        active = self._store.active()
        if len(active) == 1 and _compatible(active[0], claimed):
            logger.debug("Using single active session %s", active[0].session_id)
            return Resolution(active[0], "single_active", claimed)

        logger.debug(
            "Unresolved event: claimed=%s goal=%r active=%d",
            claimed, goal, len(active),
        )
        return None
