"""Host-facing events published by the session manager.

Each event is a typed dataclass so hosts can consume the EventBus
safely, and converts to/from a plain dict for JSON forwarding.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class ManagerEvent:
    """Base event from the session manager."""
    event_type: str = ""
    session_id: str = ""


@dataclass
class SessionCreated(ManagerEvent):
    event_type: str = "session_created"
    goal: str = ""


@dataclass
class SessionRekeyed(ManagerEvent):
    event_type: str = "session_rekeyed"
    previous_id: str = ""


@dataclass
class SessionChanged(ManagerEvent):
    event_type: str = "session_changed"
    status: str = ""
    event_count: int = 0
    awaiting_input: bool = False


@dataclass
class SessionStopped(ManagerEvent):
    event_type: str = "session_stopped"
    reason: str = ""


@dataclass
class EventDropped(ManagerEvent):
    """An inbound event could not be applied (bad checkpoint, no session)."""
    event_type: str = "event_dropped"
    error_type: str = ""
    message: str = ""


_EVENT_MAP: dict[str, type[ManagerEvent]] = {
    "session_created": SessionCreated,
    "session_rekeyed": SessionRekeyed,
    "session_changed": SessionChanged,
    "session_stopped": SessionStopped,
    "event_dropped": EventDropped,
}


def event_to_dict(event: ManagerEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    # Use "event" key instead of "event_type" on the wire
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> ManagerEvent:
    """Convert a plain dict back into a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, ManagerEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
