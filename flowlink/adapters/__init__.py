"""Adapters package - channels between the engine and the workflow backend.

This package contains the transport bridge interface, its notify and
real-time channel implementations, and the host-facing event bus.
"""
from __future__ import annotations

__all__ = [
    "TransportBridge",
    "NormalizedEvent",
    "NormalizedKind",
    "EventBus",
    "NotifyChannel",
    "RealtimeChannel",
    "CommandRunner",
]

from flowlink.adapters.event_bus import EventBus
from flowlink.adapters.transport import NormalizedEvent, NormalizedKind, TransportBridge


def __getattr__(name: str):
    if name == "NotifyChannel":
        from flowlink.adapters.notify_channel import NotifyChannel
        return NotifyChannel
    if name == "RealtimeChannel":
        from flowlink.adapters.realtime_channel import RealtimeChannel
        return RealtimeChannel
    if name == "CommandRunner":
        from flowlink.adapters.command_runner import CommandRunner
        return CommandRunner
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
