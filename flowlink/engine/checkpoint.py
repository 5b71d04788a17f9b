"""Checkpoint decoding.

Each progress notification carries a JSON-encoded checkpoint of the
workflow graph. The status may live in several places, depending on
which version of the service produced the notification; those
locations are listed once, in priority order, in STATUS_ACCESSORS.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import CheckpointDecodeError
from .models import ChatEvent, EventKind, WorkflowStatus

logger = logging.getLogger(__name__)

DEFAULT_STATUS = WorkflowStatus.RUNNING.value

Accessor = Callable[[Mapping[str, Any], Mapping[str, Any]], Any]


def _nested(mapping: Mapping[str, Any], *keys: str) -> Any:
    current: Any = mapping
    for key in keys:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


# (label, accessor(envelope, checkpoint)). First non-empty value wins.
STATUS_ACCESSORS: tuple[tuple[str, Accessor], ...] = (
    ("envelope.workflowStatus", lambda env, cp: env.get("workflowStatus")),
    ("envelope.workflow_status", lambda env, cp: env.get("workflow_status")),
    ("envelope.status", lambda env, cp: env.get("status")),
    ("checkpoint.channel_values.status", lambda env, cp: _nested(cp, "channel_values", "status")),
    ("checkpoint.metadata.status", lambda env, cp: _nested(cp, "metadata", "status")),
    ("checkpoint.metadata.workflowStatus", lambda env, cp: _nested(cp, "metadata", "workflowStatus")),
)


def resolve_status(
    envelope: Mapping[str, Any],
    checkpoint: Mapping[str, Any] | None = None,
) -> str:
    """Walk the status fallback chain and return the first value found."""
    checkpoint = checkpoint or {}
    for label, accessor in STATUS_ACCESSORS:
        value = accessor(envelope, checkpoint)
        if value not in (None, ""):
            logger.debug("Status %r taken from %s", value, label)
            return str(value)
    return DEFAULT_STATUS


def parse_chat_entry(entry: Any) -> ChatEvent:
    """Convert one ui_chat_log record into a ChatEvent."""
    if not isinstance(entry, Mapping):
        return ChatEvent(kind=EventKind.UNKNOWN, content="" if entry is None else str(entry))

    try:
        kind = EventKind(str(entry.get("message_type", "")).lower())
    except ValueError:
        kind = EventKind.UNKNOWN

    content = entry.get("content")
    if content is None:
        content = ""
    elif not isinstance(content, str):
        content = json.dumps(content, default=str)

    tool_info = entry.get("tool_info")
    tool_name = None
    tool_args: dict[str, Any] = {}
    if isinstance(tool_info, Mapping):
        tool_name = tool_info.get("name") or None
        args = tool_info.get("args")
        if isinstance(args, Mapping):
            tool_args = dict(args)
        elif args is not None:
            tool_args = {"value": args}

    correlation_id = entry.get("correlation_id")
    return ChatEvent(
        kind=kind,
        content=content,
        tool_name=str(tool_name) if tool_name else None,
        tool_args=tool_args,
        correlation_id=str(correlation_id) if correlation_id else None,
        raw=dict(entry),
    )


@dataclass
class DecodedCheckpoint:
    status: str
    event_log: list[ChatEvent] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    plan: list[Any] = field(default_factory=list)


class CheckpointDecoder:
    """Decode a checkpoint blob plus the envelope that carried it."""

    def decode(self, blob: Any, envelope: Mapping[str, Any]) -> DecodedCheckpoint:
        checkpoint = self._parse_blob(blob)
        channel_values = checkpoint.get("channel_values")
        if not isinstance(channel_values, Mapping):
            channel_values = {}

        chat_log = channel_values.get("ui_chat_log")
        if chat_log is None:
            chat_log = []
        elif not isinstance(chat_log, list):
            raise CheckpointDecodeError(
                f"ui_chat_log must be a list, got {type(chat_log).__name__}"
            )

        plan = _nested(channel_values, "plan", "steps")
        decoded = DecodedCheckpoint(
            status=resolve_status(envelope, checkpoint),
            event_log=[parse_chat_entry(entry) for entry in chat_log],
            errors=extract_errors(envelope),
            plan=list(plan) if isinstance(plan, list) else [],
        )
        logger.debug(
            "Decoded checkpoint: status=%s chat_log=%d errors=%d plan_steps=%d",
            decoded.status, len(decoded.event_log), len(decoded.errors), len(decoded.plan),
        )
        return decoded

    @staticmethod
    def _parse_blob(blob: Any) -> dict[str, Any]:
        if isinstance(blob, Mapping):
            return dict(blob)
        if blob is None or blob == "":
            raise CheckpointDecodeError("checkpoint is missing")
        if not isinstance(blob, (str, bytes, bytearray)):
            raise CheckpointDecodeError(
                f"checkpoint must be a string, got {type(blob).__name__}"
            )
        try:
            checkpoint = json.loads(blob)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise CheckpointDecodeError(str(exc)) from exc
        if not isinstance(checkpoint, dict):
            raise CheckpointDecodeError(
                f"checkpoint must decode to an object, got {type(checkpoint).__name__}"
            )
        return checkpoint


def extract_errors(envelope: Mapping[str, Any]) -> list[str]:
    errors = envelope.get("errors")
    if not errors:
        return []
    if not isinstance(errors, list):
        errors = [errors]
    return [e if isinstance(e, str) else json.dumps(e, default=str) for e in errors]
