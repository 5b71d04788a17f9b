"""YAML configuration loader.

Loads a single YAML file holding workflow settings and the transport
the CLI should open. When no YAML is provided, env vars work exactly
as before (WorkflowConfig.from_env).

Example YAML:
    workflow:
      model: claude-sonnet
      project_id: "1234"
      namespace_id: "56"
      session_timeout_seconds: 1800
      log_level: DEBUG

    transport:
      # Either an intermediary process speaking JSONL on stdio ...
      intermediary: ["node", "/opt/workflow/intermediary.js", "--stdio"]
      # ... or a real-time Socket.IO endpoint.
      socket_url: http://127.0.0.1:60087/webview/agentic-duo-chat
      csrf_token: "${WORKFLOW_CSRF_TOKEN}"
"""
from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .config import WorkflowConfig

logger = logging.getLogger(__name__)


@dataclass
class TransportConfig:
    """Which channel the host should open."""
    intermediary: list[str] = field(default_factory=list)
    socket_url: str | None = None
    csrf_token: str | None = None


@dataclass
class FlowlinkConfig:
    """Complete parsed YAML configuration."""
    workflow: WorkflowConfig
    transport: TransportConfig


def _expand(value: Any) -> Any:
    """Expand ${VAR} references in string values."""
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, list):
        return [_expand(item) for item in value]
    return value


def _parse_workflow(raw: dict[str, Any]) -> WorkflowConfig:
    def _opt_str(key: str) -> str | None:
        value = raw.get(key)
        return str(_expand(value)) if value not in (None, "") else None

    return WorkflowConfig(
        model=_opt_str("model"),
        project_id=_opt_str("project_id"),
        namespace_id=_opt_str("namespace_id"),
        workflow_type=str(raw.get("workflow_type", WorkflowConfig.workflow_type)),
        enhance_goal_with_file=bool(raw.get(
            "enhance_goal_with_file", WorkflowConfig.enhance_goal_with_file,
        )),
        session_timeout_seconds=float(raw.get(
            "session_timeout_seconds", WorkflowConfig.session_timeout_seconds,
        )),
        event_queue_size=int(raw.get(
            "event_queue_size", WorkflowConfig.event_queue_size,
        )),
        log_level=str(raw.get("log_level", WorkflowConfig.log_level)),
        log_file=_opt_str("log_file"),
        socketio_path=str(raw.get("socketio_path", WorkflowConfig.socketio_path)),
        reconnect_attempts=int(raw.get(
            "reconnect_attempts", WorkflowConfig.reconnect_attempts,
        )),
        reconnect_delay_seconds=float(raw.get(
            "reconnect_delay_seconds", WorkflowConfig.reconnect_delay_seconds,
        )),
        command_timeout_seconds=float(raw.get(
            "command_timeout_seconds", WorkflowConfig.command_timeout_seconds,
        )),
    )


def _parse_transport(raw: dict[str, Any]) -> TransportConfig:
    intermediary = raw.get("intermediary") or []
    if isinstance(intermediary, str):
        # Same quoting rules as the --intermediary flag.
        intermediary = shlex.split(_expand(intermediary))
    else:
        intermediary = _expand(list(intermediary))
    return TransportConfig(
        intermediary=[str(part) for part in intermediary],
        socket_url=_expand(raw.get("socket_url")) or None,
        csrf_token=_expand(raw.get("csrf_token")) or None,
    )


def load_yaml_config(path: str | Path) -> FlowlinkConfig:
    """Load and parse a YAML config file."""
    path = Path(path)
    logger.info(
        "load_yaml_config: loading %s (exists=%s)", path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    logger.info(
        "Parsed YAML config %s: sections %s",
        path.name, ", ".join(sorted(raw)) if raw else "(empty)",
    )
    return FlowlinkConfig(
        workflow=_parse_workflow(raw.get("workflow", {}) or {}),
        transport=_parse_transport(raw.get("transport", {}) or {}),
    )
