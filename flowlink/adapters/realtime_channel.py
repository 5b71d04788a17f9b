"""Real-time channel: a python-socketio AsyncClient following one workflow.

The intermediary exposes a Socket.IO endpoint next to its webview. After
every (re)connect the client announces itself with ``webviewReady`` and
``appReady`` and, once the backend id is known, ``startSubscriptions``.

Inbound events:
    workflowStarted      {"workflowId": ...}, re-keys the placeholder
    workflowCheckpoint   {"checkpoint": "...", ...} or the bare blob
    initialState         same shape as workflowCheckpoint
    workflowStatus       "RUNNING" or {"status": ...}
    workflowGoal         "..." or {"goal": ...}
    workflowError        error payload

Control events other than start and tool approval (pause/resume/stop/
message) are not carried by the real-time protocol and are delegated to
an optional control bridge.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

import socketio

from flowlink.engine.errors import TransportUnavailableError
from flowlink.engine.models import ApprovalDecision

from .transport import (
    EventHandler,
    NormalizedEvent,
    NormalizedKind,
    TransportBridge,
    build_tool_approval_params,
)

logger = logging.getLogger(__name__)

_HANDSHAKE_TIMEOUT = 10.0
_SERVER_ROOT = re.compile(r"^(https?|wss?)://[^/]+", re.IGNORECASE)

WORKFLOW_EVENTS = (
    "workflowStarted",
    "workflowCheckpoint",
    "initialState",
    "workflowStatus",
    "workflowGoal",
    "workflowError",
    "workflowPreCreated",
)


def server_url(base_url: str) -> str:
    """Server root for a webview URL, e.g. http://h:8080/webview/x -> http://h:8080"""
    match = _SERVER_ROOT.match(base_url.strip())
    if match is None:
        raise ValueError(f"Not an http(s) or ws(s) URL: {base_url!r}")
    scheme, _, host = match.group(0).partition("://")
    scheme = {"ws": "http", "wss": "https"}.get(scheme.lower(), scheme.lower())
    return f"{scheme}://{host}"


def _workflow_id(data: Any) -> str | None:
    if isinstance(data, dict):
        for key in ("workflowId", "workflow_id", "id"):
            value = data.get(key)
            if value not in (None, ""):
                return str(value)
        return None
    if isinstance(data, (str, int)) and data != "":
        return str(data)
    return None


class RealtimeChannel(TransportBridge):
    """Socket.IO client bridging one workflow to the session manager."""

    name = "realtime"

    def __init__(
        self,
        base_url: str,
        csrf_token: str | None = None,
        *,
        socketio_path: str = "/socket.io/",
        reconnect_attempts: int = 5,
        reconnect_delay: float = 1.0,
        control: TransportBridge | None = None,
    ) -> None:
        super().__init__()
        self._url = server_url(base_url)
        self._socketio_path = socketio_path.strip("/") or "socket.io"
        self._headers = {"_csrf": csrf_token} if csrf_token else {}
        self._connect_attempts = max(1, reconnect_attempts)
        self._reconnect_delay = reconnect_delay
        self._control = control
        self._placeholder_id: str | None = None
        self._workflow_id: str | None = None
        self._sio = socketio.AsyncClient(
            reconnection=True,
            reconnection_attempts=self._connect_attempts,
            reconnection_delay=reconnect_delay,
            reconnection_delay_max=max(reconnect_delay, 5.0),
        )
        self._sio.on("connect", self._on_connect)
        self._sio.on("disconnect", self._on_disconnect)
        self._sio.on("connect_error", self._on_connect_error)
        for event_name in WORKFLOW_EVENTS:
            self._sio.on(event_name, self._event_handler(event_name))

    def set_event_handler(self, handler: EventHandler | None) -> None:
        # Events arriving on the control channel feed the same handler.
        super().set_event_handler(handler)
        if self._control is not None:
            self._control.set_event_handler(handler)

    @property
    def is_open(self) -> bool:
        return bool(self._sio.connected)

    @property
    def workflow_id(self) -> str | None:
        return self._workflow_id

    def _channel_id(self) -> str | None:
        return self._workflow_id or self._placeholder_id

    # ── Connection ──

    async def connect(self) -> None:
        """Connect, retrying up to the configured attempt count.

        Once connected, python-socketio reconnects on its own.
        """
        last_error: Exception | None = None
        for attempt in range(1, self._connect_attempts + 1):
            try:
                await self._sio.connect(
                    self._url,
                    headers=self._headers,
                    socketio_path=self._socketio_path,
                    wait_timeout=_HANDSHAKE_TIMEOUT,
                )
                logger.info("Socket.IO connected to %s", self._url)
                return
            except socketio.exceptions.ConnectionError as exc:
                last_error = exc
                logger.warning(
                    "Socket.IO connect attempt %d/%d to %s failed: %s",
                    attempt, self._connect_attempts, self._url, exc,
                )
                if attempt < self._connect_attempts:
                    await asyncio.sleep(self._reconnect_delay)
        raise TransportUnavailableError("connect", str(last_error))

    async def _on_connect(self) -> None:
        try:
            await self._emit("webviewReady")
            await self._emit("appReady")
            if self._workflow_id:
                await self._emit("startSubscriptions", {"workflowId": self._workflow_id})
        except TransportUnavailableError as exc:
            logger.error("Socket.IO ready handshake failed: %s", exc)

    async def _on_disconnect(self, *args: Any) -> None:
        logger.warning("Socket.IO disconnected from %s %s", self._url, args[0] if args else "")

    async def _on_connect_error(self, data: Any = None) -> None:
        logger.error("Socket.IO connect error: %s", data)

    def _event_handler(self, event_name: str):
        async def _handler(*args: Any) -> None:
            await self._handle_event(event_name, list(args))
        return _handler

    async def _handle_event(self, name: str, args: list[Any]) -> None:
        data = args[0] if args else None
        logger.debug("Socket.IO event %s", name)

        if name == "workflowStarted":
            real_id = _workflow_id(data)
            if real_id is None:
                logger.warning("workflowStarted without a workflow id: %r", data)
                return
            self._workflow_id = real_id
            envelope = dict(data) if isinstance(data, dict) else {}
            envelope.setdefault("workflowId", real_id)
            await self._dispatch(NormalizedEvent(
                NormalizedKind.STARTED, envelope,
                session_id=real_id, previous_id=self._placeholder_id, source=self.name,
            ))
            try:
                await self._emit("startSubscriptions", {"workflowId": real_id})
            except TransportUnavailableError as exc:
                logger.error("Could not subscribe to workflow %s: %s", real_id, exc)
        elif name in ("workflowCheckpoint", "initialState"):
            envelope = data if isinstance(data, dict) else {"checkpoint": data}
            if "checkpoint" not in envelope:
                logger.debug("%s without a checkpoint", name)
                return
            await self._dispatch(NormalizedEvent(
                NormalizedKind.CHECKPOINT, envelope,
                session_id=self._channel_id(), source=self.name,
            ))
        elif name == "workflowStatus":
            envelope = data if isinstance(data, dict) else {"status": data}
            await self._dispatch(NormalizedEvent(
                NormalizedKind.STATUS, envelope,
                session_id=self._channel_id(), source=self.name,
            ))
        elif name == "workflowGoal":
            envelope = data if isinstance(data, dict) else {"goal": data}
            await self._dispatch(NormalizedEvent(
                NormalizedKind.GOAL, envelope,
                session_id=self._channel_id(), source=self.name,
            ))
        elif name == "workflowError":
            await self._dispatch(NormalizedEvent(
                NormalizedKind.ERROR, {"error": data},
                session_id=self._channel_id(), source=self.name,
            ))
        elif name == "workflowPreCreated":
            logger.info("Workflow pre-created: %s", _workflow_id(data))
        else:
            logger.debug("Ignoring Socket.IO event %s", name)

    # ── Outgoing ──

    async def _emit(self, name: str, data: Any = None) -> None:
        try:
            await self._sio.emit(name, data)
        except socketio.exceptions.SocketIOError as exc:
            raise TransportUnavailableError(name, str(exc)) from exc

    async def start_workflow(self, session_id: str, params: dict[str, Any]) -> None:
        self._require_open("startWorkflow")
        self._placeholder_id = session_id
        self._workflow_id = None
        await self._emit("startWorkflow", params)

    async def send_tool_approval(
        self,
        session_id: str,
        tool_name: str,
        decision: ApprovalDecision,
    ) -> None:
        self._require_open("toolApproval")
        await self._emit("startWorkflow", build_tool_approval_params(session_id, tool_name, decision))

    async def send_workflow_event(
        self,
        session_id: str,
        event_type: str,
        message: dict[str, Any] | None = None,
    ) -> None:
        if self._control is None:
            raise TransportUnavailableError(
                event_type, "real-time channel has no control channel for workflow events",
            )
        await self._control.send_workflow_event(session_id, event_type, message)

    async def close(self) -> None:
        if self._sio.connected:
            await self._sio.disconnect()
        if self._control is not None:
            await self._control.close()
        logger.info("Socket.IO channel closed")
