"""Notify/request channel to the local intermediary process.

Protocol: newline-delimited JSON (JSONL) over a pair of asyncio streams,
normally the stdio of an intermediary subprocess.

Notification:  {"method": "$/gitlab/workflowMessage", "params": {...}}
Request:       {"id": N, "method": "$/gitlab/runCommand", "params": {...}}
Response:      {"id": N, "result": {...}}

Outgoing start/control actions are notifications; the only inbound
request is runCommand, answered with {"exitCode", "output"}.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from flowlink.engine.errors import TransportUnavailableError
from flowlink.engine.models import ApprovalDecision

from .command_runner import CommandRunner
from .transport import (
    NormalizedEvent,
    NormalizedKind,
    TransportBridge,
    build_tool_approval_params,
    build_workflow_event_params,
)

logger = logging.getLogger(__name__)

START_WORKFLOW = "$/gitlab/startWorkflow"
SEND_WORKFLOW_EVENT = "$/gitlab/sendWorkflowEvent"
WORKFLOW_MESSAGE = "$/gitlab/workflowMessage"
WORKFLOW_STATUS_UPDATE = "$/gitlab/workflowStatusUpdate"
RUN_COMMAND = "$/gitlab/runCommand"


def normalize_notification(method: str, params: dict[str, Any]) -> NormalizedEvent | None:
    """Translate one inbound notification into a NormalizedEvent."""
    if method == WORKFLOW_MESSAGE:
        if params.get("type") == "error" and params.get("message"):
            return NormalizedEvent(NormalizedKind.ERROR, {**params, "error": params}, source="notify")
        if "checkpoint" in params:
            return NormalizedEvent(NormalizedKind.CHECKPOINT, params, source="notify")
        if any(params.get(k) for k in ("status", "workflowStatus", "workflow_status")):
            return NormalizedEvent(NormalizedKind.STATUS, params, source="notify")
        logger.debug("workflowMessage without checkpoint or status: %s", sorted(params))
        return None
    if method == WORKFLOW_STATUS_UPDATE:
        return NormalizedEvent(NormalizedKind.STATUS, params, source="notify")
    return None


class NotifyChannel(TransportBridge):
    """JSONL notify/request channel over asyncio streams."""

    name = "notify"

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        command_runner: CommandRunner | None = None,
        process: asyncio.subprocess.Process | None = None,
    ) -> None:
        super().__init__()
        self._reader = reader
        self._writer: asyncio.StreamWriter | None = writer
        self._runner = command_runner or CommandRunner()
        self._process = process
        self._write_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._read_task: asyncio.Task | None = None
        self._closed = False

    @classmethod
    async def spawn(
        cls,
        argv: list[str],
        command_runner: CommandRunner | None = None,
    ) -> NotifyChannel:
        """Launch an intermediary subprocess and open a channel on its stdio."""
        if not argv:
            raise TransportUnavailableError("spawn", "no intermediary command configured")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TransportUnavailableError("spawn", str(exc)) from exc
        logger.info("Started intermediary pid=%s: %s", proc.pid, argv[0])
        assert proc.stdout is not None and proc.stdin is not None
        channel = cls(proc.stdout, proc.stdin, command_runner, process=proc)  # type: ignore[arg-type]
        if proc.stderr is not None:
            channel._track(asyncio.create_task(channel._log_stderr(proc.stderr)))
        channel.start()
        return channel

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self._writer is not None
            and not self._writer.is_closing()
        )

    def start(self) -> None:
        """Begin reading inbound messages."""
        if self._read_task is None:
            self._read_task = asyncio.create_task(self._read_loop())

    async def wait_closed(self) -> None:
        if self._read_task is not None:
            await asyncio.gather(self._read_task, return_exceptions=True)

    # ── Outgoing ──

    async def notify(self, method: str, params: dict[str, Any]) -> None:
        self._require_open(method)
        await self._write({"method": method, "params": params})

    async def start_workflow(self, session_id: str, params: dict[str, Any]) -> None:
        # The backend id arrives later on workflowMessage; the placeholder
        # never goes over the wire.
        logger.debug("Sending startWorkflow for placeholder %s", session_id)
        await self.notify(START_WORKFLOW, params)

    async def send_workflow_event(
        self,
        session_id: str,
        event_type: str,
        message: dict[str, Any] | None = None,
    ) -> None:
        params = build_workflow_event_params(session_id, event_type, message)
        logger.debug("Sending workflow event: type=%s, workflow_id=%s", event_type, session_id)
        await self.notify(SEND_WORKFLOW_EVENT, params)

    async def send_tool_approval(
        self,
        session_id: str,
        tool_name: str,
        decision: ApprovalDecision,
    ) -> None:
        await self.notify(START_WORKFLOW, build_tool_approval_params(session_id, tool_name, decision))

    async def _write(self, message: dict[str, Any]) -> None:
        data = json.dumps(message).encode("utf-8") + b"\n"
        async with self._write_lock:
            writer = self._writer
            if writer is None or writer.is_closing():
                raise TransportUnavailableError(str(message.get("method", "response")), "channel closed")
            try:
                writer.write(data)
                await writer.drain()
            except (ConnectionError, OSError) as exc:
                self._closed = True
                raise TransportUnavailableError(
                    str(message.get("method", "response")), str(exc),
                ) from exc

    # ── Incoming ──

    async def _read_loop(self) -> None:
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    break
                try:
                    message = json.loads(line.decode("utf-8"))
                except (json.JSONDecodeError, UnicodeDecodeError):
                    logger.warning("Ignoring non-JSON line from intermediary: %r", line[:200])
                    continue
                if not isinstance(message, dict):
                    logger.warning("Ignoring non-object message from intermediary: %r", message)
                    continue
                await self._handle_message(message)
        except asyncio.CancelledError:
            raise
        except (ConnectionError, OSError) as exc:
            logger.error("Notify channel read failed: %s", exc)
        finally:
            self._closed = True
            logger.info("Notify channel closed")

    async def _handle_message(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        params = message.get("params") or {}
        if not isinstance(params, dict):
            params = {"value": params}

        if message.get("error") is not None and method:
            logger.error("Intermediary reported error on %s: %s", method, message["error"])
            return

        if method == RUN_COMMAND and "id" in message:
            self._track(asyncio.create_task(self._answer_run_command(message["id"], params)))
            return

        if method is None:
            logger.debug("Ignoring response id=%s", message.get("id"))
            return

        event = normalize_notification(method, params)
        if event is None:
            logger.debug("Unhandled notification %s", method)
            return
        await self._dispatch(event)

    async def _answer_run_command(self, request_id: Any, params: dict[str, Any]) -> None:
        args = params.get("args") or []
        if not isinstance(args, list):
            args = [args]
        result = await self._runner.run(params.get("command"), args)
        try:
            await self._write({"id": request_id, "result": result})
        except TransportUnavailableError as exc:
            logger.error("Could not return runCommand result: %s", exc)

    async def _log_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            line = await stream.readline()
            if not line:
                break
            logger.debug("intermediary [stderr]: %s", line.decode("utf-8", errors="replace").rstrip())

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def close(self) -> None:
        self._closed = True
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            self._writer = None
        pending = [t for t in (self._read_task, *self._tasks) if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._process is not None and self._process.returncode is None:
            self._process.terminate()
            try:
                await asyncio.wait_for(self._process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                self._process.kill()
                await self._process.wait()
        logger.info("Notify channel shut down")
