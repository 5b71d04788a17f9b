"""CLI entry point for running a single workflow session.

Usage:
    flowlink run "Explain this file" --file src/app.py --intermediary "node intermediary.js --stdio"
    flowlink run "Fix the failing test" --socket http://127.0.0.1:60087/webview --csrf TOKEN
    flowlink run --config flowlink.yaml "Summarize recent changes"
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import shlex
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.prompt import Prompt

from flowlink.adapters.events import event_to_dict
from flowlink.adapters.notify_channel import NotifyChannel
from flowlink.adapters.realtime_channel import RealtimeChannel
from flowlink.adapters.transport import TransportBridge
from flowlink.engine.config import WorkflowConfig
from flowlink.engine.errors import TransportUnavailableError
from flowlink.engine.manager import WorkflowSessionManager
from flowlink.engine.models import StopInfo, StopReason
from flowlink.engine.streamer import StreamConsumer
from flowlink.engine.yaml_config import TransportConfig, load_yaml_config
from flowlink.shared.context import ContextFile

logger = logging.getLogger(__name__)

_LEVEL_STYLES = {"error": "bold red", "warning": "yellow", "info": "cyan"}


class ConsolePrompter:
    """Asks the user through a rich console without blocking the event loop."""

    def __init__(self, console: Console) -> None:
        self._console = console

    async def select(self, prompt: str, choices: list[str]) -> str | None:
        self._console.print()
        self._console.print(prompt, markup=False, highlight=False)
        for number, choice in enumerate(choices, 1):
            self._console.print(f"  [bold]{number}[/bold]. {choice}")
        numbers = [str(n) for n in range(1, len(choices) + 1)]
        try:
            picked = await asyncio.to_thread(
                Prompt.ask, "Choose", choices=numbers, console=self._console,
            )
        except EOFError:
            return None
        return choices[int(picked) - 1]

    async def input(self, prompt: str) -> str | None:
        try:
            return await asyncio.to_thread(Prompt.ask, prompt, console=self._console)
        except EOFError:
            return None

    def notify(self, message: str, level: str = "info") -> None:
        style = _LEVEL_STYLES.get(level, "")
        self._console.print(message, style=style, markup=False, highlight=False)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="flowlink",
        description="Run and follow remote agentic workflows",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Start a workflow and stream its output")
    run.add_argument("goal", help="What the workflow should do")
    run.add_argument(
        "--file", "-f",
        default=None,
        help="Attach this file as the current file context",
    )
    run.add_argument(
        "--intermediary",
        default=None,
        help="Command that launches the intermediary (JSONL on stdio)",
    )
    run.add_argument(
        "--socket",
        default=None,
        help="Base URL of the real-time Socket.IO endpoint",
    )
    run.add_argument(
        "--csrf",
        default=None,
        help="CSRF token for the real-time endpoint",
    )
    run.add_argument(
        "--config",
        default=None,
        help="YAML config file (workflow: and transport: sections)",
    )
    run.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    if args.config:
        loaded = load_yaml_config(args.config)
        config, transport_config = loaded.workflow, loaded.transport
    else:
        config, transport_config = WorkflowConfig.from_env(), TransportConfig()
    if args.intermediary:
        transport_config.intermediary = shlex.split(args.intermediary)
    if args.socket:
        transport_config.socket_url = args.socket
    if args.csrf:
        transport_config.csrf_token = args.csrf
    if args.verbose:
        config.log_level = "DEBUG"

    _configure_logging(config)

    if not transport_config.intermediary and not transport_config.socket_url:
        print("Error: Provide --intermediary or --socket (or a transport: section in --config).")
        sys.exit(2)

    current_file = _read_context_file(args.file) if args.file else None

    try:
        code = asyncio.run(_run(args.goal, config, transport_config, current_file))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        code = 130
    sys.exit(code)


def _configure_logging(config: WorkflowConfig) -> None:
    level = getattr(logging, config.log_level.upper(), logging.INFO)
    if not config.log_file:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%H:%M:%S",
        )
        return

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        config.log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(logging.WARNING)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    logger.info("Logging to %s at %s", config.log_file, config.log_level)


def _read_context_file(path: str) -> ContextFile:
    p = Path(path)
    if not p.is_file():
        print(f"Error: File not found: {path}")
        sys.exit(1)
    return ContextFile(content=p.read_text(encoding="utf-8"), file_path=str(p.resolve()))


async def _open_transport(
    config: WorkflowConfig,
    transport_config: TransportConfig,
    manager: WorkflowSessionManager,
) -> TransportBridge:
    notify: NotifyChannel | None = None
    if transport_config.intermediary:
        notify = await NotifyChannel.spawn(
            transport_config.intermediary, command_runner=manager.command_runner,
        )
    if not transport_config.socket_url:
        assert notify is not None
        return notify

    # Pause/resume/stop/message go over the intermediary when both are set.
    realtime = RealtimeChannel(
        transport_config.socket_url,
        transport_config.csrf_token,
        socketio_path=config.socketio_path,
        reconnect_attempts=config.reconnect_attempts,
        reconnect_delay=config.reconnect_delay_seconds,
        control=notify,
    )
    try:
        await realtime.connect()
    except TransportUnavailableError:
        await realtime.close()
        raise
    return realtime


async def _log_bus_events(manager: WorkflowSessionManager) -> None:
    async for event in manager.bus.consume():
        logger.debug("Host event: %s", event_to_dict(event))


async def _run(
    goal: str,
    config: WorkflowConfig,
    transport_config: TransportConfig,
    current_file: ContextFile | None,
) -> int:
    console = Console()
    prompter = ConsolePrompter(console)
    manager = WorkflowSessionManager(prompter, config=config)
    done = asyncio.Event()
    outcome: list[StopInfo] = []

    def on_stop(info: StopInfo) -> None:
        outcome.append(info)
        done.set()

    consumer = StreamConsumer(
        on_chunk=lambda text: console.print(text, end="", markup=False, highlight=False),
        on_stop=on_stop,
    )

    bus_task = asyncio.create_task(_log_bus_events(manager))
    try:
        try:
            manager.set_transport(await _open_transport(config, transport_config, manager))
            session = await manager.start_session(goal, consumer, current_file=current_file)
        except TransportUnavailableError as exc:
            console.print(f"Could not start workflow: {exc}", style="bold red", markup=False)
            return 1

        console.print(f"{manager.status_icon(session.status)} Workflow started", style="dim")
        try:
            while not done.is_set():
                try:
                    await asyncio.wait_for(done.wait(), timeout=1.0)
                except asyncio.TimeoutError:
                    await manager.reap_expired()
        except asyncio.CancelledError:
            if session.session_id in manager.store:
                try:
                    await manager.stop_session(session.session_id)
                except TransportUnavailableError as exc:
                    logger.warning("Stop not sent: %s", exc)
            raise
    finally:
        await manager.close()
        bus_task.cancel()
        await asyncio.gather(bus_task, return_exceptions=True)

    info = outcome[0]
    console.print()
    if info.reason == StopReason.COMPLETE:
        console.print(f"{manager.status_icon('FINISHED')} Workflow completed", style="green")
        return 0
    if info.reason == StopReason.ERROR:
        console.print(
            f"{manager.status_icon('FAILED')} Workflow failed: {info.error}",
            style="bold red", markup=False,
        )
        return 1
    console.print(f"{manager.status_icon('STOPPED')} Workflow stopped", style="yellow")
    return 1


if __name__ == "__main__":
    main()
