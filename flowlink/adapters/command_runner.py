"""Local command execution requested by the workflow backend.

The intermediary may ask the editor side to run a command; the result
is returned to it as {"exitCode": int, "output": str} with stdout and
stderr interleaved.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

logger = logging.getLogger(__name__)

EXIT_TIMEOUT = 124
EXIT_NOT_EXECUTABLE = 126
EXIT_NOT_FOUND = 127


class CommandRunner:
    """Runs one command to completion and captures its output."""

    def __init__(self, timeout_seconds: float = 0.0, cwd: str | None = None) -> None:
        self._timeout = timeout_seconds if timeout_seconds > 0 else None
        self._cwd = cwd

    async def run(self, command: str | None, args: list[Any] | None = None) -> dict[str, Any]:
        if not command:
            return {"exitCode": 1, "output": "Error: no command given"}
        argv = [str(command), *(str(a) for a in (args or []))]
        logger.debug("Executing command: %s", argv)

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=self._cwd,
            )
        except FileNotFoundError:
            return {"exitCode": EXIT_NOT_FOUND, "output": f"Error: command not found: {command}"}
        except PermissionError:
            return {"exitCode": EXIT_NOT_EXECUTABLE, "output": f"Error: permission denied: {command}"}

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("Command %s timed out after %.0fs", command, self._timeout)
            return {
                "exitCode": EXIT_TIMEOUT,
                "output": f"Error: command timed out after {self._timeout:.0f}s",
            }

        exit_code = proc.returncode if proc.returncode is not None else 1
        logger.debug("Command completed with exit code: %d", exit_code)
        return {
            "exitCode": exit_code,
            "output": stdout.decode("utf-8", errors="replace").rstrip("\n"),
        }
