"""Plain-text rendering of stream notices and interaction prompts.

The streamer and interaction controller produce text only; hosts
decide how to display it.
"""

from __future__ import annotations

import json
from typing import Any


def format_tool_args(args: Any) -> str:
    """Render tool arguments as indented JSON (falls back to str)."""
    if not args:
        return "{}"
    try:
        return json.dumps(args, indent=2, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return str(args)


def format_tool_notice(tool_name: str | None, content: str) -> str:
    return f"\n[Tool: {tool_name or 'unknown'}]\n{content}\n"


def format_approval_notice(tool_name: str, content: str) -> str:
    return f"\n[Approval Required for: {tool_name}]\n{content}\n"


def format_input_notice(content: str) -> str:
    return f"\n[Input Required]\n{content}\n"


def format_tool_approval_prompt(tool_name: str, args: Any) -> str:
    return (
        "Tool Approval Required:\n\n"
        f"Tool: {tool_name}\n"
        f"Args: {format_tool_args(args)}\n\n"
        "Do you want to approve this tool execution?"
    )


def _step_text(step: Any) -> str:
    if isinstance(step, str):
        return step
    if isinstance(step, dict):
        for key in ("description", "title", "text", "name"):
            value = step.get(key)
            if isinstance(value, str) and value:
                return value
    return json.dumps(step, sort_keys=True, default=str)


def format_plan(steps: list[Any]) -> str:
    """Numbered plan steps followed by the approval question."""
    lines = ["Agent's Execution Plan:", ""]
    for number, step in enumerate(steps, start=1):
        lines.append(f"{number}. {_step_text(step)}")
    lines.append("")
    lines.append("Do you want to approve this plan?")
    return "\n".join(lines)
