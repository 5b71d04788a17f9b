"""Additional context and goal text for workflow start requests."""
from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

_FILE_BLOCK = re.compile(
    r'<file path="(?P<path>[^"]*)" language="(?P<language>[^"]*)">(?P<content>.*?)</file>',
    re.DOTALL,
)

_FILE_REFERENCE_HINTS = ("this file", "explain", "what")


@dataclass
class ContextFile:
    """One file attached to a start request."""
    content: str
    file_path: str
    language: str | None = None
    category: str = "file"

    @property
    def file_name(self) -> str:
        return os.path.basename(self.file_path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "content": self.content,
            "metadata": {
                "file_name": self.file_name,
                "file_path": self.file_path,
            },
        }


def parse_file_blocks(text: str) -> list[ContextFile]:
    """Extract <file path=".." language="..">..</file> blocks from rendered text."""
    files = []
    for match in _FILE_BLOCK.finditer(text or ""):
        path, content = match.group("path"), match.group("content")
        if not path or not content:
            continue
        files.append(ContextFile(
            content=content,
            file_path=path,
            language=match.group("language") or None,
        ))
    return files


def build_additional_context(
    current: ContextFile | None = None,
    selected: Iterable[ContextFile] = (),
) -> list[dict[str, Any]]:
    """Current file first, then selected files other than the current one."""
    context = []
    current_path = None
    if current is not None and current.file_path and current.content:
        context.append(current.to_dict())
        current_path = current.file_path
    for item in selected:
        if item.file_path == current_path:
            continue
        context.append(item.to_dict())
        logger.debug("Added selected file to context: %s", item.file_path)
    return context


def enhance_goal(goal: str, file_name: str | None) -> str:
    if not file_name:
        return goal
    lowered = goal.lower()
    if any(hint in lowered for hint in _FILE_REFERENCE_HINTS):
        enhanced = f"{goal} (file: {file_name})"
        logger.debug("Enhanced goal with file context: %s", enhanced)
        return enhanced
    return goal


def extract_goal(messages: Iterable[Mapping[str, Any]]) -> str:
    """Text of the most recent user message, or "" if there is none."""
    for message in reversed(list(messages)):
        if message.get("role") != "user":
            continue
        content = message.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            for item in content:
                if isinstance(item, str):
                    return item
                if isinstance(item, Mapping) and item.get("type") == "text":
                    return str(item.get("text", ""))
        return ""
    return ""


def selected_files(messages: Iterable[Mapping[str, Any]]) -> list[ContextFile]:
    """Files rendered into context messages (those flagged is_context)."""
    files: list[ContextFile] = []
    for message in messages:
        content = message.get("content")
        if message.get("is_context") and isinstance(content, str):
            files.extend(parse_file_blocks(content))
    return files
