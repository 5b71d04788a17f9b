"""History message model handed to the consumer's on_message_add."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _gen_id() -> str:
    return str(uuid.uuid4())[:8]


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


@dataclass
class Message:
    role: MessageRole
    content: str
    session_id: str
    # "generated" once the backend has produced the full turn.
    state: str = "generated"
    turn_id: str | None = None
    # Position of the source entry in the session's event log.
    log_index: int | None = None
    id: str = field(default_factory=_gen_id)
    timestamp: datetime = field(default_factory=_utcnow)
