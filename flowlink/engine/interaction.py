"""Single-flight user interaction for sessions awaiting a decision.

When a session enters an awaiting status the controller opens at most
one prompt for it, collects the user's decision on a separate task (so
event ingestion never waits on the user) and sends the correlated
response through the transport. The pending prompt is cleared only
after the send has finished.

Policy for repeated requests: once a request has been answered, a
repeat of the same request (same correlation id, or same log position
when no id is given) is neither prompted again nor re-sent; the
recorded answer stands until the backend moves on.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from flowlink.adapters.transport import TransportBridge
from flowlink.shared.formatters.notices import format_plan, format_tool_approval_prompt

from .errors import PromptDeliveryError, TransportUnavailableError
from .models import (
    ApprovalDecision,
    ChatEvent,
    EventKind,
    PendingPrompt,
    PromptKind,
    Session,
    WorkflowStatus,
)
from .session_store import SessionStore

logger = logging.getLogger(__name__)

APPROVE_ONCE = "Approve Once"
APPROVE_FOR_SESSION = "Approve for Session"
REJECT = "Reject"
TOOL_CHOICES = (APPROVE_ONCE, APPROVE_FOR_SESSION, REJECT)

PLAN_APPROVE = "Approve"
PLAN_REJECT = "Reject"
PLAN_MODIFY = "Modify"
PLAN_CHOICES = (PLAN_APPROVE, PLAN_REJECT, PLAN_MODIFY)

_DECISIONS = {
    APPROVE_ONCE: ApprovalDecision.APPROVE_ONCE,
    APPROVE_FOR_SESSION: ApprovalDecision.APPROVE_FOR_SESSION,
}


class Prompter(Protocol):
    """Host-side UI used to ask the user for decisions."""

    async def select(self, prompt: str, choices: list[str]) -> str | None: ...

    async def input(self, prompt: str) -> str | None: ...

    def notify(self, message: str, level: str = "info") -> None: ...


def request_key(index: int, entry: ChatEvent) -> str:
    if entry.correlation_id:
        return f"request:{entry.correlation_id}"
    return f"index:{index}"


class InteractionController:
    """Opens, tracks and answers per-session prompts."""

    def __init__(
        self,
        store: SessionStore,
        prompter: Prompter,
        transport: TransportBridge | None = None,
    ) -> None:
        self._store = store
        self._prompter = prompter
        self._transport = transport
        self._tasks: dict[str, asyncio.Task] = {}
        store.add_rekey_listener(self._on_rekey)

    def set_transport(self, transport: TransportBridge | None) -> None:
        self._transport = transport

    def _on_rekey(self, old_id: str, new_id: str) -> None:
        task = self._tasks.pop(old_id, None)
        if task is not None:
            self._tasks[new_id] = task

    # ── Entry points ──

    def evaluate(self, session_id: str) -> bool:
        """Open a prompt if the session is awaiting one. Returns True if opened."""
        session = self._store.get(session_id)
        if session is None or session.is_terminal:
            return False
        if session.pending_prompt is not None:
            logger.debug(
                "Session %s already has a pending %s prompt",
                session_id, session.pending_prompt.kind.value,
            )
            return False

        prompt = self._build_prompt(session)
        if prompt is None:
            return False
        if prompt.key in session.answered_prompts:
            logger.debug("Session %s: %s already answered", session_id, prompt.key)
            return False

        session.pending_prompt = prompt
        logger.info(
            "Session %s: opening %s prompt (%s)",
            session_id, prompt.kind.value, prompt.key,
        )
        task = asyncio.create_task(self._run(session, prompt))
        self._tasks[session_id] = task
        task.add_done_callback(lambda t, sid=session_id: self._forget(sid, t))
        return True

    def reprompt(self, session_id: str) -> bool:
        """Forget the answer to the current request and ask again."""
        session = self._store.get(session_id)
        if session is None:
            return False
        prompt = self._build_prompt(session)
        if prompt is not None:
            session.answered_prompts.discard(prompt.key)
        return self.evaluate(session_id)

    def mark_answered(self, session_id: str) -> None:
        """Treat the current request as answered outside the prompt flow."""
        self.discard(session_id)
        session = self._store.get(session_id)
        if session is None:
            return
        prompt = self._build_prompt(session)
        if prompt is not None:
            session.answered_prompts.add(prompt.key)

    def discard(self, session_id: str) -> None:
        """Cancel the in-flight prompt for a session without sending."""
        task = self._tasks.pop(session_id, None)
        if task is not None and not task.done():
            logger.info("Session %s: discarding in-flight prompt", session_id)
            task.cancel()
        session = self._store.get(session_id)
        if session is not None:
            session.pending_prompt = None

    async def close(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def _forget(self, session_id: str, task: asyncio.Task) -> None:
        for sid, current in list(self._tasks.items()):
            if current is task:
                del self._tasks[sid]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Prompt task for %s failed", session_id, exc_info=task.exception(),
            )

    # ── Prompt construction ──

    def _build_prompt(self, session: Session) -> PendingPrompt | None:
        status = session.status
        if status == WorkflowStatus.TOOL_CALL_APPROVAL_REQUIRED:
            found = session.last_entry(EventKind.REQUEST)
            if found is None or not found[1].has_tool:
                logger.debug("Session %s: no tool request to approve", session.session_id)
                return None
            index, entry = found
            return PendingPrompt(
                key=request_key(index, entry),
                kind=PromptKind.TOOL_APPROVAL,
                correlation_id=entry.correlation_id,
                tool_name=entry.tool_name,
            )
        if status == WorkflowStatus.INPUT_REQUIRED:
            found = session.last_entry(EventKind.REQUEST, EventKind.AGENT)
            if found is None:
                logger.debug("Session %s: no input request in log", session.session_id)
                return None
            index, entry = found
            return PendingPrompt(
                key=request_key(index, entry),
                kind=PromptKind.INPUT,
                correlation_id=entry.correlation_id,
            )
        if status == WorkflowStatus.PLAN_APPROVAL_REQUIRED:
            if not session.plan:
                logger.debug("Session %s: no plan found for approval", session.session_id)
                return None
            return PendingPrompt(
                key=f"plan:{len(session.event_log)}:{len(session.plan)}",
                kind=PromptKind.PLAN_APPROVAL,
            )
        return None

    # ── Prompt execution ──

    async def _run(self, session: Session, prompt: PendingPrompt) -> None:
        try:
            if prompt.kind == PromptKind.TOOL_APPROVAL:
                await self._run_tool_approval(session, prompt)
            elif prompt.kind == PromptKind.INPUT:
                await self._run_input(session, prompt)
            else:
                await self._run_plan_approval(session, prompt)
        finally:
            if session.pending_prompt is prompt:
                session.pending_prompt = None

    async def _run_tool_approval(self, session: Session, prompt: PendingPrompt) -> None:
        tool_name = prompt.tool_name or "unknown"
        found = session.last_entry(EventKind.REQUEST)
        args = found[1].tool_args if found else {}
        choice = await self._prompter.select(
            format_tool_approval_prompt(tool_name, args), list(TOOL_CHOICES),
        )
        # Anything other than an approval, including a dismissed prompt, rejects.
        decision = _DECISIONS.get(choice or "", ApprovalDecision.REJECT)
        if not self._still_current(session, prompt):
            return

        async def _send(transport: TransportBridge) -> None:
            await transport.send_tool_approval(session.session_id, tool_name, decision)

        if await self._deliver(session, prompt, _send):
            if decision == ApprovalDecision.REJECT:
                self._prompter.notify(f"Tool rejected: {tool_name}")
            elif decision == ApprovalDecision.APPROVE_FOR_SESSION:
                self._prompter.notify(f"Tool approved for session: {tool_name}")
            else:
                self._prompter.notify(f"Tool approved: {tool_name}")

    async def _run_input(self, session: Session, prompt: PendingPrompt) -> None:
        text = await self._prompter.input("Agent needs input: ")
        if not self._still_current(session, prompt):
            return
        if not text or not text.strip():
            # Blocked until the host explicitly reprompts or sends a message.
            session.answered_prompts.add(prompt.key)
            logger.warning("Session %s: no input provided, workflow remains blocked", session.session_id)
            self._prompter.notify("No input provided, workflow may remain blocked", "warning")
            return

        async def _send(transport: TransportBridge) -> None:
            await transport.send_user_message(session.session_id, text, prompt.correlation_id)

        if await self._deliver(session, prompt, _send):
            self._prompter.notify("Input sent to workflow")

    async def _run_plan_approval(self, session: Session, prompt: PendingPrompt) -> None:
        choice = await self._prompter.select(format_plan(session.plan), list(PLAN_CHOICES))
        message: str | None = None
        if choice == PLAN_APPROVE:
            message = "approved"
        elif choice == PLAN_REJECT:
            message = "rejected"
        elif choice == PLAN_MODIFY:
            modification = await self._prompter.input("Modification request: ")
            if modification and modification.strip():
                message = f"modify: {modification}"

        if not self._still_current(session, prompt):
            return
        if message is None:
            session.answered_prompts.add(prompt.key)
            logger.warning("Session %s: plan left undecided", session.session_id)
            return

        async def _send(transport: TransportBridge) -> None:
            await transport.send_user_message(session.session_id, message)

        if await self._deliver(session, prompt, _send):
            self._prompter.notify(f"Plan {message.split(':', 1)[0]}")

    # ── Helpers ──

    def _still_current(self, session: Session, prompt: PendingPrompt) -> bool:
        tracked = self._store.get(session.session_id) is session
        if session.pending_prompt is prompt and tracked and not session.is_terminal:
            return True
        logger.info(
            "Session %s: dropping %s decision, session moved on (status=%s tracked=%s)",
            session.session_id, prompt.kind.value, session.status.value, tracked,
        )
        return False

    async def _deliver(
        self,
        session: Session,
        prompt: PendingPrompt,
        send: Callable[[TransportBridge], Awaitable[None]],
    ) -> bool:
        """Send a decision once. Failures are surfaced, never retried."""
        transport = self._transport
        error: PromptDeliveryError | None = None
        if transport is None or not transport.is_open:
            error = PromptDeliveryError(session.session_id, prompt.kind.value, "no active channel")
        else:
            try:
                await send(transport)
            except (TransportUnavailableError, ConnectionError, OSError) as exc:
                error = PromptDeliveryError(session.session_id, prompt.kind.value, str(exc))

        if error is not None:
            logger.error("%s", error)
            self._prompter.notify(str(error), "error")
            return False

        session.answered_prompts.add(prompt.key)
        logger.info("Session %s: %s response sent", session.session_id, prompt.kind.value)
        return True
