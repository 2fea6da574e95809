"""Fold tool results back into a session and resume the turn exactly once.

The tool-execution collaborator reports each finished call with a
:class:`ToolCompletionNotification`. Notifications may arrive in any order and
may be duplicated; the coordinator aggregates them by tool-call id and routes
each assistant message to resumption only once, after every call it owns has
reached a terminal status.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from ...utils.logging import session_context
from .backend_classifier import classify
from .command_dispatcher import ContextItemSink
from .errors import RelayFailure
from .session import ChatSession, HistoryItem
from .stream_orchestrator import ConfigProvider, StreamOrchestrator
from .types import (
    AbortSignal,
    BackendDescriptor,
    BackendKind,
    ChatMessage,
    PromptLog,
    StreamRequest,
    ToolCallStatus,
    ToolCompletionNotification,
    render_context_items,
)

__all__ = [
    "ContinuationOutcome",
    "ResumeCallback",
    "SessionRelay",
    "ToolContinuationCoordinator",
    "ToolResultRelay",
    "orchestrator_resumer",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_SETTLE_DELAY = 0.1
DEFAULT_RELAY_TIMEOUT = 2.0

ResumeCallback = Callable[[ChatSession], Awaitable[Any]]


@runtime_checkable
class ToolResultRelay(Protocol):
    """Makes a tool-role message visible to an externally hosted backend."""

    async def relay(
        self,
        session: ChatSession,
        message: ChatMessage,
        descriptor: BackendDescriptor,
    ) -> None:  # pragma: no cover - protocol stub
        ...


class SessionRelay:
    """Default relay: the next request carries the session, so wait and verify."""

    def __init__(self, settle_delay: float = DEFAULT_SETTLE_DELAY) -> None:
        self._settle_delay = max(0.0, settle_delay)

    async def relay(self, session: ChatSession, message: ChatMessage, descriptor: BackendDescriptor) -> None:
        tool_call_id = message.tool_call_id or ""
        LOGGER.debug(
            "Relaying tool result %s to %s (%s chars)",
            tool_call_id,
            descriptor.custom_endpoint,
            len(message.text),
        )
        await asyncio.sleep(self._settle_delay)
        if not tool_call_id or not session.has_tool_message(tool_call_id):
            raise RelayFailure(tool_call_id=tool_call_id, message="Tool result is not visible in the session")


@dataclass(slots=True, frozen=True)
class ContinuationOutcome:
    """What the coordinator did with one notification."""

    tool_call_id: str
    appended: bool = False
    routed: bool = False
    backend: BackendKind | None = None
    relayed: bool = False


class ToolContinuationCoordinator:
    """Aggregate tool completions per assistant message and resume once."""

    def __init__(
        self,
        session: ChatSession,
        config_provider: ConfigProvider,
        resume: ResumeCallback,
        *,
        relay: ToolResultRelay | None = None,
        relay_timeout: float | None = None,
    ) -> None:
        self._session = session
        self._config_provider = config_provider
        self._resume = resume
        self._relay = relay
        self._relay_timeout = relay_timeout
        self._routed: set[str] = set()
        self._lock = threading.Lock()

    @property
    def session(self) -> ChatSession:
        return self._session

    def mark_running(self, tool_call_id: str) -> bool:
        """Record that execution of ``tool_call_id`` has started."""

        try:
            return self._session.set_tool_status(tool_call_id, ToolCallStatus.RUNNING)
        except KeyError:
            LOGGER.warning("Cannot mark unknown tool call %s as running", tool_call_id)
            return False

    async def notify(self, notification: ToolCompletionNotification) -> ContinuationOutcome:
        """Apply a completion notification and route the owner once it is ready."""

        call_id = notification.tool_call_id
        owner = self._session.owner_of(call_id)
        if owner is None:
            # Cancelled mid-apply: there is nothing left to resume for this id.
            LOGGER.warning("Ignoring completion for unknown tool call %s", call_id)
            return ContinuationOutcome(tool_call_id=call_id)

        changed = self._session.set_tool_status(call_id, notification.status, notification.output)
        if not changed:
            LOGGER.debug("Duplicate completion for tool call %s ignored", call_id)
            return ContinuationOutcome(tool_call_id=call_id)

        tool_message = ChatMessage.tool(render_context_items(notification.output), call_id)
        self._session.append(tool_message)

        if not owner.all_tools_terminal() or not self._claim(owner):
            return ContinuationOutcome(tool_call_id=call_id, appended=True)

        backend, relayed = await self._route(owner, tool_message)
        return ContinuationOutcome(
            tool_call_id=call_id,
            appended=True,
            routed=True,
            backend=backend,
            relayed=relayed,
        )

    def notify_threadsafe(
        self,
        notification: ToolCompletionNotification,
        loop: asyncio.AbstractEventLoop,
    ) -> Future[ContinuationOutcome]:
        """Schedule :meth:`notify` on ``loop`` from a tool-execution thread."""

        return asyncio.run_coroutine_threadsafe(self.notify(notification), loop)

    def _claim(self, owner: HistoryItem) -> bool:
        with self._lock:
            if owner.item_id in self._routed:
                return False
            self._routed.add(owner.item_id)
            return True

    async def _route(self, owner: HistoryItem, tool_message: ChatMessage) -> tuple[BackendKind, bool]:
        config = self._config_provider.load_config()
        model = getattr(config, "selected_chat_model", None)
        descriptor = BackendDescriptor(
            provider_kind=getattr(model, "provider_name", "") or "",
            custom_endpoint=getattr(model, "api_base", None),
        )
        backend = classify(
            descriptor,
            native_providers=frozenset(getattr(config, "native_providers", ())),
            external_providers=frozenset(getattr(config, "external_providers", ())),
        )
        LOGGER.info(
            "Tool calls for message %s complete; resuming via %s backend (provider=%s)",
            owner.item_id,
            backend.value,
            descriptor.provider_kind or "unknown",
        )
        relayed = False
        if backend is BackendKind.EXTERNAL:
            timeout = self._relay_timeout
            if timeout is None:
                timeout = float(getattr(config, "relay_timeout", DEFAULT_RELAY_TIMEOUT))
            relay = self._relay
            if relay is None:
                relay = SessionRelay(float(getattr(config, "relay_settle_delay", DEFAULT_SETTLE_DELAY)))
            try:
                await asyncio.wait_for(relay.relay(self._session, tool_message, descriptor), timeout)
                relayed = True
            except asyncio.TimeoutError:
                LOGGER.warning("Relay timed out after %.2fs; falling back to internal resume", timeout)
            except Exception as exc:
                LOGGER.warning("Relay failed (%s); falling back to internal resume", exc)
        await self._resume(self._session)
        return backend, relayed


def orchestrator_resumer(
    orchestrator: StreamOrchestrator,
    *,
    completion_options: dict[str, Any] | None = None,
    model: str | None = None,
    on_chunk: Callable[[ChatMessage], None] | None = None,
    context_sink: ContextItemSink | None = None,
    abort_signal_factory: Callable[[], AbortSignal] = AbortSignal,
) -> ResumeCallback:
    """Build a resume callback that runs a fresh turn over the whole session.

    The assistant reply, including any new tool calls, is appended to the
    session once the turn finishes.
    """

    async def resume(session: ChatSession) -> PromptLog | None:
        request = StreamRequest(
            conversation=session.messages(),
            completion_options=dict(completion_options or {}),
            model=model,
        )
        stream = orchestrator.run(session, request, abort_signal_factory(), context_sink=context_sink)
        parts: list[str] = []
        tool_calls: list[Any] = []
        with session_context(session.session_id):
            async for chunk in stream:
                if chunk.text:
                    parts.append(chunk.text)
                if chunk.tool_calls:
                    tool_calls.extend(chunk.tool_calls)
                if on_chunk is not None:
                    on_chunk(chunk)
        if parts or tool_calls:
            session.append(ChatMessage.assistant("".join(parts), tool_calls=tool_calls or None))
        return stream.prompt_log

    return resume
