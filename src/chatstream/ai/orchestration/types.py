"""Core type definitions for streamed chat turns.

This module defines the dataclasses that flow between the orchestrator, the
command dispatcher, the context augmenter and the tool continuation
coordinator. Value types are frozen so they can be shared across turns.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Mapping, Sequence

from openai.types.chat import ChatCompletionMessageParam

from .errors import InvalidToolTransition

__all__ = [
    # Messages
    "ChatMessage",
    "MessagePart",
    "MessageRole",
    "ContextItem",
    "render_context_items",
    # Tool calls
    "ToolCallStatus",
    "ToolCallState",
    "ToolCompletionNotification",
    # Requests and results
    "LegacyCommand",
    "StreamRequest",
    "PromptLog",
    # Backends
    "BackendDescriptor",
    "BackendKind",
    # Streams
    "AbortSignal",
    "StreamState",
    "StreamStep",
]


# -----------------------------------------------------------------------------
# Messages
# -----------------------------------------------------------------------------

MessageRole = Literal["system", "user", "assistant", "tool", "thinking"]


@dataclass(slots=True, frozen=True)
class MessagePart:
    """One structured part of a multi-part message."""

    type: Literal["text", "image_url"] = "text"
    text: str = ""
    image_url: str | None = None

    def to_chat_param(self) -> dict[str, Any]:
        if self.type == "image_url":
            return {"type": "image_url", "image_url": {"url": self.image_url or ""}}
        return {"type": "text", "text": self.text}


@dataclass(slots=True, frozen=True)
class ChatMessage:
    """Immutable chat message appended to a session.

    Attributes:
        role: The role of the message sender.
        content: Plain text or a tuple of structured parts.
        tool_call_id: ID linking a tool result to its call (tool role only).
        tool_calls: Tool calls requested by the assistant.
    """

    role: MessageRole
    content: str | tuple[MessagePart, ...]
    tool_call_id: str | None = None
    tool_calls: tuple[Mapping[str, Any], ...] | None = None

    def __post_init__(self) -> None:
        if self.tool_call_id is not None and self.role != "tool":
            raise ValueError("tool_call_id is only valid on tool-role messages")

    @property
    def text(self) -> str:
        """Return the textual content, joining the text parts of structured content."""
        if isinstance(self.content, str):
            return self.content
        return " ".join(part.text for part in self.content if part.type == "text")

    def to_chat_param(self) -> ChatCompletionMessageParam:
        """Convert to OpenAI's ChatCompletionMessageParam format."""
        # Thinking rows are transcript-only; the wire format knows them as assistant text.
        role = "assistant" if self.role == "thinking" else self.role
        content: Any
        if isinstance(self.content, str):
            content = self.content
        else:
            content = [part.to_chat_param() for part in self.content]
        payload: dict[str, Any] = {"role": role, "content": content}
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            payload["tool_calls"] = [dict(call) for call in self.tool_calls]
        return payload  # type: ignore[return-value]

    @classmethod
    def system(cls, content: str) -> ChatMessage:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str | Sequence[MessagePart]) -> ChatMessage:
        return cls(role="user", content=content if isinstance(content, str) else tuple(content))

    @classmethod
    def assistant(
        cls,
        content: str,
        tool_calls: Sequence[Mapping[str, Any]] | None = None,
    ) -> ChatMessage:
        return cls(
            role="assistant",
            content=content,
            tool_calls=tuple(tool_calls) if tool_calls else None,
        )

    @classmethod
    def tool(cls, content: str, tool_call_id: str) -> ChatMessage:
        return cls(role="tool", content=content, tool_call_id=tool_call_id)


@dataclass(slots=True, frozen=True)
class ContextItem:
    """A unit of retrieved or tool-produced context."""

    name: str
    description: str
    content: str
    uri: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "content": self.content,
        }
        if self.uri is not None:
            payload["uri"] = self.uri
        return payload


def render_context_items(items: Sequence[ContextItem]) -> str:
    """Render context items as the body of a tool-role message."""

    return "\n\n".join(item.content for item in items)


# -----------------------------------------------------------------------------
# Tool Calls
# -----------------------------------------------------------------------------


class ToolCallStatus(str, Enum):
    """Lifecycle of a single tool call requested by the assistant."""

    REQUESTED = "requested"
    RUNNING = "running"
    DONE = "done"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (ToolCallStatus.DONE, ToolCallStatus.ERRORED)


_STATUS_ORDER = {
    ToolCallStatus.REQUESTED: 0,
    ToolCallStatus.RUNNING: 1,
    ToolCallStatus.DONE: 2,
    ToolCallStatus.ERRORED: 2,
}


@dataclass(slots=True)
class ToolCallState:
    """Mutable state of one tool call, owned by exactly one assistant message."""

    id: str
    status: ToolCallStatus = ToolCallStatus.REQUESTED
    output: tuple[ContextItem, ...] = ()

    def advance(self, status: ToolCallStatus, output: Sequence[ContextItem] | None = None) -> bool:
        """Move to ``status``; return ``False`` when the call was already terminal.

        Raises:
            InvalidToolTransition: when ``status`` would move the call backwards.
        """
        if self.status.is_terminal:
            return False
        if _STATUS_ORDER[status] < _STATUS_ORDER[self.status]:
            raise InvalidToolTransition(
                tool_call_id=self.id, current=self.status.value, requested=status.value
            )
        self.status = status
        if output is not None:
            self.output = tuple(output)
        return True


@dataclass(slots=True, frozen=True)
class ToolCompletionNotification:
    """Report from the tool-execution collaborator that a call finished."""

    tool_call_id: str
    output: tuple[ContextItem, ...] = ()
    status: ToolCallStatus = ToolCallStatus.DONE

    def __post_init__(self) -> None:
        if not self.status.is_terminal:
            raise ValueError("completion notifications must carry a terminal status")


# -----------------------------------------------------------------------------
# Requests and Results
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class LegacyCommand:
    """Slash-command payload attached to a turn."""

    name: str
    input: str = ""
    selected_code: tuple[Any, ...] = ()
    history_index: int = 0
    params: Mapping[str, Any] = field(default_factory=dict)
    context_items: tuple[ContextItem, ...] = ()
    source: str = "built-in"


@dataclass(slots=True, frozen=True)
class StreamRequest:
    """Everything needed to drive one turn. Built fresh for every turn."""

    conversation: tuple[ChatMessage, ...]
    completion_options: Mapping[str, Any] = field(default_factory=dict)
    model: str | None = None
    legacy_command: LegacyCommand | None = None
    message_options: Mapping[str, Any] | None = None

    @property
    def group_name(self) -> str | None:
        """Legacy RAG group, accepting both snake and camel spellings."""
        value = self.completion_options.get("group_name") or self.completion_options.get("groupName")
        text = str(value).strip() if value else ""
        return text or None


@dataclass(slots=True, frozen=True)
class PromptLog:
    """Terminal record of a turn."""

    model_title: str
    model_provider: str
    prompt: str
    completion: str
    completion_options: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_title": self.model_title,
            "model_provider": self.model_provider,
            "prompt": self.prompt,
            "completion": self.completion,
            "completion_options": dict(self.completion_options),
        }


# -----------------------------------------------------------------------------
# Backends
# -----------------------------------------------------------------------------


class BackendKind(str, Enum):
    """Who owns the contract for resuming a turn after tool calls."""

    INTERNAL = "internal"
    EXTERNAL = "external"


@dataclass(slots=True, frozen=True)
class BackendDescriptor:
    """Provider kind plus optional custom endpoint of a chat model."""

    provider_kind: str
    custom_endpoint: str | None = None


# -----------------------------------------------------------------------------
# Streams
# -----------------------------------------------------------------------------


class AbortSignal:
    """Cooperative, thread-safe abort flag observed at chunk boundaries."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def abort(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()


class StreamState(str, Enum):
    """Explicit state tag of a chunk stream."""

    PENDING = "pending"
    STREAMING = "streaming"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class StreamStep:
    """Result of pulling a stream: a chunk, or the terminal prompt log."""

    done: bool
    chunk: ChatMessage | None = None
    log: PromptLog | None = None

    @classmethod
    def emit(cls, chunk: ChatMessage) -> StreamStep:
        return cls(done=False, chunk=chunk)

    @classmethod
    def finish(cls, log: PromptLog) -> StreamStep:
        return cls(done=True, log=log)
