"""Error taxonomy for streamed chat turns.

Fatal errors (configuration, model selection, command resolution) stop a turn
before any chunk is produced. Retrieval and relay failures are recovered
locally by the component that raises them. Transient stream resets are
annotated through telemetry and re-raised to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

import httpx

__all__ = [
    "ErrorCode",
    "ChatStreamError",
    "ConfigNotLoaded",
    "NoModelSelected",
    "UnknownCommand",
    "CommandNotRunnable",
    "RetrievalFailure",
    "TransientStreamReset",
    "RelayFailure",
    "InvalidToolTransition",
    "is_transient_stream_reset",
]


class ErrorCode:
    """Constants for machine-readable error codes."""

    CONFIG_NOT_LOADED = "config_not_loaded"
    NO_MODEL_SELECTED = "no_model_selected"
    UNKNOWN_COMMAND = "unknown_command"
    COMMAND_NOT_RUNNABLE = "command_not_runnable"
    RETRIEVAL_FAILURE = "retrieval_failure"
    TRANSIENT_STREAM_RESET = "transient_stream_reset"
    RELAY_FAILURE = "relay_failure"
    INVALID_TOOL_TRANSITION = "invalid_tool_transition"


@dataclass
class ChatStreamError(Exception):
    """Base exception for all chatstream errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    fatal: ClassVar[bool] = False

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


@dataclass
class ConfigNotLoaded(ChatStreamError):
    """No active configuration is available."""

    error_code: str = field(default=ErrorCode.CONFIG_NOT_LOADED)
    message: str = field(default="Config not loaded")
    details: dict[str, Any] = field(default_factory=dict)

    fatal: ClassVar[bool] = True


@dataclass
class NoModelSelected(ChatStreamError):
    """The configuration has no chat-capable model."""

    error_code: str = field(default=ErrorCode.NO_MODEL_SELECTED)
    message: str = field(default="No chat model selected")
    details: dict[str, Any] = field(default_factory=dict)

    fatal: ClassVar[bool] = True


@dataclass
class UnknownCommand(ChatStreamError):
    """The named slash command is not registered."""

    command_name: str = ""
    error_code: str = field(default=ErrorCode.UNKNOWN_COMMAND)
    message: str = field(default="")
    details: dict[str, Any] = field(default_factory=dict)

    fatal: ClassVar[bool] = True

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Unknown slash command {self.command_name}"
        self.details.setdefault("command", self.command_name)
        super().__post_init__()


@dataclass
class CommandNotRunnable(ChatStreamError):
    """The slash command exposes no executable behaviour."""

    command_name: str = ""
    source: str = ""
    error_code: str = field(default=ErrorCode.COMMAND_NOT_RUNNABLE)
    message: str = field(default="")
    details: dict[str, Any] = field(default_factory=dict)

    fatal: ClassVar[bool] = True

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Slash command {self.command_name} ({self.source}) has no run function"
        self.details.setdefault("command", self.command_name)
        super().__post_init__()


@dataclass
class RetrievalFailure(ChatStreamError):
    """Retrieval for a RAG group failed; never surfaced out of the augmenter."""

    group_name: str = ""
    error_code: str = field(default=ErrorCode.RETRIEVAL_FAILURE)
    message: str = field(default="Retrieval failed")
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class TransientStreamReset(ChatStreamError):
    """The model stream was closed by the peer before completion."""

    error_code: str = field(default=ErrorCode.TRANSIENT_STREAM_RESET)
    message: str = field(default="Premature close")
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class RelayFailure(ChatStreamError):
    """A tool result could not be relayed to an external backend."""

    tool_call_id: str = ""
    error_code: str = field(default=ErrorCode.RELAY_FAILURE)
    message: str = field(default="Failed to relay tool result")
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class InvalidToolTransition(ChatStreamError):
    """A tool call status update would move the call backwards."""

    tool_call_id: str = ""
    current: str = ""
    requested: str = ""
    error_code: str = field(default=ErrorCode.INVALID_TOOL_TRANSITION)
    message: str = field(default="")
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.message:
            self.message = (
                f"Tool call {self.tool_call_id} cannot move from {self.current} to {self.requested}"
            )
        super().__post_init__()


_PREMATURE_CLOSE_MARKER = "premature close"


def is_transient_stream_reset(exc: BaseException) -> bool:
    """Return ``True`` when ``exc`` looks like a stream closed mid-response.

    Typed errors are checked first. The message match is a last resort for
    providers that only report the condition as text; it breaks silently if
    the provider rewords the error.
    """

    if isinstance(exc, (TransientStreamReset, httpx.RemoteProtocolError)):
        return True
    return _PREMATURE_CLOSE_MARKER in str(exc).lower()
