"""Streaming turn orchestration and tool-call continuation."""

# Core types
from .types import (
    AbortSignal,
    BackendDescriptor,
    BackendKind,
    ChatMessage,
    ContextItem,
    LegacyCommand,
    MessagePart,
    PromptLog,
    StreamRequest,
    StreamState,
    StreamStep,
    ToolCallState,
    ToolCallStatus,
    ToolCompletionNotification,
    render_context_items,
)
from .errors import (
    ChatStreamError,
    CommandNotRunnable,
    ConfigNotLoaded,
    InvalidToolTransition,
    NoModelSelected,
    RelayFailure,
    RetrievalFailure,
    TransientStreamReset,
    UnknownCommand,
)
from .session import ChatSession, HistoryItem
from .streams import ChatModel, ChunkStream, IteratorChunkStream

# Components
from .backend_classifier import classify
from .context_augmenter import ContextAugmenter, HttpRetriever, RagContextProvider, Retriever
from .command_dispatcher import (
    CommandContext,
    CommandDispatcher,
    CommandStream,
    ContextItemSink,
    SlashCommand,
    build_rag_command,
)
from .stream_orchestrator import ConfigProvider, StreamOrchestrator, TurnStream
from .tool_continuation import (
    ContinuationOutcome,
    SessionRelay,
    ToolContinuationCoordinator,
    ToolResultRelay,
    orchestrator_resumer,
)

__all__ = [
    # Types
    "AbortSignal",
    "BackendDescriptor",
    "BackendKind",
    "ChatMessage",
    "ContextItem",
    "LegacyCommand",
    "MessagePart",
    "PromptLog",
    "StreamRequest",
    "StreamState",
    "StreamStep",
    "ToolCallState",
    "ToolCallStatus",
    "ToolCompletionNotification",
    "render_context_items",
    # Errors
    "ChatStreamError",
    "CommandNotRunnable",
    "ConfigNotLoaded",
    "InvalidToolTransition",
    "NoModelSelected",
    "RelayFailure",
    "RetrievalFailure",
    "TransientStreamReset",
    "UnknownCommand",
    # Session and streams
    "ChatSession",
    "HistoryItem",
    "ChatModel",
    "ChunkStream",
    "IteratorChunkStream",
    # Components
    "classify",
    "ContextAugmenter",
    "HttpRetriever",
    "RagContextProvider",
    "Retriever",
    "CommandContext",
    "CommandDispatcher",
    "CommandStream",
    "ContextItemSink",
    "SlashCommand",
    "build_rag_command",
    "ConfigProvider",
    "StreamOrchestrator",
    "TurnStream",
    "ContinuationOutcome",
    "SessionRelay",
    "ToolContinuationCoordinator",
    "ToolResultRelay",
    "orchestrator_resumer",
]
