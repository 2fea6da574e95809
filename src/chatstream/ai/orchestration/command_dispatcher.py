"""Slash-command resolution and execution for the legacy command path."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Iterable, Mapping

from .context_augmenter import RagContextProvider, build_context_message
from .errors import CommandNotRunnable, UnknownCommand
from .streams import ChatModel, IteratorChunkStream
from .types import AbortSignal, ChatMessage, ContextItem, PromptLog

__all__ = [
    "CommandContext",
    "CommandDispatcher",
    "CommandRun",
    "CommandStream",
    "ContextItemSink",
    "SlashCommand",
    "build_rag_command",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Types
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class CommandContext:
    """Everything a slash command may read while it runs."""

    input: str
    history: tuple[ChatMessage, ...]
    model: ChatModel
    add_context_item: Callable[[ContextItem], None]
    abort_signal: AbortSignal
    context_items: tuple[ContextItem, ...] = ()
    params: Mapping[str, Any] = field(default_factory=dict)
    selected_code: tuple[Any, ...] = ()
    config: Any = None
    completion_options: Mapping[str, Any] = field(default_factory=dict)


# A command's run function yields text fragments.
CommandRun = Callable[[CommandContext], AsyncIterator[str]]


@dataclass(slots=True, frozen=True)
class SlashCommand:
    """Named command that produces an assistant reply from a context."""

    name: str
    description: str = ""
    run: CommandRun | None = None
    source: str = "built-in"


class ContextItemSink:
    """Bounded, thread-safe buffer of context items keyed by history index.

    The dispatcher writes while a command runs; the orchestrator's caller
    drains. When full, the oldest item is discarded.
    """

    def __init__(self, capacity: int = 256) -> None:
        self._capacity = max(1, capacity)
        self._items: deque[tuple[int, ContextItem]] = deque()
        self._lock = threading.Lock()
        self._dropped = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def dropped(self) -> int:
        with self._lock:
            return self._dropped

    def push(self, history_index: int, item: ContextItem) -> None:
        with self._lock:
            if len(self._items) >= self._capacity:
                self._items.popleft()
                self._dropped += 1
                LOGGER.warning("Context item sink full; dropped oldest item")
            self._items.append((history_index, item))

    def bind(self, history_index: int) -> Callable[[ContextItem], None]:
        """Return a callback that pushes items for ``history_index``."""

        def _push(item: ContextItem) -> None:
            self.push(history_index, item)

        return _push

    def drain(self) -> dict[int, list[ContextItem]]:
        """Remove and return every buffered item grouped by history index."""

        with self._lock:
            pending = list(self._items)
            self._items.clear()
        grouped: OrderedDict[int, list[ContextItem]] = OrderedDict()
        for history_index, item in pending:
            grouped.setdefault(history_index, []).append(item)
        return dict(grouped)

    def apply_to(self, session: Any) -> int:
        """Drain into ``session.add_context_item`` and return the number applied."""

        applied = 0
        for history_index, items in self.drain().items():
            for item in items:
                session.add_context_item(history_index, item)
                applied += 1
        return applied

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


# -----------------------------------------------------------------------------
# Streams
# -----------------------------------------------------------------------------


class CommandStream(IteratorChunkStream):
    """Chunk stream over a command's text fragments."""

    def __init__(
        self,
        command: SlashCommand,
        context: CommandContext,
        *,
        model_title: str,
        model_provider: str,
    ) -> None:
        super().__init__()
        if command.run is None:
            raise CommandNotRunnable(command_name=command.name, source=command.source)
        self._run = command.run
        self._command = command
        self._context = context
        self._model_title = model_title
        self._model_provider = model_provider
        self._fragments: list[str] = []

    @property
    def command(self) -> SlashCommand:
        return self._command

    def _open(self) -> AsyncIterator[Any]:
        LOGGER.debug("Running slash command %s", self._command.name)
        return self._run(self._context)

    def _translate(self, raw: Any) -> ChatMessage | None:
        if not raw:
            return None
        text = str(raw)
        self._fragments.append(text)
        return ChatMessage.assistant(text)

    def _build_log(self) -> PromptLog:
        return PromptLog(
            model_title=self._model_title,
            model_provider=self._model_provider,
            prompt=self._context.input,
            completion="".join(self._fragments),
            completion_options=dict(self._context.completion_options),
        )


# -----------------------------------------------------------------------------
# Dispatcher
# -----------------------------------------------------------------------------


class CommandDispatcher:
    """Registry of slash commands with resolve/invoke helpers."""

    def __init__(self, commands: Iterable[SlashCommand] = ()) -> None:
        self._commands: dict[str, SlashCommand] = {}
        for command in commands:
            self.register(command)

    @property
    def commands(self) -> tuple[SlashCommand, ...]:
        return tuple(self._commands.values())

    def register(self, command: SlashCommand) -> None:
        if not command.name:
            raise ValueError("Slash commands require a name")
        if command.name in self._commands:
            LOGGER.debug("Replacing slash command %s", command.name)
        self._commands[command.name] = command

    def resolve(self, name: str) -> SlashCommand:
        command = self._commands.get(name)
        if command is None:
            raise UnknownCommand(command_name=name)
        return command

    def invoke(
        self,
        command: SlashCommand,
        context: CommandContext,
        *,
        model_title: str = "",
        model_provider: str = "unknown",
    ) -> CommandStream:
        """Start ``command`` and return its stream.

        Raises:
            CommandNotRunnable: when the command exposes no run function.
        """

        if command.run is None:
            LOGGER.error("Slash command %s (%s) has no run function", command.name, command.source)
            raise CommandNotRunnable(command_name=command.name, source=command.source)
        return CommandStream(command, context, model_title=model_title, model_provider=model_provider)


# -----------------------------------------------------------------------------
# Built-in commands
# -----------------------------------------------------------------------------


def build_rag_command(provider: RagContextProvider, *, name: str = "rag") -> SlashCommand:
    """Return a command answering with context retrieved from one RAG group.

    The group comes from the ``group_name`` param or the first word of the
    input; the rest of the input is the question. Retrieved items are pushed to
    the caller's sink before the model answers.
    """

    async def run(context: CommandContext) -> AsyncIterator[str]:
        group_name = str(context.params.get("group_name") or "").strip()
        question = context.input.strip()
        if not group_name:
            group_name, _, question = question.partition(" ")
            question = question.strip()
        if not group_name:
            yield "Usage: /rag <group> <question>"
            return
        items = await provider.get_context_items(group_name, query=question or group_name)
        for item in items:
            context.add_context_item(item)
        history = list(context.history)
        insert_at = len(history) - 1 if history and history[-1].role == "user" else len(history)
        history.insert(insert_at, build_context_message(group_name, items))
        if question and (not history or history[-1].role != "user"):
            history.append(ChatMessage.user(question))
        stream = context.model.stream_chat(history, context.abort_signal, context.completion_options)
        step = await stream.next()
        while not step.done:
            if context.abort_signal.aborted:
                await stream.cancel(
                    PromptLog(
                        model_title=context.model.title,
                        model_provider=context.model.provider_name or "unknown",
                        prompt="",
                        completion="",
                    )
                )
                return
            if step.chunk is not None and step.chunk.text:
                yield step.chunk.text
            step = await stream.next()

    return SlashCommand(
        name=name,
        description="Answer using context retrieved from a RAG group",
        run=run,
    )
