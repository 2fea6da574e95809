"""Drive one conversational turn from request to terminal prompt log.

The orchestrator resolves configuration and the chat model, optionally folds
legacy RAG context into the conversation, then forwards chunks from either a
slash command or the model stream. Callers consume a :class:`TurnStream`, which
always ends in a :class:`PromptLog`, including after an abort.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Protocol, runtime_checkable

from ...services.speech import NullSpeechSynthesizer, SpeechSynthesizer
from ...services.telemetry import NullTelemetrySink, TelemetrySink
from .command_dispatcher import CommandContext, CommandDispatcher, ContextItemSink
from .context_augmenter import ContextAugmenter
from .errors import ConfigNotLoaded, NoModelSelected, is_transient_stream_reset
from .session import ChatSession
from .streams import ChatModel, ChunkStream
from .types import AbortSignal, ChatMessage, PromptLog, StreamRequest, StreamState, StreamStep

if TYPE_CHECKING:
    from ...services.config import ChatConfig
    from ...services.free_trial import FreeTrialMonitor

__all__ = [
    "ConfigProvider",
    "DEFAULT_CONTEXT_TAG",
    "StreamOrchestrator",
    "TurnStream",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_CONTEXT_TAG = "chatstream"


@runtime_checkable
class ConfigProvider(Protocol):
    """Supplies the active configuration, or ``None`` when none is loaded."""

    def load_config(self) -> ChatConfig | None:  # pragma: no cover - protocol stub
        ...


# -----------------------------------------------------------------------------
# Turn stream
# -----------------------------------------------------------------------------


class TurnStream:
    """The orchestrator's output: chunks followed by exactly one prompt log.

    Supports both explicit pulls (``await stream.next()``) and ``async for``.
    Once finished the stream is not restartable: further pulls return the same
    terminal step. Closing the ``async for`` iterator before the end (for
    example through ``contextlib.aclosing``) closes the producer as well.
    """

    def __init__(self, steps: AsyncIterator[StreamStep], abort_signal: AbortSignal) -> None:
        self._steps = steps
        self._abort_signal = abort_signal
        self._state = StreamState.PENDING
        self._terminal: StreamStep | None = None
        self._error: BaseException | None = None

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def prompt_log(self) -> PromptLog | None:
        """Terminal log once the stream has finished, else ``None``."""

        return self._terminal.log if self._terminal is not None else None

    @property
    def abort_signal(self) -> AbortSignal:
        return self._abort_signal

    async def next(self) -> StreamStep:
        if self._terminal is not None:
            return self._terminal
        if self._error is not None:
            raise self._error
        self._state = StreamState.STREAMING
        try:
            step = await self._steps.__anext__()
        except StopAsyncIteration as exc:
            self._state = StreamState.FAILED
            self._error = RuntimeError("Turn ended without a prompt log")
            raise self._error from exc
        except BaseException as exc:
            self._state = StreamState.FAILED
            self._error = exc
            raise
        if step.done:
            self._terminal = step
            self._state = StreamState.CANCELLED if self._abort_signal.aborted else StreamState.DONE
            await self._close()
        return step

    async def cancel(self, fallback: PromptLog) -> PromptLog:
        if self._terminal is not None and self._terminal.log is not None:
            return self._terminal.log
        await self._close()
        self._terminal = StreamStep.finish(fallback)
        self._state = StreamState.CANCELLED
        return fallback

    async def collect(self) -> tuple[list[ChatMessage], PromptLog]:
        """Drain the stream and return the chunks together with the prompt log."""

        chunks = [chunk async for chunk in self]
        log = self.prompt_log
        if log is None:
            raise RuntimeError("Turn ended without a prompt log")
        return chunks, log

    def __aiter__(self) -> AsyncIterator[ChatMessage]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ChatMessage]:
        try:
            while True:
                step = await self.next()
                if step.done:
                    return
                if step.chunk is not None:
                    yield step.chunk
        finally:
            if self._terminal is None and self._error is None:
                # Consumer left early; stop the producer.
                self._state = StreamState.CANCELLED
                await self._close()

    async def _close(self) -> None:
        aclose = getattr(self._steps, "aclose", None)
        if aclose is not None:
            await aclose()


# -----------------------------------------------------------------------------
# Orchestrator
# -----------------------------------------------------------------------------


class StreamOrchestrator:
    """Run chat turns against injected collaborators."""

    def __init__(
        self,
        config_provider: ConfigProvider,
        *,
        telemetry: TelemetrySink | None = None,
        speech: SpeechSynthesizer | None = None,
        free_trial: FreeTrialMonitor | None = None,
        augmenter: ContextAugmenter | None = None,
        dispatcher: CommandDispatcher | None = None,
    ) -> None:
        self._config_provider = config_provider
        self._telemetry = telemetry if telemetry is not None else NullTelemetrySink()
        self._speech = speech if speech is not None else NullSpeechSynthesizer()
        self._free_trial = free_trial
        self._augmenter = augmenter if augmenter is not None else ContextAugmenter()
        self._dispatcher = dispatcher if dispatcher is not None else CommandDispatcher()
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def dispatcher(self) -> CommandDispatcher:
        return self._dispatcher

    @property
    def pending_side_effects(self) -> int:
        return len(self._background)

    def run(
        self,
        session: ChatSession | None,
        request: StreamRequest,
        abort_signal: AbortSignal | None = None,
        *,
        context_sink: ContextItemSink | None = None,
    ) -> TurnStream:
        """Start a turn; nothing happens until the first pull."""

        signal = abort_signal or AbortSignal()
        return TurnStream(self._drive(session, request, signal, context_sink), signal)

    async def wait_for_side_effects(self) -> None:
        """Wait for detached side effects; used at shutdown and in tests."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Turn driver
    # ------------------------------------------------------------------
    async def _drive(
        self,
        session: ChatSession | None,
        request: StreamRequest,
        abort_signal: AbortSignal,
        context_sink: ContextItemSink | None,
    ) -> AsyncIterator[StreamStep]:
        config = self._config_provider.load_config()
        if config is None:
            raise ConfigNotLoaded()
        model = self._select_model(config, request)
        experimental = getattr(config, "experimental", None)
        read_aloud = bool(getattr(experimental, "read_response_tts", False))
        if read_aloud:
            self._spawn(self._speech.kill(), "speech.kill")

        options = dict(request.completion_options)
        if not options.get("context"):
            options["context"] = DEFAULT_CONTEXT_TAG

        conversation = request.conversation
        group_name = request.group_name
        if group_name:
            conversation = await self._augmenter.augment(conversation, group_name, session=session)

        fallback = PromptLog(
            model_title=model.title or model.model,
            model_provider=model.provider_name or "unknown",
            prompt="",
            completion="",
            completion_options={**options, "model": model.model},
        )
        command = request.legacy_command
        LOGGER.debug(
            "Turn starting (model=%s, command=%s, messages=%s)",
            model.title,
            command.name if command else None,
            len(conversation),
        )

        producer: ChunkStream | None = None
        finished = False
        try:
            if command is not None:
                producer = self._start_command(
                    command, conversation, model, config, options, abort_signal, context_sink
                )
            else:
                producer = model.stream_chat(conversation, abort_signal, options, request.message_options)
            while True:
                if abort_signal.aborted:
                    LOGGER.info("Turn aborted (%s)", abort_signal.reason or "no reason given")
                    log = await producer.cancel(fallback)
                    finished = True
                    yield StreamStep.finish(log)
                    return
                step = await producer.next()
                if step.done:
                    break
                if step.chunk is not None:
                    yield StreamStep.emit(step.chunk)
            log = step.log or fallback
            finished = True
            if command is None:
                self._schedule_completion_effects(config, model, log, read_aloud=read_aloud)
            yield StreamStep.finish(log)
        except Exception as exc:
            finished = True
            if is_transient_stream_reset(exc):
                self._report_stream_reset(exc, model, command.name if command else None)
            raise
        finally:
            if producer is not None and not finished:
                await producer.cancel(fallback)

    def _select_model(self, config: ChatConfig, request: StreamRequest) -> ChatModel:
        if request.model:
            for candidate in getattr(config, "models", ()):
                if candidate.title == request.model:
                    return candidate
            raise NoModelSelected(message=f"Model {request.model!r} is not configured")
        model = getattr(config, "selected_chat_model", None)
        if model is None:
            raise NoModelSelected()
        return model

    def _start_command(
        self,
        command: Any,
        conversation: tuple[ChatMessage, ...],
        model: ChatModel,
        config: ChatConfig,
        options: dict[str, Any],
        abort_signal: AbortSignal,
        context_sink: ContextItemSink | None,
    ) -> ChunkStream:
        slash_command = self._dispatcher.resolve(command.name)
        self._capture("use_slash_command", {"name": command.name})
        sink = context_sink if context_sink is not None else ContextItemSink()
        context = CommandContext(
            input=command.input,
            history=conversation,
            model=model,
            add_context_item=sink.bind(command.history_index),
            abort_signal=abort_signal,
            context_items=tuple(command.context_items),
            params=dict(command.params),
            selected_code=tuple(command.selected_code),
            config=config,
            completion_options=options,
        )
        return self._dispatcher.invoke(
            slash_command,
            context,
            model_title=model.title or model.model,
            model_provider=model.provider_name or "unknown",
        )

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------
    def _schedule_completion_effects(
        self,
        config: ChatConfig,
        model: ChatModel,
        log: PromptLog,
        *,
        read_aloud: bool,
    ) -> None:
        if read_aloud and log.completion:
            self._spawn(self._speech.read(log.completion), "speech.read")
        self._spawn(
            self._capture_later("chat", {"model": model.model, "provider": model.provider_name}),
            "telemetry.chat",
        )
        if self._free_trial is not None:
            self._spawn(self._free_trial.check(config), "free_trial.check")

    def _report_stream_reset(self, exc: BaseException, model: ChatModel, command_name: str | None) -> None:
        properties: dict[str, Any] = {
            "model": model.model,
            "provider": model.provider_name,
            "error_message": str(exc),
            "context": "slash_command" if command_name else "regular_chat",
        }
        if command_name:
            properties["command"] = command_name
        LOGGER.warning("Stream closed prematurely by %s: %s", model.title, exc)
        self._capture("stream_premature_close_error", properties)

    def _capture(self, name: str, properties: dict[str, Any]) -> None:
        try:
            self._telemetry.capture(name, properties)
        except Exception:
            LOGGER.debug("Telemetry capture %s failed", name, exc_info=True)

    async def _capture_later(self, name: str, properties: dict[str, Any]) -> None:
        self._telemetry.capture(name, properties)

    def _spawn(self, awaitable: Awaitable[Any], label: str) -> None:
        task = asyncio.ensure_future(self._guard(awaitable, label))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @staticmethod
    async def _guard(awaitable: Awaitable[Any], label: str) -> None:
        try:
            await awaitable
        except Exception:
            LOGGER.warning("Background side effect %s failed", label, exc_info=True)
