"""Pull-based chunk streams with an explicit terminal value.

Python async generators cannot hand a return value to their consumer, so every
producer in the package speaks :class:`ChunkStream` instead: ``next()`` yields a
:class:`StreamStep` that is either a chunk or the terminal :class:`PromptLog`,
and ``cancel()`` ends the stream early with a caller-supplied fallback log.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Mapping, Protocol, Sequence, runtime_checkable

from .types import AbortSignal, ChatMessage, PromptLog, StreamState, StreamStep

__all__ = ["ChatModel", "ChunkStream", "IteratorChunkStream"]

LOGGER = logging.getLogger(__name__)


@runtime_checkable
class ChunkStream(Protocol):
    """Finite stream of chunks terminating in a prompt log."""

    async def next(self) -> StreamStep:  # pragma: no cover - protocol stub
        ...

    async def cancel(self, fallback: PromptLog) -> PromptLog:  # pragma: no cover - protocol stub
        ...


@runtime_checkable
class ChatModel(Protocol):
    """Chat-capable model as seen by the orchestrator."""

    title: str
    model: str
    provider_name: str
    api_base: str | None

    def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        abort_signal: AbortSignal,
        options: Mapping[str, Any],
        message_options: Mapping[str, Any] | None = None,
    ) -> ChunkStream:  # pragma: no cover - protocol stub
        ...


class IteratorChunkStream(ABC):
    """Base class adapting an async iterator of raw events to :class:`ChunkStream`.

    Subclasses open the underlying iterator lazily, translate raw events into
    chunks (returning ``None`` to skip an event) and build the terminal log once
    the iterator is exhausted. A finished stream keeps returning its terminal
    step; a failed stream keeps raising its original error.
    """

    def __init__(self) -> None:
        self._state = StreamState.PENDING
        self._iterator: AsyncIterator[Any] | None = None
        self._terminal: StreamStep | None = None
        self._error: BaseException | None = None

    @property
    def state(self) -> StreamState:
        return self._state

    async def next(self) -> StreamStep:
        if self._terminal is not None:
            return self._terminal
        if self._error is not None:
            raise self._error
        if self._iterator is None:
            self._iterator = self._open()
            self._state = StreamState.STREAMING
        while True:
            try:
                raw = await self._iterator.__anext__()
            except StopAsyncIteration:
                self._state = StreamState.DONE
                self._terminal = StreamStep.finish(self._build_log())
                return self._terminal
            except BaseException as exc:
                self._state = StreamState.FAILED
                self._error = exc
                await self._close()
                raise
            chunk = self._translate(raw)
            if chunk is not None:
                return StreamStep.emit(chunk)

    async def cancel(self, fallback: PromptLog) -> PromptLog:
        if self._terminal is not None and self._terminal.log is not None:
            return self._terminal.log
        await self._close()
        self._state = StreamState.CANCELLED
        self._terminal = StreamStep.finish(fallback)
        return fallback

    async def _close(self) -> None:
        iterator = self._iterator
        aclose = getattr(iterator, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception:  # pragma: no cover - closing a broken producer
            LOGGER.debug("Failed to close %s", type(self).__name__, exc_info=True)

    @abstractmethod
    def _open(self) -> AsyncIterator[Any]:
        """Return the async iterator producing raw events."""

    @abstractmethod
    def _translate(self, raw: Any) -> ChatMessage | None:
        """Map a raw event to a chunk, or ``None`` to skip it."""

    @abstractmethod
    def _build_log(self) -> PromptLog:
        """Return the terminal log once the iterator is exhausted."""
