"""Shared test helpers and stub classes.

Import from here instead of duplicating these stubs in individual test files.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Iterable, Mapping, Sequence

from chatstream.ai.orchestration import (
    AbortSignal,
    ChatMessage,
    ContextItem,
    IteratorChunkStream,
    PromptLog,
)
from chatstream.services.config import ChatConfig, ExperimentalConfig


class ScriptedStream(IteratorChunkStream):
    """Chunk stream replaying a script of strings, messages and exceptions.

    ``before_each`` runs before every scripted item is produced, which lets a
    test trip the abort signal at an exact chunk boundary.
    """

    def __init__(
        self,
        script: Iterable[Any],
        *,
        title: str,
        provider: str,
        messages: Sequence[ChatMessage] = (),
        before_each: Any = None,
    ) -> None:
        super().__init__()
        self._script = list(script)
        self._title = title
        self._provider = provider
        self._messages = tuple(messages)
        self._before_each = before_each
        self._parts: list[str] = []
        self.produced = 0
        self.closed = False

    def _open(self) -> AsyncIterator[Any]:
        return self._replay()

    async def _replay(self) -> AsyncIterator[Any]:
        try:
            for item in self._script:
                if self._before_each is not None:
                    self._before_each(self.produced)
                await asyncio.sleep(0)
                if isinstance(item, BaseException):
                    raise item
                self.produced += 1
                yield item
        finally:
            self.closed = True

    def _translate(self, raw: Any) -> ChatMessage | None:
        if isinstance(raw, ChatMessage):
            return raw
        if not raw:
            return None
        self._parts.append(str(raw))
        return ChatMessage.assistant(str(raw))

    def _build_log(self) -> PromptLog:
        return PromptLog(
            model_title=self._title,
            model_provider=self._provider,
            prompt="\n".join(message.text for message in self._messages),
            completion="".join(self._parts),
        )


class StubChatModel:
    """Chat model whose streams replay ``script``; records every call."""

    def __init__(
        self,
        script: Iterable[Any] = ("Hello", " world"),
        *,
        title: str = "Stub",
        model: str = "stub-model",
        provider_name: str = "openai",
        api_base: str | None = None,
        before_each: Any = None,
    ) -> None:
        self.title = title
        self.model = model
        self.provider_name = provider_name
        self.api_base = api_base
        self.script = list(script)
        self.before_each = before_each
        self.calls: list[dict[str, Any]] = []
        self.streams: list[ScriptedStream] = []

    def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        abort_signal: AbortSignal,
        options: Mapping[str, Any],
        message_options: Mapping[str, Any] | None = None,
    ) -> ScriptedStream:
        self.calls.append(
            {
                "messages": tuple(messages),
                "options": dict(options),
                "message_options": message_options,
                "abort_signal": abort_signal,
            }
        )
        stream = ScriptedStream(
            self.script,
            title=self.title,
            provider=self.provider_name,
            messages=messages,
            before_each=self.before_each,
        )
        self.streams.append(stream)
        return stream


class StubConfigProvider:
    def __init__(self, config: ChatConfig | None) -> None:
        self.config = config
        self.calls = 0

    def load_config(self) -> ChatConfig | None:
        self.calls += 1
        return self.config


def make_config(
    model: Any = None,
    *,
    models: Sequence[Any] | None = None,
    native_providers: Iterable[str] = ("free-trial", "ollama"),
    external_providers: Iterable[str] = ("openai", "anthropic"),
    read_response_tts: bool = False,
    relay_timeout: float = 2.0,
) -> ChatConfig:
    selected = model if model is not None else StubChatModel()
    return ChatConfig(
        models=tuple(models) if models is not None else (selected,),
        selected_chat_model=selected,
        native_providers=frozenset(native_providers),
        external_providers=frozenset(external_providers),
        experimental=ExperimentalConfig(read_response_tts=read_response_tts),
        relay_timeout=relay_timeout,
    )


class StubRetriever:
    """Retriever returning fixed items, or raising ``error`` when set."""

    def __init__(self, items: Sequence[ContextItem] = (), *, error: BaseException | None = None) -> None:
        self.items = list(items)
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def retrieve(self, query: str, *, group_name: str, n_retrieve: int, n_final: int) -> list[ContextItem]:
        self.calls.append(
            {"query": query, "group_name": group_name, "n_retrieve": n_retrieve, "n_final": n_final}
        )
        if self.error is not None:
            raise self.error
        return list(self.items)


class RecordingTelemetry:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def capture(self, name: str, properties: Mapping[str, Any] | None = None) -> None:
        self.events.append((name, dict(properties or {})))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


class RecordingSpeech:
    def __init__(self, *, fail: bool = False) -> None:
        self.read_calls: list[str] = []
        self.kill_calls = 0
        self.fail = fail

    async def read(self, text: str) -> None:
        self.read_calls.append(text)
        if self.fail:
            raise RuntimeError("speaker unplugged")

    async def kill(self) -> None:
        self.kill_calls += 1


class RecordingFreeTrial:
    def __init__(self) -> None:
        self.checked: list[Any] = []

    async def check(self, config: Any) -> bool:
        self.checked.append(config)
        return False


def make_items(count: int, *, prefix: str = "item") -> list[ContextItem]:
    return [
        ContextItem(name=f"{prefix}-{index}", description=f"desc {index}", content=f"content {index}")
        for index in range(1, count + 1)
    ]
