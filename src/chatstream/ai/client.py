"""Async AI client wrapper built around OpenAI-compatible endpoints."""

from __future__ import annotations

import inspect
import json
import logging
import uuid
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, MutableMapping, Sequence, cast

import httpx
from openai import AsyncOpenAI, APIConnectionError, APIError, APIStatusError, RateLimitError
from openai.lib.streaming.chat import ChatCompletionStreamEvent
from openai.types.chat import ChatCompletionMessageParam
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .orchestration.streams import IteratorChunkStream
from .orchestration.types import AbortSignal, ChatMessage, PromptLog

__all__ = [
    "AIClient",
    "AIStreamEvent",
    "ClientSettings",
    "CompletionStream",
    "OpenAIChatModel",
    "render_prompt",
]

LOGGER = logging.getLogger(__name__)

# Completion options forwarded to the API; everything else (context tags, RAG
# group names) stays on the orchestrator side.
_FORWARDED_OPTIONS = frozenset(
    {
        "temperature",
        "top_p",
        "max_tokens",
        "max_completion_tokens",
        "stop",
        "presence_penalty",
        "frequency_penalty",
        "seed",
        "tools",
        "tool_choice",
    }
)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(slots=True)
class AIStreamEvent:
    """Normalized representation of streaming deltas."""

    type: str
    content: str | None = None
    parsed: Any | None = None
    tool_name: str | None = None
    tool_index: int | None = None
    tool_arguments: str | None = None
    tool_call_ids: Mapping[int, str] | None = None


class AIClient:
    """Async client providing streaming helpers with retry semantics."""

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client if client is not None else self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        temperature: float | None = 0.2,
        metadata: Mapping[str, str] | None = None,
        **extra_params: Any,
    ) -> AsyncIterator[AIStreamEvent]:
        """Stream chat completions for the provided messages."""

        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            temperature=temperature,
            metadata=metadata,
            extra_params=extra_params,
        )
        message_count = len(payload["messages"])
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            self._settings.model,
            message_count,
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        async for attempt in self._retrying():
            with attempt:
                async with self._client.chat.completions.stream(**payload) as stream:
                    async for event in stream:
                        normalized = self._normalize_stream_event(event)
                        if normalized is not None:
                            yield normalized
                break

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(
                (
                    APIError,
                    APIStatusError,
                    APIConnectionError,
                    RateLimitError,
                    httpx.TimeoutException,
                )
            ),
        )

    def _coerce_messages(
        self, messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam]
    ) -> List[ChatCompletionMessageParam]:
        normalized: List[ChatCompletionMessageParam] = []
        for message in messages:
            if isinstance(message, MutableMapping):
                normalized.append(cast(ChatCompletionMessageParam, dict(message)))
            else:
                try:
                    normalized.append(cast(ChatCompletionMessageParam, dict(message)))
                except TypeError as exc:  # pragma: no cover
                    raise TypeError("Messages must be mapping-like objects") from exc
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _build_chat_payload(
        self,
        *,
        messages: Sequence[ChatCompletionMessageParam],
        temperature: float | None,
        metadata: Mapping[str, str] | None,
        extra_params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": list(messages),
        }

        merged_metadata = self._merge_metadata(metadata)
        if merged_metadata:
            payload["metadata"] = merged_metadata
        if temperature is not None:
            payload["temperature"] = temperature
        if extra_params:
            payload.update(extra_params)

        return payload

    def _merge_metadata(self, runtime_metadata: Mapping[str, str] | None) -> Dict[str, str] | None:
        combined: Dict[str, str] = {}
        if self._settings.metadata:
            combined.update(self._settings.metadata)
        if runtime_metadata:
            combined.update(runtime_metadata)
        return combined or None

    def _normalize_stream_event(self, event: ChatCompletionStreamEvent[Any]) -> AIStreamEvent | None:
        event_type = getattr(event, "type", None)
        if event_type is None:
            return None

        if event_type == "content.delta":
            delta_text = getattr(event, "delta", None)
            if delta_text:
                return AIStreamEvent(type=event_type, content=str(delta_text))
            return None
        if event_type == "refusal.delta":
            return AIStreamEvent(type=event_type, content=getattr(event, "delta", None))
        if event_type == "tool_calls.function.arguments.done":
            return AIStreamEvent(
                type=event_type,
                tool_name=getattr(event, "name", None),
                tool_index=getattr(event, "index", None),
                tool_arguments=getattr(event, "arguments", None),
                parsed=getattr(event, "parsed_arguments", None),
            )
        if event_type == "chunk":
            # Argument events carry no call id; only the raw chunk deltas do.
            ids = _tool_call_ids(getattr(event, "chunk", None))
            if ids:
                return AIStreamEvent(type="tool_calls.ids", tool_call_ids=ids)
        return None

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover
            LOGGER.debug("AI client close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            await result


def _tool_call_ids(chunk: Any) -> Dict[int, str]:
    ids: Dict[int, str] = {}
    for choice in getattr(chunk, "choices", None) or ():
        delta = getattr(choice, "delta", None)
        for call in getattr(delta, "tool_calls", None) or ():
            call_id = getattr(call, "id", None)
            if call_id:
                ids[int(getattr(call, "index", 0) or 0)] = str(call_id)
    return ids


# -----------------------------------------------------------------------------
# Chat model adapter
# -----------------------------------------------------------------------------


def render_prompt(messages: Sequence[ChatMessage]) -> str:
    """Render messages as the plain-text prompt recorded in a prompt log."""

    return "\n\n".join(f"<{message.role}>\n{message.text}" for message in messages)


class CompletionStream(IteratorChunkStream):
    """Model-path chunk stream over :meth:`AIClient.stream_chat`."""

    def __init__(
        self,
        client: AIClient,
        messages: Sequence[ChatMessage],
        *,
        title: str,
        provider_name: str,
        options: Mapping[str, Any],
        abort_signal: AbortSignal,
        temperature: float | None = None,
    ) -> None:
        super().__init__()
        self._client = client
        self._messages = tuple(messages)
        self._title = title
        self._provider_name = provider_name
        self._options = dict(options)
        self._abort_signal = abort_signal
        self._temperature = temperature
        self._parts: list[str] = []
        self._call_ids: dict[int, str] = {}

    def _open(self) -> AsyncIterator[Any]:
        return self._events()

    async def _events(self) -> AsyncIterator[AIStreamEvent]:
        params = {key: value for key, value in self._options.items() if key in _FORWARDED_OPTIONS}
        temperature = params.pop("temperature", self._temperature)
        events = self._client.stream_chat(
            [message.to_chat_param() for message in self._messages],
            temperature=temperature,
            **params,
        )
        async with aclosing(events):
            async for event in events:
                if self._abort_signal.aborted:
                    LOGGER.debug("Closing completion stream for %s after abort", self._title)
                    return
                yield event

    def _translate(self, raw: Any) -> ChatMessage | None:
        event = cast(AIStreamEvent, raw)
        if event.type in ("content.delta", "refusal.delta"):
            if not event.content:
                return None
            self._parts.append(event.content)
            return ChatMessage.assistant(event.content)
        if event.type == "tool_calls.ids":
            self._call_ids.update(event.tool_call_ids or {})
            return None
        if event.type == "tool_calls.function.arguments.done":
            index = event.tool_index or 0
            call_id = self._call_ids.pop(index, None) or f"call_{uuid.uuid4().hex[:24]}"
            return ChatMessage.assistant(
                "",
                tool_calls=[
                    {
                        "id": call_id,
                        "type": "function",
                        "function": {
                            "name": event.tool_name or "",
                            "arguments": event.tool_arguments or "",
                        },
                    }
                ],
            )
        return None

    def _build_log(self) -> PromptLog:
        return PromptLog(
            model_title=self._title,
            model_provider=self._provider_name,
            prompt=render_prompt(self._messages),
            completion="".join(self._parts),
            completion_options={**self._options, "model": self._client.settings.model},
        )


class OpenAIChatModel:
    """Chat model backed by an OpenAI-compatible endpoint."""

    def __init__(
        self,
        client: AIClient,
        *,
        title: str | None = None,
        provider_name: str = "openai",
        api_base: str | None = None,
        temperature: float | None = 0.2,
    ) -> None:
        self._client = client
        self.title = title or client.settings.model
        self.provider_name = provider_name
        self.api_base = api_base
        self._temperature = temperature

    @property
    def model(self) -> str:
        return self._client.settings.model

    @property
    def client(self) -> AIClient:
        return self._client

    def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        abort_signal: AbortSignal,
        options: Mapping[str, Any],
        message_options: Mapping[str, Any] | None = None,
    ) -> CompletionStream:
        if message_options:
            LOGGER.debug("Ignoring message options for %s: %s", self.title, sorted(message_options))
        return CompletionStream(
            self._client,
            messages,
            title=self.title,
            provider_name=self.provider_name,
            options=options,
            abort_signal=abort_signal,
            temperature=self._temperature,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
