"""Bridge persisted :class:`Settings` into the runtime chat configuration."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from ..ai.client import AIClient, ClientSettings, OpenAIChatModel
from .settings import ModelSettings, Settings, SettingsStore

__all__ = [
    "ChatConfig",
    "ClientFactory",
    "ExperimentalConfig",
    "SettingsConfigProvider",
    "build_chat_config",
]

LOGGER = logging.getLogger(__name__)

ClientFactory = Callable[[ClientSettings], AIClient]


@dataclass(slots=True, frozen=True)
class ExperimentalConfig:
    read_response_tts: bool = False


@dataclass(slots=True)
class ChatConfig:
    """Snapshot of everything a turn needs from configuration."""

    models: tuple[OpenAIChatModel, ...] = ()
    selected_chat_model: OpenAIChatModel | None = None
    native_providers: frozenset[str] = frozenset()
    external_providers: frozenset[str] = frozenset()
    experimental: ExperimentalConfig = field(default_factory=ExperimentalConfig)
    relay_timeout: float = 2.0
    relay_settle_delay: float = 0.1
    rag_api_base_url: str = ""
    rag_default_groups: tuple[str, ...] = ()
    rag_n_retrieve: int = 15
    rag_n_final: int = 10

    def find_model(self, title: str) -> OpenAIChatModel | None:
        for model in self.models:
            if model.title == title:
                return model
        return None


def build_chat_config(settings: Settings, *, client_factory: ClientFactory = AIClient) -> ChatConfig:
    """Construct chat models for every configured entry and pick the selected one."""

    entries = list(settings.models) or [
        ModelSettings(
            title=settings.model,
            provider="openai",
            model=settings.model,
            api_base=settings.base_url,
            api_key=settings.api_key,
        )
    ]
    models: list[OpenAIChatModel] = []
    for entry in entries:
        client_settings = ClientSettings(
            base_url=entry.api_base or settings.base_url,
            api_key=entry.api_key or settings.api_key,
            model=entry.model,
            organization=settings.organization,
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_min_seconds=settings.retry_min_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            default_headers=settings.default_headers,
            metadata=settings.metadata,
            debug_logging=settings.debug_logging,
        )
        models.append(
            OpenAIChatModel(
                client_factory(client_settings),
                title=entry.title,
                provider_name=entry.provider.strip().lower(),
                api_base=entry.api_base,
                temperature=settings.temperature,
            )
        )

    selected: OpenAIChatModel | None = None
    if settings.selected_chat_model:
        selected = next((model for model in models if model.title == settings.selected_chat_model), None)
        if selected is None:
            LOGGER.warning("Selected model %r is not configured", settings.selected_chat_model)
    elif models:
        selected = models[0]

    return ChatConfig(
        models=tuple(models),
        selected_chat_model=selected,
        native_providers=frozenset(p.strip().lower() for p in settings.native_providers),
        external_providers=frozenset(p.strip().lower() for p in settings.external_providers),
        experimental=ExperimentalConfig(read_response_tts=settings.read_response_tts),
        relay_timeout=settings.relay_timeout,
        relay_settle_delay=settings.relay_settle_delay,
        rag_api_base_url=settings.rag_api_base_url,
        rag_default_groups=tuple(settings.rag_default_groups),
        rag_n_retrieve=settings.rag_n_retrieve,
        rag_n_final=settings.rag_n_final,
    )


class SettingsConfigProvider:
    """Config provider that builds (and caches) a :class:`ChatConfig` from settings."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: SettingsStore | None = None,
        client_factory: ClientFactory = AIClient,
    ) -> None:
        if settings is None and store is None:
            raise ValueError("Either settings or a settings store is required")
        self._settings = settings
        self._store = store
        self._client_factory = client_factory
        self._config: ChatConfig | None = None

    def load_config(self) -> ChatConfig | None:
        if self._config is None:
            settings = self._settings
            if settings is None and self._store is not None:
                try:
                    settings = self._store.load()
                except Exception as exc:
                    LOGGER.warning("Unable to load settings from %s: %s", self._store.path, exc)
                    return None
            if settings is None:
                return None
            self._config = build_chat_config(settings, client_factory=self._client_factory)
        return self._config

    def reload(self, settings: Settings | None = None) -> ChatConfig | None:
        """Drop the cached config, optionally replacing the settings it is built from."""

        if settings is not None:
            self._settings = settings
        elif self._store is not None:
            self._settings = None
        self._config = None
        return self.load_config()

    async def aclose(self) -> None:
        if self._config is None:
            return
        for model in self._config.models:
            await model.aclose()
