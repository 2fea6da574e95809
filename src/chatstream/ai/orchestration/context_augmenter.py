"""Legacy retrieval-augmented context for chat turns.

Two entry points share one retriever:

* :class:`ContextAugmenter` folds retrieved items into the effective
  conversation of a turn when the request names a RAG group.
* :class:`RagContextProvider` serves the ``@rag`` context provider: it renames
  retrieved items per group and lists the groups known to the RAG backend.

Neither ever lets a retrieval error escape to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

import httpx

from .errors import RetrievalFailure
from .types import ChatMessage, ContextItem

__all__ = [
    "Retriever",
    "HttpRetriever",
    "ContextAugmenter",
    "RagContextProvider",
    "DEFAULT_RAG_API_BASE_URL",
    "DEFAULT_RAG_GROUPS",
    "build_context_message",
    "last_user_query",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_RAG_API_BASE_URL = "http://localhost:8001"
DEFAULT_RAG_GROUPS: tuple[str, ...] = (
    "authentication",
    "database",
    "api",
    "ui-components",
    "tests",
    "utils",
    "models",
    "services",
    "controllers",
    "middleware",
)
_GROUPS_PATH = "/api/v1/groups"
_SEARCH_PATH = "/api/v1/search"
_GROUPS_TIMEOUT = 5.0


# -----------------------------------------------------------------------------
# Retrievers
# -----------------------------------------------------------------------------


@runtime_checkable
class Retriever(Protocol):
    """Opaque ranking collaborator returning context items for a query."""

    async def retrieve(
        self,
        query: str,
        *,
        group_name: str,
        n_retrieve: int,
        n_final: int,
    ) -> Sequence[ContextItem]:  # pragma: no cover - protocol stub
        ...


class HttpRetriever:
    """Retriever backed by the RAG service's search endpoint."""

    def __init__(
        self,
        api_base_url: str = DEFAULT_RAG_API_BASE_URL,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = api_base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def retrieve(
        self,
        query: str,
        *,
        group_name: str,
        n_retrieve: int,
        n_final: int,
    ) -> list[ContextItem]:
        payload = {
            "query": query,
            "group_name": group_name,
            "n_retrieve": n_retrieve,
            "n_final": n_final,
        }
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(f"{self._base_url}{_SEARCH_PATH}", json=payload)
            response.raise_for_status()
            data = response.json()
        if not isinstance(data, list):
            raise ValueError("RAG search response must be a JSON array")
        return [_context_item_from_payload(entry) for entry in data if isinstance(entry, Mapping)]


def _context_item_from_payload(payload: Mapping[str, Any]) -> ContextItem:
    uri = payload.get("uri")
    return ContextItem(
        name=str(payload.get("name") or ""),
        description=str(payload.get("description") or ""),
        content=str(payload.get("content") or ""),
        uri=str(uri) if uri else None,
    )


# -----------------------------------------------------------------------------
# Augmentation
# -----------------------------------------------------------------------------


def last_user_query(conversation: Sequence[ChatMessage]) -> str | None:
    """Return the text of the most recent user message, if any."""

    for message in reversed(conversation):
        if message.role == "user":
            return message.text
    return None


def build_context_message(group_name: str, items: Sequence[ContextItem]) -> ChatMessage:
    """Render retrieved items as one system message labelled with ``group_name``."""

    body = "\n\n".join(f"## {item.name}\n{item.content}" for item in items)
    return ChatMessage.system(
        f'The following context was retrieved from the "{group_name}" group:\n\n'
        f"{body}\n\n"
        "Use the context above to answer the user's question."
    )


@dataclass(slots=True)
class ContextAugmenter:
    """Inject retrieved RAG context into a turn's effective conversation."""

    retriever: Retriever | None = None
    n_retrieve: int = 15
    n_final: int = 10

    async def retrieve(self, session: Any, query: str, group_name: str) -> list[ContextItem]:
        """Return ranked items for ``query``; empty on any failure."""

        session_id = getattr(session, "session_id", None)
        try:
            if self.retriever is None:
                raise RetrievalFailure(group_name=group_name, message="No retriever configured")
            if not group_name:
                raise RetrievalFailure(group_name=group_name, message="Group name is empty")
            items = await self.retriever.retrieve(
                query,
                group_name=group_name,
                n_retrieve=self.n_retrieve,
                n_final=self.n_final,
            )
            return list(items or ())
        except Exception as exc:
            LOGGER.warning(
                "Failed to retrieve RAG context for group %s (session=%s): %s",
                group_name,
                session_id,
                exc,
            )
            return []

    async def augment(
        self,
        conversation: Sequence[ChatMessage],
        group_name: str,
        *,
        session: Any = None,
    ) -> tuple[ChatMessage, ...]:
        """Return ``conversation`` with a context message before the last user message."""

        messages = tuple(conversation)
        try:
            query = last_user_query(messages)
            if query is None:
                LOGGER.debug("No user message to augment for group %s", group_name)
                return messages
            LOGGER.info("Using RAG group: %s", group_name)
            items = await self.retrieve(session, query, group_name)
            if not items:
                return messages
            insert_at = _last_user_index(messages)
            context_message = build_context_message(group_name, items)
            return messages[:insert_at] + (context_message,) + messages[insert_at:]
        except Exception:
            LOGGER.warning("Failed to augment conversation for group %s", group_name, exc_info=True)
            return messages


def _last_user_index(messages: Sequence[ChatMessage]) -> int:
    for index in range(len(messages) - 1, -1, -1):
        if messages[index].role == "user":
            return index
    return len(messages)


# -----------------------------------------------------------------------------
# Context provider
# -----------------------------------------------------------------------------


class RagContextProvider:
    """The ``@rag`` context provider: per-group retrieval plus group listing."""

    title = "rag"
    display_title = "RAG search"
    description = "Retrieve relevant codebase context using RAG embeddings"

    def __init__(
        self,
        retriever: Retriever,
        *,
        api_base_url: str | None = None,
        default_groups: Sequence[str] | None = None,
        n_retrieve: int = 15,
        n_final: int = 10,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._retriever = retriever
        self._api_base_url = (api_base_url or DEFAULT_RAG_API_BASE_URL).rstrip("/")
        self._default_groups = tuple(default_groups or DEFAULT_RAG_GROUPS)
        self._n_retrieve = n_retrieve
        self._n_final = n_final
        self._transport = transport

    @property
    def default_groups(self) -> tuple[str, ...]:
        return self._default_groups

    async def get_context_items(self, group_name: str, *, query: str | None = None) -> list[ContextItem]:
        """Retrieve items for ``group_name`` renamed for display.

        Empty results and retrieval errors each come back as a single
        explanatory item instead of raising.
        """

        try:
            results = await self._retriever.retrieve(
                query or group_name,
                group_name=group_name,
                n_retrieve=self._n_retrieve,
                n_final=self._n_final,
            )
        except Exception as exc:
            LOGGER.error("RAG retrieval failed for group %s: %s", group_name, exc)
            return [
                ContextItem(
                    name=f"RAG error: {group_name}",
                    description=f"RAG retrieval error (group: {group_name})",
                    content=f'Retrieval for the "{group_name}" group failed: {exc or "unknown error"}',
                )
            ]
        if not results:
            return [
                ContextItem(
                    name=f"RAG: {group_name}",
                    description=f"RAG results (group: {group_name})",
                    content=f'No RAG results were found for the "{group_name}" group.',
                )
            ]
        return [
            ContextItem(
                name=f"RAG: {group_name} ({index})",
                description=f"RAG result - {group_name}: {item.description}",
                content=item.content,
                uri=item.uri,
            )
            for index, item in enumerate(results, start=1)
        ]

    async def load_group_names(self) -> list[str]:
        """Return the backend's group catalogue, or the default groups on failure."""

        try:
            groups = await self._fetch_group_names()
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.warning("Falling back to default RAG groups: %s", exc)
            return list(self._default_groups)
        LOGGER.debug("Loaded %s RAG group(s) from %s", len(groups), self._api_base_url)
        return groups

    async def _fetch_group_names(self) -> list[str]:
        url = f"{self._api_base_url}{_GROUPS_PATH}"
        async with httpx.AsyncClient(timeout=_GROUPS_TIMEOUT, transport=self._transport) as client:
            response = await client.get(url, headers={"Content-Type": "application/json"})
            response.raise_for_status()
            payload = response.json()
        if not isinstance(payload, list):
            raise ValueError("RAG group response is not a JSON array")
        return [str(name) for name in payload]
