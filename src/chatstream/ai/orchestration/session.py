"""Append-only chat history shared by the orchestrator and the tool coordinator."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from .types import ChatMessage, ContextItem, ToolCallState, ToolCallStatus

__all__ = ["ChatSession", "HistoryItem"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class HistoryItem:
    """One row of a session: a message plus the tool calls it owns."""

    message: ChatMessage
    tool_call_states: list[ToolCallState] = field(default_factory=list)
    context_items: list[ContextItem] = field(default_factory=list)
    item_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def tool_call_ids(self) -> tuple[str, ...]:
        return tuple(state.id for state in self.tool_call_states)

    def all_tools_terminal(self) -> bool:
        """Return ``True`` when every owned tool call is DONE or ERRORED.

        A row that owns no tool calls counts as ready.
        """
        return all(state.status.is_terminal for state in self.tool_call_states)


class ChatSession:
    """Ordered, append-only history for a single conversation.

    Every mutation runs under one lock so notifications delivered from tool
    execution threads never interleave with the orchestrator's own appends.
    """

    def __init__(self, session_id: str | None = None, messages: Iterable[ChatMessage] = ()) -> None:
        self.session_id = session_id or uuid.uuid4().hex
        self._items: list[HistoryItem] = []
        self._lock = threading.Lock()
        for message in messages:
            self.append(message)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------
    def append(self, message: ChatMessage, tool_call_ids: Sequence[str] = ()) -> int:
        """Append ``message`` and return its history index.

        Assistant messages that carry ``tool_calls`` own one REQUESTED state per
        call id; explicit ``tool_call_ids`` take precedence over the ids found on
        the message.
        """

        ids = list(tool_call_ids) or _tool_call_ids_from_message(message)
        if ids and message.role != "assistant":
            raise ValueError("Only assistant messages may own tool calls")
        with self._lock:
            for call_id in ids:
                if self._find_state_locked(call_id) is not None:
                    raise ValueError(f"Tool call id {call_id!r} already exists in session")
            item = HistoryItem(
                message=message,
                tool_call_states=[ToolCallState(id=call_id) for call_id in ids],
            )
            self._items.append(item)
            index = len(self._items) - 1
        LOGGER.debug(
            "Session %s appended %s message at index %s (tool_calls=%s)",
            self.session_id,
            message.role,
            index,
            ids,
        )
        return index

    def add_context_item(self, history_index: int, item: ContextItem) -> None:
        with self._lock:
            try:
                row = self._items[history_index]
            except IndexError as exc:
                raise IndexError(f"No history item at index {history_index}") from exc
            row.context_items.append(item)

    def set_tool_status(
        self,
        tool_call_id: str,
        status: ToolCallStatus,
        output: Sequence[ContextItem] | None = None,
    ) -> bool:
        """Advance a tool call; return ``False`` when it was already terminal.

        Raises:
            KeyError: when no assistant message owns ``tool_call_id``.
            InvalidToolTransition: when the update would move the call backwards.
        """

        with self._lock:
            state = self._find_state_locked(tool_call_id)
            if state is None:
                raise KeyError(tool_call_id)
            return state.advance(status, output)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def messages(self) -> tuple[ChatMessage, ...]:
        with self._lock:
            return tuple(item.message for item in self._items)

    def items(self) -> tuple[HistoryItem, ...]:
        with self._lock:
            return tuple(self._items)

    def find_tool_call(self, tool_call_id: str) -> ToolCallState | None:
        with self._lock:
            return self._find_state_locked(tool_call_id)

    def owner_of(self, tool_call_id: str) -> HistoryItem | None:
        with self._lock:
            for item in self._items:
                if any(state.id == tool_call_id for state in item.tool_call_states):
                    return item
        return None

    def index_of(self, item: HistoryItem) -> int:
        with self._lock:
            for index, candidate in enumerate(self._items):
                if candidate is item:
                    return index
        raise ValueError("History item does not belong to this session")

    def has_tool_message(self, tool_call_id: str) -> bool:
        with self._lock:
            return any(
                item.message.role == "tool" and item.message.tool_call_id == tool_call_id
                for item in self._items
            )

    def _find_state_locked(self, tool_call_id: str) -> ToolCallState | None:
        for item in self._items:
            for state in item.tool_call_states:
                if state.id == tool_call_id:
                    return state
        return None


def _tool_call_ids_from_message(message: ChatMessage) -> list[str]:
    if not message.tool_calls:
        return []
    ids: list[str] = []
    for call in message.tool_calls:
        call_id = call.get("id")
        if call_id:
            ids.append(str(call_id))
    return ids
