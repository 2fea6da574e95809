"""Telemetry sinks for turn-level usage events.

Events are fire-and-forget: sinks buffer in memory and never block the
caller. :class:`JsonlTelemetrySink` mirrors events to disk only when the user
opted in, and :func:`emit` broadcasts each event to in-process listeners.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Mapping, Protocol, runtime_checkable

LOGGER = logging.getLogger(__name__)

_EVENT_LISTENERS: dict[str, list[Callable[[dict[str, Any]], None]]] = {}
_DEFAULT_TELEMETRY_DIR = Path.home() / ".chatstream" / "telemetry"
_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(slots=True)
class TelemetryEvent:
    """A single captured event prior to serialization."""

    name: str
    properties: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def serialize(self, session_id: str) -> str:
        payload = {
            "session_id": session_id,
            "name": self.name,
            "timestamp": self.timestamp.isoformat(),
            "properties": self.properties,
        }
        return json.dumps(payload, default=_json_default, ensure_ascii=False)


@runtime_checkable
class TelemetrySink(Protocol):
    """Sink interface used to collect telemetry events."""

    def capture(self, name: str, properties: Mapping[str, Any] | None = None) -> None:  # pragma: no cover
        ...


class NullTelemetrySink:
    """Sink that discards every event."""

    def capture(self, name: str, properties: Mapping[str, Any] | None = None) -> None:
        del name, properties


class InMemoryTelemetrySink:
    """Simple ring-buffer telemetry sink for local inspection and tests."""

    def __init__(self, capacity: int = 200) -> None:
        self._capacity = max(10, capacity)
        self._buffer: deque[TelemetryEvent] = deque(maxlen=self._capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def capture(self, name: str, properties: Mapping[str, Any] | None = None) -> None:
        event = TelemetryEvent(name=name, properties=_sanitize_props(dict(properties or {})))
        with self._lock:
            self._buffer.append(event)
        emit(name, event.properties)

    def tail(self, limit: int | None = None) -> list[TelemetryEvent]:
        with self._lock:
            events = list(self._buffer)
        if limit is None or limit >= len(events):
            return events
        return events[-limit:]

    def names(self) -> list[str]:
        return [event.name for event in self.tail()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


@dataclass(slots=True)
class JsonlTelemetrySink:
    """Sink that buffers events and flushes them as JSONL to disk when enabled."""

    enabled: bool = False
    storage_dir: Path | str | None = None
    max_buffer: int = 32
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    _buffer: list[TelemetryEvent] = field(default_factory=list, init=False, repr=False)
    _lock: Lock = field(default_factory=Lock, init=False, repr=False)

    def capture(self, name: str, properties: Mapping[str, Any] | None = None) -> None:
        """Record an event if telemetry is enabled."""

        if not self.enabled:
            return
        event = TelemetryEvent(name=name, properties=_sanitize_props(dict(properties or {})))
        with self._lock:
            self._buffer.append(event)
            should_flush = len(self._buffer) >= self.max_buffer
        emit(name, event.properties)
        if should_flush:
            self.flush()

    def flush(self) -> Path | None:
        """Persist buffered events to disk and clear the buffer."""

        with self._lock:
            if not self.enabled or not self._buffer:
                return None
            pending = list(self._buffer)
            self._buffer.clear()

        target_dir = _resolve_storage_dir(self.storage_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        log_path = target_dir / "telemetry.jsonl"
        with log_path.open("a", encoding="utf-8") as handle:
            for event in pending:
                handle.write(event.serialize(self.session_id))
                handle.write("\n")
        return log_path

    def pending_events(self) -> int:
        """Return the number of events waiting to be flushed (primarily for tests)."""

        with self._lock:
            return len(self._buffer)


def telemetry_enabled(settings: Any | None = None) -> bool:
    """Return ``True`` if telemetry should be enabled for the current session."""

    env_value = os.environ.get("CHATSTREAM_TELEMETRY")
    if env_value is not None:
        return env_value.strip().lower() in _TRUE_VALUES
    if settings is None:
        return False
    return bool(getattr(settings, "telemetry_opt_in", False))


def build_telemetry_sink(settings: Any | None = None) -> TelemetrySink:
    """Return a JSONL sink when telemetry is enabled, otherwise an in-memory one."""

    if telemetry_enabled(settings):
        return JsonlTelemetrySink(enabled=True)
    return InMemoryTelemetrySink()


def register_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    """Register a callback invoked whenever :func:`emit` fires *event_name*."""

    if not event_name or callback is None:
        return
    listeners = _EVENT_LISTENERS.setdefault(event_name, [])
    if callback not in listeners:
        listeners.append(callback)


def unregister_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    listeners = _EVENT_LISTENERS.get(event_name)
    if listeners and callback in listeners:
        listeners.remove(callback)


def emit(event_name: str, payload: Mapping[str, Any] | None = None) -> None:
    """Broadcast a structured telemetry event to in-process listeners."""

    if not event_name:
        return
    event_payload = {"event": event_name}
    if payload:
        event_payload.update(payload)
    listeners = list(_EVENT_LISTENERS.get(event_name, ()))
    for callback in listeners:
        try:
            callback(dict(event_payload))
        except Exception:  # pragma: no cover - listeners must not break emitters
            LOGGER.debug("Telemetry listener %s failed", callback, exc_info=True)
    LOGGER.debug("Telemetry emit %s: %s", event_name, event_payload)


def _sanitize_props(props: Dict[str, Any]) -> Dict[str, Any]:
    sanitized: Dict[str, Any] = {}
    for key, value in props.items():
        if isinstance(value, Path):
            sanitized[key] = str(value)
        elif isinstance(value, datetime):
            sanitized[key] = value.isoformat()
        else:
            sanitized[key] = value
    return sanitized


def _json_default(value: Any) -> Any:
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value)!r} is not JSON serializable")


def _resolve_storage_dir(storage_dir: Path | str | None) -> Path:
    env_override = os.environ.get("CHATSTREAM_TELEMETRY_DIR")
    return Path(storage_dir or env_override or _DEFAULT_TELEMETRY_DIR).expanduser()


__all__ = [
    "TelemetryEvent",
    "TelemetrySink",
    "NullTelemetrySink",
    "InMemoryTelemetrySink",
    "JsonlTelemetrySink",
    "build_telemetry_sink",
    "telemetry_enabled",
    "emit",
    "register_event_listener",
    "unregister_event_listener",
]
