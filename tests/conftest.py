"""Shared pytest fixtures."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from chatstream.ai.orchestration import ChatMessage, ChatSession
from chatstream.services.settings import SecretVault, SettingsStore


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in [name for name in os.environ if name.startswith("CHATSTREAM_")]:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CHATSTREAM_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("CHATSTREAM_TELEMETRY_DIR", str(tmp_path / "telemetry"))


@pytest.fixture
def settings_store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(tmp_path / "settings.json", vault=SecretVault(key_path=tmp_path / "settings.key"))


@pytest.fixture
def tool_session() -> ChatSession:
    """Session ending in an assistant message that requested two tool calls."""

    session = ChatSession(session_id="tools")
    session.append(ChatMessage.user("Read both files"))
    session.append(
        ChatMessage.assistant(
            "",
            tool_calls=[
                {"id": "call_1", "type": "function", "function": {"name": "read", "arguments": "{}"}},
                {"id": "call_2", "type": "function", "function": {"name": "read", "arguments": "{}"}},
            ],
        )
    )
    return session
