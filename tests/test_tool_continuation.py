"""Tests for tool-call aggregation and exactly-once resumption."""

from __future__ import annotations

import asyncio
import threading

import pytest

from chatstream.ai.orchestration import (
    BackendKind,
    ChatMessage,
    ChatSession,
    ContextItem,
    RelayFailure,
    SessionRelay,
    StreamOrchestrator,
    ToolCallStatus,
    ToolCompletionNotification,
    ToolContinuationCoordinator,
    orchestrator_resumer,
)
from chatstream.ai.orchestration.types import BackendDescriptor

from helpers import StubChatModel, StubConfigProvider, make_config


class _Resumer:
    def __init__(self) -> None:
        self.sessions: list[tuple[str, ...]] = []

    async def __call__(self, session: ChatSession) -> None:
        self.sessions.append(tuple(message.role for message in session.messages()))


class _FailingRelay:
    def __init__(self) -> None:
        self.calls = 0

    async def relay(self, session, message, descriptor) -> None:
        self.calls += 1
        raise RelayFailure(tool_call_id=message.tool_call_id or "")


class _HangingRelay:
    async def relay(self, session, message, descriptor) -> None:
        await asyncio.Event().wait()


class _RecordingRelay:
    def __init__(self) -> None:
        self.descriptors: list[BackendDescriptor] = []

    async def relay(self, session, message, descriptor) -> None:
        self.descriptors.append(descriptor)


def _output(text: str) -> tuple[ContextItem, ...]:
    return (ContextItem(name="out", description="", content=text),)


def _internal_config():
    return make_config(StubChatModel(provider_name="openai", api_base=None))


def _external_config(**kwargs):
    return make_config(StubChatModel(provider_name="openai", api_base="https://coe.example/v1"), **kwargs)


def _tool_messages(session: ChatSession) -> list[ChatMessage]:
    return [message for message in session.messages() if message.role == "tool"]


# -----------------------------------------------------------------------------
# Aggregation
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_resumes_once_after_last_of_two_calls(tool_session: ChatSession) -> None:
    resume = _Resumer()
    coordinator = ToolContinuationCoordinator(tool_session, StubConfigProvider(_internal_config()), resume)

    first = await coordinator.notify(ToolCompletionNotification("call_1", _output("file one")))
    assert resume.sessions == []
    assert first.appended is True and first.routed is False

    second = await coordinator.notify(
        ToolCompletionNotification("call_2", _output("boom"), status=ToolCallStatus.ERRORED)
    )

    assert second.routed is True
    assert second.backend is BackendKind.INTERNAL
    assert resume.sessions == [("user", "assistant", "tool", "tool")]
    tool_messages = _tool_messages(tool_session)
    assert [message.tool_call_id for message in tool_messages] == ["call_1", "call_2"]
    assert tool_messages[0].text == "file one"
    assert tool_session.find_tool_call("call_2").status is ToolCallStatus.ERRORED


@pytest.mark.asyncio
async def test_completion_order_does_not_matter(tool_session: ChatSession) -> None:
    resume = _Resumer()
    coordinator = ToolContinuationCoordinator(tool_session, StubConfigProvider(_internal_config()), resume)

    await coordinator.notify(ToolCompletionNotification("call_2", _output("second")))
    await coordinator.notify(ToolCompletionNotification("call_1", _output("first")))

    assert len(resume.sessions) == 1
    assert [message.tool_call_id for message in _tool_messages(tool_session)] == ["call_2", "call_1"]


@pytest.mark.asyncio
async def test_duplicate_notification_is_ignored(tool_session: ChatSession) -> None:
    resume = _Resumer()
    coordinator = ToolContinuationCoordinator(tool_session, StubConfigProvider(_internal_config()), resume)
    await coordinator.notify(ToolCompletionNotification("call_1", _output("one")))
    await coordinator.notify(ToolCompletionNotification("call_2", _output("two")))

    duplicate = await coordinator.notify(ToolCompletionNotification("call_1", _output("one again")))

    assert duplicate.appended is False and duplicate.routed is False
    assert len(_tool_messages(tool_session)) == 2
    assert len(resume.sessions) == 1


@pytest.mark.asyncio
async def test_duplicate_before_ready_does_not_append(tool_session: ChatSession) -> None:
    resume = _Resumer()
    coordinator = ToolContinuationCoordinator(tool_session, StubConfigProvider(_internal_config()), resume)

    await coordinator.notify(ToolCompletionNotification("call_1", _output("one")))
    await coordinator.notify(ToolCompletionNotification("call_1", _output("one")))

    assert len(_tool_messages(tool_session)) == 1
    assert resume.sessions == []


@pytest.mark.asyncio
async def test_unknown_tool_call_is_ignored(tool_session: ChatSession) -> None:
    resume = _Resumer()
    coordinator = ToolContinuationCoordinator(tool_session, StubConfigProvider(_internal_config()), resume)

    outcome = await coordinator.notify(ToolCompletionNotification("cancelled_call", _output("late")))

    assert outcome.appended is False and outcome.routed is False
    assert _tool_messages(tool_session) == []
    assert resume.sessions == []


@pytest.mark.asyncio
async def test_each_assistant_message_resumes_independently(tool_session: ChatSession) -> None:
    resume = _Resumer()
    coordinator = ToolContinuationCoordinator(tool_session, StubConfigProvider(_internal_config()), resume)
    await coordinator.notify(ToolCompletionNotification("call_1"))
    await coordinator.notify(ToolCompletionNotification("call_2"))
    tool_session.append(ChatMessage.assistant("again"), tool_call_ids=["call_3"])

    await coordinator.notify(ToolCompletionNotification("call_3"))

    assert len(resume.sessions) == 2


def test_mark_running(tool_session: ChatSession) -> None:
    coordinator = ToolContinuationCoordinator(tool_session, StubConfigProvider(_internal_config()), _Resumer())

    assert coordinator.mark_running("call_1") is True
    assert tool_session.find_tool_call("call_1").status is ToolCallStatus.RUNNING
    assert coordinator.mark_running("unknown") is False


@pytest.mark.asyncio
async def test_notifications_from_worker_threads(tool_session: ChatSession) -> None:
    resume = _Resumer()
    coordinator = ToolContinuationCoordinator(tool_session, StubConfigProvider(_internal_config()), resume)
    loop = asyncio.get_running_loop()
    futures = []

    def _worker(call_id: str) -> None:
        for _ in range(3):
            futures.append(coordinator.notify_threadsafe(ToolCompletionNotification(call_id), loop))

    threads = [threading.Thread(target=_worker, args=(call_id,)) for call_id in ("call_1", "call_2")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    outcomes = await asyncio.gather(*(asyncio.wrap_future(future) for future in futures))

    assert sum(outcome.routed for outcome in outcomes) == 1
    assert len(_tool_messages(tool_session)) == 2
    assert len(resume.sessions) == 1


# -----------------------------------------------------------------------------
# Routing
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_external_backend_relays_before_resuming(tool_session: ChatSession) -> None:
    resume = _Resumer()
    relay = _RecordingRelay()
    coordinator = ToolContinuationCoordinator(
        tool_session, StubConfigProvider(_external_config()), resume, relay=relay
    )

    await coordinator.notify(ToolCompletionNotification("call_1"))
    outcome = await coordinator.notify(ToolCompletionNotification("call_2"))

    assert outcome.backend is BackendKind.EXTERNAL
    assert outcome.relayed is True
    assert relay.descriptors == [BackendDescriptor("openai", "https://coe.example/v1")]
    assert len(resume.sessions) == 1


@pytest.mark.asyncio
async def test_relay_failure_falls_back_to_internal_resume(tool_session: ChatSession) -> None:
    resume = _Resumer()
    relay = _FailingRelay()
    coordinator = ToolContinuationCoordinator(
        tool_session, StubConfigProvider(_external_config()), resume, relay=relay
    )

    await coordinator.notify(ToolCompletionNotification("call_1"))
    outcome = await coordinator.notify(ToolCompletionNotification("call_2"))

    assert relay.calls == 1
    assert outcome.backend is BackendKind.EXTERNAL
    assert outcome.relayed is False
    assert outcome.routed is True
    assert len(resume.sessions) == 1


@pytest.mark.asyncio
async def test_relay_timeout_falls_back(tool_session: ChatSession) -> None:
    resume = _Resumer()
    coordinator = ToolContinuationCoordinator(
        tool_session,
        StubConfigProvider(_external_config(relay_timeout=0.01)),
        resume,
        relay=_HangingRelay(),
    )

    await coordinator.notify(ToolCompletionNotification("call_1"))
    outcome = await asyncio.wait_for(coordinator.notify(ToolCompletionNotification("call_2")), 1.0)

    assert outcome.relayed is False
    assert len(resume.sessions) == 1


@pytest.mark.asyncio
async def test_default_relay_confirms_visible_tool_message(tool_session: ChatSession) -> None:
    resume = _Resumer()
    coordinator = ToolContinuationCoordinator(tool_session, StubConfigProvider(_external_config()), resume)

    await coordinator.notify(ToolCompletionNotification("call_1"))
    outcome = await coordinator.notify(ToolCompletionNotification("call_2"))

    assert outcome.relayed is True
    assert len(resume.sessions) == 1


@pytest.mark.asyncio
async def test_session_relay_verifies_tool_message() -> None:
    session = ChatSession()
    session.append(ChatMessage.assistant("", tool_calls=[{"id": "c1"}]))
    relay = SessionRelay(settle_delay=0)
    message = ChatMessage.tool("out", "c1")
    descriptor = BackendDescriptor("openai", "https://coe.example")

    with pytest.raises(RelayFailure):
        await relay.relay(session, message, descriptor)

    session.append(message)
    await relay.relay(session, message, descriptor)


# -----------------------------------------------------------------------------
# Orchestrator resumption
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_orchestrator_resumer_runs_turn_over_extended_session(tool_session: ChatSession) -> None:
    model = StubChatModel(["Both files ", "read."])
    provider = StubConfigProvider(make_config(model))
    orchestrator = StreamOrchestrator(provider)
    seen: list[str] = []
    resume = orchestrator_resumer(orchestrator, on_chunk=lambda chunk: seen.append(chunk.text))
    coordinator = ToolContinuationCoordinator(tool_session, provider, resume)

    await coordinator.notify(ToolCompletionNotification("call_1", _output("a")))
    await coordinator.notify(ToolCompletionNotification("call_2", _output("b")))
    await orchestrator.wait_for_side_effects()

    sent = model.calls[0]["messages"]
    assert [message.role for message in sent] == ["user", "assistant", "tool", "tool"]
    assert seen == ["Both files ", "read."]
    assert tool_session.messages()[-1] == ChatMessage.assistant("Both files read.")


@pytest.mark.asyncio
async def test_resumed_tool_calls_are_tracked_for_the_next_round(tool_session: ChatSession) -> None:
    follow_up = ChatMessage.assistant(
        "",
        tool_calls=[{"id": "call_9", "type": "function", "function": {"name": "grep", "arguments": "{}"}}],
    )
    model = StubChatModel([follow_up])
    provider = StubConfigProvider(make_config(model))
    orchestrator = StreamOrchestrator(provider)
    coordinator = ToolContinuationCoordinator(tool_session, provider, orchestrator_resumer(orchestrator))

    await coordinator.notify(ToolCompletionNotification("call_1"))
    await coordinator.notify(ToolCompletionNotification("call_2"))
    await orchestrator.wait_for_side_effects()

    owner = tool_session.owner_of("call_9")
    assert owner is not None
    assert owner.tool_call_states[0].status is ToolCallStatus.REQUESTED
