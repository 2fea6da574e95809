"""Tests for slash-command resolution, streaming and the context-item sink."""

from __future__ import annotations

import threading
from typing import AsyncIterator

import pytest

from chatstream.ai.orchestration import (
    AbortSignal,
    ChatMessage,
    ChatSession,
    CommandContext,
    CommandDispatcher,
    CommandNotRunnable,
    ContextItem,
    ContextItemSink,
    PromptLog,
    RagContextProvider,
    SlashCommand,
    StreamState,
    UnknownCommand,
    build_rag_command,
)

from helpers import StubChatModel, StubRetriever, make_items


def _context(sink: ContextItemSink, *, text: str = "hello", model: StubChatModel | None = None, **kwargs) -> CommandContext:
    return CommandContext(
        input=text,
        history=(ChatMessage.user(text),),
        model=model or StubChatModel(),
        add_context_item=sink.bind(0),
        abort_signal=kwargs.pop("abort_signal", AbortSignal()),
        **kwargs,
    )


async def _echo(context: CommandContext) -> AsyncIterator[str]:
    yield "echo: "
    yield ""
    yield context.input


async def _drain(stream) -> tuple[list[str], PromptLog]:
    texts: list[str] = []
    step = await stream.next()
    while not step.done:
        texts.append(step.chunk.text)
        step = await stream.next()
    return texts, step.log


# -----------------------------------------------------------------------------
# Dispatcher
# -----------------------------------------------------------------------------


def test_resolve_unknown_command_raises() -> None:
    dispatcher = CommandDispatcher([SlashCommand(name="echo", run=_echo)])

    assert dispatcher.resolve("echo").name == "echo"
    with pytest.raises(UnknownCommand) as excinfo:
        dispatcher.resolve("edit")
    assert excinfo.value.command_name == "edit"


def test_register_requires_a_name() -> None:
    with pytest.raises(ValueError):
        CommandDispatcher().register(SlashCommand(name=""))


def test_invoke_rejects_command_without_run() -> None:
    dispatcher = CommandDispatcher([SlashCommand(name="stub", source="config")])

    with pytest.raises(CommandNotRunnable) as excinfo:
        dispatcher.invoke(dispatcher.resolve("stub"), _context(ContextItemSink()))

    assert "config" in excinfo.value.message


@pytest.mark.asyncio
async def test_command_stream_skips_empty_fragments_and_logs() -> None:
    dispatcher = CommandDispatcher([SlashCommand(name="echo", run=_echo)])
    context = _context(ContextItemSink(), completion_options={"context": "chatstream"})

    stream = dispatcher.invoke(dispatcher.resolve("echo"), context, model_title="Stub", model_provider="openai")
    texts, log = await _drain(stream)

    assert texts == ["echo: ", "hello"]
    assert log == PromptLog("Stub", "openai", "hello", "echo: hello", {"context": "chatstream"})
    assert stream.state is StreamState.DONE
    assert await stream.next() == await stream.next()


@pytest.mark.asyncio
async def test_cancel_returns_fallback_and_closes_command() -> None:
    closed = []

    async def _endless(context: CommandContext) -> AsyncIterator[str]:
        try:
            while True:
                yield "tick"
        finally:
            closed.append(True)

    dispatcher = CommandDispatcher([SlashCommand(name="tick", run=_endless)])
    stream = dispatcher.invoke(dispatcher.resolve("tick"), _context(ContextItemSink()))
    await stream.next()
    fallback = PromptLog("Stub", "openai", "", "")

    assert await stream.cancel(fallback) is fallback
    assert closed == [True]
    assert stream.state is StreamState.CANCELLED
    assert (await stream.next()).log is fallback


@pytest.mark.asyncio
async def test_command_errors_are_sticky() -> None:
    async def _broken(context: CommandContext) -> AsyncIterator[str]:
        yield "partial"
        raise RuntimeError("command crashed")

    dispatcher = CommandDispatcher([SlashCommand(name="broken", run=_broken)])
    stream = dispatcher.invoke(dispatcher.resolve("broken"), _context(ContextItemSink()))
    await stream.next()

    for _ in range(2):
        with pytest.raises(RuntimeError, match="command crashed"):
            await stream.next()
    assert stream.state is StreamState.FAILED


# -----------------------------------------------------------------------------
# Context-item sink
# -----------------------------------------------------------------------------


def test_sink_groups_by_history_index() -> None:
    sink = ContextItemSink()
    first, second = make_items(2)

    sink.bind(3)(first)
    sink.push(5, second)

    assert len(sink) == 2
    assert sink.drain() == {3: [first], 5: [second]}
    assert len(sink) == 0


def test_sink_drops_oldest_when_full() -> None:
    sink = ContextItemSink(capacity=2)
    items = make_items(3)
    for item in items:
        sink.push(0, item)

    assert sink.dropped == 1
    assert sink.drain() == {0: items[1:]}


def test_sink_accepts_pushes_from_threads() -> None:
    sink = ContextItemSink(capacity=1000)
    item = ContextItem(name="n", description="", content="c")
    threads = [threading.Thread(target=lambda: [sink.push(1, item) for _ in range(100)]) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(sink) == 400


def test_sink_apply_to_session() -> None:
    session = ChatSession()
    session.append(ChatMessage.user("hi"))
    sink = ContextItemSink()
    sink.push(0, make_items(1)[0])

    assert sink.apply_to(session) == 1
    assert session.items()[0].context_items[0].name == "item-1"


# -----------------------------------------------------------------------------
# Built-in rag command
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_rag_command_pushes_items_and_streams_model_answer() -> None:
    provider = RagContextProvider(StubRetriever(make_items(2)))
    dispatcher = CommandDispatcher([build_rag_command(provider)])
    model = StubChatModel(["Use ", "joins."])
    sink = ContextItemSink()
    context = _context(sink, text="database how do joins work?", model=model)

    texts, log = await _drain(dispatcher.invoke(dispatcher.resolve("rag"), context))

    assert texts == ["Use ", "joins."]
    assert log.completion == "Use joins."
    assert [item.name for item in sink.drain()[0]] == ["RAG: database (1)", "RAG: database (2)"]
    sent = model.calls[0]["messages"]
    assert sent[0].role == "system"
    assert 'the "database" group' in sent[0].text
    assert sent[-1].role == "user"


@pytest.mark.asyncio
async def test_rag_command_uses_group_param() -> None:
    retriever = StubRetriever(make_items(1))
    dispatcher = CommandDispatcher([build_rag_command(RagContextProvider(retriever))])
    context = _context(ContextItemSink(), text="what is here?", params={"group_name": "api"})

    await _drain(dispatcher.invoke(dispatcher.resolve("rag"), context))

    assert retriever.calls[0]["group_name"] == "api"
    assert retriever.calls[0]["query"] == "what is here?"


@pytest.mark.asyncio
async def test_rag_command_without_group_prints_usage() -> None:
    dispatcher = CommandDispatcher([build_rag_command(RagContextProvider(StubRetriever()))])

    texts, _ = await _drain(dispatcher.invoke(dispatcher.resolve("rag"), _context(ContextItemSink(), text="  ")))

    assert texts == ["Usage: /rag <group> <question>"]
