"""Tests for the logging helpers."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Iterator

import pytest

from chatstream.utils import logging as logging_utils


@pytest.fixture(autouse=True)
def _restore_root_logger(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    monkeypatch.setattr(logging_utils, "_CONFIGURED", False)
    monkeypatch.setattr(logging_utils, "_LOG_PATH", None)
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def _flush() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()


def test_records_carry_the_active_session_id(tmp_path: Path) -> None:
    log_path = logging_utils.setup_logging(log_dir=tmp_path, console=False, force=True)
    logger = logging.getLogger("chatstream.tests")

    logger.info("outside any turn")
    with logging_utils.session_context("abc123"):
        assert logging_utils.current_session_id() == "abc123"
        logger.info("inside a turn")
    _flush()

    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert "| - | chatstream.tests | outside any turn" in lines[0]
    assert "| abc123 | chatstream.tests | inside a turn" in lines[1]
    assert logging_utils.current_session_id() == "-"


def test_file_level_follows_debug_flag(tmp_path: Path) -> None:
    log_path = logging_utils.setup_logging(log_dir=tmp_path, console=False, force=True)
    logging.getLogger("chatstream.tests").debug("hidden detail")
    _flush()
    assert "hidden detail" not in log_path.read_text(encoding="utf-8")

    logging_utils.setup_logging(debug=True, log_dir=tmp_path, console=False, force=True)
    logging.getLogger("chatstream.tests").debug("visible detail")
    _flush()
    assert "visible detail" in log_path.read_text(encoding="utf-8")


def test_console_only_shows_warnings_unless_debug(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    logging_utils.setup_logging(log_dir=tmp_path, force=True)
    logger = logging.getLogger("chatstream.tests")

    logger.info("quiet progress")
    logger.warning("loud problem")

    captured = capsys.readouterr()
    assert captured.out == ""
    assert "loud problem" in captured.err
    assert "quiet progress" not in captured.err


def test_setup_logging_defaults_to_env_dir(tmp_path: Path) -> None:
    log_path = logging_utils.setup_logging(console=False)

    assert log_path == tmp_path / "logs" / "chatstream.log"
    assert logging_utils.get_log_path() == log_path


def test_setup_logging_is_idempotent_without_force(tmp_path: Path) -> None:
    first = logging_utils.setup_logging(log_dir=tmp_path / "one", console=False)
    second = logging_utils.setup_logging(debug=True, log_dir=tmp_path / "two", console=False)
    third = logging_utils.setup_logging(log_dir=tmp_path / "three", console=False, force=True)

    assert second == first
    assert third == tmp_path / "three" / "chatstream.log"


def test_transport_loggers_open_up_in_debug(tmp_path: Path) -> None:
    logging_utils.setup_logging(log_dir=tmp_path, console=False, force=True)

    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("openai").level == logging.WARNING

    logging_utils.setup_logging(debug=True, log_dir=tmp_path, console=False, force=True)

    assert logging.getLogger("httpx").level == logging.INFO


@pytest.mark.asyncio
async def test_session_context_is_scoped_per_task() -> None:
    seen: dict[str, str] = {}

    async def _turn(session_id: str) -> None:
        with logging_utils.session_context(session_id):
            await asyncio.sleep(0)
            seen[session_id] = logging_utils.current_session_id()

    await asyncio.gather(_turn("first"), _turn("second"))

    assert seen == {"first": "first", "second": "second"}
