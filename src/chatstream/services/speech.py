"""Read-aloud collaborators for completed responses."""

from __future__ import annotations

import asyncio
import logging
import shutil
import sys
from typing import Protocol, Sequence, runtime_checkable

__all__ = [
    "SpeechSynthesizer",
    "NullSpeechSynthesizer",
    "SubprocessSpeechSynthesizer",
    "default_speech_command",
]

LOGGER = logging.getLogger(__name__)


@runtime_checkable
class SpeechSynthesizer(Protocol):
    async def read(self, text: str) -> None:  # pragma: no cover - protocol stub
        ...

    async def kill(self) -> None:  # pragma: no cover - protocol stub
        ...


class NullSpeechSynthesizer:
    """Synthesizer used when read-aloud is unavailable."""

    async def read(self, text: str) -> None:
        del text

    async def kill(self) -> None:
        return None


class SubprocessSpeechSynthesizer:
    """Speak text through a platform TTS command such as ``say`` or ``espeak``.

    Only one utterance plays at a time; :meth:`kill` stops it.
    """

    def __init__(self, command: Sequence[str]) -> None:
        if not command:
            raise ValueError("A speech command is required")
        self._command = tuple(command)
        self._process: asyncio.subprocess.Process | None = None

    async def read(self, text: str) -> None:
        if not text.strip():
            return
        await self.kill()
        self._process = await asyncio.create_subprocess_exec(
            *self._command,
            text,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await self._process.wait()

    async def kill(self) -> None:
        process = self._process
        self._process = None
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        await process.wait()
        LOGGER.debug("Stopped read-aloud process %s", process.pid)


def default_speech_command() -> tuple[str, ...] | None:
    """Return the first available TTS command on this platform, if any."""

    candidates: tuple[tuple[str, ...], ...]
    if sys.platform == "darwin":
        candidates = (("say",),)
    else:
        candidates = (("espeak",), ("spd-say", "--wait"))
    for candidate in candidates:
        if shutil.which(candidate[0]):
            return candidate
    return None
