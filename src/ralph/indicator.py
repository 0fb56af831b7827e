from __future__ import annotations

import asyncio
import sys
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import TextIO

SPINNER_FRAMES: tuple[str, ...] = ("⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏")
TICK_SECONDS = 0.08
CLEAR_LINE = "\r\033[K"


class NullIndicator:
    """Indicator used when the output is not an interactive terminal."""

    def update(self, message: str) -> None:
        _ = message

    @asynccontextmanager
    async def running(self, message: str) -> AsyncIterator[NullIndicator]:
        _ = message
        yield self


class Spinner:
    """Redraws a one-line activity frame from a background task.

    The task only reads the current message and the stop event. Leaving
    ``running()`` stops the task, waits for it and clears the line, so the
    caller can print immediately afterwards.
    """

    def __init__(
        self,
        stream: TextIO | None = None,
        *,
        interval: float = TICK_SECONDS,
        frames: Sequence[str] = SPINNER_FRAMES,
    ) -> None:
        self.stream = stream
        self.interval = interval
        self.frames = tuple(frames) or SPINNER_FRAMES
        self._message = ""

    def update(self, message: str) -> None:
        self._message = message

    def _write(self, text: str) -> None:
        stream = self.stream or sys.stdout
        stream.write(text)
        stream.flush()

    async def _spin(self, stop: asyncio.Event) -> None:
        index = 0
        while not stop.is_set():
            frame = self.frames[index % len(self.frames)]
            self._write(f"\r{frame} {self._message}")
            index += 1
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except TimeoutError:
                continue
        self._write(CLEAR_LINE)

    @asynccontextmanager
    async def running(self, message: str) -> AsyncIterator[Spinner]:
        self._message = message
        stop = asyncio.Event()
        task = asyncio.create_task(self._spin(stop))
        try:
            yield self
        finally:
            stop.set()
            await task


ActivityIndicator = Spinner | NullIndicator
