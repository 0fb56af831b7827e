from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from ralph.config import DEFAULT_MAX_CAPTURE_BYTES

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 4096


@dataclass(frozen=True, slots=True)
class InvocationOutcome:
    ok: bool
    reason: str | None = None
    exit_code: int | None = None

    @classmethod
    def success(cls) -> InvocationOutcome:
        return cls(ok=True, exit_code=0)

    @classmethod
    def failed(cls, reason: str, *, exit_code: int | None = None) -> InvocationOutcome:
        return cls(ok=False, reason=reason, exit_code=exit_code)


@dataclass(frozen=True, slots=True)
class InvocationResult:
    output: str
    outcome: InvocationOutcome
    truncated: bool = False


class AgentTool(ABC):
    name: str = "tool"

    @abstractmethod
    async def invoke(self, run_directory: Path) -> InvocationResult:
        """Run the agent once in ``run_directory`` and return everything it printed."""


class CaptureBuffer:
    """Keeps the most recent ``limit`` bytes of combined process output."""

    def __init__(self, limit: int = DEFAULT_MAX_CAPTURE_BYTES) -> None:
        self.limit = max(1, int(limit))
        self._data = bytearray()
        self.truncated = False

    def append(self, chunk: bytes) -> None:
        self._data.extend(chunk)
        overflow = len(self._data) - self.limit
        if overflow > 0:
            del self._data[:overflow]
            self.truncated = True

    def __len__(self) -> int:
        return len(self._data)

    def text(self) -> str:
        return self._data.decode("utf-8", errors="replace")


class SubprocessAgentTool(AgentTool):
    """Pipes a guidance file into an agent CLI and tees its output to stderr.

    Subclasses pin the command line and the guidance file name; neither is
    configurable.
    """

    guidance_file: str = ""

    def __init__(
        self,
        *,
        timeout_seconds: float | None = None,
        max_capture_bytes: int = DEFAULT_MAX_CAPTURE_BYTES,
        forward_to: BinaryIO | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_capture_bytes = max_capture_bytes
        self.forward_to = forward_to

    @abstractmethod
    def build_command(self) -> list[str]:
        """Return the fixed argument list for this agent."""

    def _forward(self, chunk: bytes) -> None:
        stream = self.forward_to
        if stream is None:
            stream = getattr(sys.stderr, "buffer", None)
        if stream is None:
            sys.stderr.write(chunk.decode("utf-8", errors="replace"))
            sys.stderr.flush()
            return
        stream.write(chunk)
        stream.flush()

    async def _pump(self, reader: asyncio.StreamReader | None, capture: CaptureBuffer) -> None:
        if reader is None:
            return
        while True:
            chunk = await reader.read(READ_CHUNK_BYTES)
            if not chunk:
                return
            capture.append(chunk)
            self._forward(chunk)

    @staticmethod
    async def _feed(writer: asyncio.StreamWriter | None, payload: bytes) -> str | None:
        if writer is None:
            return "stdin pipe unavailable"
        try:
            writer.write(payload)
            await writer.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            return f"failed to write stdin: {exc}"
        finally:
            writer.close()
        try:
            await writer.wait_closed()
        except (BrokenPipeError, ConnectionResetError) as exc:
            return f"failed to close stdin: {exc}"
        return None

    async def invoke(self, run_directory: Path) -> InvocationResult:
        guidance_path = run_directory / self.guidance_file
        try:
            payload = guidance_path.read_bytes()
        except OSError as exc:
            return InvocationResult(
                output="",
                outcome=InvocationOutcome.failed(f"failed to read {self.guidance_file}: {exc}"),
            )

        command = self.build_command()
        logger.debug("Starting %s in %s: %s", self.name, run_directory, command)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(run_directory),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return InvocationResult(
                output="",
                outcome=InvocationOutcome.failed(f"failed to start {self.name}: {exc}"),
            )

        capture = CaptureBuffer(self.max_capture_bytes)

        async def _communicate() -> tuple[str | None, int]:
            feed_error, _, _ = await asyncio.gather(
                self._feed(process.stdin, payload),
                self._pump(process.stdout, capture),
                self._pump(process.stderr, capture),
            )
            return feed_error, await process.wait()

        try:
            if self.timeout_seconds:
                feed_error, return_code = await asyncio.wait_for(
                    _communicate(), timeout=self.timeout_seconds
                )
            else:
                feed_error, return_code = await _communicate()
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            logger.debug("%s killed after %.1fs", self.name, self.timeout_seconds)
            return InvocationResult(
                output=capture.text(),
                outcome=InvocationOutcome.failed(
                    f"{self.name} timed out after {self.timeout_seconds:.1f}s"
                ),
                truncated=capture.truncated,
            )

        logger.debug(
            "%s exited with %s, %d bytes captured", self.name, return_code, len(capture)
        )
        if return_code != 0:
            outcome = InvocationOutcome.failed(
                f"{self.name} exited with status {return_code}", exit_code=return_code
            )
        elif feed_error:
            outcome = InvocationOutcome.failed(feed_error, exit_code=return_code)
        else:
            outcome = InvocationOutcome.success()
        return InvocationResult(output=capture.text(), outcome=outcome, truncated=capture.truncated)
