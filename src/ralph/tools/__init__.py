from __future__ import annotations

from typing import BinaryIO

from ralph.config import DEFAULT_MAX_CAPTURE_BYTES, TOOL_NAMES, ConfigurationError
from ralph.tools.amp import AmpTool
from ralph.tools.base import (
    AgentTool,
    CaptureBuffer,
    InvocationOutcome,
    InvocationResult,
    SubprocessAgentTool,
)
from ralph.tools.claude import ClaudeCodeTool

TOOL_CLASSES: dict[str, type[SubprocessAgentTool]] = {
    "claude": ClaudeCodeTool,
    "amp": AmpTool,
}


def build_tool(
    name: str,
    *,
    timeout_seconds: float | None = None,
    max_capture_bytes: int = DEFAULT_MAX_CAPTURE_BYTES,
    forward_to: BinaryIO | None = None,
) -> SubprocessAgentTool:
    tool_class = TOOL_CLASSES.get(name)
    if tool_class is None:
        raise ConfigurationError(
            f"invalid tool '{name}': must be one of {', '.join(TOOL_NAMES)}"
        )
    return tool_class(
        timeout_seconds=timeout_seconds,
        max_capture_bytes=max_capture_bytes,
        forward_to=forward_to,
    )


__all__ = [
    "AgentTool",
    "AmpTool",
    "CaptureBuffer",
    "ClaudeCodeTool",
    "InvocationOutcome",
    "InvocationResult",
    "SubprocessAgentTool",
    "TOOL_CLASSES",
    "build_tool",
]
