import asyncio
import io
import sys
from pathlib import Path

import pytest

from ralph.completion import COMPLETION_SENTINEL, contains_completion
from ralph.config import ConfigurationError
from ralph.tools import AmpTool, CaptureBuffer, ClaudeCodeTool, SubprocessAgentTool, build_tool


class ScriptTool(SubprocessAgentTool):
    """Runs a Python snippet in place of a real agent CLI."""

    name = "script"
    guidance_file = "CLAUDE.md"

    def __init__(self, script: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self.script = script

    def build_command(self) -> list[str]:
        return [sys.executable, "-c", self.script]


ECHO_SCRIPT = """
import os, sys
data = sys.stdin.read()
sys.stdout.write("cwd=" + os.getcwd() + "\\n")
sys.stdout.write("stdin=" + data)
sys.stdout.flush()
sys.stderr.write("diagnostics on stderr\\n")
sys.stderr.flush()
"""


def _run_dir(tmp_path: Path, guidance: str = "do the next story\n") -> Path:
    run_dir = tmp_path / "run"
    run_dir.mkdir()
    (run_dir / "CLAUDE.md").write_text(guidance, encoding="utf-8")
    return run_dir


def test_build_tool_returns_known_variants() -> None:
    assert isinstance(build_tool("claude"), ClaudeCodeTool)
    assert isinstance(build_tool("amp"), AmpTool)


def test_build_tool_rejects_unknown_variant() -> None:
    with pytest.raises(ConfigurationError, match="invalid tool 'cursor'"):
        build_tool("cursor")


def test_claude_command_and_guidance_file_are_fixed() -> None:
    tool = ClaudeCodeTool()

    assert tool.build_command() == ["claude", "--dangerously-skip-permissions", "--print"]
    assert tool.guidance_file == "CLAUDE.md"


def test_amp_command_and_guidance_file_are_fixed() -> None:
    tool = AmpTool()

    assert tool.build_command() == ["amp", "--dangerously-allow-all"]
    assert tool.guidance_file == "prompt.md"


def test_invoke_pipes_guidance_and_captures_both_streams(tmp_path: Path) -> None:
    run_dir = _run_dir(tmp_path)
    forwarded = io.BytesIO()
    tool = ScriptTool(ECHO_SCRIPT, forward_to=forwarded)

    result = asyncio.run(tool.invoke(run_dir))

    assert result.outcome.ok is True
    assert result.outcome.exit_code == 0
    assert f"cwd={run_dir.resolve()}" in result.output or f"cwd={run_dir}" in result.output
    assert "stdin=do the next story" in result.output
    assert "diagnostics on stderr" in result.output
    assert forwarded.getvalue().decode("utf-8") == result.output


def test_nonzero_exit_is_failure_but_output_is_kept(tmp_path: Path) -> None:
    run_dir = _run_dir(tmp_path)
    script = (
        "import sys\n"
        f"print({COMPLETION_SENTINEL!r}, flush=True)\n"
        "sys.exit(3)\n"
    )
    tool = ScriptTool(script, forward_to=io.BytesIO())

    result = asyncio.run(tool.invoke(run_dir))

    assert result.outcome.ok is False
    assert result.outcome.exit_code == 3
    assert "exited with status 3" in (result.outcome.reason or "")
    assert contains_completion(result.output)


def test_missing_binary_is_reported_as_failed_outcome(tmp_path: Path) -> None:
    run_dir = _run_dir(tmp_path)
    tool = ClaudeCodeTool(binary=str(tmp_path / "no-such-agent"), forward_to=io.BytesIO())

    result = asyncio.run(tool.invoke(run_dir))

    assert result.outcome.ok is False
    assert "failed to start claude" in (result.outcome.reason or "")
    assert result.output == ""


def test_missing_guidance_file_is_reported_before_spawning(tmp_path: Path) -> None:
    run_dir = tmp_path / "run"
    run_dir.mkdir()
    tool = AmpTool(binary=str(tmp_path / "never-called"))

    result = asyncio.run(tool.invoke(run_dir))

    assert result.outcome.ok is False
    assert "prompt.md" in (result.outcome.reason or "")


def test_timeout_kills_process_and_keeps_partial_output(tmp_path: Path) -> None:
    run_dir = _run_dir(tmp_path)
    script = "import time\nprint('started', flush=True)\ntime.sleep(30)\n"
    tool = ScriptTool(script, timeout_seconds=1.0, forward_to=io.BytesIO())

    result = asyncio.run(tool.invoke(run_dir))

    assert result.outcome.ok is False
    assert "timed out" in (result.outcome.reason or "")
    assert "started" in result.output


def test_capture_buffer_keeps_most_recent_bytes() -> None:
    buffer = CaptureBuffer(limit=8)
    buffer.append(b"0123456789")
    buffer.append(b"ab")

    assert buffer.text() == "456789ab"
    assert buffer.truncated is True
    assert len(buffer) == 8


def test_large_output_is_bounded_but_still_forwarded(tmp_path: Path) -> None:
    run_dir = _run_dir(tmp_path)
    script = (
        "import sys\n"
        "sys.stdout.write('x' * 50000)\n"
        f"sys.stdout.write({COMPLETION_SENTINEL!r})\n"
    )
    forwarded = io.BytesIO()
    tool = ScriptTool(script, max_capture_bytes=1024, forward_to=forwarded)

    result = asyncio.run(tool.invoke(run_dir))

    assert result.truncated is True
    assert len(result.output) == 1024
    assert contains_completion(result.output)
    assert len(forwarded.getvalue()) == 50000 + len(COMPLETION_SENTINEL)
