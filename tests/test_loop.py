import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from ralph.completion import COMPLETION_SENTINEL
from ralph.config import ConfigurationError
from ralph.loop import IterationLoop, RunSummary
from ralph.state.task_spec import TaskSpec
from ralph.tools.base import AgentTool, InvocationOutcome, InvocationResult


class ScriptedTool(AgentTool):
    """Returns canned results and records every call."""

    name = "scripted"

    def __init__(self, results: list[InvocationResult]) -> None:
        self.results = results
        self.calls: list[Path] = []

    async def invoke(self, run_directory: Path) -> InvocationResult:
        self.calls.append(run_directory)
        if len(self.calls) <= len(self.results):
            return self.results[len(self.calls) - 1]
        return InvocationResult(output="still working", outcome=InvocationOutcome.success())


def _ok(output: str = "working on story") -> InvocationResult:
    return InvocationResult(output=output, outcome=InvocationOutcome.success())


def _failed(output: str, exit_code: int = 1) -> InvocationResult:
    return InvocationResult(
        output=output,
        outcome=InvocationOutcome.failed(f"exited with status {exit_code}", exit_code=exit_code),
    )


def _task_spec(run_dir: Path, branch: str = "ralph/loop") -> TaskSpec:
    payload = {"project": "Loop", "branchName": branch, "description": "", "userStories": []}
    (run_dir / "prd.json").write_text(json.dumps(payload), encoding="utf-8")
    return TaskSpec.from_dict(payload)


def _run(
    tool: AgentTool,
    run_dir: Path,
    max_iterations: int,
    sleeps: list[float],
    events: list[dict[str, Any]] | None = None,
) -> RunSummary:
    async def _fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    loop = IterationLoop(
        tool,
        _task_spec(run_dir),
        run_directory=run_dir,
        max_iterations=max_iterations,
        event_hook=events.append if events is not None else None,
        sleep=_fake_sleep,
    )
    return asyncio.run(loop.run())


def test_budget_exhaustion_runs_every_iteration(tmp_path: Path) -> None:
    tool = ScriptedTool([])
    sleeps: list[float] = []
    events: list[dict[str, Any]] = []

    summary = _run(tool, tmp_path, 3, sleeps, events)

    assert len(tool.calls) == 3
    assert summary.status == "timeout"
    assert summary.exit_code == 1
    assert summary.iterations == 3
    assert sleeps == [2.0, 2.0]
    assert events[-1]["event"] == "run_timeout"
    assert events[-1]["journal"].endswith("progress.txt")


def test_completion_stops_loop_without_trailing_delay(tmp_path: Path) -> None:
    tool = ScriptedTool([_ok(), _ok(f"all done {COMPLETION_SENTINEL}")])
    sleeps: list[float] = []
    events: list[dict[str, Any]] = []

    summary = _run(tool, tmp_path, 5, sleeps, events)

    assert len(tool.calls) == 2
    assert summary.status == "complete"
    assert summary.exit_code == 0
    assert summary.iterations == 2
    assert sleeps == [2.0]
    assert events[-1] == {
        "event": "run_complete",
        "iterations": 2,
        "elapsed_seconds": summary.elapsed_seconds,
    }


def test_failed_invocation_with_sentinel_still_completes(tmp_path: Path) -> None:
    tool = ScriptedTool([_failed(f"{COMPLETION_SENTINEL}\nTraceback: crash", exit_code=2)])
    sleeps: list[float] = []
    events: list[dict[str, Any]] = []

    summary = _run(tool, tmp_path, 4, sleeps, events)

    assert len(tool.calls) == 1
    assert summary.completed is True
    assert summary.records[0].ok is False
    assert summary.records[0].completed is True
    assert sleeps == []
    warnings = [event for event in events if event["event"] == "iteration_warning"]
    assert warnings and warnings[0]["exit_code"] == 2


def test_failures_are_not_fatal(tmp_path: Path) -> None:
    tool = ScriptedTool([_failed("boom"), _failed("boom again"), _ok(COMPLETION_SENTINEL)])
    sleeps: list[float] = []

    summary = _run(tool, tmp_path, 10, sleeps)

    assert len(tool.calls) == 3
    assert summary.completed is True
    assert [record.ok for record in summary.records] == [False, False, True]


def test_single_iteration_budget_never_sleeps(tmp_path: Path) -> None:
    tool = ScriptedTool([])
    sleeps: list[float] = []

    summary = _run(tool, tmp_path, 1, sleeps)

    assert len(tool.calls) == 1
    assert summary.status == "timeout"
    assert sleeps == []


class PointerCheckingTool(ScriptedTool):
    """Captures the run-directory state the agent sees on each call."""

    def __init__(self, results: list[InvocationResult]) -> None:
        super().__init__(results)
        self.seen: list[tuple[str, bool]] = []

    async def invoke(self, run_directory: Path) -> InvocationResult:
        pointer = (run_directory / ".last-branch").read_text(encoding="utf-8")
        self.seen.append((pointer, (run_directory / "progress.txt").exists()))
        return await super().invoke(run_directory)


def test_lifecycle_runs_once_before_first_invocation(tmp_path: Path) -> None:
    (tmp_path / ".last-branch").write_text("ralph/previous", encoding="utf-8")
    tool = PointerCheckingTool([_ok(), _ok(COMPLETION_SENTINEL)])

    summary = _run(tool, tmp_path, 3, [])

    assert tool.seen == [("ralph/loop", True), ("ralph/loop", True)]
    assert summary.preparation is not None
    assert summary.preparation.previous_branch == "ralph/previous"
    assert summary.preparation.archived_to is not None
    assert len(list((tmp_path / "archive").iterdir())) == 1


def test_events_carry_iteration_index_and_outcome(tmp_path: Path) -> None:
    tool = ScriptedTool([_failed("x"), _ok(COMPLETION_SENTINEL)])
    events: list[dict[str, Any]] = []

    _run(tool, tmp_path, 3, [], events)

    names = [event["event"] for event in events]
    assert names == [
        "run_start",
        "iteration_start",
        "iteration_warning",
        "iteration_complete",
        "iteration_wait",
        "iteration_start",
        "iteration_complete",
        "run_complete",
    ]
    completes = [event for event in events if event["event"] == "iteration_complete"]
    assert [(event["iteration"], event["ok"]) for event in completes] == [(1, False), (2, True)]


@pytest.mark.parametrize("budget", [0, -1, True, "3"])
def test_invalid_budget_is_configuration_error(tmp_path: Path, budget: Any) -> None:
    with pytest.raises(ConfigurationError):
        IterationLoop(
            ScriptedTool([]),
            _task_spec(tmp_path),
            run_directory=tmp_path,
            max_iterations=budget,
        )
