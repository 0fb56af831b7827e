from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from ralph.completion import contains_completion
from ralph.config import ConfigurationError
from ralph.indicator import ActivityIndicator, NullIndicator
from ralph.state.lifecycle import LifecyclePreparation, RunLifecycleManager
from ralph.state.task_spec import TaskSpec
from ralph.tools.base import AgentTool

logger = logging.getLogger(__name__)

ITERATION_DELAY_SECONDS = 2.0

RunStatus = Literal["complete", "timeout"]
LoopEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class IterationRecord:
    index: int
    elapsed_seconds: float
    ok: bool
    completed: bool
    reason: str | None = None


@dataclass(slots=True)
class RunSummary:
    status: RunStatus
    iterations: int
    max_iterations: int
    elapsed_seconds: float
    records: list[IterationRecord] = field(default_factory=list)
    preparation: LifecyclePreparation | None = None

    @property
    def completed(self) -> bool:
        return self.status == "complete"

    @property
    def exit_code(self) -> int:
        return 0 if self.completed else 1


class IterationLoop:
    """Runs the agent until it prints the completion marker or the budget runs out.

    Iterations are strictly sequential: the agent and the loop share the run
    directory, so the next invocation starts only after the previous one has
    exited and its output has been checked.
    """

    def __init__(
        self,
        tool: AgentTool,
        task_spec: TaskSpec,
        *,
        run_directory: Path,
        max_iterations: int,
        lifecycle: RunLifecycleManager | None = None,
        event_hook: LoopEventHook | None = None,
        indicator: ActivityIndicator | None = None,
        delay_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if isinstance(max_iterations, bool) or not isinstance(max_iterations, int):
            raise ConfigurationError(f"max_iterations must be an integer, got {max_iterations!r}")
        if max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be positive, got {max_iterations}")
        self.tool = tool
        self.task_spec = task_spec
        self.run_directory = run_directory
        self.max_iterations = max_iterations
        self.lifecycle = lifecycle or RunLifecycleManager(run_directory)
        self.event_hook = event_hook
        self.indicator = indicator or NullIndicator()
        self.delay_seconds = ITERATION_DELAY_SECONDS if delay_seconds is None else delay_seconds
        self.sleep = sleep
        self.clock = clock

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    async def run(self) -> RunSummary:
        preparation = self.lifecycle.prepare(self.task_spec)
        self._emit(
            {
                "event": "run_start",
                "tool": self.tool.name,
                "project": self.task_spec.project,
                "branch": self.task_spec.branch_name,
                "max_iterations": self.max_iterations,
            }
        )

        run_started = self.clock()
        records: list[IterationRecord] = []
        for index in range(1, self.max_iterations + 1):
            self._emit(
                {
                    "event": "iteration_start",
                    "iteration": index,
                    "max_iterations": self.max_iterations,
                }
            )
            started = self.clock()
            result = await self.tool.invoke(self.run_directory)
            elapsed = self.clock() - started

            outcome = result.outcome
            completed = contains_completion(result.output)
            records.append(
                IterationRecord(
                    index=index,
                    elapsed_seconds=elapsed,
                    ok=outcome.ok,
                    completed=completed,
                    reason=outcome.reason,
                )
            )
            if not outcome.ok:
                logger.debug("Iteration %d failed: %s", index, outcome.reason)
                self._emit(
                    {
                        "event": "iteration_warning",
                        "iteration": index,
                        "reason": outcome.reason,
                        "exit_code": outcome.exit_code,
                        "elapsed_seconds": elapsed,
                    }
                )
            self._emit(
                {
                    "event": "iteration_complete",
                    "iteration": index,
                    "ok": outcome.ok,
                    "completed": completed,
                    "elapsed_seconds": elapsed,
                }
            )

            if completed:
                summary = RunSummary(
                    status="complete",
                    iterations=index,
                    max_iterations=self.max_iterations,
                    elapsed_seconds=self.clock() - run_started,
                    records=records,
                    preparation=preparation,
                )
                self._emit(
                    {
                        "event": "run_complete",
                        "iterations": index,
                        "elapsed_seconds": summary.elapsed_seconds,
                    }
                )
                return summary

            if index < self.max_iterations:
                self._emit(
                    {
                        "event": "iteration_wait",
                        "iteration": index,
                        "delay_seconds": self.delay_seconds,
                    }
                )
                async with self.indicator.running("waiting for next iteration..."):
                    await self.sleep(self.delay_seconds)

        summary = RunSummary(
            status="timeout",
            iterations=self.max_iterations,
            max_iterations=self.max_iterations,
            elapsed_seconds=self.clock() - run_started,
            records=records,
            preparation=preparation,
        )
        self._emit(
            {
                "event": "run_timeout",
                "iterations": self.max_iterations,
                "elapsed_seconds": summary.elapsed_seconds,
                "journal": str(self.lifecycle.journal_path),
            }
        )
        return summary
