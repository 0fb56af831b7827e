from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any

import click

from ralph import __version__
from ralph.config import TOOL_NAMES, RalphError, resolve_config
from ralph.indicator import ActivityIndicator, NullIndicator, Spinner
from ralph.loop import IterationLoop
from ralph.scaffold import guidance_for, init_workspace
from ralph.state import RunLifecycleManager, TaskSpec, load_task_spec
from ralph.state.lifecycle import JOURNAL_FILENAME
from ralph.tools import build_tool

DEFAULT_COMMAND = "run"


class DefaultCommandGroup(click.Group):
    """Routes ``ralph 20`` and ``ralph --tool amp`` to the ``run`` command."""

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        passthrough = {*ctx.help_option_names, "-v", "--version"}
        if not args or (args[0] not in self.commands and args[0] not in passthrough):
            args = [DEFAULT_COMMAND, *args]
        return super().parse_args(ctx, args)

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except click.UsageError as exc:
            raise click.ClickException(f"[config] {exc.format_message()}") from exc


def format_duration(seconds: float) -> str:
    total = int(round(max(0.0, seconds)))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def progress_bar(current: int, total: int, width: int = 20) -> str:
    if total <= 0:
        return ""
    filled = min(width, (current * width) // total)
    bar = "=" * filled
    if filled < width:
        bar += ">" + " " * (width - filled - 1)
    percent = (current * 100) // total
    return f"[{bar}] {percent:3d}%"


def _fatal(exc: RalphError) -> click.ClickException:
    return click.ClickException(f"[{exc.label}] {exc}")


class ConsoleReporter:
    """Renders loop and lifecycle events as terminal status lines."""

    def __init__(self, task_spec: TaskSpec) -> None:
        self.task_spec = task_spec

    def __call__(self, event: dict[str, Any]) -> None:
        handler = getattr(self, f"_on_{event.get('event')}", None)
        if handler is not None:
            handler(event)

    @staticmethod
    def _status_line(name: str, status: str, *, done: bool, elapsed: float | None = None) -> None:
        mark = click.style("+", fg="green") if done else click.style(">", fg="cyan")
        suffix = ""
        if elapsed is not None and elapsed > 0:
            suffix = " " + click.style(format_duration(elapsed), fg="bright_black")
        click.echo(f" {mark} {click.style(f'{name:<12}', bold=True)} {status}{suffix}")

    def _on_archive_start(self, event: dict[str, Any]) -> None:
        click.echo(f"{click.style('[*]', fg='blue')} Archiving previous run: {event['branch']}")

    def _on_archive_complete(self, event: dict[str, Any]) -> None:
        click.echo(f"{click.style('[+]', fg='green')} Archived to: {event['path']}")

    def _on_journal_created(self, event: dict[str, Any]) -> None:
        click.echo(f"{click.style('[*]', fg='blue')} Created {Path(event['path']).name}")

    def _on_run_start(self, event: dict[str, Any]) -> None:
        click.echo()
        click.echo(click.style("ralph", fg="cyan", bold=True) + f" {__version__}")
        click.echo(f"  {click.style('Tool:', fg='bright_black')}      {event['tool']}")
        click.echo(f"  {click.style('Project:', fg='bright_black')}   {event['project']}")
        click.echo(f"  {click.style('Branch:', fg='bright_black')}    {event['branch']}")
        click.echo(f"  {click.style('Max iter:', fg='bright_black')}  {event['max_iterations']}")
        if self.task_spec.stories:
            click.echo()
            click.echo(f"  {click.style('Stories:', bold=True)}")
            for story in self.task_spec.stories:
                mark = click.style("x", fg="green") if story.passes else " "
                click.echo(f"    [{mark}] {story.id:<8} {story.title}")
        click.echo()

    def _on_iteration_start(self, event: dict[str, Any]) -> None:
        index = event["iteration"]
        total = event["max_iterations"]
        header = click.style(f"#{index}", fg="bright_black")
        click.echo(f"{header} {progress_bar(index - 1, total)} iteration {index}/{total}")

    def _on_iteration_warning(self, event: dict[str, Any]) -> None:
        status = f"{click.style('warning', fg='yellow')} {event['reason']}"
        self._status_line(
            f"iter-{event['iteration']}", status, done=False, elapsed=event["elapsed_seconds"]
        )

    def _on_iteration_complete(self, event: dict[str, Any]) -> None:
        if event["ok"]:
            self._status_line(
                f"iter-{event['iteration']}", "done", done=True, elapsed=event["elapsed_seconds"]
            )

    def _on_run_complete(self, event: dict[str, Any]) -> None:
        click.echo()
        self._status_line("complete", click.style("COMPLETE", fg="green"), done=True)
        arrow = click.style("=>", fg="green")
        message = f"finished in {event['iterations']} iterations"
        click.echo(f" {arrow} {click.style(message, bold=True)}")
        click.echo(f"    total time: {format_duration(event['elapsed_seconds'])}")
        click.echo()

    def _on_run_timeout(self, event: dict[str, Any]) -> None:
        click.echo()
        self._status_line(
            "incomplete", click.style("max iterations reached", fg="yellow"), done=False
        )
        arrow = click.style("=>", fg="yellow")
        message = f"max iterations reached ({event['iterations']})"
        click.echo(f" {arrow} {click.style(message, bold=True)}")
        click.echo(f"    total time: {format_duration(event['elapsed_seconds'])}")
        click.echo(f"    check {Path(event['journal']).name} for status")
        click.echo()


def _configure_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            stream=sys.stderr,
        )


def _resolve_run_directory(directory: Path | None) -> Path:
    return (directory or Path.cwd()).resolve()


def _build_indicator() -> ActivityIndicator:
    if sys.stdout.isatty():
        return Spinner(sys.stdout)
    return NullIndicator()


@click.group(
    cls=DefaultCommandGroup,
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.version_option(__version__, "-v", "--version", prog_name="ralph")
def cli() -> None:
    """Run an autonomous coding agent against prd.json until it reports completion."""


@cli.command("run", context_settings={"ignore_unknown_options": True})
@click.option("--tool", "tool_name", default=None, help=f"Agent to run: {' or '.join(TOOL_NAMES)}.")
@click.option(
    "--directory",
    "-C",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Run directory holding prd.json (default: current directory).",
)
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
@click.argument("iterations", nargs=-1, type=click.UNPROCESSED)
@click.pass_context
def run_command(
    ctx: click.Context,
    tool_name: str | None,
    directory: Path | None,
    verbose: bool,
    iterations: tuple[str, ...],
) -> None:
    """Start the agent loop. MAX_ITERATIONS defaults to 10."""
    _configure_logging(verbose)
    run_directory = _resolve_run_directory(directory)
    try:
        config = resolve_config(run_directory, tool=tool_name, iteration_args=iterations)
        tool = build_tool(
            config.loop.tool,
            timeout_seconds=config.timeout,
            max_capture_bytes=config.tool.max_capture_bytes,
        )
        task_spec = load_task_spec(run_directory)
        reporter = ConsoleReporter(task_spec)
        loop = IterationLoop(
            tool,
            task_spec,
            run_directory=run_directory,
            max_iterations=config.loop.max_iterations,
            lifecycle=RunLifecycleManager(run_directory, event_hook=reporter),
            event_hook=reporter,
            indicator=_build_indicator(),
        )
    except RalphError as exc:
        raise _fatal(exc) from exc

    try:
        summary = asyncio.run(loop.run())
    except RalphError as exc:
        raise _fatal(exc) from exc
    ctx.exit(summary.exit_code)


@cli.command("init")
@click.option(
    "--directory",
    "-C",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
)
def init_command(directory: Path | None) -> None:
    """Create prd.json, guidance files and ralph.toml where missing."""
    run_directory = _resolve_run_directory(directory)
    try:
        result = init_workspace(run_directory)
    except RalphError as exc:
        raise _fatal(exc) from exc
    click.echo(f"Initialized ralph in {run_directory}")
    for name in result.created:
        click.echo(f"  created {name}")
    for name in result.skipped:
        click.echo(f"  kept    {name}")


@cli.command("prompt")
@click.argument("tool_name", required=False, default="claude")
def prompt_command(tool_name: str) -> None:
    """Print the packaged guidance for a tool."""
    try:
        click.echo(guidance_for(tool_name), nl=False)
    except RalphError as exc:
        raise _fatal(exc) from exc


@cli.command("status")
@click.option(
    "--directory",
    "-C",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
)
def status_command(directory: Path | None) -> None:
    """Show the PRD stories and the branch of the last run."""
    run_directory = _resolve_run_directory(directory)
    lifecycle = RunLifecycleManager(run_directory)
    try:
        task_spec = load_task_spec(run_directory)
        last_branch = lifecycle.pointer_store.read()
    except RalphError as exc:
        raise _fatal(exc) from exc

    click.echo(f"Project:     {task_spec.project}")
    click.echo(f"Branch:      {task_spec.branch_name}")
    click.echo(f"Last branch: {last_branch or '-'}")
    click.echo(f"Stories:     {task_spec.completed_count}/{len(task_spec.stories)} passing")
    for story in task_spec.stories:
        mark = "x" if story.passes else " "
        click.echo(f"  [{mark}] {story.id:<8} p{story.priority} {story.title}")
    if not lifecycle.journal_path.exists():
        click.echo(f"No {JOURNAL_FILENAME} yet.")


def main() -> None:
    cli(prog_name="ralph")
