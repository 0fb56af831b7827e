from __future__ import annotations

import json
import tomllib
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

ToolName = Literal["claude", "amp"]

TOOL_NAMES: tuple[str, ...] = ("claude", "amp")
DEFAULT_TOOL: ToolName = "claude"
DEFAULT_MAX_ITERATIONS = 10
DEFAULT_MAX_CAPTURE_BYTES = 16 * 1024 * 1024
CONFIG_FILENAME = "ralph.toml"


class RalphError(RuntimeError):
    """Base class for errors that abort a run."""

    label = "error"


class ConfigurationError(RalphError):
    """Raised when the resolved configuration cannot be used."""

    label = "config"


@dataclass(slots=True)
class LoopConfig:
    tool: str = DEFAULT_TOOL
    max_iterations: int = DEFAULT_MAX_ITERATIONS


@dataclass(slots=True)
class ToolConfig:
    # 0 disables the deadline.
    timeout_seconds: float = 0.0
    max_capture_bytes: int = DEFAULT_MAX_CAPTURE_BYTES


@dataclass(slots=True)
class RalphConfig:
    loop: LoopConfig = field(default_factory=LoopConfig)
    tool: ToolConfig = field(default_factory=ToolConfig)

    @classmethod
    def default(cls) -> RalphConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> RalphConfig:
        try:
            return cls(
                loop=LoopConfig(**data.get("loop", {})),
                tool=ToolConfig(**data.get("tool", {})),
            )
        except TypeError as exc:
            raise ConfigurationError(f"Unsupported configuration key: {exc}") from exc

    def to_dict(self) -> dict:
        return {
            "loop": {
                "tool": self.loop.tool,
                "max_iterations": self.loop.max_iterations,
            },
            "tool": {
                "timeout_seconds": self.tool.timeout_seconds,
                "max_capture_bytes": self.tool.max_capture_bytes,
            },
        }

    @property
    def timeout(self) -> float | None:
        if self.tool.timeout_seconds and self.tool.timeout_seconds > 0:
            return float(self.tool.timeout_seconds)
        return None

    def validate(self) -> None:
        if not isinstance(self.loop.tool, str) or self.loop.tool not in TOOL_NAMES:
            raise ConfigurationError(
                f"invalid tool '{self.loop.tool}': must be one of {', '.join(TOOL_NAMES)}"
            )
        if not _is_int(self.loop.max_iterations) or self.loop.max_iterations < 1:
            raise ConfigurationError(
                f"max_iterations must be a positive integer, got {self.loop.max_iterations!r}"
            )
        timeout = self.tool.timeout_seconds
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
            raise ConfigurationError(f"timeout_seconds must be a number, got {timeout!r}")
        if not _is_int(self.tool.max_capture_bytes) or self.tool.max_capture_bytes < 1:
            raise ConfigurationError(
                f"max_capture_bytes must be a positive integer, got {self.tool.max_capture_bytes!r}"
            )


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def parse_max_iterations(values: Iterable[str], default: int) -> int:
    """Return the last positive integer in ``values``, or ``default``.

    Non-numeric and non-positive values are ignored rather than rejected.
    """
    resolved = default
    for raw in values:
        try:
            candidate = int(str(raw).strip())
        except ValueError:
            continue
        if candidate > 0:
            resolved = candidate
    return resolved


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: RalphConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("loop", "tool"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> RalphConfig:
    if not path.exists():
        return RalphConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigurationError(f"cannot read {path.name}: {exc}") from exc
    return RalphConfig.from_dict(data)


def save_config(path: Path, config: RalphConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")


def resolve_config(
    run_directory: Path,
    *,
    tool: str | None = None,
    iteration_args: Iterable[str] = (),
) -> RalphConfig:
    """Merge ``ralph.toml`` with command-line overrides and validate the result."""
    config = load_config(run_directory / CONFIG_FILENAME)
    if tool is not None:
        config.loop.tool = tool
    config.loop.max_iterations = parse_max_iterations(iteration_args, config.loop.max_iterations)
    config.validate()
    return config
