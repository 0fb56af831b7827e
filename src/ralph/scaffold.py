from __future__ import annotations

import logging
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path

from ralph.config import CONFIG_FILENAME, ConfigurationError, RalphConfig, dumps_toml
from ralph.state.lifecycle import LifecycleIOError, atomic_write_text
from ralph.tools import TOOL_CLASSES

logger = logging.getLogger(__name__)

TEMPLATE_FILES: tuple[str, ...] = ("prd.json", "CLAUDE.md", "prompt.md", "AGENTS.md")


@dataclass(slots=True)
class ScaffoldResult:
    created: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def read_template(name: str) -> str:
    return resources.files("ralph.templates").joinpath(name).read_text(encoding="utf-8")


def guidance_for(tool_name: str) -> str:
    """Return the packaged guidance text piped to ``tool_name``."""
    tool_class = TOOL_CLASSES.get(tool_name)
    if tool_class is None:
        raise ConfigurationError(f"unknown tool '{tool_name}': must be one of claude, amp")
    return read_template(tool_class.guidance_file)


def init_workspace(run_directory: Path, config: RalphConfig | None = None) -> ScaffoldResult:
    """Create any missing template files; existing files are never overwritten."""
    result = ScaffoldResult()
    files: dict[str, str] = {name: read_template(name) for name in TEMPLATE_FILES}
    files[CONFIG_FILENAME] = dumps_toml(config or RalphConfig.default())

    for name, content in files.items():
        target = run_directory / name
        if target.exists():
            result.skipped.append(name)
            continue
        logger.debug("Initializing %s", target)
        try:
            atomic_write_text(target, content)
        except OSError as exc:
            raise LifecycleIOError(f"writing {name}: {exc}") from exc
        result.created.append(name)
    return result
