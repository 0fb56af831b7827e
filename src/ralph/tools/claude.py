from __future__ import annotations

from ralph.tools.base import SubprocessAgentTool


class ClaudeCodeTool(SubprocessAgentTool):
    name = "claude"
    guidance_file = "CLAUDE.md"

    def __init__(self, binary: str = "claude", **kwargs) -> None:
        super().__init__(**kwargs)
        self.binary = binary

    def build_command(self) -> list[str]:
        return [self.binary, "--dangerously-skip-permissions", "--print"]
