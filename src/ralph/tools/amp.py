from __future__ import annotations

from ralph.tools.base import SubprocessAgentTool


class AmpTool(SubprocessAgentTool):
    name = "amp"
    guidance_file = "prompt.md"

    def __init__(self, binary: str = "amp", **kwargs) -> None:
        super().__init__(**kwargs)
        self.binary = binary

    def build_command(self) -> list[str]:
        return [self.binary, "--dangerously-allow-all"]
