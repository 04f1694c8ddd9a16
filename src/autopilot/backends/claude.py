from __future__ import annotations

from autopilot.backends.base import AgentDelegate


class ClaudeCodeDelegate(AgentDelegate):
    name = "claude"

    def build_command(self, prompt: str) -> list[str]:
        command = [self.binary, "-p", prompt, "--output-format", "stream-json", "--verbose"]
        if self.model:
            command.extend(["--model", self.model])
        command.extend(self.extra_args)
        return command
