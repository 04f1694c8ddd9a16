from __future__ import annotations

from autopilot.backends.base import AgentDelegate


class CodexDelegate(AgentDelegate):
    name = "codex"

    def build_command(self, prompt: str) -> list[str]:
        command = [self.binary, "exec", "--json"]
        if self.model and self.model.strip():
            command.extend(["-m", self.model.strip()])
        command.extend(self.extra_args)
        command.append(prompt)
        return command
