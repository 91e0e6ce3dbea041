from __future__ import annotations

from typing import TYPE_CHECKING

from pipewright.providers.base import CliProvider, ProviderCommand

if TYPE_CHECKING:
    from pipewright.terminal.spawner import SpawnConfig


class CopilotProvider(CliProvider):
    name = "copilot"
    command = "copilot"
    model_map = {
        "claude-sonnet": "claude-sonnet-4.5",
        "gpt-5": "gpt-5.1",
    }

    def build_command(self, config: SpawnConfig) -> ProviderCommand:
        args = ["-p", *self._model_args(config)]
        return ProviderCommand(command=self.command, args=args, stdin_prompt=config.prompt or None)
