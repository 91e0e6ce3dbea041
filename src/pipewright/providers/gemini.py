from __future__ import annotations

from typing import TYPE_CHECKING

from pipewright.providers.base import CliProvider, ProviderCommand

if TYPE_CHECKING:
    from pipewright.terminal.spawner import SpawnConfig


class GeminiProvider(CliProvider):
    name = "gemini"
    command = "gemini"
    context_file = "GEMINI.md"
    model_map = {
        "pro": "gemini-2.5-pro",
        "flash": "gemini-2.5-flash",
    }

    def build_command(self, config: SpawnConfig) -> ProviderCommand:
        args = [*self._model_args(config), "--prompt"]
        return ProviderCommand(command=self.command, args=args, stdin_prompt=config.prompt or None)
