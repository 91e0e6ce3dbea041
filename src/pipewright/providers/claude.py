from __future__ import annotations

from typing import TYPE_CHECKING

from pipewright.providers.base import CliProvider, ProviderCommand

if TYPE_CHECKING:
    from pipewright.terminal.spawner import SpawnConfig


class ClaudeProvider(CliProvider):
    name = "claude"
    command = "claude"
    context_file = "CLAUDE.md"
    model_map = {
        "opus": "claude-opus-4-6",
        "sonnet": "claude-sonnet-4-5-20250929",
        "haiku": "claude-haiku-4-5-20251001",
    }

    def build_command(self, config: SpawnConfig) -> ProviderCommand:
        args = ["--print", "--dangerously-skip-permissions", *self._model_args(config)]
        return ProviderCommand(command=self.command, args=args, stdin_prompt=config.prompt or None)
