from __future__ import annotations

from typing import TYPE_CHECKING

from pipewright.providers.base import CliProvider, ProviderCommand

if TYPE_CHECKING:
    from pipewright.terminal.spawner import SpawnConfig


class CodexProvider(CliProvider):
    name = "codex"
    command = "codex"
    model_flag = "-m"
    context_file = "AGENTS.md"
    hooks_support = False
    model_map = {
        "codex": "gpt-5.3-codex",
        "mini": "gpt-5.1-codex-mini",
    }

    def build_command(self, config: SpawnConfig) -> ProviderCommand:
        # A trailing "-" makes `codex exec` read the prompt from stdin.
        args = ["exec", *self._model_args(config), "-"]
        return ProviderCommand(command=self.command, args=args, stdin_prompt=config.prompt or None)
