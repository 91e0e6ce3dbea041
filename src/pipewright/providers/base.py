from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from pipewright.terminal.spawner import SpawnConfig


class ProviderError(RuntimeError):
    """Raised when a CLI provider cannot be resolved or used."""


class UnknownProviderError(ProviderError, LookupError):
    """Raised when a provider name is not registered."""


@dataclass(slots=True)
class ProviderCommand:
    command: str
    args: list[str] = field(default_factory=list)
    stdin_prompt: str | None = None


class CliProvider(ABC):
    """Capabilities of one external agent CLI.

    The prompt always travels through stdin, so ``build_command`` must never
    place it in ``args``.
    """

    name: ClassVar[str]
    command: ClassVar[str]
    model_flag: ClassVar[str] = "--model"
    model_map: ClassVar[dict[str, str]] = {}
    context_file: ClassVar[str | None] = None
    hooks_support: ClassVar[bool] = True
    mcp_support: ClassVar[bool] = True

    def resolve_model(self, tier: str | None) -> str | None:
        if not tier:
            return None
        return self.model_map.get(tier, tier)

    def _model_args(self, config: SpawnConfig) -> list[str]:
        model = self.resolve_model(config.model)
        return [self.model_flag, model] if model else []

    @abstractmethod
    def build_command(self, config: SpawnConfig) -> ProviderCommand:
        """Translate a spawn request into the provider's argv."""

    def build_env(self, config: SpawnConfig) -> dict[str, str]:
        return {}
