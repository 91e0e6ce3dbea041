from pipewright.providers.base import (
    CliProvider,
    ProviderCommand,
    ProviderError,
    UnknownProviderError,
)
from pipewright.providers.claude import ClaudeProvider
from pipewright.providers.codex import CodexProvider
from pipewright.providers.copilot import CopilotProvider
from pipewright.providers.gemini import GeminiProvider
from pipewright.providers.registry import (
    all_providers,
    get_provider,
    is_provider_available,
    resolve_provider_for_agent,
)

__all__ = [
    "ClaudeProvider",
    "CliProvider",
    "CodexProvider",
    "CopilotProvider",
    "GeminiProvider",
    "ProviderCommand",
    "ProviderError",
    "UnknownProviderError",
    "all_providers",
    "get_provider",
    "is_provider_available",
    "resolve_provider_for_agent",
]
