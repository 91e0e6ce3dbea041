from __future__ import annotations

import logging
import shutil

from pipewright.agents import Agent, coerce_agent
from pipewright.config import PipewrightConfig
from pipewright.providers.base import CliProvider, UnknownProviderError
from pipewright.providers.claude import ClaudeProvider
from pipewright.providers.codex import CodexProvider
from pipewright.providers.copilot import CopilotProvider
from pipewright.providers.gemini import GeminiProvider

logger = logging.getLogger(__name__)

FALLBACK_PROVIDER = "claude"
FALLBACK_TIER = "sonnet"

PROVIDERS: dict[str, CliProvider] = {
    provider.name: provider
    for provider in (ClaudeProvider(), GeminiProvider(), CodexProvider(), CopilotProvider())
}

# Default (provider, tier) per agent; reasoning-heavy agents get the larger tier.
AGENT_MODELS: dict[Agent, tuple[str, str]] = {
    Agent.GREENFIELD_WU: ("claude", "sonnet"),
    Agent.BROWNFIELD_WU: ("claude", "opus"),
    Agent.BRIEF: ("claude", "opus"),
    Agent.DETAIL: ("claude", "opus"),
    Agent.ARCHITECT: ("claude", "opus"),
    Agent.UX: ("claude", "sonnet"),
    Agent.PHASES: ("claude", "sonnet"),
    Agent.TASKS: ("claude", "sonnet"),
    Agent.QA_PLANNING: ("claude", "opus"),
    Agent.DEV: ("claude", "opus"),
    Agent.QA_IMPLEMENTATION: ("claude", "opus"),
    Agent.DEVOPS: ("claude", "sonnet"),
}


def get_provider(name: str) -> CliProvider:
    try:
        return PROVIDERS[name]
    except KeyError as exc:
        available = ", ".join(PROVIDERS)
        raise UnknownProviderError(
            f"Unknown CLI provider: {name!r}. Available: {available}"
        ) from exc


def all_providers() -> dict[str, CliProvider]:
    return dict(PROVIDERS)


def enabled_providers(config: PipewrightConfig) -> tuple[str, list[str]]:
    """Return ``(primary, enabled)``; claude stays enabled as the fallback."""
    enabled = [name for name in config.providers.enabled if name in PROVIDERS]
    if FALLBACK_PROVIDER not in enabled:
        enabled.insert(0, FALLBACK_PROVIDER)
    primary = config.providers.primary
    if primary not in enabled:
        primary = FALLBACK_PROVIDER
    return primary, enabled


def resolve_provider_for_agent(
    agent: Agent | str, config: PipewrightConfig | None = None
) -> tuple[str, str]:
    """Pick ``(provider, tier)`` for an agent.

    Priority is the configured override, then the agent's default, then the
    primary provider.  Only enabled providers are ever returned.
    """
    resolved = coerce_agent(agent)
    config = config or PipewrightConfig.default()
    primary, enabled = enabled_providers(config)

    override = config.parsed_overrides().get(resolved.value)
    if override is not None:
        provider, tier = override
        if provider in enabled:
            return provider, tier or FALLBACK_TIER
        logger.warning(
            "Ignoring override %s=%s: provider is not enabled", resolved.value, provider
        )

    default = AGENT_MODELS.get(resolved)
    if default is not None and default[0] in enabled:
        return default

    return primary, FALLBACK_TIER


def is_provider_available(name: str) -> bool:
    provider = PROVIDERS.get(name)
    if provider is None:
        return False
    return shutil.which(provider.command) is not None
