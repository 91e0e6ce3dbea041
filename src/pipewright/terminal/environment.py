"""Environment hygiene for spawned agent processes.

A child CLI must not believe it is nested inside another agent session, so
session markers from the parent are stripped.  Credentials are always kept.
"""

from __future__ import annotations

from collections.abc import Mapping

ENV_PREFIX = "PIPEWRIGHT_"

DENY_EXACT = frozenset({"CLAUDECODE"})
DENY_PREFIXES = ("CLAUDE_CODE_", "CLAUDE_AGENT_SDK_")
ALLOW_EXACT = frozenset({"ANTHROPIC_API_KEY", "CLAUDE_API_KEY"})
ALLOW_SUFFIXES = ("_API_KEY", "_AUTH_TOKEN", "_OAUTH_TOKEN")


def is_credential_variable(name: str) -> bool:
    return name in ALLOW_EXACT or name.endswith(ALLOW_SUFFIXES)


def is_session_marker(name: str) -> bool:
    return name in DENY_EXACT or name.startswith(DENY_PREFIXES)


def clean_parent_env(env: Mapping[str, str]) -> dict[str, str]:
    """Return a copy of ``env`` without parent-session markers."""
    return {
        name: value
        for name, value in env.items()
        if is_credential_variable(name) or not is_session_marker(name)
    }


def isolation_env(
    *,
    agent: str,
    task_id: str,
    terminal_id: str,
    write_scope: list[str],
    context: str,
) -> dict[str, str]:
    return {
        f"{ENV_PREFIX}AGENT": agent,
        f"{ENV_PREFIX}TASK_ID": task_id,
        f"{ENV_PREFIX}TERMINAL_ID": terminal_id,
        f"{ENV_PREFIX}WRITE_SCOPE": ",".join(write_scope),
        f"{ENV_PREFIX}READ_SCOPE": "*",
        f"{ENV_PREFIX}SPAWNED": "true",
        f"{ENV_PREFIX}CONTEXT": context,
    }
