"""Spawn isolated agent CLI processes.

``build_spawn_command`` is pure apart from the terminal id counter; the
async helpers below it start, observe and stop real subprocesses.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pipewright.agents import Agent, coerce_agent
from pipewright.providers.base import CliProvider
from pipewright.providers.registry import FALLBACK_PROVIDER, get_provider
from pipewright.terminal.environment import clean_parent_env, isolation_env
from pipewright.terminal.isolation import ScopeConflict, resolve_write_scope, validate_write_scopes

logger = logging.getLogger(__name__)

DEFAULT_KILL_GRACE_SECONDS = 3.0

_terminal_counter = itertools.count(1)


class SpawnError(RuntimeError):
    """Raised when an executor process cannot be started or controlled."""


class SpawnConfigError(SpawnError, ValueError):
    """Raised when a spawn request is incomplete."""


class SpawnTimeoutError(SpawnError):
    """Raised when a terminal outlives the caller's timeout."""


class WriteScopeConflictError(SpawnError):
    def __init__(self, message: str, conflicts: list[ScopeConflict]) -> None:
        super().__init__(message)
        self.conflicts = conflicts


@dataclass(slots=True)
class SpawnConfig:
    agent: Agent | str
    task_id: str
    write_scope: list[str] | None = None
    model: str | None = None
    context_payload: Any = None
    prompt: str | None = None
    provider: str | None = None


@dataclass(slots=True)
class SpawnCommand:
    command: str
    args: list[str]
    env: dict[str, str]
    terminal_id: str
    prompt: str | None = None

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]


@dataclass(slots=True)
class TerminalHandle:
    id: str
    agent: str
    task_id: str
    status: str = "running"
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    exit_code: int | None = None
    process: Any = None


@dataclass(slots=True)
class TerminalOutput:
    terminal_id: str
    exit_code: int | None
    stdout: str
    stderr: str


@dataclass(slots=True)
class KillResult:
    killed: bool
    exit_code: int | None = None


def reset_terminal_counter() -> None:
    global _terminal_counter
    _terminal_counter = itertools.count(1)


def _serialize_context(payload: Any) -> str:
    if payload is None:
        return "{}"
    try:
        return json.dumps(payload, ensure_ascii=False)
    except (TypeError, ValueError):
        logger.warning("Context payload is not JSON serializable; sending an empty object")
        return "{}"


def _resolve_provider(config: SpawnConfig, provider: CliProvider | str | None) -> CliProvider:
    if isinstance(provider, CliProvider):
        return provider
    return get_provider(provider or config.provider or FALLBACK_PROVIDER)


def build_spawn_command(
    config: SpawnConfig | None,
    provider: CliProvider | str | None = None,
    *,
    base_env: Mapping[str, str] | None = None,
) -> SpawnCommand:
    """Build argv and environment for one executor; the prompt stays off argv."""
    if config is None:
        raise SpawnConfigError("build_spawn_command requires a config object")
    if not config.agent:
        raise SpawnConfigError("config.agent is required")
    if not config.task_id:
        raise SpawnConfigError("config.task_id is required")

    agent = coerce_agent(config.agent)
    cli = _resolve_provider(config, provider)
    provider_command = cli.build_command(config)
    terminal_id = f"{agent.value}-{next(_terminal_counter)}"

    env = clean_parent_env(os.environ if base_env is None else base_env)
    env.update(cli.build_env(config))
    env.update(
        isolation_env(
            agent=agent.value,
            task_id=config.task_id,
            terminal_id=terminal_id,
            write_scope=resolve_write_scope(config),
            context=_serialize_context(config.context_payload),
        )
    )
    return SpawnCommand(
        command=provider_command.command,
        args=list(provider_command.args),
        env=env,
        terminal_id=terminal_id,
        prompt=provider_command.stdin_prompt,
    )


async def spawn_terminal(
    config: SpawnConfig,
    provider: CliProvider | str | None = None,
    *,
    cwd: Path | None = None,
) -> TerminalHandle:
    command = build_spawn_command(config, provider)
    try:
        process = await asyncio.create_subprocess_exec(
            *command.argv,
            cwd=str(cwd) if cwd else None,
            env=command.env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise SpawnError(f"CLI binary not found: {command.command}") from exc

    if process.stdin is not None:
        try:
            if command.prompt:
                process.stdin.write(command.prompt.encode("utf-8"))
                await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.warning(
                "Terminal %s closed stdin before the prompt was written", command.terminal_id
            )
        finally:
            process.stdin.close()

    logger.info(
        "Spawned %s (%s) for task %s, pid %s",
        command.terminal_id,
        command.command,
        config.task_id,
        process.pid,
    )
    return TerminalHandle(
        id=command.terminal_id,
        agent=coerce_agent(config.agent).value,
        task_id=config.task_id,
        process=process,
    )


async def spawn_parallel_group(
    configs: Sequence[SpawnConfig],
    provider: CliProvider | str | None = None,
    *,
    cwd: Path | None = None,
    max_parallel: int | None = None,
    grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
) -> list[TerminalHandle]:
    """Start several executors at once after proving their write scopes are disjoint."""
    if max_parallel is not None and len(configs) > max_parallel:
        raise SpawnConfigError(
            f"Parallel group of {len(configs)} exceeds the limit of {max_parallel} terminals"
        )
    validation = validate_write_scopes(configs)
    if not validation.valid:
        details = "; ".join(conflict.describe() for conflict in validation.conflicts)
        raise WriteScopeConflictError(
            f"Write scope conflict: {details}", validation.conflicts
        )

    results = await asyncio.gather(
        *(spawn_terminal(config, provider, cwd=cwd) for config in configs),
        return_exceptions=True,
    )
    handles = [item for item in results if isinstance(item, TerminalHandle)]
    failures = [item for item in results if isinstance(item, BaseException)]
    if failures:
        for handle in handles:
            await kill_terminal(handle, grace_seconds)
        raise failures[0]
    return handles


async def wait_for_terminal(
    handle: TerminalHandle,
    timeout: float | None = None,
    *,
    grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
) -> TerminalOutput:
    process = handle.process
    if process is None:
        return TerminalOutput(handle.id, handle.exit_code, "", "")
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError as exc:
        await kill_terminal(handle, grace_seconds)
        raise SpawnTimeoutError(f"Terminal {handle.id} did not finish within {timeout}s") from exc
    handle.status = "exited"
    handle.exit_code = process.returncode
    logger.debug("Terminal %s exited with %s", handle.id, handle.exit_code)
    return TerminalOutput(
        terminal_id=handle.id,
        exit_code=handle.exit_code,
        stdout=(stdout or b"").decode("utf-8", errors="replace"),
        stderr=(stderr or b"").decode("utf-8", errors="replace"),
    )


def get_terminal_status(handle: TerminalHandle | None) -> dict[str, Any]:
    if handle is None:
        return {"id": "unknown", "status": "unknown"}
    started = handle.started_at
    if started.tzinfo is None:
        started = started.replace(tzinfo=UTC)
    return {
        "id": handle.id,
        "agent": handle.agent,
        "task_id": handle.task_id,
        "status": handle.status,
        "exit_code": handle.exit_code,
        "elapsed": max(0.0, (datetime.now(UTC) - started).total_seconds()),
    }


async def terminate_process(
    process: Any, grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS
) -> int | None:
    """SIGTERM, then SIGKILL once ``grace_seconds`` have passed."""
    try:
        process.terminate()
    except ProcessLookupError:
        return process.returncode
    try:
        return await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        return await process.wait()


async def kill_terminal(
    handle: TerminalHandle | None, grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS
) -> KillResult:
    if handle is None:
        return KillResult(killed=False)
    process = handle.process
    if process is None or handle.status == "exited" or process.returncode is not None:
        return KillResult(killed=False, exit_code=handle.exit_code)

    exit_code = await terminate_process(process, grace_seconds)
    handle.status = "exited"
    handle.exit_code = exit_code
    logger.info("Killed terminal %s (exit code %s)", handle.id, exit_code)
    return KillResult(killed=True, exit_code=exit_code)
