from pipewright.terminal.environment import clean_parent_env
from pipewright.terminal.isolation import ScopeConflict, ScopeValidation, validate_write_scopes
from pipewright.terminal.spawner import (
    KillResult,
    SpawnCommand,
    SpawnConfig,
    SpawnConfigError,
    SpawnError,
    SpawnTimeoutError,
    TerminalHandle,
    TerminalOutput,
    WriteScopeConflictError,
    build_spawn_command,
    get_terminal_status,
    kill_terminal,
    reset_terminal_counter,
    spawn_parallel_group,
    spawn_terminal,
    wait_for_terminal,
)

__all__ = [
    "KillResult",
    "ScopeConflict",
    "ScopeValidation",
    "SpawnCommand",
    "SpawnConfig",
    "SpawnConfigError",
    "SpawnError",
    "SpawnTimeoutError",
    "TerminalHandle",
    "TerminalOutput",
    "WriteScopeConflictError",
    "build_spawn_command",
    "clean_parent_env",
    "get_terminal_status",
    "kill_terminal",
    "reset_terminal_counter",
    "spawn_parallel_group",
    "spawn_terminal",
    "validate_write_scopes",
    "wait_for_terminal",
]
