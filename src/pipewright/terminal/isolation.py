from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from pipewright.agents import write_scope_for

if TYPE_CHECKING:
    from pipewright.terminal.spawner import SpawnConfig


@dataclass(slots=True)
class ScopeConflict:
    first: str
    second: str
    paths: list[tuple[str, str]]

    def describe(self) -> str:
        shared = ", ".join(
            left if left == right else f"{left} ~ {right}" for left, right in self.paths
        )
        return f"{self.first} and {self.second} both write to {shared}"


@dataclass(slots=True)
class ScopeValidation:
    valid: bool
    conflicts: list[ScopeConflict] = field(default_factory=list)


def _normalize(path: str) -> str:
    normalized = path.replace("\\", "/").strip()
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def paths_overlap(left: str, right: str) -> bool:
    """True when one path equals or contains the other."""
    a, b = _normalize(left), _normalize(right)
    if a == b or a.rstrip("/") == b.rstrip("/"):
        return True
    a_dir = a if a.endswith("/") else f"{a}/"
    b_dir = b if b.endswith("/") else f"{b}/"
    return b.startswith(a_dir) or a.startswith(b_dir)


def resolve_write_scope(config: SpawnConfig) -> list[str]:
    if config.write_scope:
        return list(config.write_scope)
    return write_scope_for(config.agent)


def validate_write_scopes(configs: Iterable[SpawnConfig]) -> ScopeValidation:
    """Check that no two concurrent executors may write to the same region."""
    resolved = [
        (str(getattr(config.agent, "value", config.agent)), resolve_write_scope(config))
        for config in configs
    ]
    conflicts: list[ScopeConflict] = []
    for index, (first, first_scope) in enumerate(resolved):
        for second, second_scope in resolved[index + 1 :]:
            overlapping = [
                (left, right)
                for left in first_scope
                for right in second_scope
                if paths_overlap(left, right)
            ]
            if overlapping:
                conflicts.append(ScopeConflict(first, second, overlapping))
    return ScopeValidation(valid=not conflicts, conflicts=conflicts)
