from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

ProviderName = Literal["claude", "codex", "gemini", "copilot"]
GateMode = Literal["autonomous", "human-in-the-loop"]

CONFIG_FILENAME = "pipewright.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    greenfield: bool = True


@dataclass(slots=True)
class ProvidersConfig:
    primary: ProviderName = "claude"
    enabled: list[str] = field(default_factory=lambda: ["claude"])
    # Entries of the form "agent=provider:tier", e.g. "dev=codex:codex".
    agent_overrides: list[str] = field(default_factory=list)


@dataclass(slots=True)
class GatesConfig:
    mode: GateMode = "autonomous"
    phase_threshold: int = 95
    default_threshold: int = 90
    revision_margin: int = 5
    max_major_findings: int = 3
    coverage_threshold: int = 0


@dataclass(slots=True)
class BuildConfig:
    agent: str = "dev"
    max_attempts: int = 3
    timeout_minutes: float = 60.0
    output_limit: int = 1000
    error_limit: int = 500


@dataclass(slots=True)
class TerminalConfig:
    kill_grace_seconds: float = 3.0
    max_parallel: int = 4


@dataclass(slots=True)
class PreviewConfig:
    start_port: int = 3000
    max_port_attempts: int = 20
    health_timeout_seconds: float = 30.0
    open_browser: bool = True


@dataclass(slots=True)
class StateConfig:
    directory: str = ".pipewright/state"


@dataclass(slots=True)
class PipewrightConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    gates: GatesConfig = field(default_factory=GatesConfig)
    build: BuildConfig = field(default_factory=BuildConfig)
    terminal: TerminalConfig = field(default_factory=TerminalConfig)
    preview: PreviewConfig = field(default_factory=PreviewConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> PipewrightConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> PipewrightConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            providers=ProvidersConfig(**data.get("providers", {})),
            gates=GatesConfig(**data.get("gates", {})),
            build=BuildConfig(**data.get("build", {})),
            terminal=TerminalConfig(**data.get("terminal", {})),
            preview=PreviewConfig(**data.get("preview", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "greenfield": self.project.greenfield,
            },
            "providers": {
                "primary": self.providers.primary,
                "enabled": list(self.providers.enabled),
                "agent_overrides": list(self.providers.agent_overrides),
            },
            "gates": {
                "mode": self.gates.mode,
                "phase_threshold": self.gates.phase_threshold,
                "default_threshold": self.gates.default_threshold,
                "revision_margin": self.gates.revision_margin,
                "max_major_findings": self.gates.max_major_findings,
                "coverage_threshold": self.gates.coverage_threshold,
            },
            "build": {
                "agent": self.build.agent,
                "max_attempts": self.build.max_attempts,
                "timeout_minutes": self.build.timeout_minutes,
                "output_limit": self.build.output_limit,
                "error_limit": self.build.error_limit,
            },
            "terminal": {
                "kill_grace_seconds": self.terminal.kill_grace_seconds,
                "max_parallel": self.terminal.max_parallel,
            },
            "preview": {
                "start_port": self.preview.start_port,
                "max_port_attempts": self.preview.max_port_attempts,
                "health_timeout_seconds": self.preview.health_timeout_seconds,
                "open_browser": self.preview.open_browser,
            },
            "state": {
                "directory": self.state.directory,
            },
        }

    def parsed_overrides(self) -> dict[str, tuple[str, str]]:
        overrides: dict[str, tuple[str, str]] = {}
        for entry in self.providers.agent_overrides:
            agent, _, target = str(entry).partition("=")
            provider, _, tier = target.partition(":")
            if agent.strip() and provider.strip():
                overrides[agent.strip()] = (provider.strip(), tier.strip())
        return overrides


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        if rendered.endswith("."):
            rendered += "0"
        return rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: PipewrightConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "providers", "gates", "build", "terminal", "preview", "state"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> PipewrightConfig:
    if not path.exists():
        return PipewrightConfig.default()
    return PipewrightConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: PipewrightConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
