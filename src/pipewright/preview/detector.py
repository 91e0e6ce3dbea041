"""Project inspection: how to run a preview, what kind of project it is."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

NEXT_CONFIGS = ("next.config.js", "next.config.mjs", "next.config.ts")
VITE_CONFIGS = ("vite.config.js", "vite.config.mjs", "vite.config.ts")
API_DEPENDENCIES = ("express", "fastify", "koa", "@nestjs/core", "hono")
BROWNFIELD_MARKERS = {
    "package_json": "package.json",
    "src_dir": "src",
    "git_dir": ".git",
    "composer_json": "composer.json",
    "requirements_txt": "requirements.txt",
    "pyproject_toml": "pyproject.toml",
    "go_mod": "go.mod",
    "cargo_toml": "Cargo.toml",
    "pom_xml": "pom.xml",
}


@dataclass(slots=True)
class DevCommand:
    framework: str
    command: str
    args: list[str]
    default_port: int
    description: str


@dataclass(slots=True)
class ProjectTypeDetection:
    suggestion: str
    confidence: str
    signals: dict[str, bool] = field(default_factory=dict)


def _read_package_json(project_dir: Path) -> dict[str, Any] | None:
    path = project_dir / "package.json"
    if not path.is_file():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Ignoring malformed %s", path)
        return None
    return payload if isinstance(payload, dict) else None


def _has_any(project_dir: Path, names: tuple[str, ...]) -> bool:
    return any((project_dir / name).exists() for name in names)


def _npm_script(package: dict[str, Any] | None) -> tuple[list[str], str] | None:
    scripts = (package or {}).get("scripts")
    if not isinstance(scripts, dict):
        return None
    if "dev" in scripts:
        return ["run", "dev"], "npm run dev"
    if "start" in scripts:
        return ["start"], "npm start"
    return None


def detect_dev_command(project_dir: Path) -> DevCommand | None:
    """Work out how to start a local preview server, or ``None`` if there is none."""
    project_dir = Path(project_dir)
    malformed = (project_dir / "package.json").is_file()
    package = _read_package_json(project_dir)
    if malformed and package is None:
        return None
    script = _npm_script(package)

    frameworks = (
        ("nextjs", NEXT_CONFIGS, 3000, ["next", "dev"]),
        ("vite", VITE_CONFIGS, 5173, ["vite"]),
        ("angular", ("angular.json",), 4200, ["ng", "serve"]),
    )
    for name, markers, port, npx_args in frameworks:
        if not _has_any(project_dir, markers):
            continue
        if script is not None:
            args, description = script
            return DevCommand(name, "npm", args, port, f"{name} via {description}")
        return DevCommand(name, "npx", npx_args, port, f"{name} via npx {' '.join(npx_args)}")

    if (project_dir / "manage.py").is_file():
        return DevCommand(
            "django", "python", ["manage.py", "runserver"], 8000, "django via manage.py runserver"
        )

    if script is not None:
        args, description = script
        return DevCommand("node", "npm", args, 3000, f"node via {description}")

    if package is None and (project_dir / "index.html").is_file():
        return DevCommand("static", "npx", ["serve", "."], 3000, "static site via npx serve")
    return None


def detect_project_kind(project_dir: Path) -> str:
    project_dir = Path(project_dir)
    if _has_any(project_dir, NEXT_CONFIGS):
        return "fullstack"
    if _has_any(project_dir, VITE_CONFIGS) or (project_dir / "angular.json").exists():
        return "frontend"

    package = _read_package_json(project_dir)
    if package is not None:
        dependencies = {
            **(package.get("dependencies") or {}),
            **(package.get("devDependencies") or {}),
        }
        if any(name in dependencies for name in API_DEPENDENCIES):
            return "api"
        if package.get("bin"):
            return "cli"
        return "library"

    if (project_dir / "manage.py").is_file():
        return "api"
    if (project_dir / "index.html").is_file():
        return "static"
    return "library"


def detect_project_type(project_dir: Path) -> ProjectTypeDetection:
    """Guess greenfield vs brownfield from existing project markers."""
    project_dir = Path(project_dir)
    signals = {key: (project_dir / name).exists() for key, name in BROWNFIELD_MARKERS.items()}
    count = sum(1 for present in signals.values() if present)
    if count >= 2:
        return ProjectTypeDetection("brownfield", "high", signals)
    return ProjectTypeDetection("greenfield", "medium" if count == 1 else "low", signals)
