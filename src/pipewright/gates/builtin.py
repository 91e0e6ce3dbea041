from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from pipewright.agents import ARTIFACTS_ROOT, Agent
from pipewright.config import PipewrightConfig
from pipewright.gates.base import GateValidation, QualityGate

SEVERITY_PATTERN = re.compile(r"\b(BLOCKER|MAJOR|MINOR|SUGGESTION)\b", re.IGNORECASE)
COVERAGE_PATTERN = re.compile(r"\b(\d{1,3})%")
SCORE_PATTERN = re.compile(
    r"^\s*(?:qa[\s_-]*)?score\s*[:=]\s*(\d{1,3}(?:\.\d+)?)", re.IGNORECASE | re.MULTILINE
)
STEP_PATTERN = re.compile(r"^(?:[-*]|\d+[.)])\s+(.+)$")

PLANNING_ARTIFACTS = {
    "brief": "1-brief",
    "prd": "2-prd",
    "architecture": "3-architecture",
    "ux": "4-ux",
    "phases": "5-phases",
    "tasks": "6-tasks",
}
REPORT_SUFFIXES = {".md", ".txt", ".json", ".log"}


def extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    for raw_line in raw_text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


def parse_review_findings(content: str) -> dict[str, int]:
    """Count findings by severity, preferring structured JSON lines."""
    findings = {"BLOCKER": 0, "MAJOR": 0, "MINOR": 0, "SUGGESTION": 0}
    parsed_structured = False

    def _count(severity: Any) -> None:
        nonlocal parsed_structured
        if isinstance(severity, str) and severity.upper() in findings:
            findings[severity.upper()] += 1
            parsed_structured = True

    for payload in extract_json_objects(content):
        counts = payload.get("counts")
        if isinstance(counts, dict):
            for key, value in counts.items():
                normalized = str(key).upper()
                if normalized not in findings:
                    continue
                try:
                    findings[normalized] += int(value)
                    parsed_structured = True
                except (TypeError, ValueError):
                    continue
        _count(payload.get("severity"))
        items = payload.get("findings")
        if isinstance(items, list):
            for item in items:
                if isinstance(item, dict):
                    _count(item.get("severity"))

    if parsed_structured:
        return findings

    for match in SEVERITY_PATTERN.finditer(content):
        findings[match.group(1).upper()] += 1
    return findings


def _clamp_percent(value: Any) -> int | None:
    try:
        return min(100, max(0, int(float(value))))
    except (TypeError, ValueError):
        return None


def _coverage_from_payload(payload: dict[str, Any]) -> int | None:
    if "coverage_percent" in payload:
        return _clamp_percent(payload["coverage_percent"])
    coverage = payload.get("coverage")
    if isinstance(coverage, (int, float)):
        return _clamp_percent(coverage)
    if isinstance(coverage, dict) and isinstance(coverage.get("percent"), (int, float)):
        return _clamp_percent(coverage["percent"])
    return None


def extract_coverage_percent(text: str) -> int | None:
    for payload in extract_json_objects(text):
        percent = _coverage_from_payload(payload)
        if percent is not None:
            return percent
    coverage_lines = [line for line in text.splitlines() if "coverage" in line.lower()]
    matches = COVERAGE_PATTERN.findall("\n".join(coverage_lines))
    if not matches:
        return None
    return min(100, max(int(item) for item in matches))


def extract_reported_score(text: str) -> float | None:
    for payload in extract_json_objects(text):
        value = payload.get("score")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return max(0.0, min(100.0, float(value)))
    match = SCORE_PATTERN.search(text)
    if match is None:
        return None
    return max(0.0, min(100.0, float(match.group(1))))


def plan_quality_signals(content: str) -> dict[str, Any]:
    lower = content.lower()
    steps = [
        match.group(1)
        for match in (STEP_PATTERN.match(line.strip()) for line in content.splitlines())
        if match
    ]
    return {
        "steps": len(steps),
        "has_interface": any(token in lower for token in ("interface", "boundary", "api")),
        "has_risks": any(token in lower for token in ("risk", "mitigation", "tradeoff")),
        "has_milestones": any(token in lower for token in ("milestone", "phase", "step")),
    }


def _list_files(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(
        path
        for path in directory.rglob("*")
        if path.is_file() and not path.name.startswith(".")
    )


def _read_all(paths: list[Path]) -> str:
    return "\n".join(path.read_text(encoding="utf-8", errors="replace") for path in paths)


class PlanningGate(QualityGate):
    id = "qa-planning"
    name = "Planning quality gate"
    agent = Agent.QA_PLANNING

    def collect_evidence(self, project_dir: Path) -> dict[str, Any]:
        root = project_dir / ARTIFACTS_ROOT
        artifacts = {
            key: [str(path.relative_to(project_dir)) for path in _list_files(root / dirname)]
            for key, dirname in PLANNING_ARTIFACTS.items()
        }
        design_docs = _list_files(root / PLANNING_ARTIFACTS["architecture"]) + _list_files(
            root / PLANNING_ARTIFACTS["phases"]
        )
        return {
            "artifacts": artifacts,
            "quality": plan_quality_signals(_read_all(design_docs)),
        }

    def validate_evidence(self, evidence: dict[str, Any]) -> GateValidation:
        artifacts: dict[str, list[str]] = evidence.get("artifacts", {})
        quality: dict[str, Any] = evidence.get("quality", {})

        results = {
            f"{key} artifacts present": bool(artifacts.get(key)) for key in PLANNING_ARTIFACTS
        }
        results["interfaces defined"] = bool(quality.get("has_interface"))
        results["risks identified"] = bool(quality.get("has_risks"))
        results["milestones planned"] = bool(quality.get("has_milestones"))
        results["actionable steps listed"] = int(quality.get("steps", 0)) >= 2

        warnings: list[str] = []
        if not artifacts.get("architecture"):
            warnings.append("Critical: architecture document is missing")
        if not artifacts.get("tasks"):
            warnings.append("Task breakdown is missing")

        passed = sum(1 for value in results.values() if value)
        return GateValidation(
            score=round(passed / len(results) * 100),
            criteria_results=results,
            all_criteria=list(results),
            warnings=warnings,
        )


class ImplementationGate(QualityGate):
    id = "qa-implementation"
    name = "Implementation quality gate"
    agent = Agent.QA_IMPLEMENTATION

    def __init__(
        self,
        threshold: float | None = None,
        *,
        margin: float = 5,
        max_major_findings: int = 3,
        coverage_threshold: int = 0,
    ) -> None:
        super().__init__(threshold, margin=margin)
        self.max_major_findings = max_major_findings
        self.coverage_threshold = coverage_threshold

    def collect_evidence(self, project_dir: Path) -> dict[str, Any]:
        report_dir = project_dir / ARTIFACTS_ROOT / "9-qa-implementation"
        reports = [path for path in _list_files(report_dir) if path.suffix in REPORT_SUFFIXES]
        text = _read_all(reports)
        return {
            "reports": [str(path.relative_to(project_dir)) for path in reports],
            "findings": parse_review_findings(text),
            "coverage_percent": extract_coverage_percent(text),
            "reported_score": extract_reported_score(text),
        }

    def validate_evidence(self, evidence: dict[str, Any]) -> GateValidation:
        if not evidence.get("reports"):
            return GateValidation(
                score=0,
                criteria_results={"QA report present": False},
                all_criteria=["QA report present"],
                warnings=["Critical: no QA report found"],
            )

        findings: dict[str, int] = evidence.get("findings", {})
        blockers = int(findings.get("BLOCKER", 0))
        majors = int(findings.get("MAJOR", 0))
        results = {
            "QA report present": True,
            "no blocker findings": blockers == 0,
            "major findings within limit": self.max_major_findings < 0
            or majors <= self.max_major_findings,
        }
        if self.coverage_threshold > 0:
            coverage = evidence.get("coverage_percent")
            results["coverage meets threshold"] = (
                coverage is not None and coverage >= self.coverage_threshold
            )

        warnings: list[str] = []
        if blockers:
            warnings.append(f"Critical: {blockers} blocker finding(s) reported")
        if not results["major findings within limit"]:
            warnings.append(f"{majors} major findings (max {self.max_major_findings})")

        criteria_score = sum(1 for value in results.values() if value) / len(results) * 100
        reported = evidence.get("reported_score")
        score = criteria_score if reported is None else min(float(reported), criteria_score)
        return GateValidation(
            score=round(score, 1),
            criteria_results=results,
            all_criteria=list(results),
            warnings=warnings,
        )


def create_default_gates(config: PipewrightConfig | None = None) -> dict[Agent, QualityGate]:
    config = config or PipewrightConfig.default()
    gates = config.gates
    return {
        Agent.QA_PLANNING: PlanningGate(gates.phase_threshold, margin=gates.revision_margin),
        Agent.QA_IMPLEMENTATION: ImplementationGate(
            gates.phase_threshold,
            margin=gates.revision_margin,
            max_major_findings=gates.max_major_findings,
            coverage_threshold=gates.coverage_threshold,
        ),
    }
