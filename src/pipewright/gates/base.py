from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from pipewright.agents import Agent

logger = logging.getLogger(__name__)

REVISION_MARGIN = 5
QA_GATE_THRESHOLD = 95
DEFAULT_GATE_THRESHOLD = 90


class GateVerdict(str, Enum):
    APPROVED = "approved"
    NEEDS_REVISION = "needs_revision"
    BLOCKED = "blocked"


class GateMode(str, Enum):
    AUTONOMOUS = "autonomous"
    HUMAN_IN_THE_LOOP = "human-in-the-loop"


_RECOMMENDATIONS = {
    GateVerdict.APPROVED: "advance",
    GateVerdict.NEEDS_REVISION: "revise",
    GateVerdict.BLOCKED: "escalate",
}


def determine_verdict(
    score: float,
    threshold: float,
    has_critical_blocker: bool = False,
    *,
    margin: float = REVISION_MARGIN,
) -> GateVerdict:
    if has_critical_blocker:
        return GateVerdict.BLOCKED
    if score >= threshold:
        return GateVerdict.APPROVED
    if score >= threshold - margin:
        return GateVerdict.NEEDS_REVISION
    return GateVerdict.BLOCKED


def gate_threshold(
    agent: Agent | str,
    overrides: dict[str, int] | None = None,
    *,
    default: int = DEFAULT_GATE_THRESHOLD,
) -> int:
    key = agent.value if isinstance(agent, Agent) else str(agent)
    if overrides and key in overrides:
        return int(overrides[key])
    if key in (Agent.QA_PLANNING.value, Agent.QA_IMPLEMENTATION.value):
        return QA_GATE_THRESHOLD
    return int(default)


def is_critical_warning(warning: str) -> bool:
    return "critical" in warning.lower()


@dataclass(slots=True)
class GateValidation:
    score: float
    criteria_results: dict[str, bool] = field(default_factory=dict)
    all_criteria: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class GateResult:
    gate_id: str
    agent: str
    verdict: GateVerdict | None
    score: float
    evidence: dict[str, Any]
    warnings: list[str]
    recommendation: str
    can_proceed: bool
    criteria_results: dict[str, bool]
    all_criteria: list[str]
    threshold: float
    mode: GateMode

    def to_dict(self) -> dict[str, Any]:
        return {
            "gate_id": self.gate_id,
            "agent": self.agent,
            "verdict": self.verdict.value if self.verdict else None,
            "score": self.score,
            "evidence": self.evidence,
            "warnings": list(self.warnings),
            "recommendation": self.recommendation,
            "can_proceed": self.can_proceed,
            "criteria_results": dict(self.criteria_results),
            "all_criteria": list(self.all_criteria),
            "threshold": self.threshold,
            "mode": self.mode.value,
        }


class QualityGate(ABC):
    """Scores an agent's output and turns the score into a verdict.

    Subclasses gather evidence and score it; :meth:`evaluate` is the fixed
    algorithm on top.  Gates never write anything.
    """

    id: str = "gate"
    name: str = "Quality gate"
    agent: Agent = Agent.QA_PLANNING

    def __init__(
        self,
        threshold: float | None = None,
        *,
        margin: float = REVISION_MARGIN,
        default_threshold: int = DEFAULT_GATE_THRESHOLD,
    ) -> None:
        if threshold is None:
            threshold = gate_threshold(self.agent, default=default_threshold)
        self.threshold = threshold
        self.margin = margin

    @abstractmethod
    def collect_evidence(self, project_dir: Path) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def validate_evidence(self, evidence: dict[str, Any]) -> GateValidation:
        raise NotImplementedError

    def evaluate(
        self, project_dir: Path, mode: GateMode | str = GateMode.AUTONOMOUS
    ) -> GateResult:
        gate_mode = GateMode(mode)
        evidence = self.collect_evidence(Path(project_dir))
        validation = self.validate_evidence(evidence)
        score = max(0.0, min(100.0, float(validation.score)))
        has_critical = any(is_critical_warning(item) for item in validation.warnings)

        if gate_mode is GateMode.AUTONOMOUS:
            verdict: GateVerdict | None = determine_verdict(
                score, self.threshold, has_critical, margin=self.margin
            )
            recommendation = _RECOMMENDATIONS[verdict]
            can_proceed = verdict is GateVerdict.APPROVED
        else:
            verdict = None
            can_proceed = False
            if score >= self.threshold and not has_critical:
                recommendation = "Recommend approval: all criteria met."
            else:
                recommendation = (
                    f"Recommend review: score {score:g} below threshold {self.threshold:g}."
                    if score < self.threshold
                    else "Recommend review: critical warnings reported."
                )

        logger.info(
            "Gate %s scored %.1f (threshold %s, verdict %s)",
            self.id,
            score,
            self.threshold,
            verdict.value if verdict else "pending-human",
        )
        return GateResult(
            gate_id=self.id,
            agent=self.agent.value,
            verdict=verdict,
            score=score,
            evidence=evidence,
            warnings=list(validation.warnings),
            recommendation=recommendation,
            can_proceed=can_proceed,
            criteria_results=dict(validation.criteria_results),
            all_criteria=list(validation.all_criteria),
            threshold=self.threshold,
            mode=gate_mode,
        )
