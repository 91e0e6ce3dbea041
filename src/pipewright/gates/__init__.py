from pipewright.gates.base import (
    GateMode,
    GateResult,
    GateValidation,
    GateVerdict,
    QualityGate,
    determine_verdict,
    gate_threshold,
)
from pipewright.gates.builtin import ImplementationGate, PlanningGate, create_default_gates

__all__ = [
    "GateMode",
    "GateResult",
    "GateValidation",
    "GateVerdict",
    "ImplementationGate",
    "PlanningGate",
    "QualityGate",
    "create_default_gates",
    "determine_verdict",
    "gate_threshold",
]
