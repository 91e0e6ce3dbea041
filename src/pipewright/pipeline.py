"""Pipeline state machine.

The functions in this module are pure transitions: each takes a
:class:`PipelineState`, works on a deep copy and returns the new value (or a
:class:`PipelineTransition` wrapping it).  Arguments are validated before the
copy is touched, so a rejected call never leaves a half-applied change.
Persistence is the caller's concern (see :mod:`pipewright.orchestrator`).
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pipewright.agents import (
    GATING_AGENTS,
    PHASE_MODES,
    PHASE_ORDER,
    Agent,
    AgentStatus,
    Phase,
    PipelineError,
    UnknownAgentError,
    agent_label,
    build_roster,
    coerce_agent,
    next_phase,
    phase_of,
)

logger = logging.getLogger(__name__)

PHASE_THRESHOLD = 95
ORCHESTRATOR = "orchestrator"

_DONE_STATUSES = {AgentStatus.COMPLETED, AgentStatus.SKIPPED}


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class InvalidPreviewDecisionError(PipelineError, ValueError):
    """Raised when a preview decision is not one of :class:`PreviewDecision`."""


class NextAction(str, Enum):
    CONTINUE = "continue"
    ADVANCE_PHASE = "advance_phase"
    WAIT = "wait"
    USER_PREVIEW = "user_preview"
    DEVIATION = "deviation"
    COMPLETE = "complete"


class PreviewDecision(str, Enum):
    APPROVE_KEEP = "approve_keep"
    APPROVE_KILL = "approve_kill"
    ADJUST = "adjust"
    RETHINK = "rethink"


@dataclass(slots=True)
class AgentRecord:
    status: AgentStatus = AgentStatus.PENDING
    score: float | None = None
    criteria_count: int | None = None
    started_at: str | None = None
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "score": self.score,
            "criteria_count": self.criteria_count,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> AgentRecord:
        return cls(
            status=AgentStatus(payload.get("status", AgentStatus.PENDING.value)),
            score=payload.get("score"),
            criteria_count=payload.get("criteria_count"),
            started_at=payload.get("started_at"),
            completed_at=payload.get("completed_at"),
        )


@dataclass(slots=True)
class PipelineState:
    phase: Phase
    is_greenfield: bool
    agents: dict[Agent, AgentRecord]
    started_at: str
    completed_agents: list[Agent] = field(default_factory=list)
    current_agent: Agent | None = None
    history: list[dict[str, Any]] = field(default_factory=list)
    mode_transitions: list[dict[str, Any]] = field(default_factory=list)
    completed_at: str | None = None
    pending_gate: dict[str, Any] | None = None

    @property
    def roster(self) -> list[Agent]:
        return list(self.agents)

    def copy(self) -> PipelineState:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "is_greenfield": self.is_greenfield,
            "agents": {agent.value: record.to_dict() for agent, record in self.agents.items()},
            "completed_agents": [agent.value for agent in self.completed_agents],
            "current_agent": self.current_agent.value if self.current_agent else None,
            "history": copy.deepcopy(self.history),
            "mode_transitions": copy.deepcopy(self.mode_transitions),
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "pending_gate": copy.deepcopy(self.pending_gate),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> PipelineState:
        agents = {
            coerce_agent(name): AgentRecord.from_dict(record)
            for name, record in payload.get("agents", {}).items()
        }
        current = payload.get("current_agent")
        return cls(
            phase=Phase(payload.get("phase", Phase.DISCOVER.value)),
            is_greenfield=bool(payload.get("is_greenfield", True)),
            agents=agents,
            started_at=str(payload.get("started_at") or _utcnow_iso()),
            completed_agents=[coerce_agent(name) for name in payload.get("completed_agents", [])],
            current_agent=coerce_agent(current) if current else None,
            history=list(payload.get("history", [])),
            mode_transitions=list(payload.get("mode_transitions", [])),
            completed_at=payload.get("completed_at"),
            pending_gate=payload.get("pending_gate"),
        )


@dataclass(slots=True)
class AgentResult:
    """What the caller reports about a finished agent.

    ``approved`` overrides the score check at a gate: ``True`` is an explicit
    human approval, ``False`` an explicit rejection (for example a gate
    verdict other than approved).  ``None`` leaves the decision to the score.
    """

    score: float | None = None
    criteria_count: int | None = None
    approved: bool | None = None


@dataclass(slots=True)
class PipelineTransition:
    state: PipelineState
    next_action: NextAction
    next_agent: Agent | None = None
    needs_mode_switch: bool = False
    preview_context: dict[str, Any] | None = None
    server_action: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "next_action": self.next_action.value,
            "next_agent": self.next_agent.value if self.next_agent else None,
            "needs_mode_switch": self.needs_mode_switch,
            "preview_context": self.preview_context,
            "server_action": self.server_action,
            "phase": self.state.phase.value,
        }


@dataclass(slots=True)
class PhaseTransitionCheck:
    can_advance: bool
    reason: str
    required_score: int | None = None
    current_score: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "can_advance": self.can_advance,
            "reason": self.reason,
            "required_score": self.required_score,
            "current_score": self.current_score,
        }


@dataclass(slots=True)
class PipelineProgress:
    progress: int
    completed_agents: list[Agent]
    next_agent: Agent | None
    phase: Phase
    current_agent: Agent | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "progress": self.progress,
            "completed_agents": [agent.value for agent in self.completed_agents],
            "next_agent": self.next_agent.value if self.next_agent else None,
            "phase": self.phase.value,
            "current_agent": self.current_agent.value if self.current_agent else None,
        }


def _history_entry(agent: str, action: str, **extra: Any) -> dict[str, Any]:
    entry: dict[str, Any] = {"agent": agent, "action": action}
    entry.update({key: value for key, value in extra.items() if value is not None})
    entry["timestamp"] = _utcnow_iso()
    return entry


def _require_agent(state: PipelineState, agent: Agent | str) -> Agent:
    resolved = coerce_agent(agent)
    if resolved not in state.agents:
        raise UnknownAgentError(
            f"Unknown agent: {resolved.value!r} is not part of this pipeline's roster"
        )
    return resolved


def _coerce_result(result: AgentResult | Mapping[str, Any] | float | None) -> AgentResult:
    if result is None:
        return AgentResult()
    if isinstance(result, AgentResult):
        return result
    if isinstance(result, Mapping):
        return AgentResult(
            score=result.get("score"),
            criteria_count=result.get("criteria_count"),
            approved=result.get("approved"),
        )
    return AgentResult(score=float(result))


def _phase_members(state: PipelineState, phase: Phase) -> list[Agent]:
    return [agent for agent in state.roster if phase_of(agent) is phase]


def _remaining_in_phase(state: PipelineState, phase: Phase) -> list[Agent]:
    return [
        agent
        for agent in _phase_members(state, phase)
        if state.agents[agent].status not in _DONE_STATUSES
    ]


def _gate_passed(outcome: AgentResult, threshold: int) -> bool:
    if outcome.approved is not None:
        return outcome.approved
    return outcome.score is not None and outcome.score >= threshold


def _advance_phase(state: PipelineState, from_phase: Phase, trigger: str) -> PipelineTransition:
    target = next_phase(from_phase)
    if target is None:
        raise PipelineError(f"Phase {from_phase.value!r} has no successor")
    if PHASE_ORDER.index(target) > PHASE_ORDER.index(state.phase):
        state.phase = target
    state.mode_transitions.append(
        {
            "from": from_phase.value,
            "to": target.value,
            "trigger": trigger,
            "timestamp": _utcnow_iso(),
        }
    )
    remaining = _remaining_in_phase(state, target)
    members = _phase_members(state, target)
    first_agent = remaining[0] if remaining else (members[0] if members else None)
    state.current_agent = first_agent
    needs_switch = PHASE_MODES[from_phase] is not PHASE_MODES[target]
    logger.info(
        "Phase %s -> %s (trigger=%s, next=%s)",
        from_phase.value,
        target.value,
        trigger,
        first_agent.value if first_agent else None,
    )
    return PipelineTransition(
        state=state,
        next_action=NextAction.ADVANCE_PHASE,
        next_agent=first_agent,
        needs_mode_switch=needs_switch,
    )


def init_pipeline(
    is_greenfield: bool = True,
    phase: Phase | str = Phase.DISCOVER,
) -> PipelineState:
    """Create a fresh session record with every roster agent pending."""
    return PipelineState(
        phase=Phase(phase),
        is_greenfield=is_greenfield,
        agents={agent: AgentRecord() for agent in build_roster(is_greenfield)},
        started_at=_utcnow_iso(),
    )


def is_pipeline_complete(state: PipelineState) -> bool:
    return state.completed_at is not None


def mark_agent_in_progress(state: PipelineState, agent: Agent | str) -> PipelineState:
    resolved = _require_agent(state, agent)
    new_state = state.copy()
    record = new_state.agents[resolved]
    record.status = AgentStatus.IN_PROGRESS
    record.score = None
    record.started_at = _utcnow_iso()
    new_state.current_agent = resolved
    new_state.history.append(_history_entry(resolved.value, "started"))
    return new_state


def hold_for_approval(
    state: PipelineState, agent: Agent | str, gate_payload: Mapping[str, Any]
) -> PipelineState:
    """Park a human-in-the-loop gate result until someone approves it."""
    resolved = _require_agent(state, agent)
    new_state = state.copy()
    new_state.pending_gate = {"agent": resolved.value, **dict(gate_payload)}
    new_state.current_agent = resolved
    new_state.history.append(
        _history_entry(resolved.value, "awaiting_approval", score=gate_payload.get("score"))
    )
    return new_state


def advance_pipeline(
    state: PipelineState,
    agent: Agent | str,
    result: AgentResult | Mapping[str, Any] | float | None = None,
    *,
    threshold: int = PHASE_THRESHOLD,
) -> PipelineTransition:
    """Record ``agent`` as completed and decide what happens next."""
    resolved = _require_agent(state, agent)
    outcome = _coerce_result(result)

    new_state = state.copy()
    now = _utcnow_iso()
    record = new_state.agents[resolved]
    record.status = AgentStatus.COMPLETED
    record.score = outcome.score
    record.criteria_count = outcome.criteria_count
    record.completed_at = now
    if resolved not in new_state.completed_agents:
        new_state.completed_agents.append(resolved)
    new_state.history.append(_history_entry(resolved.value, "completed", score=outcome.score))
    new_state.current_agent = None
    if new_state.pending_gate and new_state.pending_gate.get("agent") == resolved.value:
        new_state.pending_gate = None

    phase = phase_of(resolved)
    remaining = _remaining_in_phase(new_state, phase)
    if remaining:
        new_state.current_agent = remaining[0]
        return PipelineTransition(
            state=new_state,
            next_action=NextAction.CONTINUE,
            next_agent=remaining[0],
        )

    gating_agent = GATING_AGENTS.get(phase)
    if gating_agent is resolved:
        if not _gate_passed(outcome, threshold):
            logger.info(
                "%s did not pass (score=%s, threshold=%d); holding phase %s",
                agent_label(resolved),
                outcome.score,
                threshold,
                phase.value,
            )
            return PipelineTransition(state=new_state, next_action=NextAction.WAIT)
        if phase is Phase.BUILD:
            # Deployment always needs a human decision on the running preview.
            return PipelineTransition(
                state=new_state,
                next_action=NextAction.USER_PREVIEW,
                preview_context={"qa_score": outcome.score},
            )
        trigger = "human_approved" if outcome.approved else "autonomous"
        return _advance_phase(new_state, phase, trigger)

    gate_skipped = (
        gating_agent is not None
        and new_state.agents[gating_agent].status is AgentStatus.SKIPPED
    )
    if gating_agent is not None and not gate_skipped:
        return PipelineTransition(state=new_state, next_action=NextAction.WAIT)

    if next_phase(phase) is None:
        new_state.completed_at = now
        logger.info("Pipeline complete")
        return PipelineTransition(state=new_state, next_action=NextAction.COMPLETE)

    return _advance_phase(new_state, phase, "phase_complete")


def confirm_preview(state: PipelineState, decision: PreviewDecision | str) -> PipelineTransition:
    """Resolve the ``user_preview`` pause that follows a passing implementation gate."""
    try:
        choice = PreviewDecision(decision)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in PreviewDecision)
        raise InvalidPreviewDecisionError(
            f"Invalid preview decision: {decision!r}. Expected one of: {allowed}"
        ) from exc

    if state.phase is not Phase.BUILD:
        raise PipelineError(f"No preview is pending: pipeline is in phase {state.phase.value!r}")
    if state.agents[Agent.QA_IMPLEMENTATION].status is not AgentStatus.COMPLETED:
        raise PipelineError("No preview is pending: QA-Implementation has not passed")

    new_state = state.copy()
    new_state.history.append(_history_entry(ORCHESTRATOR, f"preview_{choice.value}"))

    if choice in (PreviewDecision.APPROVE_KEEP, PreviewDecision.APPROVE_KILL):
        transition = _advance_phase(new_state, Phase.BUILD, "user_preview_approved")
        transition.server_action = "keep" if choice is PreviewDecision.APPROVE_KEEP else "kill"
        return transition

    if choice is PreviewDecision.ADJUST:
        for agent in (Agent.DEV, Agent.QA_IMPLEMENTATION):
            record = new_state.agents[agent]
            record.status = AgentStatus.NEEDS_REVALIDATION
            record.score = None
            record.completed_at = None
        new_state.completed_agents = [
            agent
            for agent in new_state.completed_agents
            if agent not in (Agent.DEV, Agent.QA_IMPLEMENTATION)
        ]
        new_state.current_agent = Agent.DEV
        return PipelineTransition(
            state=new_state,
            next_action=NextAction.CONTINUE,
            next_agent=Agent.DEV,
        )

    new_state.current_agent = None
    return PipelineTransition(state=new_state, next_action=NextAction.DEVIATION)


def check_phase_transition(
    state: PipelineState, *, threshold: int = PHASE_THRESHOLD
) -> PhaseTransitionCheck:
    """Report whether the current phase could advance right now."""
    phase = state.phase
    if next_phase(phase) is None:
        if is_pipeline_complete(state):
            return PhaseTransitionCheck(False, "Pipeline complete; deploy is the final phase")
        return PhaseTransitionCheck(False, "Deploy is the final phase")

    gating_agent = GATING_AGENTS.get(phase)
    if gating_agent is None:
        remaining = _remaining_in_phase(state, phase)
        if remaining:
            return PhaseTransitionCheck(
                False, f"{agent_label(remaining[0])} not yet completed"
            )
        return PhaseTransitionCheck(True, f"All {phase.value} agents completed")

    if phase is Phase.BUILD and state.agents[Agent.DEV].status is not AgentStatus.COMPLETED:
        return PhaseTransitionCheck(False, "Dev agent not yet completed")

    label = agent_label(gating_agent)
    record = state.agents[gating_agent]
    if record.status is not AgentStatus.COMPLETED:
        return PhaseTransitionCheck(
            False, f"{label} not yet completed", required_score=threshold
        )
    if record.score is None or record.score < threshold:
        return PhaseTransitionCheck(
            False,
            f"{label} score {record.score} below threshold {threshold}",
            required_score=threshold,
            current_score=record.score,
        )
    return PhaseTransitionCheck(
        True, f"{label} approved with score {record.score}", current_score=record.score
    )


def reset_pipeline_to(state: PipelineState, agent: Agent | str) -> PipelineState:
    """Rewind the pipeline so that ``agent`` runs again."""
    resolved = _require_agent(state, agent)
    new_state = state.copy()
    roster = new_state.roster
    index = roster.index(resolved)

    for later in roster[index + 1 :]:
        new_state.agents[later] = AgentRecord()
    target = new_state.agents[resolved]
    target.status = AgentStatus.IN_PROGRESS
    target.score = None
    target.completed_at = None
    target.started_at = _utcnow_iso()

    if resolved in new_state.completed_agents:
        cut = new_state.completed_agents.index(resolved)
        new_state.completed_agents = new_state.completed_agents[:cut]
    else:
        new_state.completed_agents = [
            item for item in new_state.completed_agents if roster.index(item) < index
        ]

    new_state.current_agent = resolved
    new_state.phase = phase_of(resolved)
    new_state.completed_at = None
    new_state.pending_gate = None
    new_state.history.append(_history_entry(resolved.value, "reset_to"))
    logger.info("Pipeline reset to %s (phase %s)", resolved.value, new_state.phase.value)
    return new_state


def get_pipeline_progress(state: PipelineState) -> PipelineProgress:
    roster = state.roster
    completed = [agent for agent in state.completed_agents if agent in state.agents]
    percent = round(len(completed) / len(roster) * 100) if roster else 0
    next_agent = next((agent for agent in roster if agent not in completed), None)
    return PipelineProgress(
        progress=percent,
        completed_agents=list(completed),
        next_agent=next_agent,
        phase=state.phase,
        current_agent=state.current_agent,
    )
