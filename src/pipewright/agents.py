"""Agent roster, phases and write scopes.

Every identifier that flows through the pipeline is one of these closed
enumerations.  ``coerce_agent`` is the single entry point that turns user
input into an :class:`Agent` and rejects anything it does not know.
"""

from __future__ import annotations

from enum import Enum


class PipelineError(RuntimeError):
    """Raised when a pipeline transition is not legal in the current state."""


class UnknownAgentError(PipelineError, ValueError):
    """Raised when an agent identifier is not part of the roster."""


class Phase(str, Enum):
    DISCOVER = "discover"
    PLAN = "plan"
    BUILD = "build"
    DEPLOY = "deploy"


class Mode(str, Enum):
    PLANNING = "planning"
    BUILD = "build"
    DEPLOY = "deploy"


class AgentStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    NEEDS_REVALIDATION = "needs_revalidation"


class Agent(str, Enum):
    GREENFIELD_WU = "greenfield-wu"
    BROWNFIELD_WU = "brownfield-wu"
    BRIEF = "brief"
    DETAIL = "detail"
    ARCHITECT = "architect"
    UX = "ux"
    PHASES = "phases"
    TASKS = "tasks"
    QA_PLANNING = "qa-planning"
    DEV = "dev"
    QA_IMPLEMENTATION = "qa-implementation"
    DEVOPS = "devops"


PHASE_ORDER: list[Phase] = [Phase.DISCOVER, Phase.PLAN, Phase.BUILD, Phase.DEPLOY]

PHASE_MODES: dict[Phase, Mode] = {
    Phase.DISCOVER: Mode.PLANNING,
    Phase.PLAN: Mode.PLANNING,
    Phase.BUILD: Mode.BUILD,
    Phase.DEPLOY: Mode.DEPLOY,
}

# Both work-unit agents are listed; the roster keeps exactly one of them.
PHASE_AGENTS: dict[Phase, list[Agent]] = {
    Phase.DISCOVER: [Agent.GREENFIELD_WU, Agent.BROWNFIELD_WU, Agent.BRIEF],
    Phase.PLAN: [
        Agent.DETAIL,
        Agent.ARCHITECT,
        Agent.UX,
        Agent.PHASES,
        Agent.TASKS,
        Agent.QA_PLANNING,
    ],
    Phase.BUILD: [Agent.DEV, Agent.QA_IMPLEMENTATION],
    Phase.DEPLOY: [Agent.DEVOPS],
}

GATING_AGENTS: dict[Phase, Agent] = {
    Phase.PLAN: Agent.QA_PLANNING,
    Phase.BUILD: Agent.QA_IMPLEMENTATION,
}

AGENT_LABELS: dict[Agent, str] = {
    Agent.QA_PLANNING: "QA-Planning",
    Agent.QA_IMPLEMENTATION: "QA-Implementation",
    Agent.DEV: "Dev agent",
    Agent.DEVOPS: "DevOps",
}

ARTIFACTS_ROOT = ".pipewright/artifacts"

# Resource regions each agent may modify.  A trailing slash marks a directory.
WRITE_SCOPES: dict[Agent, list[str]] = {
    Agent.GREENFIELD_WU: [f"{ARTIFACTS_ROOT}/0-wu/"],
    Agent.BROWNFIELD_WU: [f"{ARTIFACTS_ROOT}/0-wu/"],
    Agent.BRIEF: [f"{ARTIFACTS_ROOT}/1-brief/"],
    Agent.DETAIL: [f"{ARTIFACTS_ROOT}/2-prd/"],
    Agent.ARCHITECT: [f"{ARTIFACTS_ROOT}/3-architecture/"],
    Agent.UX: [f"{ARTIFACTS_ROOT}/4-ux/"],
    Agent.PHASES: [f"{ARTIFACTS_ROOT}/5-phases/"],
    Agent.TASKS: [f"{ARTIFACTS_ROOT}/6-tasks/"],
    Agent.QA_PLANNING: [f"{ARTIFACTS_ROOT}/7-qa-planning/"],
    Agent.DEV: ["src/", "tests/", f"{ARTIFACTS_ROOT}/8-dev/"],
    Agent.QA_IMPLEMENTATION: ["tests/", f"{ARTIFACTS_ROOT}/9-qa-implementation/"],
    Agent.DEVOPS: [".github/", "deploy/", f"{ARTIFACTS_ROOT}/10-deploy/"],
}


def coerce_agent(value: Agent | str) -> Agent:
    if isinstance(value, Agent):
        return value
    try:
        return Agent(str(value).strip())
    except ValueError as exc:
        raise UnknownAgentError(f"Unknown agent: {value!r}") from exc


def agent_label(agent: Agent) -> str:
    return AGENT_LABELS.get(agent, agent.value)


def build_roster(is_greenfield: bool) -> list[Agent]:
    """Return the ordered agent roster for a project kind."""
    excluded = Agent.BROWNFIELD_WU if is_greenfield else Agent.GREENFIELD_WU
    roster: list[Agent] = []
    for phase in PHASE_ORDER:
        roster.extend(agent for agent in PHASE_AGENTS[phase] if agent is not excluded)
    return roster


def phase_of(agent: Agent) -> Phase:
    for phase, members in PHASE_AGENTS.items():
        if agent in members:
            return phase
    raise UnknownAgentError(f"Agent {agent.value!r} is not assigned to a phase")


def next_phase(phase: Phase) -> Phase | None:
    index = PHASE_ORDER.index(phase)
    if index + 1 >= len(PHASE_ORDER):
        return None
    return PHASE_ORDER[index + 1]


def write_scope_for(agent: Agent | str) -> list[str]:
    return list(WRITE_SCOPES[coerce_agent(agent)])
