import pytest

from pipewright.agents import Agent, AgentStatus, Phase, UnknownAgentError
from pipewright.pipeline import (
    AgentResult,
    InvalidPreviewDecisionError,
    NextAction,
    PipelineError,
    PipelineState,
    advance_pipeline,
    check_phase_transition,
    confirm_preview,
    get_pipeline_progress,
    hold_for_approval,
    init_pipeline,
    is_pipeline_complete,
    mark_agent_in_progress,
    reset_pipeline_to,
)

PLAN_WORKERS = [
    Agent.GREENFIELD_WU,
    Agent.BRIEF,
    Agent.DETAIL,
    Agent.ARCHITECT,
    Agent.UX,
    Agent.PHASES,
    Agent.TASKS,
]


def _complete(state: PipelineState, *agents: Agent) -> None:
    for agent in agents:
        state.agents[agent].status = AgentStatus.COMPLETED
        if agent not in state.completed_agents:
            state.completed_agents.append(agent)


def _plan_ready_for_gate() -> PipelineState:
    state = init_pipeline(is_greenfield=True)
    state.phase = Phase.PLAN
    _complete(state, *PLAN_WORKERS)
    state.current_agent = Agent.QA_PLANNING
    return state


def _build_ready_for_gate() -> PipelineState:
    state = init_pipeline(is_greenfield=True)
    state.phase = Phase.BUILD
    _complete(state, *PLAN_WORKERS, Agent.QA_PLANNING, Agent.DEV)
    state.agents[Agent.QA_IMPLEMENTATION].status = AgentStatus.IN_PROGRESS
    state.current_agent = Agent.QA_IMPLEMENTATION
    return state


def _awaiting_preview() -> PipelineState:
    state = init_pipeline(is_greenfield=True)
    state.phase = Phase.BUILD
    _complete(state, *PLAN_WORKERS, Agent.QA_PLANNING, Agent.DEV, Agent.QA_IMPLEMENTATION)
    state.agents[Agent.QA_IMPLEMENTATION].score = 96
    return state


def test_init_greenfield_roster() -> None:
    state = init_pipeline(is_greenfield=True)

    assert state.phase is Phase.DISCOVER
    assert state.roster[0] is Agent.GREENFIELD_WU
    assert Agent.BROWNFIELD_WU not in state.agents
    assert len(state.roster) == 11
    assert all(record.status is AgentStatus.PENDING for record in state.agents.values())
    assert state.completed_agents == []
    assert state.current_agent is None


def test_init_brownfield_roster() -> None:
    state = init_pipeline(is_greenfield=False)

    assert state.roster[0] is Agent.BROWNFIELD_WU
    assert Agent.GREENFIELD_WU not in state.agents
    assert state.is_greenfield is False


def test_advance_records_completion_and_history() -> None:
    state = init_pipeline(is_greenfield=True)

    transition = advance_pipeline(state, "greenfield-wu", {"score": 95})

    record = transition.state.agents[Agent.GREENFIELD_WU]
    assert record.status is AgentStatus.COMPLETED
    assert record.score == 95
    assert transition.state.completed_agents == [Agent.GREENFIELD_WU]
    last = transition.state.history[-1]
    assert last["agent"] == "greenfield-wu"
    assert last["action"] == "completed"
    assert last["score"] == 95
    assert transition.next_action is NextAction.CONTINUE
    assert transition.next_agent is Agent.BRIEF


def test_advance_does_not_mutate_input_state() -> None:
    state = init_pipeline(is_greenfield=True)

    advance_pipeline(state, Agent.GREENFIELD_WU)

    assert state.agents[Agent.GREENFIELD_WU].status is AgentStatus.PENDING
    assert state.completed_agents == []
    assert state.history == []


def test_advance_continues_within_phase() -> None:
    state = init_pipeline(is_greenfield=True)
    state.phase = Phase.PLAN
    _complete(state, Agent.GREENFIELD_WU, Agent.BRIEF)
    state.current_agent = Agent.DETAIL

    transition = advance_pipeline(state, Agent.DETAIL)

    assert transition.next_action is NextAction.CONTINUE
    assert transition.next_agent is Agent.ARCHITECT
    assert transition.needs_mode_switch is False


def test_discover_completion_advances_to_plan_without_mode_switch() -> None:
    state = init_pipeline(is_greenfield=True)
    _complete(state, Agent.GREENFIELD_WU)

    transition = advance_pipeline(state, Agent.BRIEF)

    assert transition.next_action is NextAction.ADVANCE_PHASE
    assert transition.state.phase is Phase.PLAN
    assert transition.next_agent is Agent.DETAIL
    assert transition.needs_mode_switch is False
    assert transition.state.mode_transitions[-1]["trigger"] == "phase_complete"


def test_completing_an_agent_twice_lists_it_once() -> None:
    state = init_pipeline(is_greenfield=True)

    first = advance_pipeline(state, Agent.GREENFIELD_WU)
    second = advance_pipeline(first.state, Agent.GREENFIELD_WU)

    assert second.state.completed_agents.count(Agent.GREENFIELD_WU) == 1


def test_passing_planning_gate_advances_to_build() -> None:
    transition = advance_pipeline(_plan_ready_for_gate(), Agent.QA_PLANNING, {"score": 95})

    assert transition.next_action is NextAction.ADVANCE_PHASE
    assert transition.state.phase is Phase.BUILD
    assert transition.next_agent is Agent.DEV
    assert transition.needs_mode_switch is True
    assert transition.state.current_agent is Agent.DEV


def test_phase_advance_records_mode_transition() -> None:
    transition = advance_pipeline(_plan_ready_for_gate(), Agent.QA_PLANNING, {"score": 98})

    record = transition.state.mode_transitions[0]
    assert record["from"] == "plan"
    assert record["to"] == "build"
    assert record["trigger"] == "autonomous"
    assert record["timestamp"]


def test_human_approval_is_recorded_as_trigger() -> None:
    outcome = AgentResult(score=80, approved=True)

    transition = advance_pipeline(_plan_ready_for_gate(), Agent.QA_PLANNING, outcome)

    assert transition.state.phase is Phase.BUILD
    assert transition.state.mode_transitions[-1]["trigger"] == "human_approved"


def test_failing_planning_gate_waits() -> None:
    transition = advance_pipeline(_plan_ready_for_gate(), Agent.QA_PLANNING, {"score": 85})

    assert transition.next_action is NextAction.WAIT
    assert transition.next_agent is None
    assert transition.state.phase is Phase.PLAN
    assert transition.state.mode_transitions == []


def test_explicit_rejection_waits_even_with_high_score() -> None:
    outcome = AgentResult(score=99, approved=False)

    transition = advance_pipeline(_plan_ready_for_gate(), Agent.QA_PLANNING, outcome)

    assert transition.next_action is NextAction.WAIT


def test_gate_threshold_is_configurable() -> None:
    transition = advance_pipeline(
        _plan_ready_for_gate(), Agent.QA_PLANNING, {"score": 85}, threshold=80
    )

    assert transition.next_action is NextAction.ADVANCE_PHASE


def test_workers_finishing_before_gate_wait_for_it() -> None:
    state = init_pipeline(is_greenfield=True)
    state.phase = Phase.PLAN
    _complete(state, *PLAN_WORKERS[:-1], Agent.QA_PLANNING)

    transition = advance_pipeline(state, Agent.TASKS)

    assert transition.next_action is NextAction.WAIT
    assert transition.state.phase is Phase.PLAN


def test_passing_implementation_gate_requests_preview() -> None:
    transition = advance_pipeline(
        _build_ready_for_gate(), Agent.QA_IMPLEMENTATION, {"score": 96}
    )

    assert transition.next_action is NextAction.USER_PREVIEW
    assert transition.state.phase is Phase.BUILD
    assert transition.next_agent is None
    assert transition.needs_mode_switch is False
    assert transition.preview_context == {"qa_score": 96}


def test_failing_implementation_gate_waits() -> None:
    transition = advance_pipeline(
        _build_ready_for_gate(), Agent.QA_IMPLEMENTATION, {"score": 80}
    )

    assert transition.next_action is NextAction.WAIT
    assert transition.state.phase is Phase.BUILD


def test_devops_completion_finishes_pipeline() -> None:
    state = init_pipeline(is_greenfield=True)
    state.phase = Phase.DEPLOY
    state.current_agent = Agent.DEVOPS

    transition = advance_pipeline(state, Agent.DEVOPS)

    assert transition.next_action is NextAction.COMPLETE
    assert transition.next_agent is None
    assert transition.state.completed_at
    assert is_pipeline_complete(transition.state)
    assert not is_pipeline_complete(state)


def test_advance_rejects_agent_outside_roster() -> None:
    state = init_pipeline(is_greenfield=True)

    with pytest.raises(UnknownAgentError, match="brownfield-wu"):
        advance_pipeline(state, Agent.BROWNFIELD_WU)
    with pytest.raises(UnknownAgentError, match="Unknown agent"):
        advance_pipeline(state, "nope")


def test_mark_agent_in_progress() -> None:
    state = init_pipeline(is_greenfield=True)

    new_state = mark_agent_in_progress(state, "brief")

    assert new_state.agents[Agent.BRIEF].status is AgentStatus.IN_PROGRESS
    assert new_state.agents[Agent.BRIEF].started_at
    assert new_state.current_agent is Agent.BRIEF
    assert new_state.history[-1]["action"] == "started"
    assert state.current_agent is None


def test_hold_for_approval_then_completion_clears_pending_gate() -> None:
    state = _plan_ready_for_gate()

    held = hold_for_approval(state, Agent.QA_PLANNING, {"score": 91, "recommendation": "review"})

    assert held.pending_gate == {"agent": "qa-planning", "score": 91, "recommendation": "review"}
    assert held.history[-1]["action"] == "awaiting_approval"

    transition = advance_pipeline(held, Agent.QA_PLANNING, AgentResult(score=91, approved=True))
    assert transition.state.pending_gate is None
    assert transition.state.phase is Phase.BUILD


@pytest.mark.parametrize(
    ("decision", "server_action"),
    [("approve_keep", "keep"), ("approve_kill", "kill")],
)
def test_preview_approval_advances_to_deploy(decision: str, server_action: str) -> None:
    transition = confirm_preview(_awaiting_preview(), decision)

    assert transition.next_action is NextAction.ADVANCE_PHASE
    assert transition.state.phase is Phase.DEPLOY
    assert transition.next_agent is Agent.DEVOPS
    assert transition.needs_mode_switch is True
    assert transition.server_action == server_action
    last = transition.state.mode_transitions[-1]
    assert (last["from"], last["to"], last["trigger"]) == (
        "build",
        "deploy",
        "user_preview_approved",
    )


def test_preview_adjust_routes_back_to_dev() -> None:
    transition = confirm_preview(_awaiting_preview(), "adjust")

    assert transition.next_action is NextAction.CONTINUE
    assert transition.next_agent is Agent.DEV
    assert transition.state.phase is Phase.BUILD
    assert transition.needs_mode_switch is False
    for agent in (Agent.DEV, Agent.QA_IMPLEMENTATION):
        assert transition.state.agents[agent].status is AgentStatus.NEEDS_REVALIDATION
        assert transition.state.agents[agent].score is None
        assert agent not in transition.state.completed_agents


def test_preview_rethink_is_a_deviation() -> None:
    transition = confirm_preview(_awaiting_preview(), "rethink")

    assert transition.next_action is NextAction.DEVIATION
    assert transition.next_agent is None
    assert transition.state.phase is Phase.BUILD
    assert transition.needs_mode_switch is False


def test_every_preview_decision_is_logged_by_orchestrator() -> None:
    for decision in ("approve_keep", "approve_kill", "adjust", "rethink"):
        transition = confirm_preview(_awaiting_preview(), decision)
        last = transition.state.history[-1]
        assert last["agent"] == "orchestrator"
        assert last["action"] == f"preview_{decision}"


def test_invalid_preview_decision_is_rejected() -> None:
    with pytest.raises(InvalidPreviewDecisionError, match="Invalid preview decision"):
        confirm_preview(_awaiting_preview(), "invalid")


def test_preview_requires_passed_implementation_gate() -> None:
    state = _build_ready_for_gate()

    with pytest.raises(PipelineError, match="QA-Implementation"):
        confirm_preview(state, "approve_keep")

    with pytest.raises(PipelineError, match="phase 'discover'"):
        confirm_preview(init_pipeline(), "approve_keep")


def test_preview_after_adjust_cycle_reaches_deploy() -> None:
    adjusted = confirm_preview(_awaiting_preview(), "adjust").state

    after_dev = advance_pipeline(adjusted, Agent.DEV)
    assert after_dev.next_action is NextAction.CONTINUE
    assert after_dev.next_agent is Agent.QA_IMPLEMENTATION

    after_qa = advance_pipeline(after_dev.state, Agent.QA_IMPLEMENTATION, {"score": 97})
    assert after_qa.next_action is NextAction.USER_PREVIEW

    approved = confirm_preview(after_qa.state, "approve_kill")
    assert approved.state.phase is Phase.DEPLOY


def test_check_transition_blocks_until_gate_completes() -> None:
    state = init_pipeline(is_greenfield=True)
    state.phase = Phase.PLAN

    check = check_phase_transition(state)

    assert check.can_advance is False
    assert "not yet completed" in check.reason


def test_check_transition_blocks_below_threshold() -> None:
    state = init_pipeline(is_greenfield=True)
    state.phase = Phase.PLAN
    state.agents[Agent.QA_PLANNING].status = AgentStatus.COMPLETED
    state.agents[Agent.QA_PLANNING].score = 90

    check = check_phase_transition(state)

    assert check.can_advance is False
    assert "below threshold" in check.reason
    assert check.required_score == 95
    assert check.current_score == 90


def test_check_transition_allows_passing_gate() -> None:
    state = init_pipeline(is_greenfield=True)
    state.phase = Phase.PLAN
    state.agents[Agent.QA_PLANNING].status = AgentStatus.COMPLETED
    state.agents[Agent.QA_PLANNING].score = 96

    check = check_phase_transition(state)

    assert check.can_advance is True
    assert "approved" in check.reason


def test_check_transition_build_phase() -> None:
    state = init_pipeline(is_greenfield=True)
    state.phase = Phase.BUILD

    blocked = check_phase_transition(state)
    assert blocked.can_advance is False
    assert "Dev agent not yet completed" in blocked.reason

    state.agents[Agent.DEV].status = AgentStatus.COMPLETED
    state.agents[Agent.QA_IMPLEMENTATION].status = AgentStatus.COMPLETED
    state.agents[Agent.QA_IMPLEMENTATION].score = 96
    assert check_phase_transition(state).can_advance is True


def test_check_transition_discover_and_deploy() -> None:
    state = init_pipeline(is_greenfield=True)
    assert check_phase_transition(state).can_advance is False

    _complete(state, Agent.GREENFIELD_WU, Agent.BRIEF)
    assert check_phase_transition(state).can_advance is True

    state.phase = Phase.DEPLOY
    final = check_phase_transition(state)
    assert final.can_advance is False
    assert "final phase" in final.reason


def test_progress_counts_completed_agents() -> None:
    state = init_pipeline(is_greenfield=True)
    assert get_pipeline_progress(state).progress == 0

    _complete(state, Agent.GREENFIELD_WU, Agent.BRIEF)
    progress = get_pipeline_progress(state)

    assert 0 < progress.progress < 100
    assert progress.completed_agents == [Agent.GREENFIELD_WU, Agent.BRIEF]
    assert progress.next_agent is Agent.DETAIL
    assert progress.to_dict()["next_agent"] == "detail"


def test_reset_rewinds_later_agents() -> None:
    state = init_pipeline(is_greenfield=True)
    _complete(state, Agent.GREENFIELD_WU, Agent.BRIEF, Agent.DETAIL)
    state.agents[Agent.DETAIL].score = 90

    new_state = reset_pipeline_to(state, "brief")

    assert new_state.current_agent is Agent.BRIEF
    assert new_state.agents[Agent.BRIEF].status is AgentStatus.IN_PROGRESS
    assert new_state.agents[Agent.DETAIL].status is AgentStatus.PENDING
    assert new_state.agents[Agent.DETAIL].score is None
    assert new_state.completed_agents == [Agent.GREENFIELD_WU]
    assert new_state.history[-1]["action"] == "reset_to"
    assert new_state.history[-1]["agent"] == "brief"


def test_reset_moves_phase_back() -> None:
    state = _awaiting_preview()

    new_state = reset_pipeline_to(state, Agent.ARCHITECT)

    assert new_state.phase is Phase.PLAN
    assert Agent.QA_PLANNING not in new_state.completed_agents
    assert new_state.agents[Agent.DEV].status is AgentStatus.PENDING


def test_reset_rejects_unknown_agent() -> None:
    with pytest.raises(UnknownAgentError):
        reset_pipeline_to(init_pipeline(), "unknown-agent")


def test_state_dict_roundtrip_preserves_enums() -> None:
    state = advance_pipeline(_plan_ready_for_gate(), Agent.QA_PLANNING, {"score": 97}).state

    restored = PipelineState.from_dict(state.to_dict())

    assert restored.phase is Phase.BUILD
    assert restored.current_agent is Agent.DEV
    assert restored.completed_agents == state.completed_agents
    assert restored.agents[Agent.QA_PLANNING].score == 97
    assert restored.mode_transitions == state.mode_transitions
