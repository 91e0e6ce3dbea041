from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from pipewright.agents import GATING_AGENTS, Agent, AgentStatus, Phase, coerce_agent
from pipewright.autonomy.build_loop import (
    BuildLoopResult,
    Executor,
    ProgressCallback,
    get_build_status,
    make_spawn_executor,
    run_build_loop,
)
from pipewright.autonomy.build_state import (
    TERMINAL_BUILD_STATUSES,
    BuildStatus,
    load_build_state,
)
from pipewright.config import PipewrightConfig
from pipewright.gates.base import GateMode, GateResult, GateVerdict, QualityGate
from pipewright.gates.builtin import create_default_gates
from pipewright.pipeline import (
    AgentResult,
    NextAction,
    PhaseTransitionCheck,
    PipelineError,
    PipelineState,
    PipelineTransition,
    PreviewDecision,
    advance_pipeline,
    check_phase_transition,
    confirm_preview,
    get_pipeline_progress,
    hold_for_approval,
    init_pipeline,
    mark_agent_in_progress,
    reset_pipeline_to,
)
from pipewright.providers.registry import resolve_provider_for_agent
from pipewright.state.store import JsonStateStore
from pipewright.terminal.spawner import (
    KillResult,
    SpawnConfig,
    TerminalHandle,
    kill_terminal,
    spawn_parallel_group,
)

logger = logging.getLogger(__name__)

SESSION_NAMESPACE = "session"


class PipelineSession:
    """Persistent driver around the pure pipeline transitions.

    Every mutation reads the session record together with its revision,
    applies one transition and writes back with that revision as the
    expected one, so a concurrent writer makes the save fail instead of
    silently overwriting.
    """

    def __init__(
        self,
        project_dir: Path,
        *,
        config: PipewrightConfig | None = None,
        store: JsonStateStore | None = None,
        gates: Mapping[Agent, QualityGate] | None = None,
    ) -> None:
        self.project_dir = Path(project_dir).resolve()
        self.config = config or PipewrightConfig.default()
        self.store = store or JsonStateStore(
            self.project_dir, state_dir=self.config.state.directory
        )
        self.gates: dict[Agent, QualityGate] = (
            dict(gates) if gates is not None else create_default_gates(self.config)
        )

    @property
    def threshold(self) -> int:
        return int(self.config.gates.phase_threshold)

    @property
    def gate_mode(self) -> GateMode:
        return GateMode(self.config.gates.mode)

    def is_initialized(self) -> bool:
        return self.store.load(SESSION_NAMESPACE) is not None

    def _read(self) -> tuple[PipelineState, int]:
        revision = self.store.revision(SESSION_NAMESPACE)
        payload = self.store.load(SESSION_NAMESPACE)
        if not isinstance(payload, dict):
            raise PipelineError("No pipeline session found; run `pipewright init` first")
        return PipelineState.from_dict(payload), revision

    def _commit(self, state: PipelineState, revision: int) -> PipelineState:
        self.store.save(SESSION_NAMESPACE, state.to_dict(), expected_revision=revision)
        return state

    def load(self) -> PipelineState:
        return self._read()[0]

    def initialize(
        self, is_greenfield: bool | None = None, *, force: bool = False
    ) -> PipelineState:
        revision = self.store.revision(SESSION_NAMESPACE)
        if revision and not force:
            raise PipelineError("Pipeline already initialized; pass force to start over")
        greenfield = self.config.project.greenfield if is_greenfield is None else is_greenfield
        state = init_pipeline(greenfield)
        logger.info("Initialized %s pipeline", "greenfield" if greenfield else "brownfield")
        return self._commit(state, revision)

    def start_agent(self, agent: Agent | str) -> PipelineState:
        state, revision = self._read()
        return self._commit(mark_agent_in_progress(state, agent), revision)

    def register_gate(self, gate_class: type[QualityGate]) -> QualityGate:
        """Attach an extra gate, thresholded from the ``[gates]`` config section."""
        gate = gate_class(
            margin=self.config.gates.revision_margin,
            default_threshold=self.config.gates.default_threshold,
        )
        self.gates[gate.agent] = gate
        return gate

    def evaluate_gate(self, agent: Agent | str) -> GateResult | None:
        gate = self.gates.get(coerce_agent(agent))
        if gate is None:
            return None
        return gate.evaluate(self.project_dir, self.config.gates.mode)

    def complete_agent(
        self,
        agent: Agent | str,
        score: float | None = None,
        *,
        criteria_count: int | None = None,
        evaluate: bool = False,
    ) -> PipelineTransition:
        """Record an agent as finished, optionally scoring it with its quality gate."""
        resolved = coerce_agent(agent)
        state, revision = self._read()

        result = AgentResult(score=score, criteria_count=criteria_count)
        gate_result = self.evaluate_gate(resolved) if evaluate else None
        if self.gate_mode is GateMode.HUMAN_IN_THE_LOOP and (
            gate_result is not None or resolved in GATING_AGENTS.values()
        ):
            if gate_result is not None:
                payload = gate_result.to_dict()
            else:
                payload = {
                    "score": score,
                    "criteria_count": criteria_count,
                    "mode": GateMode.HUMAN_IN_THE_LOOP.value,
                    "recommendation": "Recommend review: no gate evaluation was run.",
                }
            held = hold_for_approval(state, resolved, payload)
            self._commit(held, revision)
            logger.info("%s awaiting human approval: %s", resolved.value, payload["recommendation"])
            return PipelineTransition(state=held, next_action=NextAction.WAIT)
        if gate_result is not None:
            result = AgentResult(
                score=gate_result.score,
                criteria_count=len(gate_result.all_criteria),
                approved=None if gate_result.verdict is GateVerdict.APPROVED else False,
            )

        transition = advance_pipeline(state, resolved, result, threshold=self.threshold)
        self._commit(transition.state, revision)
        logger.info(
            "%s completed -> %s (next: %s)",
            resolved.value,
            transition.next_action.value,
            transition.next_agent.value if transition.next_agent else None,
        )
        return transition

    def approve_gate(self) -> PipelineTransition:
        """Approve the gate result that is waiting for a human decision."""
        state, revision = self._read()
        pending = state.pending_gate
        if not pending:
            raise PipelineError("No gate result is awaiting approval")
        outcome = AgentResult(
            score=pending.get("score"),
            criteria_count=len(pending.get("all_criteria") or []) or pending.get("criteria_count"),
            approved=True,
        )
        transition = advance_pipeline(state, pending["agent"], outcome, threshold=self.threshold)
        self._commit(transition.state, revision)
        return transition

    def confirm_preview(self, decision: PreviewDecision | str) -> PipelineTransition:
        state, revision = self._read()
        transition = confirm_preview(state, decision)
        self._commit(transition.state, revision)
        return transition

    def reset_to(self, agent: Agent | str) -> PipelineState:
        state, revision = self._read()
        return self._commit(reset_pipeline_to(state, agent), revision)

    def check_transition(self) -> PhaseTransitionCheck:
        return check_phase_transition(self.load(), threshold=self.threshold)

    def status(self) -> dict[str, Any]:
        state = self.load()
        return {
            "phase": state.phase.value,
            "is_greenfield": state.is_greenfield,
            "progress": get_pipeline_progress(state).to_dict(),
            "transition": check_phase_transition(state, threshold=self.threshold).to_dict(),
            "agents": {agent.value: record.to_dict() for agent, record in state.agents.items()},
            "pending_gate": state.pending_gate,
            "mode_transitions": list(state.mode_transitions),
            "completed_at": state.completed_at,
            "build": get_build_status(
                self.project_dir,
                store=self.store,
                timeout_seconds=self.config.build.timeout_minutes * 60,
            ),
        }

    def spawn_config_for(
        self,
        agent: Agent | str,
        task_id: str,
        *,
        prompt: str | None = None,
        context_payload: Any = None,
    ) -> SpawnConfig:
        resolved = coerce_agent(agent)
        provider, tier = resolve_provider_for_agent(resolved, self.config)
        return SpawnConfig(
            agent=resolved,
            task_id=task_id,
            model=tier,
            prompt=prompt,
            context_payload=context_payload,
            provider=provider,
        )

    async def spawn_group(self, configs: Sequence[SpawnConfig]) -> list[TerminalHandle]:
        return await spawn_parallel_group(
            configs,
            cwd=self.project_dir,
            max_parallel=self.config.terminal.max_parallel,
            grace_seconds=self.config.terminal.kill_grace_seconds,
        )

    async def stop_terminal(self, handle: TerminalHandle | None) -> KillResult:
        return await kill_terminal(handle, self.config.terminal.kill_grace_seconds)

    async def run_build(
        self,
        task_ids: list[str],
        executor: Executor | None = None,
        *,
        resume: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> tuple[BuildLoopResult, PipelineTransition | None]:
        """Run the autonomous build; a clean build completes the build agent."""
        build_agent = coerce_agent(self.config.build.agent)
        state = self.load()
        if state.phase is not Phase.BUILD:
            raise PipelineError(
                f"Build can only run in the build phase (current phase: {state.phase.value})"
            )
        if not task_ids:
            saved = load_build_state(self.project_dir, store=self.store) if resume else None
            if saved is None or saved.status in TERMINAL_BUILD_STATUSES or not saved.checkpoints:
                raise PipelineError("Nothing to build: pass task ids or resume an unfinished build")

        record = state.agents.get(build_agent)
        if record is not None and record.status is not AgentStatus.IN_PROGRESS:
            self.start_agent(build_agent)

        if executor is None:
            provider, tier = resolve_provider_for_agent(build_agent, self.config)
            executor = make_spawn_executor(
                provider,
                agent=build_agent,
                model=tier,
                cwd=self.project_dir,
                grace_seconds=self.config.terminal.kill_grace_seconds,
            )

        result = await run_build_loop(
            self.project_dir,
            task_ids,
            executor,
            on_progress=on_progress,
            resume=resume,
            max_attempts=self.config.build.max_attempts,
            timeout_seconds=self.config.build.timeout_minutes * 60,
            output_limit=self.config.build.output_limit,
            error_limit=self.config.build.error_limit,
            store=self.store,
        )
        if result.status is not BuildStatus.COMPLETED or result.completed == 0:
            return result, None
        return result, self.complete_agent(build_agent)
