"""Autonomous build loop.

Runs one task at a time through an injected executor, retrying failures up
to a per-task ceiling and checkpointing after every change so an interrupted
build can be resumed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pipewright.agents import Agent
from pipewright.autonomy.build_state import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_TIMEOUT_SECONDS,
    TERMINAL_BUILD_STATUSES,
    BuildState,
    BuildStatus,
    CheckpointStatus,
    complete_build,
    create_build_state,
    fail_build,
    get_next_pending_task,
    get_progress,
    is_task_exhausted,
    is_timed_out,
    load_build_state,
    save_build_state,
    start_build,
    update_checkpoint,
)
from pipewright.providers.base import CliProvider
from pipewright.state.store import JsonStateStore
from pipewright.terminal.spawner import (
    DEFAULT_KILL_GRACE_SECONDS,
    SpawnConfig,
    spawn_terminal,
    wait_for_terminal,
)

logger = logging.getLogger(__name__)

OUTPUT_LIMIT = 1000
ERROR_LIMIT = 500


@dataclass(slots=True)
class TaskOutcome:
    success: bool
    output: str = ""


@dataclass(slots=True)
class BuildLoopResult:
    status: BuildStatus
    completed: int
    failed: int
    total_attempts: int
    duration: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "completed": self.completed,
            "failed": self.failed,
            "total_attempts": self.total_attempts,
            "duration": self.duration,
        }


Executor = Callable[[str], Awaitable["TaskOutcome | Mapping[str, Any]"]]
ProgressCallback = Callable[[dict[str, Any]], None]


def _coerce_outcome(result: TaskOutcome | Mapping[str, Any]) -> TaskOutcome:
    if isinstance(result, TaskOutcome):
        return result
    return TaskOutcome(success=bool(result.get("success")), output=str(result.get("output") or ""))


async def run_build_loop(
    project_dir: Path,
    task_ids: Sequence[str],
    executor: Executor,
    *,
    on_progress: ProgressCallback | None = None,
    resume: bool = False,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    output_limit: int = OUTPUT_LIMIT,
    error_limit: int = ERROR_LIMIT,
    store: JsonStateStore | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> BuildLoopResult:
    store = store or JsonStateStore(project_dir)

    def _save(current: BuildState) -> None:
        save_build_state(project_dir, current, store=store)

    def _emit(event: dict[str, Any]) -> None:
        if on_progress is not None:
            on_progress(event)

    state = load_build_state(project_dir, store=store) if resume else None
    if state is None or state.status in TERMINAL_BUILD_STATUSES:
        state = create_build_state(task_ids)
    elif resume:
        logger.info("Resuming build %s", state.session_id)
    state = start_build(state)
    _save(state)

    started = clock()
    while True:
        elapsed = clock() - started
        if elapsed > timeout_seconds:
            state = fail_build(state, "Global timeout exceeded")
            _save(state)
            logger.warning("Build %s timed out after %.0fs", state.session_id, elapsed)
            _emit({"type": "build_timeout", "elapsed": round(elapsed)})
            break

        checkpoint = get_next_pending_task(state)
        if checkpoint is None:
            if any(item.status is CheckpointStatus.FAILED for item in state.checkpoints):
                state = fail_build(state, "Some tasks failed")
            else:
                state = complete_build(state)
            _save(state)
            break

        task_id = checkpoint.task_id
        if is_task_exhausted(checkpoint, max_attempts):
            state = update_checkpoint(
                state,
                task_id,
                status=CheckpointStatus.FAILED,
                error=f"Exceeded max attempts ({checkpoint.attempts})",
            )
            _save(state)
            logger.warning("Task %s exhausted after %d attempts", task_id, checkpoint.attempts)
            _emit({"type": "task_exhausted", "task_id": task_id, "attempts": checkpoint.attempts})
            continue

        attempt = checkpoint.attempts + 1
        state = update_checkpoint(
            state,
            task_id,
            status=CheckpointStatus.IN_PROGRESS,
            attempts=attempt,
            last_attempt=datetime.now(UTC).replace(microsecond=0).isoformat(),
        )
        _save(state)
        _emit(
            {
                "type": "task_started",
                "task_id": task_id,
                "attempt": attempt,
                "progress": get_progress(state).to_dict(),
            }
        )

        try:
            outcome = _coerce_outcome(await executor(task_id))
        except Exception as exc:
            # Executor errors count as a failed attempt and are retried.
            logger.warning("Executor raised on task %s: %s", task_id, exc)
            error = (str(exc) or "Execution error")[:error_limit]
            state = update_checkpoint(
                state, task_id, status=CheckpointStatus.IN_PROGRESS, error=error
            )
            _emit({"type": "task_failed", "task_id": task_id, "attempt": attempt, "error": error})
        else:
            if outcome.success:
                state = update_checkpoint(
                    state,
                    task_id,
                    status=CheckpointStatus.COMPLETED,
                    output=(outcome.output or "Completed")[:output_limit],
                    error=None,
                )
                _emit({"type": "task_completed", "task_id": task_id})
            else:
                error = (outcome.output or "Task failed")[:error_limit]
                state = update_checkpoint(
                    state, task_id, status=CheckpointStatus.IN_PROGRESS, error=error
                )
                _emit(
                    {"type": "task_failed", "task_id": task_id, "attempt": attempt, "error": error}
                )
        _save(state)

    progress = get_progress(state)
    result = BuildLoopResult(
        status=state.status,
        completed=progress.completed,
        failed=progress.failed,
        total_attempts=state.total_attempts,
        duration=f"{round(clock() - started)}s",
    )
    logger.info(
        "Build %s finished: %s (%d completed, %d failed)",
        state.session_id,
        result.status.value,
        result.completed,
        result.failed,
    )
    return result


def get_build_status(
    project_dir: Path,
    *,
    store: JsonStateStore | None = None,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
) -> dict[str, Any] | None:
    state = load_build_state(project_dir, store=store)
    if state is None:
        return None
    return {
        "session_id": state.session_id,
        "status": state.status.value,
        "progress": get_progress(state).to_dict(),
        "total_attempts": state.total_attempts,
        "started_at": state.started_at,
        "last_checkpoint": state.last_checkpoint,
        "failure_reason": state.failure_reason,
        "timed_out": is_timed_out(state, timeout_seconds),
    }


def default_task_prompt(task_id: str) -> str:
    return f"Implement task {task_id}. Work only inside your write scope and report what changed."


def make_spawn_executor(
    provider: CliProvider | str | None = None,
    *,
    agent: Agent = Agent.DEV,
    model: str | None = None,
    prompt_builder: Callable[[str], str] = default_task_prompt,
    cwd: Path | None = None,
    timeout: float | None = None,
    grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
) -> Executor:
    """Executor that runs each task in its own agent terminal; exit code 0 is success."""

    async def _execute(task_id: str) -> TaskOutcome:
        config = SpawnConfig(
            agent=agent,
            task_id=task_id,
            model=model,
            prompt=prompt_builder(task_id),
            context_payload={"task_id": task_id},
        )
        handle = await spawn_terminal(config, provider, cwd=cwd)
        result = await wait_for_terminal(handle, timeout=timeout, grace_seconds=grace_seconds)
        if result.exit_code == 0:
            return TaskOutcome(success=True, output=result.stdout.strip())
        detail = result.stderr.strip() or result.stdout.strip()
        return TaskOutcome(
            success=False, output=f"exit code {result.exit_code}: {detail}".strip()
        )

    return _execute
