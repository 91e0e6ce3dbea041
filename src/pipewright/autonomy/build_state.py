from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from pipewright.state.store import JsonStateStore

logger = logging.getLogger(__name__)

BUILD_NAMESPACE = "build"
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_TIMEOUT_SECONDS = 3600.0


class BuildStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


class CheckpointStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_BUILD_STATUSES = {BuildStatus.COMPLETED, BuildStatus.ABANDONED}


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class Checkpoint:
    task_id: str
    status: CheckpointStatus = CheckpointStatus.PENDING
    attempts: int = 0
    last_attempt: str | None = None
    output: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "last_attempt": self.last_attempt,
            "output": self.output,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Checkpoint:
        return cls(
            task_id=str(payload["task_id"]),
            status=CheckpointStatus(payload.get("status", CheckpointStatus.PENDING.value)),
            attempts=int(payload.get("attempts", 0)),
            last_attempt=payload.get("last_attempt"),
            output=payload.get("output"),
            error=payload.get("error"),
        )


@dataclass(slots=True)
class BuildState:
    session_id: str
    status: BuildStatus = BuildStatus.PENDING
    checkpoints: list[Checkpoint] = field(default_factory=list)
    total_attempts: int = 0
    started_at: str | None = None
    last_checkpoint: str | None = None
    completed_at: str | None = None
    failure_reason: str | None = None

    def checkpoint(self, task_id: str) -> Checkpoint | None:
        return next((item for item in self.checkpoints if item.task_id == task_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "checkpoints": [item.to_dict() for item in self.checkpoints],
            "total_attempts": self.total_attempts,
            "started_at": self.started_at,
            "last_checkpoint": self.last_checkpoint,
            "completed_at": self.completed_at,
            "failure_reason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> BuildState:
        return cls(
            session_id=str(payload.get("session_id") or uuid4()),
            status=BuildStatus(payload.get("status", BuildStatus.PENDING.value)),
            checkpoints=[Checkpoint.from_dict(item) for item in payload.get("checkpoints", [])],
            total_attempts=int(payload.get("total_attempts", 0)),
            started_at=payload.get("started_at"),
            last_checkpoint=payload.get("last_checkpoint"),
            completed_at=payload.get("completed_at"),
            failure_reason=payload.get("failure_reason"),
        )


@dataclass(slots=True)
class BuildProgress:
    total: int
    completed: int
    failed: int
    in_progress: int
    pending: int
    percent: int

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "in_progress": self.in_progress,
            "pending": self.pending,
            "percent": self.percent,
        }


def _copy(state: BuildState) -> BuildState:
    return replace(state, checkpoints=[replace(item) for item in state.checkpoints])


def create_build_state(task_ids: Iterable[str]) -> BuildState:
    return BuildState(
        session_id=uuid4().hex[:12],
        checkpoints=[Checkpoint(task_id=str(task_id)) for task_id in task_ids],
    )


def start_build(state: BuildState) -> BuildState:
    # The timeout window restarts with every invocation, including resumes.
    new_state = _copy(state)
    new_state.status = BuildStatus.RUNNING
    new_state.started_at = _utcnow_iso()
    new_state.completed_at = None
    new_state.failure_reason = None
    return new_state


def complete_build(state: BuildState) -> BuildState:
    new_state = _copy(state)
    new_state.status = BuildStatus.COMPLETED
    new_state.completed_at = _utcnow_iso()
    return new_state


def fail_build(state: BuildState, reason: str) -> BuildState:
    new_state = _copy(state)
    new_state.status = BuildStatus.FAILED
    new_state.failure_reason = reason
    new_state.completed_at = _utcnow_iso()
    return new_state


def abandon_build(state: BuildState) -> BuildState:
    new_state = _copy(state)
    new_state.status = BuildStatus.ABANDONED
    new_state.completed_at = _utcnow_iso()
    return new_state


_CHECKPOINT_FIELDS = {"status", "attempts", "last_attempt", "output", "error"}


def update_checkpoint(state: BuildState, task_id: str, **updates: Any) -> BuildState:
    """Apply ``updates`` to one checkpoint; attempt counts may only grow."""
    unknown = set(updates) - _CHECKPOINT_FIELDS
    if unknown:
        raise ValueError(f"Unknown checkpoint field(s): {', '.join(sorted(unknown))}")
    current = state.checkpoint(task_id)
    if current is None:
        raise KeyError(f"Unknown task: {task_id!r}")
    if "attempts" in updates and int(updates["attempts"]) < current.attempts:
        raise ValueError(
            f"attempts for {task_id!r} cannot decrease "
            f"({current.attempts} -> {updates['attempts']})"
        )
    if "status" in updates:
        updates["status"] = CheckpointStatus(updates["status"])

    new_state = _copy(state)
    index = state.checkpoints.index(current)
    checkpoint = new_state.checkpoints[index]
    added_attempts = int(updates.get("attempts", checkpoint.attempts)) - checkpoint.attempts
    for key, value in updates.items():
        setattr(checkpoint, key, value)
    new_state.total_attempts += added_attempts
    new_state.last_checkpoint = _utcnow_iso()
    return new_state


def get_next_pending_task(state: BuildState) -> Checkpoint | None:
    return next(
        (
            item
            for item in state.checkpoints
            if item.status in (CheckpointStatus.PENDING, CheckpointStatus.IN_PROGRESS)
        ),
        None,
    )


def is_task_exhausted(checkpoint: Checkpoint, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> bool:
    return checkpoint.attempts >= max_attempts


def is_timed_out(
    state: BuildState,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    now: datetime | None = None,
) -> bool:
    if not state.started_at or state.status is not BuildStatus.RUNNING:
        return False
    started = datetime.fromisoformat(state.started_at)
    current = now or datetime.now(UTC)
    return (current - started).total_seconds() > timeout_seconds


def get_progress(state: BuildState) -> BuildProgress:
    counts = {status: 0 for status in CheckpointStatus}
    for item in state.checkpoints:
        counts[item.status] += 1
    total = len(state.checkpoints)
    completed = counts[CheckpointStatus.COMPLETED]
    return BuildProgress(
        total=total,
        completed=completed,
        failed=counts[CheckpointStatus.FAILED],
        in_progress=counts[CheckpointStatus.IN_PROGRESS],
        pending=counts[CheckpointStatus.PENDING],
        percent=round(completed / total * 100) if total else 0,
    )


def load_build_state(
    project_dir: Path, *, store: JsonStateStore | None = None
) -> BuildState | None:
    store = store or JsonStateStore(project_dir)
    payload = store.load(BUILD_NAMESPACE)
    if not isinstance(payload, dict):
        return None
    return BuildState.from_dict(payload)


def save_build_state(
    project_dir: Path, state: BuildState, *, store: JsonStateStore | None = None
) -> int:
    store = store or JsonStateStore(project_dir)
    return store.save(BUILD_NAMESPACE, state.to_dict())
