from pipewright.autonomy.build_loop import (
    BuildLoopResult,
    TaskOutcome,
    get_build_status,
    make_spawn_executor,
    run_build_loop,
)
from pipewright.autonomy.build_state import (
    BuildState,
    BuildStatus,
    Checkpoint,
    CheckpointStatus,
    create_build_state,
    load_build_state,
    save_build_state,
)

__all__ = [
    "BuildLoopResult",
    "BuildState",
    "BuildStatus",
    "Checkpoint",
    "CheckpointStatus",
    "TaskOutcome",
    "create_build_state",
    "get_build_status",
    "load_build_state",
    "make_spawn_executor",
    "run_build_loop",
    "save_build_state",
]
