from ralph.state.lifecycle import (
    LifecycleIOError,
    LifecyclePreparation,
    RunLifecycleManager,
    RunPointerStore,
    should_archive,
)
from ralph.state.task_spec import Story, TaskSpec, TaskSpecError, load_task_spec

__all__ = [
    "LifecycleIOError",
    "LifecyclePreparation",
    "RunLifecycleManager",
    "RunPointerStore",
    "Story",
    "TaskSpec",
    "TaskSpecError",
    "load_task_spec",
    "should_archive",
]
