from charter.state.git import GitCommitHook
from charter.state.models import Phase, Plan, Subtask, SubtaskOutcome, TaskState, TaskStatus
from charter.state.store import StateManager
from charter.state.usage import UsageLedger

__all__ = [
    "GitCommitHook",
    "Phase",
    "Plan",
    "StateManager",
    "Subtask",
    "SubtaskOutcome",
    "TaskState",
    "TaskStatus",
    "UsageLedger",
]
