from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from charter.actors import ActorRegistry
from charter.errors import PlanBlockedError, StateError
from charter.executor import PhaseExecutor
from charter.policy import PolicyEngine, RuleStore
from charter.state import Phase, Plan, StateManager, TaskState, TaskStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.PLANNED},
    TaskStatus.PLANNED: {TaskStatus.RUNNING},
    TaskStatus.RUNNING: {
        TaskStatus.RUNNING,
        TaskStatus.BLOCKED,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
    },
    TaskStatus.BLOCKED: {TaskStatus.RUNNING},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
}


class Orchestrator:
    """Drives a plan through its lifecycle one phase at a time.

    ``pending -> planned -> running -> completed | failed | blocked``. A
    blocked plan only returns to ``running`` through :meth:`unblock`.
    Terminal plans are archived and the live state is cleared.
    """

    def __init__(
        self,
        state: StateManager,
        rules: RuleStore,
        policy: PolicyEngine,
        registry: ActorRegistry,
        executor: PhaseExecutor,
        *,
        clear_task_overrides_on_archive: bool = True,
    ) -> None:
        self.state = state
        self.rules = rules
        self.policy = policy
        self.registry = registry
        self.executor = executor
        self.clear_task_overrides_on_archive = clear_task_overrides_on_archive

    def _transition(self, task_state: TaskState, status: TaskStatus) -> None:
        if status not in ALLOWED_TRANSITIONS[task_state.status]:
            raise StateError(
                f"Task {task_state.task_id} cannot move from {task_state.status} to {status}."
            )
        if status != task_state.status:
            logger.info("Task %s: %s -> %s", task_state.task_id, task_state.status, status)
            self.state.append_event(
                {
                    "event": "status_changed",
                    "task_id": task_state.task_id,
                    "from": task_state.status.value,
                    "to": status.value,
                }
            )
        task_state.status = status

    def _require_active(self) -> TaskState:
        task_state = self.state.load_task_state()
        if task_state is None:
            raise StateError("No active task. Create a plan first.")
        return task_state

    def create_plan(self, payload: Any, *, task_id: str | None = None) -> TaskState:
        plan = Plan.from_dict(payload, task_id=task_id)
        current = self.state.load_task_state()
        if current is not None:
            if not current.status.terminal:
                raise StateError(
                    f"Task {current.task_id} is still {current.status}; finish it before "
                    "starting a new plan."
                )
            if self.state.load_archived(current.task_id) is None:
                logger.warning("Archiving leftover terminal task %s", current.task_id)
                self._archive(current)
            else:
                logger.warning("Clearing leftover terminal task %s", current.task_id)
                self.state.clear_task_state()
        if self.state.load_archived(plan.task_id) is not None:
            raise StateError(f"Task {plan.task_id} is already archived; use a new task id.")
        self.registry.resolve(plan)

        task_state = TaskState(task_id=plan.task_id, plan=plan)
        self._transition(task_state, TaskStatus.PLANNED)
        self.state.save_task_state(task_state)
        self.state.append_event(
            {
                "event": "plan_created",
                "task_id": plan.task_id,
                "phases": len(plan.phases),
                "actors": plan.actors(),
            }
        )
        logger.info("Planned task %s with %d phase(s)", plan.task_id, len(plan.phases))
        return task_state

    def status(self) -> TaskState | None:
        return self.state.load_task_state()

    def build_shared_context(self, task_state: TaskState, phase: Phase) -> dict[str, Any]:
        plan = task_state.plan
        return {
            "task_id": task_state.task_id,
            "summary": plan.summary,
            "risks": list(plan.risks),
            "phase": phase.number,
            "phase_name": phase.name,
            "total_phases": len(plan.phases),
            "approvals": list(task_state.approvals),
        }

    def _approval_gate(self, task_state: TaskState, phase: Phase) -> str | None:
        missing: list[str] = []
        for subtask in phase.subtasks:
            if not subtask.change_type:
                continue
            check = self.rules.check_approvals(subtask.change_type, task_state.approvals)
            if not check.satisfied:
                missing.append(
                    f"{check.change_type} needs approval from {', '.join(check.missing)}"
                    f" ({check.reason})"
                )
        if not missing:
            return None
        return "Approval required: " + "; ".join(missing)

    def _finish(self, task_state: TaskState, status: TaskStatus) -> Path:
        self._transition(task_state, status)
        self.state.save_task_state(task_state)
        return self._archive(task_state)

    def _archive(self, task_state: TaskState) -> Path:
        archive_path = self.state.archive_task(task_state)
        if self.clear_task_overrides_on_archive:
            try:
                self.rules.deactivate(task_state.task_id)
            except StateError as exc:
                logger.warning("Overrides for task %s left active: %s", task_state.task_id, exc)
        self.state.append_event(
            {
                "event": "task_archived",
                "task_id": task_state.task_id,
                "status": task_state.status.value,
                "archive": archive_path.name,
            }
        )
        return archive_path

    async def advance(self) -> TaskState:
        """Run the next phase of the live task and return its updated state."""
        task_state = self._require_active()
        if task_state.status == TaskStatus.BLOCKED:
            raise PlanBlockedError(
                f"Task {task_state.task_id} is blocked: {task_state.blocked_reason}"
            )
        if task_state.status.terminal:
            if self.state.load_archived(task_state.task_id) is None:
                logger.warning("Archiving leftover terminal task %s", task_state.task_id)
                self._archive(task_state)
                return task_state
            raise StateError(f"Task {task_state.task_id} is already {task_state.status}.")

        phase = task_state.next_phase
        if phase is None:
            self._finish(task_state, TaskStatus.COMPLETED)
            return task_state

        if task_state.status != TaskStatus.RUNNING:
            self._transition(task_state, TaskStatus.RUNNING)

        blocked_reason = self._approval_gate(task_state, phase)
        if blocked_reason is not None:
            self._transition(task_state, TaskStatus.BLOCKED)
            task_state.blocked_reason = blocked_reason
            self.state.save_task_state(task_state)
            logger.warning(
                "Task %s blocked before phase %s: %s",
                task_state.task_id,
                phase.number,
                blocked_reason,
            )
            return task_state

        self.state.save_task_state(task_state)
        self.state.append_event(
            {"event": "phase_started", "task_id": task_state.task_id, "phase": phase.number}
        )
        result = await self.executor.run_phase(
            phase, task_state, self.build_shared_context(task_state, phase)
        )
        self.state.append_event(
            {
                "event": "phase_finished",
                "task_id": task_state.task_id,
                "phase": phase.number,
                "aborted": result.aborted,
                "reason": result.abort_reason,
            }
        )

        if result.aborted:
            logger.warning(
                "Task %s failed in phase %s: %s",
                task_state.task_id,
                phase.number,
                result.abort_reason,
            )
            self._finish(task_state, TaskStatus.FAILED)
            return task_state

        task_state.current_phase += 1
        if task_state.next_phase is None:
            self._finish(task_state, TaskStatus.COMPLETED)
        else:
            self.state.save_task_state(task_state)
        return task_state

    async def run(self) -> TaskState:
        while True:
            task_state = await self.advance()
            if task_state.status.terminal or task_state.status == TaskStatus.BLOCKED:
                return task_state

    def unblock(self, approvals: list[str]) -> TaskState:
        task_state = self._require_active()
        if task_state.status != TaskStatus.BLOCKED:
            raise StateError(f"Task {task_state.task_id} is not blocked ({task_state.status}).")
        for approver in approvals:
            approver = approver.strip()
            if approver and approver not in task_state.approvals:
                task_state.approvals.append(approver)
        self._transition(task_state, TaskStatus.RUNNING)
        task_state.blocked_reason = None
        self.state.save_task_state(task_state)
        self.state.append_event(
            {
                "event": "task_unblocked",
                "task_id": task_state.task_id,
                "approvals": list(task_state.approvals),
            }
        )
        return task_state
