from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from charter.actors import ActorRegistry
from charter.errors import StateError
from charter.policy import PolicyEngine
from charter.state import Phase, StateManager, Subtask, SubtaskOutcome, TaskState, UsageLedger

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PhaseResult:
    outcomes: list[SubtaskOutcome] = field(default_factory=list)
    aborted: bool = False
    abort_reason: str | None = None


class PhaseExecutor:
    """Runs the subtasks of one phase under policy control.

    Parallel phases dispatch every subtask and join before anything is
    persisted. Sequential phases persist after each subtask and stop at the
    first failed critical subtask.
    """

    def __init__(
        self,
        policy: PolicyEngine,
        registry: ActorRegistry,
        state: StateManager,
        usage: UsageLedger | None = None,
    ) -> None:
        self.policy = policy
        self.registry = registry
        self.state = state
        self.usage = usage

    async def _run_subtask(
        self,
        phase: Phase,
        subtask: Subtask,
        task_id: str,
        shared_context: dict[str, Any],
    ) -> SubtaskOutcome:
        start = time.monotonic()
        decision = self.policy.evaluate(subtask.actor, subtask.action, subtask, task_id)
        if not decision.allowed:
            logger.info(
                "Denied %s/%s in phase %s: %s",
                subtask.actor,
                subtask.action,
                phase.number,
                decision.reason,
            )
            outcome = SubtaskOutcome(
                actor=subtask.actor,
                action=subtask.action,
                description=subtask.description,
                phase=phase.number,
                success=False,
                denied_reason=decision.reason,
                rule_id=decision.rule_id,
                duration_ms=int((time.monotonic() - start) * 1000),
            )
            self._event("subtask_denied", task_id, outcome)
            return outcome

        actor = self.registry.get(subtask.actor)
        context = {**shared_context, "actor_profile": self._profile(subtask.actor)}
        result = await actor.execute(subtask, context)
        duration_ms = int((time.monotonic() - start) * 1000)
        outcome = SubtaskOutcome(
            actor=subtask.actor,
            action=subtask.action,
            description=subtask.description,
            phase=phase.number,
            success=result.success,
            error=result.error,
            output=result.output,
            duration_ms=duration_ms,
        )
        self._record_usage(subtask, task_id, phase.number, duration_ms, result.success)
        self._event("subtask_completed" if result.success else "subtask_failed", task_id, outcome)
        return outcome

    def _profile(self, actor: str) -> dict[str, Any]:
        return self.policy.rules.actor_profile(actor).to_dict()

    def _record_usage(
        self, subtask: Subtask, task_id: str, phase: int, duration_ms: int, success: bool
    ) -> None:
        if self.usage is None:
            return
        try:
            self.usage.record(
                subtask.actor,
                subtask.action,
                duration_ms,
                success,
                {"task_id": task_id, "phase": phase},
            )
        except (StateError, OSError) as exc:
            # Usage is best-effort once the outcome exists.
            logger.warning(
                "Could not record usage for %s/%s: %s", subtask.actor, subtask.action, exc
            )

    def _event(self, name: str, task_id: str, outcome: SubtaskOutcome) -> None:
        try:
            self.state.append_event(
                {
                    "event": name,
                    "task_id": task_id,
                    "phase": outcome.phase,
                    "actor": outcome.actor,
                    "action": outcome.action,
                    "success": outcome.success,
                    "rule_id": outcome.rule_id,
                    "duration_ms": outcome.duration_ms,
                }
            )
        except OSError as exc:
            logger.warning("Could not log %s for task %s: %s", name, task_id, exc)

    @staticmethod
    def _abort_reason(subtask: Subtask, outcome: SubtaskOutcome) -> str:
        detail = outcome.denied_reason or outcome.error or "actor reported failure"
        return f"Critical subtask failed ({subtask.actor}: {subtask.description}): {detail}"

    async def run_phase(
        self,
        phase: Phase,
        task_state: TaskState,
        shared_context: dict[str, Any],
    ) -> PhaseResult:
        task_id = task_state.task_id
        logger.info(
            "Running phase %s of %s (%s, %d subtasks)",
            phase.number,
            task_id,
            "parallel" if phase.parallel else "sequential",
            len(phase.subtasks),
        )
        result = PhaseResult()

        if phase.parallel:
            outcomes = await asyncio.gather(
                *(
                    self._run_subtask(phase, subtask, task_id, shared_context)
                    for subtask in phase.subtasks
                )
            )
            result.outcomes.extend(outcomes)
            task_state.outcomes.extend(outcomes)
            self.state.save_task_state(task_state)
            for subtask, outcome in zip(phase.subtasks, outcomes, strict=True):
                if subtask.critical and not outcome.success:
                    result.aborted = True
                    result.abort_reason = self._abort_reason(subtask, outcome)
                    logger.warning(
                        "Phase %s of %s aborted: %s", phase.number, task_id, result.abort_reason
                    )
                    break
            return result

        for subtask in phase.subtasks:
            outcome = await self._run_subtask(phase, subtask, task_id, shared_context)
            result.outcomes.append(outcome)
            task_state.outcomes.append(outcome)
            self.state.save_task_state(task_state)
            if subtask.critical and not outcome.success:
                result.aborted = True
                result.abort_reason = self._abort_reason(subtask, outcome)
                break
        if result.aborted:
            logger.warning(
                "Phase %s of %s aborted: %s", phase.number, task_id, result.abort_reason
            )
        return result
