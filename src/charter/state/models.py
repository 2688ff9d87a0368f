from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from charter.errors import PlanValidationError

TASK_ID_PATTERN = re.compile(r"[A-Za-z0-9._-]+")


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class TaskStatus(StrEnum):
    PENDING = "pending"
    PLANNED = "planned"
    RUNNING = "running"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {TaskStatus.COMPLETED, TaskStatus.FAILED}


def _require_str(payload: dict[str, Any], key: str, where: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise PlanValidationError(f"{where}: '{key}' must be a non-empty string.")
    return value.strip()


def _optional_bool(payload: dict[str, Any], key: str, where: str) -> bool:
    value = payload.get(key, False)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise PlanValidationError(f"{where}: '{key}' must be a boolean.")
    return value


@dataclass(slots=True, frozen=True)
class Subtask:
    actor: str
    action: str
    description: str
    files: tuple[str, ...] = ()
    critical: bool = False
    change_type: str | None = None

    @classmethod
    def from_dict(cls, payload: Any, *, where: str = "subtask") -> Subtask:
        if not isinstance(payload, dict):
            raise PlanValidationError(f"{where}: expected a mapping, got {type(payload).__name__}.")
        # "agent" is the key older plan files use for the actor.
        actor_payload = dict(payload)
        if "actor" not in actor_payload and "agent" in actor_payload:
            actor_payload["actor"] = actor_payload["agent"]
        files = payload.get("files", [])
        if files is None:
            files = []
        if not isinstance(files, list) or not all(isinstance(item, str) for item in files):
            raise PlanValidationError(f"{where}: 'files' must be a list of paths.")
        change_type = payload.get("change_type")
        if change_type is not None and not isinstance(change_type, str):
            raise PlanValidationError(f"{where}: 'change_type' must be a string.")
        return cls(
            actor=_require_str(actor_payload, "actor", where),
            action=_require_str(payload, "action", where),
            description=_require_str(payload, "description", where),
            files=tuple(files),
            critical=_optional_bool(payload, "critical", where),
            change_type=change_type or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "actor": self.actor,
            "action": self.action,
            "description": self.description,
            "files": list(self.files),
            "critical": self.critical,
            "change_type": self.change_type,
        }


@dataclass(slots=True, frozen=True)
class Phase:
    number: int
    parallel: bool
    subtasks: tuple[Subtask, ...]
    name: str = ""

    @classmethod
    def from_dict(cls, payload: Any, *, position: int) -> Phase:
        where = f"phase[{position}]"
        if not isinstance(payload, dict):
            raise PlanValidationError(f"{where}: expected a mapping, got {type(payload).__name__}.")
        number = payload.get("phase", payload.get("number", position + 1))
        if isinstance(number, bool) or not isinstance(number, int):
            raise PlanValidationError(f"{where}: phase number must be an integer.")
        raw_subtasks = payload.get("subtasks")
        if not isinstance(raw_subtasks, list) or not raw_subtasks:
            raise PlanValidationError(f"{where}: 'subtasks' must be a non-empty list.")
        subtasks = tuple(
            Subtask.from_dict(item, where=f"{where}.subtask[{index}]")
            for index, item in enumerate(raw_subtasks)
        )
        name = payload.get("name") or ""
        return cls(
            number=number,
            parallel=_optional_bool(payload, "parallel", where),
            subtasks=subtasks,
            name=str(name),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.number,
            "name": self.name,
            "parallel": self.parallel,
            "subtasks": [subtask.to_dict() for subtask in self.subtasks],
        }


@dataclass(slots=True, frozen=True)
class Plan:
    task_id: str
    summary: str
    phases: tuple[Phase, ...]
    risks: tuple[str, ...] = ()
    estimated_minutes: int = 0

    @classmethod
    def from_dict(cls, payload: Any, *, task_id: str | None = None) -> Plan:
        if not isinstance(payload, dict):
            raise PlanValidationError("plan: expected a mapping at the top level.")
        raw_phases = payload.get("phases")
        if not isinstance(raw_phases, list) or not raw_phases:
            raise PlanValidationError("plan: 'phases' must be a non-empty list.")
        phases = tuple(
            Phase.from_dict(item, position=index) for index, item in enumerate(raw_phases)
        )
        risks = payload.get("risks") or []
        if not isinstance(risks, list):
            raise PlanValidationError("plan: 'risks' must be a list.")
        minutes = payload.get("estimated_minutes", payload.get("total_estimated_minutes", 0))
        if isinstance(minutes, bool) or not isinstance(minutes, int | float):
            raise PlanValidationError("plan: estimated minutes must be a number.")
        resolved_id = (
            task_id
            or payload.get("task_id")
            or payload.get("taskId")
            or f"T{uuid4().hex[:6]}"
        )
        resolved_id = str(resolved_id)
        if not TASK_ID_PATTERN.fullmatch(resolved_id) or resolved_id in {".", ".."}:
            raise PlanValidationError(
                f"plan: task id '{resolved_id}' may only use letters, digits, '.', '_' and '-'."
            )
        return cls(
            task_id=resolved_id,
            summary=str(payload.get("summary") or "General task"),
            phases=phases,
            risks=tuple(str(item) for item in risks),
            estimated_minutes=int(minutes),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "summary": self.summary,
            "phases": [phase.to_dict() for phase in self.phases],
            "risks": list(self.risks),
            "total_estimated_minutes": self.estimated_minutes,
        }

    def actors(self) -> list[str]:
        seen: list[str] = []
        for phase in self.phases:
            for subtask in phase.subtasks:
                if subtask.actor not in seen:
                    seen.append(subtask.actor)
        return seen


@dataclass(slots=True)
class SubtaskOutcome:
    actor: str
    action: str
    description: str
    phase: int
    success: bool
    denied_reason: str | None = None
    rule_id: str | None = None
    error: str | None = None
    output: Any = None
    duration_ms: int = 0
    finished_at: str = field(default_factory=utcnow_iso)

    @property
    def denied(self) -> bool:
        return self.denied_reason is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "actor": self.actor,
            "action": self.action,
            "description": self.description,
            "phase": self.phase,
            "success": self.success,
            "denied_reason": self.denied_reason,
            "rule_id": self.rule_id,
            "error": self.error,
            "output": self.output,
            "duration_ms": self.duration_ms,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SubtaskOutcome:
        return cls(
            actor=str(payload.get("actor", "")),
            action=str(payload.get("action", "")),
            description=str(payload.get("description", "")),
            phase=int(payload.get("phase", 0)),
            success=bool(payload.get("success", False)),
            denied_reason=payload.get("denied_reason"),
            rule_id=payload.get("rule_id"),
            error=payload.get("error"),
            output=payload.get("output"),
            duration_ms=int(payload.get("duration_ms", 0)),
            finished_at=str(payload.get("finished_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class TaskState:
    task_id: str
    plan: Plan
    status: TaskStatus = TaskStatus.PENDING
    current_phase: int = 0
    outcomes: list[SubtaskOutcome] = field(default_factory=list)
    approvals: list[str] = field(default_factory=list)
    blocked_reason: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    @property
    def next_phase(self) -> Phase | None:
        if self.current_phase >= len(self.plan.phases):
            return None
        return self.plan.phases[self.current_phase]

    def outcomes_for_phase(self, number: int) -> list[SubtaskOutcome]:
        return [outcome for outcome in self.outcomes if outcome.phase == number]

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "phase": self.current_phase,
            "status": self.status.value,
            "plan": self.plan.to_dict(),
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
            "approvals": list(self.approvals),
            "blocked_reason": self.blocked_reason,
            "created_at": self.created_at,
            "timestamp": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskState:
        task_id = str(payload.get("task_id") or payload.get("taskId") or "")
        if not task_id:
            raise PlanValidationError("task state: missing 'task_id'.")
        try:
            status = TaskStatus(str(payload.get("status", TaskStatus.PENDING.value)))
        except ValueError as exc:
            raise PlanValidationError(
                f"task state: unknown status {payload.get('status')!r}."
            ) from exc
        outcomes = payload.get("outcomes") or []
        return cls(
            task_id=task_id,
            plan=Plan.from_dict(payload.get("plan"), task_id=task_id),
            status=status,
            current_phase=int(payload.get("phase", 0)),
            outcomes=[
                SubtaskOutcome.from_dict(item) for item in outcomes if isinstance(item, dict)
            ],
            approvals=[str(item) for item in payload.get("approvals") or []],
            blocked_reason=payload.get("blocked_reason"),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("timestamp") or utcnow_iso()),
        )
