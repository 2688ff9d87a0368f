from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

import yaml

from charter.errors import StateError
from charter.policy.rules import ActorProfile, ContentRule, Rule, RuleSet
from charter.state.models import utcnow_iso
from charter.state.store import file_lock, write_json_atomic

logger = logging.getLogger(__name__)

ALL_TASKS = "all"


@dataclass(slots=True)
class Override:
    rule_id: str
    task_id: str | None
    reason: str
    created_at: str = field(default_factory=utcnow_iso)
    active: bool = True
    deactivated_at: str | None = None
    id: str = field(default_factory=lambda: f"ovr-{uuid4().hex[:12]}")

    def applies_to(self, rule_id: str, task_id: str | None) -> bool:
        if not self.active or self.rule_id != rule_id:
            return False
        return self.task_id is None or self.task_id == task_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "task_id": self.task_id,
            "reason": self.reason,
            "created_at": self.created_at,
            "active": self.active,
            "deactivated_at": self.deactivated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Override:
        # Older override logs used camelCase keys and "timestamp".
        rule_id = str(payload.get("rule_id") or payload.get("ruleId") or "")
        task_id = payload.get("task_id", payload.get("taskId"))
        created_at = str(payload.get("created_at") or payload.get("timestamp") or utcnow_iso())
        override_id = payload.get("id") or f"{rule_id}:{task_id}:{created_at}"
        return cls(
            rule_id=rule_id,
            task_id=None if task_id is None else str(task_id),
            reason=str(payload.get("reason") or ""),
            created_at=created_at,
            active=bool(payload.get("active", True)),
            deactivated_at=payload.get("deactivated_at"),
            id=str(override_id),
        )


@dataclass(slots=True)
class ApprovalCheck:
    change_type: str
    required: list[str]
    approved: list[str]
    missing: list[str]
    reason: str

    @property
    def satisfied(self) -> bool:
        return not self.missing


class RuleStore:
    """Holds the constitutional rule set and the override audit log.

    A missing or unreadable rule file leaves the store with an empty rule
    set, which means every actor is unrestricted. That fail-open default is
    intentional and is reported as a warning on every load.
    """

    def __init__(self, rules_path: Path, overrides_path: Path) -> None:
        self.rules_path = rules_path
        self.overrides_path = overrides_path
        self.lock_file = overrides_path.with_suffix(f"{overrides_path.suffix}.lock")
        self._lock = threading.Lock()
        self._ruleset = RuleSet.empty()
        self._active: list[Override] = []
        self._history: list[Override] = []
        self.reload()

    @property
    def ruleset(self) -> RuleSet:
        return self._ruleset

    def reload(self) -> None:
        self._ruleset = self._load_rules()
        with self._lock:
            self._active, self._history = self._read_overrides()

    def _load_rules(self) -> RuleSet:
        if not self.rules_path.exists():
            logger.warning(
                "Rule file %s not found; all actors are unrestricted.", self.rules_path
            )
            return RuleSet.empty()
        try:
            data = yaml.safe_load(self.rules_path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            logger.warning(
                "Could not load rule file %s (%s); all actors are unrestricted.",
                self.rules_path,
                exc,
            )
            return RuleSet.empty()
        if not isinstance(data, dict):
            logger.warning(
                "Rule file %s does not contain a mapping; all actors are unrestricted.",
                self.rules_path,
            )
            return RuleSet.empty()
        ruleset = RuleSet.from_dict(data)
        logger.debug(
            "Loaded %d rules for %d actors from %s",
            sum(len(rules) for rules in ruleset.rules.values()),
            len(ruleset.profiles),
            self.rules_path,
        )
        return ruleset

    def _read_overrides(self, *, strict: bool = False) -> tuple[list[Override], list[Override]]:
        """Read the override log.

        An unreadable log means no overrides are active. Writers pass
        ``strict=True`` so they never replace a log they could not parse.
        """
        if not self.overrides_path.exists():
            return [], []
        try:
            payload = json.loads(self.overrides_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            if strict:
                raise StateError(
                    f"Override log {self.overrides_path} is unreadable ({exc}); "
                    "repair or move it before changing overrides."
                ) from exc
            logger.warning(
                "Could not read override log %s (%s); no overrides are active.",
                self.overrides_path,
                exc,
            )
            return [], []
        if not isinstance(payload, dict):
            if strict:
                raise StateError(
                    f"Override log {self.overrides_path} is malformed; "
                    "repair or move it before changing overrides."
                )
            logger.warning(
                "Override log %s is malformed; no overrides are active.", self.overrides_path
            )
            return [], []

        def _parse(key: str) -> list[Override]:
            items = payload.get(key, [])
            if not isinstance(items, list):
                return []
            return [Override.from_dict(item) for item in items if isinstance(item, dict)]

        return _parse("active"), _parse("history")

    def _mutate(self, updater: Callable[[list[Override], list[Override]], Any]) -> Any:
        with self._lock, file_lock(self.lock_file):
            active, history = self._read_overrides(strict=True)
            result = updater(active, history)
            write_json_atomic(
                self.overrides_path,
                {
                    "active": [item.to_dict() for item in active],
                    "history": [item.to_dict() for item in history],
                },
            )
            self._active, self._history = active, history
        return result

    def activate_override(self, rule_id: str, task_id: str | None, reason: str) -> Override:
        rule_id = rule_id.strip()
        if not rule_id:
            raise ValueError("Override requires a rule id.")
        if not reason.strip():
            raise ValueError("Override requires a reason.")
        if rule_id not in self._ruleset.rule_ids():
            logger.warning("Override targets rule %s, which no loaded rule defines.", rule_id)
        override = Override(rule_id=rule_id, task_id=task_id, reason=reason.strip())

        def _updater(active: list[Override], history: list[Override]) -> Override:
            active.append(override)
            history.append(Override.from_dict(override.to_dict()))
            return override

        self._mutate(_updater)
        logger.info(
            "Override %s activated for rule %s (task: %s)",
            override.id,
            rule_id,
            task_id or "any",
        )
        return override

    def deactivate(self, task_id: str) -> int:
        """Deactivate overrides scoped to ``task_id``, or every override for ``"all"``."""

        def _updater(active: list[Override], history: list[Override]) -> int:
            if task_id == ALL_TASKS:
                removed = list(active)
            else:
                removed = [item for item in active if item.task_id == task_id]
            removed_ids = {item.id for item in removed}
            active[:] = [item for item in active if item.id not in removed_ids]
            stamp = utcnow_iso()
            for entry in history:
                if entry.id in removed_ids and entry.active:
                    entry.active = False
                    entry.deactivated_at = stamp
            return len(removed)

        count = self._mutate(_updater)
        if count:
            logger.info("Deactivated %d override(s) for %s", count, task_id)
        return count

    def list_active(self) -> list[Override]:
        return list(self._active)

    def history(self) -> list[Override]:
        return list(self._history)

    def suppressing_override(self, rule_id: str, task_id: str | None) -> Override | None:
        for override in self._active:
            if override.applies_to(rule_id, task_id):
                return override
        return None

    def rules_for(self, actor: str) -> list[Rule]:
        return list(self._ruleset.rules.get(actor, []))

    def content_rules_for(self, actor: str) -> list[ContentRule]:
        return list(self._ruleset.content_rules.get(actor, []))

    def is_restricted(self, actor: str) -> bool:
        return self._ruleset.restricted(actor)

    def actor_profile(self, actor: str) -> ActorProfile:
        profile = self._ruleset.profiles.get(actor)
        return profile if profile is not None else ActorProfile()

    def check_approvals(self, change_type: str, approvals: list[str]) -> ApprovalCheck:
        requirement = self._ruleset.approval_requirements.get(change_type)
        if requirement is None:
            return ApprovalCheck(change_type, [], list(approvals), [], "No approval required")
        missing = [actor for actor in requirement.requires if actor not in approvals]
        return ApprovalCheck(
            change_type=change_type,
            required=list(requirement.requires),
            approved=[actor for actor in approvals if actor in requirement.requires],
            missing=missing,
            reason=requirement.reason,
        )

    def veto_protocol(self, name: str) -> Any:
        return self._ruleset.veto_protocol.get(name)
