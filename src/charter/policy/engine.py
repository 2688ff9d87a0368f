from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from charter.policy.store import RuleStore
from charter.state.models import Subtask

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Decision:
    allowed: bool
    reason: str | None = None
    rule_id: str | None = None

    @classmethod
    def allow(cls) -> Decision:
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str, rule_id: str) -> Decision:
        return cls(allowed=False, reason=reason, rule_id=rule_id)

    def to_dict(self) -> dict[str, object]:
        return {"allowed": self.allowed, "reason": self.reason, "rule_id": self.rule_id}


class PolicyEngine:
    """Decides whether an actor may perform a subtask.

    Evaluation reads the rule store and referenced files but never mutates
    anything; overrides are managed through :class:`RuleStore`.
    """

    def __init__(self, rules: RuleStore, project_root: Path) -> None:
        self.rules = rules
        self.project_root = project_root.resolve()

    def _resolve(self, path: str) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.project_root / candidate
        return candidate

    def _read_text(self, path: str) -> str | None:
        resolved = self._resolve(path)
        if not resolved.is_file():
            return None
        try:
            return resolved.read_bytes().decode("utf-8", errors="replace")
        except OSError as exc:
            logger.debug("Skipping content check for %s: %s", resolved, exc)
            return None

    def evaluate(
        self,
        actor: str,
        action: str,
        subtask: Subtask,
        task_id: str | None = None,
    ) -> Decision:
        if not self.rules.is_restricted(actor):
            return Decision.allow()

        description = subtask.description
        files = list(subtask.files)

        for rule in self.rules.rules_for(actor):
            if not rule.matches(action, description, files):
                continue
            override = self.rules.suppressing_override(rule.id, task_id)
            if override is not None:
                logger.debug("Rule %s suppressed by override %s", rule.id, override.id)
                continue
            logger.debug("Rule %s denied %s/%s", rule.id, actor, action)
            return Decision.deny(rule.message, rule.id)

        if not files:
            return Decision.allow()

        content_rules = [
            rule
            for rule in self.rules.content_rules_for(actor)
            if self.rules.suppressing_override(rule.id, task_id) is None
        ]
        if not content_rules:
            return Decision.allow()
        for path in files:
            content = self._read_text(path)
            if content is None:
                continue
            for rule in content_rules:
                if rule.matches_content(content):
                    logger.debug("Content rule %s matched %s", rule.id, path)
                    return Decision.deny(f"{rule.message} ({path})", rule.id)
        return Decision.allow()
