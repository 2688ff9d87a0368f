"""Rule model for constitutional policy.

Free-text ``cannot`` entries from the rule file are classified into a closed
set of :class:`MatcherCategory` values. Each category owns one declarative
:class:`Matcher`, so the evaluator never does ad hoc substring tests.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class MatcherCategory(StrEnum):
    CHANGE_SCHEMA = "change_schema"
    MODIFY_AUTH = "modify_auth"
    ADD_DEPENDENCY = "add_dependency"
    CHANGE_API = "change_api"
    ARCHITECTURE = "architecture"
    DEPLOY = "deploy"


class ContentCategory(StrEnum):
    SQL_INJECTION = "sql_injection"
    HARDCODED_SECRET = "hardcoded_secret"


@dataclass(slots=True, frozen=True)
class Matcher:
    """Predicate over a subtask's action, description and file paths.

    The description is matched lower-cased; file patterns are compiled
    case-insensitive by the category table.
    """

    description: re.Pattern[str] | None = None
    files: re.Pattern[str] | None = None
    actions: frozenset[str] = frozenset()

    def matches(self, action: str, description: str, files: Sequence[str]) -> bool:
        if self.actions and action.strip().lower() in self.actions:
            return True
        if self.description is not None and self.description.search(description.lower()):
            return True
        if self.files is not None and any(self.files.search(path) for path in files):
            return True
        return False


@dataclass(slots=True, frozen=True)
class CategorySpec:
    category: MatcherCategory
    keywords: tuple[str, ...]
    matcher: Matcher
    message: str

    def classifies(self, text: str) -> bool:
        lowered = text.lower()
        return any(keyword in lowered for keyword in self.keywords)


CATEGORY_SPECS: tuple[CategorySpec, ...] = (
    CategorySpec(
        category=MatcherCategory.CHANGE_SCHEMA,
        keywords=("database schema", "schema change"),
        matcher=Matcher(
            description=re.compile(r"schema|prisma|migration|alter\s+table"),
            files=re.compile(r"schema|migration", re.IGNORECASE),
            actions=frozenset({"migrate"}),
        ),
        message="{actor} cannot change database schemas (constitutional rule)",
    ),
    CategorySpec(
        category=MatcherCategory.MODIFY_AUTH,
        keywords=("authentication", "authorization"),
        matcher=Matcher(
            description=re.compile(r"auth|authentication|authorization|jwt|session"),
            files=re.compile(r"auth|session|jwt", re.IGNORECASE),
        ),
        message="{actor} cannot modify authentication/authorization logic (constitutional rule)",
    ),
    CategorySpec(
        category=MatcherCategory.ADD_DEPENDENCY,
        keywords=("dependencies", "add new dependencies"),
        matcher=Matcher(
            description=re.compile(r"dependency|add package"),
            files=re.compile(
                r"package\.json|pnpm-lock|yarn\.lock|requirements[^/]*\.txt|pyproject\.toml"
                r"|poetry\.lock|pipfile",
                re.IGNORECASE,
            ),
        ),
        message="{actor} cannot add dependencies without approval (constitutional rule)",
    ),
    CategorySpec(
        category=MatcherCategory.CHANGE_API,
        keywords=("api contract", "change api"),
        matcher=Matcher(description=re.compile(r"api\s+contract|breaking change")),
        message="{actor} cannot change API contracts without approval (constitutional rule)",
    ),
    CategorySpec(
        category=MatcherCategory.ARCHITECTURE,
        keywords=("architectural decision",),
        matcher=Matcher(description=re.compile(r"architecture|design pattern|refactor structure")),
        message="{actor} cannot make architectural decisions (constitutional rule)",
    ),
    CategorySpec(
        category=MatcherCategory.DEPLOY,
        keywords=("production", "deploy"),
        matcher=Matcher(
            description=re.compile(r"deploy|production|release"),
            actions=frozenset({"deploy", "release"}),
        ),
        message="{actor} cannot deploy to production (constitutional rule)",
    ),
)

CONTENT_PATTERNS: dict[ContentCategory, tuple[re.Pattern[str], str]] = {
    ContentCategory.SQL_INJECTION: (
        re.compile(r"db\.query\(.*\+|\.execute\(.*\+|\.execute\(\s*f[\"']|sql\s*=\s*[\"'].*\+"),
        "Potential SQL injection detected in file content",
    ),
    ContentCategory.HARDCODED_SECRET: (
        re.compile(
            r"api[_-]?key\s*=\s*[\"'][^\"']+[\"']"
            r"|password\s*=\s*[\"'][^\"']+[\"']"
            r"|secret\s*=\s*[\"'][^\"']+[\"']",
            re.IGNORECASE,
        ),
        "Potential hardcoded secret detected in file content",
    ),
}


def classify(text: str) -> list[MatcherCategory]:
    """Map one free-text ``cannot`` entry onto every category it mentions."""
    return [spec.category for spec in CATEGORY_SPECS if spec.classifies(text)]


@dataclass(slots=True, frozen=True)
class Rule:
    id: str
    actor: str
    matcher: Matcher
    message: str
    category: str

    def matches(self, action: str, description: str, files: Sequence[str]) -> bool:
        return self.matcher.matches(action, description, files)


@dataclass(slots=True, frozen=True)
class ContentRule(Rule):
    pattern: re.Pattern[str]

    def matches_content(self, content: str) -> bool:
        return self.pattern.search(content) is not None


def build_actor_rules(actor: str, cannot: Iterable[str]) -> list[Rule]:
    specs = {spec.category: spec for spec in CATEGORY_SPECS}
    rules: list[Rule] = []
    seen: set[str] = set()
    for entry in cannot:
        for category in classify(str(entry)):
            rule_id = f"{actor}.cannot.{category.value}"
            if rule_id in seen:
                continue
            seen.add(rule_id)
            spec = specs[category]
            rules.append(
                Rule(
                    id=rule_id,
                    actor=actor,
                    matcher=spec.matcher,
                    message=spec.message.format(actor=actor),
                    category=category.value,
                )
            )
    return rules


def build_content_rules(actor: str) -> list[ContentRule]:
    return [
        ContentRule(
            id=f"{actor}.content.{category.value}",
            actor=actor,
            matcher=Matcher(),
            message=message,
            category=category.value,
            pattern=pattern,
        )
        for category, (pattern, message) in CONTENT_PATTERNS.items()
    ]


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


@dataclass(slots=True)
class ActorProfile:
    role: str = "Unknown"
    can: list[str] = field(default_factory=list)
    cannot: list[str] = field(default_factory=list)
    limits: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "can": list(self.can),
            "cannot": list(self.cannot),
            "limits": list(self.limits),
        }


@dataclass(slots=True)
class ApprovalRequirement:
    requires: list[str] = field(default_factory=list)
    reason: str = "No reason specified"


@dataclass(slots=True)
class RuleSet:
    profiles: dict[str, ActorProfile] = field(default_factory=dict)
    rules: dict[str, list[Rule]] = field(default_factory=dict)
    content_rules: dict[str, list[ContentRule]] = field(default_factory=dict)
    approval_requirements: dict[str, ApprovalRequirement] = field(default_factory=dict)
    veto_protocol: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> RuleSet:
        return cls()

    @classmethod
    def from_dict(cls, data: Any) -> RuleSet:
        if not isinstance(data, dict):
            return cls.empty()
        ruleset = cls()
        agents = data.get("agents")
        if isinstance(agents, dict):
            for actor, payload in agents.items():
                if not isinstance(payload, dict):
                    continue
                name = str(actor)
                profile = ActorProfile(
                    role=str(payload.get("role") or "Unknown"),
                    can=_string_list(payload.get("can")),
                    cannot=_string_list(payload.get("cannot")),
                    limits=_string_list(payload.get("limits")),
                )
                ruleset.profiles[name] = profile
                ruleset.rules[name] = build_actor_rules(name, profile.cannot)
                ruleset.content_rules[name] = build_content_rules(name)
        approvals = data.get("approval_requirements")
        if isinstance(approvals, dict):
            for change_type, payload in approvals.items():
                if not isinstance(payload, dict):
                    continue
                ruleset.approval_requirements[str(change_type)] = ApprovalRequirement(
                    requires=_string_list(payload.get("requires")),
                    reason=str(payload.get("reason") or "No reason specified"),
                )
        veto = data.get("veto_protocol")
        if isinstance(veto, dict):
            ruleset.veto_protocol = dict(veto)
        return ruleset

    def restricted(self, actor: str) -> bool:
        return actor in self.profiles

    def rule_ids(self) -> set[str]:
        ids = {rule.id for rules in self.rules.values() for rule in rules}
        ids.update(rule.id for rules in self.content_rules.values() for rule in rules)
        return ids
