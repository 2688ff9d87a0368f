from charter.policy.engine import Decision, PolicyEngine
from charter.policy.rules import (
    ContentCategory,
    ContentRule,
    Matcher,
    MatcherCategory,
    Rule,
    RuleSet,
    classify,
)
from charter.policy.store import ALL_TASKS, ApprovalCheck, Override, RuleStore

__all__ = [
    "ALL_TASKS",
    "ApprovalCheck",
    "ContentCategory",
    "ContentRule",
    "Decision",
    "Matcher",
    "MatcherCategory",
    "Override",
    "PolicyEngine",
    "Rule",
    "RuleSet",
    "RuleStore",
    "classify",
]
