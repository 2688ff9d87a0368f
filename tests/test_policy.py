from pathlib import Path

from charter.policy import PolicyEngine, RuleStore
from charter.state import Subtask

RULES = """\
agents:
  qwen:
    role: Implementer
    cannot:
      - Change database schema
      - Modify authentication logic
  claude:
    role: Reviewer
    cannot: []
"""


def _engine(tmp_path: Path) -> PolicyEngine:
    rules_path = tmp_path / "rules.yaml"
    rules_path.write_text(RULES, encoding="utf-8")
    store = RuleStore(rules_path, tmp_path / "overrides.json")
    return PolicyEngine(store, tmp_path)


def _subtask(actor: str, description: str, files: tuple[str, ...] = ()) -> Subtask:
    return Subtask(actor=actor, action="implement", description=description, files=files)


def test_schema_change_denied_for_implementer(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    subtask = _subtask("qwen", "Add column via migration", ("db/migrations/0002.sql",))

    decision = engine.evaluate("qwen", "implement", subtask, "T1")

    assert not decision.allowed
    assert decision.rule_id == "qwen.cannot.change_schema"
    assert decision.reason == "qwen cannot change database schemas (constitutional rule)"


def test_first_matching_rule_wins(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    subtask = _subtask("qwen", "Store session tokens in a new schema table")

    decision = engine.evaluate("qwen", "implement", subtask)

    assert decision.rule_id == "qwen.cannot.change_schema"


def test_override_suppresses_only_its_rule(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.rules.activate_override("qwen.cannot.change_schema", "T1", "DBA approved")
    subtask = _subtask("qwen", "Store session tokens in a new schema table")

    suppressed = engine.evaluate("qwen", "implement", subtask, "T1")
    other_task = engine.evaluate("qwen", "implement", subtask, "T2")

    assert suppressed.rule_id == "qwen.cannot.modify_auth"
    assert other_task.rule_id == "qwen.cannot.change_schema"


def test_global_override_allows_any_task(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.rules.activate_override("qwen.cannot.change_schema", None, "Schema freeze lifted")
    subtask = _subtask("qwen", "Add column via migration")

    assert engine.evaluate("qwen", "implement", subtask, "T7").allowed


def test_unlisted_actor_is_unrestricted(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    (tmp_path / "app.py").write_text('password = "hunter2"\n', encoding="utf-8")
    subtask = _subtask("gemini", "Deploy schema migration", ("app.py",))

    assert engine.evaluate("gemini", "deploy", subtask).allowed


def test_content_rules_scan_referenced_files(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "repo.py").write_text(
        'def find(cur, name):\n    cur.execute("SELECT * FROM users WHERE name=" + name)\n',
        encoding="utf-8",
    )
    subtask = _subtask("claude", "Review the lookup helper", ("src/missing.py", "src/repo.py"))

    decision = engine.evaluate("claude", "review", subtask)

    assert not decision.allowed
    assert decision.rule_id == "claude.content.sql_injection"
    assert decision.reason is not None and decision.reason.endswith("(src/repo.py)")


def test_content_rule_can_be_overridden(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    (tmp_path / "settings.py").write_text('SECRET = "dev-only"\n', encoding="utf-8")
    engine.rules.activate_override("claude.content.hardcoded_secret", None, "Dev fixture")
    subtask = _subtask("claude", "Review settings", ("settings.py",))

    assert engine.evaluate("claude", "review", subtask).allowed


def test_missing_files_are_skipped(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    subtask = _subtask("qwen", "Write the report module", ("src/report.py",))

    decision = engine.evaluate("qwen", "implement", subtask)

    assert decision.allowed
    assert decision.to_dict() == {"allowed": True, "reason": None, "rule_id": None}


def test_evaluate_does_not_mutate_overrides(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.rules.activate_override("qwen.cannot.change_schema", "T1", "DBA approved")
    before = [item.to_dict() for item in engine.rules.history()]

    engine.evaluate("qwen", "implement", _subtask("qwen", "Alter table users"), "T1")
    engine.evaluate("qwen", "implement", _subtask("qwen", "Alter table users"), "T2")

    assert [item.to_dict() for item in engine.rules.history()] == before
