import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from click.testing import CliRunner

from charter.actors import (
    ActorRegistry,
    ImplementerActor,
    InfrastructureActor,
    ReviewerActor,
)
from charter.backends.base import AgentBackend
from charter.cli import cli
from charter.config import load_config


class FakeBackend(AgentBackend):
    async def execute(self, prompt: str, context: dict[str, Any]) -> AsyncIterator[str]:
        _ = context
        if "security and architecture reviewer" in prompt:
            yield "No issues.\nSeverity: LOW\nVETO: NO"
            return
        yield "```python\nprint('done')\n```"


def _fake_registry(config, repo_root, event_hook=None) -> ActorRegistry:
    _ = config, repo_root, event_hook
    backend = FakeBackend()
    return ActorRegistry(
        {
            "qwen": ImplementerActor("qwen", backend),
            "claude": ReviewerActor("claude", backend),
            "gemini": InfrastructureActor("gemini", backend),
        }
    )


def _write_plan(path: Path, task_id: str, **subtask_extra: Any) -> None:
    plan = {
        "task_id": task_id,
        "summary": "Reporting endpoint",
        "phases": [
            {
                "phase": 1,
                "parallel": True,
                "subtasks": [
                    {"agent": "qwen", "action": "implement", "description": "Write report view"},
                    {
                        "agent": "claude",
                        "action": "review",
                        "description": "Review report view",
                        "critical": True,
                        **subtask_extra,
                    },
                ],
            },
            {
                "phase": 2,
                "parallel": False,
                "subtasks": [
                    {"agent": "gemini", "action": "configure", "description": "Wire CI job"}
                ],
            },
        ],
        "risks": [],
        "total_estimated_minutes": 20,
    }
    path.write_text(json.dumps(plan), encoding="utf-8")


def test_cli_full_lifecycle_commands(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("charter.cli.build_registry", _fake_registry)
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0, init_result.output
    assert (tmp_path / "charter.toml").exists()
    assert (tmp_path / ".charter" / "constitutional-rules.yaml").exists()
    assert load_config(tmp_path / "charter.toml").actors["qwen"].role == "implementer"

    _write_plan(tmp_path / "plan.json", "T1")
    plan_result = runner.invoke(cli, ["plan", "plan.json"])
    assert plan_result.exit_code == 0, plan_result.output
    assert "Planned task T1 (2 phases)" in plan_result.output

    duplicate = runner.invoke(cli, ["plan", "plan.json"])
    assert duplicate.exit_code != 0
    assert "still planned" in duplicate.output

    advance_result = runner.invoke(cli, ["advance"])
    assert advance_result.exit_code == 0, advance_result.output
    assert "Task T1: running" in advance_result.output
    assert "Phase: 1/2" in advance_result.output

    run_result = runner.invoke(cli, ["run"])
    assert run_result.exit_code == 0, run_result.output
    assert "Task T1: completed" in run_result.output

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    status = json.loads(status_result.output)
    assert status["task"] is None
    assert len(status["history"]) == 1

    usage_result = runner.invoke(cli, ["usage", "--period", "1d"])
    assert usage_result.exit_code == 0
    usage = json.loads(usage_result.output)
    assert usage["total_calls"] == 3
    assert sorted(usage["by_actor"]) == ["claude", "gemini", "qwen"]


def test_cli_check_and_override_commands(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("charter.cli.build_registry", _fake_registry)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0

    check_args = [
        "check",
        "qwen",
        "--action",
        "implement",
        "--description",
        "Alter table users",
        "--task",
        "T9",
    ]
    denied = runner.invoke(cli, check_args)
    assert denied.exit_code == 0, denied.output
    decision = json.loads(denied.output)
    assert decision["allowed"] is False
    assert decision["rule_id"] == "qwen.cannot.change_schema"

    add_result = runner.invoke(
        cli, ["override", "add", "qwen.cannot.change_schema", "DBA approved", "--task", "T9"]
    )
    assert add_result.exit_code == 0, add_result.output
    assert "qwen.cannot.change_schema" in add_result.output

    allowed = runner.invoke(cli, check_args)
    assert json.loads(allowed.output)["allowed"] is True

    listed = json.loads(runner.invoke(cli, ["override", "list"]).output)
    assert [item["task_id"] for item in listed] == ["T9"]

    cleared = runner.invoke(cli, ["override", "clear", "all"])
    assert cleared.exit_code == 0
    assert "Deactivated 1 override(s) for all tasks" in cleared.output
    assert json.loads(runner.invoke(cli, ["override", "list"]).output) == []
    history = json.loads(runner.invoke(cli, ["override", "list", "--history"]).output)
    assert len(history) == 1
    assert history[0]["active"] is False

    missing_reason = runner.invoke(cli, ["override", "add", "qwen.cannot.change_schema", " "])
    assert missing_reason.exit_code != 0


def test_cli_blocked_plan_needs_unblock(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("charter.cli.build_registry", _fake_registry)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _write_plan(tmp_path / "plan.json", "T5", change_type="schema_change")
    assert runner.invoke(cli, ["plan", "plan.json"]).exit_code == 0

    blocked = runner.invoke(cli, ["run"])
    assert blocked.exit_code == 0, blocked.output
    assert "Task T5: blocked" in blocked.output
    assert "Blocked: Approval required" in blocked.output

    refused = runner.invoke(cli, ["advance"])
    assert refused.exit_code != 0
    assert "is blocked" in refused.output

    unblocked = runner.invoke(cli, ["unblock", "--approve", "claude", "--approve", "human"])
    assert unblocked.exit_code == 0, unblocked.output
    assert "approvals: claude, human" in unblocked.output

    finished = runner.invoke(cli, ["run"])
    assert finished.exit_code == 0, finished.output
    assert "Task T5: completed" in finished.output


def test_cli_reports_missing_task_and_bad_plan(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("charter.cli.build_registry", _fake_registry)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0

    no_task = runner.invoke(cli, ["advance"])
    assert no_task.exit_code != 0
    assert "No active task" in no_task.output

    (tmp_path / "plan.yaml").write_text("summary: nothing\nphases: []\n", encoding="utf-8")
    bad_plan = runner.invoke(cli, ["plan", "plan.yaml"])
    assert bad_plan.exit_code != 0
    assert "phases" in bad_plan.output
