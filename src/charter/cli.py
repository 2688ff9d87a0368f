from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click
import yaml

from charter.actors import ActorRegistry, build_registry
from charter.config import CharterConfig, load_config, save_config
from charter.errors import CharterError
from charter.executor import PhaseExecutor
from charter.orchestrator import Orchestrator
from charter.policy import ALL_TASKS, PolicyEngine, RuleStore
from charter.state import GitCommitHook, StateManager, Subtask, TaskState, UsageLedger

SAMPLE_RULES = """\
agents:
  qwen:
    role: Implementer
    can:
      - Write application code
      - Write tests
    cannot:
      - Change database schema
      - Modify authentication or authorization logic
      - Add new dependencies
      - Make architectural decisions
    limits:
      - Follow existing patterns
  claude:
    role: Reviewer
    can:
      - Review code
      - Veto unsafe changes
    cannot:
      - Deploy to production
  gemini:
    role: Infrastructure
    can:
      - Manage CI/CD and deployment configuration
    cannot:
      - Change API contract
approval_requirements:
  schema_change:
    requires: [claude, human]
    reason: Schema changes affect data integrity
  dependency:
    requires: [claude]
    reason: New dependencies widen the supply chain
veto_protocol:
  reviewer:
    actor: claude
    conditions:
      - Security vulnerability
      - Data loss risk
"""


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: CharterConfig
    state: StateManager
    rules: RuleStore
    policy: PolicyEngine
    registry: ActorRegistry
    usage: UsageLedger
    orchestrator: Orchestrator


def _resolve_path(repo_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = repo_root / path
    return path.resolve()


def _configure_logging(level: str) -> None:
    # No-op once the root logger has handlers, so --log-level wins.
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(name)s: %(message)s",
    )


def _record_backend_event(state: StateManager, event: dict[str, Any]) -> None:
    state.append_event(dict(event))


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
    except CharterError as exc:
        raise click.ClickException(str(exc)) from exc
    _configure_logging(config.logging.level)

    state_dir = _resolve_path(repo_root, config.project.state_dir)
    persist_hook = GitCommitHook(repo_root) if config.state.autocommit else None
    state = StateManager(state_dir, persist_hook=persist_hook)
    rules = RuleStore(
        _resolve_path(repo_root, config.rules.rules_path),
        _resolve_path(repo_root, config.rules.overrides_path),
    )
    policy = PolicyEngine(rules, repo_root)
    usage = UsageLedger(state_dir / "usage.json")
    try:
        registry = build_registry(
            config, repo_root, event_hook=lambda event: _record_backend_event(state, event)
        )
    except CharterError as exc:
        raise click.ClickException(str(exc)) from exc
    executor = PhaseExecutor(policy, registry, state, usage)
    orchestrator = Orchestrator(
        state,
        rules,
        policy,
        registry,
        executor,
        clear_task_overrides_on_archive=config.rules.clear_task_overrides_on_archive,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        state=state,
        rules=rules,
        policy=policy,
        registry=registry,
        usage=usage,
        orchestrator=orchestrator,
    )


def _runtime_from(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_path(repo_root, config_value))


def _load_plan_file(path: Path) -> Any:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise click.ClickException(f"Could not read plan file {path}: {exc}") from exc
    try:
        if path.suffix.lower() == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise click.ClickException(f"Plan file {path} is not valid: {exc}") from exc


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _echo_task(task_state: TaskState) -> None:
    click.echo(f"Task {task_state.task_id}: {task_state.status}")
    click.echo(f"Phase: {task_state.current_phase}/{len(task_state.plan.phases)}")
    if task_state.blocked_reason:
        click.echo(f"Blocked: {task_state.blocked_reason}")
    for outcome in task_state.outcomes:
        if outcome.denied:
            marker = f"DENIED [{outcome.rule_id}] {outcome.denied_reason}"
        elif outcome.success:
            marker = "ok"
        else:
            marker = f"FAILED {outcome.error or ''}".rstrip()
        click.echo(f"  phase {outcome.phase} {outcome.actor}/{outcome.action}: {marker}")


@click.group()
@click.option("--log-level", default=None, help="Override [logging] level from the config.")
def cli(log_level: str | None) -> None:
    """Charter: constitutional orchestration for coding agents."""
    if log_level:
        _configure_logging(log_level)


@cli.command("init")
@click.option("--config", "config_value", default="charter.toml", show_default=True)
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except CharterError as exc:
        raise click.ClickException(str(exc)) from exc
    save_config(config_path, config)

    _resolve_path(repo_root, config.project.state_dir).mkdir(parents=True, exist_ok=True)
    rules_path = _resolve_path(repo_root, config.rules.rules_path)
    if not rules_path.exists():
        rules_path.parent.mkdir(parents=True, exist_ok=True)
        rules_path.write_text(SAMPLE_RULES, encoding="utf-8")
        click.echo(f"Rules: {rules_path} (sample written)")
    else:
        click.echo(f"Rules: {rules_path}")

    click.echo(f"Initialized Charter in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Actors: {', '.join(sorted(config.actors))}")


@cli.command("plan")
@click.argument("plan_file", type=click.Path(path_type=Path))
@click.option("--task-id", default=None)
@click.option("--config", "config_value", default="charter.toml", show_default=True)
def plan_command(plan_file: Path, task_id: str | None, config_value: str) -> None:
    runtime = _runtime_from(config_value)
    payload = _load_plan_file(plan_file)
    try:
        task_state = runtime.orchestrator.create_plan(payload, task_id=task_id)
    except CharterError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Planned task {task_state.task_id} ({len(task_state.plan.phases)} phases)")


@cli.command("advance")
@click.option("--config", "config_value", default="charter.toml", show_default=True)
def advance_command(config_value: str) -> None:
    runtime = _runtime_from(config_value)
    try:
        task_state = asyncio.run(runtime.orchestrator.advance())
    except CharterError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_task(task_state)


@cli.command("run")
@click.option("--config", "config_value", default="charter.toml", show_default=True)
def run_command(config_value: str) -> None:
    runtime = _runtime_from(config_value)
    try:
        task_state = asyncio.run(runtime.orchestrator.run())
    except CharterError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_task(task_state)


@cli.command("unblock")
@click.option("--approve", "approvals", multiple=True, required=True)
@click.option("--config", "config_value", default="charter.toml", show_default=True)
def unblock_command(approvals: tuple[str, ...], config_value: str) -> None:
    runtime = _runtime_from(config_value)
    try:
        task_state = runtime.orchestrator.unblock(list(approvals))
    except CharterError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Task {task_state.task_id} unblocked; approvals: {', '.join(task_state.approvals)}")


@cli.command("status")
@click.option("--config", "config_value", default="charter.toml", show_default=True)
def status_command(config_value: str) -> None:
    runtime = _runtime_from(config_value)
    try:
        task_state = runtime.orchestrator.status()
    except CharterError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(
        {
            "task": task_state.to_dict() if task_state else None,
            "history": runtime.state.history(),
        }
    )


@cli.command("check")
@click.argument("actor")
@click.option("--action", required=True)
@click.option("--description", required=True)
@click.option("--file", "files", multiple=True)
@click.option("--task", "task_id", default=None)
@click.option("--config", "config_value", default="charter.toml", show_default=True)
def check_command(
    actor: str,
    action: str,
    description: str,
    files: tuple[str, ...],
    task_id: str | None,
    config_value: str,
) -> None:
    runtime = _runtime_from(config_value)
    subtask = Subtask(actor=actor, action=action, description=description, files=tuple(files))
    decision = runtime.policy.evaluate(actor, action, subtask, task_id)
    _echo_json(decision.to_dict())


@cli.group("override")
def override_group() -> None:
    """Manage constitutional rule overrides."""


@override_group.command("add")
@click.argument("rule_id")
@click.argument("reason")
@click.option("--task", "task_id", default=None)
@click.option("--config", "config_value", default="charter.toml", show_default=True)
def override_add_command(rule_id: str, reason: str, task_id: str | None, config_value: str) -> None:
    runtime = _runtime_from(config_value)
    try:
        override = runtime.rules.activate_override(rule_id, task_id, reason)
    except (ValueError, CharterError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Override {override.id} active for {override.rule_id} (task: {task_id or 'any'})")


@override_group.command("list")
@click.option("--history", "include_history", is_flag=True, default=False)
@click.option("--config", "config_value", default="charter.toml", show_default=True)
def override_list_command(include_history: bool, config_value: str) -> None:
    runtime = _runtime_from(config_value)
    items = runtime.rules.history() if include_history else runtime.rules.list_active()
    _echo_json([item.to_dict() for item in items])


@override_group.command("clear")
@click.argument("task_id")
@click.option("--config", "config_value", default="charter.toml", show_default=True)
def override_clear_command(task_id: str, config_value: str) -> None:
    runtime = _runtime_from(config_value)
    try:
        count = runtime.rules.deactivate(task_id)
    except CharterError as exc:
        raise click.ClickException(str(exc)) from exc
    scope = "all tasks" if task_id == ALL_TASKS else f"task {task_id}"
    click.echo(f"Deactivated {count} override(s) for {scope}")


@cli.command("usage")
@click.option("--period", default="7d", show_default=True)
@click.option("--config", "config_value", default="charter.toml", show_default=True)
def usage_command(period: str, config_value: str) -> None:
    runtime = _runtime_from(config_value)
    _echo_json(runtime.usage.summary(period))
