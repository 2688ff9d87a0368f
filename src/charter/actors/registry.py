from __future__ import annotations

from pathlib import Path

from charter.actors.base import Actor
from charter.actors.implementer import ImplementerActor
from charter.actors.infrastructure import InfrastructureActor
from charter.actors.reviewer import ReviewerActor
from charter.backends import CommandBackend, ResilientBackend, RetryPolicy
from charter.backends.resilient import BackendEventHook
from charter.config import CharterConfig
from charter.errors import ConfigurationError
from charter.state.models import Plan

ROLE_CLASSES: dict[str, type[Actor]] = {
    "implementer": ImplementerActor,
    "reviewer": ReviewerActor,
    "infrastructure": InfrastructureActor,
}


class ActorRegistry:
    """Maps actor names to their execution capability."""

    def __init__(self, actors: dict[str, Actor] | None = None) -> None:
        self._actors: dict[str, Actor] = dict(actors or {})

    def register(self, actor: Actor) -> None:
        self._actors[actor.name] = actor

    def names(self) -> list[str]:
        return sorted(self._actors)

    def get(self, name: str) -> Actor:
        try:
            return self._actors[name]
        except KeyError as exc:
            raise ConfigurationError(f"Unknown actor '{name}'.") from exc

    def resolve(self, plan: Plan) -> dict[str, Actor]:
        """Resolve every actor a plan names, failing on the first unknown one."""
        missing = [name for name in plan.actors() if name not in self._actors]
        if missing:
            known = ", ".join(self.names()) or "none"
            raise ConfigurationError(
                f"Plan {plan.task_id} references unknown actor(s): {', '.join(missing)} "
                f"(configured: {known})."
            )
        return {name: self._actors[name] for name in plan.actors()}


def build_registry(
    config: CharterConfig,
    repo_root: Path,
    event_hook: BackendEventHook | None = None,
) -> ActorRegistry:
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    registry = ActorRegistry()
    for name, actor_config in config.actors.items():
        if not actor_config.command:
            raise ConfigurationError(f"Actor '{name}' has no command configured.")
        fallback = None
        if actor_config.fallback:
            fallback = CommandBackend(f"{name}-fallback", actor_config.fallback, repo_root)
        backend = ResilientBackend(
            primary_name=name,
            primary_backend=CommandBackend(name, actor_config.command, repo_root),
            retry_policy=policy,
            fallback_name=f"{name}-fallback" if fallback else None,
            fallback_backend=fallback,
            event_hook=event_hook,
        )
        actor_class = ROLE_CLASSES.get(actor_config.role)
        if actor_class is None:
            raise ConfigurationError(f"Actor '{name}' has unsupported role '{actor_config.role}'.")
        registry.register(actor_class(name, backend))
    return registry
