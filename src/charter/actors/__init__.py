from charter.actors.base import Actor, AgentResult
from charter.actors.implementer import ImplementerActor
from charter.actors.infrastructure import InfrastructureActor
from charter.actors.registry import ActorRegistry, build_registry
from charter.actors.reviewer import ReviewerActor

__all__ = [
    "Actor",
    "ActorRegistry",
    "AgentResult",
    "ImplementerActor",
    "InfrastructureActor",
    "ReviewerActor",
    "build_registry",
]
