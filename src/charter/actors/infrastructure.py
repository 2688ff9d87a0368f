from __future__ import annotations

from typing import Any

from charter.actors.base import Actor

INFRA_COMMANDS = ("gcloud", "kubectl", "terraform", "docker")


class InfrastructureActor(Actor):
    role = "infrastructure"
    instructions = """
You are the infrastructure specialist (cloud, databases, CI/CD).
List the configuration and commands required, in fenced code blocks.
""".strip()

    def parse_output(self, content: str) -> tuple[bool, Any]:
        return True, {
            "full_response": content,
            "has_config": ".env" in content or "config" in content,
            "has_commands": any(command in content for command in INFRA_COMMANDS),
        }
