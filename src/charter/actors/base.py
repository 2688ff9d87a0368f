from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

from charter.backends.base import AgentBackend
from charter.state.models import Subtask

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentResult:
    success: bool
    output: Any = None
    duration_ms: int = 0
    error: str | None = None


class Actor:
    """Execution capability for one named actor.

    ``execute`` never raises: transport errors, timeouts and unexpected
    exceptions become an unsuccessful :class:`AgentResult`.
    """

    role: str = "actor"
    instructions: str = "You are a software agent. Complete the task described below."

    def __init__(self, name: str, backend: AgentBackend) -> None:
        self.name = name
        self.backend = backend

    def build_prompt(self, subtask: Subtask, shared_context: dict[str, Any]) -> str:
        lines = [
            self.instructions.strip(),
            "",
            f"# Task: {subtask.description}",
            f"Action: {subtask.action}",
        ]
        if subtask.files:
            lines.append("Files:")
            lines.extend(f"- {path}" for path in subtask.files)
        summary = shared_context.get("summary")
        if summary:
            lines.extend(["", f"Plan summary: {summary}"])
        return "\n".join(lines)

    def parse_output(self, content: str) -> tuple[bool, Any]:
        return True, {"full_response": content}

    async def execute(self, subtask: Subtask, shared_context: dict[str, Any]) -> AgentResult:
        start = time.monotonic()
        prompt = self.build_prompt(subtask, shared_context)
        try:
            chunks: list[str] = []
            async for chunk in self.backend.execute(prompt, shared_context):
                chunks.append(chunk)
            content = "".join(chunks).strip()
            success, output = self.parse_output(content)
        except Exception as exc:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.warning("Actor %s failed on '%s': %s", self.name, subtask.description, exc)
            return AgentResult(success=False, duration_ms=duration_ms, error=str(exc))
        duration_ms = int((time.monotonic() - start) * 1000)
        return AgentResult(success=success, output=output, duration_ms=duration_ms)
