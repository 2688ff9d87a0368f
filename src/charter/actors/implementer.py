from __future__ import annotations

import re
from typing import Any

from charter.actors.base import Actor

CODE_BLOCK_PATTERN = re.compile(r"```[\w+-]*\n(.*?)```", re.DOTALL)


class ImplementerActor(Actor):
    role = "implementer"
    instructions = """
You are the implementation engineer.
Implement exactly what the task describes and follow the project's conventions.
Output your implementation in fenced code blocks with language tags.
""".strip()

    def parse_output(self, content: str) -> tuple[bool, Any]:
        code_blocks = [block.strip() for block in CODE_BLOCK_PATTERN.findall(content)]
        return True, {
            "full_response": content,
            "code_blocks": code_blocks,
            "has_code": bool(code_blocks),
        }
