from __future__ import annotations

import asyncio
import json
import os
import tempfile
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from charter.backends.base import AgentBackend, BackendExecutionError, BackendProcessError

PROMPT_PLACEHOLDER = "{prompt}"
PROMPT_FILE_PLACEHOLDER = "{prompt_file}"


class CommandBackend(AgentBackend):
    """Runs an agent CLI as a subprocess.

    ``{prompt}`` in the argv template is replaced with the prompt text and
    ``{prompt_file}`` with a temporary file holding it. Without either
    placeholder the prompt is written to stdin.
    """

    def __init__(
        self,
        name: str,
        command: list[str],
        working_directory: Path | None = None,
    ) -> None:
        if not command:
            raise ValueError(f"Backend '{name}' needs a non-empty command.")
        self.name = name
        self.command = list(command)
        self.working_directory = working_directory

    def build_command(self, prompt: str, prompt_file: str | None = None) -> list[str]:
        argv: list[str] = []
        for part in self.command:
            if PROMPT_FILE_PLACEHOLDER in part:
                part = part.replace(PROMPT_FILE_PLACEHOLDER, prompt_file or "")
            if PROMPT_PLACEHOLDER in part:
                part = part.replace(PROMPT_PLACEHOLDER, prompt)
            argv.append(part)
        return argv

    def _uses_stdin(self) -> bool:
        return not any(
            PROMPT_PLACEHOLDER in part or PROMPT_FILE_PLACEHOLDER in part for part in self.command
        )

    @staticmethod
    def render_prompt(prompt: str, context: dict[str, Any]) -> str:
        if not context:
            return prompt
        return f"{prompt}\n\nContext JSON:\n{json.dumps(context, ensure_ascii=False, indent=2)}"

    async def execute(self, prompt: str, context: dict[str, Any]) -> AsyncIterator[str]:
        full_prompt = self.render_prompt(prompt, context)
        with tempfile.NamedTemporaryFile(
            mode="w", suffix=".md", prefix=f"{self.name}-prompt-", encoding="utf-8"
        ) as temp_file:
            temp_file.write(full_prompt)
            temp_file.flush()

            command = self.build_command(full_prompt, temp_file.name)
            use_stdin = self._uses_stdin()
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=str(self.working_directory) if self.working_directory else None,
                    env=os.environ.copy(),
                    stdin=asyncio.subprocess.PIPE if use_stdin else asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError as exc:
                raise BackendProcessError(
                    f"{self.name} binary not found: {command[0]}",
                    backend=self.name,
                    retriable=False,
                ) from exc

            if process.stdout is None:
                raise BackendProcessError(
                    f"{self.name} backend did not expose stdout.",
                    backend=self.name,
                    retriable=False,
                )

            try:
                if use_stdin and process.stdin is not None:
                    process.stdin.write(full_prompt.encode("utf-8"))
                    await process.stdin.drain()
                    process.stdin.close()

                async for raw_line in process.stdout:
                    line = raw_line.decode("utf-8", errors="replace")
                    if line:
                        yield line

                return_code = await process.wait()
                stderr_output = ""
                if process.stderr is not None:
                    stderr_output = (
                        (await process.stderr.read()).decode("utf-8", errors="replace").strip()
                    )
                if return_code != 0:
                    raise BackendExecutionError(
                        f"{self.name} backend failed with exit code {return_code}: "
                        f"{stderr_output}",
                        backend=self.name,
                        exit_code=return_code,
                        retriable=True,
                    )
            finally:
                if process.returncode is None:
                    # Abandoned mid-stream (timeout or cancellation).
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass
                    await process.wait()
