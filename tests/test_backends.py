import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from charter.backends import CommandBackend, RetryPolicy
from charter.backends.base import AgentBackend, BackendExecutionError, BackendProcessError
from charter.backends.resilient import ResilientBackend


class AlwaysFailBackend(AgentBackend):
    def __init__(self, retriable: bool = True) -> None:
        self.retriable = retriable
        self.calls = 0

    async def execute(self, prompt: str, context: dict[str, Any]) -> AsyncIterator[str]:
        _ = prompt, context
        self.calls += 1
        raise BackendExecutionError("boom", backend="fake", retriable=self.retriable)
        yield ""  # pragma: no cover


class SuccessBackend(AgentBackend):
    async def execute(self, prompt: str, context: dict[str, Any]) -> AsyncIterator[str]:
        _ = prompt, context
        yield "ok"


class SlowBackend(AgentBackend):
    async def execute(self, prompt: str, context: dict[str, Any]) -> AsyncIterator[str]:
        _ = prompt, context
        await asyncio.sleep(5)
        yield "late"


class FakeStdout:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = lines
        self._index = 0

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStdin:
    def __init__(self) -> None:
        self.written = b""
        self.closed = False

    def write(self, data: bytes) -> None:
        self.written += data

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True


class FakeStderr:
    def __init__(self, payload: bytes = b"") -> None:
        self.payload = payload

    async def read(self) -> bytes:
        return self.payload


class FakeProcess:
    def __init__(self, lines: list[bytes], return_code: int = 0, stderr: bytes = b"") -> None:
        self.stdout = FakeStdout(lines)
        self.stderr = FakeStderr(stderr)
        self.stdin = FakeStdin()
        self.return_code = return_code
        self.returncode: int | None = None
        self.killed = False

    def kill(self) -> None:
        self.killed = True
        self.return_code = -9

    async def wait(self) -> int:
        self.returncode = self.return_code
        return self.return_code


class HangingStdout:
    def __aiter__(self) -> "HangingStdout":
        return self

    async def __anext__(self) -> bytes:
        await asyncio.sleep(5)
        return b"never\n"


def _collect(backend: AgentBackend, prompt: str = "prompt", context: dict | None = None) -> str:
    async def _run() -> str:
        parts: list[str] = []
        async for part in backend.execute(prompt, context or {}):
            parts.append(part)
        return "".join(parts)

    return asyncio.run(_run())


def test_command_placeholders_are_substituted() -> None:
    backend = CommandBackend("qwen", ["qwen", "chat", "--file", "{prompt_file}", "--no-stream"])

    command = backend.build_command("write code", "/tmp/prompt.md")

    assert command == ["qwen", "chat", "--file", "/tmp/prompt.md", "--no-stream"]


def test_prompt_placeholder_inlines_prompt() -> None:
    backend = CommandBackend("claude", ["claude", "-p", "{prompt}", "--output-format", "text"])

    assert backend.build_command("review this")[2] == "review this"


def test_empty_command_is_rejected() -> None:
    with pytest.raises(ValueError):
        CommandBackend("broken", [])


def test_render_prompt_appends_context_json() -> None:
    rendered = CommandBackend.render_prompt("do it", {"task_id": "T1"})

    assert rendered.startswith("do it")
    assert "Context JSON:" in rendered
    assert '"task_id": "T1"' in rendered
    assert CommandBackend.render_prompt("do it", {}) == "do it"


def test_command_backend_streams_stdout_and_feeds_stdin(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    captured: dict[str, Any] = {}
    process = FakeProcess([b"line one\n", b"line two\n"])

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = args
        captured["kwargs"] = kwargs
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    backend = CommandBackend("gemini", ["gemini-cli"], working_directory=Path("/work"))

    output = _collect(backend, "configure ci", {"task_id": "T1"})

    assert output == "line one\nline two\n"
    assert captured["args"] == ("gemini-cli",)
    assert captured["kwargs"]["cwd"] == "/work"
    assert process.stdin.written.startswith(b"configure ci")
    assert process.stdin.closed is True


def test_command_backend_nonzero_exit_is_retriable_error(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess([], return_code=2, stderr=b"rate limited")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    backend = CommandBackend("claude", ["claude", "-p", "{prompt}"])

    with pytest.raises(BackendExecutionError, match="rate limited") as excinfo:
        _collect(backend)

    assert excinfo.value.exit_code == 2
    assert excinfo.value.retriable is True


def test_command_backend_missing_binary_is_not_retriable(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    backend = CommandBackend("qwen", ["qwen-missing", "{prompt}"])

    with pytest.raises(BackendProcessError, match="binary not found") as excinfo:
        _collect(backend)

    assert excinfo.value.retriable is False


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend()
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0),
        event_hook=events.append,
    )

    output = _collect(backend)

    assert output == "ok"
    assert primary.calls == 2
    event_names = [event["event"] for event in events]
    assert "backend_retry" in event_names
    assert "backend_attempt_failed" in event_names
    assert "backend_fallback_success" in event_names


def test_resilient_backend_skips_retries_for_non_retriable_errors() -> None:
    primary = AlwaysFailBackend(retriable=False)
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    with pytest.raises(BackendExecutionError, match="All backend attempts failed"):
        _collect(backend)

    assert primary.calls == 1


def test_resilient_backend_times_out() -> None:
    events: list[dict[str, Any]] = []
    backend = ResilientBackend(
        primary_name="slow",
        primary_backend=SlowBackend(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=0.05),
        event_hook=events.append,
    )

    with pytest.raises(BackendExecutionError) as excinfo:
        _collect(backend)

    assert excinfo.value.retriable is False
    assert "timed out" in events[0]["error"]


def test_timed_out_command_process_is_killed(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess([])
    process.stdout = HangingStdout()

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    backend = ResilientBackend(
        primary_name="claude",
        primary_backend=CommandBackend("claude", ["claude", "-p", "{prompt}"]),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=0.05),
    )

    with pytest.raises(BackendExecutionError, match="All backend attempts failed"):
        _collect(backend)

    assert process.killed is True
    assert process.returncode == -9


def test_finished_command_process_is_not_killed(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess([b"done\n"])

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    assert _collect(CommandBackend("claude", ["claude", "-p", "{prompt}"])) == "done\n"
    assert process.killed is False
