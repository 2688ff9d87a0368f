from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from charter.errors import StateError
from charter.state.models import TaskState, utcnow_iso

logger = logging.getLogger(__name__)

PersistHook = Callable[[Path, str], None]


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write ``payload`` as JSON so readers never observe a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(f"{path.suffix}.tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False, indent=2)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


@contextmanager
def file_lock(lock_file: Path, timeout_seconds: float = 3.0) -> Iterator[None]:
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    start = time.monotonic()
    while True:
        try:
            fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            os.write(fd, str(os.getpid()).encode("utf-8"))
            os.close(fd)
            break
        except FileExistsError as exc:
            if time.monotonic() - start > timeout_seconds:
                raise StateError(f"Timed out waiting for lock {lock_file}.") from exc
            time.sleep(0.02)

    try:
        yield
    finally:
        try:
            lock_file.unlink()
        except FileNotFoundError:
            pass


class StateManager:
    """Durable store for the live task, its archive and the event log.

    Only one task is live at a time. Every write goes through
    :func:`write_json_atomic` under the state lock, then the optional
    ``persist_hook`` is told which path changed.
    """

    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path, *, persist_hook: PersistHook | None = None) -> None:
        self.state_dir = state_dir.resolve()
        self.current_task_path = self.state_dir / "current-task.json"
        self.history_dir = self.state_dir / "history"
        self.logs_dir = self.state_dir / "logs"
        self.metrics_path = self.state_dir / "metrics.json"
        self.lock_file = self.state_dir / ".lock"
        self.persist_hook = persist_hook
        self._thread_lock = threading.RLock()
        self.state_dir.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _state_lock(self) -> Iterator[None]:
        with self._thread_lock, file_lock(self.lock_file):
            yield

    def _persisted(self, path: Path, message: str) -> None:
        if self.persist_hook is None:
            return
        try:
            self.persist_hook(path, message)
        except Exception as exc:
            # The file write already completed; the hook is best-effort.
            logger.warning("Persist hook failed for %s: %s", path, exc)

    @staticmethod
    def _read_json(path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateError(f"State file {path} is not valid JSON: {exc}") from exc

    def save_task_state(self, state: TaskState) -> None:
        state.updated_at = utcnow_iso()
        payload = {"schema_version": self.SCHEMA_VERSION, **state.to_dict()}
        with self._state_lock():
            current = self._read_json(self.current_task_path)
            if isinstance(current, dict) and current.get("task_id") not in {None, state.task_id}:
                raise StateError(
                    f"Task {current.get('task_id')} is still active; archive it before "
                    f"writing task {state.task_id}."
                )
            write_json_atomic(self.current_task_path, payload)
        self._persisted(self.current_task_path, f"chore(charter): update state for {state.task_id}")

    def load_task_state(self) -> TaskState | None:
        payload = self._read_json(self.current_task_path)
        if payload is None:
            return None
        if not isinstance(payload, dict):
            raise StateError(f"State file {self.current_task_path} does not hold a task record.")
        return TaskState.from_dict(payload)

    def clear_task_state(self) -> None:
        with self._state_lock():
            try:
                self.current_task_path.unlink()
            except FileNotFoundError:
                pass

    def _history_matches(self, task_id: str) -> list[Path]:
        if not self.history_dir.exists():
            return []
        return sorted(self.history_dir.glob(f"*-task-{task_id}.json"))

    def archive_task(self, state: TaskState) -> Path:
        if self._history_matches(state.task_id):
            raise StateError(f"Task {state.task_id} is already archived.")
        stamp = datetime.now(UTC).strftime("%Y-%m-%d")
        archive_path = self.history_dir / f"{stamp}-task-{state.task_id}.json"
        record = {
            "schema_version": self.SCHEMA_VERSION,
            "archived_at": utcnow_iso(),
            **state.to_dict(),
        }
        with self._state_lock():
            write_json_atomic(archive_path, record)
            current = self._read_json(self.current_task_path)
            if isinstance(current, dict) and current.get("task_id") == state.task_id:
                self.current_task_path.unlink()
            metrics = self._read_json(self.metrics_path)
            if not isinstance(metrics, dict):
                metrics = {"tasks": []}
            tasks = metrics.get("tasks")
            if not isinstance(tasks, list):
                tasks = []
            tasks.append(
                {
                    "task_id": state.task_id,
                    "status": state.status.value,
                    "outcomes": len(state.outcomes),
                    "completed_at": record["archived_at"],
                }
            )
            metrics["tasks"] = tasks
            write_json_atomic(self.metrics_path, metrics)
        self._persisted(
            archive_path, f"archive(charter): task {state.task_id} {state.status.value}"
        )
        logger.info("Archived task %s to %s", state.task_id, archive_path.name)
        return archive_path

    def history(self) -> list[str]:
        if not self.history_dir.exists():
            return []
        return sorted(path.stem for path in self.history_dir.glob("*-task-*.json"))

    def load_archived(self, task_id: str) -> dict[str, Any] | None:
        matches = self._history_matches(task_id)
        if not matches:
            return None
        payload = self._read_json(matches[-1])
        return payload if isinstance(payload, dict) else None

    def get_metrics(self) -> dict[str, Any]:
        metrics = self._read_json(self.metrics_path)
        return metrics if isinstance(metrics, dict) else {"tasks": []}

    def append_event(self, event: dict[str, Any]) -> None:
        line = json.dumps({"time": utcnow_iso(), **event}, ensure_ascii=False, default=str)
        with self._thread_lock:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            with (self.logs_dir / "events.ndjson").open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")

    def read_events(self) -> list[dict[str, Any]]:
        path = self.logs_dir / "events.ndjson"
        if not path.exists():
            return []
        events: list[dict[str, Any]] = []
        for raw_line in path.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if not line:
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                events.append(parsed)
        return events
