from __future__ import annotations

import json
import re
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from charter.state.models import utcnow_iso
from charter.state.store import file_lock, write_json_atomic

PERIOD_PATTERN = re.compile(r"^(\d+)([dhm])$")


def period_cutoff(period: str, *, now: datetime | None = None) -> datetime:
    """Return the earliest timestamp covered by ``period`` (``7d``, ``12h``, ``30m``).

    Unrecognised periods cover everything.
    """
    current = now or datetime.now(UTC)
    match = PERIOD_PATTERN.match(period.strip())
    if not match:
        return datetime.min.replace(tzinfo=UTC)
    amount = int(match.group(1))
    unit = match.group(2)
    if unit == "d":
        return current - timedelta(days=amount)
    if unit == "h":
        return current - timedelta(hours=amount)
    return current - timedelta(minutes=amount)


def _parse_timestamp(raw: Any) -> datetime | None:
    if not isinstance(raw, str):
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class UsageLedger:
    """Append-only record of actor invocations."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock_file = path.with_suffix(f"{path.suffix}.lock")
        self._thread_lock = threading.Lock()

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"entries": []}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return {"entries": []}
        if not isinstance(payload, dict) or not isinstance(payload.get("entries"), list):
            return {"entries": []}
        return payload

    def record(
        self,
        actor: str,
        action: str,
        duration_ms: int,
        success: bool,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        entry = {
            "timestamp": utcnow_iso(),
            "actor": actor,
            "action": action,
            "duration_ms": int(duration_ms),
            "success": bool(success),
            "metadata": dict(metadata or {}),
        }
        with self._thread_lock, file_lock(self.lock_file):
            payload = self._load()
            payload["entries"].append(entry)
            write_json_atomic(self.path, payload)
        return entry

    def entries(self) -> list[dict[str, Any]]:
        return [item for item in self._load()["entries"] if isinstance(item, dict)]

    def summary(self, period: str = "7d") -> dict[str, Any]:
        cutoff = period_cutoff(period)
        filtered = []
        for entry in self.entries():
            stamp = _parse_timestamp(entry.get("timestamp"))
            if stamp is not None and stamp >= cutoff:
                filtered.append(entry)

        def _stats(items: list[dict[str, Any]]) -> dict[str, Any]:
            total_ms = sum(int(item.get("duration_ms", 0)) for item in items)
            successful = sum(1 for item in items if item.get("success"))
            return {
                "calls": len(items),
                "successful": successful,
                "failed": len(items) - successful,
                "total_duration_ms": total_ms,
                "avg_duration_ms": round(total_ms / len(items)) if items else 0,
            }

        by_actor: dict[str, list[dict[str, Any]]] = {}
        for entry in filtered:
            by_actor.setdefault(str(entry.get("actor", "unknown")), []).append(entry)

        overall = _stats(filtered)
        return {
            "period": period,
            "total_calls": overall["calls"],
            "successful_calls": overall["successful"],
            "failed_calls": overall["failed"],
            "total_duration_ms": overall["total_duration_ms"],
            "avg_duration_ms": overall["avg_duration_ms"],
            "by_actor": {actor: _stats(items) for actor, items in sorted(by_actor.items())},
        }
