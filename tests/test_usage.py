import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

from charter.state.usage import UsageLedger, period_cutoff


def test_period_cutoff_units() -> None:
    now = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

    assert period_cutoff("7d", now=now) == now - timedelta(days=7)
    assert period_cutoff("12h", now=now) == now - timedelta(hours=12)
    assert period_cutoff("30m", now=now) == now - timedelta(minutes=30)
    assert period_cutoff("forever", now=now) == datetime.min.replace(tzinfo=UTC)


def test_summary_totals_and_per_actor_stats(tmp_path: Path) -> None:
    ledger = UsageLedger(tmp_path / "usage.json")
    ledger.record("qwen", "implement", 100, True, {"task_id": "T1"})
    ledger.record("qwen", "implement", 300, False)
    ledger.record("claude", "review", 50, True)

    summary = ledger.summary("7d")

    assert summary["total_calls"] == 3
    assert summary["successful_calls"] == 2
    assert summary["failed_calls"] == 1
    assert summary["total_duration_ms"] == 450
    assert summary["avg_duration_ms"] == 150
    assert summary["by_actor"]["qwen"] == {
        "calls": 2,
        "successful": 1,
        "failed": 1,
        "total_duration_ms": 400,
        "avg_duration_ms": 200,
    }
    assert ledger.entries()[0]["metadata"] == {"task_id": "T1"}


def test_summary_excludes_entries_outside_period(tmp_path: Path) -> None:
    path = tmp_path / "usage.json"
    old = (datetime.now(UTC) - timedelta(days=30)).isoformat()
    path.write_text(
        json.dumps(
            {
                "entries": [
                    {"timestamp": old, "actor": "qwen", "duration_ms": 10, "success": True}
                ]
            }
        ),
        encoding="utf-8",
    )
    ledger = UsageLedger(path)
    ledger.record("gemini", "configure", 20, True)

    assert ledger.summary("7d")["total_calls"] == 1
    assert ledger.summary("all")["total_calls"] == 2


def test_empty_ledger_summary(tmp_path: Path) -> None:
    summary = UsageLedger(tmp_path / "usage.json").summary()

    assert summary["total_calls"] == 0
    assert summary["avg_duration_ms"] == 0
    assert summary["by_actor"] == {}
