import json
import sys
from datetime import datetime, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from scripts import daily_lesson_processing


def _stub_reminders(monkeypatch, errors=()):
    calls = []

    def fake_reminders(timeframe, now):
        calls.append((timeframe, now))
        return {"timeframe": timeframe, "emails_sent": 0, "errors": list(errors)}

    monkeypatch.setattr(daily_lesson_processing.notifications, "send_lesson_reminders", fake_reminders)
    monkeypatch.setattr(daily_lesson_processing, "validate_environment", lambda: None)
    return calls


def test_main_sends_reminders_for_requested_day(temp_db, monkeypatch, capsys):
    calls = _stub_reminders(monkeypatch)

    exit_code = daily_lesson_processing.main(
        ["--now", "2026-03-09T18:00:00Z", "--timeframe", "today", "--skip-extension"]
    )

    assert exit_code == 0
    assert calls == [("today", datetime(2026, 3, 9, 18, 0, tzinfo=timezone.utc))]
    report = json.loads(capsys.readouterr().out)
    assert report["run_at"] == "2026-03-09T18:00:00+00:00"
    assert report["extensions"] == []
    assert report["reminders"]["timeframe"] == "today"


def test_delivery_errors_fail_the_run(temp_db, monkeypatch, capsys):
    _stub_reminders(monkeypatch, errors=["Failed to send to ann@example.com: boom"])

    exit_code = daily_lesson_processing.main(["--now", "2026-03-09T18:00:00Z", "--skip-extension"])

    assert exit_code == 1
    assert json.loads(capsys.readouterr().out)["errors"] == ["Failed to send to ann@example.com: boom"]


def test_run_collects_extensions(temp_db, monkeypatch):
    extended = [{"original_lesson_id": "series-1", "created_count": 4}]
    monkeypatch.setattr(daily_lesson_processing.scheduling, "extend_due_series", lambda now: extended)

    report = daily_lesson_processing.run(
        "tomorrow", datetime(2026, 3, 9, tzinfo=timezone.utc), remind=False
    )

    assert report["extensions"] == extended
    assert report["reminders"] is None
    assert report["errors"] == []


def test_extension_failure_is_reported(temp_db, monkeypatch):
    def broken(now):
        raise LookupError("Lesson series-1 not found")

    monkeypatch.setattr(daily_lesson_processing.scheduling, "extend_due_series", broken)
    report = daily_lesson_processing.run("tomorrow", datetime(2026, 3, 9, tzinfo=timezone.utc), remind=False)
    assert report["errors"] == ["extension: Lesson series-1 not found"]
