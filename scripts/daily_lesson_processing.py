"""Daily lesson job: extend due recurring series and send lesson reminders."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db
import notifications
import scheduling
from env_validation import validate_environment

logger = logging.getLogger("daily_lesson_processing")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--timeframe",
        choices=notifications.TIMEFRAMES,
        default="tomorrow",
        help="Which UK day to send reminders for (default: tomorrow)",
    )
    parser.add_argument(
        "--skip-reminders",
        action="store_true",
        help="Only extend recurring series",
    )
    parser.add_argument(
        "--skip-extension",
        action="store_true",
        help="Only send reminders",
    )
    parser.add_argument(
        "--now",
        type=str,
        default=None,
        help="ISO timestamp to run as (default: current UTC time)",
    )
    return parser


def run(timeframe: str, now: datetime, *, extend: bool = True, remind: bool = True) -> dict:
    report: dict = {"run_at": db.to_iso(now), "extensions": [], "reminders": None, "errors": []}
    if extend:
        try:
            report["extensions"] = scheduling.extend_due_series(now)
        except (LookupError, ValueError) as exc:
            logger.error("Recurring extension failed: %s", exc, exc_info=True)
            report["errors"].append(f"extension: {exc}")
    if remind:
        report["reminders"] = notifications.send_lesson_reminders(timeframe, now)
        report["errors"].extend(report["reminders"]["errors"])
    return report


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    parser = _build_parser()
    args = parser.parse_args(argv)

    validate_environment()
    db.init()
    now = db.parse_timestamp(args.now) if args.now else db.utcnow()
    report = run(args.timeframe, now, extend=not args.skip_extension, remind=not args.skip_reminders)
    print(json.dumps(report, indent=2, ensure_ascii=False))
    return 1 if report["errors"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
