#!/usr/bin/env python
from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Sequence

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from attendance_core.db import SessionLocal
from attendance_core.logging_utils import setup_json_logging
from attendance_core.services.backfill import BackfillCorrectionJob, BackfillOptions
from attendance_core.settings import get_settings


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD") from exc


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        description="Mark historical days with insufficient working hours as half days.",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--execute", action="store_true", help="Write corrections (default is a dry run).")
    mode.add_argument("--rollback", action="store_true", help="Revert corrections made by this job.")
    parser.add_argument("--batch-size", type=int, default=settings.backfill_batch_size)
    parser.add_argument("--start-date", type=_parse_date, default=None)
    parser.add_argument("--end-date", type=_parse_date, default=None)
    parser.add_argument("--resume-after-id", type=int, default=None)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_json_logging(get_settings().log_level)

    if args.batch_size < 1:
        print(json.dumps({"ok": False, "error": "--batch-size must be at least 1"}, indent=2))
        return 2
    if args.start_date and args.end_date and args.end_date < args.start_date:
        print(json.dumps({"ok": False, "error": "--end-date must not be before --start-date"}, indent=2))
        return 2

    cancel_event = threading.Event()
    signal.signal(signal.SIGTERM, lambda _signum, _frame: cancel_event.set())

    job = BackfillCorrectionJob(SessionLocal, cancel_event=cancel_event)
    options = BackfillOptions(
        execute=args.execute or args.rollback,
        batch_size=args.batch_size,
        start_date=args.start_date,
        end_date=args.end_date,
        resume_after_id=args.resume_after_id,
    )
    report = job.rollback(options) if args.rollback else job.run(options)

    summary = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "ok": report.completed,
        "dry_run": not options.execute,
        **report.to_dict(),
    }
    print(json.dumps(summary, ensure_ascii=False, indent=2))
    if report.aborted:
        return 1
    if report.cancelled:
        return 130
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
