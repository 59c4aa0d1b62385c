from __future__ import annotations

from datetime import date, datetime, timedelta
import threading
import unittest
from unittest.mock import patch

from sqlalchemy import select
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from attendance_core.models import (
    AdminOverride,
    AttendanceLog,
    AttendanceStatus,
    AuditLog,
    HalfDayReasonCode,
    Holiday,
)
from attendance_core.services.attendance import load_leave_window
from attendance_core.services.backfill import BackfillCorrectionJob, BackfillOptions
from attendance_core.services.caches import StatusCache
from attendance_core.services.status_resolver import ResolvedStatus
from attendance_core.settings import Settings

from sqlite_support import IST, add_employee, add_leave, add_worked_day, ist_utc, make_session_factory

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=IST)
SETTINGS = Settings(backfill_batch_size=50)


class BackfillCorrectionJobTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        with self.session_factory() as db:
            add_employee(db, 1)
            self.short_id = add_worked_day(db, 1, date(2026, 3, 2), (9, 0), (16, 50)).id
            add_worked_day(db, 1, date(2026, 3, 3), (9, 0), (18, 0))
            add_worked_day(db, 1, date(2026, 3, 4), (9, 0), (15, 0), admin_override=AdminOverride.LATE)
            add_worked_day(
                db,
                1,
                date(2026, 3, 5),
                (9, 0),
                (13, 0),
                status=AttendanceStatus.HALF_DAY,
                is_half_day=True,
            )
            add_worked_day(db, 1, date(2026, 3, 6), (9, 0), (12, 0), status=AttendanceStatus.LEAVE)
            add_worked_day(db, 1, date(2026, 3, 8), (10, 0), (13, 0))
            db.add(AttendanceLog(employee_id=1, attendance_date=date(2026, 3, 9), status=AttendanceStatus.ABSENT))
            db.add(
                AttendanceLog(
                    employee_id=1,
                    attendance_date=date(2026, 2, 27),
                    clock_in_ts=ist_utc(date(2026, 2, 27), 9, 0),
                )
            )
            db.add(Holiday(day_date=date(2026, 2, 26), name="Maha Shivaratri"))
            add_worked_day(db, 1, date(2026, 2, 26), (9, 0), (12, 0))
            add_leave(db, 1, [date(2026, 2, 25)])
            add_worked_day(db, 1, date(2026, 2, 25), (9, 0), (11, 0))
            add_worked_day(db, 999, date(2026, 3, 2), (9, 0), (12, 0))
            add_worked_day(db, 1, date(2026, 3, 10), (9, 0), (11, 0))
            db.commit()

    def _job(self, **kwargs) -> BackfillCorrectionJob:
        kwargs.setdefault("settings", SETTINGS)
        kwargs.setdefault("now", NOW)
        return BackfillCorrectionJob(self.session_factory, **kwargs)

    def _short_log(self) -> AttendanceLog:
        with self.session_factory() as db:
            return db.get(AttendanceLog, self.short_id)

    def test_dry_run_counts_categories_and_changes_nothing(self) -> None:
        report = self._job().run(BackfillOptions(batch_size=4))

        stats = report.to_dict()["stats"]
        self.assertEqual(stats["scanned"], 11)
        self.assertEqual(stats["eligible"], 1)
        self.assertEqual(stats["sufficient_hours"], 1)
        self.assertEqual(stats["admin_overridden"], 1)
        self.assertEqual(stats["already_half_day"], 1)
        self.assertEqual(stats["leave"], 2)
        self.assertEqual(stats["holiday_or_weekly_off"], 2)
        self.assertEqual(stats["no_clock_in"], 1)
        self.assertEqual(stats["no_sessions"], 1)
        self.assertEqual(stats["errored"], 1)
        self.assertEqual(stats["updated"], 0)
        self.assertTrue(report.completed)

        log = self._short_log()
        self.assertEqual(log.status, AttendanceStatus.PRESENT)
        self.assertIsNone(log.backfilled_by)

        with self.session_factory() as db:
            self.assertEqual(db.scalars(select(AuditLog)).all(), [])

    def test_live_run_corrects_and_second_run_is_idempotent(self) -> None:
        first = self._job().run(BackfillOptions(execute=True, batch_size=3))
        self.assertEqual(first.stats["updated"], 1)

        log = self._short_log()
        self.assertEqual(log.status, AttendanceStatus.HALF_DAY)
        self.assertTrue(log.is_half_day)
        self.assertEqual(log.half_day_reason_code, HalfDayReasonCode.INSUFFICIENT_WORKING_HOURS)
        self.assertEqual(log.half_day_reason_text, "Worked 7h 50m, minimum required is 8h")
        self.assertEqual(log.backfilled_by, SETTINGS.backfill_source_id)
        self.assertEqual(log.backfill_version, "v1.0")
        self.assertIsNotNone(log.backfilled_at)
        self.assertEqual(log.backfill_previous["status"], "PRESENT")

        second = self._job().run(BackfillOptions(execute=True, batch_size=3))
        self.assertEqual(second.stats["updated"], 0)
        self.assertEqual(second.stats["already_corrected"], 1)

        with self.session_factory() as db:
            actions = [row.action for row in db.scalars(select(AuditLog)).all()]
        self.assertEqual(actions, ["BACKFILL_INSUFFICIENT_HOURS", "BACKFILL_INSUFFICIENT_HOURS"])

    def test_rollback_restores_previous_values(self) -> None:
        self._job().run(BackfillOptions(execute=True))
        report = self._job().rollback(BackfillOptions(execute=True))

        self.assertEqual(report.stats["updated"], 1)
        log = self._short_log()
        self.assertEqual(log.status, AttendanceStatus.PRESENT)
        self.assertFalse(log.is_half_day)
        self.assertIsNone(log.half_day_reason_code)
        self.assertEqual(log.total_worked_minutes, 470)
        self.assertIsNone(log.backfilled_by)
        self.assertIsNone(log.backfill_version)
        self.assertIsNone(log.backfilled_at)
        self.assertIsNone(log.backfill_previous)

    def test_rollback_skips_rows_without_snapshot(self) -> None:
        with self.session_factory() as db:
            log = db.get(AttendanceLog, self.short_id)
            log.status = AttendanceStatus.HALF_DAY
            log.backfilled_by = SETTINGS.backfill_source_id
            db.commit()

        report = self._job().rollback(BackfillOptions(execute=True))
        self.assertEqual(report.stats["errored"], 1)
        self.assertEqual(report.stats["updated"], 0)
        self.assertEqual(self._short_log().status, AttendanceStatus.HALF_DAY)

    def test_date_range_limits_scan(self) -> None:
        report = self._job().run(BackfillOptions(start_date=date(2026, 3, 3), end_date=date(2026, 3, 3)))
        self.assertEqual(report.stats["scanned"], 1)
        self.assertEqual(report.stats["sufficient_hours"], 1)

    def test_cancelled_before_start_processes_nothing(self) -> None:
        cancel_event = threading.Event()
        cancel_event.set()
        report = self._job(cancel_event=cancel_event).run(BackfillOptions(execute=True))
        self.assertTrue(report.cancelled)
        self.assertEqual(report.stats["scanned"], 0)
        self.assertIsNone(report.resume_after_id)

    def test_live_run_invalidates_status_cache(self) -> None:
        status_cache = StatusCache(60)
        day = date(2026, 3, 2)
        status_cache.get_or_resolve(1, day, None, lambda: ResolvedStatus(AttendanceStatus.PRESENT))

        self._job(status_cache=status_cache).run(BackfillOptions(execute=True))

        refreshed = status_cache.get_or_resolve(1, day, None, lambda: ResolvedStatus(AttendanceStatus.HALF_DAY))
        self.assertEqual(refreshed.status, AttendanceStatus.HALF_DAY)


class BackfillBatchFailureTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        with self.session_factory() as db:
            add_employee(db, 1)
            self.ids = [
                add_worked_day(db, 1, date(2026, 3, day), (9, 0), (15, 0)).id
                for day in (2, 3, 4, 5)
            ]
            db.commit()

    def _failing_factory(self, fail_on_call: int):
        calls = {"count": 0}

        def factory():
            db = self.session_factory()
            original_commit = db.commit

            def commit() -> None:
                calls["count"] += 1
                if calls["count"] == fail_on_call:
                    raise SQLAlchemyError("could not serialize access")
                original_commit()

            db.commit = commit
            return db

        return factory

    def test_failed_batch_rolls_back_alone_and_reports_resume_cursor(self) -> None:
        job = BackfillCorrectionJob(self._failing_factory(2), settings=SETTINGS, now=NOW)
        report = job.run(BackfillOptions(execute=True, batch_size=2))

        self.assertTrue(report.aborted)
        self.assertEqual(report.stats["updated"], 2)
        self.assertEqual(report.resume_after_id, self.ids[1])

        with self.session_factory() as db:
            statuses = [db.get(AttendanceLog, log_id).status for log_id in self.ids]
        self.assertEqual(
            statuses,
            [AttendanceStatus.HALF_DAY, AttendanceStatus.HALF_DAY, AttendanceStatus.PRESENT, AttendanceStatus.PRESENT],
        )

        resumed = BackfillCorrectionJob(self.session_factory, settings=SETTINGS, now=NOW).run(
            BackfillOptions(execute=True, batch_size=2, resume_after_id=report.resume_after_id)
        )
        self.assertTrue(resumed.completed)
        self.assertEqual(resumed.stats["scanned"], 2)
        self.assertEqual(resumed.stats["updated"], 2)

        with self.session_factory() as db:
            audit_rows = db.scalars(select(AuditLog).order_by(AuditLog.id)).all()
        self.assertEqual([row.success for row in audit_rows], [False, True])

    def test_read_failure_mid_run_reports_resume_cursor(self) -> None:
        calls = {"count": 0}

        def flaky_leave_window(db, employee_id, start, end):
            calls["count"] += 1
            if calls["count"] == 2:
                raise OperationalError("SELECT leave_requests", {}, Exception("lock timeout"))
            return load_leave_window(db, employee_id, start, end)

        with patch("attendance_core.services.backfill.load_leave_window", side_effect=flaky_leave_window):
            report = BackfillCorrectionJob(self.session_factory, settings=SETTINGS, now=NOW).run(
                BackfillOptions(execute=True, batch_size=1)
            )

        self.assertTrue(report.aborted)
        self.assertEqual(report.batches_committed, 1)
        self.assertEqual(report.resume_after_id, self.ids[0])
        self.assertEqual(report.stats["updated"], 1)
        self.assertIn("lock timeout", report.error)

        with self.session_factory() as db:
            statuses = [db.get(AttendanceLog, log_id).status for log_id in self.ids[:2]]
            audit_rows = db.scalars(select(AuditLog)).all()
        self.assertEqual(statuses, [AttendanceStatus.HALF_DAY, AttendanceStatus.PRESENT])
        self.assertEqual([row.success for row in audit_rows], [False])

    def test_large_batch_with_status_cache(self) -> None:
        with self.session_factory() as db:
            for offset in range(600):
                add_worked_day(db, 1, date(2024, 1, 1) + timedelta(days=offset), (9, 0), (15, 0))
            db.commit()

        report = BackfillCorrectionJob(
            self.session_factory,
            settings=SETTINGS,
            status_cache=StatusCache(60),
            now=NOW,
        ).run(BackfillOptions(execute=True, batch_size=1000))

        self.assertTrue(report.completed)
        self.assertEqual(report.batches_committed, 1)
        self.assertEqual(report.stats["scanned"], 604)


if __name__ == "__main__":
    unittest.main()
