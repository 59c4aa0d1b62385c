"""Retroactive insufficient-hours half-day correction.

Historical attendance logs that were clocked out with less than the full-day
threshold but never classified as a half day are corrected in place. Every
corrected row carries a provenance marker (``backfilled_by``) and a snapshot of
the values it replaced (``backfill_previous``), which is what ``rollback``
restores from.

The job pages through ``attendance_logs`` by primary key and commits once per
batch. A failed batch is rolled back on its own; the report carries the id to
resume after.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from attendance_core.audit import log_audit
from attendance_core.errors import BatchTransactionError, RecordValidationError
from attendance_core.models import (
    AttendanceLog,
    AttendanceStatus,
    AuditActorType,
    HalfDayReasonCode,
)
from attendance_core.services.attendance import (
    facts_from_log,
    list_confirmed_holidays,
    load_leave_window,
    load_policy_settings,
    policy_for_employee,
    shift_times_for,
)
from attendance_core.services.caches import StatusCache
from attendance_core.services.status_resolver import (
    HolidayFact,
    LeaveFact,
    PolicySettings,
    build_context,
    is_weekly_off,
)
from attendance_core.services.work_time import WorkTimeTotals, format_worked_time, to_utc
from attendance_core.settings import Settings, get_attendance_timezone, get_settings

logger = logging.getLogger("attendance_core.backfill")

SNAPSHOT_FIELDS = (
    "status",
    "is_half_day",
    "half_day_reason_code",
    "half_day_reason_text",
    "total_worked_minutes",
    "total_payable_minutes",
)

CATEGORIES = (
    "scanned",
    "eligible",
    "already_corrected",
    "already_half_day",
    "admin_overridden",
    "leave",
    "holiday_or_weekly_off",
    "no_clock_in",
    "no_sessions",
    "sufficient_hours",
    "updated",
    "errored",
)


@dataclass
class BackfillOptions:
    execute: bool = False
    batch_size: int = 50
    start_date: date | None = None
    end_date: date | None = None
    resume_after_id: int | None = None


@dataclass
class BackfillReport:
    mode: str
    execute: bool
    stats: Counter[str] = field(default_factory=Counter)
    batches_committed: int = 0
    last_processed_id: int | None = None
    resume_after_id: int | None = None
    cancelled: bool = False
    aborted: bool = False
    error: str | None = None

    @property
    def completed(self) -> bool:
        return not (self.cancelled or self.aborted)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "execute": self.execute,
            "stats": {name: self.stats.get(name, 0) for name in CATEGORIES},
            "batches_committed": self.batches_committed,
            "last_processed_id": self.last_processed_id,
            "resume_after_id": self.resume_after_id,
            "cancelled": self.cancelled,
            "aborted": self.aborted,
            "completed": self.completed,
            "error": self.error,
        }


@dataclass
class _BatchContext:
    policy: PolicySettings
    holidays: list[HolidayFact]
    leaves: dict[int, dict[date, LeaveFact]]


def _snapshot(log: AttendanceLog) -> dict[str, Any]:
    return {
        "status": log.status.value if log.status is not None else None,
        "is_half_day": bool(log.is_half_day),
        "half_day_reason_code": log.half_day_reason_code.value if log.half_day_reason_code else None,
        "half_day_reason_text": log.half_day_reason_text,
        "total_worked_minutes": log.total_worked_minutes,
        "total_payable_minutes": log.total_payable_minutes,
    }


def _restore(log: AttendanceLog, snapshot: Any) -> None:
    if not isinstance(snapshot, dict) or any(name not in snapshot for name in SNAPSHOT_FIELDS):
        raise RecordValidationError(log.id, "Pre-correction snapshot is missing or incomplete")
    try:
        status = AttendanceStatus(snapshot["status"])
        reason_code = (
            HalfDayReasonCode(snapshot["half_day_reason_code"]) if snapshot["half_day_reason_code"] else None
        )
    except ValueError as exc:
        raise RecordValidationError(log.id, f"Pre-correction snapshot is invalid: {exc}") from exc

    log.status = status
    log.is_half_day = bool(snapshot["is_half_day"])
    log.half_day_reason_code = reason_code
    log.half_day_reason_text = snapshot["half_day_reason_text"]
    log.total_worked_minutes = int(snapshot["total_worked_minutes"] or 0)
    log.total_payable_minutes = int(snapshot["total_payable_minutes"] or 0)
    log.backfilled_by = None
    log.backfill_version = None
    log.backfill_reason = None
    log.backfilled_at = None
    log.backfill_previous = None


class BackfillCorrectionJob:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        settings: Settings | None = None,
        status_cache: StatusCache | None = None,
        cancel_event: threading.Event | None = None,
        now: datetime | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._status_cache = status_cache
        self._cancel_event = cancel_event or threading.Event()
        self._now = to_utc(now) if now is not None else None

    @property
    def source_id(self) -> str:
        return self._settings.backfill_source_id

    def cancel(self) -> None:
        self._cancel_event.set()

    def _current_time(self) -> datetime:
        return self._now or datetime.now(timezone.utc)

    def _today(self) -> date:
        return self._current_time().astimezone(get_attendance_timezone()).date()

    def _page(
        self,
        db: Session,
        options: BackfillOptions,
        cursor: int | None,
        *,
        corrected_only: bool,
    ) -> list[AttendanceLog]:
        stmt = (
            select(AttendanceLog)
            .options(
                selectinload(AttendanceLog.sessions),
                selectinload(AttendanceLog.breaks),
                selectinload(AttendanceLog.employee),
            )
            .order_by(AttendanceLog.id.asc())
            .limit(max(1, options.batch_size))
        )
        if cursor is not None:
            stmt = stmt.where(AttendanceLog.id > cursor)
        if corrected_only:
            stmt = stmt.where(AttendanceLog.backfilled_by == self.source_id)
        else:
            stmt = stmt.where(AttendanceLog.attendance_date < self._today())
        if options.start_date is not None:
            stmt = stmt.where(AttendanceLog.attendance_date >= options.start_date)
        if options.end_date is not None:
            stmt = stmt.where(AttendanceLog.attendance_date <= options.end_date)
        return list(db.scalars(stmt).all())

    def _batch_context(self, db: Session, logs: list[AttendanceLog], policy: PolicySettings) -> _BatchContext:
        days = [log.attendance_date for log in logs]
        start, end = min(days), max(days)
        leaves: dict[int, dict[date, LeaveFact]] = {}
        for employee_id in {log.employee_id for log in logs}:
            leaves[employee_id] = load_leave_window(db, employee_id, start, end)
        return _BatchContext(policy=policy, holidays=list_confirmed_holidays(db, start, end), leaves=leaves)

    def classify(self, log: AttendanceLog, batch: _BatchContext) -> tuple[str, WorkTimeTotals | None]:
        """Return the category for ``log`` and, once sessions were measured, its totals."""
        if log.backfilled_by == self.source_id:
            return "already_corrected", None
        if log.is_half_day or log.status is AttendanceStatus.HALF_DAY:
            return "already_half_day", None
        if log.is_admin_overridden:
            return "admin_overridden", None
        if log.status is AttendanceStatus.LEAVE:
            return "leave", None
        if log.clock_in_ts is None:
            return "no_clock_in", None
        if not log.sessions:
            return "no_sessions", None
        if log.employee is None:
            raise RecordValidationError(log.id, f"Employee {log.employee_id} does not exist")

        policy = policy_for_employee(batch.policy, log.employee)
        ctx = build_context(
            log.attendance_date,
            facts_from_log(log),
            batch.holidays,
            batch.leaves.get(log.employee_id, {}).get(log.attendance_date),
            policy,
            now=self._current_time(),
            shift=shift_times_for(log.employee),
        )
        if ctx.leave is not None:
            return "leave", ctx.totals
        if ctx.holiday is not None or is_weekly_off(log.attendance_date, policy.saturday_policy):
            return "holiday_or_weekly_off", ctx.totals
        if ctx.totals.worked_minutes >= policy.full_day_minutes:
            return "sufficient_hours", ctx.totals
        return "eligible", ctx.totals

    def _apply_correction(self, log: AttendanceLog, totals: WorkTimeTotals) -> None:
        full_day = self._settings.full_day_minutes
        log.backfill_previous = _snapshot(log)
        log.status = AttendanceStatus.HALF_DAY
        log.is_half_day = True
        log.half_day_reason_code = HalfDayReasonCode.INSUFFICIENT_WORKING_HOURS
        log.half_day_reason_text = (
            f"Worked {format_worked_time(totals.worked_minutes)}, minimum required is {format_worked_time(full_day)}"
        )
        log.total_worked_minutes = totals.worked_minutes
        log.total_payable_minutes = totals.payable_minutes
        log.backfilled_by = self.source_id
        log.backfill_version = self._settings.backfill_version
        log.backfill_reason = self._settings.backfill_reason
        log.backfilled_at = self._current_time()

    @contextmanager
    def _fenced(self, logs: list[AttendanceLog]) -> Iterator[None]:
        if self._status_cache is None:
            yield
            return
        with self._status_cache.mutating_many([(log.employee_id, log.attendance_date) for log in logs]):
            yield

    def _commit_batch(
        self,
        db: Session,
        batch_number: int,
        cursor: int | None,
        touched: list[AttendanceLog],
        execute: bool,
    ) -> None:
        if not execute:
            db.rollback()
            return
        with self._fenced(touched):
            try:
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise BatchTransactionError(batch_number, cursor, str(exc)) from exc

    def _read_batch(
        self,
        db: Session,
        options: BackfillOptions,
        cursor: int | None,
        batch_number: int,
        process: Callable[[Session, list[AttendanceLog], Counter[str], list[AttendanceLog], dict[str, Any]], None],
        stats: Counter[str],
        touched: list[AttendanceLog],
        state: dict[str, Any],
        *,
        corrected_only: bool,
    ) -> list[AttendanceLog]:
        try:
            logs = self._page(db, options, cursor, corrected_only=corrected_only)
            if logs:
                process(db, logs, stats, touched, state)
        except SQLAlchemyError as exc:
            db.rollback()
            raise BatchTransactionError(batch_number, cursor, str(exc)) from exc
        return logs

    def run(self, options: BackfillOptions | None = None) -> BackfillReport:
        options = options or BackfillOptions(batch_size=self._settings.backfill_batch_size)
        report = BackfillReport(mode="correct", execute=options.execute)
        return self._drive(options, report, self._process_correction_batch)

    def rollback(self, options: BackfillOptions | None = None) -> BackfillReport:
        options = options or BackfillOptions(batch_size=self._settings.backfill_batch_size)
        report = BackfillReport(mode="rollback", execute=options.execute)
        return self._drive(options, report, self._process_rollback_batch)

    def _drive(
        self,
        options: BackfillOptions,
        report: BackfillReport,
        process: Callable[[Session, list[AttendanceLog], Counter[str], list[AttendanceLog], dict[str, Any]], None],
    ) -> BackfillReport:
        corrected_only = report.mode == "rollback"
        cursor = options.resume_after_id
        batch_number = 0
        state: dict[str, Any] = {"execute": options.execute}

        logger.info(
            "backfill_started",
            extra={
                "mode": report.mode,
                "execute": options.execute,
                "batch_size": options.batch_size,
                "start_date": options.start_date.isoformat() if options.start_date else None,
                "end_date": options.end_date.isoformat() if options.end_date else None,
                "resume_after_id": cursor,
                "source_id": self.source_id,
            },
        )

        with self._session_factory() as db:
            if not corrected_only:
                state["policy"] = load_policy_settings(db)
                db.rollback()

            while True:
                if self._cancel_event.is_set():
                    report.cancelled = True
                    break

                batch_stats: Counter[str] = Counter()
                touched: list[AttendanceLog] = []
                try:
                    logs = self._read_batch(
                        db,
                        options,
                        cursor,
                        batch_number + 1,
                        process,
                        batch_stats,
                        touched,
                        state,
                        corrected_only=corrected_only,
                    )
                    if not logs:
                        break
                    batch_number += 1
                    self._commit_batch(db, batch_number, cursor, touched, options.execute)
                except BatchTransactionError as exc:
                    report.aborted = True
                    report.error = str(exc)
                    report.resume_after_id = exc.resume_after_id
                    logger.error(
                        "backfill_batch_failed",
                        extra={"batch_number": batch_number, "resume_after_id": exc.resume_after_id, "error": str(exc)},
                    )
                    break
                except KeyboardInterrupt:
                    db.rollback()
                    report.cancelled = True
                    logger.warning("backfill_interrupted", extra={"batch_number": batch_number, "resume_after_id": cursor})
                    break

                cursor = logs[-1].id
                db.expunge_all()
                report.stats.update(batch_stats)
                report.batches_committed += 1
                report.last_processed_id = cursor
                logger.info(
                    "backfill_batch_committed",
                    extra={
                        "mode": report.mode,
                        "execute": options.execute,
                        "batch_number": batch_number,
                        "last_processed_id": cursor,
                        "batch_stats": dict(batch_stats),
                    },
                )

            if report.cancelled:
                report.resume_after_id = cursor

            if options.execute:
                log_audit(
                    db,
                    actor_type=AuditActorType.SYSTEM,
                    actor_id=self.source_id,
                    action="BACKFILL_ROLLBACK" if corrected_only else "BACKFILL_INSUFFICIENT_HOURS",
                    success=report.completed,
                    entity_type="attendance_log",
                    details={"version": self._settings.backfill_version, **report.to_dict()},
                )

        logger.info("backfill_finished", extra=report.to_dict())
        return report

    def _process_correction_batch(
        self,
        db: Session,
        logs: list[AttendanceLog],
        stats: Counter[str],
        touched: list[AttendanceLog],
        state: dict[str, Any],
    ) -> None:
        batch = self._batch_context(db, logs, state["policy"])
        for log in logs:
            stats["scanned"] += 1
            try:
                category, totals = self.classify(log, batch)
            except RecordValidationError as exc:
                stats["errored"] += 1
                logger.warning("backfill_record_skipped", extra={"log_id": exc.log_id, "error": str(exc)})
                continue

            stats[category] += 1
            if category != "eligible" or totals is None:
                continue

            logger.debug(
                "backfill_record_eligible",
                extra={
                    "log_id": log.id,
                    "employee_id": log.employee_id,
                    "day": log.attendance_date.isoformat(),
                    "worked_minutes": totals.worked_minutes,
                },
            )
            self._apply_correction(log, totals)
            touched.append(log)
            if state["execute"]:
                stats["updated"] += 1

    def _process_rollback_batch(
        self,
        db: Session,
        logs: list[AttendanceLog],
        stats: Counter[str],
        touched: list[AttendanceLog],
        state: dict[str, Any],
    ) -> None:
        for log in logs:
            stats["scanned"] += 1
            try:
                _restore(log, log.backfill_previous)
            except RecordValidationError as exc:
                stats["errored"] += 1
                logger.warning("backfill_rollback_skipped", extra={"log_id": exc.log_id, "error": str(exc)})
                continue
            touched.append(log)
            stats["eligible"] += 1
            if state["execute"]:
                stats["updated"] += 1
