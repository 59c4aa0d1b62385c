from __future__ import annotations

import dataclasses
import logging
from collections.abc import Sequence
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from attendance_core.audit import log_audit
from attendance_core.errors import ApiError, ConfigurationError
from attendance_core.models import (
    AdminOverride,
    AttendanceLog,
    AttendanceSession,
    AuditActorType,
    BreakLog,
    BreakType,
    Employee,
    Holiday,
    LeaveRequest,
    LeaveRequestDay,
    LeaveStatus,
    SaturdayPolicy,
    Setting,
)
from attendance_core.services.caches import AttendanceCaches
from attendance_core.services.status_resolver import (
    AttendanceFacts,
    HolidayFact,
    LeaveFact,
    PolicySettings,
    ResolvedStatus,
    ShiftTimes,
    resolve,
)
from attendance_core.services.work_time import BreakSpan, TimeSpan, parse_hhmm, to_utc
from attendance_core.settings import get_attendance_timezone, get_settings

GRACE_SETTING_KEY = "late_grace_minutes"
SATURDAY_POLICY_SETTING_KEY = "saturday_policy"

logger = logging.getLogger("attendance_core.attendance")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def local_date(ts: datetime) -> date:
    return to_utc(ts).astimezone(get_attendance_timezone()).date()


def parse_grace_minutes(raw_value: str | None) -> int:
    if raw_value is None or not str(raw_value).strip():
        raise ConfigurationError(GRACE_SETTING_KEY, "Grace period setting is missing")
    try:
        value = int(float(str(raw_value).strip()))
    except ValueError as exc:
        raise ConfigurationError(GRACE_SETTING_KEY, f"Grace period setting is not a number: {raw_value!r}") from exc
    if value < 0:
        raise ConfigurationError(GRACE_SETTING_KEY, f"Grace period setting is negative: {value}")
    return value


def load_policy_settings(db: Session) -> PolicySettings:
    settings = get_settings()
    rows = {row.key: row.value for row in db.scalars(select(Setting)).all()}

    grace: int | None
    try:
        grace = parse_grace_minutes(rows.get(GRACE_SETTING_KEY))
    except ConfigurationError as exc:
        logger.warning(
            "policy_grace_period_defaulted",
            extra={"setting_key": exc.setting_key, "reason": str(exc), "default_minutes": settings.default_grace_minutes},
        )
        grace = None

    saturday_policy = SaturdayPolicy.ALL_WORKING
    raw_policy = rows.get(SATURDAY_POLICY_SETTING_KEY)
    if raw_policy:
        try:
            saturday_policy = SaturdayPolicy(raw_policy)
        except ValueError:
            logger.warning("policy_saturday_policy_invalid", extra={"value": raw_policy})

    return PolicySettings(
        grace_period_minutes=grace,
        saturday_policy=saturday_policy,
        full_day_minutes=settings.full_day_minutes,
        paid_break_allowance_minutes=settings.paid_break_allowance_minutes,
        default_shift_start=parse_hhmm(settings.default_shift_start),
    )


def get_policy(db: Session, caches: AttendanceCaches) -> PolicySettings:
    return caches.policy.get(lambda: load_policy_settings(db))


def policy_for_employee(policy: PolicySettings, employee: Employee | None) -> PolicySettings:
    if employee is None or employee.saturday_policy is None:
        return policy
    return dataclasses.replace(policy, saturday_policy=employee.saturday_policy)


def shift_times_for(employee: Employee | None) -> ShiftTimes | None:
    if employee is None or employee.shift is None:
        return None
    return ShiftTimes(start=employee.shift.start_time, end=employee.shift.end_time)


def list_confirmed_holidays(db: Session, start: date, end: date) -> list[HolidayFact]:
    rows = db.scalars(
        select(Holiday)
        .where(
            Holiday.day_date >= start,
            Holiday.day_date <= end,
            Holiday.is_tentative.is_(False),
        )
        .order_by(Holiday.day_date.asc(), Holiday.id.asc())
    ).all()
    return [HolidayFact(day=row.day_date, name=row.name, is_tentative=row.is_tentative) for row in rows]


def load_leave_window(db: Session, employee_id: int, start: date, end: date) -> dict[date, LeaveFact]:
    rows = db.execute(
        select(LeaveRequestDay.day_date, LeaveRequest)
        .join(LeaveRequest, LeaveRequest.id == LeaveRequestDay.leave_request_id)
        .where(
            LeaveRequest.employee_id == employee_id,
            LeaveRequest.status == LeaveStatus.APPROVED,
            LeaveRequestDay.day_date >= start,
            LeaveRequestDay.day_date <= end,
        )
        .order_by(LeaveRequest.created_at.asc(), LeaveRequest.id.asc())
    ).all()

    window: dict[date, LeaveFact] = {}
    for day_date, leave in rows:
        # Overlapping requests: the earliest approved one wins.
        window.setdefault(
            day_date,
            LeaveFact(
                status=leave.status,
                subtype=leave.subtype,
                leave_type=leave.leave_type,
                leave_request_id=leave.id,
            ),
        )
    return window


def get_attendance_log(db: Session, employee_id: int, day: date) -> AttendanceLog | None:
    return db.scalar(
        select(AttendanceLog).where(
            AttendanceLog.employee_id == employee_id,
            AttendanceLog.attendance_date == day,
        )
    )


def facts_from_log(log: AttendanceLog | None) -> AttendanceFacts | None:
    if log is None:
        return None
    return AttendanceFacts(
        sessions=tuple(TimeSpan(start=to_utc(item.start_ts), end=to_utc(item.end_ts)) for item in log.sessions),
        breaks=tuple(
            BreakSpan(start=to_utc(item.start_ts), end=to_utc(item.end_ts), break_type=item.break_type)
            for item in log.breaks
        ),
        clock_in=to_utc(log.clock_in_ts),
        clock_out=to_utc(log.clock_out_ts),
        admin_override=log.admin_override or AdminOverride.NONE,
        override_reason=log.override_reason,
    )


def apply_resolution(log: AttendanceLog, resolved: ResolvedStatus) -> None:
    log.status = resolved.status
    log.is_half_day = resolved.is_half_day
    log.half_day_reason_code = resolved.half_day_reason_code
    log.half_day_reason_text = resolved.half_day_reason_text
    log.late_minutes = resolved.late_minutes
    log.total_worked_minutes = resolved.total_worked_minutes
    log.total_payable_minutes = resolved.total_payable_minutes


def _ensure_employee(db: Session, employee_id: int) -> Employee:
    employee = db.get(Employee, employee_id)
    if employee is None:
        raise ApiError(status_code=404, code="EMPLOYEE_NOT_FOUND", message="Employee not found.")
    return employee


def _ensure_active_employee(db: Session, employee_id: int) -> Employee:
    employee = _ensure_employee(db, employee_id)
    if not employee.is_active:
        raise ApiError(status_code=403, code="EMPLOYEE_INACTIVE", message="Employee is not active.")
    return employee


def _resolve_log(
    db: Session,
    caches: AttendanceCaches,
    employee: Employee,
    day: date,
    log: AttendanceLog | None,
    *,
    now: datetime,
    holidays: Sequence[HolidayFact] | None = None,
) -> ResolvedStatus:
    policy = policy_for_employee(get_policy(db, caches), employee)
    if holidays is None:
        holidays = list_confirmed_holidays(db, day, day)
    leave = caches.leave.leave_for_date(
        employee.id,
        day,
        lambda start, end: load_leave_window(db, employee.id, start, end),
    )
    resolved = resolve(
        day,
        facts_from_log(log),
        holidays,
        leave,
        policy,
        now=now,
        shift=shift_times_for(employee),
    )
    logger.debug(
        "status_resolved",
        extra={"employee_id": employee.id, "day": day.isoformat(), "status": resolved.status.value, "rule": resolved.rule},
    )
    return resolved


def resolve_employee_day(
    db: Session,
    caches: AttendanceCaches,
    employee_id: int,
    day: date,
    *,
    now: datetime | None = None,
) -> ResolvedStatus:
    now_utc = to_utc(now) if now is not None else _utcnow()
    employee = _ensure_employee(db, employee_id)
    log = get_attendance_log(db, employee_id, day)
    override = log.admin_override if log is not None else AdminOverride.NONE
    return caches.status.get_or_resolve(
        employee_id,
        day,
        override,
        lambda: _resolve_log(db, caches, employee, day, log, now=now_utc),
    )


def resolve_employee_range(
    db: Session,
    caches: AttendanceCaches,
    employee_id: int,
    start: date,
    end: date,
    *,
    now: datetime | None = None,
) -> list[tuple[date, ResolvedStatus]]:
    if end < start:
        raise ApiError(status_code=422, code="INVALID_RANGE", message="end must be greater than or equal to start.")
    if (end - start).days > 92:
        raise ApiError(status_code=422, code="RANGE_TOO_LARGE", message="Range must not exceed 93 days.")

    now_utc = to_utc(now) if now is not None else _utcnow()
    employee = _ensure_employee(db, employee_id)
    holidays = list_confirmed_holidays(db, start, end)
    logs = {
        log.attendance_date: log
        for log in db.scalars(
            select(AttendanceLog).where(
                AttendanceLog.employee_id == employee_id,
                AttendanceLog.attendance_date >= start,
                AttendanceLog.attendance_date <= end,
            )
        ).all()
    }

    results: list[tuple[date, ResolvedStatus]] = []
    day = start
    while day <= end:
        log = logs.get(day)
        override = log.admin_override if log is not None else AdminOverride.NONE
        results.append(
            (
                day,
                caches.status.get_or_resolve(
                    employee_id,
                    day,
                    override,
                    lambda day=day, log=log: _resolve_log(db, caches, employee, day, log, now=now_utc, holidays=holidays),
                ),
            )
        )
        day += timedelta(days=1)
    return results


def _open_session(log: AttendanceLog) -> AttendanceSession | None:
    for session in log.sessions:
        if session.end_ts is None:
            return session
    return None


def _open_break(log: AttendanceLog) -> BreakLog | None:
    for item in log.breaks:
        if item.end_ts is None:
            return item
    return None


def _find_log_with_open_session(db: Session, employee_id: int) -> AttendanceLog | None:
    return db.scalar(
        select(AttendanceLog)
        .join(AttendanceSession, AttendanceSession.attendance_log_id == AttendanceLog.id)
        .where(
            AttendanceLog.employee_id == employee_id,
            AttendanceSession.end_ts.is_(None),
        )
        .order_by(AttendanceLog.attendance_date.desc())
        .limit(1)
    )


def clock_in(
    db: Session,
    caches: AttendanceCaches,
    employee_id: int,
    *,
    now: datetime | None = None,
) -> AttendanceLog:
    now_utc = to_utc(now) if now is not None else _utcnow()
    _ensure_active_employee(db, employee_id)
    if _find_log_with_open_session(db, employee_id) is not None:
        raise ApiError(status_code=409, code="ALREADY_CLOCKED_IN", message="An attendance session is already open.")

    day = local_date(now_utc)
    with caches.status.mutating(employee_id, day):
        log = get_attendance_log(db, employee_id, day)
        if log is None:
            log = AttendanceLog(
                employee_id=employee_id,
                attendance_date=day,
                clock_in_ts=now_utc,
                admin_override=AdminOverride.NONE,
            )
            db.add(log)
        elif log.clock_in_ts is None:
            log.clock_in_ts = now_utc
        log.clock_out_ts = None
        log.sessions.append(AttendanceSession(start_ts=now_utc))
        db.commit()
        db.refresh(log)

    logger.info("clock_in", extra={"employee_id": employee_id, "day": day.isoformat(), "log_id": log.id})
    return log


def clock_out(
    db: Session,
    caches: AttendanceCaches,
    employee_id: int,
    *,
    now: datetime | None = None,
) -> tuple[AttendanceLog, ResolvedStatus]:
    now_utc = to_utc(now) if now is not None else _utcnow()
    employee = _ensure_active_employee(db, employee_id)
    log = _find_log_with_open_session(db, employee_id)
    if log is None:
        raise ApiError(status_code=409, code="NOT_CLOCKED_IN", message="No open attendance session.")

    with caches.status.mutating(employee_id, log.attendance_date):
        open_break = _open_break(log)
        if open_break is not None:
            open_break.end_ts = now_utc
        session = _open_session(log)
        if session is not None:
            session.end_ts = now_utc
        log.clock_out_ts = now_utc
        db.flush()

        resolved = _resolve_log(db, caches, employee, log.attendance_date, log, now=now_utc)
        apply_resolution(log, resolved)
        db.commit()
        db.refresh(log)

    logger.info(
        "clock_out",
        extra={
            "employee_id": employee_id,
            "day": log.attendance_date.isoformat(),
            "status": resolved.status.value,
            "worked_minutes": resolved.total_worked_minutes,
        },
    )
    return log, resolved


def start_break(
    db: Session,
    caches: AttendanceCaches,
    employee_id: int,
    break_type: BreakType,
    *,
    now: datetime | None = None,
) -> BreakLog:
    now_utc = to_utc(now) if now is not None else _utcnow()
    _ensure_active_employee(db, employee_id)
    log = _find_log_with_open_session(db, employee_id)
    if log is None:
        raise ApiError(status_code=409, code="NOT_CLOCKED_IN", message="No open attendance session.")
    if _open_break(log) is not None:
        raise ApiError(status_code=409, code="BREAK_ALREADY_OPEN", message="A break is already in progress.")

    with caches.status.mutating(employee_id, log.attendance_date):
        break_log = BreakLog(break_type=break_type, start_ts=now_utc)
        log.breaks.append(break_log)
        db.commit()
        db.refresh(break_log)
    return break_log


def end_break(
    db: Session,
    caches: AttendanceCaches,
    employee_id: int,
    *,
    now: datetime | None = None,
) -> BreakLog:
    now_utc = to_utc(now) if now is not None else _utcnow()
    _ensure_active_employee(db, employee_id)
    log = _find_log_with_open_session(db, employee_id)
    break_log = _open_break(log) if log is not None else None
    if log is None or break_log is None:
        raise ApiError(status_code=409, code="NO_OPEN_BREAK", message="No break is in progress.")

    with caches.status.mutating(employee_id, log.attendance_date):
        break_log.end_ts = now_utc
        db.commit()
        db.refresh(break_log)
    return break_log


def set_admin_override(
    db: Session,
    caches: AttendanceCaches,
    employee_id: int,
    day: date,
    override: AdminOverride,
    *,
    reason: str | None,
    actor_id: str,
    now: datetime | None = None,
    request_id: str | None = None,
) -> tuple[AttendanceLog, ResolvedStatus]:
    now_utc = to_utc(now) if now is not None else _utcnow()
    employee = _ensure_employee(db, employee_id)

    with caches.status.mutating(employee_id, day):
        log = get_attendance_log(db, employee_id, day)
        if log is None:
            log = AttendanceLog(employee_id=employee_id, attendance_date=day)
            db.add(log)
        previous = (log.admin_override or AdminOverride.NONE).value
        log.admin_override = override
        log.override_reason = reason if override is not AdminOverride.NONE else None
        db.flush()

        resolved = _resolve_log(db, caches, employee, day, log, now=now_utc)
        apply_resolution(log, resolved)
        db.commit()
        db.refresh(log)

    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action="ATTENDANCE_OVERRIDE_SET",
        entity_type="attendance_log",
        entity_id=str(log.id),
        details={"day": day.isoformat(), "previous": previous, "override": override.value, "reason": reason},
        request_id=request_id,
    )
    return log, resolved


def update_policy(
    db: Session,
    caches: AttendanceCaches,
    *,
    grace_period_minutes: int | None,
    saturday_policy: SaturdayPolicy | None,
    actor_id: str,
    request_id: str | None = None,
) -> PolicySettings:
    changes: dict[str, str] = {}
    if grace_period_minutes is not None:
        if grace_period_minutes < 0:
            raise ApiError(status_code=422, code="INVALID_GRACE_PERIOD", message="Grace period must not be negative.")
        changes[GRACE_SETTING_KEY] = str(grace_period_minutes)
    if saturday_policy is not None:
        changes[SATURDAY_POLICY_SETTING_KEY] = saturday_policy.value

    # Every resolved day depends on the policy.
    with caches.policy.mutating(), caches.status.mutating_all():
        for key, value in changes.items():
            row = db.get(Setting, key)
            if row is None:
                db.add(Setting(key=key, value=value))
            else:
                row.value = value
        db.commit()

    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action="ATTENDANCE_POLICY_UPDATED",
        entity_type="setting",
        details=changes,
        request_id=request_id,
    )
    return get_policy(db, caches)


def decide_leave_request(
    db: Session,
    caches: AttendanceCaches,
    leave_id: int,
    decision: LeaveStatus,
    *,
    actor_id: str,
    request_id: str | None = None,
) -> LeaveRequest:
    if decision is LeaveStatus.PENDING:
        raise ApiError(status_code=422, code="INVALID_DECISION", message="Decision must be APPROVED or REJECTED.")
    leave = db.get(LeaveRequest, leave_id)
    if leave is None:
        raise ApiError(status_code=404, code="LEAVE_NOT_FOUND", message="Leave request not found.")

    affected = [(leave.employee_id, day) for day in leave.covered_dates]
    with caches.leave.mutating(leave.employee_id), caches.status.mutating_many(affected):
        leave.status = decision
        db.commit()
        db.refresh(leave)

    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action=f"LEAVE_{decision.value}",
        entity_type="leave_request",
        entity_id=str(leave.id),
        details={"employee_id": leave.employee_id, "days": [day.isoformat() for _, day in affected]},
        request_id=request_id,
    )
    return leave
