"""Attendance status resolution.

Every employee-day is classified by walking an ordered chain of rules. Each rule
looks at one immutable ``ResolutionContext`` and either returns a definitive
``ResolvedStatus`` or ``None`` to let the next rule decide:

1. confirmed holiday
2. approved leave (comp-off, swap leave, ordinary leave)
3. admin override (late / half day)
4. weekly off (Sunday, non-working Saturday)
5. clocked in: late beyond grace, then insufficient hours, then present
6. no clock-in on a past day: absent
7. no clock-in today or later: working day

The module performs no I/O. Callers load holidays, leave, policy and the
attendance log and pass plain values in.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, time, tzinfo
from typing import Any

from attendance_core.models import (
    AdminOverride,
    AttendanceStatus,
    HalfDayReasonCode,
    LeaveDuration,
    LeaveStatus,
    LeaveSubtype,
    SaturdayPolicy,
)
from attendance_core.services.work_time import (
    EMPTY_TOTALS,
    BreakSpan,
    TimeSpan,
    WorkTimeTotals,
    aggregate_work_time,
    calculate_late_minutes,
    evaluation_instant,
    format_worked_time,
    shift_window_for_day,
    to_utc,
)
from attendance_core.settings import get_attendance_timezone

DEFAULT_GRACE_MINUTES = 30
FULL_DAY_MINUTES = 480
GRACE_PERIOD_DEFAULTED = "GRACE_PERIOD_DEFAULTED"

STATUS_LABELS: dict[AttendanceStatus, str] = {
    AttendanceStatus.HOLIDAY: "Holiday",
    AttendanceStatus.LEAVE: "Leave",
    AttendanceStatus.WEEKLY_OFF: "Weekly Off",
    AttendanceStatus.PRESENT: "Present",
    AttendanceStatus.LATE: "Late",
    AttendanceStatus.HALF_DAY: "Half Day",
    AttendanceStatus.ABSENT: "Absent",
    AttendanceStatus.WORKING_DAY: "Working Day",
}

LEAVE_SUBTYPE_LABELS: dict[LeaveSubtype, str] = {
    LeaveSubtype.ORDINARY: "Leave",
    LeaveSubtype.COMPENSATORY: "Comp Off",
    LeaveSubtype.SWAP: "Swap Leave",
}


def display_label(
    status: AttendanceStatus,
    *,
    leave_subtype: LeaveSubtype | None = None,
    holiday_name: str | None = None,
) -> str:
    if status is AttendanceStatus.HOLIDAY and holiday_name:
        return f"{STATUS_LABELS[status]} - {holiday_name}"
    if status is AttendanceStatus.LEAVE and leave_subtype is not None:
        return LEAVE_SUBTYPE_LABELS[leave_subtype]
    return STATUS_LABELS[status]


@dataclass(frozen=True)
class HolidayFact:
    day: date
    name: str
    is_tentative: bool = False


@dataclass(frozen=True)
class LeaveFact:
    status: LeaveStatus
    subtype: LeaveSubtype = LeaveSubtype.ORDINARY
    leave_type: LeaveDuration = LeaveDuration.FULL_DAY
    leave_request_id: int | None = None


@dataclass(frozen=True)
class AttendanceFacts:
    sessions: tuple[TimeSpan, ...] = ()
    breaks: tuple[BreakSpan, ...] = ()
    clock_in: datetime | None = None
    clock_out: datetime | None = None
    admin_override: AdminOverride = AdminOverride.NONE
    override_reason: str | None = None

    @property
    def has_clock_in(self) -> bool:
        return self.clock_in is not None or len(self.sessions) > 0

    @property
    def is_clocked_out(self) -> bool:
        if self.clock_out is not None:
            return True
        return len(self.sessions) > 0 and all(not item.is_open for item in self.sessions)


@dataclass(frozen=True)
class PolicySettings:
    grace_period_minutes: int | None = DEFAULT_GRACE_MINUTES
    saturday_policy: SaturdayPolicy = SaturdayPolicy.ALL_WORKING
    full_day_minutes: int = FULL_DAY_MINUTES
    paid_break_allowance_minutes: int = 30
    default_shift_start: time = time(9, 0)


@dataclass(frozen=True)
class ShiftTimes:
    start: time
    end: time | None = None


@dataclass(frozen=True)
class ResolvedStatus:
    status: AttendanceStatus
    is_half_day: bool = False
    half_day_reason_code: HalfDayReasonCode | None = None
    half_day_reason_text: str | None = None
    late_minutes: int = 0
    total_worked_minutes: int = 0
    total_payable_minutes: int = 0
    leave_subtype: LeaveSubtype | None = None
    holiday_name: str | None = None
    rule: str = ""
    config_warnings: tuple[str, ...] = ()

    @property
    def label(self) -> str:
        return display_label(self.status, leave_subtype=self.leave_subtype, holiday_name=self.holiday_name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "label": self.label,
            "is_half_day": self.is_half_day,
            "half_day_reason_code": self.half_day_reason_code.value if self.half_day_reason_code else None,
            "half_day_reason_text": self.half_day_reason_text,
            "late_minutes": self.late_minutes,
            "total_worked_minutes": self.total_worked_minutes,
            "total_payable_minutes": self.total_payable_minutes,
            "leave_subtype": self.leave_subtype.value if self.leave_subtype else None,
            "holiday_name": self.holiday_name,
            "rule": self.rule,
            "config_warnings": list(self.config_warnings),
        }


@dataclass(frozen=True)
class ResolutionContext:
    day: date
    today: date
    facts: AttendanceFacts
    holiday: HolidayFact | None
    leave: LeaveFact | None
    policy: PolicySettings
    totals: WorkTimeTotals
    late_minutes: int
    grace_minutes: int
    config_warnings: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_past(self) -> bool:
        return self.day < self.today

    def result(self, status: AttendanceStatus, rule: str, **values: Any) -> ResolvedStatus:
        values.setdefault("total_worked_minutes", self.totals.worked_minutes)
        values.setdefault("total_payable_minutes", self.totals.payable_minutes)
        return ResolvedStatus(status=status, rule=rule, config_warnings=self.config_warnings, **values)


Rule = Callable[[ResolutionContext], "ResolvedStatus | None"]


def is_working_saturday(day: date, saturday_policy: SaturdayPolicy) -> bool:
    if day.weekday() != 5:
        return True
    week_number = math.ceil(day.day / 7)
    if saturday_policy is SaturdayPolicy.ALL_OFF:
        return False
    if saturday_policy is SaturdayPolicy.WEEK_1_3_OFF:
        return week_number not in (1, 3)
    if saturday_policy is SaturdayPolicy.WEEK_2_4_OFF:
        return week_number not in (2, 4)
    return True


def is_weekly_off(day: date, saturday_policy: SaturdayPolicy) -> bool:
    return day.weekday() == 6 or not is_working_saturday(day, saturday_policy)


def holiday_rule(ctx: ResolutionContext) -> ResolvedStatus | None:
    if ctx.holiday is None:
        return None
    return ctx.result(AttendanceStatus.HOLIDAY, "holiday", holiday_name=ctx.holiday.name)


def leave_rule(ctx: ResolutionContext) -> ResolvedStatus | None:
    if ctx.leave is None:
        return None
    if ctx.leave.leave_type.is_half_day:
        # Half-day leave keeps the time worked in the other half on display.
        return ctx.result(AttendanceStatus.LEAVE, "leave", leave_subtype=ctx.leave.subtype)
    return ctx.result(
        AttendanceStatus.LEAVE,
        "leave",
        leave_subtype=ctx.leave.subtype,
        total_worked_minutes=0,
        total_payable_minutes=0,
    )


def admin_override_rule(ctx: ResolutionContext) -> ResolvedStatus | None:
    override = ctx.facts.admin_override
    if override is AdminOverride.HALF_DAY:
        return ctx.result(
            AttendanceStatus.HALF_DAY,
            "admin_override",
            is_half_day=True,
            half_day_reason_code=HalfDayReasonCode.ADMIN_OVERRIDE,
            half_day_reason_text=ctx.facts.override_reason or "Marked as half day by an administrator",
            late_minutes=ctx.late_minutes,
        )
    if override is AdminOverride.LATE:
        return ctx.result(
            AttendanceStatus.LATE,
            "admin_override",
            half_day_reason_code=HalfDayReasonCode.ADMIN_OVERRIDE,
            half_day_reason_text=ctx.facts.override_reason or "Marked as late by an administrator",
            late_minutes=ctx.late_minutes,
        )
    return None


def weekly_off_rule(ctx: ResolutionContext) -> ResolvedStatus | None:
    if not is_weekly_off(ctx.day, ctx.policy.saturday_policy):
        return None
    return ctx.result(AttendanceStatus.WEEKLY_OFF, "weekly_off")


def clocked_in_rule(ctx: ResolutionContext) -> ResolvedStatus | None:
    if not ctx.facts.has_clock_in:
        return None
    # Lateness is checked before hours, so a late and short day stays LATE_LOGIN.
    if ctx.late_minutes > ctx.grace_minutes:
        return ctx.result(
            AttendanceStatus.LATE,
            "late_login",
            half_day_reason_code=HalfDayReasonCode.LATE_LOGIN,
            half_day_reason_text=(
                f"Logged in {ctx.late_minutes} minutes late (grace period {ctx.grace_minutes} minutes)"
            ),
            late_minutes=ctx.late_minutes,
        )
    full_day = ctx.policy.full_day_minutes
    if ctx.facts.is_clocked_out and ctx.totals.worked_minutes < full_day:
        return ctx.result(
            AttendanceStatus.HALF_DAY,
            "insufficient_hours",
            is_half_day=True,
            half_day_reason_code=HalfDayReasonCode.INSUFFICIENT_WORKING_HOURS,
            half_day_reason_text=(
                f"Worked {format_worked_time(ctx.totals.worked_minutes)}, "
                f"minimum required is {format_worked_time(full_day)}"
            ),
            late_minutes=ctx.late_minutes,
        )
    return ctx.result(AttendanceStatus.PRESENT, "present", late_minutes=ctx.late_minutes)


def absent_rule(ctx: ResolutionContext) -> ResolvedStatus | None:
    if not ctx.is_past:
        return None
    return ctx.result(AttendanceStatus.ABSENT, "absent", total_worked_minutes=0, total_payable_minutes=0)


def working_day_rule(ctx: ResolutionContext) -> ResolvedStatus | None:
    return ctx.result(AttendanceStatus.WORKING_DAY, "working_day", total_worked_minutes=0, total_payable_minutes=0)


RULES: tuple[Rule, ...] = (
    holiday_rule,
    leave_rule,
    admin_override_rule,
    weekly_off_rule,
    clocked_in_rule,
    absent_rule,
    working_day_rule,
)


def _effective_grace_minutes(policy: PolicySettings) -> tuple[int, tuple[str, ...]]:
    grace = policy.grace_period_minutes
    if grace is None or isinstance(grace, bool) or not isinstance(grace, int) or grace < 0:
        return DEFAULT_GRACE_MINUTES, (GRACE_PERIOD_DEFAULTED,)
    return grace, ()


def _matching_holiday(day: date, holidays: Iterable[HolidayFact]) -> HolidayFact | None:
    for holiday in holidays:
        if holiday.day == day and not holiday.is_tentative:
            return holiday
    return None


def build_context(
    day: date,
    facts: AttendanceFacts | None,
    holidays: Iterable[HolidayFact],
    leave_for_date: LeaveFact | None,
    policy: PolicySettings,
    *,
    now: datetime,
    shift: ShiftTimes | None = None,
    tz: tzinfo | None = None,
) -> ResolutionContext:
    zone = tz or get_attendance_timezone()
    facts = facts or AttendanceFacts()
    shift_times = shift or ShiftTimes(start=policy.default_shift_start)
    window = shift_window_for_day(day, shift_times.start, shift_times.end, zone)

    if facts.sessions:
        as_of = evaluation_instant(day, now=now, tz=zone, shift_end=window.end)
        totals = aggregate_work_time(
            facts.sessions,
            facts.breaks,
            as_of=as_of,
            shift_start=window.start,
            paid_break_allowance_minutes=policy.paid_break_allowance_minutes,
        )
        late_minutes = totals.late_minutes
    else:
        totals = EMPTY_TOTALS
        late_minutes = calculate_late_minutes(facts.clock_in, window.start)

    grace_minutes, warnings = _effective_grace_minutes(policy)
    leave = leave_for_date if leave_for_date is not None and leave_for_date.status is LeaveStatus.APPROVED else None

    return ResolutionContext(
        day=day,
        today=to_utc(now).astimezone(zone).date(),
        facts=facts,
        holiday=_matching_holiday(day, holidays),
        leave=leave,
        policy=policy,
        totals=totals,
        late_minutes=late_minutes,
        grace_minutes=grace_minutes,
        config_warnings=warnings,
    )


def evaluate(ctx: ResolutionContext, rules: Sequence[Rule] = RULES) -> ResolvedStatus:
    for rule in rules:
        outcome = rule(ctx)
        if outcome is not None:
            return outcome
    return working_day_rule(ctx)


def resolve(
    day: date,
    facts: AttendanceFacts | None,
    holidays: Iterable[HolidayFact],
    leave_for_date: LeaveFact | None,
    policy: PolicySettings,
    *,
    now: datetime,
    shift: ShiftTimes | None = None,
    tz: tzinfo | None = None,
) -> ResolvedStatus:
    ctx = build_context(day, facts, holidays, leave_for_date, policy, now=now, shift=shift, tz=tz)
    return evaluate(ctx)


def resolve_range(
    days: Iterable[date],
    facts_by_day: Mapping[date, AttendanceFacts],
    holidays: Sequence[HolidayFact],
    leaves_by_day: Mapping[date, LeaveFact],
    policy: PolicySettings,
    *,
    now: datetime,
    shift: ShiftTimes | None = None,
    tz: tzinfo | None = None,
) -> dict[date, ResolvedStatus]:
    return {
        day: resolve(
            day,
            facts_by_day.get(day),
            holidays,
            leaves_by_day.get(day),
            policy,
            now=now,
            shift=shift,
            tz=tz,
        )
        for day in days
    }
