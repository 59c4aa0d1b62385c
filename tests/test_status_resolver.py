from __future__ import annotations

from datetime import date, datetime, time
from zoneinfo import ZoneInfo
import unittest

from attendance_core.models import (
    AdminOverride,
    AttendanceStatus,
    HalfDayReasonCode,
    LeaveDuration,
    LeaveStatus,
    LeaveSubtype,
    SaturdayPolicy,
)
from attendance_core.services.status_resolver import (
    GRACE_PERIOD_DEFAULTED,
    AttendanceFacts,
    HolidayFact,
    LeaveFact,
    PolicySettings,
    ShiftTimes,
    is_working_saturday,
    resolve,
    resolve_range,
)
from attendance_core.services.work_time import TimeSpan

IST = ZoneInfo("Asia/Kolkata")
MONDAY = date(2026, 3, 2)
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=IST)


def _ist(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=IST)


def _worked_day(day: date, start: tuple[int, int], end: tuple[int, int], **kwargs) -> AttendanceFacts:
    clock_in = _ist(day, *start)
    clock_out = _ist(day, *end)
    return AttendanceFacts(
        sessions=(TimeSpan(clock_in, clock_out),),
        clock_in=clock_in,
        clock_out=clock_out,
        **kwargs,
    )


def _resolve(day: date, facts: AttendanceFacts | None, *, holidays=(), leave=None, policy=None, now=NOW):
    return resolve(
        day,
        facts,
        holidays,
        leave,
        policy or PolicySettings(),
        now=now,
        shift=ShiftTimes(start=time(9, 0), end=time(18, 0)),
        tz=IST,
    )


class StatusResolverTests(unittest.TestCase):
    def test_clock_in_within_grace_is_present(self) -> None:
        result = _resolve(MONDAY, _worked_day(MONDAY, (9, 15), (17, 30)))
        self.assertEqual(result.status, AttendanceStatus.PRESENT)
        self.assertEqual(result.late_minutes, 15)
        self.assertFalse(result.is_half_day)
        self.assertIsNone(result.half_day_reason_code)
        self.assertEqual(result.label, "Present")

    def test_clock_in_beyond_grace_is_late(self) -> None:
        result = _resolve(MONDAY, _worked_day(MONDAY, (9, 45), (18, 0)))
        self.assertEqual(result.status, AttendanceStatus.LATE)
        self.assertEqual(result.half_day_reason_code, HalfDayReasonCode.LATE_LOGIN)
        self.assertEqual(result.half_day_reason_text, "Logged in 45 minutes late (grace period 30 minutes)")
        self.assertFalse(result.is_half_day)
        self.assertEqual(result.late_minutes, 45)

    def test_short_day_is_half_day(self) -> None:
        result = _resolve(MONDAY, _worked_day(MONDAY, (9, 0), (16, 50)))
        self.assertEqual(result.status, AttendanceStatus.HALF_DAY)
        self.assertTrue(result.is_half_day)
        self.assertEqual(result.half_day_reason_code, HalfDayReasonCode.INSUFFICIENT_WORKING_HOURS)
        self.assertEqual(result.half_day_reason_text, "Worked 7h 50m, minimum required is 8h")
        self.assertEqual(result.total_worked_minutes, 470)

    def test_late_and_short_day_reports_late_login(self) -> None:
        result = _resolve(MONDAY, _worked_day(MONDAY, (9, 45), (16, 0)))
        self.assertEqual(result.status, AttendanceStatus.LATE)
        self.assertEqual(result.half_day_reason_code, HalfDayReasonCode.LATE_LOGIN)

    def test_holiday_takes_precedence_over_leave_and_clock_in(self) -> None:
        result = _resolve(
            MONDAY,
            _worked_day(MONDAY, (9, 0), (13, 0)),
            holidays=[HolidayFact(day=MONDAY, name="Holi")],
            leave=LeaveFact(status=LeaveStatus.APPROVED),
        )
        self.assertEqual(result.status, AttendanceStatus.HOLIDAY)
        self.assertEqual(result.label, "Holiday - Holi")
        self.assertEqual(result.total_worked_minutes, 240)

    def test_tentative_holiday_is_ignored(self) -> None:
        result = _resolve(MONDAY, None, holidays=[HolidayFact(day=MONDAY, name="Maybe", is_tentative=True)])
        self.assertEqual(result.status, AttendanceStatus.ABSENT)

    def test_comp_off_leave_label(self) -> None:
        result = _resolve(
            MONDAY,
            None,
            leave=LeaveFact(status=LeaveStatus.APPROVED, subtype=LeaveSubtype.COMPENSATORY),
        )
        self.assertEqual(result.status, AttendanceStatus.LEAVE)
        self.assertEqual(result.leave_subtype, LeaveSubtype.COMPENSATORY)
        self.assertEqual(result.label, "Comp Off")

    def test_pending_leave_is_not_leave(self) -> None:
        result = _resolve(MONDAY, None, leave=LeaveFact(status=LeaveStatus.PENDING))
        self.assertEqual(result.status, AttendanceStatus.ABSENT)

    def test_half_day_leave_keeps_worked_minutes(self) -> None:
        result = _resolve(
            MONDAY,
            _worked_day(MONDAY, (14, 0), (18, 0)),
            leave=LeaveFact(
                status=LeaveStatus.APPROVED,
                subtype=LeaveSubtype.SWAP,
                leave_type=LeaveDuration.HALF_DAY_FIRST_HALF,
            ),
        )
        self.assertEqual(result.status, AttendanceStatus.LEAVE)
        self.assertEqual(result.label, "Swap Leave")
        self.assertEqual(result.total_worked_minutes, 240)

    def test_admin_half_day_override_bypasses_attendance_rules(self) -> None:
        facts = _worked_day(
            MONDAY,
            (9, 0),
            (18, 30),
            admin_override=AdminOverride.HALF_DAY,
            override_reason="Left for appointment",
        )
        result = _resolve(MONDAY, facts)
        self.assertEqual(result.status, AttendanceStatus.HALF_DAY)
        self.assertTrue(result.is_half_day)
        self.assertEqual(result.half_day_reason_code, HalfDayReasonCode.ADMIN_OVERRIDE)
        self.assertEqual(result.half_day_reason_text, "Left for appointment")
        self.assertEqual(result.total_worked_minutes, 570)

    def test_admin_late_override(self) -> None:
        facts = _worked_day(MONDAY, (9, 0), (18, 0), admin_override=AdminOverride.LATE)
        result = _resolve(MONDAY, facts)
        self.assertEqual(result.status, AttendanceStatus.LATE)
        self.assertEqual(result.half_day_reason_code, HalfDayReasonCode.ADMIN_OVERRIDE)

    def test_sunday_is_weekly_off(self) -> None:
        result = _resolve(date(2026, 3, 8), None)
        self.assertEqual(result.status, AttendanceStatus.WEEKLY_OFF)

    def test_saturday_policy_weeks(self) -> None:
        first_saturday = date(2026, 3, 7)
        second_saturday = date(2026, 3, 14)
        self.assertFalse(is_working_saturday(first_saturday, SaturdayPolicy.WEEK_1_3_OFF))
        self.assertTrue(is_working_saturday(second_saturday, SaturdayPolicy.WEEK_1_3_OFF))
        self.assertTrue(is_working_saturday(first_saturday, SaturdayPolicy.WEEK_2_4_OFF))
        self.assertFalse(is_working_saturday(second_saturday, SaturdayPolicy.WEEK_2_4_OFF))
        self.assertFalse(is_working_saturday(second_saturday, SaturdayPolicy.ALL_OFF))
        self.assertTrue(is_working_saturday(second_saturday, SaturdayPolicy.ALL_WORKING))

        result = _resolve(first_saturday, None, policy=PolicySettings(saturday_policy=SaturdayPolicy.WEEK_1_3_OFF))
        self.assertEqual(result.status, AttendanceStatus.WEEKLY_OFF)

    def test_no_clock_in_past_is_absent_today_is_working_day(self) -> None:
        self.assertEqual(_resolve(MONDAY, None).status, AttendanceStatus.ABSENT)
        today = NOW.date()
        self.assertEqual(_resolve(today, None).status, AttendanceStatus.WORKING_DAY)

    def test_open_session_today_is_present_and_not_half_day(self) -> None:
        today = NOW.date()
        facts = AttendanceFacts(sessions=(TimeSpan(_ist(today, 9, 0)),), clock_in=_ist(today, 9, 0))
        result = _resolve(today, facts)
        self.assertEqual(result.status, AttendanceStatus.PRESENT)
        self.assertEqual(result.total_worked_minutes, 180)

    def test_missing_grace_period_defaults_with_warning(self) -> None:
        policy = PolicySettings(grace_period_minutes=None)
        on_time = _resolve(MONDAY, _worked_day(MONDAY, (9, 25), (18, 0)), policy=policy)
        self.assertEqual(on_time.status, AttendanceStatus.PRESENT)
        self.assertIn(GRACE_PERIOD_DEFAULTED, on_time.config_warnings)

        late = _resolve(MONDAY, _worked_day(MONDAY, (9, 31), (18, 0)), policy=policy)
        self.assertEqual(late.status, AttendanceStatus.LATE)

    def test_custom_grace_period(self) -> None:
        result = _resolve(
            MONDAY,
            _worked_day(MONDAY, (9, 15), (18, 0)),
            policy=PolicySettings(grace_period_minutes=10),
        )
        self.assertEqual(result.status, AttendanceStatus.LATE)
        self.assertEqual(result.config_warnings, ())

    def test_resolve_range_shares_holidays(self) -> None:
        days = [date(2026, 3, 2), date(2026, 3, 3), date(2026, 3, 8)]
        results = resolve_range(
            days,
            {date(2026, 3, 2): _worked_day(date(2026, 3, 2), (9, 0), (18, 0))},
            [HolidayFact(day=date(2026, 3, 3), name="Holi")],
            {},
            PolicySettings(),
            now=NOW,
            tz=IST,
        )
        self.assertEqual(
            [results[day].status for day in days],
            [AttendanceStatus.PRESENT, AttendanceStatus.HOLIDAY, AttendanceStatus.WEEKLY_OFF],
        )

    def test_to_dict_uses_plain_values(self) -> None:
        payload = _resolve(MONDAY, _worked_day(MONDAY, (9, 0), (16, 50))).to_dict()
        self.assertEqual(payload["status"], "HALF_DAY")
        self.assertEqual(payload["label"], "Half Day")
        self.assertEqual(payload["half_day_reason_code"], "INSUFFICIENT_WORKING_HOURS")


if __name__ == "__main__":
    unittest.main()
