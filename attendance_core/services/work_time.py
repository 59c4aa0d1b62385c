from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo

from attendance_core.models import BreakType


@dataclass(frozen=True)
class TimeSpan:
    start: datetime
    end: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.end is None


@dataclass(frozen=True)
class BreakSpan:
    start: datetime
    end: datetime | None = None
    break_type: BreakType = BreakType.UNPAID

    @property
    def is_open(self) -> bool:
        return self.end is None


@dataclass(frozen=True)
class ShiftWindow:
    start: datetime
    end: datetime | None = None


@dataclass(frozen=True)
class WorkTimeTotals:
    session_minutes: int
    break_minutes: int
    paid_break_minutes: int
    worked_minutes: int
    payable_minutes: int
    late_minutes: int
    first_start: datetime | None
    has_open_session: bool


EMPTY_TOTALS = WorkTimeTotals(
    session_minutes=0,
    break_minutes=0,
    paid_break_minutes=0,
    worked_minutes=0,
    payable_minutes=0,
    late_minutes=0,
    first_start=None,
    has_open_session=False,
)


def parse_hhmm(value: str) -> time:
    hour_str, minute_str = value.strip().split(":")
    hour = int(hour_str)
    minute = int(minute_str)
    if hour < 0 or hour > 23 or minute < 0 or minute > 59:
        raise ValueError(f"Invalid time of day: {value!r}")
    return time(hour=hour, minute=minute)


def to_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def shift_window_for_day(
    day: date,
    start_time: time,
    end_time: time | None,
    tz: tzinfo,
) -> ShiftWindow:
    """Anchor a shift on the attendance date in the organisation timezone.

    An end time at or before the start time belongs to the next calendar day, so
    overnight shifts compare by elapsed time instead of by clock labels.
    """
    start = datetime.combine(day, start_time, tzinfo=tz)
    if end_time is None:
        return ShiftWindow(start=start.astimezone(timezone.utc))
    end = datetime.combine(day, end_time, tzinfo=tz)
    if end <= start:
        end += timedelta(days=1)
    return ShiftWindow(start=start.astimezone(timezone.utc), end=end.astimezone(timezone.utc))


def evaluation_instant(
    day: date,
    *,
    now: datetime,
    tz: tzinfo,
    shift_end: datetime | None = None,
) -> datetime:
    """Instant that open sessions and breaks are measured against.

    Today (and later) uses the current time. A past day uses the shift end, or
    the end of the local calendar day when no shift is known, but never a point
    later than now.
    """
    now_utc = to_utc(now)
    if day >= now_utc.astimezone(tz).date():
        return now_utc
    if shift_end is not None:
        fixed_point = to_utc(shift_end)
    else:
        fixed_point = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz).astimezone(timezone.utc)
    return min(now_utc, fixed_point)


def _closed_intervals(
    spans: Iterable[TimeSpan | BreakSpan],
    as_of: datetime,
) -> list[tuple[datetime, datetime]]:
    intervals: list[tuple[datetime, datetime]] = []
    for span in spans:
        start = to_utc(span.start)
        end = to_utc(span.end) if span.end is not None else as_of
        if start is None or end <= start:
            continue
        intervals.append((start, end))
    return intervals


def _merge(intervals: Sequence[tuple[datetime, datetime]]) -> list[tuple[datetime, datetime]]:
    merged: list[tuple[datetime, datetime]] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def _overlap_seconds(
    left: Sequence[tuple[datetime, datetime]],
    right: Sequence[tuple[datetime, datetime]],
) -> float:
    total = 0.0
    for left_start, left_end in left:
        for right_start, right_end in right:
            start = max(left_start, right_start)
            end = min(left_end, right_end)
            if end > start:
                total += (end - start).total_seconds()
    return total


def calculate_late_minutes(first_start: datetime | None, shift_start: datetime | None) -> int:
    if first_start is None or shift_start is None:
        return 0
    elapsed = (to_utc(first_start) - to_utc(shift_start)).total_seconds()
    return max(0, int(elapsed // 60))


def aggregate_work_time(
    sessions: Sequence[TimeSpan],
    breaks: Sequence[BreakSpan] = (),
    *,
    as_of: datetime,
    shift_start: datetime | None = None,
    paid_break_allowance_minutes: int = 30,
) -> WorkTimeTotals:
    if not sessions:
        return EMPTY_TOTALS

    as_of_utc = to_utc(as_of)
    session_intervals = _closed_intervals(sessions, as_of_utc)
    session_seconds = sum((end - start).total_seconds() for start, end in session_intervals)
    covered = _merge(session_intervals)

    # A break only counts for the part of it that falls inside a session.
    all_breaks = _merge(_closed_intervals(breaks, as_of_utc))
    paid_breaks = _merge(_closed_intervals((item for item in breaks if item.break_type == BreakType.PAID), as_of_utc))
    break_seconds = _overlap_seconds(all_breaks, covered)
    paid_break_seconds = _overlap_seconds(paid_breaks, covered)

    worked_minutes = max(0, int((session_seconds - break_seconds) // 60))
    paid_break_minutes = int(paid_break_seconds // 60)
    payable_minutes = worked_minutes + min(paid_break_minutes, max(0, paid_break_allowance_minutes))

    first_start = min(to_utc(item.start) for item in sessions)
    return WorkTimeTotals(
        session_minutes=int(session_seconds // 60),
        break_minutes=int(break_seconds // 60),
        paid_break_minutes=paid_break_minutes,
        worked_minutes=worked_minutes,
        payable_minutes=payable_minutes,
        late_minutes=calculate_late_minutes(first_start, shift_start),
        first_start=first_start,
        has_open_session=any(item.is_open for item in sessions),
    )


def format_worked_time(total_minutes: int) -> str:
    hours, minutes = divmod(max(0, total_minutes), 60)
    if minutes == 0:
        return f"{hours}h"
    return f"{hours}h {minutes}m"
