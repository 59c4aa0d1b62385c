from datetime import date

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from attendance_core.db import get_db
from attendance_core.deps import get_caches
from attendance_core.schemas import (
    BreakActionResponse,
    BreakStartRequest,
    ClockActionResponse,
    ResolvedRangeRead,
    ResolvedStatusRead,
)
from attendance_core.services.attendance import (
    clock_in,
    clock_out,
    end_break,
    resolve_employee_day,
    resolve_employee_range,
    start_break,
)
from attendance_core.services.caches import AttendanceCaches

router = APIRouter(prefix="/api/attendance", tags=["attendance"])


@router.get("/{employee_id}/days/{day}", response_model=ResolvedStatusRead)
def get_day_status(
    employee_id: int,
    day: date,
    db: Session = Depends(get_db),
    caches: AttendanceCaches = Depends(get_caches),
) -> ResolvedStatusRead:
    resolved = resolve_employee_day(db, caches, employee_id, day)
    return ResolvedStatusRead.from_resolved(employee_id, day, resolved)


@router.get("/{employee_id}/range", response_model=ResolvedRangeRead)
def get_range_status(
    employee_id: int,
    start: date = Query(...),
    end: date = Query(...),
    db: Session = Depends(get_db),
    caches: AttendanceCaches = Depends(get_caches),
) -> ResolvedRangeRead:
    results = resolve_employee_range(db, caches, employee_id, start, end)
    return ResolvedRangeRead(
        employee_id=employee_id,
        start=start,
        end=end,
        days=[ResolvedStatusRead.from_resolved(employee_id, day, resolved) for day, resolved in results],
    )


@router.post("/{employee_id}/clock-in", response_model=ClockActionResponse)
def post_clock_in(
    employee_id: int,
    request: Request,
    db: Session = Depends(get_db),
    caches: AttendanceCaches = Depends(get_caches),
) -> ClockActionResponse:
    request.state.employee_id = employee_id
    log = clock_in(db, caches, employee_id)
    return ClockActionResponse(
        employee_id=employee_id,
        attendance_log_id=log.id,
        attendance_date=log.attendance_date,
        ts_utc=log.sessions[-1].start_ts,
    )


@router.post("/{employee_id}/clock-out", response_model=ClockActionResponse)
def post_clock_out(
    employee_id: int,
    request: Request,
    db: Session = Depends(get_db),
    caches: AttendanceCaches = Depends(get_caches),
) -> ClockActionResponse:
    request.state.employee_id = employee_id
    log, resolved = clock_out(db, caches, employee_id)
    return ClockActionResponse(
        employee_id=employee_id,
        attendance_log_id=log.id,
        attendance_date=log.attendance_date,
        ts_utc=log.clock_out_ts,
        status=ResolvedStatusRead.from_resolved(employee_id, log.attendance_date, resolved),
    )


@router.post("/{employee_id}/breaks/start", response_model=BreakActionResponse)
def post_break_start(
    employee_id: int,
    payload: BreakStartRequest,
    request: Request,
    db: Session = Depends(get_db),
    caches: AttendanceCaches = Depends(get_caches),
) -> BreakActionResponse:
    request.state.employee_id = employee_id
    break_log = start_break(db, caches, employee_id, payload.break_type)
    return BreakActionResponse(
        employee_id=employee_id,
        break_id=break_log.id,
        break_type=break_log.break_type,
        start_ts=break_log.start_ts,
        end_ts=break_log.end_ts,
    )


@router.post("/{employee_id}/breaks/end", response_model=BreakActionResponse)
def post_break_end(
    employee_id: int,
    request: Request,
    db: Session = Depends(get_db),
    caches: AttendanceCaches = Depends(get_caches),
) -> BreakActionResponse:
    request.state.employee_id = employee_id
    break_log = end_break(db, caches, employee_id)
    return BreakActionResponse(
        employee_id=employee_id,
        break_id=break_log.id,
        break_type=break_log.break_type,
        start_ts=break_log.start_ts,
        end_ts=break_log.end_ts,
    )
