from datetime import date

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from attendance_core.db import get_db
from attendance_core.deps import get_admin_actor, get_caches
from attendance_core.errors import get_request_id
from attendance_core.schemas import (
    AdminOverrideRequest,
    LeaveDecisionRequest,
    LeaveDecisionResponse,
    PolicyRead,
    PolicyUpdateRequest,
    ResolvedStatusRead,
)
from attendance_core.services.attendance import (
    decide_leave_request,
    get_policy,
    set_admin_override,
    update_policy,
)
from attendance_core.services.caches import AttendanceCaches

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.put("/attendance/{employee_id}/days/{day}/override", response_model=ResolvedStatusRead)
def put_admin_override(
    employee_id: int,
    day: date,
    payload: AdminOverrideRequest,
    request: Request,
    actor_id: str = Depends(get_admin_actor),
    db: Session = Depends(get_db),
    caches: AttendanceCaches = Depends(get_caches),
) -> ResolvedStatusRead:
    request.state.employee_id = employee_id
    _log, resolved = set_admin_override(
        db,
        caches,
        employee_id,
        day,
        payload.override,
        reason=payload.reason,
        actor_id=actor_id,
        request_id=get_request_id(request),
    )
    return ResolvedStatusRead.from_resolved(employee_id, day, resolved)


@router.get("/policy", response_model=PolicyRead)
def get_admin_policy(
    _actor_id: str = Depends(get_admin_actor),
    db: Session = Depends(get_db),
    caches: AttendanceCaches = Depends(get_caches),
) -> PolicyRead:
    return PolicyRead.from_policy(get_policy(db, caches))


@router.put("/policy", response_model=PolicyRead)
def put_admin_policy(
    payload: PolicyUpdateRequest,
    request: Request,
    actor_id: str = Depends(get_admin_actor),
    db: Session = Depends(get_db),
    caches: AttendanceCaches = Depends(get_caches),
) -> PolicyRead:
    policy = update_policy(
        db,
        caches,
        grace_period_minutes=payload.grace_period_minutes,
        saturday_policy=payload.saturday_policy,
        actor_id=actor_id,
        request_id=get_request_id(request),
    )
    return PolicyRead.from_policy(policy)


@router.post("/leaves/{leave_id}/decision", response_model=LeaveDecisionResponse)
def post_leave_decision(
    leave_id: int,
    payload: LeaveDecisionRequest,
    request: Request,
    actor_id: str = Depends(get_admin_actor),
    db: Session = Depends(get_db),
    caches: AttendanceCaches = Depends(get_caches),
) -> LeaveDecisionResponse:
    leave = decide_leave_request(
        db,
        caches,
        leave_id,
        payload.status,
        actor_id=actor_id,
        request_id=get_request_id(request),
    )
    return LeaveDecisionResponse(
        id=leave.id,
        employee_id=leave.employee_id,
        status=leave.status,
        subtype=leave.subtype,
        days=leave.covered_dates,
    )
