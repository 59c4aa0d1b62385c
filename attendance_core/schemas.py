from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from attendance_core.models import (
    AdminOverride,
    AttendanceStatus,
    BreakType,
    HalfDayReasonCode,
    LeaveStatus,
    LeaveSubtype,
    SaturdayPolicy,
)
from attendance_core.services.status_resolver import PolicySettings, ResolvedStatus


class ResolvedStatusRead(BaseModel):
    employee_id: int
    day: date
    status: AttendanceStatus
    label: str
    is_half_day: bool
    half_day_reason_code: HalfDayReasonCode | None = None
    half_day_reason_text: str | None = None
    late_minutes: int
    total_worked_minutes: int
    total_payable_minutes: int
    leave_subtype: LeaveSubtype | None = None
    holiday_name: str | None = None
    config_warnings: list[str] = Field(default_factory=list)

    @classmethod
    def from_resolved(cls, employee_id: int, day: date, resolved: ResolvedStatus) -> "ResolvedStatusRead":
        return cls(
            employee_id=employee_id,
            day=day,
            status=resolved.status,
            label=resolved.label,
            is_half_day=resolved.is_half_day,
            half_day_reason_code=resolved.half_day_reason_code,
            half_day_reason_text=resolved.half_day_reason_text,
            late_minutes=resolved.late_minutes,
            total_worked_minutes=resolved.total_worked_minutes,
            total_payable_minutes=resolved.total_payable_minutes,
            leave_subtype=resolved.leave_subtype,
            holiday_name=resolved.holiday_name,
            config_warnings=list(resolved.config_warnings),
        )


class ResolvedRangeRead(BaseModel):
    employee_id: int
    start: date
    end: date
    days: list[ResolvedStatusRead]


class ClockActionResponse(BaseModel):
    employee_id: int
    attendance_log_id: int
    attendance_date: date
    ts_utc: datetime
    status: ResolvedStatusRead | None = None


class BreakStartRequest(BaseModel):
    break_type: BreakType = BreakType.UNPAID


class BreakActionResponse(BaseModel):
    employee_id: int
    break_id: int
    break_type: BreakType
    start_ts: datetime
    end_ts: datetime | None = None


class AdminOverrideRequest(BaseModel):
    override: AdminOverride
    reason: str | None = Field(default=None, max_length=1000)

    @model_validator(mode="after")
    def validate_reason(self) -> "AdminOverrideRequest":
        if self.override is not AdminOverride.NONE and not (self.reason or "").strip():
            raise ValueError("reason is required when setting an override")
        return self


class PolicyRead(BaseModel):
    grace_period_minutes: int | None
    saturday_policy: SaturdayPolicy
    full_day_minutes: int
    paid_break_allowance_minutes: int

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_policy(cls, policy: PolicySettings) -> "PolicyRead":
        return cls(
            grace_period_minutes=policy.grace_period_minutes,
            saturday_policy=policy.saturday_policy,
            full_day_minutes=policy.full_day_minutes,
            paid_break_allowance_minutes=policy.paid_break_allowance_minutes,
        )


class PolicyUpdateRequest(BaseModel):
    grace_period_minutes: int | None = Field(default=None, ge=0, le=24 * 60)
    saturday_policy: SaturdayPolicy | None = None

    @model_validator(mode="after")
    def validate_not_empty(self) -> "PolicyUpdateRequest":
        if self.grace_period_minutes is None and self.saturday_policy is None:
            raise ValueError("At least one policy field must be provided")
        return self


class LeaveDecisionRequest(BaseModel):
    status: LeaveStatus

    @model_validator(mode="after")
    def validate_decision(self) -> "LeaveDecisionRequest":
        if self.status == LeaveStatus.PENDING:
            raise ValueError("status must be APPROVED or REJECTED")
        return self


class LeaveDecisionResponse(BaseModel):
    id: int
    employee_id: int
    status: LeaveStatus
    subtype: LeaveSubtype
    days: list[date]
