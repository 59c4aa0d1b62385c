from __future__ import annotations

import enum
from datetime import date, datetime, time, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from attendance_core.db import Base

JSONVariant = JSON().with_variant(JSONB(), "postgresql")


class AttendanceStatus(str, enum.Enum):
    HOLIDAY = "HOLIDAY"
    LEAVE = "LEAVE"
    WEEKLY_OFF = "WEEKLY_OFF"
    PRESENT = "PRESENT"
    LATE = "LATE"
    HALF_DAY = "HALF_DAY"
    ABSENT = "ABSENT"
    WORKING_DAY = "WORKING_DAY"


class HalfDayReasonCode(str, enum.Enum):
    LATE_LOGIN = "LATE_LOGIN"
    INSUFFICIENT_WORKING_HOURS = "INSUFFICIENT_WORKING_HOURS"
    ADMIN_OVERRIDE = "ADMIN_OVERRIDE"


class AdminOverride(str, enum.Enum):
    NONE = "NONE"
    HALF_DAY = "HALF_DAY"
    LATE = "LATE"


class BreakType(str, enum.Enum):
    PAID = "PAID"
    UNPAID = "UNPAID"
    LUNCH = "LUNCH"


class SaturdayPolicy(str, enum.Enum):
    ALL_WORKING = "ALL_WORKING"
    ALL_OFF = "ALL_OFF"
    WEEK_1_3_OFF = "WEEK_1_3_OFF"
    WEEK_2_4_OFF = "WEEK_2_4_OFF"


class LeaveStatus(str, enum.Enum):
    APPROVED = "APPROVED"
    PENDING = "PENDING"
    REJECTED = "REJECTED"


class LeaveSubtype(str, enum.Enum):
    ORDINARY = "ORDINARY"
    COMPENSATORY = "COMPENSATORY"
    SWAP = "SWAP"


class LeaveDuration(str, enum.Enum):
    FULL_DAY = "FULL_DAY"
    HALF_DAY_FIRST_HALF = "HALF_DAY_FIRST_HALF"
    HALF_DAY_SECOND_HALF = "HALF_DAY_SECOND_HALF"

    @property
    def is_half_day(self) -> bool:
        return self is not LeaveDuration.FULL_DAY


class AuditActorType(str, enum.Enum):
    ADMIN = "ADMIN"
    EMPLOYEE = "EMPLOYEE"
    SYSTEM = "SYSTEM"


class Shift(Base):
    __tablename__ = "shifts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)

    employees: Mapped[list[Employee]] = relationship(back_populates="shift")

    @property
    def is_overnight(self) -> bool:
        return self.end_time <= self.start_time


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    shift_id: Mapped[int | None] = mapped_column(
        ForeignKey("shifts.id", ondelete="SET NULL"),
        nullable=True,
    )
    saturday_policy: Mapped[SaturdayPolicy | None] = mapped_column(
        Enum(SaturdayPolicy, name="saturday_policy"),
        nullable=True,
    )

    shift: Mapped[Shift | None] = relationship(back_populates="employees")
    attendance_logs: Mapped[list[AttendanceLog]] = relationship(back_populates="employee")
    leave_requests: Mapped[list[LeaveRequest]] = relationship(back_populates="employee")


class AttendanceLog(Base):
    __tablename__ = "attendance_logs"
    __table_args__ = (
        UniqueConstraint("employee_id", "attendance_date", name="uq_attendance_logs_employee_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    attendance_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    clock_in_ts: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    clock_out_ts: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    status: Mapped[AttendanceStatus] = mapped_column(
        Enum(AttendanceStatus, name="attendance_status"),
        nullable=False,
        default=AttendanceStatus.WORKING_DAY,
    )
    is_half_day: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    half_day_reason_code: Mapped[HalfDayReasonCode | None] = mapped_column(
        Enum(HalfDayReasonCode, name="half_day_reason_code"),
        nullable=True,
    )
    half_day_reason_text: Mapped[str | None] = mapped_column(String(512), nullable=True)
    late_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    total_worked_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    total_payable_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))

    admin_override: Mapped[AdminOverride] = mapped_column(
        Enum(AdminOverride, name="admin_override"),
        nullable=False,
        default=AdminOverride.NONE,
    )
    override_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    backfilled_by: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    backfill_version: Mapped[str | None] = mapped_column(String(32), nullable=True)
    backfill_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    backfilled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    backfill_previous: Mapped[dict[str, Any] | None] = mapped_column(JSONVariant, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    employee: Mapped[Employee] = relationship(back_populates="attendance_logs")
    sessions: Mapped[list[AttendanceSession]] = relationship(
        back_populates="attendance_log",
        cascade="all, delete-orphan",
        order_by="AttendanceSession.start_ts",
    )
    breaks: Mapped[list[BreakLog]] = relationship(
        back_populates="attendance_log",
        cascade="all, delete-orphan",
        order_by="BreakLog.start_ts",
    )

    @property
    def is_admin_overridden(self) -> bool:
        return self.admin_override is not None and self.admin_override is not AdminOverride.NONE


class AttendanceSession(Base):
    __tablename__ = "attendance_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    attendance_log_id: Mapped[int] = mapped_column(
        ForeignKey("attendance_logs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    start_ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_ts: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    attendance_log: Mapped[AttendanceLog] = relationship(back_populates="sessions")


class BreakLog(Base):
    __tablename__ = "break_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    attendance_log_id: Mapped[int] = mapped_column(
        ForeignKey("attendance_logs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    break_type: Mapped[BreakType] = mapped_column(Enum(BreakType, name="break_type"), nullable=False)
    start_ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_ts: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    attendance_log: Mapped[AttendanceLog] = relationship(back_populates="breaks")


class Holiday(Base):
    __tablename__ = "holidays"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    day_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_tentative: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))


class LeaveRequest(Base):
    __tablename__ = "leave_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[LeaveStatus] = mapped_column(
        Enum(LeaveStatus, name="leave_status"),
        nullable=False,
        default=LeaveStatus.PENDING,
    )
    subtype: Mapped[LeaveSubtype] = mapped_column(
        Enum(LeaveSubtype, name="leave_subtype"),
        nullable=False,
        default=LeaveSubtype.ORDINARY,
    )
    leave_type: Mapped[LeaveDuration] = mapped_column(
        Enum(LeaveDuration, name="leave_duration"),
        nullable=False,
        default=LeaveDuration.FULL_DAY,
    )
    reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    employee: Mapped[Employee] = relationship(back_populates="leave_requests")
    days: Mapped[list[LeaveRequestDay]] = relationship(
        back_populates="leave_request",
        cascade="all, delete-orphan",
        order_by="LeaveRequestDay.day_date",
    )

    @property
    def covered_dates(self) -> list[date]:
        return [item.day_date for item in self.days]


class LeaveRequestDay(Base):
    __tablename__ = "leave_request_days"
    __table_args__ = (
        UniqueConstraint("leave_request_id", "day_date", name="uq_leave_request_days_request_day"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    leave_request_id: Mapped[int] = mapped_column(
        ForeignKey("leave_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)

    leave_request: Mapped[LeaveRequest] = relationship(back_populates="days")


class Setting(Base):
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    actor_type: Mapped[AuditActorType] = mapped_column(Enum(AuditActorType, name="audit_actor_type"), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSONVariant, nullable=False, default=dict)
