"""Create attendance core schema

Revision ID: 0001_attendance_core
Revises:
Create Date: 2026-10-18 09:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_attendance_core"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

saturday_policy = postgresql.ENUM(
    "ALL_WORKING",
    "ALL_OFF",
    "WEEK_1_3_OFF",
    "WEEK_2_4_OFF",
    name="saturday_policy",
    create_type=False,
)

attendance_status = postgresql.ENUM(
    "HOLIDAY",
    "LEAVE",
    "WEEKLY_OFF",
    "PRESENT",
    "LATE",
    "HALF_DAY",
    "ABSENT",
    "WORKING_DAY",
    name="attendance_status",
    create_type=False,
)

half_day_reason_code = postgresql.ENUM(
    "LATE_LOGIN",
    "INSUFFICIENT_WORKING_HOURS",
    "ADMIN_OVERRIDE",
    name="half_day_reason_code",
    create_type=False,
)

admin_override = postgresql.ENUM("NONE", "HALF_DAY", "LATE", name="admin_override", create_type=False)

break_type = postgresql.ENUM("PAID", "UNPAID", "LUNCH", name="break_type", create_type=False)

leave_status = postgresql.ENUM("APPROVED", "PENDING", "REJECTED", name="leave_status", create_type=False)

leave_subtype = postgresql.ENUM("ORDINARY", "COMPENSATORY", "SWAP", name="leave_subtype", create_type=False)

leave_duration = postgresql.ENUM(
    "FULL_DAY",
    "HALF_DAY_FIRST_HALF",
    "HALF_DAY_SECOND_HALF",
    name="leave_duration",
    create_type=False,
)

audit_actor_type = postgresql.ENUM("ADMIN", "EMPLOYEE", "SYSTEM", name="audit_actor_type", create_type=False)

ENUM_TYPES = (
    saturday_policy,
    attendance_status,
    half_day_reason_code,
    admin_override,
    break_type,
    leave_status,
    leave_subtype,
    leave_duration,
    audit_actor_type,
)


def _timestamp_column(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ENUM_TYPES:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "shifts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.UniqueConstraint("name", name="uq_shifts_name"),
    )

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("shift_id", sa.Integer(), nullable=True),
        sa.Column("saturday_policy", saturday_policy, nullable=True),
        sa.ForeignKeyConstraint(["shift_id"], ["shifts.id"], ondelete="SET NULL"),
    )

    op.create_table(
        "attendance_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("attendance_date", sa.Date(), nullable=False),
        sa.Column("clock_in_ts", sa.DateTime(timezone=True), nullable=True),
        sa.Column("clock_out_ts", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", attendance_status, nullable=False, server_default=sa.text("'WORKING_DAY'")),
        sa.Column("is_half_day", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("half_day_reason_code", half_day_reason_code, nullable=True),
        sa.Column("half_day_reason_text", sa.String(length=512), nullable=True),
        sa.Column("late_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_worked_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_payable_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("admin_override", admin_override, nullable=False, server_default=sa.text("'NONE'")),
        sa.Column("override_reason", sa.String(length=1000), nullable=True),
        sa.Column("backfilled_by", sa.String(length=128), nullable=True),
        sa.Column("backfill_version", sa.String(length=32), nullable=True),
        sa.Column("backfill_reason", sa.String(length=512), nullable=True),
        sa.Column("backfilled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("backfill_previous", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        _timestamp_column("created_at"),
        _timestamp_column("updated_at"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("employee_id", "attendance_date", name="uq_attendance_logs_employee_date"),
    )
    op.create_index("ix_attendance_logs_employee_id", "attendance_logs", ["employee_id"], unique=False)
    op.create_index("ix_attendance_logs_attendance_date", "attendance_logs", ["attendance_date"], unique=False)
    op.create_index("ix_attendance_logs_backfilled_by", "attendance_logs", ["backfilled_by"], unique=False)

    op.create_table(
        "attendance_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("attendance_log_id", sa.Integer(), nullable=False),
        sa.Column("start_ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_ts", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["attendance_log_id"], ["attendance_logs.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_attendance_sessions_attendance_log_id",
        "attendance_sessions",
        ["attendance_log_id"],
        unique=False,
    )

    op.create_table(
        "break_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("attendance_log_id", sa.Integer(), nullable=False),
        sa.Column("break_type", break_type, nullable=False),
        sa.Column("start_ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_ts", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["attendance_log_id"], ["attendance_logs.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_break_logs_attendance_log_id", "break_logs", ["attendance_log_id"], unique=False)

    op.create_table(
        "holidays",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("is_tentative", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    )
    op.create_index("ix_holidays_day_date", "holidays", ["day_date"], unique=False)

    op.create_table(
        "leave_requests",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("status", leave_status, nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("subtype", leave_subtype, nullable=False, server_default=sa.text("'ORDINARY'")),
        sa.Column("leave_type", leave_duration, nullable=False, server_default=sa.text("'FULL_DAY'")),
        sa.Column("reason", sa.String(length=1000), nullable=True),
        _timestamp_column("created_at"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_leave_requests_employee_id", "leave_requests", ["employee_id"], unique=False)

    op.create_table(
        "leave_request_days",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("leave_request_id", sa.Integer(), nullable=False),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.ForeignKeyConstraint(["leave_request_id"], ["leave_requests.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("leave_request_id", "day_date", name="uq_leave_request_days_request_day"),
    )
    op.create_index(
        "ix_leave_request_days_leave_request_id",
        "leave_request_days",
        ["leave_request_id"],
        unique=False,
    )
    op.create_index("ix_leave_request_days_day_date", "leave_request_days", ["day_date"], unique=False)

    op.create_table(
        "settings",
        sa.Column("key", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("value", sa.String(length=255), nullable=False),
        _timestamp_column("updated_at"),
    )
    op.execute(
        "INSERT INTO settings (key, value) VALUES "
        "('late_grace_minutes', '30'), ('saturday_policy', 'ALL_WORKING')"
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"], unique=False)
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("settings")
    op.drop_index("ix_leave_request_days_day_date", table_name="leave_request_days")
    op.drop_index("ix_leave_request_days_leave_request_id", table_name="leave_request_days")
    op.drop_table("leave_request_days")
    op.drop_index("ix_leave_requests_employee_id", table_name="leave_requests")
    op.drop_table("leave_requests")
    op.drop_index("ix_holidays_day_date", table_name="holidays")
    op.drop_table("holidays")
    op.drop_index("ix_break_logs_attendance_log_id", table_name="break_logs")
    op.drop_table("break_logs")
    op.drop_index("ix_attendance_sessions_attendance_log_id", table_name="attendance_sessions")
    op.drop_table("attendance_sessions")
    op.drop_index("ix_attendance_logs_backfilled_by", table_name="attendance_logs")
    op.drop_index("ix_attendance_logs_attendance_date", table_name="attendance_logs")
    op.drop_index("ix_attendance_logs_employee_id", table_name="attendance_logs")
    op.drop_table("attendance_logs")
    op.drop_table("employees")
    op.drop_table("shifts")

    bind = op.get_bind()
    for enum_type in reversed(ENUM_TYPES):
        enum_type.drop(bind, checkfirst=True)
