"""Site attendance schema

Revision ID: 0001_site_attendance
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_site_attendance"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

attendance_event_type = postgresql.ENUM(
    "ENTER",
    "EXIT",
    name="attendance_event_type",
    create_type=False,
)
attendance_trigger_method = postgresql.ENUM(
    "AUTOMATIC",
    "MANUAL",
    name="attendance_trigger_method",
    create_type=False,
)
attendance_summary_status = postgresql.ENUM(
    "EXCELLENT",
    "GOOD",
    "BELOW_TARGET",
    "ABSENT",
    "INCOMPLETE",
    name="attendance_summary_status",
    create_type=False,
)


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    bind = op.get_bind()
    attendance_event_type.create(bind, checkfirst=True)
    attendance_trigger_method.create(bind, checkfirst=True)
    attendance_summary_status.create(bind, checkfirst=True)

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("float_person_id", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_employees_tenant_id", "employees", ["tenant_id"])
    op.create_index("ix_employees_float_person_id", "employees", ["float_person_id"])

    op.create_table(
        "sites",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("site_name", sa.String(length=255), nullable=False),
        sa.Column("site_code", sa.String(length=50), nullable=True),
        sa.Column("latitude", sa.Numeric(precision=10, scale=8), nullable=True),
        sa.Column("longitude", sa.Numeric(precision=11, scale=8), nullable=True),
        sa.Column("geofence_radius_m", sa.Integer(), nullable=True),
        sa.Column("float_project_id", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sites_tenant_id", "sites", ["tenant_id"])
    op.create_index("ix_sites_float_project_id", "sites", ["float_project_id"])

    op.create_table(
        "attendance_settings",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column(
            "expected_hours_per_day",
            sa.Numeric(precision=4, scale=2),
            nullable=False,
            server_default=sa.text("7.50"),
        ),
        sa.Column("include_saturday", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("include_sunday", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("geofence_radius_m", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column("noise_threshold_m", sa.Integer(), nullable=False, server_default=sa.text("150")),
        sa.Column("timezone", sa.String(length=64), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.UniqueConstraint("tenant_id", name="uq_attendance_settings_tenant_id"),
    )

    op.create_table(
        "bank_holidays",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("holiday_date", sa.Date(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=True),
        sa.UniqueConstraint("tenant_id", "holiday_date", name="uq_bank_holidays_tenant_date"),
    )
    op.create_index("ix_bank_holidays_tenant_id", "bank_holidays", ["tenant_id"])

    op.create_table(
        "attendance_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("site_id", sa.Integer(), nullable=False),
        sa.Column("event_type", attendance_event_type, nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("latitude", sa.Numeric(precision=10, scale=8), nullable=True),
        sa.Column("longitude", sa.Numeric(precision=11, scale=8), nullable=True),
        sa.Column("trigger_method", attendance_trigger_method, nullable=False),
        sa.Column("is_noise", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("noise_distance_m", sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _created_at(),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["site_id"], ["sites.id"], ondelete="RESTRICT"),
    )
    op.create_index("ix_attendance_events_tenant_ts", "attendance_events", ["tenant_id", "ts_utc"])
    op.create_index(
        "ix_attendance_events_employee_site_ts",
        "attendance_events",
        ["employee_id", "site_id", "ts_utc"],
    )

    op.create_table(
        "attendance_summaries",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("site_id", sa.Integer(), nullable=False),
        sa.Column("summary_date", sa.Date(), nullable=False),
        sa.Column("first_entry_utc", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_exit_utc", sa.DateTime(timezone=True), nullable=True),
        sa.Column("time_on_site_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("expected_hours", sa.Numeric(precision=5, scale=2), nullable=False),
        sa.Column("utilization_percent", sa.Numeric(precision=6, scale=2), nullable=False),
        sa.Column("variance_hours", sa.Numeric(precision=6, scale=2), nullable=False),
        sa.Column("status", attendance_summary_status, nullable=False),
        sa.Column("entry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("exit_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("has_spa", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _created_at(),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["site_id"], ["sites.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint(
            "tenant_id",
            "employee_id",
            "site_id",
            "summary_date",
            name="uq_attendance_summaries_tenant_employee_site_date",
        ),
    )
    op.create_index("ix_attendance_summaries_tenant_id", "attendance_summaries", ["tenant_id"])
    op.create_index("ix_attendance_summaries_summary_date", "attendance_summaries", ["summary_date"])
    op.create_index("ix_attendance_summaries_status", "attendance_summaries", ["status"])

    op.create_table(
        "site_photo_attendances",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("site_id", sa.Integer(), nullable=False),
        sa.Column("event_date", sa.Date(), nullable=False),
        sa.Column("image_url", sa.String(length=500), nullable=True),
        _created_at(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["site_id"], ["sites.id"], ondelete="RESTRICT"),
    )
    op.create_index(
        "ix_site_photo_attendances_tenant_date",
        "site_photo_attendances",
        ["tenant_id", "event_date"],
    )


def downgrade() -> None:
    op.drop_index("ix_site_photo_attendances_tenant_date", table_name="site_photo_attendances")
    op.drop_table("site_photo_attendances")
    op.drop_index("ix_attendance_summaries_status", table_name="attendance_summaries")
    op.drop_index("ix_attendance_summaries_summary_date", table_name="attendance_summaries")
    op.drop_index("ix_attendance_summaries_tenant_id", table_name="attendance_summaries")
    op.drop_table("attendance_summaries")
    op.drop_index("ix_attendance_events_employee_site_ts", table_name="attendance_events")
    op.drop_index("ix_attendance_events_tenant_ts", table_name="attendance_events")
    op.drop_table("attendance_events")
    op.drop_index("ix_bank_holidays_tenant_id", table_name="bank_holidays")
    op.drop_table("bank_holidays")
    op.drop_table("attendance_settings")
    op.drop_index("ix_sites_float_project_id", table_name="sites")
    op.drop_index("ix_sites_tenant_id", table_name="sites")
    op.drop_table("sites")
    op.drop_index("ix_employees_float_person_id", table_name="employees")
    op.drop_index("ix_employees_tenant_id", table_name="employees")
    op.drop_table("employees")

    bind = op.get_bind()
    attendance_summary_status.drop(bind, checkfirst=True)
    attendance_trigger_method.drop(bind, checkfirst=True)
    attendance_event_type.drop(bind, checkfirst=True)
