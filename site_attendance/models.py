from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from site_attendance.db import Base


class EventType(str, enum.Enum):
    ENTER = "ENTER"
    EXIT = "EXIT"


class TriggerMethod(str, enum.Enum):
    AUTOMATIC = "AUTOMATIC"
    MANUAL = "MANUAL"


class SummaryStatus(str, enum.Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    BELOW_TARGET = "BELOW_TARGET"
    ABSENT = "ABSENT"
    INCOMPLETE = "INCOMPLETE"


class ReportStatus(str, enum.Enum):
    ARRIVED = "ARRIVED"
    PLANNED = "PLANNED"
    UNPLANNED = "UNPLANNED"


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    float_person_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Site(Base):
    __tablename__ = "sites"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    site_name: Mapped[str] = mapped_column(String(255), nullable=False)
    site_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    latitude: Mapped[Decimal | None] = mapped_column(Numeric(10, 8), nullable=True)
    longitude: Mapped[Decimal | None] = mapped_column(Numeric(11, 8), nullable=True)
    geofence_radius_m: Mapped[int | None] = mapped_column(Integer, nullable=True)
    float_project_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AttendanceSettings(Base):
    __tablename__ = "attendance_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    expected_hours_per_day: Mapped[Decimal] = mapped_column(
        Numeric(4, 2),
        nullable=False,
        default=Decimal("7.50"),
        server_default=text("7.50"),
    )
    include_saturday: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    include_sunday: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    geofence_radius_m: Mapped[int] = mapped_column(Integer, nullable=False, default=100, server_default=text("100"))
    noise_threshold_m: Mapped[int] = mapped_column(Integer, nullable=False, default=150, server_default=text("150"))
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class BankHoliday(Base):
    __tablename__ = "bank_holidays"
    __table_args__ = (
        UniqueConstraint("tenant_id", "holiday_date", name="uq_bank_holidays_tenant_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    holiday_date: Mapped[date] = mapped_column(Date, nullable=False)
    name: Mapped[str | None] = mapped_column(String(100), nullable=True)


class AttendanceEvent(Base):
    __tablename__ = "attendance_events"
    __table_args__ = (
        Index("ix_attendance_events_tenant_ts", "tenant_id", "ts_utc"),
        Index("ix_attendance_events_employee_site_ts", "employee_id", "site_id", "ts_utc"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id", ondelete="RESTRICT"), nullable=False)
    site_id: Mapped[int] = mapped_column(ForeignKey("sites.id", ondelete="RESTRICT"), nullable=False)
    event_type: Mapped[EventType] = mapped_column(
        Enum(EventType, name="attendance_event_type"),
        nullable=False,
    )
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    latitude: Mapped[Decimal | None] = mapped_column(Numeric(10, 8), nullable=True)
    longitude: Mapped[Decimal | None] = mapped_column(Numeric(11, 8), nullable=True)
    trigger_method: Mapped[TriggerMethod] = mapped_column(
        Enum(TriggerMethod, name="attendance_trigger_method"),
        nullable=False,
        default=TriggerMethod.AUTOMATIC,
    )
    is_noise: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    noise_distance_m: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class AttendanceSummary(Base):
    __tablename__ = "attendance_summaries"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "employee_id",
            "site_id",
            "summary_date",
            name="uq_attendance_summaries_tenant_employee_site_date",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id", ondelete="RESTRICT"), nullable=False)
    site_id: Mapped[int] = mapped_column(ForeignKey("sites.id", ondelete="RESTRICT"), nullable=False)
    summary_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    first_entry_utc: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_exit_utc: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    time_on_site_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    expected_hours: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    utilization_percent: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    variance_hours: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    status: Mapped[SummaryStatus] = mapped_column(
        Enum(SummaryStatus, name="attendance_summary_status"),
        nullable=False,
        index=True,
    )
    entry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    exit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    has_spa: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class SitePhotoAttendance(Base):
    __tablename__ = "site_photo_attendances"
    __table_args__ = (
        Index("ix_site_photo_attendances_tenant_date", "tenant_id", "event_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id", ondelete="RESTRICT"), nullable=False)
    site_id: Mapped[int] = mapped_column(ForeignKey("sites.id", ondelete="RESTRICT"), nullable=False)
    event_date: Mapped[date] = mapped_column(Date, nullable=False)
    image_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
