from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.orm import Session

from site_attendance.models import AttendanceSettings, BankHoliday
from site_attendance.settings import get_settings

logger = logging.getLogger("site_attendance.tenant_config")


@dataclass(frozen=True)
class TenantAttendanceConfig:
    tenant_id: int
    expected_hours_per_day: Decimal
    include_saturday: bool
    include_sunday: bool
    geofence_radius_m: int
    noise_threshold_m: int
    timezone: ZoneInfo
    bank_holidays: frozenset[date] = field(default_factory=frozenset)

    def local_day_bounds_utc(self, day: date) -> tuple[datetime, datetime]:
        local_start = datetime.combine(day, time.min, tzinfo=self.timezone)
        local_end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=self.timezone)
        return local_start.astimezone(timezone.utc), local_end.astimezone(timezone.utc)

    def local_date(self, ts_utc: datetime) -> date:
        if ts_utc.tzinfo is None:
            ts_utc = ts_utc.replace(tzinfo=timezone.utc)
        return ts_utc.astimezone(self.timezone).date()


def resolve_timezone(raw_name: str | None) -> ZoneInfo:
    settings = get_settings()
    name = (raw_name or "").strip() or settings.attendance_timezone
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("tenant_timezone_invalid", extra={"timezone": name})
        return ZoneInfo(settings.attendance_timezone)


def default_tenant_config(tenant_id: int, *, bank_holidays: frozenset[date] = frozenset()) -> TenantAttendanceConfig:
    settings = get_settings()
    return TenantAttendanceConfig(
        tenant_id=tenant_id,
        expected_hours_per_day=Decimal(settings.default_expected_hours_per_day),
        include_saturday=False,
        include_sunday=False,
        geofence_radius_m=settings.default_geofence_radius_m,
        noise_threshold_m=settings.default_noise_threshold_m,
        timezone=resolve_timezone(None),
        bank_holidays=bank_holidays,
    )


def load_tenant_config(db: Session, tenant_id: int) -> TenantAttendanceConfig:
    holidays = frozenset(
        db.scalars(
            select(BankHoliday.holiday_date).where(BankHoliday.tenant_id == tenant_id)
        ).all()
    )
    row = db.scalar(select(AttendanceSettings).where(AttendanceSettings.tenant_id == tenant_id))
    if row is None:
        return default_tenant_config(tenant_id, bank_holidays=holidays)

    return TenantAttendanceConfig(
        tenant_id=tenant_id,
        expected_hours_per_day=Decimal(row.expected_hours_per_day),
        include_saturday=bool(row.include_saturday),
        include_sunday=bool(row.include_sunday),
        geofence_radius_m=int(row.geofence_radius_m),
        noise_threshold_m=int(row.noise_threshold_m),
        timezone=resolve_timezone(row.timezone),
        bank_holidays=holidays,
    )
