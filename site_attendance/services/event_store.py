from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from site_attendance.models import AttendanceEvent, EventType
from site_attendance.services.tenant_config import TenantAttendanceConfig


def list_events_for_dates(
    db: Session,
    config: TenantAttendanceConfig,
    *,
    from_date: date,
    to_date: date,
) -> list[AttendanceEvent]:
    start_utc, _ = config.local_day_bounds_utc(from_date)
    _, end_utc = config.local_day_bounds_utc(to_date)
    return list(
        db.scalars(
            select(AttendanceEvent)
            .where(
                AttendanceEvent.tenant_id == config.tenant_id,
                AttendanceEvent.ts_utc >= start_utc,
                AttendanceEvent.ts_utc < end_utc,
            )
            .order_by(AttendanceEvent.ts_utc.asc(), AttendanceEvent.id.asc())
        ).all()
    )


def get_event(db: Session, *, tenant_id: int, event_id: int) -> AttendanceEvent | None:
    return db.scalar(
        select(AttendanceEvent).where(
            AttendanceEvent.id == event_id,
            AttendanceEvent.tenant_id == tenant_id,
        )
    )


def first_enter_of_day(
    db: Session,
    config: TenantAttendanceConfig,
    *,
    employee_id: int,
    site_id: int,
    day: date,
    exclude_event_id: int | None,
) -> AttendanceEvent | None:
    start_utc, end_utc = config.local_day_bounds_utc(day)
    stmt = (
        select(AttendanceEvent)
        .where(
            AttendanceEvent.tenant_id == config.tenant_id,
            AttendanceEvent.employee_id == employee_id,
            AttendanceEvent.site_id == site_id,
            AttendanceEvent.event_type == EventType.ENTER,
            AttendanceEvent.is_noise.is_(False),
            AttendanceEvent.ts_utc >= start_utc,
            AttendanceEvent.ts_utc < end_utc,
        )
        .order_by(AttendanceEvent.ts_utc.asc(), AttendanceEvent.id.asc())
    )
    if exclude_event_id is not None:
        stmt = stmt.where(AttendanceEvent.id != exclude_event_id)
    return db.scalar(stmt)


def mark_events_processed(db: Session, event_ids: Iterable[int]) -> int:
    ids = sorted(set(event_ids))
    if not ids:
        return 0
    result = db.execute(
        update(AttendanceEvent)
        .where(AttendanceEvent.id.in_(ids))
        .values(processed=True)
    )
    return int(result.rowcount or 0)


def list_dates_with_events(
    db: Session,
    config: TenantAttendanceConfig,
    *,
    from_date: date,
    to_date: date,
    unprocessed_only: bool = False,
) -> list[date]:
    start_utc, _ = config.local_day_bounds_utc(from_date)
    _, end_utc = config.local_day_bounds_utc(to_date)
    stmt = select(AttendanceEvent.ts_utc).where(
        AttendanceEvent.tenant_id == config.tenant_id,
        AttendanceEvent.ts_utc >= start_utc,
        AttendanceEvent.ts_utc < end_utc,
    )
    if unprocessed_only:
        stmt = stmt.where(AttendanceEvent.processed.is_(False))
    local_dates = {config.local_date(ts_utc) for ts_utc in db.scalars(stmt).all()}
    return sorted(item for item in local_dates if from_date <= item <= to_date)


def count_events_by_date(
    db: Session,
    config: TenantAttendanceConfig,
    *,
    from_date: date,
    to_date: date,
) -> dict[date, tuple[int, int]]:
    """Per local date: (total events, processed events)."""
    start_utc, _ = config.local_day_bounds_utc(from_date)
    _, end_utc = config.local_day_bounds_utc(to_date)
    rows = db.execute(
        select(AttendanceEvent.ts_utc, AttendanceEvent.processed).where(
            AttendanceEvent.tenant_id == config.tenant_id,
            AttendanceEvent.ts_utc >= start_utc,
            AttendanceEvent.ts_utc < end_utc,
        )
    ).all()
    totals: Counter[date] = Counter()
    processed: Counter[date] = Counter()
    for ts_utc, is_processed in rows:
        local_day = config.local_date(ts_utc)
        totals[local_day] += 1
        if is_processed:
            processed[local_day] += 1
    return {day: (totals[day], processed[day]) for day in sorted(totals)}


def list_pending_tenant_ids(
    db: Session,
    *,
    now_utc: datetime | None = None,
    lookback_days: int = 7,
) -> list[int]:
    reference = now_utc or datetime.now(timezone.utc)
    cutoff = reference - timedelta(days=max(1, lookback_days))
    return sorted(
        db.scalars(
            select(AttendanceEvent.tenant_id)
            .where(
                AttendanceEvent.processed.is_(False),
                AttendanceEvent.ts_utc >= cutoff,
            )
            .distinct()
        ).all()
    )
