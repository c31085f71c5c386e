from __future__ import annotations

from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from site_attendance.models import SitePhotoAttendance


def list_spa_records_for_dates(
    db: Session,
    *,
    tenant_id: int,
    from_date: date,
    to_date: date,
) -> list[SitePhotoAttendance]:
    return list(
        db.scalars(
            select(SitePhotoAttendance)
            .where(
                SitePhotoAttendance.tenant_id == tenant_id,
                SitePhotoAttendance.event_date >= from_date,
                SitePhotoAttendance.event_date <= to_date,
                SitePhotoAttendance.deleted_at.is_(None),
            )
            .order_by(SitePhotoAttendance.id.asc())
        ).all()
    )


def list_spa_records_for_date(db: Session, *, tenant_id: int, day: date) -> list[SitePhotoAttendance]:
    return list_spa_records_for_dates(db, tenant_id=tenant_id, from_date=day, to_date=day)


def spa_keys_for_date(db: Session, *, tenant_id: int, day: date) -> set[tuple[int, int]]:
    return {
        (record.employee_id, record.site_id)
        for record in list_spa_records_for_date(db, tenant_id=tenant_id, day=day)
    }
