from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from site_attendance.models import Employee, Site


def list_float_linked_employees(db: Session, *, tenant_id: int) -> list[Employee]:
    return list(
        db.scalars(
            select(Employee)
            .where(
                Employee.tenant_id == tenant_id,
                Employee.deleted_at.is_(None),
                Employee.float_person_id.is_not(None),
            )
            .order_by(Employee.id.asc())
        ).all()
    )


def list_float_linked_sites(db: Session, *, tenant_id: int) -> list[Site]:
    return list(
        db.scalars(
            select(Site)
            .where(
                Site.tenant_id == tenant_id,
                Site.deleted_at.is_(None),
                Site.float_project_id.is_not(None),
            )
            .order_by(Site.id.asc())
        ).all()
    )


def get_employees_by_ids(db: Session, *, tenant_id: int, employee_ids: Iterable[int]) -> list[Employee]:
    ids = sorted(set(employee_ids))
    if not ids:
        return []
    return list(
        db.scalars(
            select(Employee).where(
                Employee.tenant_id == tenant_id,
                Employee.id.in_(ids),
                Employee.deleted_at.is_(None),
            )
        ).all()
    )


def get_sites_by_ids(db: Session, *, tenant_id: int, site_ids: Iterable[int]) -> list[Site]:
    ids = sorted(set(site_ids))
    if not ids:
        return []
    return list(
        db.scalars(
            select(Site).where(
                Site.tenant_id == tenant_id,
                Site.id.in_(ids),
                Site.deleted_at.is_(None),
            )
        ).all()
    )


def get_site(db: Session, *, tenant_id: int, site_id: int) -> Site | None:
    return db.scalar(
        select(Site).where(
            Site.id == site_id,
            Site.tenant_id == tenant_id,
            Site.deleted_at.is_(None),
        )
    )


def list_active_sites(db: Session, *, tenant_id: int) -> list[Site]:
    return list(
        db.scalars(
            select(Site)
            .where(
                Site.tenant_id == tenant_id,
                Site.is_active.is_(True),
                Site.deleted_at.is_(None),
            )
            .order_by(Site.id.asc())
        ).all()
    )
