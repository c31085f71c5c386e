from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from site_attendance.errors import ApiError
from site_attendance.models import AttendanceSummary, Employee, SitePhotoAttendance, SummaryStatus
from site_attendance.services.directory import get_employees_by_ids
from site_attendance.services.spa_store import list_spa_records_for_dates
from site_attendance.services.tenant_config import TenantAttendanceConfig
from site_attendance.services.time_aggregation import (
    calculate_utilization,
    utilization_band,
    working_days_between,
)

TWO_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class DashboardKpis:
    from_date: date
    to_date: date
    overall_utilization: Decimal
    average_hours_per_day: Decimal
    total_active_employees: int
    total_active_sites: int
    excellent_count: int
    good_count: int
    below_target_count: int
    absent_count: int
    incomplete_count: int
    expected_hours: Decimal
    actual_hours: Decimal
    variance_hours: Decimal
    working_days: int


@dataclass(frozen=True)
class EmployeePerformance:
    employee_id: int
    employee_name: str
    total_hours: Decimal
    expected_hours: Decimal
    utilization_percent: Decimal
    variance_hours: Decimal
    status: SummaryStatus
    days_present: int
    days_absent: int
    spa_count: int


def _minutes_to_hours(total_minutes: int) -> Decimal:
    return (Decimal(total_minutes) / Decimal(60)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _validate_range(from_date: date, to_date: date) -> None:
    if from_date > to_date:
        raise ApiError(
            status_code=422,
            code="INVALID_DATE_RANGE",
            message="from_date must be before or equal to to_date.",
        )


def compute_dashboard_kpis(
    summaries: list[AttendanceSummary],
    *,
    from_date: date,
    to_date: date,
    working_days: int,
) -> DashboardKpis:
    actual_hours = _minutes_to_hours(sum(item.time_on_site_minutes for item in summaries))
    expected_hours = sum((Decimal(item.expected_hours) for item in summaries), Decimal("0"))
    status_counts: dict[SummaryStatus, int] = defaultdict(int)
    for item in summaries:
        status_counts[item.status] += 1

    average = Decimal("0")
    if summaries:
        average = (actual_hours / Decimal(len(summaries))).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)

    return DashboardKpis(
        from_date=from_date,
        to_date=to_date,
        overall_utilization=calculate_utilization(actual_hours, expected_hours),
        average_hours_per_day=average,
        total_active_employees=len({item.employee_id for item in summaries}),
        total_active_sites=len({item.site_id for item in summaries}),
        excellent_count=status_counts[SummaryStatus.EXCELLENT],
        good_count=status_counts[SummaryStatus.GOOD],
        below_target_count=status_counts[SummaryStatus.BELOW_TARGET],
        absent_count=status_counts[SummaryStatus.ABSENT],
        incomplete_count=status_counts[SummaryStatus.INCOMPLETE],
        expected_hours=expected_hours,
        actual_hours=actual_hours,
        variance_hours=actual_hours - expected_hours,
        working_days=working_days,
    )


def compute_employee_performance(
    summaries: list[AttendanceSummary],
    *,
    employees_by_id: dict[int, Employee],
    spa_records: Iterable[SitePhotoAttendance],
    working_days: int,
    expected_hours_per_day: Decimal,
) -> list[EmployeePerformance]:
    """Per-employee totals over a date range.

    Expected hours come from the working-day calendar, not from the summaries, so an
    employee who never showed up on a working day still drags their utilization down.
    """
    by_employee: dict[int, list[AttendanceSummary]] = defaultdict(list)
    for item in summaries:
        by_employee[item.employee_id].append(item)

    spa_counts: dict[int, int] = defaultdict(int)
    for record in spa_records:
        spa_counts[record.employee_id] += 1

    expected_hours = (Decimal(working_days) * expected_hours_per_day).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    rows: list[EmployeePerformance] = []
    for employee_id, employee_summaries in by_employee.items():
        total_hours = _minutes_to_hours(sum(item.time_on_site_minutes for item in employee_summaries))
        utilization = calculate_utilization(total_hours, expected_hours)
        days_present = len(
            {item.summary_date for item in employee_summaries if item.status != SummaryStatus.ABSENT}
        )
        employee = employees_by_id.get(employee_id)
        rows.append(
            EmployeePerformance(
                employee_id=employee_id,
                employee_name=(employee.full_name if employee is not None else "") or "",
                total_hours=total_hours,
                expected_hours=expected_hours,
                utilization_percent=utilization,
                variance_hours=total_hours - expected_hours,
                status=utilization_band(utilization),
                days_present=days_present,
                days_absent=max(0, working_days - days_present),
                spa_count=spa_counts[employee_id],
            )
        )

    rows.sort(key=lambda item: (-item.utilization_percent, item.employee_name, item.employee_id))
    return rows


def _list_summaries(
    db: Session,
    *,
    tenant_id: int,
    from_date: date,
    to_date: date,
) -> list[AttendanceSummary]:
    return list(
        db.scalars(
            select(AttendanceSummary)
            .where(
                AttendanceSummary.tenant_id == tenant_id,
                AttendanceSummary.summary_date >= from_date,
                AttendanceSummary.summary_date <= to_date,
            )
            .order_by(AttendanceSummary.summary_date.asc(), AttendanceSummary.id.asc())
        ).all()
    )


def get_dashboard_kpis(
    db: Session,
    config: TenantAttendanceConfig,
    *,
    from_date: date,
    to_date: date,
) -> DashboardKpis:
    _validate_range(from_date, to_date)
    summaries = _list_summaries(db, tenant_id=config.tenant_id, from_date=from_date, to_date=to_date)
    return compute_dashboard_kpis(
        summaries,
        from_date=from_date,
        to_date=to_date,
        working_days=working_days_between(config, from_date, to_date),
    )


def get_employee_performance(
    db: Session,
    config: TenantAttendanceConfig,
    *,
    from_date: date,
    to_date: date,
) -> list[EmployeePerformance]:
    _validate_range(from_date, to_date)
    summaries = _list_summaries(db, tenant_id=config.tenant_id, from_date=from_date, to_date=to_date)
    employees = get_employees_by_ids(
        db,
        tenant_id=config.tenant_id,
        employee_ids={item.employee_id for item in summaries},
    )
    spa_records = list_spa_records_for_dates(
        db,
        tenant_id=config.tenant_id,
        from_date=from_date,
        to_date=to_date,
    )
    return compute_employee_performance(
        summaries,
        employees_by_id={item.id: item for item in employees},
        spa_records=spa_records,
        working_days=working_days_between(config, from_date, to_date),
        expected_hours_per_day=config.expected_hours_per_day,
    )
