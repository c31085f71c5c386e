"""Cross-reference the external schedule feed with geofence arrivals.

For a tenant and a local date every (employee, site) pair that was either planned
in the schedule feed or actually entered the site's geofence becomes one report
entry:

* ARRIVED   - planned and arrived
* PLANNED   - planned, no arrival recorded yet
* UNPLANNED - arrived without a plan

Duplicate keys are resolved by explicit rules: for the planned set the first task
in provider order wins, for the actual set the earliest non-noise ENTER wins.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
import logging
from typing import Protocol, runtime_checkable
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from site_attendance.errors import ApiError, ScheduleFeedUnavailableError
from site_attendance.models import (
    AttendanceEvent,
    Employee,
    EventType,
    ReportStatus,
    Site,
    SitePhotoAttendance,
)
from site_attendance.services.directory import (
    get_employees_by_ids,
    get_sites_by_ids,
    list_float_linked_employees,
    list_float_linked_sites,
)
from site_attendance.services.event_store import list_events_for_dates
from site_attendance.services.float_client import FloatTask
from site_attendance.services.spa_store import list_spa_records_for_date
from site_attendance.services.tenant_config import TenantAttendanceConfig

logger = logging.getLogger("site_attendance.report")

PairKey = tuple[int, int]

STATUS_ORDER: dict[ReportStatus, int] = {
    ReportStatus.ARRIVED: 0,
    ReportStatus.PLANNED: 1,
    ReportStatus.UNPLANNED: 2,
}


class ScheduleProvider(Protocol):
    def get_tasks_for_date(self, day: date) -> list[FloatTask]: ...


@runtime_checkable
class CancellableScheduleProvider(ScheduleProvider, Protocol):
    def cancel(self) -> None: ...


@dataclass
class ReportEntry:
    status: ReportStatus
    employee_id: int
    site_id: int
    employee_name: str = ""
    site_name: str = ""
    site_code: str | None = None
    planned_arrival: datetime | None = None
    actual_arrival: datetime | None = None
    spa_completed: bool = False
    spa_id: int | None = None
    spa_image_url: str | None = None


@dataclass(frozen=True)
class ReportTotals:
    planned_count: int
    arrived_count: int
    unplanned_count: int


@dataclass
class SiteAttendanceReport:
    report_date: date
    entries: list[ReportEntry]
    totals: ReportTotals
    schedule_feed_available: bool = True
    warnings: list[str] = field(default_factory=list)


@dataclass
class ReconciliationInputs:
    linked_employees: list[Employee]
    linked_sites: list[Site]
    events: list[AttendanceEvent]


def parse_task_date(raw_value: str | None) -> date | None:
    if not raw_value:
        return None
    try:
        return date.fromisoformat(raw_value[:10])
    except ValueError:
        return None


def parse_task_time(raw_value: str | None) -> time | None:
    if not raw_value:
        return None
    parts = raw_value.strip().split(":")
    if len(parts) not in (2, 3):
        return None
    try:
        numbers = [int(part) for part in parts]
        return time(*numbers)
    except ValueError:
        return None


def planned_arrival_for_task(task: FloatTask, *, day: date, tz: ZoneInfo) -> datetime | None:
    start_date = parse_task_date(task.start_date)
    if start_date is None:
        return None
    end_date = parse_task_date(task.end_date) or start_date
    if not (start_date <= day <= end_date):
        return None
    start_time = parse_task_time(task.start_time) or time.min
    return datetime.combine(day, start_time, tzinfo=tz).astimezone(timezone.utc)


def build_planned_set(
    tasks: Iterable[FloatTask],
    *,
    employee_ids_by_person_id: dict[int, int],
    site_ids_by_project_id: dict[int, int],
    day: date,
    tz: ZoneInfo,
) -> dict[PairKey, datetime]:
    planned: dict[PairKey, datetime] = {}
    skipped_tasks = 0
    for task in tasks:
        if task.project_id is None or task.project_id not in site_ids_by_project_id:
            continue
        planned_arrival = planned_arrival_for_task(task, day=day, tz=tz)
        if planned_arrival is None:
            skipped_tasks += 1
            continue
        site_id = site_ids_by_project_id[task.project_id]
        for person_id in task.assignee_ids():
            employee_id = employee_ids_by_person_id.get(person_id)
            if employee_id is None:
                continue
            # First task in provider order wins; later tasks never overwrite.
            planned.setdefault((employee_id, site_id), planned_arrival)

    if skipped_tasks:
        logger.info("schedule_tasks_skipped", extra={"count": skipped_tasks, "date": day.isoformat()})
    return planned


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def build_actual_set(events: Iterable[AttendanceEvent]) -> dict[PairKey, datetime]:
    actual: dict[PairKey, datetime] = {}
    for event in events:
        if event.event_type != EventType.ENTER or event.is_noise:
            continue
        key = (event.employee_id, event.site_id)
        ts_utc = _as_utc(event.ts_utc)
        current = actual.get(key)
        if current is None or ts_utc < current:
            actual[key] = ts_utc
    return actual


def classify_pairs(planned: dict[PairKey, datetime], actual: dict[PairKey, datetime]) -> list[ReportEntry]:
    entries: list[ReportEntry] = []
    for key in sorted(set(planned) | set(actual)):
        employee_id, site_id = key
        planned_arrival = planned.get(key)
        actual_arrival = actual.get(key)
        if planned_arrival is not None and actual_arrival is not None:
            status = ReportStatus.ARRIVED
        elif planned_arrival is not None:
            status = ReportStatus.PLANNED
        else:
            status = ReportStatus.UNPLANNED
        entries.append(
            ReportEntry(
                status=status,
                employee_id=employee_id,
                site_id=site_id,
                planned_arrival=planned_arrival,
                actual_arrival=actual_arrival,
            )
        )
    return entries


def attach_metadata(
    entries: list[ReportEntry],
    *,
    employees_by_id: dict[int, Employee],
    sites_by_id: dict[int, Site],
) -> None:
    for entry in entries:
        employee = employees_by_id.get(entry.employee_id)
        if employee is not None:
            entry.employee_name = employee.full_name or ""
        site = sites_by_id.get(entry.site_id)
        if site is not None:
            entry.site_name = site.site_name or ""
            entry.site_code = site.site_code


def attach_spa(entries: list[ReportEntry], spa_records: Iterable[SitePhotoAttendance]) -> None:
    first_by_key: dict[PairKey, SitePhotoAttendance] = {}
    for record in sorted(spa_records, key=lambda item: item.id):
        first_by_key.setdefault((record.employee_id, record.site_id), record)

    for entry in entries:
        record = first_by_key.get((entry.employee_id, entry.site_id))
        if record is None:
            continue
        entry.spa_completed = True
        entry.spa_id = record.id
        entry.spa_image_url = record.image_url


def sort_entries(entries: list[ReportEntry]) -> list[ReportEntry]:
    return sorted(
        entries,
        key=lambda item: (
            STATUS_ORDER[item.status],
            item.site_name,
            item.employee_name,
            item.employee_id,
            item.site_id,
        ),
    )


def compute_totals(entries: Iterable[ReportEntry]) -> ReportTotals:
    planned = arrived = unplanned = 0
    for entry in entries:
        if entry.status == ReportStatus.PLANNED:
            planned += 1
        elif entry.status == ReportStatus.ARRIVED:
            arrived += 1
        else:
            unplanned += 1
    return ReportTotals(planned_count=planned, arrived_count=arrived, unplanned_count=unplanned)


def fetch_schedule(
    provider: ScheduleProvider,
    *,
    day: date,
    degrade_to_actual_only: bool,
) -> tuple[list[FloatTask] | None, str | None]:
    try:
        return provider.get_tasks_for_date(day), None
    except ScheduleFeedUnavailableError as exc:
        logger.warning(
            "schedule_feed_unavailable",
            extra={
                "date": day.isoformat(),
                "error": exc.message,
                "upstream_status_code": exc.status_code,
                "degraded": degrade_to_actual_only,
            },
        )
        if not degrade_to_actual_only:
            raise ApiError(
                status_code=503,
                code="SCHEDULE_FEED_UNAVAILABLE",
                message="Schedule feed is unavailable, try again later.",
            ) from exc
        return None, exc.message


def load_reconciliation_inputs(db: Session, config: TenantAttendanceConfig, *, day: date) -> ReconciliationInputs:
    return ReconciliationInputs(
        linked_employees=list_float_linked_employees(db, tenant_id=config.tenant_id),
        linked_sites=list_float_linked_sites(db, tenant_id=config.tenant_id),
        events=list_events_for_dates(db, config, from_date=day, to_date=day),
    )


def assemble_report(
    db: Session,
    config: TenantAttendanceConfig,
    *,
    day: date,
    inputs: ReconciliationInputs,
    tasks: list[FloatTask] | None,
    feed_error: str | None = None,
) -> SiteAttendanceReport:
    employees_by_id = {item.id: item for item in inputs.linked_employees}
    sites_by_id = {item.id: item for item in inputs.linked_sites}

    planned: dict[PairKey, datetime] = {}
    if tasks is not None:
        planned = build_planned_set(
            tasks,
            employee_ids_by_person_id={
                item.float_person_id: item.id
                for item in inputs.linked_employees
                if item.float_person_id is not None
            },
            site_ids_by_project_id={
                item.float_project_id: item.id
                for item in inputs.linked_sites
                if item.float_project_id is not None
            },
            day=day,
            tz=config.timezone,
        )
    actual = build_actual_set(inputs.events)
    entries = classify_pairs(planned, actual)

    missing_employee_ids = {item.employee_id for item in entries if item.employee_id not in employees_by_id}
    missing_site_ids = {item.site_id for item in entries if item.site_id not in sites_by_id}
    for employee in get_employees_by_ids(db, tenant_id=config.tenant_id, employee_ids=missing_employee_ids):
        employees_by_id[employee.id] = employee
    for site in get_sites_by_ids(db, tenant_id=config.tenant_id, site_ids=missing_site_ids):
        sites_by_id[site.id] = site

    attach_metadata(entries, employees_by_id=employees_by_id, sites_by_id=sites_by_id)
    attach_spa(entries, list_spa_records_for_date(db, tenant_id=config.tenant_id, day=day))

    entries = sort_entries(entries)
    totals = compute_totals(entries)
    warnings: list[str] = []
    if tasks is None:
        warnings.append(f"Schedule feed unavailable, showing recorded arrivals only: {feed_error or 'unknown error'}")

    logger.info(
        "site_attendance_report_generated",
        extra={
            "tenant_id": config.tenant_id,
            "date": day.isoformat(),
            "arrived": totals.arrived_count,
            "planned": totals.planned_count,
            "unplanned": totals.unplanned_count,
            "schedule_feed_available": tasks is not None,
        },
    )
    return SiteAttendanceReport(
        report_date=day,
        entries=entries,
        totals=totals,
        schedule_feed_available=tasks is not None,
        warnings=warnings,
    )


def generate_site_attendance_report(
    db: Session,
    config: TenantAttendanceConfig,
    *,
    day: date,
    provider: ScheduleProvider,
    degrade_to_actual_only: bool = True,
) -> SiteAttendanceReport:
    tasks, feed_error = fetch_schedule(provider, day=day, degrade_to_actual_only=degrade_to_actual_only)
    inputs = load_reconciliation_inputs(db, config, day=day)
    return assemble_report(db, config, day=day, inputs=inputs, tasks=tasks, feed_error=feed_error)


async def generate_site_attendance_report_async(
    db: Session,
    config: TenantAttendanceConfig,
    *,
    day: date,
    provider: ScheduleProvider,
    degrade_to_actual_only: bool = True,
) -> SiteAttendanceReport:
    """Same result as the sync variant; the feed call overlaps the database reads.

    The session is only ever touched by one worker thread at a time.
    """
    feed_task = asyncio.create_task(
        asyncio.to_thread(
            fetch_schedule,
            provider,
            day=day,
            degrade_to_actual_only=degrade_to_actual_only,
        )
    )
    try:
        inputs = await asyncio.to_thread(load_reconciliation_inputs, db, config, day=day)
        tasks, feed_error = await feed_task
    except BaseException:
        if isinstance(provider, CancellableScheduleProvider):
            provider.cancel()
        feed_task.cancel()
        # Retrieve the feed outcome so a failure there is not left unobserved.
        await asyncio.gather(feed_task, return_exceptions=True)
        raise

    return await asyncio.to_thread(
        assemble_report,
        db,
        config,
        day=day,
        inputs=inputs,
        tasks=tasks,
        feed_error=feed_error,
    )
