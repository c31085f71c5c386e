from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
import logging
from typing import Any

from sqlalchemy import delete, func, literal_column, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.orm import Session

from site_attendance.db import SessionLocal
from site_attendance.errors import ApiError
from site_attendance.models import AttendanceEvent, AttendanceSummary, EventType, SummaryStatus
from site_attendance.services.event_store import (
    count_events_by_date,
    list_dates_with_events,
    list_events_for_dates,
    list_pending_tenant_ids,
    mark_events_processed,
)
from site_attendance.services.spa_store import spa_keys_for_date
from site_attendance.services.tenant_config import TenantAttendanceConfig, load_tenant_config

logger = logging.getLogger("site_attendance.time_aggregation")

HUNDRED = Decimal("100")
TWO_PLACES = Decimal("0.01")
EXCELLENT_UTILIZATION = Decimal("90")
GOOD_UTILIZATION = Decimal("75")
SUMMARY_UNIQUE_CONSTRAINT = "uq_attendance_summaries_tenant_employee_site_date"
SUMMARY_KEY_COLUMNS = frozenset({"tenant_id", "employee_id", "site_id", "summary_date"})


@dataclass(frozen=True)
class TimeOnSite:
    total_minutes: int

    @property
    def hours(self) -> Decimal:
        return (Decimal(self.total_minutes) / Decimal(60)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class DailySummaryValues:
    tenant_id: int
    employee_id: int
    site_id: int
    summary_date: date
    first_entry_utc: datetime | None
    last_exit_utc: datetime | None
    time_on_site_minutes: int
    expected_hours: Decimal
    utilization_percent: Decimal
    variance_hours: Decimal
    status: SummaryStatus
    entry_count: int
    exit_count: int
    has_spa: bool

    def as_row(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "employee_id": self.employee_id,
            "site_id": self.site_id,
            "summary_date": self.summary_date,
            "first_entry_utc": self.first_entry_utc,
            "last_exit_utc": self.last_exit_utc,
            "time_on_site_minutes": self.time_on_site_minutes,
            "expected_hours": self.expected_hours,
            "utilization_percent": self.utilization_percent,
            "variance_hours": self.variance_hours,
            "status": self.status,
            "entry_count": self.entry_count,
            "exit_count": self.exit_count,
            "has_spa": self.has_spa,
        }


@dataclass
class ProcessingResult:
    tenant_id: int
    summary_date: date
    events_processed: int = 0
    summaries_created: int = 0
    summaries_updated: int = 0
    summaries_deleted: int = 0
    errors: list[str] = field(default_factory=list)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _whole_minutes(start: datetime, end: datetime) -> int:
    seconds = (end - start).total_seconds()
    if seconds <= 0:
        return 0
    return int(seconds // 60)


def calculate_time_on_site(
    events: Iterable[AttendanceEvent],
    *,
    employee_timestamps: Iterable[datetime] = (),
) -> TimeOnSite:
    """Sum closed Enter/Exit intervals of one (employee, site) key in whole minutes.

    A repeated Enter restarts the open session without counting the gap. A trailing
    open session ends at the employee's next recorded event anywhere that day
    (``employee_timestamps``); with no later event it adds nothing.
    """
    ordered = sorted(
        (item for item in events if not item.is_noise),
        key=lambda item: (_as_utc(item.ts_utc), item.id or 0),
    )
    if not ordered:
        return TimeOnSite(total_minutes=0)

    total_minutes = 0
    open_entry: datetime | None = None
    for event in ordered:
        ts_utc = _as_utc(event.ts_utc)
        if event.event_type == EventType.ENTER:
            open_entry = ts_utc
        elif open_entry is not None:
            total_minutes += _whole_minutes(open_entry, ts_utc)
            open_entry = None

    if open_entry is not None:
        later = [_as_utc(item) for item in employee_timestamps if _as_utc(item) > open_entry]
        if later:
            total_minutes += _whole_minutes(open_entry, min(later))

    return TimeOnSite(total_minutes=total_minutes)


def is_working_day(config: TenantAttendanceConfig, day: date) -> bool:
    weekday = day.weekday()
    if weekday == 5 and not config.include_saturday:
        return False
    if weekday == 6 and not config.include_sunday:
        return False
    return day not in config.bank_holidays


def working_days_between(config: TenantAttendanceConfig, from_date: date, to_date: date) -> int:
    if from_date > to_date:
        return 0
    count = 0
    current = from_date
    while current <= to_date:
        if is_working_day(config, current):
            count += 1
        current += timedelta(days=1)
    return count


def calculate_utilization(actual_hours: Decimal | int | float, expected_hours: Decimal | int | float) -> Decimal:
    expected = Decimal(str(expected_hours))
    if expected <= 0:
        return Decimal("0")
    actual = Decimal(str(actual_hours))
    return (actual / expected * HUNDRED).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def utilization_band(utilization_percent: Decimal) -> SummaryStatus:
    if utilization_percent >= EXCELLENT_UTILIZATION:
        return SummaryStatus.EXCELLENT
    if utilization_percent >= GOOD_UTILIZATION:
        return SummaryStatus.GOOD
    if utilization_percent > 0:
        return SummaryStatus.BELOW_TARGET
    return SummaryStatus.ABSENT


def classify_summary_status(
    *,
    first_entry_utc: datetime | None,
    last_exit_utc: datetime | None,
    utilization_percent: Decimal,
) -> SummaryStatus:
    if first_entry_utc is None:
        return SummaryStatus.ABSENT
    if last_exit_utc is None:
        return SummaryStatus.INCOMPLETE
    return utilization_band(utilization_percent)


def build_daily_summary(
    config: TenantAttendanceConfig,
    *,
    employee_id: int,
    site_id: int,
    summary_date: date,
    events: list[AttendanceEvent],
    employee_timestamps: Iterable[datetime] = (),
    has_spa: bool,
) -> DailySummaryValues:
    genuine = [item for item in events if not item.is_noise]
    entries = [_as_utc(item.ts_utc) for item in genuine if item.event_type == EventType.ENTER]
    exits = [_as_utc(item.ts_utc) for item in genuine if item.event_type == EventType.EXIT]

    time_on_site = calculate_time_on_site(genuine, employee_timestamps=employee_timestamps)
    expected_hours = config.expected_hours_per_day.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    utilization = calculate_utilization(time_on_site.hours, expected_hours)
    first_entry = min(entries) if entries else None
    last_exit = max(exits) if exits else None

    return DailySummaryValues(
        tenant_id=config.tenant_id,
        employee_id=employee_id,
        site_id=site_id,
        summary_date=summary_date,
        first_entry_utc=first_entry,
        last_exit_utc=last_exit,
        time_on_site_minutes=time_on_site.total_minutes,
        expected_hours=expected_hours,
        utilization_percent=utilization,
        variance_hours=time_on_site.hours - expected_hours,
        status=classify_summary_status(
            first_entry_utc=first_entry,
            last_exit_utc=last_exit,
            utilization_percent=utilization,
        ),
        entry_count=len(entries),
        exit_count=len(exits),
        has_spa=has_spa,
    )


def build_summary_upsert(values: DailySummaryValues):
    row = values.as_row()
    stmt = pg_insert(AttendanceSummary).values(**row)
    update_columns = {key: stmt.excluded[key] for key in row if key not in SUMMARY_KEY_COLUMNS}
    update_columns["updated_at"] = func.now()
    # xmax is 0 only on a freshly inserted tuple.
    return stmt.on_conflict_do_update(
        constraint=SUMMARY_UNIQUE_CONSTRAINT,
        set_=update_columns,
    ).returning(literal_column("(xmax = 0)").label("inserted"))


def _upsert_summary(db: Session, values: DailySummaryValues) -> bool:
    return bool(db.execute(build_summary_upsert(values)).scalar_one())


def _delete_summary(db: Session, *, tenant_id: int, employee_id: int, site_id: int, summary_date: date) -> bool:
    result = db.execute(
        delete(AttendanceSummary).where(
            AttendanceSummary.tenant_id == tenant_id,
            AttendanceSummary.employee_id == employee_id,
            AttendanceSummary.site_id == site_id,
            AttendanceSummary.summary_date == summary_date,
        )
    )
    return bool(result.rowcount)


def _timestamps_by_employee(events: list[AttendanceEvent]) -> dict[int, list[datetime]]:
    timestamps: dict[int, list[datetime]] = defaultdict(list)
    for event in events:
        if not event.is_noise:
            timestamps[event.employee_id].append(_as_utc(event.ts_utc))
    return timestamps


def process_daily_attendance(
    db: Session,
    config: TenantAttendanceConfig,
    *,
    day: date,
    force: bool = False,
) -> ProcessingResult:
    """Fold the day's unprocessed events into one summary per (employee, site).

    An open session at one site ends at the employee's next event at any site, so a
    pending event of an employee recomputes every key of that employee for the day.
    Each key is rebuilt from all of its events and written with an upsert; a key
    left with only noise events loses its summary. The outcome therefore does not
    depend on how events were split across runs.
    """
    result = ProcessingResult(tenant_id=config.tenant_id, summary_date=day)

    day_events = list_events_for_dates(db, config, from_date=day, to_date=day)
    pending = [item for item in day_events if not item.processed]
    if not pending and not force:
        return result

    events_by_key: dict[tuple[int, int], list[AttendanceEvent]] = defaultdict(list)
    for event in day_events:
        events_by_key[(event.employee_id, event.site_id)].append(event)

    affected_employees = {item.employee_id for item in (day_events if force else pending)}
    affected_keys = sorted(key for key in events_by_key if key[0] in affected_employees)
    timestamps_by_employee = _timestamps_by_employee(day_events)
    spa_keys = spa_keys_for_date(db, tenant_id=config.tenant_id, day=day) if affected_keys else set()

    processed_ids: list[int] = []
    for employee_id, site_id in affected_keys:
        key_events = events_by_key[(employee_id, site_id)]
        has_genuine = any(not item.is_noise for item in key_events)
        try:
            with db.begin_nested():
                if has_genuine:
                    values = build_daily_summary(
                        config,
                        employee_id=employee_id,
                        site_id=site_id,
                        summary_date=day,
                        events=key_events,
                        employee_timestamps=timestamps_by_employee.get(employee_id, ()),
                        has_spa=(employee_id, site_id) in spa_keys,
                    )
                    created = _upsert_summary(db, values)
                else:
                    removed = _delete_summary(
                        db,
                        tenant_id=config.tenant_id,
                        employee_id=employee_id,
                        site_id=site_id,
                        summary_date=day,
                    )
        except Exception as exc:
            logger.exception(
                "daily_summary_failed",
                extra={
                    "tenant_id": config.tenant_id,
                    "summary_date": day.isoformat(),
                    "employee_id": employee_id,
                    "site_id": site_id,
                },
            )
            result.errors.append(
                f"Error processing events for employee {employee_id} at site {site_id}: {exc}"
            )
            continue

        if not has_genuine:
            if removed:
                result.summaries_deleted += 1
        elif created:
            result.summaries_created += 1
        else:
            result.summaries_updated += 1
        processed_ids.extend(item.id for item in key_events if not item.processed)

    mark_events_processed(db, processed_ids)
    db.commit()
    result.events_processed = len(set(processed_ids))

    logger.info(
        "daily_attendance_processed",
        extra={
            "tenant_id": config.tenant_id,
            "summary_date": day.isoformat(),
            "events_processed": result.events_processed,
            "summaries_created": result.summaries_created,
            "summaries_updated": result.summaries_updated,
            "summaries_deleted": result.summaries_deleted,
            "error_count": len(result.errors),
        },
    )
    return result


def process_attendance_range(
    db: Session,
    config: TenantAttendanceConfig,
    *,
    from_date: date,
    to_date: date,
    today: date | None = None,
) -> list[ProcessingResult]:
    if from_date > to_date:
        raise ApiError(
            status_code=422,
            code="INVALID_DATE_RANGE",
            message="from_date must be before or equal to to_date.",
        )
    reference_today = today or config.local_date(datetime.now(timezone.utc))
    if to_date > reference_today:
        raise ApiError(
            status_code=422,
            code="FUTURE_DATE_NOT_ALLOWED",
            message="to_date cannot be in the future.",
        )

    results: list[ProcessingResult] = []
    for day in list_dates_with_events(db, config, from_date=from_date, to_date=to_date, unprocessed_only=True):
        results.append(process_daily_attendance(db, config, day=day))
    return results


def get_processing_status(
    db: Session,
    config: TenantAttendanceConfig,
    *,
    from_date: date,
    to_date: date,
) -> dict[str, Any]:
    events_by_date = count_events_by_date(db, config, from_date=from_date, to_date=to_date)
    summary_rows = db.execute(
        select(AttendanceSummary.summary_date, func.count(AttendanceSummary.id))
        .where(
            AttendanceSummary.tenant_id == config.tenant_id,
            AttendanceSummary.summary_date >= from_date,
            AttendanceSummary.summary_date <= to_date,
        )
        .group_by(AttendanceSummary.summary_date)
        .order_by(AttendanceSummary.summary_date.asc())
    ).all()

    total_events = sum(total for total, _ in events_by_date.values())
    processed_events = sum(processed for _, processed in events_by_date.values())
    return {
        "from_date": from_date,
        "to_date": to_date,
        "total_events": total_events,
        "processed_events": processed_events,
        "unprocessed_events": total_events - processed_events,
        "total_summaries": sum(int(count) for _, count in summary_rows),
        "events_by_date": [
            {
                "date": day,
                "total_events": total,
                "processed_events": processed,
                "unprocessed_events": total - processed,
            }
            for day, (total, processed) in events_by_date.items()
        ],
        "summaries_by_date": [{"date": day, "count": int(count)} for day, count in summary_rows],
    }


def process_pending_attendance(
    now_utc: datetime,
    db: Session | None = None,
    *,
    lookback_days: int = 7,
) -> list[ProcessingResult]:
    if db is None:
        with SessionLocal() as managed_db:
            return process_pending_attendance(now_utc, db=managed_db, lookback_days=lookback_days)

    session = db
    results: list[ProcessingResult] = []
    for tenant_id in list_pending_tenant_ids(session, now_utc=now_utc, lookback_days=lookback_days):
        config = load_tenant_config(session, tenant_id)
        today = config.local_date(now_utc)
        from_date = today - timedelta(days=max(1, lookback_days))
        for day in list_dates_with_events(
            session,
            config,
            from_date=from_date,
            to_date=today,
            unprocessed_only=True,
        ):
            results.append(process_daily_attendance(session, config, day=day))
    return results
