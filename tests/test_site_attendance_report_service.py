from __future__ import annotations

import asyncio
import threading
import unittest
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import patch
from zoneinfo import ZoneInfo

from site_attendance.errors import ApiError, ScheduleFeedUnavailableError
from site_attendance.models import (
    AttendanceEvent,
    Employee,
    EventType,
    ReportStatus,
    Site,
    SitePhotoAttendance,
)
from site_attendance.services.float_client import FloatTask
from site_attendance.services.site_attendance_report import (
    ReportEntry,
    attach_spa,
    build_actual_set,
    build_planned_set,
    classify_pairs,
    compute_totals,
    generate_site_attendance_report,
    generate_site_attendance_report_async,
    sort_entries,
)
from site_attendance.services.tenant_config import TenantAttendanceConfig

MODULE = "site_attendance.services.site_attendance_report"
DAY = date(2024, 6, 3)
DUBLIN = ZoneInfo("Europe/Dublin")


def _config() -> TenantAttendanceConfig:
    return TenantAttendanceConfig(
        tenant_id=1,
        expected_hours_per_day=Decimal("7.50"),
        include_saturday=False,
        include_sunday=False,
        geofence_radius_m=100,
        noise_threshold_m=150,
        timezone=DUBLIN,
        bank_holidays=frozenset(),
    )


def _task(
    project_id: int | None,
    *,
    people_id: int | None = None,
    people_ids: list[int] | None = None,
    start_date: str | None = "2024-06-03",
    end_date: str | None = "2024-06-03",
    start_time: str | None = None,
) -> FloatTask:
    return FloatTask(
        project_id=project_id,
        people_id=people_id,
        people_ids=people_ids,
        start_date=start_date,
        end_date=end_date,
        start_time=start_time,
    )


def _enter(
    event_id: int,
    employee_id: int,
    site_id: int,
    hour: int,
    minute: int = 0,
    *,
    is_noise: bool = False,
    event_type: EventType = EventType.ENTER,
) -> AttendanceEvent:
    return AttendanceEvent(
        id=event_id,
        tenant_id=1,
        employee_id=employee_id,
        site_id=site_id,
        event_type=event_type,
        ts_utc=datetime(2024, 6, 3, hour, minute, tzinfo=timezone.utc),
        is_noise=is_noise,
        processed=False,
    )


def _utc(hour: int, minute: int = 0, *, day: int = 3) -> datetime:
    return datetime(2024, 6, day, hour, minute, tzinfo=timezone.utc)


def _employee(employee_id: int, name: str, person_id: int | None) -> Employee:
    return Employee(id=employee_id, tenant_id=1, full_name=name, float_person_id=person_id, is_active=True)


def _site(site_id: int, name: str, project_id: int | None, code: str | None = None) -> Site:
    return Site(id=site_id, tenant_id=1, site_name=name, site_code=code, float_project_id=project_id, is_active=True)


def _spa(spa_id: int, employee_id: int, site_id: int, image_url: str) -> SitePhotoAttendance:
    return SitePhotoAttendance(
        id=spa_id,
        tenant_id=1,
        employee_id=employee_id,
        site_id=site_id,
        event_date=DAY,
        image_url=image_url,
    )


class _StaticProvider:
    def __init__(self, tasks: list[FloatTask] | None = None, error: Exception | None = None) -> None:
        self.tasks = tasks or []
        self.error = error
        self.requested: list[date] = []

    def get_tasks_for_date(self, day: date) -> list[FloatTask]:
        self.requested.append(day)
        if self.error is not None:
            raise self.error
        return list(self.tasks)


class _BlockingProvider:
    def __init__(self) -> None:
        self.started = threading.Event()
        self.released = threading.Event()
        self.cancelled = False

    def get_tasks_for_date(self, day: date) -> list[FloatTask]:
        self.started.set()
        self.released.wait(timeout=5)
        if self.cancelled:
            raise ScheduleFeedUnavailableError("Float request cancelled for tasks")
        return []

    def cancel(self) -> None:
        self.cancelled = True
        self.released.set()


PEOPLE = {501: 1, 502: 2, 503: 3}
PROJECTS = {901: 10, 902: 20}


class PlannedSetTests(unittest.TestCase):
    def _planned(self, tasks: list[FloatTask]) -> dict[tuple[int, int], datetime]:
        return build_planned_set(
            tasks,
            employee_ids_by_person_id=PEOPLE,
            site_ids_by_project_id=PROJECTS,
            day=DAY,
            tz=DUBLIN,
        )

    def test_start_time_is_interpreted_in_tenant_timezone(self) -> None:
        planned = self._planned([_task(901, people_id=501, start_time="09:30")])
        self.assertEqual(planned, {(1, 10): _utc(8, 30)})

    def test_missing_or_malformed_start_time_means_local_midnight(self) -> None:
        planned = self._planned(
            [
                _task(901, people_id=501),
                _task(902, people_id=502, start_time="half nine"),
            ]
        )
        self.assertEqual(planned[(1, 10)], _utc(23, 0, day=2))
        self.assertEqual(planned[(2, 20)], _utc(23, 0, day=2))

    def test_first_task_in_provider_order_wins(self) -> None:
        planned = self._planned(
            [
                _task(901, people_id=501, start_time="10:00"),
                _task(901, people_id=501, start_time="07:00"),
            ]
        )
        self.assertEqual(planned, {(1, 10): _utc(9, 0)})

    def test_people_id_and_people_ids_are_merged(self) -> None:
        planned = self._planned([_task(901, people_id=501, people_ids=[502, 501, 503])])
        self.assertEqual(sorted(planned), [(1, 10), (2, 10), (3, 10)])

    def test_unmapped_project_and_person_are_skipped(self) -> None:
        planned = self._planned(
            [
                _task(999, people_id=501),
                _task(None, people_id=501),
                _task(902, people_ids=[777]),
            ]
        )
        self.assertEqual(planned, {})

    def test_malformed_start_date_is_skipped(self) -> None:
        planned = self._planned(
            [
                _task(901, people_id=501, start_date="03/06/2024"),
                _task(901, people_id=502, start_date=None),
                _task(902, people_id=501),
            ]
        )
        self.assertEqual(sorted(planned), [(1, 20)])

    def test_task_must_cover_reconciled_date(self) -> None:
        planned = self._planned(
            [
                _task(901, people_id=501, start_date="2024-06-01", end_date="2024-06-07"),
                _task(901, people_id=502, start_date="2024-06-04", end_date="2024-06-05"),
                _task(902, people_id=503, start_date="2024-06-03", end_date=None),
            ]
        )
        self.assertEqual(sorted(planned), [(1, 10), (3, 20)])


class ActualSetTests(unittest.TestCase):
    def test_earliest_non_noise_enter_per_key(self) -> None:
        events = [
            _enter(1, 1, 10, 7, 0, is_noise=True),
            _enter(2, 1, 10, 9, 15),
            _enter(3, 1, 10, 8, 45),
            _enter(4, 1, 10, 6, 0, event_type=EventType.EXIT),
            _enter(5, 2, 20, 10, 0),
        ]

        actual = build_actual_set(events)

        self.assertEqual(actual, {(1, 10): _utc(8, 45), (2, 20): _utc(10, 0)})

    def test_noise_only_key_is_absent(self) -> None:
        self.assertEqual(build_actual_set([_enter(1, 1, 10, 8, is_noise=True)]), {})


class ClassificationTests(unittest.TestCase):
    def test_union_classification(self) -> None:
        planned = {(1, 10): _utc(8), (2, 10): _utc(8)}
        actual = {(1, 10): _utc(8, 5), (3, 20): _utc(9)}

        entries = {(item.employee_id, item.site_id): item for item in classify_pairs(planned, actual)}

        self.assertEqual(entries[(1, 10)].status, ReportStatus.ARRIVED)
        self.assertEqual(entries[(1, 10)].planned_arrival, _utc(8))
        self.assertEqual(entries[(1, 10)].actual_arrival, _utc(8, 5))
        self.assertEqual(entries[(2, 10)].status, ReportStatus.PLANNED)
        self.assertIsNone(entries[(2, 10)].actual_arrival)
        self.assertEqual(entries[(3, 20)].status, ReportStatus.UNPLANNED)
        self.assertIsNone(entries[(3, 20)].planned_arrival)

    def test_sort_order_is_status_then_site_then_employee(self) -> None:
        entries = [
            ReportEntry(status=ReportStatus.UNPLANNED, employee_id=1, site_id=1, employee_name="Aoife", site_name="Alpha"),
            ReportEntry(status=ReportStatus.ARRIVED, employee_id=2, site_id=2, employee_name="Ciara", site_name="beta"),
            ReportEntry(status=ReportStatus.ARRIVED, employee_id=3, site_id=3, employee_name="Brian", site_name="Beta"),
            ReportEntry(status=ReportStatus.ARRIVED, employee_id=5, site_id=3, employee_name="Brian", site_name="Beta"),
            ReportEntry(status=ReportStatus.ARRIVED, employee_id=4, site_id=3, employee_name="Brian", site_name="Beta"),
            ReportEntry(status=ReportStatus.PLANNED, employee_id=6, site_id=1, employee_name="", site_name="Alpha"),
        ]

        ordered = sort_entries(entries)

        self.assertEqual([item.employee_id for item in ordered], [3, 4, 5, 2, 6, 1])

    def test_totals(self) -> None:
        entries = [
            ReportEntry(status=ReportStatus.ARRIVED, employee_id=1, site_id=1),
            ReportEntry(status=ReportStatus.ARRIVED, employee_id=2, site_id=1),
            ReportEntry(status=ReportStatus.PLANNED, employee_id=3, site_id=1),
            ReportEntry(status=ReportStatus.UNPLANNED, employee_id=4, site_id=1),
        ]
        totals = compute_totals(entries)
        self.assertEqual((totals.arrived_count, totals.planned_count, totals.unplanned_count), (2, 1, 1))

    def test_first_spa_record_by_id_wins(self) -> None:
        entries = [
            ReportEntry(status=ReportStatus.ARRIVED, employee_id=1, site_id=10),
            ReportEntry(status=ReportStatus.PLANNED, employee_id=2, site_id=10),
        ]

        attach_spa(entries, [_spa(40, 1, 10, "late.jpg"), _spa(12, 1, 10, "first.jpg"), _spa(50, 1, 20, "other.jpg")])

        self.assertTrue(entries[0].spa_completed)
        self.assertEqual(entries[0].spa_id, 12)
        self.assertEqual(entries[0].spa_image_url, "first.jpg")
        self.assertFalse(entries[1].spa_completed)
        self.assertIsNone(entries[1].spa_id)


class GenerateReportTests(unittest.TestCase):
    def _patches(self, *, events: list[AttendanceEvent], spa: list[SitePhotoAttendance] | None = None):  # type: ignore[no-untyped-def]
        employees = [
            _employee(1, "Aoife Byrne", 501),
            _employee(2, "Brian Kelly", 502),
        ]
        sites = [
            _site(10, "Docklands", 901, "DK"),
            _site(20, "Ballymun", 902, "BM"),
        ]
        return (
            patch(f"{MODULE}.list_float_linked_employees", return_value=employees),
            patch(f"{MODULE}.list_float_linked_sites", return_value=sites),
            patch(f"{MODULE}.list_events_for_dates", return_value=events),
            patch(f"{MODULE}.get_employees_by_ids", return_value=[_employee(3, "Ciara Walsh", None)]),
            patch(f"{MODULE}.get_sites_by_ids", return_value=[]),
            patch(f"{MODULE}.list_spa_records_for_date", return_value=spa or []),
        )

    def test_full_report_with_metadata_and_spa(self) -> None:
        provider = _StaticProvider(
            [
                _task(901, people_id=501, start_time="08:00"),
                _task(902, people_id=502, start_time="08:00"),
            ]
        )
        events = [
            _enter(1, 1, 10, 7, 10),
            _enter(2, 3, 30, 9, 0),
        ]
        patches = self._patches(events=events, spa=[_spa(7, 1, 10, "spa.jpg")])

        with patches[0], patches[1], patches[2], patches[3] as employees_lookup, patches[4], patches[5]:
            report = generate_site_attendance_report(object(), _config(), day=DAY, provider=provider)  # type: ignore[arg-type]

        self.assertTrue(report.schedule_feed_available)
        self.assertEqual(report.warnings, [])
        self.assertEqual(provider.requested, [DAY])
        self.assertEqual(
            [(item.status, item.employee_id, item.site_id) for item in report.entries],
            [
                (ReportStatus.ARRIVED, 1, 10),
                (ReportStatus.PLANNED, 2, 20),
                (ReportStatus.UNPLANNED, 3, 30),
            ],
        )
        arrived, planned, unplanned = report.entries
        self.assertEqual(arrived.employee_name, "Aoife Byrne")
        self.assertEqual(arrived.site_name, "Docklands")
        self.assertEqual(arrived.site_code, "DK")
        self.assertTrue(arrived.spa_completed)
        self.assertEqual(arrived.spa_image_url, "spa.jpg")
        self.assertEqual(planned.planned_arrival, _utc(7, 0))
        self.assertEqual(unplanned.employee_name, "Ciara Walsh")
        self.assertEqual(unplanned.site_name, "")
        self.assertEqual(employees_lookup.call_args.kwargs["employee_ids"], {3})
        self.assertEqual(
            (report.totals.arrived_count, report.totals.planned_count, report.totals.unplanned_count),
            (1, 1, 1),
        )

    def test_feed_failure_degrades_to_actual_only(self) -> None:
        provider = _StaticProvider(error=ScheduleFeedUnavailableError("Float API timed out for tasks"))
        patches = self._patches(events=[_enter(1, 1, 10, 7, 10)])

        with patches[0], patches[1], patches[2], patches[3], patches[4], patches[5]:
            report = generate_site_attendance_report(object(), _config(), day=DAY, provider=provider)  # type: ignore[arg-type]

        self.assertFalse(report.schedule_feed_available)
        self.assertEqual(len(report.warnings), 1)
        self.assertIn("timed out", report.warnings[0])
        self.assertEqual([item.status for item in report.entries], [ReportStatus.UNPLANNED])

    def test_feed_failure_raises_when_degrading_is_disabled(self) -> None:
        provider = _StaticProvider(error=ScheduleFeedUnavailableError("boom", status_code=502))
        patches = self._patches(events=[])

        with patches[0], patches[1], patches[2], patches[3], patches[4], patches[5]:
            with self.assertRaises(ApiError) as exc:
                generate_site_attendance_report(
                    object(),  # type: ignore[arg-type]
                    _config(),
                    day=DAY,
                    provider=provider,
                    degrade_to_actual_only=False,
                )

        self.assertEqual(exc.exception.status_code, 503)
        self.assertEqual(exc.exception.code, "SCHEDULE_FEED_UNAVAILABLE")

    def test_async_variant_matches_sync_report(self) -> None:
        provider = _StaticProvider([_task(901, people_id=501, start_time="08:00")])
        events = [_enter(1, 1, 10, 7, 10), _enter(2, 2, 20, 9, 0)]
        patches = self._patches(events=events)

        with patches[0], patches[1], patches[2], patches[3], patches[4], patches[5]:
            sync_report = generate_site_attendance_report(object(), _config(), day=DAY, provider=provider)  # type: ignore[arg-type]
            async_report = asyncio.run(
                generate_site_attendance_report_async(object(), _config(), day=DAY, provider=provider)  # type: ignore[arg-type]
            )

        self.assertEqual(sync_report, async_report)

    def test_failed_database_read_cancels_feed_call(self) -> None:
        provider = _BlockingProvider()

        with patch(f"{MODULE}.load_reconciliation_inputs", side_effect=RuntimeError("database unavailable")):
            with self.assertRaises(RuntimeError):
                asyncio.run(
                    generate_site_attendance_report_async(object(), _config(), day=DAY, provider=provider)  # type: ignore[arg-type]
                )

        self.assertTrue(provider.cancelled)

    def test_cancelled_request_cancels_feed_call(self) -> None:
        provider = _BlockingProvider()
        patches = self._patches(events=[])

        async def _cancel_while_waiting_for_feed() -> None:
            task = asyncio.create_task(
                generate_site_attendance_report_async(object(), _config(), day=DAY, provider=provider)  # type: ignore[arg-type]
            )
            await asyncio.to_thread(provider.started.wait, 5)
            task.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await task

        with patches[0], patches[1], patches[2], patches[3], patches[4], patches[5]:
            asyncio.run(_cancel_while_waiting_for_feed())

        self.assertTrue(provider.cancelled)


if __name__ == "__main__":
    unittest.main()
