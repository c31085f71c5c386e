from __future__ import annotations

import unittest
from datetime import datetime, timezone
from decimal import Decimal
from math import asin, cos, radians, sin, sqrt
from unittest.mock import patch
from zoneinfo import ZoneInfo

from site_attendance.models import AttendanceEvent, EventType, Site
from site_attendance.services.geofence import (
    check_for_noise,
    distance_m,
    evaluate_noise,
    find_nearest_site,
    flag_noise,
    is_within_geofence,
    nearest_site,
    point_within_site,
    to_fixed_degrees,
)
from site_attendance.services.tenant_config import TenantAttendanceConfig


def _config(**overrides) -> TenantAttendanceConfig:  # type: ignore[no-untyped-def]
    values = {
        "tenant_id": 1,
        "expected_hours_per_day": Decimal("7.50"),
        "include_saturday": False,
        "include_sunday": False,
        "geofence_radius_m": 100,
        "noise_threshold_m": 150,
        "timezone": ZoneInfo("UTC"),
        "bank_holidays": frozenset(),
    }
    values.update(overrides)
    return TenantAttendanceConfig(**values)


def _site(site_id: int, lat: str | None, lon: str | None, *, radius: int | None = None) -> Site:
    return Site(
        id=site_id,
        tenant_id=1,
        site_name=f"Site {site_id}",
        latitude=Decimal(lat) if lat is not None else None,
        longitude=Decimal(lon) if lon is not None else None,
        geofence_radius_m=radius,
        is_active=True,
    )


def _enter(event_id: int, lat: str | None, lon: str | None, *, minute: int = 0) -> AttendanceEvent:
    return AttendanceEvent(
        id=event_id,
        tenant_id=1,
        employee_id=7,
        site_id=10,
        event_type=EventType.ENTER,
        ts_utc=datetime(2024, 6, 3, 8, minute, tzinfo=timezone.utc),
        latitude=Decimal(lat) if lat is not None else None,
        longitude=Decimal(lon) if lon is not None else None,
        is_noise=False,
        processed=False,
    )


def _reference_haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = radians(lat1), radians(lat2)
    d_phi = radians(lat2 - lat1)
    d_lambda = radians(lon2 - lon1)
    a = sin(d_phi / 2) ** 2 + cos(phi1) * cos(phi2) * sin(d_lambda / 2) ** 2
    return 2 * 6371000.0 * asin(sqrt(a))


class _CommitTrackingDB:
    def __init__(self) -> None:
        self.commits = 0

    def commit(self) -> None:
        self.commits += 1


class DistanceTests(unittest.TestCase):
    def test_distance_is_zero_for_identical_points(self) -> None:
        self.assertEqual(distance_m("53.349805", "-6.26031", "53.349805", "-6.26031"), 0.0)

    def test_distance_is_exactly_symmetric(self) -> None:
        pairs = [
            (("53.349805", "-6.26031"), ("53.270668", "-9.056791")),
            (("51.89797", "-8.4706"), ("52.668018", "-8.630498")),
            (("-33.8688", "151.2093"), ("40.7128", "-74.006")),
        ]
        for first, second in pairs:
            with self.subTest(first=first, second=second):
                self.assertEqual(distance_m(*first, *second), distance_m(*second, *first))

    def test_one_degree_of_longitude_on_equator(self) -> None:
        self.assertAlmostEqual(distance_m(0, 0, 0, 1), 111194.93, delta=0.01)

    def test_matches_reference_haversine_for_landmarks(self) -> None:
        value = distance_m(53.349805, -6.26031, 53.270668, -9.056791)
        expected = _reference_haversine(53.349805, -6.26031, 53.270668, -9.056791)
        self.assertAlmostEqual(value, expected, delta=1e-6)
        self.assertAlmostEqual(value, 186_000, delta=1_000)

    def test_input_types_give_identical_results(self) -> None:
        from_float = distance_m(53.349805, -6.26031, 53.350805, -6.26031)
        from_decimal = distance_m(Decimal("53.349805"), Decimal("-6.26031"), Decimal("53.350805"), Decimal("-6.26031"))
        from_str = distance_m("53.349805", "-6.26031", "53.350805", "-6.26031")
        self.assertEqual(from_float, from_decimal)
        self.assertEqual(from_float, from_str)

    def test_invalid_coordinate_raises_value_error(self) -> None:
        with self.assertRaises(ValueError):
            to_fixed_degrees("not-a-number")


class NearestSiteTests(unittest.TestCase):
    def test_nearest_site_picks_closest_site_with_coordinates(self) -> None:
        sites = [
            _site(1, "53.35", "-6.26"),
            _site(2, None, None),
            _site(3, "53.36", "-6.26"),
        ]

        result = nearest_site(sites, "53.3595", "-6.26")

        self.assertIsNotNone(result)
        assert result is not None
        self.assertEqual(result.site.id, 3)
        self.assertAlmostEqual(result.distance_m, 55.6, delta=0.5)

    def test_nearest_site_none_when_no_site_has_coordinates(self) -> None:
        self.assertIsNone(nearest_site([_site(1, None, None)], "53.35", "-6.26"))

    def test_find_nearest_site_none_for_tenant_without_sites(self) -> None:
        with patch("site_attendance.services.geofence.list_active_sites", return_value=[]):
            result = find_nearest_site(object(), _config(), lat="53.35", lon="-6.26")  # type: ignore[arg-type]
        self.assertIsNone(result)


    def test_find_nearest_site_none_when_active_sites_lack_coordinates(self) -> None:
        sites = [_site(1, None, None), _site(2, "53.35", None)]
        with patch("site_attendance.services.geofence.list_active_sites", return_value=sites):
            result = find_nearest_site(object(), _config(), lat="53.35", lon="-6.26")  # type: ignore[arg-type]
        self.assertIsNone(result)


class GeofenceTests(unittest.TestCase):
    def test_site_without_coordinates_is_always_within(self) -> None:
        self.assertTrue(point_within_site(_site(1, None, None), _config(), "10.0", "10.0"))

    def test_tenant_radius_applies_without_site_override(self) -> None:
        site = _site(1, "53.35", "-6.26")
        # 0.0008 degrees of latitude is roughly 89 m.
        self.assertTrue(point_within_site(site, _config(geofence_radius_m=100), "53.3508", "-6.26"))
        self.assertFalse(point_within_site(site, _config(geofence_radius_m=50), "53.3508", "-6.26"))

    def test_site_radius_overrides_tenant_radius(self) -> None:
        site = _site(1, "53.35", "-6.26", radius=500)
        self.assertTrue(point_within_site(site, _config(geofence_radius_m=50), "53.353", "-6.26"))

    def test_radius_boundary_is_inclusive(self) -> None:
        site = _site(1, "0", "0", radius=0)
        self.assertTrue(point_within_site(site, _config(), "0", "0"))

    def test_unknown_site_is_not_within(self) -> None:
        with patch("site_attendance.services.geofence.get_site", return_value=None):
            result = is_within_geofence(object(), _config(), site_id=99, lat="53.35", lon="-6.26")  # type: ignore[arg-type]
        self.assertFalse(result)


class NoiseTests(unittest.TestCase):
    def test_first_event_of_day_is_never_noise(self) -> None:
        event = _enter(1, "53.35", "-6.26")
        result = evaluate_noise(event, None, noise_threshold_m=150)
        self.assertFalse(result.is_noise)
        self.assertIsNone(result.distance_m)

    def test_exit_events_are_never_noise(self) -> None:
        first = _enter(1, "53.35", "-6.26")
        exit_event = _enter(2, "53.35", "-6.26", minute=30)
        exit_event.event_type = EventType.EXIT
        self.assertFalse(evaluate_noise(exit_event, first, noise_threshold_m=150).is_noise)

    def test_reentry_within_threshold_is_noise(self) -> None:
        first = _enter(1, "53.35", "-6.26")
        event = _enter(2, "53.351", "-6.26", minute=20)

        result = evaluate_noise(event, first, noise_threshold_m=150)

        self.assertTrue(result.is_noise)
        self.assertEqual(result.distance_m, Decimal("111.19"))

    def test_reentry_beyond_threshold_reports_distance(self) -> None:
        first = _enter(1, "53.35", "-6.26")
        event = _enter(2, "53.352", "-6.26", minute=20)

        result = evaluate_noise(event, first, noise_threshold_m=150)

        self.assertFalse(result.is_noise)
        self.assertEqual(result.distance_m, Decimal("222.39"))

    def test_threshold_boundary_is_inclusive(self) -> None:
        first = _enter(1, "53.35", "-6.26")
        event = _enter(2, "53.35", "-6.26", minute=20)
        self.assertTrue(evaluate_noise(event, first, noise_threshold_m=0).is_noise)

    def test_missing_coordinates_are_not_noise(self) -> None:
        first = _enter(1, "53.35", "-6.26")
        event = _enter(2, None, None, minute=20)

        result = evaluate_noise(event, first, noise_threshold_m=150)

        self.assertFalse(result.is_noise)
        self.assertIsNone(result.distance_m)

    def test_check_for_noise_ignores_later_first_entry(self) -> None:
        later = _enter(5, "53.35", "-6.26", minute=45)
        event = _enter(2, "53.35", "-6.26", minute=10)

        with patch("site_attendance.services.geofence.first_enter_of_day", return_value=later):
            result = check_for_noise(object(), _config(), event)  # type: ignore[arg-type]

        self.assertFalse(result.is_noise)

    def test_check_for_noise_looks_up_same_local_day_excluding_event(self) -> None:
        first = _enter(1, "53.35", "-6.26")
        event = _enter(2, "53.35", "-6.26", minute=10)
        config = _config(timezone=ZoneInfo("Europe/Dublin"))

        with patch("site_attendance.services.geofence.first_enter_of_day", return_value=first) as lookup:
            result = check_for_noise(object(), config, event)  # type: ignore[arg-type]

        self.assertTrue(result.is_noise)
        kwargs = lookup.call_args.kwargs
        self.assertEqual(kwargs["employee_id"], 7)
        self.assertEqual(kwargs["site_id"], 10)
        self.assertEqual(kwargs["exclude_event_id"], 2)
        self.assertEqual(kwargs["day"].isoformat(), "2024-06-03")

    def test_flag_noise_persists_result(self) -> None:
        first = _enter(1, "53.35", "-6.26")
        event = _enter(2, "53.351", "-6.26", minute=10)
        db = _CommitTrackingDB()

        with patch("site_attendance.services.geofence.first_enter_of_day", return_value=first):
            result = flag_noise(db, _config(), event)  # type: ignore[arg-type]

        self.assertTrue(result.is_noise)
        self.assertTrue(event.is_noise)
        self.assertEqual(event.noise_distance_m, Decimal("111.19"))
        self.assertEqual(db.commits, 1)

    def test_flag_change_reopens_event_for_processing(self) -> None:
        first = _enter(1, "53.35", "-6.26")
        event = _enter(2, "53.351", "-6.26", minute=10)
        event.processed = True

        with patch("site_attendance.services.geofence.first_enter_of_day", return_value=first):
            flag_noise(_CommitTrackingDB(), _config(), event)  # type: ignore[arg-type]

        self.assertTrue(event.is_noise)
        self.assertFalse(event.processed)

    def test_unchanged_flag_keeps_event_processed(self) -> None:
        first = _enter(1, "53.35", "-6.26")
        event = _enter(2, "53.40", "-6.26", minute=10)
        event.processed = True

        with patch("site_attendance.services.geofence.first_enter_of_day", return_value=first):
            flag_noise(_CommitTrackingDB(), _config(), event)  # type: ignore[arg-type]

        self.assertFalse(event.is_noise)
        self.assertTrue(event.processed)


if __name__ == "__main__":
    unittest.main()
