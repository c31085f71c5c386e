from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
import logging
from math import atan2, cos, radians, sin, sqrt

from sqlalchemy.orm import Session

from site_attendance.models import AttendanceEvent, EventType, Site
from site_attendance.services.directory import get_site, list_active_sites
from site_attendance.services.event_store import first_enter_of_day
from site_attendance.services.tenant_config import TenantAttendanceConfig

logger = logging.getLogger("site_attendance.geofence")

EARTH_RADIUS_M = 6371000.0
COORDINATE_QUANTUM = Decimal("0.00000001")
NOISE_DISTANCE_QUANTUM = Decimal("0.01")

Coordinate = Decimal | float | int | str


@dataclass(frozen=True)
class NearestSite:
    site: Site
    distance_m: float


@dataclass(frozen=True)
class NoiseCheck:
    is_noise: bool
    distance_m: Decimal | None


def to_fixed_degrees(value: Coordinate) -> Decimal:
    # str() keeps float inputs at their shortest repr instead of the binary expansion.
    try:
        degrees = Decimal(str(value)) if not isinstance(value, Decimal) else value
        return degrees.quantize(COORDINATE_QUANTUM, rounding=ROUND_HALF_EVEN)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid coordinate: {value!r}") from exc


def distance_m(lat1: Coordinate, lon1: Coordinate, lat2: Coordinate, lon2: Coordinate) -> float:
    """Great-circle distance in meters between two points given in decimal degrees.

    Coordinates are normalised to 8 fractional digits first, so the same stored
    values always produce the same distance whatever type they arrive as.
    """
    lat1_fixed = to_fixed_degrees(lat1)
    lon1_fixed = to_fixed_degrees(lon1)
    lat2_fixed = to_fixed_degrees(lat2)
    lon2_fixed = to_fixed_degrees(lon2)

    # Deltas are exact in Decimal; abs() keeps d(a, b) == d(b, a) bit for bit.
    delta_lat = radians(float(abs(lat2_fixed - lat1_fixed)))
    delta_lon = radians(float(abs(lon2_fixed - lon1_fixed)))
    lat1_rad = radians(float(lat1_fixed))
    lat2_rad = radians(float(lat2_fixed))

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    a = min(1.0, max(0.0, a))
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_M * c


def site_has_coordinates(site: Site) -> bool:
    return site.latitude is not None and site.longitude is not None


def effective_radius_m(site: Site, config: TenantAttendanceConfig) -> int:
    if site.geofence_radius_m is not None and site.geofence_radius_m > 0:
        return int(site.geofence_radius_m)
    return config.geofence_radius_m


def nearest_site(sites: list[Site], lat: Coordinate, lon: Coordinate) -> NearestSite | None:
    best: NearestSite | None = None
    for site in sites:
        if not site_has_coordinates(site):
            continue
        value = distance_m(site.latitude, site.longitude, lat, lon)
        if best is None or value < best.distance_m:
            best = NearestSite(site=site, distance_m=value)
    return best


def find_nearest_site(
    db: Session,
    config: TenantAttendanceConfig,
    *,
    lat: Coordinate,
    lon: Coordinate,
) -> NearestSite | None:
    sites = list_active_sites(db, tenant_id=config.tenant_id)
    if not sites:
        return None
    return nearest_site(sites, lat, lon)


def point_within_site(site: Site, config: TenantAttendanceConfig, lat: Coordinate, lon: Coordinate) -> bool:
    if not site_has_coordinates(site):
        return True
    return distance_m(site.latitude, site.longitude, lat, lon) <= effective_radius_m(site, config)


def is_within_geofence(
    db: Session,
    config: TenantAttendanceConfig,
    *,
    site_id: int,
    lat: Coordinate,
    lon: Coordinate,
) -> bool:
    site = get_site(db, tenant_id=config.tenant_id, site_id=site_id)
    if site is None:
        return False
    return point_within_site(site, config, lat, lon)


def evaluate_noise(
    event: AttendanceEvent,
    first_entry: AttendanceEvent | None,
    *,
    noise_threshold_m: int,
) -> NoiseCheck:
    if event.event_type != EventType.ENTER:
        return NoiseCheck(is_noise=False, distance_m=None)
    if first_entry is None or first_entry.id == event.id:
        return NoiseCheck(is_noise=False, distance_m=None)
    if (
        event.latitude is None
        or event.longitude is None
        or first_entry.latitude is None
        or first_entry.longitude is None
    ):
        return NoiseCheck(is_noise=False, distance_m=None)

    value = distance_m(first_entry.latitude, first_entry.longitude, event.latitude, event.longitude)
    rounded = Decimal(str(value)).quantize(NOISE_DISTANCE_QUANTUM, rounding=ROUND_HALF_EVEN)
    return NoiseCheck(is_noise=value <= noise_threshold_m, distance_m=rounded)


def check_for_noise(db: Session, config: TenantAttendanceConfig, event: AttendanceEvent) -> NoiseCheck:
    if event.event_type != EventType.ENTER:
        return NoiseCheck(is_noise=False, distance_m=None)

    first_entry = first_enter_of_day(
        db,
        config,
        employee_id=event.employee_id,
        site_id=event.site_id,
        day=config.local_date(event.ts_utc),
        exclude_event_id=event.id,
    )
    if first_entry is not None and first_entry.ts_utc > event.ts_utc:
        # A later entry cannot make an earlier one a duplicate.
        return NoiseCheck(is_noise=False, distance_m=None)
    return evaluate_noise(event, first_entry, noise_threshold_m=config.noise_threshold_m)


def flag_noise(db: Session, config: TenantAttendanceConfig, event: AttendanceEvent) -> NoiseCheck:
    was_noise = bool(event.is_noise)
    result = check_for_noise(db, config, event)
    event.is_noise = result.is_noise
    event.noise_distance_m = result.distance_m
    if was_noise != result.is_noise:
        # The key's daily summary is stale until the next processing run.
        event.processed = False
    db.commit()
    logger.info(
        "attendance_event_noise_checked",
        extra={
            "tenant_id": config.tenant_id,
            "event_id": event.id,
            "employee_id": event.employee_id,
            "site_id": event.site_id,
            "is_noise": result.is_noise,
            "distance_m": str(result.distance_m) if result.distance_m is not None else None,
        },
    )
    return result
