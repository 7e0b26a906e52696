"""Great-circle distance and coordinate validation."""

from __future__ import annotations

import math

from fleetline.core.errors import InvalidLocation

EARTH_RADIUS_METERS = 6_371_000.0


def haversine_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    # Rounding can push a past 1 for near-antipodal points
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def _as_finite(value, field_name: str) -> float:
    # bool is an int subclass; True is not a coordinate
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidLocation(f"{field_name} must be a number", field=field_name, value=value)
    number = float(value)
    if not math.isfinite(number):
        raise InvalidLocation(f"{field_name} must be finite", field=field_name, value=value)
    return number


def validate_coordinates(lat, lng) -> tuple[float, float]:
    lat_value = _as_finite(lat, "lat")
    lng_value = _as_finite(lng, "lng")
    if not -90.0 <= lat_value <= 90.0:
        raise InvalidLocation("lat out of range [-90, 90]", field="lat", value=lat)
    if not -180.0 <= lng_value <= 180.0:
        raise InvalidLocation("lng out of range [-180, 180]", field="lng", value=lng)
    return lat_value, lng_value


def normalize_heading(heading) -> float | None:
    if heading is None:
        return None
    return _as_finite(heading, "heading") % 360.0


def validate_speed(speed) -> float | None:
    if speed is None:
        return None
    value = _as_finite(speed, "speed")
    if value < 0:
        raise InvalidLocation("speed must be >= 0", field="speed", value=speed)
    return value
