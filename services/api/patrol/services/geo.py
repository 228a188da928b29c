"""Great-circle geometry for geofence checks and trajectory length."""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass

from patrol.core.errors import ValidationError

EARTH_RADIUS_M = 6_371_000.0


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float


def validate_coordinate(latitude: object, longitude: object, *, field: str = "position") -> Coordinate:
    """Check ranges and types, returning a ``Coordinate``.

    Raises:
        ValidationError: on missing, non-numeric, non-finite or out-of-range values.
    """

    if latitude is None or longitude is None:
        raise ValidationError(f"{field}: latitude and longitude are required")
    if isinstance(latitude, bool) or isinstance(longitude, bool):
        raise ValidationError(f"{field}: latitude and longitude must be numbers")
    try:
        lat = float(latitude)  # type: ignore[arg-type]
        lon = float(longitude)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValidationError(f"{field}: latitude and longitude must be numbers") from None
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise ValidationError(f"{field}: latitude and longitude must be finite")
    if not -90.0 <= lat <= 90.0:
        raise ValidationError(f"{field}: latitude must be between -90 and 90")
    if not -180.0 <= lon <= 180.0:
        raise ValidationError(f"{field}: longitude must be between -180 and 180")
    return Coordinate(lat, lon)


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute Haversine distance in meters between two lat/lon points.

    Args:
        lat1: Latitude 1 in degrees.
        lon1: Longitude 1 in degrees.
        lat2: Latitude 2 in degrees.
        lon2: Longitude 2 in degrees.

    Returns:
        Distance in meters on a sphere of radius ``EARTH_RADIUS_M``.
    """

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    # Rounding can push a a hair past 1 for antipodal points.
    a = min(1.0, max(0.0, a))
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_M * c


def distance(a: Coordinate, b: Coordinate) -> float:
    return haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)


def is_within(point: Coordinate, center: Coordinate, radius_m: float) -> bool:
    """True when ``point`` is inside or on the boundary of the circle."""

    return distance(point, center) <= radius_m


def path_length_m(points: Iterable[Coordinate]) -> float:
    """Sum of consecutive pairwise distances. Fewer than two points give 0."""

    total = 0.0
    previous: Coordinate | None = None
    for point in points:
        if previous is not None:
            total += distance(previous, point)
        previous = point
    return total
