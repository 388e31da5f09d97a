"""Great-circle distance between coordinates."""
from __future__ import annotations

import math

from geozone.errors import ErrorKind, Result
from geozone.geo.models import GeoPoint

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in kilometres between two already validated points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlam = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlam / 2) ** 2
    # Rounding can push `a` a hair above 1 for antipodal points.
    a = min(1.0, max(0.0, a))
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_km(a: GeoPoint, b: GeoPoint) -> Result[float]:
    """Haversine distance, or an `invalid_coordinate` failure for bad input.

    The formula is symmetric in its arguments, so the result does not depend
    on argument order.
    """
    for label, point in (("a", a), ("b", b)):
        if point is None or not point.is_valid():
            return Result.fail(ErrorKind.INVALID_COORDINATE, f"point {label} out of range: {point!r}")
    # Canonical argument order keeps distance(a, b) and distance(b, a) bit-identical.
    first, second = sorted(((a.latitude, a.longitude), (b.latitude, b.longitude)))
    return Result.success(haversine_km(first[0], first[1], second[0], second[1]))
