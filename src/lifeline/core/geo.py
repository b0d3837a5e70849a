"""
Geographic helpers shared by location ingest, the AED index and fan-out.
"""

import math
from typing import Any


EARTH_RADIUS_M = 6371000.0


def is_finite_coordinate(value: Any) -> bool:
    """True for real ints/floats that are finite. Booleans and strings are rejected."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def distance(a, b) -> float:
    """
    Great-circle distance between two points in metres (haversine).

    Args:
        a: Object or mapping with ``latitude`` and ``longitude`` in degrees
        b: Object or mapping with ``latitude`` and ``longitude`` in degrees

    Returns:
        Distance in metres. NaN propagates if either point is not finite.
    """
    lat1, lon1 = _lat_lon(a)
    lat2, lon2 = _lat_lon(b)

    # math.sin raises on infinities
    if not all(math.isfinite(v) for v in (lat1, lon1, lat2, lon2)):
        return math.nan

    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    h = (math.sin(delta_lat / 2) ** 2 +
         math.cos(lat1_rad) * math.cos(lat2_rad) *
         math.sin(delta_lon / 2) ** 2)
    h = min(h, 1.0)
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))

    return EARTH_RADIUS_M * c


def _lat_lon(point):
    if isinstance(point, dict):
        return point['latitude'], point['longitude']
    return point.latitude, point.longitude
