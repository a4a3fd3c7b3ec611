"""Great-circle distance between [longitude, latitude] pairs."""

import math
from typing import Any

EARTH_RADIUS_KM = 6371.0
# Stand-in for a distance we could not compute; far enough to earn no proximity points.
UNDEFINED_DISTANCE_KM = 999.0


def _point(value: Any) -> tuple[float, float] | None:
    if value is None or isinstance(value, (str, bytes)):
        return None
    try:
        if len(value) != 2:
            return None
        lng, lat = float(value[0]), float(value[1])
    except (TypeError, ValueError):
        return None
    if math.isnan(lng) or math.isnan(lat):
        return None
    if not (-180.0 <= lng <= 180.0 and -90.0 <= lat <= 90.0):
        return None
    return lng, lat


def haversine_distance_km(a: Any, b: Any) -> float | None:
    """Distance in km, or None when either point is missing or malformed."""
    p1 = _point(a)
    p2 = _point(b)
    if p1 is None or p2 is None:
        return None
    lng1, lat1 = p1
    lng2, lat2 = p2
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def distance_or_default(a: Any, b: Any) -> float:
    distance = haversine_distance_km(a, b)
    return UNDEFINED_DISTANCE_KM if distance is None else distance
