"""Great-circle distance helpers."""

import math

EARTH_RADIUS_MILES = 3958.8
_MILES_PER_DEGREE_LAT = 69.0


def haversine_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in miles between two lat/long points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def location_score(distance_miles: float, max_distance_miles: float) -> int:
    """Linear proximity score: 100 at distance 0, 0 at or beyond the max."""
    if max_distance_miles <= 0 or distance_miles >= max_distance_miles:
        return 0
    return max(0, min(100, round(100 * (1 - distance_miles / max_distance_miles))))


def bounding_box(
    lat: float, lon: float, radius_miles: float
) -> tuple[float, float, float, float]:
    """Lat/long box that contains every point within ``radius_miles``.

    Returns ``(min_lat, max_lat, min_lon, max_lon)``.  Near the poles the
    longitude span is widened to the full range.
    """
    d_lat = radius_miles / _MILES_PER_DEGREE_LAT
    cos_lat = math.cos(math.radians(lat))
    if cos_lat < 1e-6:
        return lat - d_lat, lat + d_lat, -180.0, 180.0
    d_lon = radius_miles / (_MILES_PER_DEGREE_LAT * cos_lat)
    return lat - d_lat, lat + d_lat, lon - d_lon, lon + d_lon
