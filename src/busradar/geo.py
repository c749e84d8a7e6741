from math import asin, cos, radians, sin, sqrt
from typing import Tuple

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points, in kilometers."""
    d_lat = radians(lat2 - lat1)
    d_lng = radians(lng2 - lng1)
    a = sin(d_lat / 2) ** 2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(d_lng / 2) ** 2
    # rounding can push a a hair above 1 for antipodal points
    return 2 * EARTH_RADIUS_KM * asin(sqrt(min(a, 1.0)))


def interpolation_ratio(eta_minutes: float, minutes_per_stop: float, cap: float) -> float:
    if eta_minutes <= 0:
        return 0.0
    return min(eta_minutes / minutes_per_stop, cap)


def interpolate_position(
    anchor: Tuple[float, float],
    previous: Tuple[float, float],
    eta_minutes: float,
    minutes_per_stop: float,
    cap: float,
) -> Tuple[float, float]:
    """
    Place a vehicle on the straight segment from the anchor stop back towards
    the previous stop. ETA 0 puts it on the anchor; the displacement grows
    with the ETA until it reaches `cap` of the segment.
    Linear in lat/lng space, which is fine over inter-stop distances.
    """
    r = interpolation_ratio(eta_minutes, minutes_per_stop, cap)
    lat = anchor[0] + (previous[0] - anchor[0]) * r
    lng = anchor[1] + (previous[1] - anchor[1]) * r
    return lat, lng
