import math
from typing import Iterable, Tuple

KM_PER_DEGREE = 111.0


def planar_distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Equirectangular distance, good enough at tens-of-meters scale.

    The longitude term is scaled by cos() of the first point's latitude.
    """
    dy = (lat2 - lat1) * KM_PER_DEGREE
    dx = (lng2 - lng1) * KM_PER_DEGREE * math.cos(math.radians(lat1))
    return math.hypot(dx, dy)


def degree_window(lat: float, radius_km: float) -> Tuple[float, float]:
    """(dlat, dlng) half-widths of a box enclosing a radius around ``lat``."""
    dlat = radius_km / KM_PER_DEGREE
    dlng = radius_km / (KM_PER_DEGREE * max(1e-6, math.cos(math.radians(lat))))
    return dlat, dlng


def any_within(lat: float, lng: float, points: Iterable[Tuple[float, float]], radius_km: float) -> bool:
    return any(planar_distance_km(lat, lng, p_lat, p_lng) <= radius_km for p_lat, p_lng in points)
