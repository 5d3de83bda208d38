"""SafePath Backend — Geospatial helpers (haversine, route candidates, curved sampling)"""

import math
from typing import Optional

import numpy as np

EARTH_RADIUS_KM = 6371.0


def distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometres (Haversine formula)."""
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)
    a = (math.sin(dlat / 2) ** 2
         + math.cos(math.radians(lat1))
         * math.cos(math.radians(lat2))
         * math.sin(dlng / 2) ** 2)
    # Clamp `a` to [0, 1] to guard against floating-point overshoot
    a = max(0.0, min(1.0, a))
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))


def distances_km(lat: float, lng: float, lats, lngs) -> np.ndarray:
    """Vectorised haversine from one point to many. Returns ndarray of km."""
    lats = np.radians(np.asarray(lats, dtype=np.float64))
    lngs = np.radians(np.asarray(lngs, dtype=np.float64))
    lat0 = math.radians(lat)
    lng0 = math.radians(lng)
    a = (np.sin((lats - lat0) / 2) ** 2
         + math.cos(lat0) * np.cos(lats) * np.sin((lngs - lng0) / 2) ** 2)
    a = np.clip(a, 0.0, 1.0)
    return EARTH_RADIUS_KM * 2 * np.arctan2(np.sqrt(a), np.sqrt(1.0 - a))


def candidate_points(
    lat: float,
    lng: float,
    count: int = 8,
    base_distance_km: float = 1.0,
    rng: Optional[np.random.Generator] = None,
) -> list[tuple[float, float]]:
    """Generate `count` destinations spread around (lat, lng).

    Point i sits on bearing i·2π/count (±0.1 rad jitter) at a distance of
    base_distance_km·(0.7 + 0.6·U). The longitude offset is divided by
    cos(lat) so the metric distance stays the same away from the equator.
    """
    rng = rng if rng is not None else np.random.default_rng()
    points = []
    for i in range(count):
        distance = base_distance_km * (0.7 + rng.random() * 0.6)
        bearing = i * 2 * math.pi / count + (rng.random() * 0.2 - 0.1)
        angular = distance / EARTH_RADIUS_KM
        new_lat = lat + math.degrees(angular * math.cos(bearing))
        new_lng = lng + math.degrees(angular * math.sin(bearing)) / math.cos(math.radians(lat))
        points.append((new_lat, new_lng))
    return points


def curved_midpoints(
    lat1: float,
    lng1: float,
    lat2: float,
    lng2: float,
    count: int,
    offset: float = 1e-4,
) -> list[tuple[float, float]]:
    """Sample `count` points between a and b along a gently bowed path.

    fraction = i/(count+1); the lateral shift sin(fraction·π)·offset is applied
    perpendicular to the a→b vector, so the ends stay on the chord and the
    middle bows out the most.
    """
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    points = []
    for i in range(1, count + 1):
        fraction = i / (count + 1)
        perp = math.sin(fraction * math.pi) * offset
        points.append((
            lat1 + fraction * dlat + perp * dlng,
            lng1 + fraction * dlng - perp * dlat,
        ))
    return points
