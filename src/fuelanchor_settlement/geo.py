"""Great-circle distance and geofence checks."""
from __future__ import annotations

import math
from typing import Tuple

from .models import GeoPoint, Station

EARTH_RADIUS_M = 6_371_000.0


def haversine_distance_m(a: GeoPoint, b: GeoPoint) -> float:
    """Distance in meters between two points on a spherical earth."""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    dlat = lat2 - lat1
    dlng = math.radians(b.longitude - a.longitude)

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    # Clamp rounding error near antipodes
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(h))


def within_geofence(point: GeoPoint, station: Station) -> Tuple[bool, float]:
    """Return (inside, distance_m); the boundary counts as inside."""
    distance = haversine_distance_m(point, station.location)
    return distance <= station.geofence_radius_m, distance
