"""Small geometry helpers for matching AVL reports to path segments"""

import math
from dataclasses import dataclass

EARTH_RADIUS_M = 6371000


@dataclass(frozen=True)
class Location:
    lat: float
    lon: float

    def distance(self, other: "Location") -> float:
        return haversine_distance(self.lat, self.lon, other.lat, other.lon)


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth
    Returns distance in meters
    """
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])

    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.asin(math.sqrt(a))
    return c * EARTH_RADIUS_M


def _to_xy(origin: Location, loc: Location) -> tuple[float, float]:
    # Local equirectangular projection, metres relative to origin
    x = math.radians(loc.lon - origin.lon) * math.cos(math.radians(origin.lat)) * EARTH_RADIUS_M
    y = math.radians(loc.lat - origin.lat) * EARTH_RADIUS_M
    return x, y


def project_onto_segment(loc: Location, start: Location, end: Location) -> tuple[float, float]:
    """
    Project a location onto the segment start->end

    Returns:
        (distance from the segment in metres, distance along the segment in
        metres measured from start and clamped to the segment)
    """
    ex, ey = _to_xy(start, end)
    px, py = _to_xy(start, loc)
    length_sq = ex * ex + ey * ey
    if length_sq == 0.0:
        return math.hypot(px, py), 0.0

    t = max(0.0, min(1.0, (px * ex + py * ey) / length_sq))
    cx, cy = t * ex, t * ey
    return math.hypot(px - cx, py - cy), t * math.sqrt(length_sq)
