# reliefdispatch/services/geo.py
from math import radians, sin, cos, atan2, sqrt
from typing import Iterable

from reliefdispatch.core.states import BLOCKAGE_BUFFER_M
from reliefdispatch.schemas import BlockedRoute, GeoPoint

EARTH_RADIUS_M = 6_371_000.0
METERS_PER_DEGREE = 111_000.0


def haversine_m(a: GeoPoint, b: GeoPoint) -> float:
    dlat = radians(b.lat - a.lat)
    dlng = radians(b.lng - a.lng)
    s = sin(dlat / 2) ** 2 + cos(radians(a.lat)) * cos(radians(b.lat)) * sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_M * atan2(sqrt(s), sqrt(1 - s))


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    return haversine_m(a, b) / 1000.0


def point_to_segment_m(point: GeoPoint, seg_start: GeoPoint, seg_end: GeoPoint) -> float:
    """
    Planar distance from `point` to the segment, measured in degrees and
    scaled by ~111 km/degree. Good enough for short segments; it overstates
    east-west distances away from the equator.
    """
    px, py = point.lng, point.lat
    x1, y1 = seg_start.lng, seg_start.lat
    x2, y2 = seg_end.lng, seg_end.lat

    dx, dy = x2 - x1, y2 - y1
    len_sq = dx * dx + dy * dy
    t = -1.0
    if len_sq != 0:
        t = ((px - x1) * dx + (py - y1) * dy) / len_sq

    if t < 0:
        nx, ny = x1, y1
    elif t > 1:
        nx, ny = x2, y2
    else:
        nx, ny = x1 + t * dx, y1 + t * dy

    return sqrt((px - nx) ** 2 + (py - ny) ** 2) * METERS_PER_DEGREE


def midpoint(a: GeoPoint, b: GeoPoint) -> GeoPoint:
    return GeoPoint(lat=(a.lat + b.lat) / 2, lng=(a.lng + b.lng) / 2)


def buffer_for(severity: str) -> float:
    return BLOCKAGE_BUFFER_M.get(severity, BLOCKAGE_BUFFER_M["medium"])


def crosses_blockage(start: GeoPoint, end: GeoPoint, route: BlockedRoute) -> bool:
    """
    Approximate test for "the straight line start->end runs into this blocked route".

    A segment of the blocked polyline counts as hit when either endpoint lies
    inside the severity buffer of the segment, or when the two segment
    midpoints are closer than the buffer. This is not an exact
    segment-intersection test.
    """
    pts = route.coordinates
    if len(pts) < 2:
        return False
    buf = buffer_for(route.severity)
    route_mid = midpoint(start, end)

    for seg_start, seg_end in zip(pts, pts[1:]):
        if point_to_segment_m(start, seg_start, seg_end) < buf:
            return True
        if point_to_segment_m(end, seg_start, seg_end) < buf:
            return True
        if haversine_m(route_mid, midpoint(seg_start, seg_end)) < buf:
            return True
    return False


def any_blockage(start: GeoPoint, end: GeoPoint, routes: Iterable[BlockedRoute]) -> bool:
    return any(crosses_blockage(start, end, r) for r in routes)
