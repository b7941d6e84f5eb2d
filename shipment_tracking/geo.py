"""
Geodesic helpers shared by the route model, the estimator and the deviation
detector.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from shapely.geometry import LineString, Point

EARTH_RADIUS_KM = 6371.0088

Coordinate = Tuple[float, float]


@dataclass(frozen=True)
class RouteProjection:
    segment_index: int
    fraction: float
    traveled_km: float
    offset_km: float
    latitude: float
    longitude: float


def coordinates_in_range(lat: float, lng: float) -> bool:
    if lat is None or lng is None:
        return False
    if math.isnan(lat) or math.isnan(lng):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def decode_polyline6(polyline: str) -> List[Coordinate]:
    """
    Decode an OSRM polyline6 string into a list of (lat, lng) coordinates.
    """
    coordinates: List[Coordinate] = []
    index = 0
    lat = 0
    lng = 0
    factor = 1e-6

    while index < len(polyline):
        lat_change, index = _decode_value(polyline, index)
        lng_change, index = _decode_value(polyline, index)
        lat += lat_change
        lng += lng_change
        coordinates.append((lat * factor, lng * factor))

    return coordinates


def _decode_value(polyline: str, index: int) -> Tuple[int, int]:
    result = 0
    shift = 0

    while True:
        if index >= len(polyline):
            raise ValueError("Invalid polyline: buffer exhausted.")
        b = ord(polyline[index]) - 63
        index += 1
        result |= (b & 0x1F) << shift
        shift += 5
        if b < 0x20:
            break

    delta = ~(result >> 1) if (result & 1) else (result >> 1)
    return delta, index


def haversine_km(start: Coordinate, end: Coordinate) -> float:
    """
    Great-circle distance between two (lat, lng) pairs in kilometres.
    """
    lat1, lng1 = map(math.radians, start)
    lat2, lng2 = map(math.radians, end)
    d_lat = lat2 - lat1
    d_lng = lng2 - lng1
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def bearing_deg(start: Coordinate, end: Coordinate) -> float:
    """
    Forward azimuth in degrees from ``start`` to ``end``.
    """
    phi1 = math.radians(start[0])
    phi2 = math.radians(end[0])
    d_lambda = math.radians(end[1] - start[1])

    x = math.sin(d_lambda) * math.cos(phi2)
    y = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(
        d_lambda
    )
    return (math.degrees(math.atan2(x, y)) + 360) % 360


def cumulative_distances(points: Sequence[Coordinate]) -> List[float]:
    cumulative: List[float] = [0.0]
    for start, end in zip(points[:-1], points[1:]):
        cumulative.append(cumulative[-1] + haversine_km(start, end))
    return cumulative


def _to_local_km(point: Coordinate, origin: Coordinate) -> Tuple[float, float]:
    # Equirectangular plane centred on the origin; accurate for the few
    # kilometres that matter for projection and deviation.
    d_lng = (point[1] - origin[1] + 180.0) % 360.0 - 180.0
    x = math.radians(d_lng) * EARTH_RADIUS_KM * math.cos(math.radians(origin[0]))
    y = math.radians(point[0] - origin[0]) * EARTH_RADIUS_KM
    return x, y


def _segment_projection(
    index: int,
    start: Coordinate,
    end: Coordinate,
    cumulative: Sequence[float],
    position: Coordinate,
) -> RouteProjection:
    origin = Point(0.0, 0.0)
    a = _to_local_km(start, position)
    b = _to_local_km(end, position)

    if a == b:
        fraction = 0.0
        offset = origin.distance(Point(a))
    else:
        segment = LineString([a, b])
        fraction = min(max(segment.project(origin) / segment.length, 0.0), 1.0)
        offset = segment.distance(origin)

    segment_km = cumulative[index + 1] - cumulative[index]
    return RouteProjection(
        segment_index=index,
        fraction=fraction,
        traveled_km=cumulative[index] + fraction * segment_km,
        offset_km=offset,
        latitude=start[0] + (end[0] - start[0]) * fraction,
        longitude=start[1] + (end[1] - start[1]) * fraction,
    )


def project_onto_route(
    points: Sequence[Coordinate],
    cumulative: Sequence[float],
    position: Coordinate,
    previous_km: Optional[float] = None,
    tolerance_km: float = 0.05,
) -> RouteProjection:
    """
    Project ``position`` onto the route polyline.

    The nearest segment wins. When ``previous_km`` is known and several
    segments lie within ``tolerance_km`` of the nearest distance, the first
    candidate at or beyond ``previous_km`` is preferred so that a route that
    passes near itself does not snap the vehicle backwards.
    """
    if len(points) < 2:
        raise ValueError("A route needs at least two points to project onto.")

    candidates = [
        _segment_projection(index, start, end, cumulative, position)
        for index, (start, end) in enumerate(zip(points[:-1], points[1:]))
    ]
    nearest = min(candidates, key=lambda c: (c.offset_km, c.segment_index))
    if previous_km is None:
        return nearest

    close = [c for c in candidates if c.offset_km <= nearest.offset_km + tolerance_km]
    ahead = [c for c in close if c.traveled_km >= previous_km - tolerance_km]
    if ahead:
        return min(ahead, key=lambda c: (c.traveled_km, c.offset_km))
    return nearest
