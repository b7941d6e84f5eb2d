"""
Planned routes for shipments.

A route is immutable once stored; re-routing a booking stores a new route and
retires the previous one.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from django.db import transaction
from django.utils import timezone

from .exceptions import InvalidRoute
from .geo import coordinates_in_range, cumulative_distances, decode_polyline6
from .models import LiveTrackingState, RouteDeviation, ShipmentRoute

logger = logging.getLogger(__name__)

WaypointInput = Union[Dict[str, Any], tuple, list]


def _normalize_waypoint(raw: WaypointInput, position: int, shipment_id: str) -> Dict[str, Any]:
    try:
        if isinstance(raw, dict):
            lat = float(raw["lat"])
            lng = float(raw["lng"])
            name = str(raw.get("name") or "")
        else:
            lat, lng = float(raw[0]), float(raw[1])
            name = str(raw[2]) if len(raw) > 2 and raw[2] else ""
    except (KeyError, IndexError, TypeError, ValueError) as error:
        raise InvalidRoute(f"Waypoint {position} is malformed: {error}", shipment_id)

    if not coordinates_in_range(lat, lng):
        raise InvalidRoute(
            f"Waypoint {position} is out of range: ({lat}, {lng})", shipment_id
        )
    return {"lat": lat, "lng": lng, "name": name}


def create_route(
    shipment_id: str,
    waypoints: Union[str, Iterable[WaypointInput]],
    planned_arrival=None,
) -> ShipmentRoute:
    """
    Store the planned route for ``shipment_id`` and return it.

    ``waypoints`` is either a sequence of (lat, lng[, name]) tuples /
    {"lat", "lng", "name"} mappings, or an OSRM polyline6 string. Raises
    ``InvalidRoute`` when fewer than two waypoints are given or a waypoint is
    out of range. An existing route for the shipment is retired and any live
    state is re-pointed to the new one.
    """
    if not shipment_id:
        raise InvalidRoute("A shipment id is required.")

    if isinstance(waypoints, str):
        try:
            waypoints = decode_polyline6(waypoints)
        except ValueError as error:
            raise InvalidRoute(str(error), shipment_id)

    normalized: List[Dict[str, Any]] = [
        _normalize_waypoint(raw, position, shipment_id)
        for position, raw in enumerate(waypoints or [])
    ]
    if len(normalized) < 2:
        raise InvalidRoute("A route needs at least two waypoints.", shipment_id)

    cumulative = cumulative_distances([(w["lat"], w["lng"]) for w in normalized])

    with transaction.atomic():
        retired = ShipmentRoute.objects.filter(
            shipment_id=shipment_id, is_current=True
        ).update(is_current=False)
        route = ShipmentRoute.objects.create(
            shipment_id=shipment_id,
            waypoints=normalized,
            cumulative_km=cumulative,
            total_distance_km=cumulative[-1],
            planned_arrival=planned_arrival,
        )
        if retired:
            # Progress and deviation are relative to the planned path, so
            # both restart against the new one.
            now = timezone.now()
            LiveTrackingState.objects.filter(shipment_id=shipment_id).update(
                route=route, traveled_km=0.0, off_route_since=None
            )
            RouteDeviation.objects.filter(shipment_id=shipment_id, is_open=True).update(
                is_open=False, resolved_at=now, updated_at=now
            )

    logger.info(
        "Route %s stored for shipment %s: %d waypoints, %.2f km%s",
        route.pk,
        shipment_id,
        len(normalized),
        route.total_distance_km,
        " (re-route)" if retired else "",
    )
    return route


def get_route(shipment_id: str) -> Optional[ShipmentRoute]:
    return (
        ShipmentRoute.objects.filter(shipment_id=shipment_id, is_current=True)
        .order_by("-created_at", "-id")
        .first()
    )
