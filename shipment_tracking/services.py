"""
Command and query surface of the tracking engine.

Collaborators (booking, notification, dashboards) talk to tracking through
these functions or the JSON views built on them; they never write tracking
state directly.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from django.db import transaction
from django.utils import timezone

from . import deviation, estimator, state as store
from .conf import tracking_setting
from .deviation import RouteMonitoring
from .dispatcher import emit
from .estimator import ETAEstimate
from .exceptions import InvalidEvent, UnknownShipment
from .ingest import IngestResult, PositionReport, submit_position
from .models import LiveTrackingState, ShipmentRoute, TrackingEvent
from .routing import create_route, get_route

logger = logging.getLogger(__name__)

__all__ = [
    "IngestResult",
    "PositionReport",
    "confirm_delivery",
    "create_route",
    "get_eta",
    "get_live_state",
    "get_route",
    "get_route_monitoring",
    "get_tracking_snapshot",
    "list_events",
    "record_status",
    "start_tracking",
    "stop_tracking",
    "submit_position",
    "sweep_stale_tracking",
]

EVENT_TYPES = {choice for choice, _ in TrackingEvent.EVENT_TYPE_CHOICES}


def _require_route(shipment_id: str) -> ShipmentRoute:
    route = get_route(shipment_id)
    if route is None:
        raise UnknownShipment(f"No active route for shipment {shipment_id}", shipment_id)
    return route


def start_tracking(
    shipment_id: str,
    note: str = "",
    emitted_by: str = TrackingEvent.SYSTEM,
    timestamp: Optional[datetime] = None,
) -> LiveTrackingState:
    """Open (or re-open) live tracking for a shipment with a stored route."""
    with store.SHIPMENT_LOCKS.hold(shipment_id):
        with transaction.atomic():
            route = _require_route(shipment_id)
            state, created = store.start(shipment_id, route)
            if created:
                emit(
                    shipment_id,
                    TrackingEvent.PICKUP_SCHEDULED,
                    note=note or "Tracking started",
                    timestamp=timestamp,
                    emitted_by=emitted_by,
                    state=state,
                )
    logger.info("Tracking %s for shipment %s", "started" if created else "resumed", shipment_id)
    return state


def stop_tracking(shipment_id: str) -> Optional[LiveTrackingState]:
    with store.SHIPMENT_LOCKS.hold(shipment_id):
        with transaction.atomic():
            return store.deactivate(shipment_id)


def confirm_delivery(
    shipment_id: str,
    note: str = "",
    timestamp: Optional[datetime] = None,
    emitted_by: str = TrackingEvent.SYSTEM,
) -> LiveTrackingState:
    """
    Delivery signal from the booking side: closes tracking and records
    ``delivered``. Repeated confirmations do not record a second event.
    """
    with store.SHIPMENT_LOCKS.hold(shipment_id):
        with transaction.atomic():
            state = store.get_for_update(shipment_id)
            if state is None:
                state, _ = store.start(shipment_id, _require_route(shipment_id))
            if state.status == TrackingEvent.DELIVERED:
                return state

            open_record = deviation.open_deviation(shipment_id)
            delivered_at = timestamp or timezone.now()
            if open_record is not None:
                open_record.is_open = False
                open_record.resolved_at = delivered_at
                open_record.updated_at = delivered_at
                open_record.save(update_fields=["is_open", "resolved_at", "updated_at"])

            state.status = TrackingEvent.DELIVERED
            state.is_active = False
            state.save(update_fields=["status", "is_active"])
            emit(
                shipment_id,
                TrackingEvent.DELIVERED,
                note=note or "Shipment delivered",
                timestamp=delivered_at,
                emitted_by=emitted_by,
                state=state,
            )
    logger.info("Shipment %s delivered; tracking closed", shipment_id)
    return state


def record_status(
    shipment_id: str,
    event_type: str,
    note: str = "",
    emitted_by: str = TrackingEvent.USER,
    timestamp: Optional[datetime] = None,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
) -> TrackingEvent:
    """Record a status change reported by a person or an outside system."""
    if event_type not in EVENT_TYPES:
        raise InvalidEvent(f"Unknown event type: {event_type}", shipment_id)
    if event_type == TrackingEvent.DELIVERED:
        confirm_delivery(shipment_id, note=note, timestamp=timestamp, emitted_by=emitted_by)
        return TrackingEvent.objects.filter(
            shipment_id=shipment_id, event_type=TrackingEvent.DELIVERED
        ).last()

    with store.SHIPMENT_LOCKS.hold(shipment_id):
        with transaction.atomic():
            state = store.get_for_update(shipment_id)
            if state is None and get_route(shipment_id) is None:
                raise UnknownShipment(f"Unknown shipment {shipment_id}", shipment_id)
            if state is not None:
                state.status = event_type
                state.save(update_fields=["status"])
            ack = emit(
                shipment_id,
                event_type,
                note=note,
                timestamp=timestamp,
                emitted_by=emitted_by,
                latitude=latitude,
                longitude=longitude,
                state=state,
            )
    return ack.event


def get_live_state(shipment_id: str) -> Optional[LiveTrackingState]:
    return store.get(shipment_id)


def get_eta(shipment_id: str, now: Optional[datetime] = None) -> ETAEstimate:
    """
    Cached arrival estimate. The confidence is re-scored for how old the last
    fix is at query time.
    """
    state = store.get(shipment_id)
    if state is None or not state.has_position or state.estimated_arrival is None:
        return ETAEstimate.unknown(shipment_id)

    now = now or timezone.now()
    age = (now - state.last_update).total_seconds() if state.last_update else 0.0
    confidence = estimator.eta_confidence(
        state.accuracy, age, estimator.speed_variation(state.speed_history)
    )
    return ETAEstimate(shipment_id, state.estimated_arrival, confidence)


def get_route_monitoring(shipment_id: str) -> Optional[RouteMonitoring]:
    state = store.get(shipment_id)
    if state is None:
        return None
    return deviation.monitoring_for(state)


def list_events(shipment_id: str) -> List[TrackingEvent]:
    return list(
        TrackingEvent.objects.filter(shipment_id=shipment_id).order_by("timestamp", "id")
    )


def sweep_stale_tracking(
    now: Optional[datetime] = None,
    stale_after_seconds: Optional[float] = None,
) -> int:
    now = now or timezone.now()
    window = stale_after_seconds
    if window is None:
        window = tracking_setting("stale_after_seconds")
    marked = store.mark_stale(now - timedelta(seconds=window))
    if marked:
        logger.warning("Marked %d shipment(s) stale: no report in %ss", marked, window)
    return marked


def get_tracking_snapshot() -> Dict:
    """
    Active shipments in one payload for dashboards.
    """
    shipments = [
        state.to_dict()
        for state in LiveTrackingState.objects.filter(is_active=True).order_by("shipment_id")
    ]
    return {
        "shipments": shipments,
        "status_filters": sorted({shipment["status"] for shipment in shipments}),
        "stale_count": sum(1 for shipment in shipments if shipment["is_stale"]),
        "generation_time": timezone.now().isoformat(),
    }
