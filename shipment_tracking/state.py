"""
Live tracking state: one mutable record per shipment.

Writers for a shipment are serialized through ``SHIPMENT_LOCKS`` inside the
process and ``select_for_update`` across processes. Shipments never share a
lock.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from contextlib import contextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Dict, Iterator, Optional, Tuple

from django.db.models import Q

from .conf import tracking_setting
from .geo import bearing_deg
from .models import LiveTrackingState, ShipmentRoute
from .smoothing import PositionSmoother

if TYPE_CHECKING:
    from .ingest import PositionReport

logger = logging.getLogger(__name__)


class ShipmentLocks:
    """
    Registry of one re-entrant lock per shipment id.

    An entry lives only while some caller holds or waits for it, so the
    registry stays as small as the set of shipments being written right now.
    """

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._holders: Dict[str, int] = {}
        self._guard = threading.Lock()

    def _checkout(self, shipment_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(shipment_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[shipment_id] = lock
            self._holders[shipment_id] = self._holders.get(shipment_id, 0) + 1
            return lock

    def _checkin(self, shipment_id: str) -> None:
        with self._guard:
            remaining = self._holders[shipment_id] - 1
            if remaining:
                self._holders[shipment_id] = remaining
            else:
                del self._holders[shipment_id]
                del self._locks[shipment_id]

    @contextmanager
    def hold(self, shipment_id: str) -> Iterator[None]:
        lock = self._checkout(shipment_id)
        try:
            with lock:
                yield
        finally:
            self._checkin(shipment_id)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


SHIPMENT_LOCKS = ShipmentLocks()


def get(shipment_id: str) -> Optional[LiveTrackingState]:
    return LiveTrackingState.objects.filter(shipment_id=shipment_id).first()


def get_for_update(shipment_id: str) -> Optional[LiveTrackingState]:
    """Lock the row for the rest of the surrounding transaction."""
    return (
        LiveTrackingState.objects.select_for_update()
        .filter(shipment_id=shipment_id)
        .first()
    )


def start(shipment_id: str, route: ShipmentRoute) -> Tuple[LiveTrackingState, bool]:
    """
    Create the live state for a shipment, or re-activate an existing one.

    Returns ``(state, created)``.
    """
    state, created = LiveTrackingState.objects.get_or_create(
        shipment_id=shipment_id,
        defaults={"route": route},
    )
    if not created and (not state.is_active or state.route_id != route.pk):
        state.is_active = True
        state.route = route
        state.save(update_fields=["is_active", "route"])
    return state, created


def update(
    state: LiveTrackingState,
    report: "PositionReport",
    suspect: bool = False,
    received_at: Optional[datetime] = None,
) -> LiveTrackingState:
    """
    Overwrite the projection fields of ``state`` with ``report`` and push the
    reading onto the speed-history window. The caller saves.
    """
    previous = (state.latitude, state.longitude) if state.has_position else None
    position = (report.latitude, report.longitude)

    heading = report.heading
    if heading is None:
        if previous is not None and previous != position:
            heading = bearing_deg(previous, position)
        else:
            heading = state.heading

    state.latitude, state.longitude = position
    state.speed_kmh = report.speed_kmh
    state.heading = heading % 360
    state.altitude = report.altitude
    state.accuracy = report.accuracy
    if report.battery_level is not None:
        state.battery_level = report.battery_level
    if report.signal_strength is not None:
        state.signal_strength = report.signal_strength
    if report.device_id:
        state.device_id = report.device_id
    state.is_suspect = suspect
    state.is_stale = False
    state.last_update = report.timestamp
    state.received_at = received_at or report.timestamp

    history = deque(state.speed_history or [], maxlen=tracking_setting("history_size"))
    history.append(
        {
            "t": report.timestamp.timestamp(),
            "speed": report.speed_kmh,
            "suspect": suspect,
        }
    )
    state.speed_history = list(history)

    smoother = PositionSmoother.from_dict(state.filter_state)
    state.smoothed_latitude, state.smoothed_longitude = smoother.step(
        report.timestamp.timestamp(), report.latitude, report.longitude
    )
    state.filter_state = smoother.to_dict()
    return state


def deactivate(shipment_id: str) -> Optional[LiveTrackingState]:
    state = get_for_update(shipment_id)
    if state is None:
        return None
    if state.is_active:
        state.is_active = False
        state.save(update_fields=["is_active"])
        logger.info("Tracking deactivated for shipment %s", shipment_id)
    return state


def mark_stale(cutoff: datetime) -> int:
    """Flag active shipments with no report since ``cutoff``."""
    return (
        LiveTrackingState.objects.filter(is_active=True, is_stale=False)
        .filter(
            Q(last_update__lt=cutoff)
            | Q(last_update__isnull=True, created_at__lt=cutoff)
        )
        .update(is_stale=True)
    )
