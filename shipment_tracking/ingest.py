"""
Position report ingest.

Validation runs in a fixed order: unknown shipment, invalid coordinates, stale
timestamp, then implausible readings. The first three reject the report; an
implausible reading is accepted with a suspect marker so tracking keeps moving
through sensor noise.

An accepted report updates the live state, recomputes progress and ETA, runs
the deviation check and records events as one serialized, atomic step per
shipment. Notifications go out after commit.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Any, Dict, List, Optional

from django.db import transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from . import deviation, estimator, state as store
from .conf import tracking_setting
from .dispatcher import emit, latest_event_time
from .exceptions import (
    ImplausibleReading,
    InternalInconsistency,
    InvalidCoordinates,
    StaleReport,
    TrackingError,
    UnknownShipment,
)
from .geo import coordinates_in_range
from .models import LiveTrackingState, ShipmentRoute, TrackingEvent
from .routing import get_route

logger = logging.getLogger(__name__)


@dataclass
class PositionReport:
    shipment_id: str
    latitude: float
    longitude: float
    timestamp: datetime
    speed_kmh: float = 0.0
    heading: Optional[float] = None
    altitude: float = 0.0
    accuracy: float = 0.0
    battery_level: Optional[int] = None
    signal_strength: Optional[int] = None
    device_id: str = ""

    def __post_init__(self):
        if timezone.is_naive(self.timestamp):
            self.timestamp = timezone.make_aware(self.timestamp, dt_timezone.utc)
        if self.heading is not None:
            self.heading = self.heading % 360
        self.battery_level = _clamp_percent(self.battery_level)
        self.signal_strength = _clamp_percent(self.signal_strength)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PositionReport":
        def _value(name, default):
            value = data.get(name)
            return default if value is None else value

        timestamp = data["timestamp"]
        if isinstance(timestamp, str):
            timestamp = parse_datetime(timestamp)
            if timestamp is None:
                raise ValueError(f"Invalid timestamp: {data['timestamp']!r}")

        return cls(
            shipment_id=str(data["shipment_id"]),
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            timestamp=timestamp,
            speed_kmh=float(_value("speed_kmh", 0.0)),
            heading=data.get("heading"),
            altitude=float(_value("altitude", 0.0)),
            accuracy=float(_value("accuracy", 0.0)),
            battery_level=data.get("battery_level"),
            signal_strength=data.get("signal_strength"),
            device_id=str(_value("device_id", "")),
        )


def _clamp_percent(value) -> Optional[int]:
    if value is None:
        return None
    return int(round(min(max(float(value), 0.0), 100.0)))


@dataclass(frozen=True)
class IngestResult:
    shipment_id: str
    accepted: bool
    reason: Optional[str] = None
    message: str = ""
    warnings: List[str] = field(default_factory=list)
    state: Optional[LiveTrackingState] = None

    @property
    def status(self) -> str:
        return "accepted" if self.accepted else "rejected"

    @property
    def suspect(self) -> bool:
        return ImplausibleReading.code in self.warnings

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "shipment_id": self.shipment_id,
            "status": self.status,
        }
        if self.reason:
            payload["reason"] = self.reason
        if self.message:
            payload["message"] = self.message
        if self.warnings:
            payload["warnings"] = list(self.warnings)
        return payload

    @classmethod
    def rejected(cls, report: PositionReport, error: TrackingError) -> "IngestResult":
        return cls(
            shipment_id=report.shipment_id,
            accepted=False,
            reason=error.code,
            message=error.message,
        )


def validate_report(
    report: PositionReport,
    route: Optional[ShipmentRoute],
    state: Optional[LiveTrackingState],
) -> List[str]:
    """
    Raise for reports that must be rejected; return warning codes for
    reports accepted as suspect.
    """
    if route is None:
        raise UnknownShipment(
            f"No active route for shipment {report.shipment_id}", report.shipment_id
        )
    if state is not None and not state.is_active:
        raise UnknownShipment(
            f"Tracking is not active for shipment {report.shipment_id}", report.shipment_id
        )

    if not coordinates_in_range(report.latitude, report.longitude):
        raise InvalidCoordinates(
            f"Coordinates out of range: ({report.latitude}, {report.longitude})",
            report.shipment_id,
        )

    if state is not None and state.last_update and report.timestamp < state.last_update:
        raise StaleReport(
            f"Report at {report.timestamp.isoformat()} is older than "
            f"{state.last_update.isoformat()}",
            report.shipment_id,
        )

    warnings: List[str] = []
    speed = report.speed_kmh
    if (
        speed is None
        or math.isnan(speed)
        or speed < 0
        or speed > tracking_setting("max_speed_kmh")
        or report.accuracy < 0
    ):
        warnings.append(ImplausibleReading.code)
    return warnings


def submit_position(report: PositionReport) -> IngestResult:
    shipment_id = report.shipment_id
    with store.SHIPMENT_LOCKS.hold(shipment_id):
        try:
            with transaction.atomic():
                route = get_route(shipment_id)
                state = store.get_for_update(shipment_id)
                warnings = validate_report(report, route, state)
                if state is None:
                    state, _ = store.start(shipment_id, route)

                suspect = bool(warnings)
                if suspect:
                    logger.info(
                        "Implausible reading for shipment %s accepted as suspect: "
                        "speed=%s km/h accuracy=%s m",
                        shipment_id,
                        report.speed_kmh,
                        report.accuracy,
                    )
                try:
                    with transaction.atomic():
                        _apply(state, route, report, suspect)
                except InternalInconsistency:
                    logger.exception(
                        "Recomputation failed for shipment %s; keeping last known state",
                        shipment_id,
                    )
                    state.refresh_from_db()
        except StaleReport as error:
            logger.warning("Dropping stale report for shipment %s: %s", shipment_id, error)
            return IngestResult.rejected(report, error)
        except (UnknownShipment, InvalidCoordinates) as error:
            logger.info("Rejected report for shipment %s: %s", shipment_id, error)
            return IngestResult.rejected(report, error)

    return IngestResult(
        shipment_id=shipment_id,
        accepted=True,
        warnings=warnings,
        state=state,
    )


def _apply(
    state: LiveTrackingState,
    route: ShipmentRoute,
    report: PositionReport,
    suspect: bool,
) -> None:
    store.update(state, report, suspect=suspect, received_at=timezone.now())
    try:
        _, eta = estimator.recompute(state, route, now=report.timestamp)
        outcome = deviation.evaluate(state, route, report, suspect=suspect)
    except (ArithmeticError, ValueError, TypeError, KeyError, IndexError) as error:
        raise InternalInconsistency(
            f"Could not recompute tracking for shipment {state.shipment_id}: {error}",
            state.shipment_id,
        ) from error

    # Ingest events never sort before the shipment's latest event.
    latest = latest_event_time(state.shipment_id)
    event_time = max(report.timestamp, latest) if latest else report.timestamp

    _emit_status_events(state, route, report, eta, event_time)

    if outcome.opened and not outcome.record.alert_emitted:
        emit(
            state.shipment_id,
            TrackingEvent.EXCEPTION,
            note=(
                f"Route deviation: {outcome.offset_km:.2f} km off the planned route "
                f"for {outcome.record.deviation_minutes:.0f} min"
            ),
            timestamp=event_time,
            state=state,
            route_deviation=True,
        )
        outcome.record.alert_emitted = True
        outcome.record.save(update_fields=["alert_emitted"])

    state.save()


def _emit_status_events(
    state: LiveTrackingState,
    route: ShipmentRoute,
    report: PositionReport,
    eta: estimator.ETAEstimate,
    event_time: datetime,
) -> None:
    if state.status in (TrackingEvent.PICKUP_SCHEDULED, TrackingEvent.PICKED_UP):
        state.status = TrackingEvent.IN_TRANSIT
        emit(
            state.shipment_id,
            TrackingEvent.IN_TRANSIT,
            note=f"Live GPS update - Speed: {report.speed_kmh:.1f} km/h",
            timestamp=event_time,
            state=state,
        )

    if (
        not state.out_for_delivery_sent
        and state.distance_remaining_km <= tracking_setting("out_for_delivery_km")
        and state.status in (TrackingEvent.IN_TRANSIT, TrackingEvent.DELAYED)
    ):
        state.out_for_delivery_sent = True
        state.status = TrackingEvent.OUT_FOR_DELIVERY
        emit(
            state.shipment_id,
            TrackingEvent.OUT_FOR_DELIVERY,
            note=f"{state.distance_remaining_km:.1f} km to destination",
            timestamp=event_time,
            state=state,
        )

    if route.planned_arrival and not state.delay_alert_sent and not eta.is_unknown:
        grace = timedelta(minutes=tracking_setting("delay_grace_minutes"))
        if eta.estimated_arrival > route.planned_arrival + grace:
            late = eta.estimated_arrival - route.planned_arrival
            state.delay_alert_sent = True
            if state.status != TrackingEvent.OUT_FOR_DELIVERY:
                state.status = TrackingEvent.DELAYED
            emit(
                state.shipment_id,
                TrackingEvent.DELAYED,
                note=f"Expected {late.total_seconds() / 60:.0f} min after the planned arrival",
                timestamp=event_time,
                state=state,
            )
