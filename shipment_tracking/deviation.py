"""
Route deviation detection.

A shipment is deviating once its perpendicular distance from the planned
route stays above the distance threshold for at least the duration
threshold. Low-accuracy and suspect samples are ignored so a single noisy fix
can neither open nor close a deviation.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .conf import tracking_setting
from .geo import project_onto_route
from .models import LiveTrackingState, RouteDeviation, ShipmentRoute

if TYPE_CHECKING:
    from .ingest import PositionReport

logger = logging.getLogger(__name__)


@dataclass
class DeviationOutcome:
    offset_km: float
    evaluated: bool
    record: Optional[RouteDeviation] = None
    opened: bool = False
    closed: bool = False


@dataclass(frozen=True)
class RouteMonitoring:
    shipment_id: str
    route_score: float
    deviation_distance_km: float
    deviation_time_minutes: float
    active_deviation: bool
    deviations: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shipment_id": self.shipment_id,
            "route_score": self.route_score,
            "deviation_distance_km": round(self.deviation_distance_km, 3),
            "deviation_time_minutes": round(self.deviation_time_minutes, 2),
            "active_deviation": self.active_deviation,
            "deviations": self.deviations,
        }


def perpendicular_distance_km(route: ShipmentRoute, latitude: float, longitude: float) -> float:
    return project_onto_route(route.points, route.cumulative_km, (latitude, longitude)).offset_km


def open_deviation(shipment_id: str) -> Optional[RouteDeviation]:
    return RouteDeviation.objects.filter(shipment_id=shipment_id, is_open=True).first()


def evaluate(
    state: LiveTrackingState,
    route: ShipmentRoute,
    report: "PositionReport",
    suspect: bool = False,
) -> DeviationOutcome:
    offset = perpendicular_distance_km(route, report.latitude, report.longitude)

    if suspect or report.accuracy > tracking_setting("max_accuracy_m"):
        logger.debug(
            "Skipping deviation check for %s: suspect=%s accuracy=%.0fm",
            state.shipment_id,
            suspect,
            report.accuracy,
        )
        return DeviationOutcome(offset_km=offset, evaluated=False)

    state.samples_total += 1
    record = open_deviation(state.shipment_id)
    timestamp = report.timestamp

    if offset <= tracking_setting("deviation_distance_km"):
        state.off_route_since = None
        if record is None:
            return DeviationOutcome(offset_km=offset, evaluated=True)
        record.is_open = False
        record.resolved_at = timestamp
        record.updated_at = timestamp
        record.last_distance_km = offset
        record.save(update_fields=["is_open", "resolved_at", "updated_at", "last_distance_km"])
        logger.info(
            "Shipment %s back on route after %.1f min of deviation",
            state.shipment_id,
            record.deviation_minutes,
        )
        return DeviationOutcome(offset_km=offset, evaluated=True, record=record, closed=True)

    state.samples_off_route += 1
    if state.off_route_since is None:
        state.off_route_since = timestamp
    elapsed_minutes = (timestamp - state.off_route_since).total_seconds() / 60.0
    if elapsed_minutes < tracking_setting("deviation_duration_minutes"):
        return DeviationOutcome(offset_km=offset, evaluated=True, record=record)

    if record is None:
        record = RouteDeviation.objects.create(
            shipment_id=state.shipment_id,
            route=route,
            deviation_distance_km=offset,
            last_distance_km=offset,
            deviation_minutes=elapsed_minutes,
            started_at=state.off_route_since,
            detected_at=timestamp,
            updated_at=timestamp,
        )
        logger.warning(
            "Route deviation opened for shipment %s: %.2f km off route for %.1f min",
            state.shipment_id,
            offset,
            elapsed_minutes,
        )
        return DeviationOutcome(offset_km=offset, evaluated=True, record=record, opened=True)

    record.deviation_distance_km = max(record.deviation_distance_km, offset)
    record.last_distance_km = offset
    record.deviation_minutes = elapsed_minutes
    record.updated_at = timestamp
    record.save(
        update_fields=["deviation_distance_km", "last_distance_km", "deviation_minutes", "updated_at"]
    )
    return DeviationOutcome(offset_km=offset, evaluated=True, record=record)


def monitoring_for(state: LiveTrackingState) -> RouteMonitoring:
    """
    Summarize route adherence: the share of evaluated samples that were on
    route, the largest deviation distance and the total deviation time.
    """
    records = list(RouteDeviation.objects.filter(shipment_id=state.shipment_id))
    if state.samples_total:
        score = 1.0 - state.samples_off_route / state.samples_total
    else:
        score = 1.0
    return RouteMonitoring(
        shipment_id=state.shipment_id,
        route_score=round(min(max(score, 0.0), 1.0), 2),
        deviation_distance_km=max((r.deviation_distance_km for r in records), default=0.0),
        deviation_time_minutes=sum(r.deviation_minutes for r in records),
        active_deviation=any(r.is_open for r in records),
        deviations=[r.to_dict() for r in records],
    )
