"""
Route progress and arrival estimation.

Progress comes from projecting the current position onto the planned route.
ETA divides the remaining distance by a recency-weighted speed from the
shipment's history window. Confidence is the product of three factors in
(0, 1]: GPS accuracy, staleness of the last fix and speed variability. Each
factor only shrinks as its input gets worse.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from .conf import tracking_setting
from .geo import RouteProjection, project_onto_route
from .models import LiveTrackingState, ShipmentRoute


@dataclass(frozen=True)
class Progress:
    projection: RouteProjection
    progress_percent: float
    traveled_km: float
    distance_remaining_km: float
    next_checkpoint: str


@dataclass(frozen=True)
class ETAEstimate:
    shipment_id: str
    estimated_arrival: Optional[datetime]
    confidence: float

    @classmethod
    def unknown(cls, shipment_id: str) -> "ETAEstimate":
        return cls(shipment_id=shipment_id, estimated_arrival=None, confidence=0.0)

    @property
    def is_unknown(self) -> bool:
        return self.estimated_arrival is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shipment_id": self.shipment_id,
            "status": "unknown" if self.is_unknown else "estimated",
            "estimated_arrival": (
                self.estimated_arrival.isoformat() if self.estimated_arrival else None
            ),
            "confidence": round(self.confidence, 3),
        }


def estimate_progress(
    route: ShipmentRoute,
    latitude: float,
    longitude: float,
    previous_km: Optional[float] = None,
) -> Progress:
    projection = project_onto_route(
        route.points,
        route.cumulative_km,
        (latitude, longitude),
        previous_km=previous_km,
        tolerance_km=tracking_setting("projection_tolerance_km"),
    )
    total = route.total_distance_km
    traveled = min(max(projection.traveled_km, 0.0), total)
    if total > 0:
        percent = min(max(traveled / total * 100.0, 0.0), 100.0)
    else:
        percent = 100.0
    remaining = max(total - traveled, 0.0)

    # The checkpoint ahead is the end of the segment being driven, unless the
    # vehicle already sits on it.
    checkpoint_index = projection.segment_index + 1
    if projection.fraction >= 1.0 and checkpoint_index < len(route.waypoints) - 1:
        checkpoint_index += 1

    return Progress(
        projection=projection,
        progress_percent=percent,
        traveled_km=traveled,
        distance_remaining_km=remaining,
        next_checkpoint=route.waypoint_name(checkpoint_index),
    )


def _usable_speeds(history: Sequence[Dict[str, Any]]) -> List[float]:
    return [entry["speed"] for entry in history if not entry.get("suspect")]


def representative_speed(
    history: Sequence[Dict[str, Any]],
    latest_speed: Optional[float] = None,
) -> float:
    """
    Linearly weighted mean of the history window, newest reading heaviest.
    """
    speeds = _usable_speeds(history)
    if not speeds:
        if latest_speed is not None and latest_speed > 0:
            return latest_speed
        return 0.0
    weights = range(1, len(speeds) + 1)
    return sum(w * s for w, s in zip(weights, speeds)) / sum(weights)


def speed_variation(history: Sequence[Dict[str, Any]]) -> float:
    """Coefficient of variation of the usable speeds in the window."""
    speeds = _usable_speeds(history)
    if len(speeds) < 2:
        return 0.0
    mean = sum(speeds) / len(speeds)
    if mean <= 0:
        return 0.0
    variance = sum((s - mean) ** 2 for s in speeds) / len(speeds)
    return math.sqrt(variance) / mean


def eta_confidence(accuracy_m: float, age_seconds: float, variation: float) -> float:
    accuracy_factor = 1.0 / (1.0 + max(accuracy_m, 0.0) / tracking_setting("accuracy_scale_m"))
    staleness_factor = 1.0 / (
        1.0 + max(age_seconds, 0.0) / tracking_setting("staleness_scale_seconds")
    )
    variation_factor = 1.0 / (1.0 + max(variation, 0.0))
    return min(max(accuracy_factor * staleness_factor * variation_factor, 0.0), 1.0)


def estimate_eta(
    shipment_id: str,
    distance_remaining_km: float,
    history: Sequence[Dict[str, Any]],
    latest_speed: Optional[float],
    accuracy_m: float,
    last_update: Optional[datetime],
    now: datetime,
) -> ETAEstimate:
    age = (now - last_update).total_seconds() if last_update else 0.0
    confidence = eta_confidence(accuracy_m, age, speed_variation(history))

    if distance_remaining_km <= 0:
        return ETAEstimate(shipment_id, now, confidence)

    speed = representative_speed(history, latest_speed)
    if speed <= tracking_setting("min_speed_kmh"):
        return ETAEstimate.unknown(shipment_id)

    hours = distance_remaining_km / speed
    return ETAEstimate(shipment_id, now + timedelta(hours=hours), confidence)


def recompute(
    state: LiveTrackingState,
    route: ShipmentRoute,
    now: Optional[datetime] = None,
) -> tuple[Progress, ETAEstimate]:
    """Refresh progress and ETA on ``state`` from its latest position."""
    now = now or state.last_update
    progress = estimate_progress(route, state.latitude, state.longitude, state.traveled_km)

    state.progress_percent = progress.progress_percent
    state.traveled_km = progress.traveled_km
    state.distance_remaining_km = progress.distance_remaining_km
    state.next_checkpoint = progress.next_checkpoint

    eta = estimate_eta(
        state.shipment_id,
        progress.distance_remaining_km,
        state.speed_history,
        None if state.is_suspect else state.speed_kmh,
        state.accuracy,
        state.last_update,
        now,
    )
    state.estimated_arrival = eta.estimated_arrival
    state.eta_confidence = eta.confidence
    return progress, eta
