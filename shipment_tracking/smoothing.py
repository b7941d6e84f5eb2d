"""
Constant-velocity Kalman smoothing for GPS traces.

Latitude and longitude are filtered independently: with a position-only
measurement and diagonal noise the 2D filter separates into two 1D
position/velocity filters, which keeps the persisted state small.
"""
from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

INITIAL_POSITION_VARIANCE = 1e-3
INITIAL_VELOCITY_VARIANCE = 1e-2


class _AxisFilter:
    def __init__(self, position: float):
        self.position = position
        self.velocity = 0.0
        # Symmetric covariance [[p00, p01], [p01, p11]].
        self.p00 = INITIAL_POSITION_VARIANCE
        self.p01 = 0.0
        self.p11 = INITIAL_VELOCITY_VARIANCE

    def predict(self, dt: float, q: float) -> None:
        self.position += dt * self.velocity
        dt2 = dt * dt
        self.p00 = self.p00 + 2 * dt * self.p01 + dt2 * self.p11 + 0.25 * dt2 * dt2 * q
        self.p01 = self.p01 + dt * self.p11 + 0.5 * dt2 * dt * q
        self.p11 = self.p11 + dt2 * q

    def update(self, measured: float, r: float) -> float:
        innovation_variance = self.p00 + r
        gain_position = self.p00 / innovation_variance
        gain_velocity = self.p01 / innovation_variance
        residual = measured - self.position

        self.position += gain_position * residual
        self.velocity += gain_velocity * residual

        p00, p01, p11 = self.p00, self.p01, self.p11
        self.p00 = (1 - gain_position) * p00
        self.p01 = (1 - gain_position) * p01
        self.p11 = p11 - gain_velocity * p01
        return self.position

    def as_list(self):
        return [self.position, self.velocity, self.p00, self.p01, self.p11]

    @classmethod
    def from_list(cls, values) -> "_AxisFilter":
        axis = cls(values[0])
        axis.velocity, axis.p00, axis.p01, axis.p11 = values[1:]
        return axis


class PositionSmoother:
    """
    Smooths (lat, lng) samples; state round-trips through ``to_dict`` so it
    can be stored on the shipment's live state between reports.
    """

    def __init__(
        self,
        process_variance: float = 5e-7,
        measurement_variance: float = 2e-6,
    ):
        self.process_variance = process_variance
        self.measurement_variance = measurement_variance
        self.lat: Optional[_AxisFilter] = None
        self.lng: Optional[_AxisFilter] = None
        self.last_timestamp: Optional[float] = None

    def step(self, timestamp: float, lat: float, lng: float) -> Tuple[float, float]:
        if self.lat is None or self.lng is None:
            self.lat = _AxisFilter(lat)
            self.lng = _AxisFilter(lng)
            self.last_timestamp = timestamp
            return lat, lng

        dt = max(timestamp - (self.last_timestamp or timestamp), 1.0)
        self.last_timestamp = timestamp
        for axis in (self.lat, self.lng):
            axis.predict(dt, self.process_variance)
        return (
            self.lat.update(lat, self.measurement_variance),
            self.lng.update(lng, self.measurement_variance),
        )

    def to_dict(self) -> Dict[str, Any]:
        if self.lat is None or self.lng is None:
            return {}
        return {
            "lat": self.lat.as_list(),
            "lng": self.lng.as_list(),
            "last_timestamp": self.last_timestamp,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PositionSmoother":
        smoother = cls()
        if data:
            smoother.lat = _AxisFilter.from_list(data["lat"])
            smoother.lng = _AxisFilter.from_list(data["lng"])
            smoother.last_timestamp = data.get("last_timestamp")
        return smoother
