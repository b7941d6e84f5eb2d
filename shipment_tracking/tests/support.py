import math
import threading
from datetime import datetime, timedelta, timezone

from shipment_tracking.exceptions import TransientDispatchError
from shipment_tracking.geo import EARTH_RADIUS_KM
from shipment_tracking.ingest import PositionReport

ONE_DEGREE_KM = EARTH_RADIUS_KM * math.pi / 180

T0 = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)

# Straight east-west route along the equator, ~111.2 km long.
EQUATOR_ROUTE = [
    {"lat": 0.0, "lng": 0.0, "name": "Origin depot"},
    {"lat": 0.0, "lng": 1.0, "name": "Destination hub"},
]


def km_north(km):
    """Latitude offset in degrees for ``km`` north of the equator."""
    return math.degrees(km / EARTH_RADIUS_KM)


def minutes(value):
    return T0 + timedelta(minutes=value)


def report(shipment_id="SHP-1", lat=0.0, lng=0.5, at=T0, **extra):
    extra.setdefault("speed_kmh", 60.0)
    extra.setdefault("accuracy", 10.0)
    return PositionReport(
        shipment_id=shipment_id,
        latitude=lat,
        longitude=lng,
        timestamp=at,
        **extra,
    )


class RecordingChannel:
    def __init__(self):
        self.payloads = []

    def send(self, payload, timeout=None):
        self.payloads.append(payload)


class FlakyChannel:
    """Fails with a transient error ``failures`` times, then succeeds."""

    def __init__(self, failures, error=TransientDispatchError):
        self.failures = failures
        self.error = error
        self.calls = 0
        self.timeouts = []

    def send(self, payload, timeout=None):
        self.calls += 1
        self.timeouts.append(timeout)
        if self.calls <= self.failures:
            raise self.error("notification service unavailable")


class BlockingChannel(RecordingChannel):
    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def send(self, payload, timeout=None):
        self.release.wait(timeout=5)
        super().send(payload, timeout)
