"""
Error taxonomy for the tracking engine.

Validation errors are turned into rejected ingest results, dispatch errors are
only logged, and ``InternalInconsistency`` never reaches the ingest caller.
"""


class TrackingError(Exception):
    code = "tracking_error"

    def __init__(self, message: str = "", shipment_id: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.shipment_id = shipment_id


class UnknownShipment(TrackingError):
    code = "unknown_shipment"


class InvalidCoordinates(TrackingError):
    code = "invalid_coordinates"


class InvalidRoute(TrackingError):
    code = "invalid_route"


class StaleReport(TrackingError):
    code = "stale_report"


class ImplausibleReading(TrackingError):
    code = "implausible_reading"


class InternalInconsistency(TrackingError):
    code = "internal_inconsistency"


class DispatchFailure(TrackingError):
    code = "dispatch_failure"


class TransientDispatchError(DispatchFailure):
    """Raised by notification channels for failures worth retrying."""

    code = "transient_dispatch_error"


class ImmutableEventError(TrackingError):
    code = "immutable_event"


class InvalidEvent(TrackingError):
    code = "invalid_event"
