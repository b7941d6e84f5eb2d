from __future__ import annotations

import json
import logging

from django.http import JsonResponse
from django.utils.dateparse import parse_datetime
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt

from . import services
from .exceptions import InvalidEvent, InvalidRoute, UnknownShipment
from .forms import PositionReportForm, StatusEventForm
from .ingest import PositionReport

logger = logging.getLogger(__name__)

REJECTION_STATUS = {
    "unknown_shipment": 404,
    "invalid_coordinates": 400,
    # Stale reports are dropped; a 2xx keeps devices from resending them.
    "stale_report": 200,
}


def _json_body(request):
    try:
        data = json.loads(request.body or b"{}")
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _not_found(shipment_id):
    return JsonResponse({"shipment_id": shipment_id, "status": "not_found"}, status=404)


@method_decorator(csrf_exempt, name="dispatch")
class RouteCreateView(View):
    def post(self, request, *args, **kwargs):
        data = _json_body(request)
        if data is None:
            return JsonResponse({"error": "Invalid JSON"}, status=400)

        planned_arrival = None
        if data.get("planned_arrival"):
            planned_arrival = parse_datetime(str(data["planned_arrival"]))
            if planned_arrival is None:
                return JsonResponse({"error": "Invalid planned_arrival"}, status=400)

        waypoints = data.get("polyline") or data.get("waypoints") or []
        try:
            route = services.create_route(
                str(data.get("shipment_id") or ""), waypoints, planned_arrival=planned_arrival
            )
        except InvalidRoute as error:
            logger.info("Route rejected for shipment %s: %s", data.get("shipment_id"), error)
            return JsonResponse({"error": error.message, "reason": error.code}, status=400)
        return JsonResponse(route.to_dict(), status=201)


@method_decorator(csrf_exempt, name="dispatch")
class PositionIngestView(View):
    def post(self, request, *args, **kwargs):
        data = _json_body(request)
        if data is None:
            return JsonResponse({"error": "Invalid JSON"}, status=400)

        form = PositionReportForm(data)
        if not form.is_valid():
            return JsonResponse({"error": "Invalid report", "fields": form.errors.get_json_data()}, status=400)

        result = services.submit_position(PositionReport.from_dict(form.cleaned_data))
        if result.accepted:
            payload = result.to_dict()
            payload["state"] = result.state.to_dict()
            return JsonResponse(payload, status=202)
        return JsonResponse(result.to_dict(), status=REJECTION_STATUS.get(result.reason, 400))


class LiveStateView(View):
    def get(self, request, shipment_id, *args, **kwargs):
        state = services.get_live_state(shipment_id)
        if state is None:
            return _not_found(shipment_id)
        return JsonResponse(state.to_dict())


class ETAView(View):
    def get(self, request, shipment_id, *args, **kwargs):
        return JsonResponse(services.get_eta(shipment_id).to_dict())


class RouteMonitoringView(View):
    def get(self, request, shipment_id, *args, **kwargs):
        monitoring = services.get_route_monitoring(shipment_id)
        if monitoring is None:
            return _not_found(shipment_id)
        return JsonResponse(monitoring.to_dict())


@method_decorator(csrf_exempt, name="dispatch")
class TrackingEventListView(View):
    def get(self, request, shipment_id, *args, **kwargs):
        events = services.list_events(shipment_id)
        return JsonResponse(
            {
                "shipment_id": shipment_id,
                "events": [event.to_dict() for event in events],
            }
        )

    def post(self, request, shipment_id, *args, **kwargs):
        data = _json_body(request)
        if data is None:
            return JsonResponse({"error": "Invalid JSON"}, status=400)
        form = StatusEventForm(data)
        if not form.is_valid():
            return JsonResponse({"error": "Invalid event", "fields": form.errors.get_json_data()}, status=400)

        cleaned = form.cleaned_data
        try:
            event = services.record_status(
                shipment_id,
                cleaned["event_type"],
                note=cleaned["note"],
                timestamp=cleaned["timestamp"],
                latitude=cleaned["latitude"],
                longitude=cleaned["longitude"],
            )
        except UnknownShipment:
            return _not_found(shipment_id)
        except InvalidEvent as error:
            return JsonResponse({"error": error.message}, status=400)
        return JsonResponse(event.to_dict(), status=201)


@method_decorator(csrf_exempt, name="dispatch")
class StartTrackingView(View):
    def post(self, request, shipment_id, *args, **kwargs):
        try:
            state = services.start_tracking(shipment_id)
        except UnknownShipment:
            return _not_found(shipment_id)
        return JsonResponse(state.to_dict(), status=201)


@method_decorator(csrf_exempt, name="dispatch")
class StopTrackingView(View):
    def post(self, request, shipment_id, *args, **kwargs):
        state = services.stop_tracking(shipment_id)
        if state is None:
            return _not_found(shipment_id)
        return JsonResponse(state.to_dict())


@method_decorator(csrf_exempt, name="dispatch")
class ConfirmDeliveryView(View):
    def post(self, request, shipment_id, *args, **kwargs):
        data = _json_body(request) or {}
        try:
            state = services.confirm_delivery(shipment_id, note=str(data.get("note") or ""))
        except UnknownShipment:
            return _not_found(shipment_id)
        return JsonResponse(state.to_dict())


class TrackingSnapshotView(View):
    def get(self, request, *args, **kwargs):
        return JsonResponse(services.get_tracking_snapshot())
