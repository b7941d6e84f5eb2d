import json

from django.test import TestCase
from django.urls import reverse

from shipment_tracking import services
from shipment_tracking.models import TrackingEvent
from shipment_tracking.routing import create_route

from .support import EQUATOR_ROUTE, T0, minutes, report


class TrackingApiTests(TestCase):
    def post_json(self, url, payload):
        return self.client.post(url, data=json.dumps(payload), content_type="application/json")

    def position(self, **overrides):
        payload = {
            "shipment_id": "SHP-1",
            "latitude": 0.0,
            "longitude": 0.5,
            "timestamp": T0.isoformat(),
            "speed_kmh": 60,
            "accuracy": 8,
        }
        payload.update(overrides)
        return payload

    def test_create_route(self):
        response = self.post_json(
            reverse("shipment_tracking:create-route"),
            {
                "shipment_id": "SHP-1",
                "waypoints": EQUATOR_ROUTE,
                "planned_arrival": minutes(120).isoformat(),
            },
        )
        self.assertEqual(response.status_code, 201)
        data = response.json()
        self.assertEqual(data["shipment_id"], "SHP-1")
        self.assertAlmostEqual(data["total_distance_km"], 111.195, places=2)
        self.assertIsNotNone(services.get_route("SHP-1").planned_arrival)

    def test_create_route_rejects_bad_input(self):
        url = reverse("shipment_tracking:create-route")
        response = self.post_json(url, {"shipment_id": "SHP-1", "waypoints": [[0, 0]]})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["reason"], "invalid_route")

        response = self.client.post(url, data="{not json", content_type="application/json")
        self.assertEqual(response.status_code, 400)

    def test_submit_position(self):
        create_route("SHP-1", EQUATOR_ROUTE)
        response = self.post_json(reverse("shipment_tracking:submit-position"), self.position())

        self.assertEqual(response.status_code, 202)
        data = response.json()
        self.assertEqual(data["status"], "accepted")
        self.assertEqual(data["state"]["progress_percent"], 50.0)
        self.assertEqual(data["state"]["status"], TrackingEvent.IN_TRANSIT)

    def test_submit_position_rejections(self):
        create_route("SHP-1", EQUATOR_ROUTE)
        url = reverse("shipment_tracking:submit-position")

        response = self.post_json(url, self.position(shipment_id="nope"))
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["reason"], "unknown_shipment")

        response = self.post_json(url, self.position(latitude=91))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["reason"], "invalid_coordinates")

        self.post_json(url, self.position(timestamp=minutes(5).isoformat()))
        response = self.post_json(url, self.position(timestamp=minutes(1).isoformat()))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "rejected")
        self.assertEqual(response.json()["reason"], "stale_report")

    def test_submit_position_form_errors(self):
        response = self.post_json(
            reverse("shipment_tracking:submit-position"),
            {"shipment_id": "SHP-1", "latitude": "north"},
        )
        self.assertEqual(response.status_code, 400)
        fields = response.json()["fields"]
        self.assertIn("latitude", fields)
        self.assertIn("timestamp", fields)

    def test_suspect_report_carries_warning(self):
        create_route("SHP-1", EQUATOR_ROUTE)
        response = self.post_json(
            reverse("shipment_tracking:submit-position"), self.position(speed_kmh=999)
        )
        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.json()["warnings"], ["implausible_reading"])
        self.assertTrue(response.json()["state"]["is_suspect"])

    def test_queries(self):
        create_route("SHP-1", EQUATOR_ROUTE)
        services.submit_position(report(at=T0))

        state = self.client.get(reverse("shipment_tracking:live-state", args=["SHP-1"]))
        self.assertEqual(state.status_code, 200)
        self.assertEqual(state.json()["raw_location"], {"lat": 0.0, "lng": 0.5})

        eta = self.client.get(reverse("shipment_tracking:eta", args=["SHP-1"])).json()
        self.assertEqual(eta["status"], "estimated")
        self.assertIsNotNone(eta["estimated_arrival"])

        monitoring = self.client.get(
            reverse("shipment_tracking:route-monitoring", args=["SHP-1"])
        ).json()
        self.assertEqual(monitoring["route_score"], 1.0)
        self.assertFalse(monitoring["active_deviation"])

    def test_queries_for_unknown_shipment(self):
        for name in ("live-state", "route-monitoring"):
            response = self.client.get(reverse(f"shipment_tracking:{name}", args=["missing"]))
            self.assertEqual(response.status_code, 404)
            self.assertEqual(response.json()["status"], "not_found")

        eta = self.client.get(reverse("shipment_tracking:eta", args=["missing"]))
        self.assertEqual(eta.status_code, 200)
        self.assertEqual(eta.json()["status"], "unknown")
        self.assertEqual(eta.json()["confidence"], 0.0)

    def test_events_list_and_record(self):
        create_route("SHP-1", EQUATOR_ROUTE)
        url = reverse("shipment_tracking:events", args=["SHP-1"])

        response = self.post_json(
            url,
            {"event_type": "picked_up", "note": "At dock", "timestamp": T0.isoformat()},
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["emitted_by"], TrackingEvent.USER)

        response = self.post_json(url, {"event_type": "teleported"})
        self.assertEqual(response.status_code, 400)

        response = self.post_json(
            reverse("shipment_tracking:events", args=["missing"]), {"event_type": "picked_up"}
        )
        self.assertEqual(response.status_code, 404)

        events = self.client.get(url).json()["events"]
        self.assertEqual([event["event_type"] for event in events], ["picked_up"])
        self.assertEqual(events[0]["note"], "At dock")

    def test_lifecycle_endpoints(self):
        create_route("SHP-1", EQUATOR_ROUTE)

        response = self.client.post(reverse("shipment_tracking:start-tracking", args=["SHP-1"]))
        self.assertEqual(response.status_code, 201)
        self.assertTrue(response.json()["is_active"])

        response = self.client.post(reverse("shipment_tracking:stop-tracking", args=["SHP-1"]))
        self.assertFalse(response.json()["is_active"])

        response = self.post_json(
            reverse("shipment_tracking:confirm-delivery", args=["SHP-1"]), {"note": "Signed"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], TrackingEvent.DELIVERED)

        for name in ("start-tracking", "stop-tracking", "confirm-delivery"):
            response = self.client.post(reverse(f"shipment_tracking:{name}", args=["missing"]))
            self.assertEqual(response.status_code, 404)

    def test_snapshot(self):
        create_route("SHP-1", EQUATOR_ROUTE)
        services.submit_position(report(at=T0))

        data = self.client.get(reverse("shipment_tracking:snapshot")).json()
        self.assertEqual(len(data["shipments"]), 1)
        self.assertEqual(data["shipments"][0]["shipment_id"], "SHP-1")
