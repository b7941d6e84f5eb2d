"""
Delivery channels for tracking notifications.

A channel exposes ``send(payload, timeout)``. It raises
``TransientDispatchError`` for failures worth retrying and
``DispatchFailure`` for failures that are not. The dispatcher abandons an
attempt that outlives ``timeout`` whether or not the channel honours it.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from .exceptions import DispatchFailure, TransientDispatchError

LOGGER = logging.getLogger(__name__)

TITLES = {
    "pickup_scheduled": "Pickup scheduled",
    "picked_up": "Shipment picked up",
    "in_transit": "Shipment in transit",
    "out_for_delivery": "Out for delivery",
    "delayed": "Shipment delayed",
    "exception": "Shipment exception",
    "delivered": "Shipment delivered",
}


def build_message(event: Dict[str, Any]) -> Dict[str, Any]:
    """Wrap an event dict with the title/message pair subscribers display."""
    event_type = event["event_type"]
    title = TITLES.get(event_type, event_type.replace("_", " ").capitalize())
    message = event.get("note") or f"{title} for shipment {event['shipment_id']}"
    return {
        "notification_type": "route_deviation" if event.get("route_deviation") else event_type,
        "title": title,
        "message": message,
        "event": event,
    }


class LoggingNotificationChannel:
    """Fallback used when no notification endpoint is configured."""

    def send(self, payload: Dict[str, Any], timeout: Optional[float] = None) -> None:
        LOGGER.info(
            "Notification for shipment %s: %s",
            payload["event"]["shipment_id"],
            payload["title"],
        )


class WebhookNotificationChannel:
    """POSTs the notification JSON to the notification service."""

    def __init__(self, url: str, session: Optional[requests.Session] = None):
        self.url = url
        self.session = session or requests.Session()

    def send(self, payload: Dict[str, Any], timeout: Optional[float] = None) -> None:
        try:
            response = self.session.post(self.url, json=payload, timeout=timeout)
        except requests.exceptions.RequestException as error:
            raise TransientDispatchError(f"Notification request failed: {error}")

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientDispatchError(
                f"Notification service answered {response.status_code}"
            )
        if response.status_code >= 400:
            raise DispatchFailure(
                f"Notification service rejected event: {response.status_code}"
            )
