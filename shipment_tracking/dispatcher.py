"""
Tracking event log and notification dispatch.

``emit`` appends to the event log inside the caller's transaction. The
notification is handed to the dispatcher only once that transaction commits,
and the dispatcher delivers it from a worker thread so a slow notification
service never holds up position ingest.
"""
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from django.db import transaction
from django.utils import timezone
from django.utils.module_loading import import_string
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .conf import notification_settings
from .exceptions import DispatchFailure, TransientDispatchError
from .models import LiveTrackingState, TrackingEvent
from .notifications import LoggingNotificationChannel, WebhookNotificationChannel, build_message

logger = logging.getLogger(__name__)

_STOP = object()


@dataclass(frozen=True)
class Ack:
    event: TrackingEvent
    queued: bool = True

    @property
    def event_id(self) -> int:
        return self.event.pk


class NotificationDispatcher:
    """
    Best-effort notification delivery with bounded retries.

    Each attempt is given ``timeout_seconds``; transient failures are retried
    with exponential backoff up to ``max_attempts``. A delivery that still
    fails is logged and counted, never raised.
    """

    def __init__(
        self,
        channel,
        timeout_seconds: float = 5.0,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        backoff_max_seconds: float = 10.0,
        asynchronous: bool = True,
    ):
        self.channel = channel
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(int(max_attempts), 1)
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.asynchronous = asynchronous

        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._worker_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self.delivered = 0
        self.failed = 0

    def submit(self, payload: Dict[str, Any]) -> None:
        if not self.asynchronous:
            self.deliver(payload)
            return
        self._ensure_worker()
        self._queue.put(payload)

    def deliver(self, payload: Dict[str, Any]) -> bool:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=self.backoff_max_seconds),
            retry=retry_if_exception_type(TransientDispatchError),
            reraise=True,
        )
        event = payload["event"]
        try:
            retrying(self._send, payload)
        except DispatchFailure as error:
            logger.error(
                "Dispatch failure for event %s (%s) of shipment %s: %s",
                event.get("id"),
                event.get("event_type"),
                event.get("shipment_id"),
                error,
            )
            self._count(failed=True)
            return False
        except Exception:
            logger.exception(
                "Notification channel crashed on event %s (%s) of shipment %s",
                event.get("id"),
                event.get("event_type"),
                event.get("shipment_id"),
            )
            self._count(failed=True)
            return False
        self._count(failed=False)
        return True

    def _send(self, payload: Dict[str, Any]) -> None:
        """
        One attempt, bounded by ``timeout_seconds`` even when the channel
        ignores its ``timeout`` argument. An overrun attempt is abandoned on a
        daemon thread and counts as a transient failure.
        """
        if not self.timeout_seconds:
            self.channel.send(payload, timeout=self.timeout_seconds)
            return

        outcome: Dict[str, BaseException] = {}

        def attempt():
            try:
                self.channel.send(payload, timeout=self.timeout_seconds)
            except Exception as error:
                outcome["error"] = error

        runner = threading.Thread(target=attempt, name="tracking-notification-attempt", daemon=True)
        runner.start()
        runner.join(self.timeout_seconds)
        if runner.is_alive():
            raise TransientDispatchError(
                f"Notification channel did not answer within {self.timeout_seconds}s"
            )
        if "error" in outcome:
            raise outcome["error"]

    def flush(self) -> None:
        """Block until every queued notification has been attempted."""
        self._queue.join()

    def close(self) -> None:
        with self._worker_lock:
            worker = self._worker
            self._worker = None
        if worker is not None:
            self._queue.put(_STOP)
            worker.join()

    def _count(self, failed: bool) -> None:
        with self._stats_lock:
            if failed:
                self.failed += 1
            else:
                self.delivered += 1

    def _ensure_worker(self) -> None:
        with self._worker_lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(
                    target=self._run, name="tracking-notifications", daemon=True
                )
                self._worker.start()

    def _run(self) -> None:
        while True:
            payload = self._queue.get()
            try:
                if payload is _STOP:
                    return
                self.deliver(payload)
            except Exception:
                logger.exception("Unexpected error while dispatching a tracking notification")
                self._count(failed=True)
            finally:
                self._queue.task_done()


def build_channel(config: Dict[str, Any]):
    if config.get("channel"):
        return import_string(config["channel"])()
    if config.get("url"):
        return WebhookNotificationChannel(config["url"])
    return LoggingNotificationChannel()


def build_dispatcher() -> NotificationDispatcher:
    config = notification_settings()
    return NotificationDispatcher(
        build_channel(config),
        timeout_seconds=config["timeout_seconds"],
        max_attempts=config["max_attempts"],
        backoff_seconds=config["backoff_seconds"],
        backoff_max_seconds=config["backoff_max_seconds"],
        asynchronous=config["asynchronous"],
    )


_DISPATCHER: Optional[NotificationDispatcher] = None
_DISPATCHER_LOCK = threading.Lock()


def get_dispatcher() -> NotificationDispatcher:
    global _DISPATCHER
    with _DISPATCHER_LOCK:
        if _DISPATCHER is None:
            _DISPATCHER = build_dispatcher()
        return _DISPATCHER


def set_dispatcher(dispatcher: Optional[NotificationDispatcher]) -> None:
    """Install ``dispatcher``; ``None`` rebuilds from settings on next use."""
    global _DISPATCHER
    with _DISPATCHER_LOCK:
        previous, _DISPATCHER = _DISPATCHER, dispatcher
    if previous is not None and previous is not dispatcher:
        previous.close()


def latest_event_time(shipment_id: str) -> Optional[datetime]:
    return (
        TrackingEvent.objects.filter(shipment_id=shipment_id)
        .order_by("-timestamp", "-id")
        .values_list("timestamp", flat=True)
        .first()
    )


def emit(
    shipment_id: str,
    event_type: str,
    note: str = "",
    timestamp: Optional[datetime] = None,
    emitted_by: str = TrackingEvent.SYSTEM,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    state: Optional[LiveTrackingState] = None,
    route_deviation: bool = False,
) -> Ack:
    """
    Append a tracking event and queue its notification.

    Position and telemetry default to the live state's snapshot when one is
    given.
    """
    if state is not None and state.has_position and latitude is None:
        latitude, longitude = state.latitude, state.longitude

    event = TrackingEvent(
        shipment_id=shipment_id,
        event_type=event_type,
        note=note,
        latitude=latitude,
        longitude=longitude,
        location_label=(
            f"Location at {latitude:.4f}, {longitude:.4f}"
            if latitude is not None and longitude is not None
            else ""
        ),
        timestamp=timestamp or timezone.now(),
        emitted_by=emitted_by,
        route_deviation=route_deviation,
    )
    if state is not None:
        event.estimated_arrival = state.estimated_arrival
        event.actual_speed = state.speed_kmh if state.has_position else None
        event.distance_remaining_km = state.distance_remaining_km
        event.battery_level = state.battery_level
        event.signal_strength = state.signal_strength
    event.save()

    logger.info("Tracking event %s recorded for shipment %s", event_type, shipment_id)
    payload = build_message(event.to_dict())
    transaction.on_commit(lambda: get_dispatcher().submit(payload))
    return Ack(event=event)
