from django.db import models

from .exceptions import ImmutableEventError


class ShipmentRoute(models.Model):
    shipment_id = models.CharField(max_length=64, db_index=True)
    waypoints = models.JSONField()  # [{"lat": .., "lng": .., "name": ..}, ...]
    cumulative_km = models.JSONField()
    total_distance_km = models.FloatField()
    planned_arrival = models.DateTimeField(null=True, blank=True)
    is_current = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["shipment_id", "-created_at"]

    def __str__(self):
        return f"{self.shipment_id} ({self.total_distance_km:.2f} km)"

    @property
    def points(self):
        return [(point["lat"], point["lng"]) for point in self.waypoints]

    def waypoint_name(self, index):
        if 0 <= index < len(self.waypoints):
            return self.waypoints[index].get("name") or ""
        return ""

    def to_dict(self):
        return {
            "route_id": self.pk,
            "shipment_id": self.shipment_id,
            "waypoints": self.waypoints,
            "total_distance_km": round(self.total_distance_km, 3),
            "planned_arrival": self.planned_arrival.isoformat() if self.planned_arrival else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class TrackingEventQuerySet(models.QuerySet):
    def update(self, **kwargs):
        raise ImmutableEventError("Tracking events are append-only.")

    def delete(self):
        raise ImmutableEventError("Tracking events are append-only.")


class TrackingEvent(models.Model):
    PICKUP_SCHEDULED = "pickup_scheduled"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELAYED = "delayed"
    EXCEPTION = "exception"
    DELIVERED = "delivered"
    EVENT_TYPE_CHOICES = [
        (PICKUP_SCHEDULED, "Pickup scheduled"),
        (PICKED_UP, "Picked up"),
        (IN_TRANSIT, "In transit"),
        (OUT_FOR_DELIVERY, "Out for delivery"),
        (DELAYED, "Delayed"),
        (EXCEPTION, "Exception"),
        (DELIVERED, "Delivered"),
    ]

    SYSTEM = "system"
    USER = "user"
    EMITTED_BY_CHOICES = [
        (SYSTEM, "System"),
        (USER, "User"),
    ]

    shipment_id = models.CharField(max_length=64, db_index=True)
    event_type = models.CharField(max_length=32, choices=EVENT_TYPE_CHOICES)
    note = models.TextField(blank=True, default="")
    latitude = models.FloatField(null=True, blank=True)
    longitude = models.FloatField(null=True, blank=True)
    location_label = models.CharField(max_length=120, blank=True, default="")
    timestamp = models.DateTimeField()
    emitted_by = models.CharField(max_length=10, choices=EMITTED_BY_CHOICES, default=SYSTEM)
    estimated_arrival = models.DateTimeField(null=True, blank=True)
    actual_speed = models.FloatField(null=True, blank=True)
    distance_remaining_km = models.FloatField(null=True, blank=True)
    route_deviation = models.BooleanField(default=False)
    battery_level = models.IntegerField(null=True, blank=True)
    signal_strength = models.IntegerField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    objects = TrackingEventQuerySet.as_manager()

    class Meta:
        ordering = ["timestamp", "id"]

    def __str__(self):
        return f"{self.shipment_id} {self.event_type} @ {self.timestamp.isoformat()}"

    def save(self, *args, **kwargs):
        if self.pk is not None:
            raise ImmutableEventError("Tracking events are append-only.", self.shipment_id)
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableEventError("Tracking events are append-only.", self.shipment_id)

    def to_dict(self):
        position = None
        if self.latitude is not None and self.longitude is not None:
            position = {"lat": self.latitude, "lng": self.longitude}
        return {
            "id": self.pk,
            "shipment_id": self.shipment_id,
            "event_type": self.event_type,
            "note": self.note,
            "position": position,
            "location": self.location_label,
            "timestamp": self.timestamp.isoformat(),
            "emitted_by": self.emitted_by,
            "estimated_arrival": (
                self.estimated_arrival.isoformat() if self.estimated_arrival else None
            ),
            "actual_speed": self.actual_speed,
            "distance_remaining_km": self.distance_remaining_km,
            "route_deviation": self.route_deviation,
            "battery_level": self.battery_level,
            "signal_strength": self.signal_strength,
        }


class LiveTrackingState(models.Model):
    shipment_id = models.CharField(max_length=64, unique=True)
    route = models.ForeignKey(ShipmentRoute, on_delete=models.PROTECT, related_name="live_states")
    device_id = models.CharField(max_length=64, blank=True, default="")

    latitude = models.FloatField(null=True, blank=True)
    longitude = models.FloatField(null=True, blank=True)
    smoothed_latitude = models.FloatField(null=True, blank=True)
    smoothed_longitude = models.FloatField(null=True, blank=True)
    speed_kmh = models.FloatField(default=0.0)
    heading = models.FloatField(default=0.0)
    altitude = models.FloatField(default=0.0)
    accuracy = models.FloatField(default=0.0)
    battery_level = models.IntegerField(null=True, blank=True)
    signal_strength = models.IntegerField(null=True, blank=True)
    is_suspect = models.BooleanField(default=False)

    progress_percent = models.FloatField(default=0.0)
    traveled_km = models.FloatField(default=0.0)
    distance_remaining_km = models.FloatField(default=0.0)
    next_checkpoint = models.CharField(max_length=120, blank=True, default="")
    estimated_arrival = models.DateTimeField(null=True, blank=True)
    eta_confidence = models.FloatField(default=0.0)

    status = models.CharField(
        max_length=32,
        choices=TrackingEvent.EVENT_TYPE_CHOICES,
        default=TrackingEvent.PICKUP_SCHEDULED,
    )
    is_active = models.BooleanField(default=True)
    is_stale = models.BooleanField(default=False)
    last_update = models.DateTimeField(null=True, blank=True)
    received_at = models.DateTimeField(null=True, blank=True)

    speed_history = models.JSONField(default=list)
    filter_state = models.JSONField(default=dict)
    off_route_since = models.DateTimeField(null=True, blank=True)
    samples_total = models.PositiveIntegerField(default=0)
    samples_off_route = models.PositiveIntegerField(default=0)
    out_for_delivery_sent = models.BooleanField(default=False)
    delay_alert_sent = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.shipment_id} {self.progress_percent:.1f}%"

    @property
    def has_position(self):
        return self.latitude is not None and self.longitude is not None

    def to_dict(self):
        def _point(lat, lng):
            if lat is None or lng is None:
                return None
            return {"lat": round(lat, 6), "lng": round(lng, 6)}

        return {
            "shipment_id": self.shipment_id,
            "route_id": self.route_id,
            "device_id": self.device_id,
            "status": self.status,
            "is_active": self.is_active,
            "is_stale": self.is_stale,
            "location": _point(self.smoothed_latitude, self.smoothed_longitude),
            "raw_location": _point(self.latitude, self.longitude),
            "speed_kmh": round(self.speed_kmh, 1),
            "heading": round(self.heading, 1),
            "altitude": self.altitude,
            "accuracy": self.accuracy,
            "battery_level": self.battery_level,
            "signal_strength": self.signal_strength,
            "is_suspect": self.is_suspect,
            "progress_percent": round(self.progress_percent, 2),
            "distance_remaining_km": round(self.distance_remaining_km, 3),
            "next_checkpoint": self.next_checkpoint,
            "estimated_arrival": (
                self.estimated_arrival.isoformat() if self.estimated_arrival else None
            ),
            "eta_confidence": round(self.eta_confidence, 3),
            "last_update": self.last_update.isoformat() if self.last_update else None,
        }


class RouteDeviation(models.Model):
    shipment_id = models.CharField(max_length=64, db_index=True)
    route = models.ForeignKey(ShipmentRoute, on_delete=models.PROTECT, related_name="deviations")
    deviation_distance_km = models.FloatField(default=0.0)
    last_distance_km = models.FloatField(default=0.0)
    deviation_minutes = models.FloatField(default=0.0)
    started_at = models.DateTimeField()
    detected_at = models.DateTimeField()
    updated_at = models.DateTimeField()
    resolved_at = models.DateTimeField(null=True, blank=True)
    is_open = models.BooleanField(default=True)
    alert_emitted = models.BooleanField(default=False)

    class Meta:
        ordering = ["detected_at", "id"]
        constraints = [
            models.UniqueConstraint(
                fields=["shipment_id"],
                condition=models.Q(is_open=True),
                name="one_open_deviation_per_shipment",
            ),
        ]

    def __str__(self):
        state = "open" if self.is_open else "resolved"
        return f"{self.shipment_id} {self.deviation_distance_km:.2f} km ({state})"

    def to_dict(self):
        return {
            "shipment_id": self.shipment_id,
            "deviation_distance_km": round(self.deviation_distance_km, 3),
            "deviation_minutes": round(self.deviation_minutes, 2),
            "detected_at": self.detected_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "is_open": self.is_open,
        }
