"""
Access to the ``TRACKING_CONFIG`` settings dict with engine defaults applied.
"""
from __future__ import annotations

from typing import Any, Dict

from django.conf import settings

DEFAULTS: Dict[str, Any] = {
    "history_size": 10,
    "max_speed_kmh": 200.0,
    "min_speed_kmh": 1.0,
    "deviation_distance_km": 2.0,
    "deviation_duration_minutes": 5.0,
    "max_accuracy_m": 500.0,
    "stale_after_seconds": 300,
    "projection_tolerance_km": 0.05,
    "out_for_delivery_km": 5.0,
    "delay_grace_minutes": 15.0,
    # Confidence decay scales.
    "accuracy_scale_m": 50.0,
    "staleness_scale_seconds": 600.0,
}

NOTIFICATION_DEFAULTS: Dict[str, Any] = {
    "url": "",
    "channel": "",
    "timeout_seconds": 5.0,
    "max_attempts": 3,
    "backoff_seconds": 1.0,
    "backoff_max_seconds": 10.0,
    "asynchronous": True,
}


def tracking_setting(name: str) -> Any:
    config = getattr(settings, "TRACKING_CONFIG", {}) or {}
    if name in config:
        return config[name]
    return DEFAULTS[name]


def notification_settings() -> Dict[str, Any]:
    config = getattr(settings, "TRACKING_CONFIG", {}) or {}
    merged = dict(NOTIFICATION_DEFAULTS)
    merged.update(config.get("notification", {}) or {})
    return merged
