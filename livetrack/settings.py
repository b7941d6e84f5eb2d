"""
Django settings for the livetrack project.
"""
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "livetrack-dev-only-secret")
DEBUG = os.environ.get("DJANGO_DEBUG", "1") == "1"
ALLOWED_HOSTS = os.environ.get("DJANGO_ALLOWED_HOSTS", "*").split(",")

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "shipment_tracking",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
]

ROOT_URLCONF = "livetrack.urls"
WSGI_APPLICATION = "livetrack.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("LIVETRACK_DB_PATH", str(BASE_DIR / "db.sqlite3")),
        # Concurrent writers queue on the write lock instead of failing fast.
        "OPTIONS": {
            "timeout": 20,
            "transaction_mode": "IMMEDIATE",
        },
        # Threaded tests need a file; in-memory test databases lock per table.
        "TEST": {
            "NAME": str(BASE_DIR / "test_livetrack.sqlite3"),
        },
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

TRACKING_CONFIG = {
    "history_size": 10,
    "max_speed_kmh": 200.0,
    "min_speed_kmh": 1.0,
    "deviation_distance_km": 2.0,
    "deviation_duration_minutes": 5.0,
    "max_accuracy_m": 500.0,
    "stale_after_seconds": 300,
    "notification": {
        "url": os.environ.get("TRACKING_NOTIFY_URL", ""),
        "timeout_seconds": 5,
        "max_attempts": 3,
        "asynchronous": True,
    },
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
        },
    },
    "loggers": {
        "shipment_tracking": {
            "handlers": ["console"],
            "level": os.environ.get("TRACKING_LOG_LEVEL", "INFO"),
        },
    },
}
