from django.urls import path
from .views import (
    ConfirmDeliveryView, ETAView, LiveStateView, PositionIngestView, RouteCreateView,
    RouteMonitoringView, StartTrackingView, StopTrackingView, TrackingEventListView,
    TrackingSnapshotView,
)

app_name = "shipment_tracking"

urlpatterns = [
    path("routes/", RouteCreateView.as_view(), name="create-route"),
    path("positions/", PositionIngestView.as_view(), name="submit-position"),
    path("shipments/<str:shipment_id>/state/", LiveStateView.as_view(), name="live-state"),
    path("shipments/<str:shipment_id>/eta/", ETAView.as_view(), name="eta"),
    path("shipments/<str:shipment_id>/monitoring/", RouteMonitoringView.as_view(), name="route-monitoring"),
    path("shipments/<str:shipment_id>/events/", TrackingEventListView.as_view(), name="events"),
    path("shipments/<str:shipment_id>/start/", StartTrackingView.as_view(), name="start-tracking"),
    path("shipments/<str:shipment_id>/stop/", StopTrackingView.as_view(), name="stop-tracking"),
    path("shipments/<str:shipment_id>/deliver/", ConfirmDeliveryView.as_view(), name="confirm-delivery"),
    path("api/snapshot/", TrackingSnapshotView.as_view(), name="snapshot"),
]
