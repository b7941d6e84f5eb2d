from django.urls import include, path

urlpatterns = [
    path("tracking/", include("shipment_tracking.urls")),
]
