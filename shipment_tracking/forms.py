from django import forms

from .models import TrackingEvent


class PositionReportForm(forms.Form):
    # Ranges are checked by ingest so the caller gets the ingest reason codes.
    shipment_id = forms.CharField(max_length=64)
    latitude = forms.FloatField()
    longitude = forms.FloatField()
    timestamp = forms.DateTimeField()
    speed_kmh = forms.FloatField(required=False)
    heading = forms.FloatField(required=False)
    altitude = forms.FloatField(required=False)
    accuracy = forms.FloatField(required=False)
    battery_level = forms.FloatField(required=False)
    signal_strength = forms.FloatField(required=False)
    device_id = forms.CharField(max_length=64, required=False)


class StatusEventForm(forms.Form):
    event_type = forms.ChoiceField(choices=TrackingEvent.EVENT_TYPE_CHOICES)
    note = forms.CharField(required=False)
    timestamp = forms.DateTimeField(required=False)
    latitude = forms.FloatField(required=False, min_value=-90, max_value=90)
    longitude = forms.FloatField(required=False, min_value=-180, max_value=180)
