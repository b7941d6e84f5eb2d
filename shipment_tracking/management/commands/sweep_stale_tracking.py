from django.core.management.base import BaseCommand

from shipment_tracking.services import sweep_stale_tracking


class Command(BaseCommand):
    help = "Flag active shipments that have not reported a position recently."

    def add_arguments(self, parser):
        parser.add_argument(
            "--stale-after",
            type=float,
            default=None,
            help="Seconds without a report before a shipment is stale "
            "(defaults to TRACKING_CONFIG['stale_after_seconds']).",
        )

    def handle(self, *args, **options):
        marked = sweep_stale_tracking(stale_after_seconds=options["stale_after"])
        self.stdout.write(self.style.SUCCESS(f"Marked {marked} shipment(s) stale."))
