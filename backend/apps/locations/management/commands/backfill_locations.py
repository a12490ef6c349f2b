from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from apps.locations.services import LocationMaintenanceService


class Command(BaseCommand):
    help = "Re-derives coordinates/location from latitude/longitude for every location record"

    def add_arguments(self, parser):
        parser.add_argument("--model", help="app_label.ModelName, defaults to all location models")
        parser.add_argument("--batch-size", type=int, default=settings.LOCATION_BACKFILL_BATCH_SIZE)
        parser.add_argument("--start-after", type=int, default=0, help="Resume after this primary key")
        parser.add_argument(
            "--no-legacy",
            action="store_true",
            help="Do not recover missing scalars from legacy coordinates documents",
        )

    def handle(self, *args, **options):
        try:
            if options["model"]:
                models = [LocationMaintenanceService.get_model(options["model"])]
            else:
                models = LocationMaintenanceService.location_models()
        except (LookupError, ValueError) as e:
            raise CommandError(str(e))

        for model in models:
            self.stdout.write(f"Backfilling {model._meta.label}...")
            stats = LocationMaintenanceService.backfill(
                model,
                batch_size=options["batch_size"],
                start_after=options["start_after"],
                recover_legacy=not options["no_legacy"],
            )
            style = self.style.WARNING if stats["failed"] else self.style.SUCCESS
            self.stdout.write(style(
                f"{model._meta.label}: scanned {stats['scanned']}, changed {stats['changed']}, "
                f"failed {stats['failed']} (last id {stats['last_id']})"
            ))
