from django.core.management.base import BaseCommand, CommandError

from apps.locations.services import LocationMaintenanceService


class Command(BaseCommand):
    help = "Reports location records whose derived point fields drifted from latitude/longitude"

    def add_arguments(self, parser):
        parser.add_argument("--model", help="app_label.ModelName, defaults to all location models")
        parser.add_argument("--show-ids", action="store_true", help="List the ids of drifted rows")
        parser.add_argument(
            "--fail-on-drift",
            action="store_true",
            help="Exit with an error when any drift is found (for CI / cron)",
        )

    def handle(self, *args, **options):
        try:
            if options["model"]:
                models = [LocationMaintenanceService.get_model(options["model"])]
            else:
                models = LocationMaintenanceService.location_models()
        except (LookupError, ValueError) as e:
            raise CommandError(str(e))

        drifted = 0
        for model in models:
            report = LocationMaintenanceService.audit(model, include_ids=options["show_ids"])
            drifted += report["drifted"]

            self.stdout.write(
                f"{report['model']}: {report['total']} rows, "
                f"{report['with_coordinates']} with coordinates, "
                f"{report['without_coordinates']} without"
            )
            if report["drifted"]:
                self.stdout.write(self.style.ERROR(f"  {report['drifted']} drifted rows"))
                if options["show_ids"]:
                    self.stdout.write(f"  ids: {', '.join(str(i) for i in report['drifted_ids'])}")
            else:
                self.stdout.write(self.style.SUCCESS("  consistent"))

        if drifted and options["fail_on_drift"]:
            raise CommandError(f"{drifted} drifted location rows. Run backfill_locations.")
