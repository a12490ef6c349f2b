from django.core.management.base import BaseCommand, CommandError
from django.db import DatabaseError

from apps.locations.indexes import SpatialIndexService
from apps.locations.services import LocationMaintenanceService


class Command(BaseCommand):
    help = "Checks PostGIS, SRID 4326 and the GiST indexes of every location record model"

    def handle(self, *args, **options):
        try:
            version = SpatialIndexService.postgis_version()
        except DatabaseError as e:
            raise CommandError(f"PostGIS is not available: {e}")
        self.stdout.write(f"PostGIS {version}")

        if not SpatialIndexService.srid_available(4326):
            raise CommandError("SRID 4326 is missing from spatial_ref_sys")
        self.stdout.write(self.style.SUCCESS("SRID 4326 available"))

        problems = 0
        for model in LocationMaintenanceService.location_models():
            missing = SpatialIndexService.missing_indexes(model)
            if missing:
                problems += len(missing)
                self.stdout.write(self.style.ERROR(
                    f"{model._meta.label}: missing {', '.join(sorted(missing))}"
                ))
            else:
                expected = SpatialIndexService.expected_indexes(model)
                self.stdout.write(self.style.SUCCESS(
                    f"{model._meta.label}: {len(expected)} spatial indexes present"
                ))

        if problems:
            raise CommandError(f"{problems} spatial indexes missing. Run migrate.")
