from django.core.management.base import BaseCommand
from django.db.models import Q

from apps.merchants.models import Merchant
from apps.merchants.services import MerchantLocationService


class Command(BaseCommand):
    help = "Converts stored GeoJSON zone documents into PostGIS geometry fields"

    def add_arguments(self, parser):
        parser.add_argument("--overwrite", action="store_true", help="Replace zones that already have geometry")
        parser.add_argument("--merchant", type=int, help="Only this merchant id")

    def handle(self, *args, **options):
        has_document = Q()
        for zone_field in Merchant.ZONE_FIELDS:
            has_document |= Q(**{f"{zone_field}_geojson__isnull": False})

        queryset = Merchant.objects.filter(has_document).order_by("id")
        if options["merchant"]:
            queryset = queryset.filter(id=options["merchant"])

        migrated = failed = 0
        for merchant_id in queryset.values_list("id", flat=True).iterator():
            done, bad = MerchantLocationService.migrate_legacy_zones(merchant_id, overwrite=options["overwrite"])
            migrated += len(done)
            failed += len(bad)
            if bad:
                self.stdout.write(self.style.WARNING(f"Merchant {merchant_id}: could not migrate {', '.join(bad)}"))

        self.stdout.write(self.style.SUCCESS(f"Migrated {migrated} zones ({failed} failed)"))
