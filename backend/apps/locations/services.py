# apps/locations/services.py
import logging

from django.apps import apps
from django.conf import settings
from django.db import transaction
from django.db.models import Q

from apps.utils.exceptions import GeometryError, IndexInconsistency

from .codec import GeometryCodec
from .guard import ConsistencyGuard
from .models import LocationRecord

logger = logging.getLogger(__name__)


class LocationMaintenanceService:
    """
    Batch jobs over every concrete LocationRecord model:
    re-deriving (backfill) and drift auditing.
    """

    @staticmethod
    def location_models():
        return [
            model for model in apps.get_models()
            if issubclass(model, LocationRecord) and not model._meta.abstract
        ]

    @staticmethod
    def get_model(label):
        model = apps.get_model(label)
        if not issubclass(model, LocationRecord):
            raise LookupError(f"{label} is not a location record model")
        return model

    @staticmethod
    def _recover_scalars(record) -> bool:
        """
        Rows written before the scalar pair existed only carry a legacy
        `coordinates` value. Lifts it back into latitude/longitude.
        """
        if record.latitude is not None and record.longitude is not None:
            return False
        if record.coordinates is None:
            return False

        document = GeometryCodec.normalize_legacy_input(record.coordinates)
        if document is None:
            return False

        record.latitude, record.longitude = GeometryCodec.structured_to_scalar(document)
        return True

    @staticmethod
    def backfill(model, batch_size=None, start_after=0, recover_legacy=True):
        """
        Re-runs the guard over every row, one transaction per batch.
        Rows whose legacy data cannot be decoded are skipped and counted.
        """
        batch_size = batch_size or settings.LOCATION_BACKFILL_BATCH_SIZE
        stats = {"scanned": 0, "changed": 0, "failed": 0, "last_id": start_after}
        last_id = start_after

        while True:
            with transaction.atomic():
                batch = list(
                    model._base_manager.select_for_update()
                    .filter(pk__gt=last_id)
                    .order_by("pk")[:batch_size]
                )
                if not batch:
                    break

                for record in batch:
                    stats["scanned"] += 1
                    try:
                        with transaction.atomic():
                            if recover_legacy:
                                LocationMaintenanceService._recover_scalars(record)
                            if ConsistencyGuard.apply(record, force=True):
                                record.save(update_fields=model.guarded_update_fields())
                                stats["changed"] += 1
                    except GeometryError as e:
                        stats["failed"] += 1
                        logger.warning(f"Backfill skipped {model._meta.label} {record.pk}: {e}")

                last_id = batch[-1].pk

            stats["last_id"] = last_id
            logger.info(
                f"Backfill {model._meta.label}: scanned={stats['scanned']} "
                f"changed={stats['changed']} failed={stats['failed']} last_id={last_id}"
            )

        return stats

    @staticmethod
    def audit(model, include_ids=False, chunk_size=2000):
        """
        Counts rows with a usable scalar pair and rows whose derived
        fields drifted from it.
        """
        queryset = model._base_manager.order_by("pk")
        with_coordinates = queryset.filter(
            latitude__isnull=False, longitude__isnull=False
        ).exclude(Q(latitude=0) | Q(longitude=0)).count()

        drifted_ids = []
        total = 0
        for record in queryset.iterator(chunk_size=chunk_size):
            total += 1
            try:
                GeometryCodec.assert_consistent(record)
            except IndexInconsistency as e:
                drifted_ids.append(e.record_id)
                logger.warning(str(e))
            except GeometryError as e:
                # Scalars that no longer pass validation are drift as well
                drifted_ids.append(record.pk)
                logger.warning(f"{model._meta.label} {record.pk}: {e}")

        report = {
            "model": model._meta.label,
            "total": total,
            "with_coordinates": with_coordinates,
            "without_coordinates": total - with_coordinates,
            "drifted": len(drifted_ids),
        }
        if include_ids:
            report["drifted_ids"] = drifted_ids
        return report
