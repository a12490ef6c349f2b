# apps/locations/tasks.py
import logging

from celery import shared_task

from .services import LocationMaintenanceService

logger = logging.getLogger(__name__)


@shared_task(bind=True, max_retries=3, default_retry_delay=120)
def backfill_location_records(self, model_label=None, batch_size=None):
    """
    Re-derives coordinates/location for one model (or all of them).
    Batches commit independently, so a retry resumes cheaply.
    """
    if model_label:
        models = [LocationMaintenanceService.get_model(model_label)]
    else:
        models = LocationMaintenanceService.location_models()

    results = {}
    for model in models:
        results[model._meta.label] = LocationMaintenanceService.backfill(model, batch_size=batch_size)
    logger.info(f"Location backfill finished: {results}")
    return results


@shared_task
def audit_location_consistency():
    """
    Periodic drift check. Drift means something wrote derived fields
    behind the guard's back; it is logged as an error for alerting.
    """
    reports = []
    for model in LocationMaintenanceService.location_models():
        report = LocationMaintenanceService.audit(model)
        reports.append(report)
        if report["drifted"]:
            logger.error(
                f"Location drift detected: {report['model']} has {report['drifted']} "
                f"inconsistent rows out of {report['total']}"
            )
    return reports
