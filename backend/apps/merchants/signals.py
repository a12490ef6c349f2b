import logging

from django.db.models.signals import post_save
from django.dispatch import receiver

from apps.locations.guard import location_derived_changed

from .models import Merchant, MerchantAddress

logger = logging.getLogger(__name__)


@receiver(location_derived_changed, sender=MerchantAddress)
def propagate_address_location(sender, instance, cleared, **kwargs):
    """
    Re-syncs every merchant whose active address is this one.
    Only sent when the address actually moved (or was cleared), from inside
    the address write's transaction, so the address and its merchants commit
    (or roll back) together.
    """
    merchants = Merchant.objects.select_for_update().filter(active_address=instance)
    synced = 0
    for merchant in merchants:
        merchant.is_location_verified = instance.is_verified
        # The guard resolves the address again
        merchant.save(update_fields=["active_address", "is_location_verified", "updated_at"])
        synced += 1

    if synced:
        logger.info(f"Address {instance.pk}: location propagated to {synced} merchants")


@receiver(post_save, sender=MerchantAddress)
def propagate_address_verification(sender, instance, created, raw=False, **kwargs):
    """Verification flips need no location rewrite."""
    if created or raw:
        return

    updated = (
        Merchant.objects.filter(active_address=instance)
        .exclude(is_location_verified=instance.is_verified)
        .update(is_location_verified=instance.is_verified)
    )
    if updated:
        logger.info(f"Address {instance.pk}: verification synced to {updated} merchants")
