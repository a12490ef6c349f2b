from django.db.models.signals import pre_save, post_save
from django.dispatch import receiver

from .guard import ConsistencyGuard
from .models import LocationRecord


@receiver(pre_save)
def guard_location_fields(sender, instance, raw=False, **kwargs):
    """
    Derives coordinates/location from the scalar pair before every write.
    Fixture loads (raw) use the row's own pair; related rows may not exist yet.
    """
    if not isinstance(instance, LocationRecord):
        return
    ConsistencyGuard.apply(instance, use_source=not raw)


@receiver(post_save)
def announce_location_change(sender, instance, **kwargs):
    if isinstance(instance, LocationRecord):
        ConsistencyGuard.notify(instance)
