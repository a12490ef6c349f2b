# apps/locations/guard.py
import copy
import logging
from typing import Any, NamedTuple, Optional

from django.contrib.gis.geos import GEOSGeometry
from django.dispatch import Signal

from .codec import GeometryCodec

logger = logging.getLogger(__name__)

# Sent once per real mutation of the derived fields (never for no-op re-writes).
# Arguments: instance, cleared
location_derived_changed = Signal()


class Own(NamedTuple):
    """The record's own scalar pair is authoritative."""
    latitude: Any
    longitude: Any


class FromAddress(NamedTuple):
    """The record mirrors the scalar pair of an address row."""
    address_id: Optional[int]
    address_model: Any

    def resolve(self):
        if self.address_id is None:
            return None
        return self.address_model._base_manager.filter(pk=self.address_id).first()


def _point_key(value):
    if value is None:
        return None
    if isinstance(value, GEOSGeometry):
        return (value.srid, tuple(value.coords))
    # Anything else (WKT text, dicts) is a direct write, never equal to a guarded value
    return ("raw", repr(value))


TRACKED_FIELDS = ("latitude", "longitude", "coordinates", "location")


def _state(latitude, longitude, coordinates, location):
    return {
        "latitude": latitude,
        "longitude": longitude,
        "coordinates": copy.deepcopy(coordinates),
        "location": _point_key(location),
    }


def snapshot(instance) -> dict:
    """Last state the guard vouches for. Compared against on the next write."""
    return _state(
        instance.latitude, instance.longitude, instance.coordinates, instance.location
    )


def stored_snapshot(instance) -> Optional[dict]:
    """
    State of the persisted row. Used when the instance was loaded with
    deferred location fields, so its in-memory values cannot be trusted.
    """
    row = (
        type(instance)._base_manager.db_manager(instance._state.db)
        .filter(pk=instance.pk)
        .values(*TRACKED_FIELDS)
        .first()
    )
    return _state(**row) if row is not None else None


class ConsistencyGuard:
    """
    Keeps `coordinates` and `location` a pure function of the scalar pair.

    Runs before every write of a LocationRecord (pre_save receiver, bulk paths
    of LocationRecordQuerySet). Fires when the row is new, the resolved scalar
    pair differs from the last guarded state, or force=True. Direct writes to
    the derived fields are discarded with a warning.
    """

    @staticmethod
    def resolve_source(instance, use_source=True):
        """Returns (latitude, longitude, source, address)."""
        if use_source:
            source = instance.location_source()
        else:
            source = Own(instance.latitude, instance.longitude)

        if isinstance(source, FromAddress):
            address = source.resolve()
            if address is None:
                logger.warning(
                    f"{type(instance).__name__} {instance.pk}: location address "
                    f"{source.address_id} not found, clearing location"
                )
                return None, None, source, None
            return address.latitude, address.longitude, source, address

        return source.latitude, source.longitude, source, None

    @staticmethod
    def apply(instance, force=False, use_source=True) -> bool:
        """
        Recomputes the derived fields in memory. Returns True when the
        resulting location differs from the last guarded state.
        Codec errors propagate so the surrounding transaction rolls back.
        """
        state = getattr(instance, "_location_state", None)
        if state is None and not instance._state.adding:
            # Deferred load: in-memory derived values may already hold a direct write
            state = stored_snapshot(instance)

        latitude, longitude, source, address = ConsistencyGuard.resolve_source(instance, use_source)
        derived = GeometryCodec.derive(latitude, longitude)

        if state is not None and not force:
            tampered = [
                name for name, current in (
                    ("coordinates", instance.coordinates != state["coordinates"]),
                    ("location", _point_key(instance.location) != state["location"]),
                ) if current
            ]
            if tampered:
                logger.warning(
                    f"{type(instance).__name__} {instance.pk}: direct write to "
                    f"{', '.join(tampered)} ignored, recomputing from scalar pair"
                )

            if (derived.latitude, derived.longitude) == (state["latitude"], state["longitude"]):
                if tampered:
                    instance.coordinates = copy.deepcopy(state["coordinates"])
                    instance.location = GeometryCodec.derive(
                        state["latitude"], state["longitude"]
                    ).native
                return False

        instance.latitude = derived.latitude
        instance.longitude = derived.longitude
        instance.coordinates = derived.structured
        instance.location = derived.native

        new_state = snapshot(instance)
        changed = state is None or new_state != state

        instance._location_state = new_state
        # A pending change stays pending until notify() consumes it
        instance._location_changed = changed or getattr(instance, "_location_changed", False)

        if changed:
            instance.location_synced(source, address)
            logger.debug(
                f"{type(instance).__name__} {instance.pk}: location "
                f"{'cleared' if derived.native is None else 'derived'}"
            )
        return changed

    @staticmethod
    def notify(instance):
        """Announce a committed mutation. Called after the row is written."""
        if getattr(instance, "_location_changed", False):
            instance._location_changed = False
            location_derived_changed.send(
                sender=type(instance),
                instance=instance,
                cleared=instance.location is None,
            )
