# apps/locations/models.py
from django.contrib.gis.db import models
from django.db import transaction
from django.db.models.expressions import Combinable

from apps.utils.exceptions import DerivedFieldWriteError

from .guard import ConsistencyGuard, Own, snapshot


class LocationRecordQuerySet(models.QuerySet):
    """
    Bulk writes that still go through the ConsistencyGuard.
    QuerySet.update() normally bypasses save() and therefore pre_save.
    """

    def _field_names(self, names):
        model = self.model
        guarded = set(model.GUARD_OWNED_FIELDS)
        replay = set(model.SCALAR_FIELDS) | set(model.SOURCE_FIELDS)
        replay |= {f"{name}_id" for name in model.SOURCE_FIELDS}
        names = set(names)
        return names & guarded, names & replay

    def update(self, **kwargs):
        owned, replay = self._field_names(kwargs)
        if owned:
            raise DerivedFieldWriteError(
                f"{', '.join(sorted(owned))} cannot be written directly; "
                f"set latitude/longitude instead"
            )
        if not replay:
            return super().update(**kwargs)

        with transaction.atomic(using=self.db):
            pks = list(self.select_for_update().values_list("pk", flat=True))
            if not pks:
                return 0
            base = self.model._base_manager.using(self.db).filter(pk__in=pks)
            # Plain QuerySet.update on the locked rows, then re-derive each one
            count = models.QuerySet.update(base, **kwargs)
            for obj in base.order_by("pk"):
                if ConsistencyGuard.apply(obj, force=True):
                    obj.save(update_fields=self.model.guarded_update_fields())
            return count

    update.alters_data = True

    def bulk_create(self, objs, *args, **kwargs):
        objs = list(objs)
        with transaction.atomic(using=self.db):
            for obj in objs:
                ConsistencyGuard.apply(obj)
            created = super().bulk_create(objs, *args, **kwargs)
            for obj in created:
                obj._state.adding = False
                ConsistencyGuard.notify(obj)
        return created

    bulk_create.alters_data = True

    def bulk_update(self, objs, fields, *args, **kwargs):
        objs = list(objs)
        owned, replay = self._field_names(fields)
        if owned:
            raise DerivedFieldWriteError(
                f"{', '.join(sorted(owned))} cannot be written directly; "
                f"set latitude/longitude instead"
            )

        fields = list(fields)
        if replay:
            fields = self.model.widen_update_fields(fields)
            for obj in objs:
                for name in self.model.SCALAR_FIELDS:
                    value = getattr(obj, name, None)
                    if isinstance(value, Combinable):
                        raise DerivedFieldWriteError(
                            f"{name} must be a concrete value when bulk updating locations",
                            code="expression_not_supported",
                        )
                ConsistencyGuard.apply(obj)

        with transaction.atomic(using=self.db):
            count = super().bulk_update(objs, fields, *args, **kwargs)
            for obj in objs:
                ConsistencyGuard.notify(obj)
        return count

    bulk_update.alters_data = True

    def with_location(self):
        return self.filter(location__isnull=False)

    def without_location(self):
        return self.filter(location__isnull=True)


class LocationRecord(models.Model):
    """
    A row whose position is stored three ways:

    latitude/longitude  -> authoritative scalar pair
    coordinates         -> GeoJSON point document, derived
    location            -> PostGIS geometry (SRID 4326), derived

    Never write coordinates/location directly; the ConsistencyGuard owns them.
    """

    # Precision: 7 decimal places (~1cm), same as GeometryCodec.COORDINATE_QUANTUM
    latitude = models.DecimalField(max_digits=10, decimal_places=7, null=True, blank=True)
    longitude = models.DecimalField(max_digits=10, decimal_places=7, null=True, blank=True)

    coordinates = models.JSONField(null=True, blank=True, editable=False)
    location = models.PointField(srid=4326, null=True, blank=True, editable=False, spatial_index=False)

    objects = LocationRecordQuerySet.as_manager()

    SCALAR_FIELDS = ("latitude", "longitude")
    GUARD_OWNED_FIELDS = ("coordinates", "location")
    # FK fields that can repoint where the scalar pair comes from
    SOURCE_FIELDS = ()
    # Bookkeeping stamped by location_synced()
    SYNC_FIELDS = ()

    class Meta:
        abstract = True

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        deferred = instance.get_deferred_fields()
        if not deferred.intersection(cls.SCALAR_FIELDS + cls.GUARD_OWNED_FIELDS):
            instance._location_state = snapshot(instance)
        return instance

    @classmethod
    def guarded_update_fields(cls):
        return list(cls.SCALAR_FIELDS + cls.GUARD_OWNED_FIELDS + cls.SYNC_FIELDS)

    @classmethod
    def widen_update_fields(cls, update_fields):
        fields = list(update_fields)
        touched = set(fields) & (
            set(cls.SCALAR_FIELDS)
            | set(cls.SOURCE_FIELDS)
            | {f"{name}_id" for name in cls.SOURCE_FIELDS}
        )
        if not touched:
            return fields
        for name in cls.guarded_update_fields():
            if name not in fields:
                fields.append(name)
        return fields

    def location_source(self):
        return Own(self.latitude, self.longitude)

    def location_synced(self, source, address=None):
        """Hook called when the guard changed this record's location."""

    def has_location(self):
        return self.location is not None

    def save(self, *args, **kwargs):
        update_fields = kwargs.get("update_fields")
        if update_fields is not None:
            kwargs["update_fields"] = self.widen_update_fields(update_fields)

        # pre_save guard, the write and post_save cascades commit together
        with transaction.atomic(using=kwargs.get("using")):
            super().save(*args, **kwargs)

    def refresh_from_db(self, using=None, fields=None, **kwargs):
        super().refresh_from_db(using=using, fields=fields, **kwargs)
        tracked = set(self.SCALAR_FIELDS + self.GUARD_OWNED_FIELDS)
        if fields is not None and not tracked.issubset(fields):
            return
        if not self.get_deferred_fields().intersection(tracked):
            self._location_state = snapshot(self)
