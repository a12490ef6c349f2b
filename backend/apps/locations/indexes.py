# apps/locations/indexes.py
import logging

from django.contrib.postgres.indexes import GistIndex
from django.db import connection
from django.db.models import Q

logger = logging.getLogger(__name__)


def spatial_indexes(prefix, zone_fields=(), active_field=None):
    """
    GiST indexes for a LocationRecord subclass.

    `location` always gets one; every zone geometry field gets its own.
    With `active_field`, a partial index over active rows only is added
    (planner choice, results are identical).
    Index names are capped at 30 characters by Django.
    """
    indexes = [GistIndex(fields=["location"], name=f"{prefix}_loc_gist")]

    if active_field:
        indexes.append(
            GistIndex(
                fields=["location"],
                name=f"{prefix}_loc_act_gist",
                condition=Q(**{active_field: True}),
            )
        )

    for field in zone_fields:
        indexes.append(GistIndex(fields=[field], name=f"{prefix}_{field[:12]}_gist"))

    return indexes


class SpatialIndexService:

    @staticmethod
    def expected_indexes(model):
        return {
            index.name
            for index in model._meta.indexes
            if isinstance(index, GistIndex)
        }

    @staticmethod
    def existing_indexes(model):
        with connection.cursor() as cursor:
            constraints = connection.introspection.get_constraints(cursor, model._meta.db_table)
        return {
            name
            for name, info in constraints.items()
            if info.get("index") and info.get("type") == GistIndex.suffix
        }

    @staticmethod
    def missing_indexes(model):
        missing = SpatialIndexService.expected_indexes(model) - SpatialIndexService.existing_indexes(model)
        if missing:
            logger.warning(f"{model._meta.label}: missing spatial indexes {sorted(missing)}")
        return missing

    @staticmethod
    def postgis_version():
        with connection.cursor() as cursor:
            cursor.execute("SELECT PostGIS_Lib_Version()")
            row = cursor.fetchone()
        return row[0] if row else None

    @staticmethod
    def srid_available(srid=4326):
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1 FROM spatial_ref_sys WHERE srid = %s", [srid])
            return cursor.fetchone() is not None
