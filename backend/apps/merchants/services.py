# apps/merchants/services.py
import copy
import logging
import math

from django.conf import settings
from django.contrib.gis.db.models.functions import Distance
from django.contrib.gis.geos import GEOSGeometry
from django.contrib.gis.measure import D
from django.db import transaction
from django.db.models import F, IntegerField, Q, Value
from django.db.models.functions import Coalesce, Least

from apps.locations.codec import GeometryCodec
from apps.locations.guard import FromAddress, Own
from apps.utils.exceptions import (
    BusinessLogicException,
    GeometryError,
    IndexInconsistency,
    MalformedGeometry,
)

from .models import Merchant, MerchantAddress

logger = logging.getLogger(__name__)

METERS_PER_DEGREE = 111320


def _zone_field(zone_field):
    if zone_field not in Merchant.ZONE_FIELDS:
        raise BusinessLogicException(
            f"Unknown zone field '{zone_field}'. Expected one of {', '.join(Merchant.ZONE_FIELDS)}",
            code="invalid_zone_field",
        )
    return zone_field


class MerchantLocationService:
    """
    The only supported way to change where a merchant is.
    Every method locks the row and commits in one transaction.
    """

    @staticmethod
    def _lock_merchant(merchant_id):
        try:
            return Merchant.objects.select_for_update().get(pk=merchant_id)
        except Merchant.DoesNotExist:
            raise BusinessLogicException(f"Merchant {merchant_id} not found", code="merchant_not_found")

    @staticmethod
    def _lock_address(address_id):
        try:
            return MerchantAddress.objects.select_for_update().get(pk=address_id)
        except MerchantAddress.DoesNotExist:
            raise BusinessLogicException(f"Address {address_id} not found", code="address_not_found")

    @staticmethod
    @transaction.atomic
    def set_scalar_location(merchant_id, latitude, longitude) -> Merchant:
        """
        Pins the merchant to its own coordinates, detaching any active address.
        A zero component clears the location.
        """
        latitude, longitude = GeometryCodec.validate_pair(latitude, longitude)
        merchant = MerchantLocationService._lock_merchant(merchant_id)

        if (
            merchant.active_address_id is None
            and merchant.latitude == latitude
            and merchant.longitude == longitude
        ):
            return merchant

        merchant.active_address = None
        merchant.latitude = latitude
        merchant.longitude = longitude
        merchant.save(update_fields=["latitude", "longitude", "active_address", "updated_at"])

        logger.info(f"Merchant {merchant.id} location set", extra={"metadata": {
            "merchant_id": merchant.id, "latitude": latitude, "longitude": longitude,
        }})
        return merchant

    @staticmethod
    @transaction.atomic
    def clear_location(merchant_id) -> Merchant:
        merchant = MerchantLocationService._lock_merchant(merchant_id)
        if merchant.active_address_id is None and merchant.latitude is None and merchant.longitude is None:
            return merchant

        merchant.active_address = None
        merchant.latitude = None
        merchant.longitude = None
        merchant.save(update_fields=["latitude", "longitude", "active_address", "updated_at"])

        logger.info(f"Merchant {merchant.id} location cleared")
        return merchant

    @staticmethod
    @transaction.atomic
    def set_zone_polygon(merchant_id, zone_field, polygon_document) -> Merchant:
        """
        Writes a zone from a GeoJSON Polygon/MultiPolygon document.
        The native geometry and the stored document always change together;
        None clears both.
        """
        zone_field = _zone_field(zone_field)
        native = GeometryCodec.polygon_to_native(
            polygon_document, multi=zone_field in Merchant.MULTI_ZONE_FIELDS
        )
        if native is not None and not native.valid:
            raise MalformedGeometry(f"Invalid {zone_field} polygon: {native.valid_reason}")

        merchant = MerchantLocationService._lock_merchant(merchant_id)
        setattr(merchant, zone_field, native)
        setattr(merchant, f"{zone_field}_geojson", copy.deepcopy(polygon_document))
        merchant.save(update_fields=[zone_field, f"{zone_field}_geojson", "updated_at"])

        logger.info(f"Merchant {merchant.id} {zone_field} {'cleared' if native is None else 'updated'}")
        return merchant

    @staticmethod
    @transaction.atomic
    def set_location_source(merchant_id, source) -> Merchant:
        merchant = MerchantLocationService._lock_merchant(merchant_id)

        if isinstance(source, Own):
            if source.latitude is None and source.longitude is None:
                latitude = longitude = None
            else:
                latitude, longitude = GeometryCodec.validate_pair(source.latitude, source.longitude)
            merchant.active_address = None
            merchant.latitude = latitude
            merchant.longitude = longitude
        elif isinstance(source, FromAddress):
            address = MerchantLocationService._lock_address(source.address_id)
            merchant.active_address = address
            merchant.is_location_verified = address.is_verified
        else:
            raise BusinessLogicException("Location source must be Own or FromAddress", code="invalid_source")

        merchant.save(update_fields=[
            "latitude", "longitude", "active_address", "is_location_verified", "updated_at",
        ])
        return merchant

    @staticmethod
    @transaction.atomic
    def set_address_location(address_id, latitude, longitude) -> MerchantAddress:
        """
        Moves an address. Merchants using it follow in the same transaction
        (post_save cascade in signals.py).
        """
        latitude, longitude = GeometryCodec.validate_pair(latitude, longitude)
        address = MerchantLocationService._lock_address(address_id)

        if address.latitude == latitude and address.longitude == longitude:
            return address

        address.latitude = latitude
        address.longitude = longitude
        address.save(update_fields=["latitude", "longitude", "updated_at"])
        return address

    @staticmethod
    @transaction.atomic
    def migrate_legacy_zones(merchant_id, overwrite=False):
        """
        Converts the stored `<zone>_geojson` documents into native geometry.
        Returns (migrated_fields, failed_fields). Rings are kept exactly as
        stored; documents that cannot be converted leave the zone untouched.
        """
        merchant = MerchantLocationService._lock_merchant(merchant_id)
        migrated, failed = [], []

        for zone_field in Merchant.ZONE_FIELDS:
            document = getattr(merchant, f"{zone_field}_geojson")
            if document is None:
                continue
            if getattr(merchant, zone_field) is not None and not overwrite:
                continue

            try:
                native = GeometryCodec.polygon_to_native(
                    document, multi=zone_field in Merchant.MULTI_ZONE_FIELDS
                )
            except GeometryError as e:
                failed.append(zone_field)
                logger.warning(f"Merchant {merchant.id} {zone_field} not migrated: {e}")
                continue

            if not native.valid:
                # Stored anyway; containment queries skip invalid zones
                logger.warning(f"Merchant {merchant.id} {zone_field} is invalid: {native.valid_reason}")

            setattr(merchant, zone_field, native)
            migrated.append(zone_field)

        if migrated:
            merchant.save(update_fields=migrated + ["updated_at"])
        return migrated, failed


class MerchantDiscoveryService:
    """
    Proximity queries over Merchant.location and the zone fields.
    All distances are meters; ordering is distance then id.
    """

    FILTER_KEYS = ("is_active", "is_accepting_orders", "operational_status")
    AREA_TYPES = {
        "delivery": ("service_area",),
        "priority": ("priority_zones",),
        "all": ("service_area", "priority_zones"),
    }

    @staticmethod
    def search_point(value):
        """Accepts a GEOS point, a GeoJSON point or a (latitude, longitude) pair."""
        if isinstance(value, GEOSGeometry):
            document = GeometryCodec.native_to_structured(value)
            return GeometryCodec.structured_to_native(document)
        if isinstance(value, dict):
            return GeometryCodec.structured_to_native(value)
        if isinstance(value, (list, tuple)) and len(value) == 2:
            return GeometryCodec.scalar_to_native(*value)
        raise MalformedGeometry("Search point must be a Point, a GeoJSON point or a (lat, lng) pair")

    @staticmethod
    def _radius(radius_meters):
        try:
            radius = float(radius_meters)
        except (TypeError, ValueError):
            raise BusinessLogicException("Radius must be a number of meters", code="invalid_radius")
        if not math.isfinite(radius) or radius <= 0:
            raise BusinessLogicException("Radius must be a positive number of meters", code="invalid_radius")

        ceiling = settings.LOCATION_MAX_SEARCH_RADIUS_METERS
        if radius > ceiling:
            raise BusinessLogicException(
                f"Radius {radius:g}m exceeds the maximum search radius of {ceiling}m",
                code="radius_too_large",
            )
        return radius

    @staticmethod
    def degree_envelope(point, radius_meters):
        """
        Degrees that cover `radius_meters` around `point` in every direction.
        Only used to prefilter through the GiST index; the exact check is metric.
        """
        lat_degrees = radius_meters / METERS_PER_DEGREE
        cos_lat = math.cos(math.radians(point.y))
        if cos_lat < 0.01:
            return 180.0
        lng_degrees = radius_meters / (METERS_PER_DEGREE * cos_lat)
        return min(max(lat_degrees, lng_degrees) * 1.1, 180.0)

    @staticmethod
    def apply_filters(queryset, filters):
        if not filters:
            return queryset

        unknown = set(filters) - set(MerchantDiscoveryService.FILTER_KEYS)
        if unknown:
            raise BusinessLogicException(
                f"Unknown filter(s): {', '.join(sorted(unknown))}", code="invalid_filter"
            )

        if "is_active" in filters:
            queryset = queryset.filter(is_active=bool(filters["is_active"]))
        if "is_accepting_orders" in filters:
            queryset = queryset.filter(is_accepting_orders=bool(filters["is_accepting_orders"]))
        if "operational_status" in filters:
            status = filters["operational_status"]
            if isinstance(status, str):
                status = [status]
            queryset = queryset.filter(operational_status__in=list(status))
        return queryset

    @staticmethod
    def _page(queryset, limit, offset):
        offset = max(int(offset or 0), 0)
        if limit is None:
            return queryset[offset:] if offset else queryset
        return queryset[offset:offset + max(int(limit), 0)]

    @staticmethod
    def _within_queryset(point, radius, filters=None):
        queryset = Merchant.objects.filter(location__isnull=False)
        queryset = MerchantDiscoveryService.apply_filters(queryset, filters)
        return (
            queryset
            .filter(location__dwithin=(point, MerchantDiscoveryService.degree_envelope(point, radius)))
            .filter(location__distance_lte=(point, D(m=radius)))
            .annotate(distance=Distance("location", point))
            .order_by("distance", "id")
        )

    @staticmethod
    def _drop_inconsistent(merchants):
        """Debug aid: rows whose native point disagrees with their scalars never match."""
        if not settings.LOCATION_VERIFY_QUERY_RESULTS:
            return merchants

        consistent = []
        for merchant in merchants:
            try:
                GeometryCodec.assert_consistent(merchant)
            except IndexInconsistency as e:
                logger.warning(f"Dropping inconsistent merchant from results: {e}")
                continue
            except GeometryError as e:
                # Scalars written behind the guard that no longer validate
                logger.warning(f"Dropping merchant {merchant.pk} with invalid scalars from results: {e}")
                continue
            consistent.append(merchant)
        return consistent

    @staticmethod
    def within_radius(point, radius_meters, filters=None, limit=None, offset=0):
        """
        Ids of merchants within `radius_meters` of `point`,
        nearest first, ties broken by id.
        """
        point = MerchantDiscoveryService.search_point(point)
        radius = MerchantDiscoveryService._radius(radius_meters)
        queryset = MerchantDiscoveryService._within_queryset(point, radius, filters)
        page = MerchantDiscoveryService._page(queryset, limit, offset)

        if settings.LOCATION_VERIFY_QUERY_RESULTS:
            return [m.id for m in MerchantDiscoveryService._drop_inconsistent(list(page))]
        return list(page.values_list("id", flat=True))

    @staticmethod
    def nearby_merchants(point, radius_meters=None, filters=None, limit=None, offset=0):
        """
        Like within_radius but returns display rows with distances and
        whether the point is inside the merchant's own delivery radius.
        """
        point = MerchantDiscoveryService.search_point(point)
        radius = MerchantDiscoveryService._radius(
            radius_meters or settings.LOCATION_DEFAULT_SEARCH_RADIUS_METERS
        )
        queryset = MerchantDiscoveryService._within_queryset(point, radius, filters)
        merchants = MerchantDiscoveryService._drop_inconsistent(
            list(MerchantDiscoveryService._page(queryset, limit, offset))
        )

        results = []
        for merchant in merchants:
            meters = merchant.distance.m
            results.append({
                "id": merchant.id,
                "name": merchant.name,
                "code": merchant.code,
                "operational_status": merchant.operational_status,
                "distance_meters": round(meters),
                "distance_km": round(meters / 1000, 2),
                "is_within_delivery_radius": meters <= merchant.effective_delivery_radius_meters,
            })
        return results

    @staticmethod
    def find_in_delivery_radius(point, filters=None, limit=None, offset=0):
        """
        Merchants whose own delivery radius reaches `point`.
        Only active merchants that accept orders are considered.
        """
        point = MerchantDiscoveryService.search_point(point)
        default_radius = settings.LOCATION_DEFAULT_DELIVERY_RADIUS_METERS
        ceiling = settings.LOCATION_MAX_SEARCH_RADIUS_METERS

        queryset = Merchant.objects.filter(
            location__isnull=False,
            is_active=True,
            is_accepting_orders=True,
        )
        queryset = MerchantDiscoveryService.apply_filters(queryset, filters)
        queryset = (
            queryset
            .filter(location__dwithin=(point, MerchantDiscoveryService.degree_envelope(point, ceiling)))
            .annotate(
                distance=Distance("location", point),
                # Postgres LEAST ignores NULL, so an unset cap means "no cap"
                effective_radius=Least(
                    Coalesce("delivery_radius_meters", Value(default_radius), output_field=IntegerField()),
                    "max_delivery_radius_meters",
                    output_field=IntegerField(),
                ),
            )
            .filter(distance__lte=F("effective_radius"))
            .order_by("distance", "id")
        )

        page = MerchantDiscoveryService._page(queryset, limit, offset)
        return [m.id for m in MerchantDiscoveryService._drop_inconsistent(list(page))]

    @staticmethod
    def _zone_filter(zone_fields, point):
        condition = Q()
        for zone_field in zone_fields:
            condition |= Q(**{
                f"{zone_field}__isvalid": True,
                f"{zone_field}__contains": point,
            })
        return condition

    @staticmethod
    def containing_zone(merchant_id, point, zone_field) -> bool:
        zone_field = _zone_field(zone_field)
        point = MerchantDiscoveryService.search_point(point)
        return Merchant.objects.filter(pk=merchant_id).filter(
            MerchantDiscoveryService._zone_filter([zone_field], point)
        ).exists()

    @staticmethod
    def merchants_in_zone(point, zone_field, filters=None):
        zone_field = _zone_field(zone_field)
        point = MerchantDiscoveryService.search_point(point)
        queryset = MerchantDiscoveryService.apply_filters(Merchant.objects.all(), filters)
        return list(
            queryset.filter(MerchantDiscoveryService._zone_filter([zone_field], point))
            .order_by("id")
            .values_list("id", flat=True)
        )

    @staticmethod
    def merchants_in_service_area(point, area_type="all", filters=None):
        if area_type not in MerchantDiscoveryService.AREA_TYPES:
            raise BusinessLogicException(
                f"Unknown area type '{area_type}'. Expected delivery, priority or all",
                code="invalid_area_type",
            )
        point = MerchantDiscoveryService.search_point(point)
        queryset = MerchantDiscoveryService.apply_filters(
            Merchant.objects.filter(is_active=True), filters
        )
        zones = MerchantDiscoveryService.AREA_TYPES[area_type]
        return list(
            queryset.filter(MerchantDiscoveryService._zone_filter(zones, point))
            .order_by("id")
            .values_list("id", flat=True)
        )
