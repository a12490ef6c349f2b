# apps/merchants/models.py
from django.conf import settings
from django.contrib.gis.db import models
from django.utils import timezone

from apps.locations.guard import FromAddress, Own
from apps.locations.indexes import spatial_indexes
from apps.locations.models import LocationRecord

User = settings.AUTH_USER_MODEL


class MerchantAddress(LocationRecord):
    """
    A physical address a merchant can operate from.
    Its scalar pair is copied to every merchant that points at it.
    """
    label = models.CharField(max_length=50, blank=True)  # e.g. "Main Branch"
    address_text = models.TextField(blank=True)
    city = models.CharField(max_length=50, blank=True)

    is_verified = models.BooleanField(default=False)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["city"], name="mch_addr_city_idx"),
            *spatial_indexes("mch_addr"),
        ]

    def __str__(self):
        return f"{self.label or self.address_text[:30]} ({self.latitude}, {self.longitude})"


class Merchant(LocationRecord):
    STATUS_CHOICES = (
        ("open", "Open"),
        ("closed", "Closed"),
        ("busy", "Busy"),
        ("temp_closed", "Temporarily Closed"),
        ("maintenance", "Maintenance"),
    )

    # Geometry fields that take part in containment queries
    ZONE_FIELDS = ("service_area", "priority_zones", "restricted_areas", "delivery_zones")
    MULTI_ZONE_FIELDS = ("priority_zones", "restricted_areas", "delivery_zones")

    owner = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="merchants",
    )
    name = models.CharField(max_length=100)
    code = models.CharField(max_length=30, unique=True)

    is_active = models.BooleanField(default=True)
    is_accepting_orders = models.BooleanField(default=True)
    operational_status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="open")

    active_address = models.ForeignKey(
        MerchantAddress,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="merchants",
        help_text="When set, the merchant's location mirrors this address",
    )

    # Meters. Null means LOCATION_DEFAULT_DELIVERY_RADIUS_METERS
    delivery_radius_meters = models.PositiveIntegerField(null=True, blank=True)
    max_delivery_radius_meters = models.PositiveIntegerField(null=True, blank=True)

    # Zones (native) and the documents they were migrated from
    service_area = models.PolygonField(srid=4326, null=True, blank=True, spatial_index=False)
    priority_zones = models.MultiPolygonField(srid=4326, null=True, blank=True, spatial_index=False)
    restricted_areas = models.MultiPolygonField(srid=4326, null=True, blank=True, spatial_index=False)
    delivery_zones = models.MultiPolygonField(srid=4326, null=True, blank=True, spatial_index=False)

    service_area_geojson = models.JSONField(null=True, blank=True)
    priority_zones_geojson = models.JSONField(null=True, blank=True)
    restricted_areas_geojson = models.JSONField(null=True, blank=True)
    delivery_zones_geojson = models.JSONField(null=True, blank=True)

    last_location_sync = models.DateTimeField(null=True, blank=True)
    is_location_verified = models.BooleanField(default=False)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    SOURCE_FIELDS = ("active_address",)
    SYNC_FIELDS = ("last_location_sync", "is_location_verified")

    class Meta:
        indexes = [
            models.Index(fields=["is_active", "is_accepting_orders", "operational_status"], name="merchant_status_idx"),
            *spatial_indexes(
                "merchant",
                zone_fields=("service_area", "priority_zones", "restricted_areas", "delivery_zones"),
                active_field="is_active",
            ),
        ]

    def __str__(self):
        return f"{self.name} ({self.code})"

    def location_source(self):
        if self.active_address_id:
            return FromAddress(self.active_address_id, MerchantAddress)
        return Own(self.latitude, self.longitude)

    def location_synced(self, source, address=None):
        self.last_location_sync = timezone.now()
        if isinstance(source, FromAddress):
            self.is_location_verified = bool(address and address.is_verified)

    @property
    def effective_delivery_radius_meters(self):
        radius = self.delivery_radius_meters or settings.LOCATION_DEFAULT_DELIVERY_RADIUS_METERS
        if self.max_delivery_radius_meters:
            radius = min(radius, self.max_delivery_radius_meters)
        return radius
