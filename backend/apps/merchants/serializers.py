# apps/merchants/serializers.py
from rest_framework import serializers

from .models import Merchant, MerchantAddress


class MerchantAddressSerializer(serializers.ModelSerializer):
    class Meta:
        model = MerchantAddress
        fields = (
            "id",
            "label",
            "address_text",
            "city",
            "latitude",
            "longitude",
            "coordinates",  # Derived GeoJSON, never writable
            "is_verified",
        )
        read_only_fields = ("latitude", "longitude", "coordinates")


class MerchantSerializer(serializers.ModelSerializer):
    active_address = MerchantAddressSerializer(read_only=True)

    class Meta:
        model = Merchant
        fields = (
            "id",
            "name",
            "code",
            "is_active",
            "is_accepting_orders",
            "operational_status",
            "latitude",
            "longitude",
            "coordinates",
            "active_address",
            "delivery_radius_meters",
            "max_delivery_radius_meters",
            "is_location_verified",
            "last_location_sync",
        )
        # Location is only changed through MerchantLocationService
        read_only_fields = fields


class LocationInputSerializer(serializers.Serializer):
    latitude = serializers.FloatField()
    longitude = serializers.FloatField()


class SearchQuerySerializer(serializers.Serializer):
    lat = serializers.FloatField(required=False)
    lng = serializers.FloatField(required=False)
    radius_meters = serializers.FloatField(required=False, min_value=1)
    limit = serializers.IntegerField(min_value=1, max_value=200, default=50)
    offset = serializers.IntegerField(min_value=0, default=0)
    operational_status = serializers.CharField(required=False)

    def validate_operational_status(self, value):
        statuses = [s.strip() for s in value.split(",") if s.strip()]
        allowed = {choice for choice, _ in Merchant.STATUS_CHOICES}
        unknown = set(statuses) - allowed
        if unknown:
            raise serializers.ValidationError(f"Unknown status: {', '.join(sorted(unknown))}")
        return statuses

    def validate(self, attrs):
        if ("lat" in attrs) != ("lng" in attrs):
            raise serializers.ValidationError("lat and lng must be provided together")
        return attrs


class ZoneInputSerializer(serializers.Serializer):
    polygon = serializers.JSONField(allow_null=True)
