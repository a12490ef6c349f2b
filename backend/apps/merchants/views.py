# apps/merchants/views.py
from rest_framework import status
from rest_framework.permissions import AllowAny, IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.utils.exceptions import BusinessLogicException

from .models import Merchant
from .serializers import (
    LocationInputSerializer,
    MerchantAddressSerializer,
    MerchantSerializer,
    SearchQuerySerializer,
    ZoneInputSerializer,
)
from .services import MerchantDiscoveryService, MerchantLocationService


def _search_params(request):
    """
    Query params win over the X-Location-Lat/Lng headers
    resolved by LocationContextMiddleware.
    """
    serializer = SearchQuerySerializer(data=request.query_params)
    serializer.is_valid(raise_exception=True)
    params = serializer.validated_data

    if "lat" in params:
        point = (params["lat"], params["lng"])
    else:
        point = getattr(request, "search_point", None)
    if point is None:
        raise BusinessLogicException("A search location is required (lat/lng)", code="location_required")

    filters = {"is_active": True}
    if params.get("operational_status"):
        filters["operational_status"] = params["operational_status"]
    return point, params, filters


def _ordered(ids):
    merchants = Merchant.objects.select_related("active_address").in_bulk(ids)
    return [merchants[i] for i in ids if i in merchants]


class NearbyMerchantsAPIView(APIView):
    """
    Public: Merchants around a point, nearest first, with distances.
    """
    permission_classes = [AllowAny]

    def get(self, request):
        point, params, filters = _search_params(request)
        results = MerchantDiscoveryService.nearby_merchants(
            point,
            radius_meters=params.get("radius_meters"),
            filters=filters,
            limit=params["limit"],
            offset=params["offset"],
        )
        return Response({"count": len(results), "results": results})


class DeliverableMerchantsAPIView(APIView):
    """
    Public: Merchants whose own delivery radius covers the point.
    """
    permission_classes = [AllowAny]

    def get(self, request):
        point, params, filters = _search_params(request)
        ids = MerchantDiscoveryService.find_in_delivery_radius(
            point, filters=filters, limit=params["limit"], offset=params["offset"]
        )
        return Response({
            "count": len(ids),
            "results": MerchantSerializer(_ordered(ids), many=True).data,
        })


class ServiceAreaMerchantsAPIView(APIView):
    permission_classes = [AllowAny]

    def get(self, request):
        point, params, filters = _search_params(request)
        area_type = request.query_params.get("area_type", "all")
        ids = MerchantDiscoveryService.merchants_in_service_area(point, area_type=area_type, filters=filters)
        return Response({
            "count": len(ids),
            "results": MerchantSerializer(_ordered(ids), many=True).data,
        })


class MerchantZoneCheckAPIView(APIView):
    """
    Public: Is the point inside one of this merchant's zones?
    """
    permission_classes = [AllowAny]

    def get(self, request, merchant_id, zone_field):
        point, _, _ = _search_params(request)
        contains = MerchantDiscoveryService.containing_zone(merchant_id, point, zone_field)
        return Response({"merchant_id": merchant_id, "zone": zone_field, "contains": contains})


class MerchantLocationAdminAPIView(APIView):
    """
    Admin: Pin (PUT) or clear (DELETE) a merchant's own location.
    """
    permission_classes = [IsAdminUser]

    def put(self, request, merchant_id):
        serializer = LocationInputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        merchant = MerchantLocationService.set_scalar_location(
            merchant_id,
            serializer.validated_data["latitude"],
            serializer.validated_data["longitude"],
        )
        return Response(MerchantSerializer(merchant).data)

    def delete(self, request, merchant_id):
        merchant = MerchantLocationService.clear_location(merchant_id)
        return Response(MerchantSerializer(merchant).data)


class MerchantZoneAdminAPIView(APIView):
    permission_classes = [IsAdminUser]

    def put(self, request, merchant_id, zone_field):
        serializer = ZoneInputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        MerchantLocationService.set_zone_polygon(
            merchant_id, zone_field, serializer.validated_data["polygon"]
        )
        return Response({"merchant_id": merchant_id, "zone": zone_field, "status": "updated"})


class AddressLocationAdminAPIView(APIView):
    permission_classes = [IsAdminUser]

    def put(self, request, address_id):
        serializer = LocationInputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        address = MerchantLocationService.set_address_location(
            address_id,
            serializer.validated_data["latitude"],
            serializer.validated_data["longitude"],
        )
        return Response(MerchantAddressSerializer(address).data, status=status.HTTP_200_OK)
