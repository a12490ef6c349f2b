# apps/merchants/urls.py
from django.urls import path
from .views import (
    NearbyMerchantsAPIView,
    DeliverableMerchantsAPIView,
    ServiceAreaMerchantsAPIView,
    MerchantZoneCheckAPIView,
    MerchantLocationAdminAPIView,
    MerchantZoneAdminAPIView,
    AddressLocationAdminAPIView,
)

urlpatterns = [
    # Public discovery
    path("nearby/", NearbyMerchantsAPIView.as_view()),
    path("deliverable/", DeliverableMerchantsAPIView.as_view()),
    path("service-area/", ServiceAreaMerchantsAPIView.as_view()),
    path("<int:merchant_id>/zones/<str:zone_field>/contains/", MerchantZoneCheckAPIView.as_view()),

    # Admin location management
    path("<int:merchant_id>/location/", MerchantLocationAdminAPIView.as_view()),
    path("<int:merchant_id>/zones/<str:zone_field>/", MerchantZoneAdminAPIView.as_view()),
    path("addresses/<int:address_id>/location/", AddressLocationAdminAPIView.as_view()),
]
