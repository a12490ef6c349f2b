# apps/merchants/tests.py
from decimal import Decimal
from io import StringIO

from django.contrib.auth import get_user_model
from django.contrib.gis.geos import Point, Polygon
from django.core.management import call_command
from django.db.models.signals import pre_save
from django.test import TestCase, override_settings
from rest_framework import status
from rest_framework.test import APIClient

from apps.locations.guard import FromAddress, Own, location_derived_changed
from apps.merchants.models import Merchant, MerchantAddress
from apps.merchants.services import MerchantDiscoveryService, MerchantLocationService
from apps.utils.exceptions import BusinessLogicException, InvalidCoordinate, MalformedGeometry

User = get_user_model()

# Rizal Park, Manila
MANILA = (14.5995, 120.9842)
# ~1000m and ~3000m due north
ONE_KM_NORTH = (14.608483, 120.9842)
THREE_KM_NORTH = (14.626449, 120.9842)

AROUND_MANILA = {
    "type": "Polygon",
    "coordinates": [[[120.9, 14.5], [121.1, 14.5], [121.1, 14.7], [120.9, 14.7], [120.9, 14.5]]],
}


def make_merchant(code, point=None, **kwargs):
    if point is not None:
        kwargs["latitude"], kwargs["longitude"] = Decimal(str(point[0])), Decimal(str(point[1]))
    return Merchant.objects.create(name=f"Merchant {code}", code=code, **kwargs)


class RadiusSearchTestCase(TestCase):
    def setUp(self):
        self.a = make_merchant("A", ONE_KM_NORTH)
        self.b = make_merchant("B", THREE_KM_NORTH)
        self.unlocated = make_merchant("NOLOC")

    def test_within_radius(self):
        self.assertEqual(MerchantDiscoveryService.within_radius(MANILA, 2000), [self.a.id])
        self.assertEqual(MerchantDiscoveryService.within_radius(MANILA, 500), [])
        self.assertEqual(MerchantDiscoveryService.within_radius(MANILA, 5000), [self.a.id, self.b.id])

    def test_accepts_every_point_shape(self):
        for point in [
            MANILA,
            Point(MANILA[1], MANILA[0], srid=4326),
            {"type": "Point", "coordinates": [MANILA[1], MANILA[0]]},
        ]:
            self.assertEqual(MerchantDiscoveryService.within_radius(point, 2000), [self.a.id])

    def test_ties_are_ordered_by_id(self):
        twin = make_merchant("A2", ONE_KM_NORTH)
        self.assertEqual(
            MerchantDiscoveryService.within_radius(MANILA, 2000),
            [self.a.id, twin.id],
        )

    def test_filters(self):
        self.a.operational_status = "closed"
        self.a.save()

        self.assertEqual(
            MerchantDiscoveryService.within_radius(MANILA, 5000, filters={"operational_status": ["open"]}),
            [self.b.id],
        )
        self.b.is_active = False
        self.b.save()
        self.assertEqual(
            MerchantDiscoveryService.within_radius(MANILA, 5000, filters={"is_active": True}),
            [self.a.id],
        )

    def test_unknown_filter(self):
        with self.assertRaises(BusinessLogicException) as ctx:
            MerchantDiscoveryService.within_radius(MANILA, 5000, filters={"city": "Manila"})
        self.assertEqual(ctx.exception.code, "invalid_filter")

    def test_limit_and_offset(self):
        self.assertEqual(MerchantDiscoveryService.within_radius(MANILA, 5000, limit=1), [self.a.id])
        self.assertEqual(MerchantDiscoveryService.within_radius(MANILA, 5000, limit=1, offset=1), [self.b.id])
        self.assertEqual(MerchantDiscoveryService.within_radius(MANILA, 5000, offset=2), [])

    def test_invalid_inputs(self):
        with self.assertRaises(InvalidCoordinate):
            MerchantDiscoveryService.within_radius((95, 120), 1000)
        with self.assertRaises(BusinessLogicException):
            MerchantDiscoveryService.within_radius(MANILA, 0)
        with self.assertRaises(MalformedGeometry):
            MerchantDiscoveryService.within_radius("Manila", 1000)

    def test_moved_merchant_is_found_at_new_position(self):
        MerchantLocationService.set_scalar_location(self.b.id, *MANILA)
        self.assertEqual(MerchantDiscoveryService.within_radius(MANILA, 500), [self.b.id])

    def test_cleared_merchant_is_never_returned(self):
        MerchantLocationService.clear_location(self.a.id)
        self.assertEqual(MerchantDiscoveryService.within_radius(MANILA, 5000), [self.b.id])

    @override_settings(LOCATION_VERIFY_QUERY_RESULTS=True)
    def test_verification_drops_drifted_rows(self):
        # Native point moved next to the search point behind the guard's back
        Merchant._base_manager.filter(pk=self.b.id).update(location=Point(MANILA[1], MANILA[0], srid=4326))
        with self.assertLogs("apps.merchants.services", level="WARNING"):
            ids = MerchantDiscoveryService.within_radius(MANILA, 2000)
        self.assertEqual(ids, [self.a.id])

    @override_settings(LOCATION_VERIFY_QUERY_RESULTS=True)
    def test_verification_drops_rows_with_invalid_scalars(self):
        # Out-of-range latitude written behind the guard's back
        Merchant._base_manager.filter(pk=self.b.id).update(latitude=95)
        with self.assertLogs("apps.merchants.services", level="WARNING"):
            ids = MerchantDiscoveryService.within_radius(MANILA, 5000)
            results = MerchantDiscoveryService.nearby_merchants(MANILA, 5000)
        self.assertEqual(ids, [self.a.id])
        self.assertEqual([r["id"] for r in results], [self.a.id])

    @override_settings(LOCATION_MAX_SEARCH_RADIUS_METERS=50000)
    def test_radius_above_maximum_is_rejected(self):
        self.assertEqual(MerchantDiscoveryService.within_radius(MANILA, 50000), [self.a.id, self.b.id])

        for search in (MerchantDiscoveryService.within_radius, MerchantDiscoveryService.nearby_merchants):
            with self.assertRaises(BusinessLogicException) as ctx:
                search(MANILA, 100000)
            self.assertEqual(ctx.exception.code, "radius_too_large")

    def test_nearby_merchants(self):
        self.a.delivery_radius_meters = 800
        self.a.save()

        results = MerchantDiscoveryService.nearby_merchants(MANILA, 5000)
        self.assertEqual([r["id"] for r in results], [self.a.id, self.b.id])

        first = results[0]
        self.assertEqual(first["code"], "A")
        self.assertAlmostEqual(first["distance_meters"], 1000, delta=10)
        self.assertAlmostEqual(first["distance_km"], 1.0, delta=0.01)
        self.assertFalse(first["is_within_delivery_radius"])
        self.assertTrue(results[1]["is_within_delivery_radius"])


class ManilaExamplesTestCase(TestCase):
    def test_radius_search_around_rizal_park(self):
        here = make_merchant("HERE", (14.5995, 120.9842))
        near = make_merchant("NEAR", (14.6091, 120.9830))

        self.assertEqual(MerchantDiscoveryService.within_radius((14.5995, 120.9842), 2000), [here.id, near.id])
        self.assertEqual(MerchantDiscoveryService.within_radius((14.5995, 120.9842), 500), [here.id])

        results = MerchantDiscoveryService.nearby_merchants((14.5995, 120.9842), 2000)
        self.assertEqual(results[0]["distance_meters"], 0)
        self.assertAlmostEqual(results[1]["distance_meters"], 1075, delta=25)

    def test_small_square_zone(self):
        merchant = make_merchant("SQUARE", (14.5995, 120.9842))
        MerchantLocationService.set_zone_polygon(merchant.id, "service_area", {
            "type": "Polygon",
            "coordinates": [[[120.98, 14.59], [120.99, 14.59], [120.99, 14.60], [120.98, 14.60], [120.98, 14.59]]],
        })

        self.assertTrue(MerchantDiscoveryService.containing_zone(merchant.id, (14.5995, 120.9842), "service_area"))
        self.assertFalse(MerchantDiscoveryService.containing_zone(merchant.id, (19.5995, 120.9842), "service_area"))
        self.assertFalse(MerchantDiscoveryService.containing_zone(merchant.id, (14.5995, 125.9842), "service_area"))


class DeliveryRadiusTestCase(TestCase):
    def test_find_in_delivery_radius(self):
        reaches = make_merchant("REACH", ONE_KM_NORTH, delivery_radius_meters=1500)
        short = make_merchant("SHORT", ONE_KM_NORTH, delivery_radius_meters=500)
        capped = make_merchant("CAPPED", THREE_KM_NORTH, max_delivery_radius_meters=2000)
        default = make_merchant("DEFAULT", THREE_KM_NORTH)
        make_merchant("PAUSED", ONE_KM_NORTH, is_accepting_orders=False)
        make_merchant("INACTIVE", ONE_KM_NORTH, is_active=False)

        ids = MerchantDiscoveryService.find_in_delivery_radius(MANILA)
        self.assertEqual(ids, [reaches.id, default.id])
        self.assertNotIn(short.id, ids)
        self.assertNotIn(capped.id, ids)


class ZoneTestCase(TestCase):
    def setUp(self):
        self.merchant = make_merchant("ZONE", MANILA)
        self.other = make_merchant("NOZONE", MANILA)

    def test_containing_zone(self):
        MerchantLocationService.set_zone_polygon(self.merchant.id, "service_area", AROUND_MANILA)

        self.assertTrue(MerchantDiscoveryService.containing_zone(self.merchant.id, MANILA, "service_area"))
        self.assertFalse(MerchantDiscoveryService.containing_zone(self.merchant.id, (19.5995, 120.9842), "service_area"))
        self.assertFalse(MerchantDiscoveryService.containing_zone(self.other.id, MANILA, "service_area"))
        self.assertEqual(MerchantDiscoveryService.merchants_in_zone(MANILA, "service_area"), [self.merchant.id])

    def test_polygon_is_promoted_for_multi_zone(self):
        MerchantLocationService.set_zone_polygon(self.merchant.id, "priority_zones", AROUND_MANILA)

        self.merchant.refresh_from_db()
        self.assertEqual(self.merchant.priority_zones.geom_type, "MultiPolygon")
        self.assertEqual(self.merchant.priority_zones_geojson, AROUND_MANILA)
        self.assertTrue(MerchantDiscoveryService.containing_zone(self.merchant.id, MANILA, "priority_zones"))

    def test_invalid_zone_never_matches(self):
        bowtie = Polygon(((0, 0), (1, 1), (1, 0), (0, 1), (0, 0)), srid=4326)
        Merchant.objects.filter(pk=self.merchant.id).update(service_area=bowtie)

        self.assertFalse(MerchantDiscoveryService.containing_zone(self.merchant.id, (0.5, 0.9), "service_area"))

        with self.assertRaises(MalformedGeometry):
            MerchantLocationService.set_zone_polygon(self.merchant.id, "service_area", {
                "type": "Polygon",
                "coordinates": [[[0, 0], [1, 1], [1, 0], [0, 1], [0, 0]]],
            })

    def test_set_and_clear_zone(self):
        MerchantLocationService.set_zone_polygon(self.merchant.id, "service_area", AROUND_MANILA)
        MerchantLocationService.set_zone_polygon(self.merchant.id, "service_area", None)

        self.merchant.refresh_from_db()
        self.assertIsNone(self.merchant.service_area)
        self.assertIsNone(self.merchant.service_area_geojson)

    def test_zone_errors(self):
        unclosed = {"type": "Polygon", "coordinates": [[[120.9, 14.5], [121.1, 14.5], [121.1, 14.7], [120.9, 14.7]]]}
        with self.assertRaises(MalformedGeometry):
            MerchantLocationService.set_zone_polygon(self.merchant.id, "service_area", unclosed)

        with self.assertRaises(BusinessLogicException) as ctx:
            MerchantLocationService.set_zone_polygon(self.merchant.id, "parking_lot", AROUND_MANILA)
        self.assertEqual(ctx.exception.code, "invalid_zone_field")

        with self.assertRaises(BusinessLogicException) as ctx:
            MerchantDiscoveryService.containing_zone(self.merchant.id, MANILA, "parking_lot")
        self.assertEqual(ctx.exception.code, "invalid_zone_field")

    def test_service_area_types(self):
        MerchantLocationService.set_zone_polygon(self.merchant.id, "service_area", AROUND_MANILA)
        MerchantLocationService.set_zone_polygon(self.other.id, "priority_zones", AROUND_MANILA)
        inactive = make_merchant("INACTIVE", MANILA, is_active=False)
        MerchantLocationService.set_zone_polygon(inactive.id, "service_area", AROUND_MANILA)

        find = MerchantDiscoveryService.merchants_in_service_area
        self.assertEqual(find(MANILA, "delivery"), [self.merchant.id])
        self.assertEqual(find(MANILA, "priority"), [self.other.id])
        self.assertEqual(find(MANILA, "all"), [self.merchant.id, self.other.id])
        self.assertEqual(find((19.5995, 120.9842), "all"), [])

        with self.assertRaises(BusinessLogicException) as ctx:
            find(MANILA, "everywhere")
        self.assertEqual(ctx.exception.code, "invalid_area_type")

    def test_migrate_legacy_zones(self):
        unclosed = {"type": "Polygon", "coordinates": [[[0, 0], [1, 0], [1, 1], [0, 1]]]}
        Merchant.objects.filter(pk=self.merchant.id).update(
            service_area_geojson=AROUND_MANILA,
            delivery_zones_geojson=unclosed,
        )

        migrated, failed = MerchantLocationService.migrate_legacy_zones(self.merchant.id)
        self.assertEqual(migrated, ["service_area"])
        self.assertEqual(failed, ["delivery_zones"])

        self.merchant.refresh_from_db()
        self.assertIsNone(self.merchant.delivery_zones)
        self.assertTrue(MerchantDiscoveryService.containing_zone(self.merchant.id, MANILA, "service_area"))

        # Already migrated zones are kept unless overwrite is requested
        migrated, _ = MerchantLocationService.migrate_legacy_zones(self.merchant.id)
        self.assertEqual(migrated, [])

    def test_migrate_zone_geometries_command(self):
        Merchant.objects.filter(pk=self.other.id).update(priority_zones_geojson=AROUND_MANILA)

        out = StringIO()
        call_command("migrate_zone_geometries", stdout=out)
        self.assertIn("Migrated 1 zones (0 failed)", out.getvalue())
        self.assertTrue(MerchantDiscoveryService.containing_zone(self.other.id, MANILA, "priority_zones"))


class MerchantLocationServiceTestCase(TestCase):
    def setUp(self):
        self.merchant = make_merchant("SVC", MANILA)
        self.address = MerchantAddress.objects.create(
            label="Warehouse", latitude=Decimal("14.5547"), longitude=Decimal("121.0244"),
        )
        self.mutations = []
        location_derived_changed.connect(self._record, sender=Merchant)
        self.addCleanup(location_derived_changed.disconnect, self._record, sender=Merchant)

    def _record(self, sender, instance, cleared, **kwargs):
        self.mutations.append(cleared)

    def test_partial_pair_is_rejected(self):
        with self.assertRaises(InvalidCoordinate):
            MerchantLocationService.set_scalar_location(self.merchant.id, 14.6, None)
        with self.assertRaises(InvalidCoordinate):
            MerchantLocationService.set_scalar_location(self.merchant.id, 14.6, 181)

        self.merchant.refresh_from_db()
        self.assertEqual(self.merchant.latitude, Decimal("14.5995"))

    def test_setting_same_location_is_a_no_op(self):
        MerchantLocationService.set_scalar_location(self.merchant.id, 14.5995, 120.9842)
        self.assertEqual(self.mutations, [])

        MerchantLocationService.set_scalar_location(self.merchant.id, 14.6, 120.99)
        self.assertEqual(self.mutations, [False])

    def test_zero_and_clear(self):
        merchant = MerchantLocationService.set_scalar_location(self.merchant.id, 0, 120.9842)
        self.assertIsNone(merchant.location)

        MerchantLocationService.set_scalar_location(self.merchant.id, 14.5995, 120.9842)
        merchant = MerchantLocationService.clear_location(self.merchant.id)
        self.assertIsNone(merchant.latitude)
        self.assertIsNone(merchant.coordinates)
        self.assertEqual(self.mutations, [True, False, True])

    def test_unknown_merchant(self):
        with self.assertRaises(BusinessLogicException) as ctx:
            MerchantLocationService.set_scalar_location(999999, 14.5995, 120.9842)
        self.assertEqual(ctx.exception.code, "merchant_not_found")

    def test_location_source(self):
        merchant = MerchantLocationService.set_location_source(
            self.merchant.id, FromAddress(self.address.id, MerchantAddress)
        )
        self.assertEqual(merchant.active_address_id, self.address.id)
        self.assertEqual(merchant.coordinates["coordinates"], [121.0244, 14.5547])

        MerchantLocationService.set_address_location(self.address.id, 14.56, 121.03)
        merchant.refresh_from_db()
        self.assertEqual((merchant.location.x, merchant.location.y), (121.03, 14.56))

        merchant = MerchantLocationService.set_location_source(self.merchant.id, Own(14.5995, 120.9842))
        self.assertIsNone(merchant.active_address_id)
        self.assertEqual(merchant.coordinates["coordinates"], [120.9842, 14.5995])

        # Moving the detached address no longer moves the merchant
        MerchantLocationService.set_address_location(self.address.id, 14.57, 121.04)
        merchant.refresh_from_db()
        self.assertEqual(merchant.latitude, Decimal("14.5995"))

    def test_set_scalar_location_detaches_address(self):
        MerchantLocationService.set_location_source(
            self.merchant.id, FromAddress(self.address.id, MerchantAddress)
        )
        merchant = MerchantLocationService.set_scalar_location(self.merchant.id, 14.5547, 121.0244)
        self.assertIsNone(merchant.active_address_id)


class AddressPropagationTestCase(TestCase):
    def setUp(self):
        self.address = MerchantAddress.objects.create(
            label="Main", latitude=Decimal("14.5547"), longitude=Decimal("121.0244"),
        )
        self.merchant = make_merchant("ADDR")
        MerchantLocationService.set_location_source(
            self.merchant.id, FromAddress(self.address.id, MerchantAddress)
        )
        self.merchant_saves = []
        pre_save.connect(self._record_save, sender=Merchant)
        self.addCleanup(pre_save.disconnect, self._record_save, sender=Merchant)

    def _record_save(self, sender, instance, **kwargs):
        self.merchant_saves.append(instance.pk)

    def test_label_edit_does_not_resave_merchants(self):
        self.address.label = "Main Branch"
        self.address.save()
        self.assertEqual(self.merchant_saves, [])

    def test_verification_flip_skips_location_rewrite(self):
        self.address.is_verified = True
        self.address.save()

        self.assertEqual(self.merchant_saves, [])
        self.merchant.refresh_from_db()
        self.assertTrue(self.merchant.is_location_verified)

    def test_move_resaves_merchants(self):
        MerchantLocationService.set_address_location(self.address.id, 14.56, 121.03)

        self.assertEqual(self.merchant_saves, [self.merchant.pk])
        self.merchant.refresh_from_db()
        self.assertEqual((self.merchant.location.x, self.merchant.location.y), (121.03, 14.56))

    def test_scalar_update_on_address_queryset_propagates(self):
        MerchantAddress.objects.filter(pk=self.address.pk).update(latitude=Decimal("14.57"))

        self.merchant.refresh_from_db()
        self.assertEqual(self.merchant.latitude, Decimal("14.57"))


class MerchantAPITestCase(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.merchant = make_merchant("API", ONE_KM_NORTH)
        self.admin = User.objects.create_superuser("admin", "admin@example.com", "pass")

    def test_nearby_endpoint(self):
        response = self.client.get("/api/v1/merchants/nearby/", {
            "lat": MANILA[0], "lng": MANILA[1], "radius_meters": 2000,
        })
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["count"], 1)
        self.assertEqual(response.data["results"][0]["id"], self.merchant.id)

    def test_nearby_uses_location_headers(self):
        response = self.client.get(
            "/api/v1/merchants/nearby/",
            {"radius_meters": 2000},
            HTTP_X_LOCATION_LAT=str(MANILA[0]),
            HTTP_X_LOCATION_LNG=str(MANILA[1]),
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["count"], 1)

    def test_location_required(self):
        response = self.client.get("/api/v1/merchants/nearby/")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"]["code"], "location_required")

    def test_deliverable_endpoint(self):
        response = self.client.get("/api/v1/merchants/deliverable/", {"lat": MANILA[0], "lng": MANILA[1]})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([m["code"] for m in response.data["results"]], ["API"])

    def test_admin_only(self):
        response = self.client.put(
            f"/api/v1/merchants/{self.merchant.id}/location/",
            {"latitude": 14.6, "longitude": 121.0},
            format="json",
        )
        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))

    def test_admin_sets_location(self):
        self.client.force_authenticate(user=self.admin)
        response = self.client.put(
            f"/api/v1/merchants/{self.merchant.id}/location/",
            {"latitude": 14.6, "longitude": 121.0},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["coordinates"], {"type": "Point", "coordinates": [121.0, 14.6]})

    def test_invalid_coordinate_is_a_400(self):
        self.client.force_authenticate(user=self.admin)
        response = self.client.put(
            f"/api/v1/merchants/{self.merchant.id}/location/",
            {"latitude": 95, "longitude": 121.0},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"]["type"], "InvalidCoordinate")
        self.assertEqual(response.data["error"]["code"], "invalid_coordinate")

    def test_zone_endpoints(self):
        self.client.force_authenticate(user=self.admin)
        response = self.client.put(
            f"/api/v1/merchants/{self.merchant.id}/zones/service_area/",
            {"polygon": AROUND_MANILA},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)

        response = self.client.get(
            f"/api/v1/merchants/{self.merchant.id}/zones/service_area/contains/",
            {"lat": MANILA[0], "lng": MANILA[1]},
        )
        self.assertTrue(response.data["contains"])

        response = self.client.put(
            f"/api/v1/merchants/{self.merchant.id}/zones/parking_lot/",
            {"polygon": AROUND_MANILA},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"]["code"], "invalid_zone_field")
