# apps/locations/tests.py
from decimal import Decimal
from io import StringIO

from django.contrib.gis.geos import Point, Polygon
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import SimpleTestCase, TestCase

from apps.locations.codec import GeometryCodec
from apps.locations.guard import ConsistencyGuard, location_derived_changed
from apps.locations.indexes import SpatialIndexService
from apps.locations.services import LocationMaintenanceService
from apps.locations.tasks import audit_location_consistency
from apps.merchants.models import Merchant, MerchantAddress
from apps.utils.exceptions import (
    DerivedFieldWriteError,
    IndexInconsistency,
    InvalidCoordinate,
    MalformedGeometry,
    ReferenceSystemMismatch,
)

MANILA = (Decimal("14.5995"), Decimal("120.9842"))

SQUARE = {
    "type": "Polygon",
    "coordinates": [[[0, 0], [1, 0], [1, 1], [0, 1], [0, 0]]],
}


class GeometryCodecTestCase(SimpleTestCase):
    def test_scalar_to_structured_is_lng_lat(self):
        doc = GeometryCodec.scalar_to_structured(14.5995, 120.9842)
        self.assertEqual(doc, {"type": "Point", "coordinates": [120.9842, 14.5995]})

    def test_scalar_to_native(self):
        point = GeometryCodec.scalar_to_native(*MANILA)
        self.assertEqual(point.srid, 4326)
        self.assertEqual((point.x, point.y), (120.9842, 14.5995))

    def test_round_trip_is_exact_at_seven_places(self):
        for lat, lng in [
            (Decimal("14.1234567"), Decimal("-120.7654321")),
            (Decimal("-33.8688197"), Decimal("151.2092955")),
            (Decimal("89.9999999"), Decimal("179.9999999")),
        ]:
            doc = GeometryCodec.scalar_to_structured(lat, lng)
            native = GeometryCodec.structured_to_native(doc)
            self.assertEqual(GeometryCodec.native_to_scalar(native), (lat, lng))
            self.assertEqual(GeometryCodec.structured_to_scalar(doc), (lat, lng))
            self.assertEqual(GeometryCodec.native_to_structured(native), doc)

    def test_float_input_keeps_its_decimal_form(self):
        lat, lng = GeometryCodec.validate_pair(14.5995, 120.9842)
        self.assertEqual(lat, Decimal("14.5995"))
        self.assertEqual(lng, Decimal("120.9842"))

    def test_invalid_coordinates(self):
        for lat, lng in [
            (91, 0),
            (-90.0000001, 10),
            (10, 180.5),
            (float("nan"), 10),
            (10, float("inf")),
            ("abc", 10),
            (True, 10),
            (None, 10),
        ]:
            with self.assertRaises(InvalidCoordinate, msg=f"{lat}, {lng}"):
                GeometryCodec.scalar_to_structured(lat, lng)

    def test_malformed_structured_point(self):
        for doc in [
            {"type": "LineString", "coordinates": [1, 2]},
            {"type": "Point", "coordinates": [1]},
            {"type": "Point", "coordinates": ["1", "2"]},
            {"type": "Point", "coordinates": [1, float("nan")]},
            {"coordinates": [1, 2]},
            "POINT(1 2)",
        ]:
            with self.assertRaises(MalformedGeometry, msg=repr(doc)):
                GeometryCodec.structured_to_native(doc)

    def test_native_requires_wgs84(self):
        with self.assertRaises(ReferenceSystemMismatch):
            GeometryCodec.native_to_structured(Point(1, 2, srid=3857))
        with self.assertRaises(ReferenceSystemMismatch):
            GeometryCodec.native_to_structured(Point(1, 2))

    def test_derive_zero_and_null_mean_unset(self):
        for lat, lng in [(0, 120.9842), (14.5995, 0), (None, 120.9842), (14.5995, None), (None, None)]:
            derived = GeometryCodec.derive(lat, lng)
            self.assertIsNone(derived.structured)
            self.assertIsNone(derived.native)

        derived = GeometryCodec.derive(*MANILA)
        self.assertEqual(derived.structured["coordinates"], [120.9842, 14.5995])
        self.assertEqual(derived.native.srid, 4326)

    def test_values_that_round_to_zero_are_unset(self):
        for lat, lng in [
            (Decimal("0.00000004"), Decimal("120.9842")),
            (Decimal("14.5995"), Decimal("-0.00000005")),
            (4e-08, 120.9842),
        ]:
            self.assertTrue(GeometryCodec.is_unset(lat, lng), msg=f"{lat}, {lng}")
            derived = GeometryCodec.derive(lat, lng)
            self.assertIsNone(derived.structured)
            self.assertIsNone(derived.native)

        self.assertFalse(GeometryCodec.is_unset(Decimal("0.0000001"), Decimal("120.9842")))
        self.assertFalse(GeometryCodec.is_unset(Decimal("1E+30"), Decimal("120.9842")))

    def test_legacy_xy(self):
        doc = GeometryCodec.legacy_xy_to_structured({"x": 120.9842, "y": 14.5995})
        self.assertEqual(doc, {"type": "Point", "coordinates": [120.9842, 14.5995]})

        with self.assertRaises(MalformedGeometry):
            GeometryCodec.legacy_xy_to_structured({"lat": 14.5995, "lng": 120.9842})

    def test_normalize_legacy_input(self):
        expected = {"type": "Point", "coordinates": [120.9842, 14.5995]}
        point = Point(120.9842, 14.5995, srid=4326)

        for value in [
            expected,
            {"x": 120.9842, "y": 14.5995},
            '{"x": 120.9842, "y": 14.5995}',
            '{"type": "Point", "coordinates": [120.9842, 14.5995]}',
            point,
            bytes(point.wkb).hex(),
            bytes(point.ewkb).hex().upper(),
            bytes(point.wkb),
        ]:
            self.assertEqual(GeometryCodec.normalize_legacy_input(value), expected, msg=repr(value))

    def test_normalize_legacy_null_shapes(self):
        for value in [None, "", "null", "None", "  NULL ", "undefined",
                      {"type": "Point", "coordinates": [0, 0]}, {"x": 0, "y": 0}]:
            self.assertIsNone(GeometryCodec.normalize_legacy_input(value), msg=repr(value))

    def test_normalize_legacy_rejects_garbage(self):
        for value in [12345, "garbage", "{not json", [120.9842, 14.5995], {"foo": 1}]:
            with self.assertRaises(MalformedGeometry, msg=repr(value)):
                GeometryCodec.normalize_legacy_input(value)

        with self.assertRaises(ReferenceSystemMismatch):
            GeometryCodec.normalize_legacy_input(bytes(Point(1, 2, srid=3857).ewkb).hex())

    def test_polygon_keeps_rings_as_given(self):
        clockwise = {
            "type": "Polygon",
            "coordinates": [[[0, 0], [0, 1], [1, 1], [1, 0], [0, 0]]],
        }
        for doc in (SQUARE, clockwise):
            native = GeometryCodec.polygon_to_native(doc)
            self.assertEqual(native.geom_type, "Polygon")
            self.assertEqual(native.srid, 4326)
            self.assertEqual(GeometryCodec.native_to_polygon_document(native), doc)

    def test_polygon_promoted_for_multi_fields(self):
        native = GeometryCodec.polygon_to_native(SQUARE, multi=True)
        self.assertEqual(native.geom_type, "MultiPolygon")
        self.assertEqual(len(native), 1)
        self.assertEqual(
            GeometryCodec.native_to_polygon_document(native),
            {"type": "MultiPolygon", "coordinates": [SQUARE["coordinates"]]},
        )

    def test_polygon_errors(self):
        unclosed = {"type": "Polygon", "coordinates": [[[0, 0], [1, 0], [1, 1], [0, 1]]]}
        with self.assertRaises(MalformedGeometry):
            GeometryCodec.polygon_to_native(unclosed)

        open_ring = {"type": "Polygon", "coordinates": [[[0, 0], [1, 0], [1, 1], [0, 1], [0, 0.5]]]}
        with self.assertRaises(MalformedGeometry):
            GeometryCodec.polygon_to_native(open_ring)

        multi = {"type": "MultiPolygon", "coordinates": [SQUARE["coordinates"]]}
        with self.assertRaises(MalformedGeometry):
            GeometryCodec.polygon_to_native(multi, multi=False)

        with self.assertRaises(MalformedGeometry):
            GeometryCodec.polygon_to_native({"type": "Point", "coordinates": [1, 2]})

        self.assertIsNone(GeometryCodec.polygon_to_native(None))
        self.assertIsNone(GeometryCodec.native_to_polygon_document(None))

    def test_native_polygon_requires_wgs84(self):
        polygon = Polygon(((0, 0), (1, 0), (1, 1), (0, 1), (0, 0)), srid=3857)
        with self.assertRaises(ReferenceSystemMismatch):
            GeometryCodec.native_to_polygon_document(polygon)


class SignalProbeMixin:
    def setUp(self):
        super().setUp()
        self.mutations = []
        location_derived_changed.connect(self._record)
        self.addCleanup(location_derived_changed.disconnect, self._record)

    def _record(self, sender, instance, cleared, **kwargs):
        self.mutations.append((sender, instance.pk, cleared))


class ConsistencyGuardTestCase(SignalProbeMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.merchant = Merchant.objects.create(
            name="Binondo Bakery", code="MNL-001",
            latitude=MANILA[0], longitude=MANILA[1],
        )
        self.mutations.clear()

    def assertDerived(self, merchant, lat, lng):
        merchant.refresh_from_db()
        self.assertEqual(merchant.coordinates, {"type": "Point", "coordinates": [lng, lat]})
        self.assertEqual(merchant.location.srid, 4326)
        self.assertEqual((merchant.location.x, merchant.location.y), (lng, lat))
        GeometryCodec.assert_consistent(merchant)

    def test_create_derives_fields(self):
        self.assertDerived(self.merchant, 14.5995, 120.9842)
        self.assertIsNotNone(self.merchant.last_location_sync)

    def test_new_record_without_location(self):
        merchant = Merchant.objects.create(name="Pending", code="MNL-002")
        merchant.refresh_from_db()
        self.assertIsNone(merchant.coordinates)
        self.assertIsNone(merchant.location)

    def test_identical_rewrite_is_not_a_mutation(self):
        self.merchant.save()
        self.merchant.latitude = Decimal("14.5995000")
        self.merchant.save()
        self.merchant.name = "Binondo Bakery & Cafe"
        self.merchant.save()

        fresh = Merchant.objects.get(pk=self.merchant.pk)
        fresh.save()
        self.assertEqual(self.mutations, [])

    def test_scalar_change_fires_once(self):
        self.merchant.latitude = Decimal("14.6095")
        self.merchant.save()
        self.assertEqual(self.mutations, [(Merchant, self.merchant.pk, False)])
        self.assertDerived(self.merchant, 14.6095, 120.9842)

    def test_zero_clears_derived_fields(self):
        self.merchant.latitude = 0
        self.merchant.save()

        self.merchant.refresh_from_db()
        self.assertEqual(self.merchant.latitude, 0)
        self.assertIsNone(self.merchant.coordinates)
        self.assertIsNone(self.merchant.location)
        self.assertEqual(self.mutations, [(Merchant, self.merchant.pk, True)])

    def test_partial_pair_clears_derived_fields(self):
        self.merchant.longitude = None
        self.merchant.save()

        self.merchant.refresh_from_db()
        self.assertEqual(self.merchant.latitude, MANILA[0])
        self.assertIsNone(self.merchant.location)
        self.assertIsNone(self.merchant.coordinates)

    def test_direct_write_to_derived_field_is_ignored(self):
        self.merchant.location = Point(0.5, 0.5, srid=4326)
        self.merchant.coordinates = {"type": "Point", "coordinates": [0.5, 0.5]}
        with self.assertLogs("apps.locations.guard", level="WARNING"):
            self.merchant.save()

        self.assertDerived(self.merchant, 14.5995, 120.9842)
        self.assertEqual(self.mutations, [])

    def test_direct_write_on_deferred_instance_is_ignored(self):
        merchant = Merchant.objects.defer("latitude").get(pk=self.merchant.pk)
        merchant.coordinates = {"type": "Point", "coordinates": [1, 1]}
        with self.assertLogs("apps.locations.guard", level="WARNING"):
            merchant.save()

        self.assertDerived(merchant, 14.5995, 120.9842)
        self.assertEqual(self.mutations, [])

    def test_scalar_that_rounds_to_zero_clears(self):
        self.merchant.latitude = Decimal("0.00000004")
        self.merchant.save()

        self.merchant.refresh_from_db()
        self.assertEqual(self.merchant.latitude, 0)
        self.assertIsNone(self.merchant.coordinates)
        self.assertIsNone(self.merchant.location)
        self.assertEqual(self.mutations, [(Merchant, self.merchant.pk, True)])
        self.assertEqual(LocationMaintenanceService.audit(Merchant)["drifted"], 0)

    def test_invalid_scalar_aborts_the_write(self):
        self.merchant.latitude = Decimal("95")
        self.merchant.name = "Renamed"
        with self.assertRaises(InvalidCoordinate):
            self.merchant.save()

        fresh = Merchant.objects.get(pk=self.merchant.pk)
        self.assertEqual(fresh.name, "Binondo Bakery")
        self.assertEqual(fresh.latitude, MANILA[0])

    def test_update_fields_are_widened(self):
        self.merchant.latitude = Decimal("14.6095")
        self.merchant.save(update_fields=["latitude"])
        self.assertDerived(self.merchant, 14.6095, 120.9842)

    def test_queryset_update_rejects_derived_fields(self):
        with self.assertRaises(DerivedFieldWriteError):
            Merchant.objects.filter(pk=self.merchant.pk).update(location=Point(1, 1, srid=4326))
        with self.assertRaises(DerivedFieldWriteError):
            Merchant.objects.all().update(coordinates=None)

    def test_queryset_update_of_scalars_runs_guard(self):
        count = Merchant.objects.filter(pk=self.merchant.pk).update(latitude=Decimal("14.6095"))
        self.assertEqual(count, 1)
        self.assertDerived(self.merchant, 14.6095, 120.9842)
        self.assertEqual(len(self.mutations), 1)

    def test_queryset_update_of_other_fields(self):
        count = Merchant.objects.filter(pk=self.merchant.pk).update(name="Plain Update")
        self.assertEqual(count, 1)
        self.assertEqual(self.mutations, [])

    def test_bulk_create_and_bulk_update(self):
        created = Merchant.objects.bulk_create([
            Merchant(name="A", code="BULK-A", latitude=Decimal("14.55"), longitude=Decimal("121.0")),
            Merchant(name="B", code="BULK-B"),
        ])
        self.assertEqual(len(self.mutations), 2)
        a = Merchant.objects.get(code="BULK-A")
        self.assertDerived(a, 14.55, 121.0)

        a.latitude = Decimal("14.56")
        b = Merchant.objects.get(code="BULK-B")
        b.latitude, b.longitude = Decimal("14.57"), Decimal("121.01")
        Merchant.objects.bulk_update([a, b], ["latitude", "longitude"])

        self.assertDerived(a, 14.56, 121.0)
        self.assertDerived(b, 14.57, 121.01)
        self.assertEqual(len(created), 2)

    def test_bulk_update_rejects_derived_fields(self):
        with self.assertRaises(DerivedFieldWriteError):
            Merchant.objects.bulk_update([self.merchant], ["location"])

    def test_force_repairs_drift(self):
        # Simulate a write that bypassed the guard
        Merchant._base_manager.filter(pk=self.merchant.pk).update(location=Point(1, 1, srid=4326))
        drifted = Merchant.objects.get(pk=self.merchant.pk)
        with self.assertRaises(IndexInconsistency):
            GeometryCodec.assert_consistent(drifted)

        self.assertTrue(ConsistencyGuard.apply(drifted, force=True))
        drifted.save()
        self.assertDerived(drifted, 14.5995, 120.9842)


class AddressSourceTestCase(SignalProbeMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.address = MerchantAddress.objects.create(
            label="Main", latitude=Decimal("14.5547"), longitude=Decimal("121.0244"), is_verified=True,
        )
        self.merchant = Merchant.objects.create(
            name="Makati Deli", code="MKT-001",
            latitude=MANILA[0], longitude=MANILA[1],
        )

    def test_repointing_active_address_copies_its_location(self):
        self.merchant.active_address = self.address
        self.merchant.save()

        self.merchant.refresh_from_db()
        self.assertEqual(self.merchant.latitude, Decimal("14.5547"))
        self.assertEqual(self.merchant.coordinates["coordinates"], [121.0244, 14.5547])
        self.assertTrue(self.merchant.is_location_verified)

    def test_address_change_cascades(self):
        self.merchant.active_address = self.address
        self.merchant.save()
        self.mutations.clear()

        self.address.latitude = Decimal("14.5600")
        self.address.save()

        self.merchant.refresh_from_db()
        self.assertEqual(self.merchant.latitude, Decimal("14.56"))
        self.assertEqual((self.merchant.location.x, self.merchant.location.y), (121.0244, 14.56))
        senders = [sender for sender, _, _ in self.mutations]
        self.assertCountEqual(senders, [MerchantAddress, Merchant])

    def test_unrelated_address_save_does_not_touch_merchant(self):
        self.merchant.active_address = self.address
        self.merchant.save()
        self.mutations.clear()

        self.address.label = "Main Branch"
        self.address.save()
        self.assertEqual(self.mutations, [])

    def test_deleted_address_keeps_last_location(self):
        self.merchant.active_address = self.address
        self.merchant.save()
        self.address.delete()

        self.merchant.refresh_from_db()
        self.assertIsNone(self.merchant.active_address)
        self.assertEqual(self.merchant.latitude, Decimal("14.5547"))
        GeometryCodec.assert_consistent(self.merchant)


class MaintenanceTestCase(TestCase):
    def setUp(self):
        self.merchant = Merchant.objects.create(
            name="Quiapo Market", code="QPO-001", latitude=MANILA[0], longitude=MANILA[1],
        )
        self.legacy = Merchant.objects.create(name="Legacy", code="LEG-001")
        # Rows written by the old system: only a legacy {x, y} document
        Merchant._base_manager.filter(pk=self.legacy.pk).update(coordinates={"x": 121.0, "y": 14.6})

    def test_audit_and_backfill(self):
        Merchant._base_manager.filter(pk=self.merchant.pk).update(location=Point(1, 1, srid=4326))

        report = LocationMaintenanceService.audit(Merchant, include_ids=True)
        self.assertEqual(report["total"], 2)
        self.assertEqual(report["with_coordinates"], 1)
        self.assertEqual(sorted(report["drifted_ids"]), sorted([self.merchant.pk, self.legacy.pk]))

        stats = LocationMaintenanceService.backfill(Merchant, batch_size=1)
        self.assertEqual(stats["scanned"], 2)
        self.assertEqual(stats["changed"], 2)
        self.assertEqual(stats["failed"], 0)

        self.legacy.refresh_from_db()
        self.assertEqual(self.legacy.latitude, Decimal("14.6"))
        self.assertEqual(self.legacy.coordinates, {"type": "Point", "coordinates": [121.0, 14.6]})
        self.assertEqual(LocationMaintenanceService.audit(Merchant)["drifted"], 0)

    def test_backfill_skips_undecodable_rows(self):
        Merchant._base_manager.filter(pk=self.legacy.pk).update(coordinates="garbage")
        stats = LocationMaintenanceService.backfill(Merchant)
        self.assertEqual(stats["failed"], 1)

    def test_commands(self):
        out = StringIO()
        with self.assertRaises(CommandError):
            call_command("check_location_consistency", "--fail-on-drift", stdout=out)

        call_command("backfill_locations", "--model", "merchants.Merchant", stdout=out)
        call_command("check_location_consistency", "--fail-on-drift", "--show-ids", stdout=out)
        self.assertIn("consistent", out.getvalue())

    def test_unknown_model_label(self):
        with self.assertRaises(CommandError):
            call_command("backfill_locations", "--model", "auth.User", stdout=StringIO())

    def test_audit_task(self):
        reports = audit_location_consistency()
        by_model = {r["model"]: r for r in reports}
        self.assertEqual(by_model["merchants.Merchant"]["drifted"], 1)
        self.assertEqual(by_model["merchants.MerchantAddress"]["drifted"], 0)


class SpatialIndexTestCase(TestCase):
    def test_expected_indexes_exist(self):
        expected = SpatialIndexService.expected_indexes(Merchant)
        self.assertIn("merchant_loc_gist", expected)
        self.assertIn("merchant_loc_act_gist", expected)
        self.assertIn("merchant_service_area_gist", expected)
        self.assertEqual(SpatialIndexService.missing_indexes(Merchant), set())
        self.assertEqual(SpatialIndexService.missing_indexes(MerchantAddress), set())

    def test_postgis_checks(self):
        self.assertTrue(SpatialIndexService.postgis_version())
        self.assertTrue(SpatialIndexService.srid_available(4326))

        out = StringIO()
        call_command("verify_spatial_indexes", stdout=out)
        self.assertIn("SRID 4326 available", out.getvalue())
