# apps/core/tests.py
from unittest import mock

from django.db import DatabaseError
from django.test import TestCase, SimpleTestCase, RequestFactory
from django.http import JsonResponse
from apps.core.middleware import CorrelationIDMiddleware, LocationContextMiddleware, get_correlation_id

class MiddlewareTestCase(SimpleTestCase):
    def setUp(self):
        self.factory = RequestFactory()
        self.get_response = lambda req: JsonResponse({"status": "ok"})

    def test_correlation_id_generation(self):
        middleware = CorrelationIDMiddleware(self.get_response)
        request = self.factory.get("/")
        response = middleware(request)
        
        self.assertTrue(response.has_header("X-Request-ID"))
        self.assertIsNotNone(request.correlation_id)

    def test_correlation_id_propagated_and_reset(self):
        seen = {}

        def get_response(req):
            seen["id"] = get_correlation_id()
            return JsonResponse({})

        middleware = CorrelationIDMiddleware(get_response)
        response = middleware(self.factory.get("/", HTTP_X_REQUEST_ID="abc-123"))

        self.assertEqual(seen["id"], "abc-123")
        self.assertEqual(response["X-Request-ID"], "abc-123")
        self.assertIsNone(get_correlation_id())

    def test_location_headers_resolve_point(self):
        middleware = LocationContextMiddleware(self.get_response)
        request = self.factory.get("/", HTTP_X_LOCATION_LAT="14.5995", HTTP_X_LOCATION_LNG="120.9842")
        middleware.process_request(request)

        self.assertEqual(request.search_point.srid, 4326)
        self.assertAlmostEqual(request.search_point.x, 120.9842)
        self.assertAlmostEqual(request.search_point.y, 14.5995)

    def test_invalid_location_headers_ignored(self):
        middleware = LocationContextMiddleware(self.get_response)
        for lat, lng in [("abc", "120"), ("95", "120"), ("0", "0"), ("14.5", "")]:
            request = self.factory.get("/", HTTP_X_LOCATION_LAT=lat, HTTP_X_LOCATION_LNG=lng)
            middleware.process_request(request)
            self.assertIsNone(request.search_point)

class HealthCheckTestCase(TestCase):
    def test_health_check_ok(self):
        response = self.client.get("/health/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")

    def test_health_check_db_down(self):
        with mock.patch("apps.core.views.connection.cursor", side_effect=DatabaseError("down")):
            response = self.client.get("/health/")
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["services"]["db"], "unreachable")
