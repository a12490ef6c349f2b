# apps/utils/tests.py
import json
import logging
from decimal import Decimal

from django.test import SimpleTestCase
from rest_framework import status
from rest_framework.exceptions import ValidationError

from apps.utils.exceptions import (
    BusinessLogicException,
    DerivedFieldWriteError,
    InvalidCoordinate,
    custom_exception_handler,
)
from apps.utils.logging import LocationPrivacyJsonFormatter


class JsonFormatterTestCase(SimpleTestCase):
    def setUp(self):
        self.formatter = LocationPrivacyJsonFormatter()

    def _format(self, message, metadata=None):
        record = logging.LogRecord("apps.test", logging.INFO, __file__, 1, message, None, None)
        record.correlation_id = "req-1"
        if metadata is not None:
            record.metadata = metadata
        return json.loads(self.formatter.format(record))

    def test_basic_fields(self):
        output = self._format("hello")
        self.assertEqual(output["message"], "hello")
        self.assertEqual(output["level"], "INFO")
        self.assertEqual(output["correlation_id"], "req-1")

    def test_secrets_are_masked(self):
        output = self._format("login", {"user": "admin", "password": "hunter2", "nested": {"token": "abc"}})
        self.assertEqual(output["metadata"]["password"], "***MASKED***")
        self.assertEqual(output["metadata"]["nested"]["token"], "***MASKED***")
        self.assertEqual(output["metadata"]["user"], "admin")

    def test_coordinates_are_coarsened(self):
        output = self._format("moved", {
            "merchant_id": 7,
            "latitude": Decimal("14.5995123"),
            "lng": 120.9842456,
            "point": {"type": "Point", "coordinates": [120.9842456, 14.5995123]},
        })
        metadata = output["metadata"]
        self.assertEqual(metadata["merchant_id"], 7)
        self.assertEqual(metadata["latitude"], 14.6)
        self.assertEqual(metadata["lng"], 120.984)
        self.assertEqual(metadata["point"]["coordinates"], [120.984, 14.6])


class ExceptionHandlerTestCase(SimpleTestCase):
    def test_business_logic_error(self):
        response = custom_exception_handler(
            BusinessLogicException("Unknown zone", code="invalid_zone_field"), {}
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"], {
            "code": "invalid_zone_field",
            "message": "Unknown zone",
            "type": "BusinessLogicError",
        })

    def test_geometry_error_keeps_its_type(self):
        response = custom_exception_handler(InvalidCoordinate("Latitude out of range"), {})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"]["type"], "InvalidCoordinate")
        self.assertEqual(response.data["error"]["code"], "invalid_coordinate")

    def test_derived_field_write(self):
        response = custom_exception_handler(DerivedFieldWriteError("location is guard owned"), {})
        self.assertEqual(response.data["error"]["code"], "guard_owned_field")

    def test_validation_errors_are_wrapped(self):
        response = custom_exception_handler(ValidationError({"lat": ["A valid number is required."]}), {})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"]["code"], "validation_error")
        self.assertIn("lat", response.data["error"]["details"])

    def test_unhandled_exceptions_pass_through(self):
        self.assertIsNone(custom_exception_handler(ValueError("boom"), {}))
