from rest_framework.views import exception_handler
from rest_framework.response import Response
from rest_framework import status

class BusinessLogicException(Exception):
    """
    Base class for domain-specific errors (e.g., InvalidCoordinate, unknown zone field).
    These are expected operational errors, not 500s.
    """
    def __init__(self, message, code="invalid_request"):
        self.message = message
        self.code = code
        super().__init__(message)


class GeometryError(BusinessLogicException):
    """Base for every error raised by the geometry codec."""
    default_code = "geometry_error"

    def __init__(self, message, code=None):
        super().__init__(message, code=code or self.default_code)


class InvalidCoordinate(GeometryError):
    """Latitude/longitude out of range, non-finite or not a number."""
    default_code = "invalid_coordinate"


class MalformedGeometry(GeometryError):
    """A structured document does not have the expected {type, coordinates} shape."""
    default_code = "malformed_geometry"


class ReferenceSystemMismatch(GeometryError):
    """
    A native spatial value is tagged with an SRID other than 4326.
    Never reprojected: the write is rejected.
    """
    default_code = "srid_mismatch"


class DerivedFieldWriteError(BusinessLogicException):
    """A caller tried to write a guard-owned field directly."""
    def __init__(self, message, code="guard_owned_field"):
        super().__init__(message, code=code)


class IndexInconsistency(Exception):
    """
    Derived location fields disagree with their scalar source.
    Indicates a ConsistencyGuard bypass; a data-integrity bug, not a 400.
    """
    def __init__(self, message, record_id=None):
        self.record_id = record_id
        super().__init__(message)


def custom_exception_handler(exc, context):
    """
    Custom DRF Exception Handler.
    Maps BusinessLogicException to HTTP 400 with a standard error structure.
    """
    response = exception_handler(exc, context)

    if isinstance(exc, BusinessLogicException):
        return Response(
            {
                "error": {
                    "code": exc.code,
                    "message": exc.message,
                    "type": type(exc).__name__ if isinstance(exc, GeometryError) else "BusinessLogicError"
                }
            },
            status=status.HTTP_400_BAD_REQUEST
        )

    if response is not None and response.status_code == 400:
        if "error" not in response.data:
            response.data = {
                "error": {
                    "code": "validation_error",
                    "details": response.data
                }
            }

    return response
