import uuid
import logging
from contextvars import ContextVar
from django.utils.deprecation import MiddlewareMixin

from apps.locations.codec import GeometryCodec
from apps.utils.exceptions import GeometryError

logger = logging.getLogger(__name__)

# ContextVar for Request ID (Async Safe)
_correlation_id = ContextVar("correlation_id", default=None)

def get_correlation_id():
    return _correlation_id.get()

class CorrelationIDMiddleware:
    """
    Attaches a unique Request ID (Trace ID) to every request.
    """
    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        request_id = request.headers.get('X-Request-ID') or str(uuid.uuid4())
        token = _correlation_id.set(request_id)
        request.correlation_id = request_id

        try:
            response = self.get_response(request)
            response['X-Request-ID'] = request_id
            return response
        finally:
            _correlation_id.reset(token)

class LocationContextMiddleware(MiddlewareMixin):
    """
    Resolves the caller's position from X-Location-Lat / X-Location-Lng.
    Sets request.search_point (a GEOS Point, SRID 4326) or None.
    Bad headers are ignored; discovery views then ask for explicit lat/lng.
    """

    def process_request(self, request):
        request.search_point = None

        lat = request.headers.get('X-Location-Lat')
        lng = request.headers.get('X-Location-Lng')
        if not lat or not lng:
            return

        try:
            # Zero headers come from clients without a GPS fix
            if GeometryCodec.is_unset(lat, lng):
                return
            request.search_point = GeometryCodec.scalar_to_native(lat, lng)
        except GeometryError as e:
            logger.debug(f"Ignoring location headers: {e}")
