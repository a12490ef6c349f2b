# apps/locations/codec.py
import json
import math
import numbers
import string
from decimal import Decimal, InvalidOperation
from typing import NamedTuple, Optional, Tuple

from django.contrib.gis.geos import (
    GEOSException,
    GEOSGeometry,
    LinearRing,
    MultiPolygon,
    Point,
    Polygon,
)

from apps.utils.exceptions import (
    IndexInconsistency,
    InvalidCoordinate,
    MalformedGeometry,
    ReferenceSystemMismatch,
)

WGS84_SRID = 4326

# Must match LocationRecord.latitude/longitude (decimal_places=7, ~1cm)
COORDINATE_QUANTUM = Decimal("0.0000001")

NULL_SENTINELS = {"", "null", "none", "undefined"}


class DerivedLocation(NamedTuple):
    latitude: Optional[Decimal]
    longitude: Optional[Decimal]
    structured: Optional[dict]
    native: Optional[Point]


class GeometryCodec:
    """
    Pure conversions between the three location representations:

    * scalar pair      -> (Decimal latitude, Decimal longitude)
    * structured point -> {"type": "Point", "coordinates": [lng, lat]}
    * native point     -> GEOS Point(lng, lat, srid=4326)

    No I/O. Every function either returns a valid value or raises one of
    InvalidCoordinate / MalformedGeometry / ReferenceSystemMismatch.
    """

    # ------------------------------------------------------------------
    # Scalars
    # ------------------------------------------------------------------
    @staticmethod
    def to_decimal(value) -> Optional[Decimal]:
        """
        Coerces a user supplied coordinate into a Decimal.
        None and blank strings mean "not set".
        """
        if value is None:
            return None
        if isinstance(value, bool):
            raise InvalidCoordinate(f"Coordinate must be a number, got {value!r}")

        try:
            if isinstance(value, Decimal):
                number = value
            elif isinstance(value, float):
                # str() gives the shortest repr, so 14.5995 stays 14.5995
                number = Decimal(str(value))
            elif isinstance(value, int):
                number = Decimal(value)
            elif isinstance(value, str):
                text = value.strip()
                if not text:
                    return None
                number = Decimal(text)
            else:
                raise InvalidCoordinate(f"Coordinate must be a number, got {type(value).__name__}")
        except InvalidOperation:
            raise InvalidCoordinate(f"Coordinate is not a number: {value!r}")

        if not number.is_finite():
            raise InvalidCoordinate(f"Coordinate must be finite, got {value!r}")
        return number

    @staticmethod
    def quantize(value: Decimal) -> Decimal:
        return value.quantize(COORDINATE_QUANTUM)

    @staticmethod
    def validate_pair(latitude, longitude) -> Tuple[Decimal, Decimal]:
        lat = GeometryCodec.to_decimal(latitude)
        lng = GeometryCodec.to_decimal(longitude)

        if lat is None or lng is None:
            raise InvalidCoordinate("Latitude and longitude are both required")
        if not Decimal(-90) <= lat <= Decimal(90):
            raise InvalidCoordinate("Latitude must be between -90 and 90 degrees")
        if not Decimal(-180) <= lng <= Decimal(180):
            raise InvalidCoordinate("Longitude must be between -180 and 180 degrees")

        return GeometryCodec.quantize(lat), GeometryCodec.quantize(lng)

    @staticmethod
    def is_unset(latitude, longitude) -> bool:
        """
        Zero/null policy: a missing component or a 0 means "not set".
        Zero is the storage sentinel for unset, never the 0°/0° point.
        Compared at storage precision, so 0.00000004 counts as 0.
        """
        lat = GeometryCodec.to_decimal(latitude)
        lng = GeometryCodec.to_decimal(longitude)
        if lat is None or lng is None:
            return True
        return GeometryCodec._is_stored_zero(lat) or GeometryCodec._is_stored_zero(lng)

    @staticmethod
    def _is_stored_zero(value: Decimal) -> bool:
        # abs() bound keeps quantize() inside the decimal context precision
        return abs(value) < 1 and GeometryCodec.quantize(value) == 0

    # ------------------------------------------------------------------
    # Points
    # ------------------------------------------------------------------
    @staticmethod
    def scalar_to_structured(latitude, longitude) -> dict:
        lat, lng = GeometryCodec.validate_pair(latitude, longitude)
        return {"type": "Point", "coordinates": [float(lng), float(lat)]}

    @staticmethod
    def scalar_to_native(latitude, longitude) -> Point:
        lat, lng = GeometryCodec.validate_pair(latitude, longitude)
        return Point(float(lng), float(lat), srid=WGS84_SRID)

    @staticmethod
    def check_srid(geometry) -> None:
        if geometry.srid != WGS84_SRID:
            raise ReferenceSystemMismatch(
                f"Expected SRID {WGS84_SRID}, got {geometry.srid}"
            )

    @staticmethod
    def _position(value, what="coordinates") -> Tuple[float, float]:
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise MalformedGeometry(f"{what} must be a [longitude, latitude] pair")

        for component in value:
            if isinstance(component, bool) or not isinstance(component, numbers.Real):
                raise MalformedGeometry(f"{what} must contain numbers only")
            if not math.isfinite(component):
                raise MalformedGeometry(f"{what} must contain finite numbers only")

        return float(value[0]), float(value[1])

    @staticmethod
    def structured_to_native(document) -> Point:
        if not isinstance(document, dict) or document.get("type") != "Point":
            raise MalformedGeometry("Structured point must have type 'Point'")

        lng, lat = GeometryCodec._position(document.get("coordinates"))
        # Range check on the way in; the document itself is only shape-checked
        GeometryCodec.validate_pair(lat, lng)
        return Point(lng, lat, srid=WGS84_SRID)

    @staticmethod
    def native_to_structured(point) -> dict:
        if not isinstance(point, GEOSGeometry) or point.geom_type != "Point":
            raise MalformedGeometry("Native value must be a Point")
        GeometryCodec.check_srid(point)

        lng, lat = GeometryCodec._position(point.coords[:2])
        GeometryCodec.validate_pair(lat, lng)
        return {"type": "Point", "coordinates": [lng, lat]}

    @staticmethod
    def native_to_scalar(point) -> Tuple[Decimal, Decimal]:
        document = GeometryCodec.native_to_structured(point)
        return GeometryCodec.structured_to_scalar(document)

    @staticmethod
    def structured_to_scalar(document) -> Tuple[Decimal, Decimal]:
        point = GeometryCodec.structured_to_native(document)
        return GeometryCodec.validate_pair(point.y, point.x)

    @staticmethod
    def same_point(a, b) -> bool:
        if a is None or b is None:
            return a is None and b is None
        return a.srid == b.srid and tuple(a.coords) == tuple(b.coords)

    # ------------------------------------------------------------------
    # Derivation (the only path the guard uses)
    # ------------------------------------------------------------------
    @staticmethod
    def derive(latitude, longitude) -> DerivedLocation:
        lat = GeometryCodec.to_decimal(latitude)
        lng = GeometryCodec.to_decimal(longitude)

        if GeometryCodec.is_unset(lat, lng):
            return DerivedLocation(lat, lng, None, None)

        lat, lng = GeometryCodec.validate_pair(lat, lng)
        return DerivedLocation(
            latitude=lat,
            longitude=lng,
            structured=GeometryCodec.scalar_to_structured(lat, lng),
            native=GeometryCodec.scalar_to_native(lat, lng),
        )

    @staticmethod
    def assert_consistent(record) -> None:
        """
        Raises IndexInconsistency if the record's derived fields are not
        exactly what the codec derives from its scalar pair.
        """
        expected = GeometryCodec.derive(record.latitude, record.longitude)

        if record.coordinates != expected.structured:
            raise IndexInconsistency(
                f"{type(record).__name__} {record.pk}: structured point "
                f"{record.coordinates!r} != {expected.structured!r}",
                record_id=record.pk,
            )
        if not GeometryCodec.same_point(record.location, expected.native):
            raise IndexInconsistency(
                f"{type(record).__name__} {record.pk}: native point "
                f"{getattr(record.location, 'ewkt', None)} does not match scalar pair",
                record_id=record.pk,
            )

    # ------------------------------------------------------------------
    # Legacy shapes
    # ------------------------------------------------------------------
    @staticmethod
    def legacy_xy_to_structured(document) -> dict:
        """
        Compatibility shim for historical {x, y} rows. x is longitude, y is latitude.
        New writers must never produce this shape.
        """
        if not isinstance(document, dict) or "x" not in document or "y" not in document:
            raise MalformedGeometry("Legacy point must have 'x' and 'y' keys")

        lng, lat = GeometryCodec._position([document["x"], document["y"]], what="x/y")
        GeometryCodec.validate_pair(lat, lng)
        return {"type": "Point", "coordinates": [lng, lat]}

    @staticmethod
    def _from_native_legacy(geometry) -> dict:
        if geometry.srid is None:
            # Plain WKB carries no SRID; legacy columns were declared 4326
            geometry.srid = WGS84_SRID
        return GeometryCodec.native_to_structured(geometry)

    @staticmethod
    def normalize_legacy_input(value) -> Optional[dict]:
        """
        Single entry point for every location shape ever seen in storage:

        * GeoJSON point dicts (returned normalized)
        * {x, y} dicts
        * stringified null: "", "null", "None", "undefined"
        * JSON text of either dict shape
        * hex WKB / EWKB text and raw WKB bytes
        * GEOS geometries

        Returns a GeoJSON point, or None when the value means "unset"
        (including the zero sentinel). Anything else raises MalformedGeometry.
        """
        if value is None:
            return None

        if isinstance(value, GEOSGeometry):
            document = GeometryCodec._from_native_legacy(value.clone())

        elif isinstance(value, (bytes, bytearray, memoryview)):
            raw = bytes(value)
            if raw and all(chr(b) in string.hexdigits for b in raw):
                # GEOS .hex output and hex text stored in bytea columns
                return GeometryCodec.normalize_legacy_input(raw.decode("ascii"))
            try:
                geometry = GEOSGeometry(memoryview(bytes(value)))
            except (GEOSException, ValueError, TypeError):
                raise MalformedGeometry("Unreadable legacy WKB value")
            document = GeometryCodec._from_native_legacy(geometry)

        elif isinstance(value, str):
            text = value.strip()
            if text.lower() in NULL_SENTINELS:
                return None
            if text.startswith("{"):
                try:
                    parsed = json.loads(text)
                except ValueError:
                    raise MalformedGeometry("Legacy location text is not valid JSON")
                if parsed is None:
                    return None
                return GeometryCodec.normalize_legacy_input(parsed)
            if len(text) % 2 == 0 and all(c in string.hexdigits for c in text):
                try:
                    geometry = GEOSGeometry(text)
                except (GEOSException, ValueError):
                    raise MalformedGeometry("Unreadable legacy hex WKB value")
                document = GeometryCodec._from_native_legacy(geometry)
            else:
                raise MalformedGeometry(f"Unrecognised legacy location text: {text[:40]!r}")

        elif isinstance(value, dict):
            if "type" in value:
                native = GeometryCodec.structured_to_native(value)
                document = GeometryCodec.native_to_structured(native)
            elif "x" in value and "y" in value:
                document = GeometryCodec.legacy_xy_to_structured(value)
            else:
                raise MalformedGeometry("Legacy location dict has neither GeoJSON nor x/y keys")

        else:
            raise MalformedGeometry(f"Unsupported legacy location type: {type(value).__name__}")

        lng, lat = document["coordinates"]
        if GeometryCodec.is_unset(lat, lng):
            return None
        return document

    # ------------------------------------------------------------------
    # Zones (Polygon / MultiPolygon)
    # ------------------------------------------------------------------
    @staticmethod
    def _ring(positions) -> LinearRing:
        if not isinstance(positions, (list, tuple)) or len(positions) < 4:
            raise MalformedGeometry("A polygon ring needs at least 4 positions")

        points = [GeometryCodec._position(p, what="ring position") for p in positions]
        if points[0] != points[-1]:
            # Closure is preserved from the source, never repaired here
            raise MalformedGeometry("Polygon ring is not closed (first and last positions differ)")

        for lng, lat in points:
            GeometryCodec.validate_pair(lat, lng)

        return LinearRing(points, srid=WGS84_SRID)

    @staticmethod
    def _polygon(rings) -> Polygon:
        if not isinstance(rings, (list, tuple)) or not rings:
            raise MalformedGeometry("Polygon coordinates must be a list of rings")
        polygon = Polygon(*[GeometryCodec._ring(r) for r in rings])
        polygon.srid = WGS84_SRID
        return polygon

    @staticmethod
    def polygon_to_native(document, multi=False):
        """
        Converts a GeoJSON Polygon/MultiPolygon document into a GEOS value
        with ring order and winding exactly as supplied. A Polygon is promoted
        to a one-member MultiPolygon when the target field is multi.
        """
        if document is None:
            return None
        if not isinstance(document, dict):
            raise MalformedGeometry("Zone document must be a GeoJSON object")

        geom_type = document.get("type")
        coordinates = document.get("coordinates")

        if geom_type == "Polygon":
            polygon = GeometryCodec._polygon(coordinates)
            if not multi:
                return polygon
            geometry = MultiPolygon(polygon)
        elif geom_type == "MultiPolygon":
            if not multi:
                raise MalformedGeometry("A MultiPolygon cannot be stored in a Polygon field")
            if not isinstance(coordinates, (list, tuple)) or not coordinates:
                raise MalformedGeometry("MultiPolygon coordinates must be a list of polygons")
            geometry = MultiPolygon(*[GeometryCodec._polygon(p) for p in coordinates])
        else:
            raise MalformedGeometry("Zone document type must be 'Polygon' or 'MultiPolygon'")

        geometry.srid = WGS84_SRID
        return geometry

    @staticmethod
    def native_to_polygon_document(geometry) -> Optional[dict]:
        if geometry is None:
            return None
        if geometry.geom_type not in ("Polygon", "MultiPolygon"):
            raise MalformedGeometry(f"Expected a Polygon or MultiPolygon, got {geometry.geom_type}")
        GeometryCodec.check_srid(geometry)

        def rings(polygon_coords):
            return [[list(position) for position in ring] for ring in polygon_coords]

        if geometry.geom_type == "Polygon":
            coordinates = rings(geometry.coords)
        else:
            coordinates = [rings(polygon) for polygon in geometry.coords]

        return {"type": geometry.geom_type, "coordinates": coordinates}
