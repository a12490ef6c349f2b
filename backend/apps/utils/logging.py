import logging
import json
import re
from decimal import Decimal, InvalidOperation


class CorrelationIdFilter(logging.Filter):
    """
    Stamps every record with the request/task correlation id.
    """

    def filter(self, record):
        if not getattr(record, "correlation_id", None):
            from apps.core.middleware import get_correlation_id
            record.correlation_id = get_correlation_id() or "N/A"
        return True


class LocationPrivacyJsonFormatter(logging.Formatter):
    """
    Structured JSON logging with secret masking and coordinate coarsening.
    Exact merchant/address pins never reach the log aggregator: coordinates
    in metadata are rounded to 3 decimals (~110m).
    """

    SENSITIVE_PATTERNS = {
        r'"password":\s*".*?"': '"password": "***MASKED***"',
        r'"token":\s*".*?"': '"token": "***MASKED***"',
        r'"access_token":\s*".*?"': '"access_token": "***MASKED***"',
        r'"refresh_token":\s*".*?"': '"refresh_token": "***MASKED***"',
    }

    SENSITIVE_KEYS = {'password', 'token', 'access', 'refresh', 'secret', 'key'}
    COORDINATE_KEYS = {'latitude', 'longitude', 'lat', 'lng', 'lon'}
    COORDINATE_PLACES = 3

    def format(self, record):
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "path": record.pathname,
            "line_no": record.lineno,
            "correlation_id": getattr(record, "correlation_id", "N/A"),
        }

        if hasattr(record, "metadata") and isinstance(record.metadata, dict):
            log_record["metadata"] = self._recursive_scrub(record.metadata)

        try:
            json_output = json.dumps(log_record)
        except (TypeError, ValueError):
            log_record["metadata"] = str(getattr(record, "metadata", ""))
            json_output = json.dumps(log_record)

        for pattern, replacement in self.SENSITIVE_PATTERNS.items():
            json_output = re.sub(pattern, replacement, json_output)

        return json_output

    def _coarsen(self, value):
        try:
            return round(float(Decimal(str(value))), self.COORDINATE_PLACES)
        except (InvalidOperation, ValueError, TypeError):
            return value

    def _recursive_scrub(self, data, depth=0):
        """
        Recursively traverse dicts/lists to mask secrets and coarsen coordinates.
        Depth-limited.
        """
        if depth > 10:
            return "[MAX_DEPTH_EXCEEDED]"

        if isinstance(data, dict):
            scrubbed = {}
            for k, v in data.items():
                key = str(k).lower()
                if key in self.SENSITIVE_KEYS and isinstance(v, (str, int)):
                    scrubbed[k] = "***MASKED***"
                elif key in self.COORDINATE_KEYS and v is not None and not isinstance(v, (dict, list)):
                    scrubbed[k] = self._coarsen(v)
                elif key == "coordinates" and isinstance(v, (list, tuple)) and len(v) == 2:
                    scrubbed[k] = [self._coarsen(c) for c in v]
                else:
                    scrubbed[k] = self._recursive_scrub(v, depth + 1)
            return scrubbed
        elif isinstance(data, (list, tuple)):
            return [self._recursive_scrub(i, depth + 1) for i in data]
        elif isinstance(data, Decimal):
            return str(data)

        return data
