import logging
from django.http import JsonResponse
from django.db import connection
from django.core.cache import cache

logger = logging.getLogger(__name__)

def health_check(request):
    """
    Liveness Probe.
    Returns 200 if DB/PostGIS/cache are up.
    Returns 503 ONLY if critical infrastructure is unreachable.
    """
    status_data = {
        "status": "ok", 
        "services": {"db": "ok", "postgis": "ok", "cache": "ok"}
    }

    # 1. Check Database (Critical)
    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
    except Exception as e:
        logger.critical(f"Health Check DB Fail: {e}")
        status_data["status"] = "error"
        status_data["services"]["db"] = "unreachable"
        return JsonResponse(status_data, status=503)

    # 2. Check PostGIS (Critical: every location query depends on it)
    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT PostGIS_Lib_Version()")
            status_data["services"]["postgis"] = cursor.fetchone()[0]
    except Exception as e:
        logger.critical(f"Health Check PostGIS Fail: {e}")
        status_data["status"] = "error"
        status_data["services"]["postgis"] = "unavailable"
        return JsonResponse(status_data, status=503)

    # 3. Check Cache (Critical)
    try:
        cache.set("health_ping", "pong", timeout=5)
        if cache.get("health_ping") != "pong":
            raise Exception("Cache R/W mismatch")
    except Exception as e:
        logger.critical(f"Health Check Cache Fail: {e}")
        status_data["status"] = "error"
        status_data["services"]["cache"] = "unreachable"
        return JsonResponse(status_data, status=503)

    return JsonResponse(status_data, status=200)
