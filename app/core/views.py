"""
Core views providing infrastructure endpoints.

Only the health check lives here; business endpoints belong to their apps.
"""

from django.conf import settings
from django.core.cache import cache
from django.db import DatabaseError, connection
from django.http import JsonResponse

MPESA_CREDENTIAL_SETTINGS = (
    "MPESA_CONSUMER_KEY",
    "MPESA_CONSUMER_SECRET",
    "MPESA_PASSKEY",
    "MPESA_CALLBACK_URL",
)


def health_check(request):
    """
    Health check endpoint for load balancers and container probes.

    The database is the only hard dependency: callbacks cannot be
    acknowledged without it. Cache and M-Pesa configuration are reported
    but do not fail the check.

    Returns:
        200 {"status": "healthy", "database": "connected", ...}
        503 when the database is unreachable

    Example Response:
        {
            "status": "healthy",
            "database": "connected",
            "cache": "connected",
            "mpesa": "configured"
        }
    """
    health_status = {
        "status": "healthy",
        "database": "connected",
        "cache": "connected",
        "mpesa": "configured",
    }

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
    except DatabaseError:
        health_status["database"] = "disconnected"
        health_status["status"] = "unhealthy"

    try:
        cache.set("health_check", "ok", timeout=1)
        if cache.get("health_check") != "ok":
            health_status["cache"] = "disconnected"
    except Exception:
        health_status["cache"] = "disconnected"

    if not all(getattr(settings, name, "") for name in MPESA_CREDENTIAL_SETTINGS):
        health_status["mpesa"] = "not configured"

    status_code = 200 if health_status["status"] == "healthy" else 503
    return JsonResponse(health_status, status=status_code)
