# apps/core/views.py
import time
import logging
from django.http import JsonResponse
from django.db import connection
from django.core.cache import cache

from .tasks import HEARTBEAT_CACHE_KEY

logger = logging.getLogger(__name__)

# Beat writes every minute; two missed ticks means the scheduler is gone
HEARTBEAT_STALE_SECONDS = 90


def _check_database():
    with connection.cursor() as cursor:
        cursor.execute("SELECT 1")


def _check_cache():
    cache.set("health_ping", "pong", timeout=5)
    if cache.get("health_ping") != "pong":
        raise ValueError("cache read-back mismatch")


def _beat_state():
    last_beat = cache.get(HEARTBEAT_CACHE_KEY)
    if last_beat is None:
        return "warming_up"
    if time.time() - float(last_beat) > HEARTBEAT_STALE_SECONDS:
        return "stuck"
    return "ok"


def health_check(request):
    """
    503 when the database or the cache (event de-duplication, carrier
    tokens) is unreachable. A stalled beat only degrades the status:
    webhooks still settle without it.
    """
    services = {"db": "ok", "cache": "ok", "beat": "ok"}

    for name, check in (("db", _check_database), ("cache", _check_cache)):
        try:
            check()
        except Exception as e:
            logger.critical(f"Health check: {name} unreachable: {e}")
            services[name] = "unreachable"
            return JsonResponse({"status": "error", "services": services}, status=503)

    services["beat"] = _beat_state()
    overall = "degraded" if services["beat"] == "stuck" else "ok"
    return JsonResponse({"status": overall, "services": services}, status=200)
