# apps/core/tasks.py
import time
from celery import shared_task
from django.core.cache import cache

HEARTBEAT_CACHE_KEY = "celery_beat_health"


@shared_task
def beat_heartbeat():
    """Scheduled every minute; /health/ reads it to spot a stalled beat."""
    cache.set(HEARTBEAT_CACHE_KEY, time.time(), timeout=300)
