# apps/utils/idempotency.py
import functools
import json
import logging
from django.core.cache import cache
from django.core.serializers.json import DjangoJSONEncoder
from rest_framework.response import Response
from rest_framework import status

logger = logging.getLogger(__name__)

MAX_EVENT_ID_LENGTH = 128
LOCK_SECONDS = 30


def event_cache_key(event_id):
    return f"webhook_event:{event_id}"


def event_lock_key(event_id):
    return f"lock:{event_cache_key(event_id)}"


def idempotent_event(header="X-Razorpay-Event-Id", timeout=86400):
    """
    Wraps a webhook view method so one gateway event is handled once.

    Deliveries without `header` always run. A finished event answers from
    the cached response for `timeout` seconds. A copy that arrives while the
    first one is still running gets 409 and the gateway retries it later.
    Only 2xx responses are remembered.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(view, request, *args, **kwargs):
            event_id = request.headers.get(header)
            if not event_id:
                return func(view, request, *args, **kwargs)

            if len(event_id) > MAX_EVENT_ID_LENGTH:
                return Response(
                    {"success": False, "error": f"Event id longer than {MAX_EVENT_ID_LENGTH} chars"},
                    status=status.HTTP_400_BAD_REQUEST,
                )

            replay = cache.get(event_cache_key(event_id))
            if replay is not None:
                try:
                    body = json.loads(replay["body"])
                except (KeyError, TypeError, ValueError):
                    logger.warning(f"Unreadable cached response for event {event_id}, handling it again")
                else:
                    logger.info(f"Event {event_id} already handled, replaying the response")
                    return Response(body, status=replay["status"])

            if not cache.add(event_lock_key(event_id), "1", timeout=LOCK_SECONDS):
                logger.info(f"Event {event_id} is being handled by another worker")
                return Response(
                    {"success": False, "error": "Event already in progress"},
                    status=status.HTTP_409_CONFLICT,
                )

            try:
                response = func(view, request, *args, **kwargs)
                if status.is_success(response.status_code):
                    cache.set(
                        event_cache_key(event_id),
                        {"status": response.status_code, "body": json.dumps(response.data, cls=DjangoJSONEncoder)},
                        timeout=timeout,
                    )
                return response
            finally:
                cache.delete(event_lock_key(event_id))
        return wrapper
    return decorator
