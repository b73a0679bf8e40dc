# apps/core/middleware.py
import uuid
from contextvars import ContextVar

_correlation_id = ContextVar("correlation_id", default=None)

# First non-empty header wins; a gateway event id is shared by every redelivery of that event
INBOUND_ID_HEADERS = ("X-Request-ID", "X-Razorpay-Event-Id")
MAX_ID_LENGTH = 128


def get_correlation_id():
    return _correlation_id.get()


def bind_correlation_id(value):
    """Binds `value` to the current context. Returns the token for `reset_correlation_id`."""
    return _correlation_id.set(value)


def reset_correlation_id(token):
    _correlation_id.reset(token)


def inbound_correlation_id(request):
    for header in INBOUND_ID_HEADERS:
        value = (request.headers.get(header) or "").strip()
        if value:
            return value[:MAX_ID_LENGTH]
    return uuid.uuid4().hex


class CorrelationIDMiddleware:
    """
    Tags the request with an id that every log line (and every Celery task
    it queues) carries. Echoed back in X-Request-ID.
    """
    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        request.correlation_id = inbound_correlation_id(request)
        token = bind_correlation_id(request.correlation_id)
        try:
            response = self.get_response(request)
        finally:
            reset_correlation_id(token)
        response["X-Request-ID"] = request.correlation_id
        return response
