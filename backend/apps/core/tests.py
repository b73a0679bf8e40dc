# apps/core/tests.py
import json
import time
from unittest.mock import patch

from django.core.cache import cache
from django.http import JsonResponse
from django.test import TestCase, RequestFactory

from apps.core.middleware import CorrelationIDMiddleware, get_correlation_id
from apps.core.tasks import beat_heartbeat
from apps.core.views import health_check


class MiddlewareTestCase(TestCase):
    def setUp(self):
        self.factory = RequestFactory()
        self.seen = []

        def get_response(request):
            self.seen.append(get_correlation_id())
            return JsonResponse({"status": "ok"})

        self.middleware = CorrelationIDMiddleware(get_response)

    def test_correlation_id_generation(self):
        request = self.factory.get("/")
        response = self.middleware(request)

        self.assertTrue(response.has_header("X-Request-ID"))
        self.assertEqual(response["X-Request-ID"], request.correlation_id)
        self.assertEqual(self.seen, [request.correlation_id])

    def test_incoming_request_id_is_reused(self):
        request = self.factory.post("/", HTTP_X_REQUEST_ID="gateway-retry-7")
        response = self.middleware(request)

        self.assertEqual(response["X-Request-ID"], "gateway-retry-7")
        self.assertEqual(self.seen, ["gateway-retry-7"])

    def test_gateway_event_id_is_used_for_webhooks(self):
        request = self.factory.post("/", HTTP_X_RAZORPAY_EVENT_ID="evt_42")
        response = self.middleware(request)

        self.assertEqual(response["X-Request-ID"], "evt_42")

    def test_oversized_id_is_truncated(self):
        request = self.factory.get("/", HTTP_X_REQUEST_ID="x" * 500)
        self.middleware(request)
        self.assertEqual(len(request.correlation_id), 128)

    def test_context_is_reset_after_request(self):
        self.middleware(self.factory.get("/"))
        self.assertIsNone(get_correlation_id())


class HealthCheckTestCase(TestCase):
    def setUp(self):
        cache.clear()
        self.factory = RequestFactory()

    def _check(self):
        response = health_check(self.factory.get("/health/"))
        return response.status_code, json.loads(response.content)

    def test_healthy_without_beat_is_warming_up(self):
        code, body = self._check()
        self.assertEqual(code, 200)
        self.assertEqual(body["status"], "ok")
        self.assertEqual(body["services"]["beat"], "warming_up")

    def test_fresh_heartbeat_is_ok(self):
        beat_heartbeat()
        code, body = self._check()
        self.assertEqual(code, 200)
        self.assertEqual(body["services"]["beat"], "ok")

    def test_stale_heartbeat_is_degraded_not_fatal(self):
        cache.set("celery_beat_health", time.time() - 600)
        code, body = self._check()
        self.assertEqual(code, 200)
        self.assertEqual(body["status"], "degraded")
        self.assertEqual(body["services"]["beat"], "stuck")

    @patch("apps.core.views.connection")
    def test_database_down_is_503(self, mock_connection):
        mock_connection.cursor.side_effect = Exception("connection refused")
        code, body = self._check()
        self.assertEqual(code, 503)
        self.assertEqual(body["services"]["db"], "unreachable")

    @patch("apps.core.views.cache")
    def test_cache_down_is_503(self, mock_cache):
        mock_cache.set.side_effect = ConnectionError("redis down")
        code, body = self._check()
        self.assertEqual(code, 503)
        self.assertEqual(body["services"]["cache"], "unreachable")
