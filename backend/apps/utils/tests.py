import json
import logging

from django.core.cache import cache
from django.test import TestCase, RequestFactory
from rest_framework import status
from rest_framework.exceptions import ValidationError
from rest_framework.response import Response

from apps.utils.exceptions import (
    BusinessLogicException,
    CarrierAPIError,
    OrderNotFound,
    SignatureMismatch,
    custom_exception_handler,
)
from apps.utils.idempotency import idempotent_event
from apps.utils.logging import MaskingJsonFormatter
from apps.utils.resilience import CircuitBreaker, CircuitBreakerOpenException


class ExceptionHandlerTestCase(TestCase):
    def test_signature_mismatch_is_401(self):
        response = custom_exception_handler(SignatureMismatch("Invalid webhook signature"), {})
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertEqual(response.data["error"]["code"], "signature_mismatch")

    def test_business_errors_are_400_with_code(self):
        response = custom_exception_handler(OrderNotFound("Order x not found"), {})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(response.data["success"])
        self.assertEqual(response.data["error"], {
            "code": "order_not_found",
            "message": "Order x not found",
            "type": "BusinessLogicError",
        })

    def test_explicit_code_overrides_default(self):
        exc = CarrierAPIError("down", code="carrier_unavailable")
        self.assertEqual(exc.code, "carrier_unavailable")
        self.assertEqual(BusinessLogicException("x").code, "invalid_request")

    def test_drf_validation_errors_are_wrapped(self):
        response = custom_exception_handler(ValidationError({"orderDbId": ["This field is required."]}), {})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["error"]["code"], "validation_error")
        self.assertIn("orderDbId", response.data["error"]["details"])


class CircuitBreakerTestCase(TestCase):
    def setUp(self):
        cache.clear()
        self.breaker = CircuitBreaker("test-service", failure_threshold=3, recovery_timeout=60,
                                      counted_exceptions=(ConnectionError,))

    def test_trips_after_threshold(self):
        @self.breaker
        def flaky():
            raise ConnectionError("boom")

        for _ in range(3):
            with self.assertRaises(ConnectionError):
                flaky()

        self.assertTrue(self.breaker.is_open())
        with self.assertRaises(CircuitBreakerOpenException):
            flaky()

    def test_uncounted_exceptions_do_not_trip(self):
        @self.breaker
        def rejects():
            raise ValueError("bad payload")

        for _ in range(5):
            with self.assertRaises(ValueError):
                rejects()

        self.assertFalse(self.breaker.is_open())

    def test_reset_closes_circuit(self):
        cache.set(self.breaker.key_open, "OPEN", 60)
        self.breaker.reset()

        @self.breaker
        def ok():
            return "fine"

        self.assertEqual(ok(), "fine")


class _WebhookView:
    def __init__(self):
        self.calls = 0
        self.status_code = 200

    @idempotent_event()
    def handle(self, request):
        self.calls += 1
        return Response({"success": True, "call": self.calls}, status=self.status_code)


class IdempotentEventTestCase(TestCase):
    def setUp(self):
        cache.clear()
        self.factory = RequestFactory()
        self.view = _WebhookView()

    def _request(self, event_id=None):
        headers = {"HTTP_X_RAZORPAY_EVENT_ID": event_id} if event_id else {}
        return self.factory.post("/webhook/", data="{}", content_type="application/json", **headers)

    def test_without_event_id_always_runs(self):
        self.view.handle(self._request())
        self.view.handle(self._request())
        self.assertEqual(self.view.calls, 2)

    def test_duplicate_event_replays_cached_response(self):
        first = self.view.handle(self._request("evt_1"))
        second = self.view.handle(self._request("evt_1"))

        self.assertEqual(self.view.calls, 1)
        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.data, first.data)

    def test_event_in_progress_gets_409(self):
        cache.add("lock:webhook_event:evt_2", "processing", timeout=30)
        response = self.view.handle(self._request("evt_2"))

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(self.view.calls, 0)

    def test_oversized_event_id_rejected(self):
        response = self.view.handle(self._request("e" * 129))
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(self.view.calls, 0)

    def test_error_responses_are_not_cached(self):
        self.view.status_code = 500
        self.view.handle(self._request("evt_3"))
        self.view.status_code = 200
        response = self.view.handle(self._request("evt_3"))

        self.assertEqual(self.view.calls, 2)
        self.assertEqual(response.status_code, 200)
        self.assertIsNone(cache.get("lock:webhook_event:evt_3"))

    def test_unreadable_cached_response_runs_again(self):
        cache.set("webhook_event:evt_4", {"status": 200, "body": "not json"}, 60)
        response = self.view.handle(self._request("evt_4"))

        self.assertEqual(self.view.calls, 1)
        self.assertEqual(response.data["call"], 1)


class MaskingJsonFormatterTestCase(TestCase):
    def _record(self, message, metadata=None):
        record = logging.LogRecord("apps.payments", logging.INFO, __file__, 1, message, None, None)
        record.correlation_id = "req-1"
        if metadata is not None:
            record.metadata = metadata
        return record

    def test_metadata_keys_are_scrubbed(self):
        output = MaskingJsonFormatter().format(self._record("webhook", {
            "signature": "abc123",
            "nested": {"token": "secret-token", "order_id": "order_1"},
        }))
        data = json.loads(output)

        self.assertEqual(data["metadata"]["signature"], "***MASKED***")
        self.assertEqual(data["metadata"]["nested"]["token"], "***MASKED***")
        self.assertEqual(data["metadata"]["nested"]["order_id"], "order_1")
        self.assertEqual(data["correlation_id"], "req-1")

    def test_email_in_metadata_is_partially_masked(self):
        output = MaskingJsonFormatter().format(self._record("mail", {"email": "customer@example.com"}))
        self.assertNotIn("customer@example.com", output)
        self.assertIn("***@example.com", output)

    def test_deep_payloads_are_cut(self):
        payload = current = {}
        for _ in range(15):
            current["child"] = {}
            current = current["child"]

        output = MaskingJsonFormatter().format(self._record("deep", payload))
        self.assertIn("[MAX_DEPTH_EXCEEDED]", output)
