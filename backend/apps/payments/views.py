# apps/payments/views.py
import json
import logging
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework import generics
from rest_framework.permissions import AllowAny, IsAdminUser
from django_filters.rest_framework import DjangoFilterBackend
from rest_framework.filters import OrderingFilter
from rest_framework import status
from django.conf import settings
from django.utils import timezone

from apps.settlement.services import SettlementRequest, build_settlement_service
from apps.utils.idempotency import idempotent_event
from .models import Payment
from .serializers import PaymentSerializer, VerifyPaymentSerializer
from .services import PaymentEventService
from .signatures import verify_payment_signature, verify_webhook_signature

logger = logging.getLogger(__name__)


class VerifyPaymentAPIView(APIView):
    """
    Checkout callback: the browser relays the gateway's signed result.
    The HMAC over `order_id|payment_id` is the only authentication.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        serializer = VerifyPaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        secret = settings.RAZORPAY_KEY_SECRET
        if not secret:
            logger.error("RAZORPAY_KEY_SECRET not set")
            return Response(
                {"success": False, "error": "Payment gateway not configured"},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR
            )

        # [SECURITY] Never trust the client's word on payment status
        if not verify_payment_signature(
            data["gateway_order_id"], data["gateway_payment_id"], data["signature"], secret
        ):
            logger.warning(f"Verify: signature mismatch for gateway order {data['gateway_order_id']}")
            return Response(
                {"success": False, "message": "Invalid signature"},
                status=status.HTTP_400_BAD_REQUEST
            )

        order_ids = serializer.get_order_ids()
        try:
            outcome = build_settlement_service().settle(SettlementRequest(
                order_ids=order_ids,
                gateway_order_id=data["gateway_order_id"],
                transaction_id=data["gateway_payment_id"],
                payment_date=timezone.now(),
                cart_id=data.get("cart_id") or None,
                source="verify",
            ))
        except Exception as e:
            logger.exception(f"Verify: settlement failed for gateway order {data['gateway_order_id']}")
            return Response({"success": False, "error": str(e)}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

        if not outcome.orders and len(outcome.missing_order_ids) == len(set(order_ids)):
            return Response(
                {"success": False, "message": "Order not found"},
                status=status.HTTP_404_NOT_FOUND
            )

        count = outcome.processed_orders
        if outcome.has_shipment_failures:
            message = f"Payment verified but some Shiprocket orders failed. Processed {count} orders."
        else:
            message = f"Payment verified and all Shiprocket orders created. Processed {count} orders."

        return Response({
            "success": True,
            "message": message,
            "data": outcome.as_response_data(),
        })


class PaymentWebhookAPIView(APIView):
    """
    Gateway webhook. Source of truth when the browser never comes back.
    Anything that fails after the signature check is logged and answered
    200: a 5xx only makes the gateway redeliver into the same failure.
    """
    permission_classes = [AllowAny] # Webhooks are public but signed
    authentication_classes = []

    def post(self, request):
        # 1. Signature header and secret
        signature = request.headers.get(settings.PAYMENT_WEBHOOK_SIGNATURE_HEADER)
        if not signature:
            return Response(
                {"success": False, "message": "Missing signature"},
                status=status.HTTP_400_BAD_REQUEST
            )

        secret = settings.RAZORPAY_WEBHOOK_SECRET
        if not secret:
            logger.error("RAZORPAY_WEBHOOK_SECRET not set")
            return Response(
                {"success": False, "error": "Webhook secret not configured"},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR
            )

        # 2. HMAC over the raw bytes, before anything is parsed or stored
        raw_body = request.body
        if not verify_webhook_signature(raw_body, signature, secret):
            logger.warning("Webhook Signature Mismatch")
            return Response(
                {"success": False, "message": "Invalid signature"},
                status=status.HTTP_401_UNAUTHORIZED
            )

        try:
            event = json.loads(raw_body)
        except ValueError as e:
            logger.error(f"Webhook body is not JSON: {e}")
            return Response({"success": False, "error": str(e)}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

        return self._dispatch(request, event)

    @idempotent_event()
    def _dispatch(self, request, event):
        event_type = event.get("event") if isinstance(event, dict) else None
        logger.info(f"Processing webhook event: {event_type}")

        try:
            PaymentEventService().dispatch(event_type, event)
        except Exception:
            logger.exception(f"Webhook handler for {event_type} failed")

        return Response({"success": True, "message": "Webhook received"}, status=status.HTTP_200_OK)


class PaymentListAPIView(generics.ListAPIView):
    """Read-only ledger view for support staff."""
    permission_classes = [IsAdminUser]
    serializer_class = PaymentSerializer
    filter_backends = [DjangoFilterBackend, OrderingFilter]
    filterset_fields = ["order", "status", "gateway_order_id", "transaction_id"]
    ordering_fields = ["created_at", "amount"]
    ordering = ["-created_at"]

    def get_queryset(self):
        return Payment.objects.select_related("order", "refund_of")
