# apps/payments/services.py
import razorpay
import requests
import logging
from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from django.conf import settings
from django.utils import timezone

from apps.orders.models import Order
from apps.settlement.services import SettlementRequest, build_settlement_service
from apps.settlement.store import DjangoSettlementStore
from apps.utils.exceptions import BusinessLogicException, OrderNotFound
from apps.utils.resilience import CircuitBreaker, CircuitBreakerOpenException
from .ledger import PaymentLedger
from .models import Payment

# Initialize Client safely
try:
    client = razorpay.Client(auth=(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET))
except Exception:
    client = None

logger = logging.getLogger(__name__)

GATEWAY_ERRORS = (
    razorpay.errors.BadRequestError,
    razorpay.errors.ServerError,
    razorpay.errors.GatewayError,
    requests.RequestException,
)

razorpay_breaker = CircuitBreaker(
    service_name="razorpay",
    failure_threshold=5,
    recovery_timeout=30,
    counted_exceptions=(razorpay.errors.ServerError, razorpay.errors.GatewayError, requests.RequestException),
)


def paise_to_amount(value) -> Decimal:
    return (Decimal(str(value or 0)) / 100).quantize(Decimal("0.01"))


def epoch_to_datetime(value):
    if not value:
        return timezone.now()
    return datetime.fromtimestamp(int(value), tz=dt_timezone.utc)


class PaymentEventService:
    """
    Routes verified gateway events to the ledger and the settlement pipeline.
    Callers must have checked the webhook signature already.
    """
    PAYMENT_EVENTS = ("payment.authorized", "payment.captured", "payment.failed")
    REFUND_EVENTS = ("payment.dispute.created", "refund.processed")

    def __init__(self, store=None, settlement=None):
        self.store = store or DjangoSettlementStore()
        self.ledger = PaymentLedger(self.store)
        self._settlement = settlement

    @property
    def settlement(self):
        if self._settlement is None:
            self._settlement = build_settlement_service()
        return self._settlement

    def dispatch(self, event, payload):
        handlers = {
            "payment.authorized": self.handle_payment_authorized,
            "payment.captured": self.handle_payment_captured,
            "payment.failed": self.handle_payment_failed,
            "payment.dispute.created": self.handle_refund,
            "refund.processed": self.handle_refund,
        }
        handler = handlers.get(event)
        if handler is None:
            logger.info(f"Unhandled webhook event: {event}")
            return None
        return handler(self._entity(event, payload))

    @classmethod
    def _entity(cls, event, payload):
        body = (payload or {}).get("payload") or {}
        if event in cls.REFUND_EVENTS:
            # Disputes carry the same id/payment_id/amount/created_at shape
            node = body.get("refund") or body.get("dispute") or {}
        else:
            node = body.get("payment") or {}
        entity = node.get("entity")
        if not isinstance(entity, dict):
            raise BusinessLogicException(f"Malformed {event} payload: no entity", code="malformed_event")
        return entity

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    def handle_payment_captured(self, entity):
        gateway_order_id = entity.get("order_id")
        order_ids = self.store.order_ids_for_gateway_reference(gateway_order_id)
        if not order_ids:
            raise OrderNotFound(f"No order for gateway order {gateway_order_id}")

        return self.settlement.settle(SettlementRequest(
            order_ids=order_ids,
            gateway_order_id=gateway_order_id,
            transaction_id=entity.get("id") or "",
            amount=paise_to_amount(entity.get("amount")),
            payment_date=epoch_to_datetime(entity.get("created_at")),
            source="webhook",
        ))

    def handle_payment_authorized(self, entity):
        return self._record_attempt(entity, Order.PAYMENT_AUTHORIZED, Payment.STATUS_AUTHORIZED)

    def handle_payment_failed(self, entity):
        return self._record_attempt(entity, Order.PAYMENT_FAILED, Payment.STATUS_FAILED)

    def _record_attempt(self, entity, order_status, payment_status):
        """Authorisations and failures touch the ledger only, never fulfilment."""
        gateway_order_id = entity.get("order_id")
        order_ids = self.store.order_ids_for_gateway_reference(gateway_order_id)
        if not order_ids:
            raise OrderNotFound(f"No order for gateway order {gateway_order_id}")

        recorded = []
        for order_id in order_ids:
            order = self.store.load_order(order_id)
            if order is None:
                continue
            amount = paise_to_amount(entity.get("amount")) if len(order_ids) == 1 else order.total_amount

            with self.store.atomic():
                if not self.store.move_payment_status(order, order_status):
                    continue
                payment = self.ledger.upsert_payment(
                    order.id,
                    gateway_order_id,
                    payment_status,
                    entity.get("id") or "",
                    amount,
                    epoch_to_datetime(entity.get("created_at")),
                )
                self.ledger.allocate_to_items(payment.id, self.store.order_items(order), payment_status)
            recorded.append(str(order.id))

        logger.info(f"Webhook: {payment_status} recorded for orders {recorded} ({gateway_order_id})")
        return recorded

    def handle_refund(self, entity):
        refund_id = entity.get("id")
        originals = self.store.find_payments_by_transaction(entity.get("payment_id"))
        if not originals:
            raise BusinessLogicException(
                f"Payment {entity.get('payment_id')} not found for refund {refund_id}",
                code="payment_not_found",
            )

        refund_total = paise_to_amount(entity.get("amount"))
        refunded_at = epoch_to_datetime(entity.get("created_at"))
        refunds = []

        # All or nothing across the orders of a split checkout
        with self.store.atomic():
            for original, share in self.ledger.split_refund(originals, refund_total, refund_id):
                order = self.store.load_order(original.order_id)
                if order is None:
                    raise OrderNotFound(f"Order {original.order_id} not found for refund {refund_id}")

                refunds.append(self.ledger.record_refund(
                    original, self.store.order_items(order), share, refund_id, refunded_at,
                ))
                # refunded is terminal; a partly refunded order stays paid so its drafts still get retried
                if self.ledger.refunded_total(original) >= original.amount:
                    self.store.move_payment_status(order, Order.PAYMENT_REFUNDED)

        logger.info(
            f"Webhook: refund {refund_id} of {refund_total} recorded as payments "
            f"{[refund.id for refund in refunds]}"
        )
        return refunds


class ReconciliationService:
    """
    Safety net for lost webhooks: asks the gateway about orders that have
    sat unpaid for too long and settles the ones it reports as paid.
    """

    def __init__(self, settlement=None, gateway=None):
        self._settlement = settlement
        self.gateway = gateway if gateway is not None else client

    @property
    def settlement(self):
        if self._settlement is None:
            self._settlement = build_settlement_service()
        return self._settlement

    def stuck_gateway_references(self):
        cutoff = timezone.now() - timedelta(minutes=settings.PAYMENT_RECONCILE_AFTER_MINUTES)
        return list(
            Order.objects.filter(
                payment_status__in=[Order.PAYMENT_PENDING, Order.PAYMENT_AUTHORIZED],
                updated_at__lt=cutoff,
            )
            .exclude(payment_ref_id="")
            .values_list("payment_ref_id", flat=True)
            .distinct()
        )

    def reconcile_stuck_payments(self):
        if not self.gateway:
            logger.warning("Reconciliation skipped: payment gateway not configured")
            return {"checked": 0, "settled": 0}

        references = self.stuck_gateway_references()
        settled = 0
        for reference in references:
            try:
                captured = self._captured_payment(reference)
            except CircuitBreakerOpenException:
                logger.warning("Reconciliation stopped: gateway circuit open")
                break
            except GATEWAY_ERRORS as e:
                logger.error(f"Reconciliation error for {reference}: {e}")
                continue

            if captured is None:
                continue

            logger.info(f"Reconciling stuck gateway order {reference} with payment {captured.get('id')}")
            order_ids = [
                str(pk) for pk in Order.objects.filter(payment_ref_id=reference)
                .order_by("created_at").values_list("id", flat=True)
            ]
            outcome = self.settlement.settle(SettlementRequest(
                order_ids=order_ids,
                gateway_order_id=reference,
                transaction_id=captured.get("id") or "",
                amount=paise_to_amount(captured.get("amount")),
                payment_date=epoch_to_datetime(captured.get("created_at")),
                source="reconciliation",
            ))
            settled += outcome.processed_orders

        return {"checked": len(references), "settled": settled}

    def _captured_payment(self, reference):
        @razorpay_breaker
        def _fetch():
            gateway_order = self.gateway.order.fetch(reference)
            if gateway_order.get("status") != "paid":
                return None
            payments = self.gateway.order.payments(reference).get("items", [])
            return next((p for p in payments if p.get("status") == "captured"), None)

        return _fetch()
