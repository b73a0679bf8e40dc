# apps/settlement/store.py
import logging
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import DatabaseError, transaction
from django.db.models import F, Prefetch, Sum
from django.utils import timezone

from apps.catalog.models import ProductVariant
from apps.orders.models import Cart, CartItem, Order, OrderItem
from apps.payments.models import OrderItemPayment, Payment
from apps.shipping.models import DraftShipment, Shipment
from apps.utils.exceptions import CartCleanupFailed, StockDecrementFailed

logger = logging.getLogger(__name__)


class SettlementStore:
    """
    Every persistence operation the settlement pipeline performs.
    Services receive a store instead of reaching for the ORM, so tests can
    hand them an in-memory implementation.
    """

    def atomic(self):
        raise NotImplementedError

    # Orders
    def load_order(self, order_id):
        """Order with user, address, items and their shipping relations, or None."""
        raise NotImplementedError

    def order_items(self, order):
        raise NotImplementedError

    def order_ids_for_gateway_reference(self, gateway_order_id):
        raise NotImplementedError

    def move_payment_status(self, order, new_status):
        """True when the order ends up in `new_status`, False when the move is refused."""
        raise NotImplementedError

    def claim_confirmation(self, order_id):
        raise NotImplementedError

    def release_confirmation(self, order_id):
        raise NotImplementedError

    # Ledger
    def upsert_payment(self, order_id, gateway_order_id, status, transaction_id, amount, payment_date):
        """Returns (payment, created)."""
        raise NotImplementedError

    def find_payments_by_transaction(self, transaction_id):
        """Every non-refund payment carrying this gateway payment id, one per order of a split checkout."""
        raise NotImplementedError

    def refunded_total(self, original_payment, exclude_refund_id=None):
        """Sum of refunds recorded against `original_payment`, optionally leaving one refund id out."""
        raise NotImplementedError

    def payments_for_order(self, order_id):
        raise NotImplementedError

    def get_or_create_refund(self, original_payment, amount, refund_gateway_id, refunded_at):
        """Returns (refund_payment, created)."""
        raise NotImplementedError

    def upsert_item_allocation(self, key, order_item_id, payment_id, amount, status):
        raise NotImplementedError

    # Fulfilment
    def create_shipment(self, result, items):
        """Persist the Shipment, re-point `items` to it and drop their consumed drafts."""
        raise NotImplementedError

    def decrement_stock(self, item):
        """True if stock moved, False if this item was already decremented."""
        raise NotImplementedError

    def delete_cart(self, cart_id):
        """True if a cart was deleted, False if it was already gone."""
        raise NotImplementedError


class DjangoSettlementStore(SettlementStore):

    def atomic(self):
        return transaction.atomic()

    def load_order(self, order_id):
        items = OrderItem.objects.select_related(
            "seller",
            "product_variant__product__seller",
            "draft_shipment__pickup_location",
            "shipment",
        ).order_by("id")
        try:
            return (
                Order.objects.select_related("user", "shipping_address")
                .prefetch_related(Prefetch("items", queryset=items))
                .get(pk=order_id)
            )
        except (Order.DoesNotExist, ValidationError, ValueError):
            return None

    def order_items(self, order):
        return list(order.items.all())

    def order_ids_for_gateway_reference(self, gateway_order_id):
        if not gateway_order_id:
            return []
        return [
            str(pk) for pk in Order.objects.filter(payment_ref_id=gateway_order_id)
            .order_by("created_at")
            .values_list("id", flat=True)
        ]

    def move_payment_status(self, order, new_status):
        with transaction.atomic():
            locked = Order.objects.select_for_update().get(pk=order.pk)
            if locked.payment_status != new_status:
                if not locked.can_transition_payment_to(new_status):
                    logger.warning(
                        f"Order {order.pk}: refusing payment status move "
                        f"{locked.payment_status} -> {new_status}"
                    )
                    return False

                locked.payment_status = new_status
                update_fields = ["payment_status", "updated_at"]
                if new_status == Order.PAYMENT_PAID and locked.status == "created":
                    locked.status = "confirmed"
                    update_fields.append("status")
                locked.save(update_fields=update_fields)

        order.payment_status = locked.payment_status
        order.status = locked.status
        return True

    def claim_confirmation(self, order_id):
        return Order.objects.filter(
            pk=order_id, confirmation_sent_at__isnull=True
        ).update(confirmation_sent_at=timezone.now()) == 1

    def release_confirmation(self, order_id):
        Order.objects.filter(pk=order_id).update(confirmation_sent_at=None)

    def upsert_payment(self, order_id, gateway_order_id, status, transaction_id, amount, payment_date):
        return Payment.objects.update_or_create(
            order_id=order_id,
            gateway_order_id=gateway_order_id,
            status__in=Payment.LEDGER_STATUSES,
            defaults={
                "status": status,
                "transaction_id": transaction_id,
                "amount": amount,
                "payment_date": payment_date,
            },
        )

    def find_payments_by_transaction(self, transaction_id):
        if not transaction_id:
            return []
        return list(
            Payment.objects.filter(transaction_id=transaction_id)
            .exclude(status=Payment.STATUS_REFUNDED)
            .order_by("created_at", "id")
        )

    def refunded_total(self, original_payment, exclude_refund_id=None):
        refunds = Payment.objects.filter(refund_of=original_payment, status=Payment.STATUS_REFUNDED)
        if exclude_refund_id:
            refunds = refunds.exclude(transaction_id=exclude_refund_id)
        return refunds.aggregate(total=Sum("amount"))["total"] or Decimal("0.00")

    def payments_for_order(self, order_id):
        return list(Payment.objects.filter(order_id=order_id).order_by("created_at", "id"))

    def get_or_create_refund(self, original_payment, amount, refund_gateway_id, refunded_at):
        return Payment.objects.get_or_create(
            transaction_id=refund_gateway_id,
            refund_of=original_payment,
            status=Payment.STATUS_REFUNDED,
            defaults={
                "order_id": original_payment.order_id,
                "gateway": original_payment.gateway,
                "gateway_order_id": original_payment.gateway_order_id,
                "amount": amount,
                "payment_date": refunded_at,
            },
        )

    def upsert_item_allocation(self, key, order_item_id, payment_id, amount, status):
        OrderItemPayment.objects.update_or_create(
            id=key,
            defaults={
                "order_item_id": order_item_id,
                "payment_id": payment_id,
                "amount": amount,
                "status": status,
            },
        )

    def create_shipment(self, result, items):
        item_ids = [item.id for item in items]
        draft_ids = {item.draft_shipment_id for item in items if item.draft_shipment_id}

        with transaction.atomic():
            shipment = Shipment.objects.create(
                pickup_location_id=result.pickup_location_id,
                carrier_shipment_id=result.shipment_id,
                carrier_order_id=result.carrier_order_id,
                courier_company_id=result.courier_company_id or "",
                courier_name=result.courier_name or "",
                shipping_charge=result.shipping_charge,
                awb_code=result.awb_code or "",
            )
            OrderItem.objects.filter(pk__in=item_ids).update(shipment=shipment, draft_shipment=None)
            # A draft still referenced by items outside this group stays
            DraftShipment.objects.filter(pk__in=draft_ids).exclude(items__isnull=False).delete()

        for item in items:
            item.shipment = shipment
            item.draft_shipment = None
        return shipment

    def decrement_stock(self, item):
        try:
            with transaction.atomic():
                claimed = OrderItem.objects.filter(
                    pk=item.pk, stock_decremented=False
                ).update(stock_decremented=True)
                if not claimed:
                    return False
                ProductVariant.objects.filter(pk=item.product_variant_id).update(
                    stock_quantity=F("stock_quantity") - item.quantity
                )
        except DatabaseError as e:
            raise StockDecrementFailed(
                f"Stock decrement failed for item {item.pk} (variant {item.product_variant_id}): {e}"
            ) from e
        item.stock_decremented = True
        return True

    def delete_cart(self, cart_id):
        try:
            with transaction.atomic():
                CartItem.objects.filter(cart_id=cart_id).delete()
                deleted, _ = Cart.objects.filter(pk=cart_id).delete()
        except (DatabaseError, ValidationError, ValueError) as e:
            raise CartCleanupFailed(f"Could not delete cart {cart_id}: {e}") from e
        return deleted > 0
