# apps/payments/ledger.py
import logging
from decimal import Decimal, ROUND_HALF_UP

from apps.utils.exceptions import InvalidRefundState
from .models import OrderItemPayment, Payment

logger = logging.getLogger(__name__)

PAISE = Decimal("0.01")


def item_amount(item) -> Decimal:
    return Decimal(item.price_at_purchase) * item.quantity


def proportional_shares(refund_total, item_amounts, original_amount):
    """
    Split `refund_total` across items in proportion to what each item paid.
    Shares are rounded to paise and the last item absorbs the rounding
    remainder, so the shares always add up to the rounded target exactly.
    """
    refund_total = Decimal(refund_total)
    original_amount = Decimal(original_amount)
    if original_amount <= 0:
        raise InvalidRefundState(
            f"Cannot split a refund over an original payment of {original_amount}"
        )
    if not item_amounts:
        return []

    target = (refund_total * sum(item_amounts) / original_amount).quantize(PAISE, rounding=ROUND_HALF_UP)
    shares = [
        (refund_total * amount / original_amount).quantize(PAISE, rounding=ROUND_HALF_UP)
        for amount in item_amounts[:-1]
    ]
    shares.append(target - sum(shares, Decimal("0")))
    return shares


class PaymentLedger:
    """
    Idempotent payment bookkeeping.

    Every write goes through a find-or-create keyed on a natural key, so an
    at-least-once gateway can deliver the same event any number of times:
      - Payment:          (order, gateway_order_id), refund rows excluded
      - Refund Payment:   (refund gateway id, original payment)
      - OrderItemPayment: OrderItemPayment.allocation_key / refund_key
    """

    def __init__(self, store):
        self.store = store

    def upsert_payment(self, order_id, gateway_order_id, status, transaction_id, amount, payment_date):
        payment, created = self.store.upsert_payment(
            order_id=order_id,
            gateway_order_id=gateway_order_id,
            status=status,
            transaction_id=transaction_id or "",
            amount=amount,
            payment_date=payment_date,
        )
        logger.info(
            f"Ledger: payment {payment.id} for order {order_id} "
            f"{'created' if created else 'updated'} ({status})"
        )
        return payment

    def allocate_to_items(self, payment_id, items, status):
        for item in items:
            self.store.upsert_item_allocation(
                key=OrderItemPayment.allocation_key(item.id, payment_id),
                order_item_id=item.id,
                payment_id=payment_id,
                amount=item_amount(item),
                status=status,
            )

    def record_refund(self, original_payment, items, refund_total, refund_gateway_id, refunded_at):
        """
        Appends a refund Payment (the original row is left as it was) and
        one proportional refund allocation per item.
        """
        if not refund_gateway_id:
            raise InvalidRefundState("Refund event carries no refund id")
        refund_total = Decimal(refund_total)
        if refund_total <= 0:
            raise InvalidRefundState(f"Refund amount must be positive, got {refund_total}")
        already_refunded = self.store.refunded_total(original_payment, exclude_refund_id=refund_gateway_id)
        if already_refunded + refund_total > Decimal(original_payment.amount):
            raise InvalidRefundState(
                f"Refund {refund_gateway_id} of {refund_total} exceeds payment {original_payment.id}: "
                f"{already_refunded} of {original_payment.amount} already refunded"
            )

        shares = proportional_shares(
            refund_total,
            [item_amount(item) for item in items],
            original_payment.amount,
        )

        refund, created = self.store.get_or_create_refund(
            original_payment=original_payment,
            amount=refund_total,
            refund_gateway_id=refund_gateway_id,
            refunded_at=refunded_at,
        )
        if not created:
            logger.info(f"Ledger: refund {refund_gateway_id} already recorded as payment {refund.id}")

        for item, share in zip(items, shares):
            self.store.upsert_item_allocation(
                key=OrderItemPayment.refund_key(item.id, refund.id),
                order_item_id=item.id,
                payment_id=refund.id,
                amount=share,
                status=Payment.STATUS_REFUNDED,
            )
        return refund

    def refunded_total(self, original_payment) -> Decimal:
        return self.store.refunded_total(original_payment)

    def split_refund(self, originals, refund_total, refund_gateway_id):
        """
        One gateway refund against a split checkout: every order holds its own
        Payment under the same gateway payment id. The refund is shared out in
        proportion to what each payment can still refund; replays of the same
        refund id see the same remainders. Payments whose share rounds to zero
        are left out.
        """
        refund_total = Decimal(refund_total)
        remaining = [
            Decimal(payment.amount) - self.store.refunded_total(payment, exclude_refund_id=refund_gateway_id)
            for payment in originals
        ]
        refundable = sum(remaining, Decimal("0"))
        if refund_total > refundable:
            raise InvalidRefundState(
                f"Refund {refund_gateway_id} of {refund_total} exceeds the {refundable} still refundable "
                f"on {len(originals)} payment(s)"
            )

        shares = proportional_shares(refund_total, remaining, refundable)
        return [(payment, share) for payment, share in zip(originals, shares) if share > 0]
