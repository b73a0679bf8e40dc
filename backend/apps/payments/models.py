# apps/payments/models.py
from django.db import models
from django.db.models import Q
from django.utils import timezone


class Payment(models.Model):
    """
    One gateway-side payment attempt or capture.
    Refunds are appended as new rows (status=refunded, refund_of=original);
    the original row is never rewritten.
    """
    STATUS_AUTHORIZED = "authorized"
    STATUS_COMPLETED = "completed"
    STATUS_FAILED = "failed"
    STATUS_REFUNDED = "refunded"

    STATUS_CHOICES = (
        (STATUS_AUTHORIZED, "Authorized"),
        (STATUS_COMPLETED, "Completed"),
        (STATUS_FAILED, "Failed"),
        (STATUS_REFUNDED, "Refunded"),
    )

    LEDGER_STATUSES = (STATUS_AUTHORIZED, STATUS_COMPLETED, STATUS_FAILED)

    order = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="payments",
    )
    refund_of = models.ForeignKey(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="refunds",
    )

    gateway = models.CharField(max_length=50, default="razorpay")
    gateway_order_id = models.CharField(max_length=100, db_index=True)
    transaction_id = models.CharField(max_length=100, blank=True)

    amount = models.DecimalField(max_digits=10, decimal_places=2)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES)
    payment_date = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["order", "gateway_order_id"],
                condition=~Q(status="refunded"),
                name="uniq_payment_per_gateway_order",
            ),
            models.UniqueConstraint(
                fields=["transaction_id", "refund_of"],
                condition=Q(status="refunded"),
                name="uniq_refund_per_payment",
            ),
        ]

    def __str__(self):
        return f"Payment {self.id} ({self.status})"


class OrderItemPayment(models.Model):
    """
    Allocation of a Payment's amount to one OrderItem.

    The primary key is a composite natural key, and it is the idempotency
    mechanism: re-processing the same event produces the same key, so the
    write becomes an update instead of a duplicate insert. Keys must only
    be built through `allocation_key` / `refund_key`.
    """
    id = models.CharField(primary_key=True, max_length=120, editable=False)
    order_item = models.ForeignKey(
        "orders.OrderItem",
        on_delete=models.CASCADE,
        related_name="payment_allocations",
    )
    payment = models.ForeignKey(
        Payment,
        on_delete=models.CASCADE,
        related_name="item_allocations",
    )

    amount = models.DecimalField(max_digits=10, decimal_places=2)
    status = models.CharField(max_length=20, choices=Payment.STATUS_CHOICES)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.id

    @staticmethod
    def allocation_key(item_id, payment_id):
        return f"{item_id}_{payment_id}"

    @staticmethod
    def refund_key(item_id, refund_payment_id):
        return f"refund_{item_id}_{refund_payment_id}"
