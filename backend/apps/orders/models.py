import uuid
from decimal import Decimal

from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils import timezone

User = settings.AUTH_USER_MODEL


class Order(models.Model):
    """
    One payment-gateway transaction grouping. A single checkout may fan out
    into several Order rows that share the same `payment_ref_id`.
    `payment_status` is the single source of truth for "has this been paid".
    """
    STATUS_CHOICES = (
        ("created", "Created"),
        ("confirmed", "Confirmed"),
        ("cancelled", "Cancelled"),
    )

    PAYMENT_PENDING = "pending"
    PAYMENT_AUTHORIZED = "authorized"
    PAYMENT_PAID = "paid"
    PAYMENT_FAILED = "failed"
    PAYMENT_REFUNDED = "refunded"

    PAYMENT_STATUS_CHOICES = (
        (PAYMENT_PENDING, "Pending"),
        (PAYMENT_AUTHORIZED, "Authorized"),
        (PAYMENT_PAID, "Paid"),
        (PAYMENT_FAILED, "Failed"),
        (PAYMENT_REFUNDED, "Refunded"),
    )

    # Forward-only. A failed attempt may still be followed by a successful
    # capture against the same gateway order, so failed is not terminal.
    PAYMENT_TRANSITIONS = {
        PAYMENT_PENDING: {PAYMENT_AUTHORIZED, PAYMENT_PAID, PAYMENT_FAILED},
        PAYMENT_AUTHORIZED: {PAYMENT_PAID, PAYMENT_FAILED, PAYMENT_REFUNDED},
        PAYMENT_PAID: {PAYMENT_REFUNDED},
        PAYMENT_FAILED: {PAYMENT_AUTHORIZED, PAYMENT_PAID},
        PAYMENT_REFUNDED: set(),
    }

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name="orders")
    shipping_address = models.ForeignKey(
        "customers.ShippingAddress",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="orders",
    )

    payment_ref_id = models.CharField(max_length=100, blank=True, db_index=True)
    payment_status = models.CharField(max_length=20, choices=PAYMENT_STATUS_CHOICES, default=PAYMENT_PENDING)
    status = models.CharField(max_length=30, choices=STATUS_CHOICES, default="created")

    total_amount = models.DecimalField(max_digits=10, decimal_places=2)
    confirmation_sent_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            # Stuck-payment reconciliation sweep
            models.Index(fields=['payment_status', 'updated_at'], name='order_paystatus_updated_idx'),
            # "My Orders" history
            models.Index(fields=['user', '-created_at'], name='order_user_created_idx'),
        ]

    def __str__(self):
        return f"Order #{self.id} ({self.payment_status})"

    def can_transition_payment_to(self, new_status):
        return new_status in self.PAYMENT_TRANSITIONS.get(self.payment_status, set())


class OrderItem(models.Model):
    STATUS_CHOICES = (
        ("pending", "Pending"),
        ("shipped", "Shipped"),
        ("delivered", "Delivered"),
        ("cancelled", "Cancelled"),
    )

    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="items")
    product_variant = models.ForeignKey(
        "catalog.ProductVariant",
        on_delete=models.PROTECT,
        related_name="order_items",
    )
    seller = models.ForeignKey(
        "catalog.SellerProfile",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="order_items",
    )

    quantity = models.PositiveIntegerField()
    # Snapshots taken at checkout, never recomputed from the catalog
    price_at_purchase = models.DecimalField(max_digits=10, decimal_places=2)
    discount_amount_at_purchase = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    gst_amount_at_purchase = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    shipping_charge = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")

    shipment = models.ForeignKey(
        "shipping.Shipment",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="items",
    )
    draft_shipment = models.ForeignKey(
        "shipping.DraftShipment",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="items",
    )
    stock_decremented = models.BooleanField(default=False)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=Q(shipment__isnull=True) | Q(draft_shipment__isnull=True),
                name="orderitem_single_shipment_ref",
            ),
        ]

    def __str__(self):
        return f"{self.product_variant_id} x {self.quantity}"

    @property
    def line_total(self):
        return self.price_at_purchase * self.quantity


class Cart(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name="carts")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"Cart({self.user})"


class CartItem(models.Model):
    cart = models.ForeignKey(Cart, related_name='items', on_delete=models.CASCADE)
    product_variant = models.ForeignKey("catalog.ProductVariant", on_delete=models.CASCADE)
    quantity = models.PositiveIntegerField(default=1)

    class Meta:
        unique_together = ('cart', 'product_variant')

    @property
    def total_price(self):
        return self.product_variant.price * self.quantity
