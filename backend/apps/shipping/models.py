from decimal import Decimal

from django.db import models
from django.utils import timezone


class PickupLocation(models.Model):
    """
    A seller's warehouse as registered with the carrier.
    `nickname` is the name the carrier knows it by and must match exactly.
    """
    seller = models.ForeignKey(
        "catalog.SellerProfile",
        on_delete=models.CASCADE,
        related_name="pickup_locations",
    )

    location_id = models.CharField(max_length=50, blank=True, help_text="Carrier-side pickup id")
    nickname = models.CharField(max_length=100)
    address = models.CharField(max_length=255)
    city = models.CharField(max_length=100)
    state = models.CharField(max_length=100)
    pin_code = models.CharField(max_length=20)
    phone = models.CharField(max_length=20, blank=True)

    is_default = models.BooleanField(default=False)
    created_at = models.DateTimeField(default=timezone.now)

    def __str__(self):
        return f"{self.nickname} ({self.pin_code})"


class DraftShipment(models.Model):
    """
    Shipment intent captured at checkout, before any carrier order exists.
    Consumed (deleted) once settlement creates the real Shipment.
    """
    pickup_location = models.ForeignKey(
        PickupLocation,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="draft_shipments",
    )
    courier_service_id = models.CharField(max_length=50, blank=True, null=True)
    courier_name = models.CharField(max_length=100, blank=True)
    shipping_charge = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))

    created_at = models.DateTimeField(default=timezone.now)

    def __str__(self):
        return f"Draft {self.id} via {self.courier_name or 'auto'}"


class Shipment(models.Model):
    STATUS_CHOICES = (
        ("NEW", "New"),
        ("PICKUP_SCHEDULED", "Pickup Scheduled"),
        ("IN_TRANSIT", "In Transit"),
        ("DELIVERED", "Delivered"),
        ("CANCELLED", "Cancelled"),
    )

    pickup_location = models.ForeignKey(
        PickupLocation,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="shipments",
    )

    carrier_shipment_id = models.CharField(max_length=50, unique=True)
    carrier_order_id = models.CharField(max_length=50, db_index=True)
    courier_company_id = models.CharField(max_length=50, blank=True)
    courier_name = models.CharField(max_length=100, blank=True)
    shipping_charge = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    awb_code = models.CharField(max_length=50, blank=True, db_index=True)
    status = models.CharField(max_length=30, choices=STATUS_CHOICES, default="NEW")

    manifest_url = models.URLField(max_length=500, blank=True)
    invoice_url = models.URLField(max_length=500, blank=True)
    label_url = models.URLField(max_length=500, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"Shipment {self.carrier_shipment_id} AWB={self.awb_code or '-'}"
