# apps/shipping/services.py
import re
import time
import logging
from dataclasses import dataclass, field
from typing import Optional

from django.conf import settings
from django.utils import timezone

from apps.utils.exceptions import (
    AwbAssignmentFailed,
    CarrierAPIError,
    InvalidPhoneNumber,
    InvalidPickupLocation,
    NoPickupLocation,
    ShipmentError,
)
from .grouping import seller_totals

logger = logging.getLogger(__name__)

# Shiprocket rejects order ids longer than this
CARRIER_ORDER_ID_MAX = 50
HSN_MAX_LENGTH = 15

# Fixed parcel dimensions (cm) used for every marketplace shipment
PARCEL_LENGTH = 10
PARCEL_BREADTH = 15
PARCEL_HEIGHT = 20


def format_phone(raw) -> str:
    digits = re.sub(r"\D", "", raw or "").lstrip("0")
    if not digits:
        raise InvalidPhoneNumber("Valid phone number is required")
    return digits


def sanitize_hsn(raw, default) -> str:
    hsn = re.sub(r"\D", "", raw or "")[:HSN_MAX_LENGTH]
    return hsn or re.sub(r"\D", "", default)[:HSN_MAX_LENGTH]


def carrier_order_reference(order_id, seller_id, now_ms=None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    reference = f"ORD_{str(order_id)[:8]}_{str(seller_id)[:8]}_{str(now_ms)[-6:]}"
    return reference[:CARRIER_ORDER_ID_MAX]


@dataclass
class ShipmentResult:
    group: object
    shipment_id: str
    carrier_order_id: str
    awb_code: str
    courier_company_id: Optional[str]
    courier_name: Optional[str]
    pickup_location_id: Optional[int]
    shipping_charge: object
    success: bool = field(default=True, init=False)

    def as_dict(self):
        return {
            "success": True,
            "sellerId": self.group.seller_id,
            "sellerName": self.group.seller_name,
            "itemIds": self.group.item_ids,
            "shipmentId": self.shipment_id,
            "orderId": self.carrier_order_id,
            "awbCode": self.awb_code,
            "courierCompanyId": self.courier_company_id,
            "courierName": self.courier_name,
        }


@dataclass
class ShipmentFailure:
    group: object
    error: str
    code: str = "shipment_error"
    success: bool = field(default=False, init=False)

    def as_dict(self):
        return {
            "success": False,
            "sellerGroup": {
                "sellerId": self.group.seller_id,
                "sellerName": self.group.seller_name,
                "itemIds": self.group.item_ids,
            },
            "error": self.error,
            "code": self.code,
        }


class ShipmentCreator:
    """
    Creates one carrier order for one seller group and gets it an AWB.

    Never touches the database: every relation it reads (draft shipment,
    pickup location, product, seller, customer) must already be loaded,
    because this runs on worker threads.
    """

    def __init__(self, client, default_hsn=None):
        self.client = client
        self.default_hsn = default_hsn or settings.SHIPROCKET_DEFAULT_HSN

    def create_for_seller_group(self, group, order):
        try:
            return self._create(group, order)
        except ShipmentError as e:
            logger.warning(
                f"Shipment for order {order.id} seller {group.seller_id} failed [{e.code}]: {e.message}"
            )
            return ShipmentFailure(group=group, error=e.message, code=e.code)

    def _create(self, group, order):
        first_item = group.items[0]
        draft = first_item.draft_shipment
        pickup = self.resolve_pickup_location(group)
        carrier_location = self.validate_pickup_location(pickup)

        totals = seller_totals(group)
        payload = self.build_payload(group, order, carrier_location.nickname, totals)
        carrier_order = self.client.create_order(payload)
        logger.info(
            f"Shiprocket order {carrier_order.carrier_order_id} created for order {order.id} "
            f"seller {group.seller_id}, shipment {carrier_order.shipment_id}"
        )

        preferred = draft.courier_service_id if draft else None
        assignment, used_courier = self.assign_courier(
            carrier_order.shipment_id,
            preferred=preferred,
            suggested=carrier_order.courier_company_id,
        )

        return ShipmentResult(
            group=group,
            shipment_id=carrier_order.shipment_id,
            carrier_order_id=carrier_order.carrier_order_id or payload["order_id"],
            awb_code=assignment.awb_code,
            courier_company_id=assignment.courier_company_id or used_courier,
            courier_name=(
                assignment.courier_name
                or carrier_order.courier_name
                or (draft.courier_name if draft else None)
            ),
            pickup_location_id=pickup.id,
            shipping_charge=totals.shipping,
        )

    def resolve_pickup_location(self, group):
        draft = group.items[0].draft_shipment
        pickup = draft.pickup_location if draft is not None else None
        if pickup is None or str(pickup.seller_id) != str(group.seller_id):
            raise NoPickupLocation(f"No pickup location found for seller: {group.seller_id}")
        return pickup

    def validate_pickup_location(self, pickup):
        for location in self.client.get_pickup_locations():
            if location.id == str(pickup.location_id):
                return location
        raise InvalidPickupLocation(f"Invalid pickup location ID: {pickup.location_id}")

    def build_payload(self, group, order, pickup_nickname, totals=None):
        address = order.shipping_address
        if address is None:
            raise ShipmentError(f"Order {order.id} has no shipping address", code="missing_address")

        phone = format_phone(address.phone)
        name_parts = (address.full_name or "").split()
        first_name = name_parts[0] if name_parts else "Customer"
        last_name = " ".join(name_parts[1:]) or first_name or "Name"
        if totals is None:
            totals = seller_totals(group)

        return {
            "order_id": carrier_order_reference(order.id, group.seller_id),
            "order_date": timezone.now().strftime("%Y-%m-%d %H:%M"),
            "pickup_location": pickup_nickname,
            "comment": f"Order from {address.full_name} - Seller: {group.seller_name}",
            "billing_customer_name": first_name,
            "billing_last_name": last_name,
            "billing_address": address.street,
            "billing_address_2": address.landmark or "",
            "billing_city": address.city,
            "billing_pincode": address.zip_code,
            "billing_state": address.state,
            "billing_country": address.country or "India",
            "billing_email": order.user.email,
            "billing_phone": phone,
            "shipping_is_billing": True,
            "order_items": [self._order_item(item) for item in group.items],
            "payment_method": "Prepaid",
            "shipping_charges": float(totals.shipping),
            "giftwrap_charges": 0,
            "transaction_charges": 0,
            "total_discount": float(totals.discount),
            "sub_total": float(totals.subtotal),
            "length": PARCEL_LENGTH,
            "breadth": PARCEL_BREADTH,
            "height": PARCEL_HEIGHT,
            "weight": float(totals.weight) or 0.5,
        }

    def _order_item(self, item):
        variant = item.product_variant
        return {
            "name": variant.product.name,
            "sku": variant.sku or f"SKU_{item.id}",
            "units": item.quantity,
            "selling_price": float(item.price_at_purchase),
            "discount": float(item.discount_amount_at_purchase or 0),
            "tax": float(item.gst_amount_at_purchase or 0),
            "hsn": sanitize_hsn(variant.product.hsn_code, self.default_hsn),
        }

    def assign_courier(self, shipment_id, preferred=None, suggested=None):
        """
        Preferred courier (chosen at checkout), then the carrier's own
        suggestion, then no courier at all (carrier auto-assigns).
        Returns (assignment, courier_id_requested).
        """
        tiers = []
        if preferred:
            tiers.append(("preferred", str(preferred)))
        if suggested and str(suggested) != str(preferred or ""):
            tiers.append(("suggested", str(suggested)))
        tiers.append(("auto", None))

        last_error = None
        for tier, courier_id in tiers:
            try:
                assignment = self.client.assign_awb(shipment_id, courier_id=courier_id)
            except CarrierAPIError as e:
                last_error = e
                logger.warning(
                    f"AWB via {tier} courier {courier_id or '-'} failed for shipment {shipment_id}: {e.message}"
                )
                continue
            logger.info(f"AWB {assignment.awb_code} assigned to shipment {shipment_id} via {tier} courier")
            return assignment, courier_id

        raise AwbAssignmentFailed(
            f"AWB assignment failed for shipment {shipment_id}: "
            f"{last_error.message if last_error else 'no courier accepted'}"
        )
