# apps/notifications/services.py
import logging

from kombu.exceptions import OperationalError

logger = logging.getLogger(__name__)


def _money(value):
    return str(value if value is not None else "0")


def _iso(value):
    return value.isoformat() if value else None


def _item_payload(item):
    variant = item.product_variant
    product = variant.product
    seller = product.seller
    return {
        "id": str(item.id),
        "quantity": item.quantity,
        "priceAtPurchase": _money(item.price_at_purchase),
        "discountAmountAtPurchase": _money(item.discount_amount_at_purchase),
        "gstAmountAtPurchase": _money(item.gst_amount_at_purchase),
        "shippingCharge": _money(item.shipping_charge),
        "status": item.status,
        "sellerId": str(item.seller_id) if item.seller_id else None,
        "productVariant": {
            "title": variant.name,
            "sku": variant.sku,
            "price": _money(variant.price),
            "product": {
                "name": product.name,
                "seller": {"id": str(seller.id), "storeName": seller.store_name} if seller else None,
            },
        },
    }


def _payment_payload(payment):
    return {
        "paymentGateway": payment.gateway,
        "transactionId": payment.transaction_id or "",
        "paymentDate": _iso(payment.payment_date),
        "paymentGatewayOrderId": payment.gateway_order_id,
        "status": payment.status,
        "amount": _money(payment.amount),
    }


def _address_payload(address):
    if address is None:
        return None
    return {
        "fullName": address.full_name,
        "phone": address.phone,
        "street": address.street,
        "landmark": address.landmark,
        "city": address.city,
        "state": address.state,
        "zipCode": address.zip_code,
        "country": address.country,
    }


def build_confirmation_payload(batch):
    """
    One customer-facing confirmation for a whole checkout.

    `batch` is a list of (order, items, payments). The first order supplies
    the identity (id, customer, address); items and payments of every order
    are flattened into the one payload.
    """
    base_order = batch[0][0]
    user_ids = {order.user_id for order, _, _ in batch}
    if len(user_ids) > 1:
        logger.warning(
            f"Confirmation batch for order {base_order.id} spans {len(user_ids)} customers; "
            f"using the first order's customer and address"
        )

    user = base_order.user
    return {
        "id": str(base_order.id),
        "createdAt": _iso(base_order.created_at),
        "orderStatus": base_order.status,
        "paymentStatus": base_order.payment_status,
        "totalAmount": _money(sum(order.total_amount for order, _, _ in batch)),
        "user": {
            "id": str(user.pk),
            "email": user.email,
            "name": user.get_full_name() if hasattr(user, "get_full_name") else "",
        },
        "shippingAddress": _address_payload(base_order.shipping_address),
        "items": [_item_payload(item) for _, items, _ in batch for item in items],
        "payments": [_payment_payload(payment) for _, _, payments in batch for payment in payments],
        "_metadata": {
            "totalOrders": len(batch),
            "orderIds": [str(order.id) for order, _, _ in batch],
        },
    }


class OrderConfirmationDispatcher:
    """Hands the confirmation to Celery. Never raises into the payment flow."""

    def send_order_confirmation(self, payload) -> bool:
        from .tasks import send_order_confirmation_email

        try:
            send_order_confirmation_email.delay(payload)
        except OperationalError as e:
            logger.error(f"Could not queue confirmation email for order {payload.get('id')}: {e}")
            return False
        logger.info(f"Confirmation email queued for order {payload.get('id')}")
        return True
